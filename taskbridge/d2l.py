"""
===================================================================================
D2L / BRIGHTSPACE - Authenticated session and LMS readers
===================================================================================

The LMS has no public API for students, so the session rides on the browser
session cookie from the configuration:

1. The cookie is exchanged for a short-lived bearer token at
   /d2l/lp/auth/oauth2/token. The token is cached in the snapshot store
   (automation/d2l) until it expires.
2. Every request sends both the cookie and the bearer token.
3. A 401 forces exactly one new token exchange and one retry. If the LMS still
   refuses, AuthenticationError is raised and the run fails.

Assignments come from the dropbox folder list (HTML), lessons from the content
table of contents (JSON) and announcements from the activity feed (JSON).
"""

import re
import time
import httpx
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin
from bs4 import BeautifulSoup

from taskbridge.config import Settings
from taskbridge.exceptions import AuthenticationError, InvalidRecordError
from taskbridge.models import RemoteEntity
from taskbridge.snapshot_store import SnapshotStore
from taskbridge.utils import parse_timestamp, to_iso

logger = logging.getLogger("D2L")

TOKEN_CACHE_KEY = "automation/d2l"
TOKEN_PATH = "/d2l/lp/auth/oauth2/token"
LE_API_VERSION = "1.67"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"

# one grid page of up to 200 folders, sorted by dropbox id
FOLDER_LIST_STATE = {
    "d2l_stateScopes": "{1:['gridpagenum','search','pagenum'],2:['lcs'],3:['grid','pagesize','htmleditor','hpg']}",
    "d2l_stateGroups": "['grid','gridpagenum']",
    "d2l_statePageId": "353",
    "d2l_state_grid": "{'Name':'grid','Controls':[{'ControlId':{'ID':'grid_main'},'StateType':'','Key':'','Name':'gridFolders','State':{'PageSize':'200','SortField':'DropboxId','SortDir':0}}]}",
    "d2l_state_gridpagenum": "{'Name':'gridpagenum','Controls':[{'ControlId':{'ID':'grid_main'},'StateType':'pagenum','Key':'','Name':'gridFolders','State':{'PageNum':1}}]}",
    "d2l_change": "0",
}

FOLDER_ID_PATTERN = re.compile(r"db=(\d+)")


class D2LSession:
    def __init__(self, http: httpx.AsyncClient, settings: Settings, store: SnapshotStore):
        settings.require("d2l_base_url", "d2l_session_cookie")
        self.http = http
        self.base_url = settings.d2l_base_url.rstrip("/")
        self.cookie = settings.d2l_session_cookie
        self.store = store
        self.token: Optional[str] = None

    def _cached_token(self) -> Optional[str]:
        cache = self.store.get(TOKEN_CACHE_KEY)
        expires = parse_timestamp(cache.get("key_expire"))
        if cache.get("key") and expires and expires > datetime.now(timezone.utc):
            return cache["key"]
        return None

    async def login(self, force: bool = False) -> str:
        """Return a bearer token, exchanging the session cookie when needed."""
        if not force:
            self.token = self.token or self._cached_token()
            if self.token:
                return self.token

        logger.info("Requesting a new D2L token")
        response = await self.http.get(
            f"{self.base_url}{TOKEN_PATH}",
            headers={"Cookie": self.cookie, "User-Agent": USER_AGENT},
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(f"D2L rejected the session cookie ({response.status_code})")
        response.raise_for_status()

        data = response.json()
        expires_at = data.get("expires_at") or (time.time() + data.get("expires_in", 3600))
        self.token = data["access_token"]
        self.store.set(TOKEN_CACHE_KEY, {
            "key": self.token,
            "key_expire": to_iso(datetime.fromtimestamp(expires_at, tz=timezone.utc)),
        }, merge=True)
        return self.token

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Cookie": self.cookie,
            "User-Agent": USER_AGENT,
        }

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        await self.login()
        response = await self.http.request(method, url, headers=self._headers(), **kwargs)

        if response.status_code == 401:
            logger.info("D2L token rejected, logging in again")
            await self.login(force=True)
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)
            if response.status_code == 401:
                raise AuthenticationError(f"D2L still refuses {url} after logging in again")

        response.raise_for_status()
        return response


def first_paragraph(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    paragraph = soup.find("p")
    return (paragraph or soup).get_text(" ", strip=True)


class D2LAdapter:
    def __init__(self, session: D2LSession, feed_url: str):
        self.session = session
        self.base_url = session.base_url
        self.feed_url = feed_url.rstrip("/")

    async def list_assignments(self, org_unit: str) -> List[RemoteEntity]:
        response = await self.session.request(
            "GET",
            f"{self.base_url}/d2l/lms/dropbox/user/folders_list.d2l",
            params={"ou": org_unit, **FOLDER_LIST_STATE},
        )
        soup = BeautifulSoup(response.text, "html.parser")

        entities = []
        for anchor in soup.select(".d2l-foldername a"):
            title = anchor.get_text(strip=True)
            href = anchor.get("href") or ""
            match = FOLDER_ID_PATTERN.search(href)
            folder_id = match.group(1) if match else title
            if not folder_id:
                continue
            entities.append(RemoteEntity(
                remote_id=f"assignment-{folder_id}",
                title=title,
                link=urljoin(f"{self.base_url}/", href) if href else None,
            ))

        logger.info(f"Org unit {org_unit}: {len(entities)} assignments")
        return entities

    def _lesson(self, org_unit: str, node: Dict[str, Any], kind: str, parent: Optional[str]) -> RemoteEntity:
        if kind == "module":
            remote_id = f"module-{node['ModuleId']}"
            link = (
                f"{self.base_url}/d2l/le/content/{org_unit}/Home"
                f"?itemIdentifier=D2L.LE.Content.ContentObject.ModuleCO-{node['ModuleId']}"
            )
        else:
            remote_id = f"topic-{node['TopicId']}"
            link = f"{self.base_url}/d2l/le/content/{org_unit}/viewContent/{node['TopicId']}/View"
        return RemoteEntity(
            remote_id=remote_id,
            title=node.get("Title") or "",
            link=link,
            parent_remote_id=parent,
        )

    def _flatten(self, org_unit: str, modules: List[Dict[str, Any]], parent: Optional[str]) -> List[RemoteEntity]:
        """Pre-order walk: every module precedes its topics and sub-modules."""
        lessons = []
        for module in modules:
            entity = self._lesson(org_unit, module, "module", parent)
            lessons.append(entity)
            for topic in module.get("Topics") or []:
                lessons.append(self._lesson(org_unit, topic, "topic", entity.remote_id))
            lessons.extend(self._flatten(org_unit, module.get("Modules") or [], entity.remote_id))
        return lessons

    async def list_lessons(self, org_unit: str) -> List[RemoteEntity]:
        response = await self.session.request(
            "GET", f"{self.base_url}/d2l/api/le/{LE_API_VERSION}/{org_unit}/content/toc"
        )
        lessons = self._flatten(org_unit, response.json().get("Modules") or [], None)
        logger.info(f"Org unit {org_unit}: {len(lessons)} lessons")
        return lessons

    async def list_announcements(self, org_unit: str) -> List[RemoteEntity]:
        response = await self.session.request("GET", f"{self.feed_url}/d2l:orgUnit:{org_unit}/article")

        announcements = []
        for item in response.json().get("orderedItems") or []:
            article = item.get("object") or {}
            updated = parse_timestamp(article.get("updated") or item.get("published"))
            if updated is None:
                raise InvalidRecordError(f"Announcement in org unit {org_unit} has no timestamp")
            announcements.append(RemoteEntity(
                remote_id=f"announcement-{article.get('id') or to_iso(updated)}",
                title=first_paragraph(article.get("content")),
                link=article.get("url"),
                update_time=updated,
            ))
        return announcements
