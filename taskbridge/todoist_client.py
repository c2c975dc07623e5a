import json
import logging
import httpx
from typing import Any, Dict, List, Optional

from taskbridge.config import TODOIST_SYNC_URL

logger = logging.getLogger("TodoistClient")


class TodoistClient:
    """
    Minimal Todoist Sync API client.

    Writes go through `sync()` with the caller's sync token. Reads use a full
    sync ("*") limited to the requested resource types so they never advance
    the write cursor.
    """

    def __init__(self, http: httpx.AsyncClient, token: str, sync_url: str = TODOIST_SYNC_URL):
        self.http = http
        self.sync_url = sync_url
        self.headers = {"Authorization": f"Bearer {token}"}

    async def sync(self, sync_token: str, commands: List[Dict[str, Any]]) -> Dict[str, Any]:
        response = await self.http.post(
            self.sync_url,
            headers=self.headers,
            data={
                "sync_token": sync_token,
                "commands": json.dumps(commands),
            },
        )
        response.raise_for_status()
        return response.json()

    async def read_resources(self, resource_types: List[str]) -> Dict[str, Any]:
        response = await self.http.post(
            self.sync_url,
            headers=self.headers,
            data={
                "sync_token": "*",
                "resource_types": json.dumps(resource_types),
            },
        )
        response.raise_for_status()
        return response.json()

    async def list_labels(self) -> List[Dict[str, Any]]:
        data = await self.read_resources(["labels"])
        return [label for label in data.get("labels", []) if not label.get("is_deleted")]

    async def list_sections(self, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        data = await self.read_resources(["sections"])
        sections = [s for s in data.get("sections", []) if not s.get("is_deleted")]
        if project_id is not None:
            sections = [s for s in sections if str(s.get("project_id")) == str(project_id)]
        return sections

    async def list_items(self, label: Optional[str] = None) -> List[Dict[str, Any]]:
        data = await self.read_resources(["items"])
        items = [item for item in data.get("items", []) if not item.get("is_deleted")]
        if label is not None:
            items = [item for item in items if label in (item.get("labels") or [])]
        logger.debug(f"Fetched {len(items)} Todoist items (label={label})")
        return items
