import httpx
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("GoogleApi")

TokenProvider = Callable[[], Awaitable[str]]


class GoogleApiClient:
    """
    Authorized JSON access to Google REST APIs.

    The access token is fetched lazily. A 401 refreshes it exactly once and
    repeats the request; anything after that is left to the caller.
    """

    def __init__(self, http: httpx.AsyncClient, token_provider: TokenProvider):
        self.http = http
        self.token_provider = token_provider
        self.access_token: Optional[str] = None

    async def _ensure_token(self):
        if not self.access_token:
            self.access_token = await self.token_provider()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        await self._ensure_token()
        response = await self.http.request(method, url, headers=self._headers(), **kwargs)

        if response.status_code == 401:
            logger.info("Google access token rejected, refreshing")
            self.access_token = await self.token_provider()
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)

        return response

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.request("GET", url, params=params)
        response.raise_for_status()
        return response.json()

    async def get_paginated(self, url: str, items_key: str, params: Optional[Dict[str, Any]] = None):
        """Collect `items_key` across every page of a Google list endpoint."""
        params = dict(params or {})
        items = []
        while True:
            data = await self.get_json(url, params=params)
            items.extend(data.get(items_key, []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items
            params["pageToken"] = page_token
