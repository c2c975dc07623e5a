import httpx
import logging
from typing import Dict, Any, Optional, List

logger = logging.getLogger("NotionClient")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"


def format_database_id(database_id: str) -> str:
    # Format DB ID if needed
    if database_id and len(database_id) == 32:
        return f"{database_id[:8]}-{database_id[8:12]}-{database_id[12:16]}-{database_id[16:20]}-{database_id[20:]}"
    return database_id


class NotionClient:
    def __init__(self, http: httpx.AsyncClient, token: str):
        self.http = http
        self.base_url = NOTION_API_BASE
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json"
        }

    async def query_database(self, database_id: str, page_size: int = 100, start_cursor: Optional[str] = None, filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/databases/{format_database_id(database_id)}/query"
        body = {"page_size": page_size}
        if start_cursor:
            body["start_cursor"] = start_cursor
        if filter:
            body["filter"] = filter

        response = await self.http.post(url, headers=self.headers, json=body)
        response.raise_for_status()
        return response.json()

    async def query_database_all(self, database_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Returns all pages from a database, handling pagination automatically.
        """
        pages = []
        has_more = True
        start_cursor = None

        while has_more:
            data = await self.query_database(database_id, start_cursor=start_cursor, filter=filter)
            pages.extend(data.get("results", []))

            has_more = data.get("has_more", False)
            start_cursor = data.get("next_cursor")

        logger.debug(f"Queried {len(pages)} pages from {database_id}")
        return pages
