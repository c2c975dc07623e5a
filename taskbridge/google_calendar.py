import httpx
from typing import Dict, Any
from urllib.parse import quote

from taskbridge.google_api import GoogleApiClient

GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"


class GoogleCalendarClient:
    def __init__(self, api: GoogleApiClient):
        self.api = api

    def _events_url(self, calendar_id: str) -> str:
        return f"{GOOGLE_CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='@')}/events"

    async def get_event_colors(self) -> Dict[str, str]:
        """
        Map of background colour (hex) -> event colorId.
        """
        data = await self.api.get_json(f"{GOOGLE_CALENDAR_API_BASE}/colors")
        return {
            palette["background"].lower(): color_id
            for color_id, palette in data.get("event", {}).items()
            if palette.get("background")
        }

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.api.request("POST", self._events_url(calendar_id), json=body)
        response.raise_for_status()
        return response.json()

    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.api.request("PATCH", f"{self._events_url(calendar_id)}/{event_id}", json=body)
        response.raise_for_status()
        return response.json()

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """
        Delete an event. Returns False if it was already gone (404/410).
        """
        response = await self.api.request("DELETE", f"{self._events_url(calendar_id)}/{event_id}")
        if response.status_code in (404, 410):
            return False
        response.raise_for_status()
        return True


def is_status(error: httpx.HTTPStatusError, *codes: int) -> bool:
    return error.response.status_code in codes
