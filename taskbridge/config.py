"""
Runtime configuration.

Everything comes from the environment (a local .env file is loaded first).
Jobs call `settings.require(...)` for the values they cannot run without, so a
missing credential only breaks the job that needs it.
"""

import os
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from dotenv import load_dotenv

from taskbridge.exceptions import ConfigError

load_dotenv()

TODOIST_SYNC_URL = "https://api.todoist.com/api/v1/sync"
D2L_FEED_URL = "https://prd.activityfeed.ca-central-1.brightspace.com/api/v1"

# Todoist rejects sync requests with more than 100 commands
TODOIST_BATCH_LIMIT = 100


def _split_ids(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Settings:
    todoist_api_token: Optional[str] = None
    todoist_sync_url: str = TODOIST_SYNC_URL
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None

    classroom_course_ids: List[str] = field(default_factory=list)

    d2l_base_url: Optional[str] = None
    d2l_feed_url: str = D2L_FEED_URL
    d2l_session_cookie: Optional[str] = None
    d2l_org_unit_ids: List[str] = field(default_factory=list)

    notion_api_token: Optional[str] = None
    notion_course_db_id: Optional[str] = None
    notion_deliverable_db_id: Optional[str] = None
    notion_active_term: Optional[str] = None
    google_calendar_id: Optional[str] = None
    course_colors: Dict[str, str] = field(default_factory=dict)

    http_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        colors_raw = os.environ.get("COURSE_COLORS")
        try:
            course_colors = json.loads(colors_raw) if colors_raw else {}
        except json.JSONDecodeError as e:
            raise ConfigError(f"COURSE_COLORS is not valid JSON: {e}") from e

        return cls(
            todoist_api_token=os.environ.get("TODOIST_API_TOKEN"),
            todoist_sync_url=os.environ.get("TODOIST_SYNC_URL", TODOIST_SYNC_URL),
            supabase_url=os.environ.get("SUPABASE_URL"),
            supabase_key=os.environ.get("SUPABASE_KEY"),
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID"),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET"),
            google_refresh_token=os.environ.get("GOOGLE_REFRESH_TOKEN"),
            classroom_course_ids=_split_ids(os.environ.get("CLASSROOM_COURSE_IDS")),
            d2l_base_url=os.environ.get("D2L_BASE_URL"),
            d2l_feed_url=os.environ.get("D2L_FEED_URL", D2L_FEED_URL),
            d2l_session_cookie=os.environ.get("D2L_SESSION_COOKIE"),
            d2l_org_unit_ids=_split_ids(os.environ.get("D2L_ORG_UNIT_IDS")),
            notion_api_token=os.environ.get("NOTION_API_TOKEN"),
            notion_course_db_id=os.environ.get("NOTION_COURSE_DB_ID"),
            notion_deliverable_db_id=os.environ.get("NOTION_DELIVERABLE_DB_ID"),
            notion_active_term=os.environ.get("NOTION_ACTIVE_TERM"),
            google_calendar_id=os.environ.get("GOOGLE_CALENDAR_ID"),
            course_colors=course_colors,
            http_timeout=float(os.environ.get("HTTP_TIMEOUT", "30")),
        )

    def require(self, *names: str) -> None:
        """Raise ConfigError naming every listed setting that is empty."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            env_names = ", ".join(name.upper() for name in missing)
            raise ConfigError(f"Missing configuration: {env_names}")
