"""
===================================================================================
NOTION → CALENDAR SYNC - Deliverables database → Google Calendar events
===================================================================================

One tracked context per active term (snapshot key "notion-calendar/<term>"),
mirrored into one calendar.

Features:
- Every deliverable with a due date and a course becomes an event
  "<course> - <title>" linking back to the Notion page
- Events are coloured from COURSE_COLORS through the calendar colour palette
- A deliverable edited in Notion (last_edited_time moved) patches its event
- A deliverable that left the query has its event deleted

Usage:
    python -m syncs.notion_calendar_sync            # Sync the active term
    python -m syncs.notion_calendar_sync --reset    # Delete every tracked event
"""

import sys
import time
import logging
from typing import Any, Dict, List, Optional

from taskbridge.command_queue import CalendarCommandQueue
from taskbridge.config import Settings
from taskbridge.engine import ContextOutcome, ContextPlan, ReconciliationEngine, SyncPolicy
from taskbridge.exceptions import InvalidRecordError, PartialFlushError
from taskbridge.google_api import GoogleApiClient
from taskbridge.google_auth import get_access_token
from taskbridge.google_calendar import GoogleCalendarClient
from taskbridge.models import RemoteEntity, SnapshotRecord
from taskbridge.notion_client import NotionClient
from taskbridge.session import SyncSession
from taskbridge.snapshot_store import load_context, save_context
from taskbridge.sync_base import SyncResult, run_cli
from taskbridge.utils import parse_timestamp

JOB_NAME = "notion-calendar"

logger = logging.getLogger("NotionCalendarSync")


def to_gcal_date(value: str) -> Dict[str, str]:
    # YYYY-MM-DD
    if len(value) == 10:
        return {"date": value}
    # YYYY-MM-DDThh:mm:ss.SSSZ
    return {"dateTime": value}


def _plain_text(rich_text: List[Dict[str, Any]]) -> str:
    return "".join(part.get("plain_text") or part.get("text", {}).get("content", "") for part in rich_text or [])


# ============================================================================
# NOTION
# ============================================================================

class NotionDeliverablesAdapter:
    def __init__(self, notion: NotionClient, course_db_id: str, deliverable_db_id: str, term: str):
        self.notion = notion
        self.course_db_id = course_db_id
        self.deliverable_db_id = deliverable_db_id
        self.term = term

    async def list_courses(self) -> Dict[str, str]:
        """Course page id -> course name, for the courses of the term."""
        pages = await self.notion.query_database_all(
            self.course_db_id,
            filter={"property": "Term", "select": {"equals": self.term}},
        )
        courses = {}
        for page in pages:
            title = _plain_text(page.get("properties", {}).get("Name", {}).get("title"))
            if not title:
                logger.warning(f"Page {page['id']} has no title")
            courses[page["id"]] = title or "Untitled"
        return courses

    def deliverable_filter(self) -> Dict[str, Any]:
        return {
            "and": [
                {"property": "Due Date", "date": {"is_not_empty": True}},
                {"property": "Term", "rollup": {"any": {"select": {"equals": self.term}}}},
                {"property": "Course", "relation": {"is_not_empty": True}},
            ]
        }

    def _to_entity(self, page: Dict[str, Any], courses: Dict[str, str]) -> RemoteEntity:
        properties = page.get("properties", {})
        dates = (properties.get("Date") or {}).get("date") or (properties.get("Due Date") or {}).get("date")
        if not dates or not dates.get("start"):
            raise InvalidRecordError(f"Deliverable {page.get('id')} has no date")
        relation = (properties.get("Course") or {}).get("relation") or []

        return RemoteEntity(
            remote_id=page["id"],
            title=_plain_text((properties.get("Name") or {}).get("title")),
            link=page.get("url"),
            due_at=parse_timestamp(dates["start"]),
            update_time=parse_timestamp(page.get("last_edited_time")),
            revision=page.get("last_edited_time"),
            attributes={
                "course": courses.get(relation[0]["id"], "Untitled") if relation else "Untitled",
                "start": dates["start"],
                "end": dates.get("end"),
            },
        )

    async def list_entities(self) -> List[RemoteEntity]:
        courses = await self.list_courses()
        pages = await self.notion.query_database_all(self.deliverable_db_id, filter=self.deliverable_filter())
        entities = [self._to_entity(page, courses) for page in pages]
        logger.info(f"Term {self.term}: {len(entities)} deliverables across {len(courses)} courses")
        return entities


# ============================================================================
# CALENDAR
# ============================================================================

class DeliverableEventPolicy(SyncPolicy):
    name = "deliverables"
    drift_fields = ("revision",)
    delete_missing = True

    def __init__(self, course_colors: Optional[Dict[str, str]] = None, palette: Optional[Dict[str, str]] = None):
        self.course_colors = course_colors or {}
        self.palette = palette or {}

    def event_body(self, entity: RemoteEntity) -> Dict[str, Any]:
        course = entity.attributes.get("course")
        body = {
            "summary": f"{course} - {entity.title}",
            "source": {"title": entity.title, "url": entity.link},
        }
        color = self.course_colors.get(course)
        if color and color.lower() in self.palette:
            body["colorId"] = self.palette[color.lower()]

        body["start"] = to_gcal_date(entity.attributes["start"])
        end = entity.attributes.get("end")
        body["end"] = to_gcal_date(end) if end else body["start"]
        return body

    def build_create(self, entity: RemoteEntity, parent_ref: Optional[str]) -> Dict[str, Any]:
        return self.event_body(entity)

    def build_update(self, entity: RemoteEntity, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id, **self.event_body(entity)}


class ForgetEventsPolicy(SyncPolicy):
    name = "reset"
    delete_missing = True


class NotionCalendarSyncService:
    def __init__(
        self,
        session: SyncSession,
        adapter: Optional[NotionDeliverablesAdapter],
        calendar: GoogleCalendarClient,
    ):
        settings = session.settings
        self.session = session
        self.adapter = adapter
        self.calendar = calendar
        self.calendar_id = settings.google_calendar_id
        self.key = f"{JOB_NAME}/{settings.notion_active_term}"
        self.engine = ReconciliationEngine(CalendarCommandQueue(calendar, self.calendar_id, on_error=session.on_error))

    async def _commit(self, plan: ContextPlan) -> ContextOutcome:
        try:
            return await self.engine.commit(plan)
        except PartialFlushError as e:
            # events already written must stay tracked
            save_context(self.session.store, e.outcome.context)
            raise

    async def sync(self) -> SyncResult:
        start = time.time()
        settings = self.session.settings
        context = load_context(self.session.store, self.key, settings.notion_active_term, container_id=self.calendar_id)

        palette = await self.calendar.get_event_colors()
        entities = await self.adapter.list_entities()

        plan = self.engine.plan(context, entities, DeliverableEventPolicy(settings.course_colors, palette))
        outcome = await self._commit(plan)
        save_context(self.session.store, outcome.context)

        return SyncResult(
            job=JOB_NAME,
            success=not outcome.failures,
            stats=outcome.stats,
            contexts=[settings.notion_active_term],
            elapsed_seconds=time.time() - start,
        )

    async def reset(self) -> SyncResult:
        start = time.time()
        settings = self.session.settings
        context = load_context(self.session.store, self.key, settings.notion_active_term, container_id=self.calendar_id)
        logger.info(f"Deleting {len(context.entities)} events")

        outcome = await self._commit(self.engine.plan(context, [], ForgetEventsPolicy()))
        if outcome.failures:
            # keep the events that could not be deleted
            save_context(self.session.store, outcome.context)
        else:
            self.session.store.set(self.key, {})

        return SyncResult(
            job=JOB_NAME,
            success=not outcome.failures,
            stats=outcome.stats,
            contexts=[settings.notion_active_term],
            elapsed_seconds=time.time() - start,
        )


# ============================================================================
# ENTRY POINT
# ============================================================================

def _service(session: SyncSession) -> NotionCalendarSyncService:
    settings = session.settings
    settings.require("google_calendar_id", "notion_active_term")
    api = GoogleApiClient(session.http, lambda: get_access_token(session.http, settings))

    adapter = None
    if settings.notion_api_token:
        adapter = NotionDeliverablesAdapter(
            NotionClient(session.http, settings.notion_api_token),
            settings.notion_course_db_id,
            settings.notion_deliverable_db_id,
            settings.notion_active_term,
        )
    return NotionCalendarSyncService(session, adapter, GoogleCalendarClient(api))


async def run_sync(settings: Settings) -> SyncResult:
    """Run the Notion → Calendar sync and return results."""
    settings.require("notion_api_token", "notion_course_db_id", "notion_deliverable_db_id")
    async with SyncSession(settings) as session:
        return await _service(session).sync()


async def run_reset(settings: Settings) -> SyncResult:
    async with SyncSession(settings) as session:
        return await _service(session).reset()


if __name__ == "__main__":
    sys.exit(run_cli(JOB_NAME, run_sync, run_reset))
