"""
===================================================================================
CLASSROOM SYNC - Google Classroom → Todoist
===================================================================================

One tracked context per course (snapshot key "classroom/<course id>"). The
context document carries the course `name` and the Todoist `project_id`.

Features:
- New assignments become tasks in "automation: classroom assignments"
- Turning work in closes the task, reclaiming it reopens the task
- A returned assignment adds a "Returned assignment" task due today
- Title/due date changes update the task
- New announcements add a "Check announcement" task due today

Usage:
    python -m syncs.classroom_sync            # Sync every configured course
    python -m syncs.classroom_sync --reset    # Delete automation tasks, clear snapshots
"""

import sys
import time
import asyncio
import logging
from typing import Any, Dict, Optional

from taskbridge.classroom import ClassroomAdapter
from taskbridge.config import Settings
from taskbridge.engine import AUXILIARY, CLOSE, REOPEN, ReconciliationEngine, SyncPolicy
from taskbridge.google_api import GoogleApiClient
from taskbridge.google_auth import get_access_token
from taskbridge.models import RemoteEntity, SnapshotRecord
from taskbridge.session import SyncSession
from taskbridge.snapshot_store import clear_context
from taskbridge.sync_base import SyncResult, SyncStats, run_cli
from taskbridge.utils import ellipsis, format_rfc3339

JOB_NAME = "classroom"

# every task this job creates carries MARKER_LABEL; reset deletes by it
MARKER_LABEL = "automation"
LABELS = ["homework", MARKER_LABEL]
ASSIGNMENT_SECTION = "automation: classroom assignments"
MISC_SECTION = "automation: classroom misc"

TURNED_IN = "TURNED_IN"
RETURNED = "RETURNED"
RECLAIMED = "RECLAIMED_BY_STUDENT"
ACTIVE_STATES = frozenset({"NEW", "CREATED", RECLAIMED})

logger = logging.getLogger("ClassroomSync")


def _link(prefix: str, entity: RemoteEntity) -> str:
    return f"**{prefix}:** [{ellipsis(entity.title)}]({entity.link})"


class AssignmentPolicy(SyncPolicy):
    name = "assignments"
    terminal_states = frozenset({TURNED_IN, RETURNED})

    def __init__(self, project_id: str, sections: Dict[str, str]):
        self.project_id = project_id
        self.sections = sections

    def transition(self, old_state: Optional[str], new_state: Optional[str]) -> Optional[str]:
        if new_state == TURNED_IN:
            return CLOSE
        if new_state == RETURNED:
            return AUXILIARY
        if new_state == RECLAIMED or (old_state in self.terminal_states and new_state in ACTIVE_STATES):
            return REOPEN
        return None

    def build_create(self, entity: RemoteEntity, parent_ref: Optional[str]) -> Dict[str, Any]:
        args = {
            "content": _link("Assignment", entity),
            "priority": entity.attributes.get("priority", 2),
            "project_id": self.project_id,
            "section_id": self.sections[ASSIGNMENT_SECTION],
            "labels": LABELS,
        }
        if entity.due_at:
            args["due"] = {"date": format_rfc3339(entity.due_at)}
        return args

    def build_update(self, entity: RemoteEntity, record: SnapshotRecord) -> Dict[str, Any]:
        args = {"id": record.target_id, "content": _link("Assignment", entity)}
        if entity.due_at:
            args["due"] = {"date": format_rfc3339(entity.due_at)}
        return args

    def build_auxiliary(self, entity: RemoteEntity) -> Dict[str, Any]:
        return {
            "content": _link("Returned assignment", entity),
            "priority": 1,
            "project_id": self.project_id,
            "section_id": self.sections[MISC_SECTION],
            "labels": LABELS,
            "due": {"string": "today"},
        }


class AnnouncementPolicy(SyncPolicy):
    name = "announcements"

    def __init__(self, project_id: str, sections: Dict[str, str]):
        self.project_id = project_id
        self.sections = sections

    def build_announcement(self, entity: RemoteEntity) -> Dict[str, Any]:
        return {
            "content": _link("Check announcement", entity),
            "priority": 1,
            "project_id": self.project_id,
            "section_id": self.sections[MISC_SECTION],
            "labels": LABELS,
            "due": {"string": "today"},
        }


class ClassroomSyncService:
    def __init__(self, session: SyncSession, adapter: ClassroomAdapter):
        self.session = session
        self.adapter = adapter
        self.engine = ReconciliationEngine(session.queue)

    async def sync_course(self, course_id: str) -> SyncStats:
        context = self.session.load_project_context(JOB_NAME, course_id)
        project_id = context.container_id
        logger.info(f"Syncing course {context.name} ({course_id}) into project {project_id}")

        await self.session.provisioner.ensure_labels(LABELS)
        sections = await self.session.provisioner.ensure_sections(project_id, [ASSIGNMENT_SECTION, MISC_SECTION])

        assignments, announcements = await asyncio.gather(
            self.adapter.list_entities(course_id),
            self.adapter.list_announcements(course_id),
        )

        plan = self.engine.plan(context, assignments, AssignmentPolicy(project_id, sections))
        self.engine.gate(plan, announcements, AnnouncementPolicy(project_id, sections))
        outcome = await self.session.commit(self.engine, plan)
        return outcome.stats

    async def sync(self) -> SyncResult:
        start = time.time()
        result = SyncResult(job=JOB_NAME, success=True)
        for course_id in self.session.settings.classroom_course_ids:
            result.stats.add(await self.sync_course(course_id))
            result.contexts.append(course_id)
        result.success = result.stats.errors == 0
        result.elapsed_seconds = time.time() - start
        return result

    async def reset(self) -> SyncResult:
        """Delete every Todoist task labelled automation, then forget the course snapshots."""
        start = time.time()
        result = SyncResult(job=JOB_NAME, success=True)

        batch = await self.session.delete_labelled(MARKER_LABEL)
        failed = batch.failed_commands()
        result.stats.deleted = len(batch.commands) - len(failed)
        result.stats.errors = len(failed)

        for course_id in self.session.settings.classroom_course_ids:
            clear_context(self.session.store, f"{JOB_NAME}/{course_id}")
            result.contexts.append(course_id)

        result.success = not failed
        result.elapsed_seconds = time.time() - start
        return result


# ============================================================================
# ENTRY POINT
# ============================================================================

def _adapter(session: SyncSession) -> ClassroomAdapter:
    api = GoogleApiClient(session.http, lambda: get_access_token(session.http, session.settings))
    return ClassroomAdapter(api)


async def run_sync(settings: Settings) -> SyncResult:
    """Run the classroom sync and return results."""
    settings.require("classroom_course_ids")
    async with SyncSession(settings) as session:
        return await ClassroomSyncService(session, _adapter(session)).sync()


async def run_reset(settings: Settings) -> SyncResult:
    async with SyncSession(settings) as session:
        return await ClassroomSyncService(session, _adapter(session)).reset()


if __name__ == "__main__":
    sys.exit(run_cli(JOB_NAME, run_sync, run_reset))
