"""
===================================================================================
D2L SYNC - Brightspace assignments, lessons and announcements → Todoist
===================================================================================

One tracked context per org unit (snapshot key "d2l/<org unit id>"). The
context document carries the course `name` and the Todoist `project_id`.

Features:
- Dropbox folders become tasks in "automation: d2l assignments"
- The content table of contents becomes a task tree in "automation: d2l lessons"
  (modules are parent tasks, topics and sub-modules their sub-tasks)
- New activity-feed announcements add a task in "automation: d2l misc"

Usage:
    python -m syncs.d2l_sync            # Sync every configured org unit
    python -m syncs.d2l_sync --reset    # Delete every task labelled d2l, clear snapshots
"""

import sys
import time
import asyncio
import logging
from typing import Any, Dict, Optional

from taskbridge.config import Settings
from taskbridge.d2l import D2LAdapter, D2LSession
from taskbridge.engine import ReconciliationEngine, SyncPolicy
from taskbridge.models import RemoteEntity, SnapshotRecord
from taskbridge.session import SyncSession
from taskbridge.snapshot_store import clear_context
from taskbridge.sync_base import SyncResult, SyncStats, run_cli
from taskbridge.utils import ellipsis

JOB_NAME = "d2l"

LABEL = "d2l"
ASSIGNMENT_SECTION = "automation: d2l assignments"
LESSON_SECTION = "automation: d2l lessons"
MISC_SECTION = "automation: d2l misc"
SECTIONS = [ASSIGNMENT_SECTION, LESSON_SECTION, MISC_SECTION]

logger = logging.getLogger("D2LSync")


class D2LPolicy(SyncPolicy):
    """Tasks of one section of the course project."""
    prefix = "Assignment"
    section = ASSIGNMENT_SECTION
    priority = 2

    def __init__(self, project_id: str, sections: Dict[str, str]):
        self.project_id = project_id
        self.sections = sections

    def content(self, entity: RemoteEntity) -> str:
        title = ellipsis(entity.title)
        if entity.link:
            return f"**{self.prefix}:** [{title}]({entity.link})"
        return f"**{self.prefix}:** {title}"

    def build_create(self, entity: RemoteEntity, parent_ref: Optional[str]) -> Dict[str, Any]:
        args = {
            "content": self.content(entity),
            "priority": self.priority,
            "project_id": self.project_id,
            "section_id": self.sections[self.section],
            "labels": [LABEL],
        }
        if parent_ref:
            args["parent_id"] = parent_ref
        return args

    def build_update(self, entity: RemoteEntity, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id, "content": self.content(entity)}


class AssignmentPolicy(D2LPolicy):
    name = "assignments"
    drift_fields = ("title",)


class LessonPolicy(D2LPolicy):
    name = "lessons"
    prefix = "Lesson"
    section = LESSON_SECTION
    priority = 1
    drift_fields = ("title",)


class AnnouncementPolicy(D2LPolicy):
    name = "announcements"
    prefix = "Check announcement"
    section = MISC_SECTION
    priority = 1

    def build_announcement(self, entity: RemoteEntity) -> Dict[str, Any]:
        args = self.build_create(entity, None)
        args["due"] = {"string": "today"}
        return args


class D2LSyncService:
    def __init__(self, session: SyncSession, adapter: Optional[D2LAdapter] = None):
        self.session = session
        self.adapter = adapter
        self.engine = ReconciliationEngine(session.queue)

    async def sync_org_unit(self, org_unit: str) -> SyncStats:
        context = self.session.load_project_context(JOB_NAME, org_unit)
        project_id = context.container_id
        logger.info(f"Syncing org unit {context.name} ({org_unit}) into project {project_id}")

        await self.session.provisioner.ensure_labels([LABEL])
        sections = await self.session.provisioner.ensure_sections(project_id, SECTIONS)

        assignments, lessons, announcements = await asyncio.gather(
            self.adapter.list_assignments(org_unit),
            self.adapter.list_lessons(org_unit),
            self.adapter.list_announcements(org_unit),
        )

        plan = self.engine.begin(context)
        self.engine.diff(plan, assignments, AssignmentPolicy(project_id, sections))
        self.engine.diff(plan, lessons, LessonPolicy(project_id, sections))
        self.engine.gate(plan, announcements, AnnouncementPolicy(project_id, sections))
        outcome = await self.session.commit(self.engine, plan)
        return outcome.stats

    async def sync(self) -> SyncResult:
        start = time.time()
        result = SyncResult(job=JOB_NAME, success=True)
        for org_unit in self.session.settings.d2l_org_unit_ids:
            result.stats.add(await self.sync_org_unit(org_unit))
            result.contexts.append(org_unit)
        result.success = result.stats.errors == 0
        result.elapsed_seconds = time.time() - start
        return result

    async def reset(self) -> SyncResult:
        """Delete every Todoist task labelled d2l, then forget all d2l snapshots."""
        start = time.time()
        result = SyncResult(job=JOB_NAME, success=True)

        batch = await self.session.delete_labelled(LABEL)

        failed = batch.failed_commands()
        result.stats.deleted = len(batch.commands) - len(failed)
        result.stats.errors = len(failed)

        for org_unit in self.session.settings.d2l_org_unit_ids:
            clear_context(self.session.store, f"{JOB_NAME}/{org_unit}")
            result.contexts.append(org_unit)

        result.success = not failed
        result.elapsed_seconds = time.time() - start
        return result


# ============================================================================
# ENTRY POINT
# ============================================================================

def _adapter(session: SyncSession) -> D2LAdapter:
    return D2LAdapter(D2LSession(session.http, session.settings, session.store), session.settings.d2l_feed_url)


async def run_sync(settings: Settings) -> SyncResult:
    """Run the D2L sync and return results."""
    settings.require("d2l_org_unit_ids")
    async with SyncSession(settings) as session:
        return await D2LSyncService(session, _adapter(session)).sync()


async def run_reset(settings: Settings) -> SyncResult:
    async with SyncSession(settings) as session:
        return await D2LSyncService(session).reset()


if __name__ == "__main__":
    sys.exit(run_cli(JOB_NAME, run_sync, run_reset))
