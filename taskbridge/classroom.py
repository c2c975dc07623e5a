"""
Google Classroom reads: coursework joined with the student's own submissions,
and course announcements.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from taskbridge.google_api import GoogleApiClient
from taskbridge.models import RemoteEntity
from taskbridge.utils import parse_timestamp

logger = logging.getLogger("ClassroomAdapter")

CLASSROOM_API_BASE = "https://classroom.googleapis.com/v1"


def assignment_priority(max_points: Optional[float]) -> int:
    # ungraded (low) -> graded (mid) -> >10 points (high)
    if not max_points:
        return 2
    return 4 if max_points > 10 else 3


def parse_due(due_date: Optional[Dict[str, int]], due_time: Optional[Dict[str, int]]) -> Optional[datetime]:
    """Classroom splits the due moment into date and time parts, both in UTC."""
    if not due_date:
        return None
    due_time = due_time or {}
    return datetime(
        due_date["year"],
        due_date["month"],
        due_date["day"],
        due_time.get("hours", 0),
        due_time.get("minutes", 0),
        tzinfo=timezone.utc,
    )


class ClassroomAdapter:
    def __init__(self, api: GoogleApiClient):
        self.api = api

    async def list_entities(self, course_id: str) -> List[RemoteEntity]:
        course_url = f"{CLASSROOM_API_BASE}/courses/{course_id}"
        work, submissions = await asyncio.gather(
            self.api.get_paginated(
                f"{course_url}/courseWork",
                "courseWork",
                {"fields": "nextPageToken,courseWork(id,title,dueDate,dueTime,maxPoints,alternateLink)"},
            ),
            self.api.get_paginated(
                f"{course_url}/courseWork/-/studentSubmissions",
                "studentSubmissions",
                {"fields": "nextPageToken,studentSubmissions(userId,courseWorkId,state)"},
            ),
        )

        states = {sub["courseWorkId"]: sub.get("state") for sub in submissions}
        entities = [self._to_entity(item, states.get(item["id"])) for item in work]
        logger.info(f"Course {course_id}: {len(entities)} assignments, {len(submissions)} submissions")
        return entities

    def _to_entity(self, item: Dict[str, Any], state: Optional[str]) -> RemoteEntity:
        max_points = item.get("maxPoints")
        return RemoteEntity(
            remote_id=str(item["id"]),
            title=item.get("title") or "",
            link=item.get("alternateLink"),
            state=state,
            due_at=parse_due(item.get("dueDate"), item.get("dueTime")),
            points=max_points,
            attributes={"priority": assignment_priority(max_points)},
        )

    async def list_announcements(self, course_id: str) -> List[RemoteEntity]:
        items = await self.api.get_paginated(
            f"{CLASSROOM_API_BASE}/courses/{course_id}/announcements",
            "announcements",
            {
                "fields": "nextPageToken,announcements(id,text,alternateLink,updateTime)",
                "orderBy": "updateTime desc",
            },
        )
        return [
            RemoteEntity(
                remote_id=f"announcement-{item['id']}",
                title=item.get("text") or "",
                link=item.get("alternateLink"),
                update_time=parse_timestamp(item["updateTime"]),
            )
            for item in items
        ]
