from datetime import datetime, timezone
from unittest import TestCase

from fakes import FakeSupabase

from taskbridge.models import SnapshotRecord
from taskbridge.snapshot_store import SupabaseSnapshotStore, clear_context, load_context, save_context


class SupabaseSnapshotStoreTests(TestCase):
    def setUp(self) -> None:
        self.supabase = FakeSupabase()
        self.store = SupabaseSnapshotStore(self.supabase)

    def test_missing_key_reads_as_empty_document(self) -> None:
        self.assertEqual(self.store.get("classroom/1"), {})

    def test_merge_keeps_fields_owned_by_configuration(self) -> None:
        self.store.set("classroom/1", {"name": "Calculus", "project_id": 123})
        self.store.set("classroom/1", {"entities": {}}, merge=True)

        self.assertEqual(self.store.get("classroom/1"), {"name": "Calculus", "project_id": 123, "entities": {}})
        self.assertEqual(len(self.supabase.tables["sync_snapshots"]), 1)

    def test_set_without_merge_replaces_the_document(self) -> None:
        self.store.set("notion-calendar/2A", {"entities": {"p1": {}}})
        self.store.set("notion-calendar/2A", {})

        self.assertEqual(self.store.get("notion-calendar/2A"), {})

    def test_context_round_trip(self) -> None:
        due = datetime(2024, 5, 1, 23, 59, tzinfo=timezone.utc)
        marker = datetime(2024, 4, 1, 8, 0, tzinfo=timezone.utc)
        self.store.set("classroom/1", {"name": "Calculus", "project_id": 123})

        context = load_context(self.store, "classroom/1", "1")
        self.assertEqual(context.name, "Calculus")
        self.assertEqual(context.container_id, "123")
        self.assertIsNone(context.last_change_marker)

        context.entities["w1"] = SnapshotRecord(title="Essay", state="CREATED", due_at=due, target_id="42")
        context.last_change_marker = marker
        save_context(self.store, context)

        reloaded = load_context(self.store, "classroom/1", "1")
        self.assertEqual(reloaded.entities, context.entities)
        self.assertEqual(reloaded.last_change_marker, marker)
        self.assertEqual(reloaded.name, "Calculus")

    def test_clear_context_forgets_entities_only(self) -> None:
        self.store.set("d2l/9", {
            "name": "Physics",
            "project_id": 5,
            "last_change_marker": "2024-04-01T08:00:00+00:00",
            "entities": {"assignment-1": {"title": "Lab", "target_id": "7"}},
        })

        clear_context(self.store, "d2l/9")

        context = load_context(self.store, "d2l/9", "9")
        self.assertEqual(context.entities, {})
        self.assertIsNone(context.last_change_marker)
        self.assertEqual(context.container_id, "5")
