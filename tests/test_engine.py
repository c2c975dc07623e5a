from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from unittest import IsolatedAsyncioTestCase

import httpx

from fakes import FakeTodoistClient, RecordingSink

from taskbridge.command_queue import TodoistCommandQueue
from taskbridge.engine import AUXILIARY, CLOSE, EPOCH, REOPEN, ReconciliationEngine, SyncPolicy
from taskbridge.exceptions import MissingParentError, PartialFlushError
from taskbridge.models import RemoteEntity, SnapshotRecord, TrackedContext

T1 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(hours=1)
T3 = T1 + timedelta(hours=2)


class TaskPolicy(SyncPolicy):
    name = "tasks"
    terminal_states = frozenset({"DONE"})

    def transition(self, old_state, new_state):
        if new_state == "DONE":
            return CLOSE
        if old_state == "DONE" and new_state == "ACTIVE":
            return REOPEN
        if new_state == "GRADED":
            return AUXILIARY
        return None

    def build_create(self, entity: RemoteEntity, parent_ref: Optional[str]) -> Dict[str, Any]:
        args = {"content": entity.title}
        if parent_ref:
            args["parent_id"] = parent_ref
        return args

    def build_update(self, entity: RemoteEntity, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id, "content": entity.title}

    def build_auxiliary(self, entity: RemoteEntity) -> Dict[str, Any]:
        return {"content": f"Graded: {entity.title}"}

    def build_announcement(self, entity: RemoteEntity) -> Dict[str, Any]:
        return {"content": f"Announcement: {entity.title}"}


class DeletingPolicy(TaskPolicy):
    delete_missing = True


def make_context(entities=None, marker=None) -> TrackedContext:
    return TrackedContext(
        key="test/course-1",
        remote_id="course-1",
        name="Physics",
        container_id="project-1",
        last_change_marker=marker,
        entities=dict(entities or {}),
    )


def entity(remote_id: str, title: str = "Essay", **kwargs) -> RemoteEntity:
    return RemoteEntity(remote_id=remote_id, title=title, **kwargs)


class ReconciliationEngineTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = FakeTodoistClient()
        self.sink = RecordingSink()
        self.queue = TodoistCommandQueue(self.client, on_error=self.sink)
        self.engine = ReconciliationEngine(self.queue)
        self.policy = TaskPolicy()

    async def test_new_entity_gets_exactly_one_create_and_its_real_id(self) -> None:
        self.client = FakeTodoistClient(first_id=42)
        self.engine = ReconciliationEngine(TodoistCommandQueue(self.client))

        outcome = await self.engine.sync_context(make_context(), [entity("a1", state="ACTIVE")], self.policy)

        creates = self.client.commands_of_type("item_add")
        self.assertEqual(len(creates), 1)
        self.assertEqual(creates[0]["args"], {"content": "Essay"})
        self.assertEqual(outcome.context.entities["a1"].target_id, "42")
        self.assertEqual(outcome.context.entities["a1"].state, "ACTIVE")
        self.assertEqual(outcome.stats.created, 1)

    async def test_unchanged_and_unfetched_entries_are_carried_over_as_is(self) -> None:
        kept = SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")
        vanished = SnapshotRecord(title="Lab", state="ACTIVE", target_id="8")
        context = make_context({"a1": kept, "a2": vanished})

        outcome = await self.engine.sync_context(context, [entity("a1", state="ACTIVE")], self.policy)

        self.assertEqual(self.client.calls, [])
        self.assertIs(outcome.context.entities["a1"], kept)
        self.assertIs(outcome.context.entities["a2"], vanished)

    async def test_submitting_work_closes_the_task(self) -> None:
        context = make_context({"a1": SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")})

        outcome = await self.engine.sync_context(context, [entity("a1", state="DONE")], self.policy)

        self.assertEqual([c["type"] for c in self.client.commands], ["item_close"])
        self.assertEqual(self.client.commands[0]["args"], {"id": "7"})
        self.assertEqual(outcome.context.entities["a1"], SnapshotRecord(title="Essay", state="DONE", target_id="7"))
        self.assertEqual(outcome.stats.closed, 1)

    async def test_reclaiming_work_reopens_the_task(self) -> None:
        context = make_context({"a1": SnapshotRecord(title="Essay", state="DONE", target_id="7")})

        outcome = await self.engine.sync_context(context, [entity("a1", state="ACTIVE")], self.policy)

        self.assertEqual([c["type"] for c in self.client.commands], ["item_uncomplete"])
        self.assertEqual(outcome.context.entities["a1"].state, "ACTIVE")
        self.assertEqual(outcome.stats.reopened, 1)

    async def test_auxiliary_transition_creates_a_second_task(self) -> None:
        context = make_context({"a1": SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")})

        outcome = await self.engine.sync_context(context, [entity("a1", state="GRADED")], self.policy)

        creates = self.client.commands_of_type("item_add")
        self.assertEqual(len(creates), 1)
        self.assertEqual(creates[0]["args"], {"content": "Graded: Essay"})
        # the primary task keeps its id
        self.assertEqual(outcome.context.entities["a1"].target_id, "7")
        self.assertEqual(outcome.context.entities["a1"].state, "GRADED")

    async def test_title_drift_updates_the_task(self) -> None:
        context = make_context({"a1": SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")})

        outcome = await self.engine.sync_context(context, [entity("a1", title="Essay v2", state="ACTIVE")], self.policy)

        self.assertEqual(self.client.commands_of_type("item_update")[0]["args"], {"id": "7", "content": "Essay v2"})
        self.assertEqual(outcome.context.entities["a1"].title, "Essay v2")
        self.assertEqual(outcome.stats.updated, 1)

    async def test_due_date_drift_needs_both_dates(self) -> None:
        context = make_context({"a1": SnapshotRecord(title="Essay", target_id="7")})

        await self.engine.sync_context(context, [entity("a1", due_at=T1)], self.policy)
        self.assertEqual(self.client.calls, [])

        context = make_context({"a1": SnapshotRecord(title="Essay", target_id="7", due_at=T1)})
        await self.engine.sync_context(context, [entity("a1", due_at=T2)], self.policy)
        self.assertEqual(len(self.client.commands_of_type("item_update")), 1)

    async def test_terminal_entity_seen_first_is_recorded_without_a_command(self) -> None:
        outcome = await self.engine.sync_context(make_context(), [entity("a1", state="DONE")], self.policy)

        self.assertEqual(self.client.calls, [])
        self.assertEqual(outcome.context.entities["a1"], SnapshotRecord(title="Essay", state="DONE"))

        # reclaimed later: no task exists yet, so it is created
        outcome = await self.engine.sync_context(outcome.context, [entity("a1", state="ACTIVE")], self.policy)
        self.assertEqual(len(self.client.commands_of_type("item_add")), 1)
        self.assertEqual(outcome.context.entities["a1"].target_id, "1000")

    async def test_failed_create_leaves_no_snapshot_entry(self) -> None:
        self.client.fail_when = lambda command: "Invalid argument" if command["type"] == "item_add" else None

        outcome = await self.engine.sync_context(make_context(), [entity("a1")], self.policy)

        self.assertNotIn("a1", outcome.context.entities)
        self.assertEqual(len(outcome.failures), 1)
        self.assertEqual(outcome.stats.errors, 1)
        self.assertEqual(len(self.sink.calls), 1)
        self.assertEqual(self.sink.calls[0][0], "todoist_command")
        self.assertIn("Invalid argument", self.sink.calls[0][1])

    async def test_missing_status_counts_as_failure(self) -> None:
        self.client.drop_status = lambda command: True

        outcome = await self.engine.sync_context(make_context(), [entity("a1")], self.policy)

        self.assertNotIn("a1", outcome.context.entities)
        self.assertEqual(len(outcome.failures), 1)

    async def test_failed_update_keeps_the_previous_record(self) -> None:
        old = SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")
        self.client.fail_when = lambda command: "Item not found" if command["type"] == "item_update" else None

        outcome = await self.engine.sync_context(make_context({"a1": old}), [entity("a1", title="New")], self.policy)

        self.assertIs(outcome.context.entities["a1"], old)

    async def test_second_run_with_same_data_sends_nothing(self) -> None:
        entities = [entity("a1", state="ACTIVE", due_at=T1), entity("a2", state="DONE")]

        first = await self.engine.sync_context(make_context(), entities, self.policy)
        second = await self.engine.sync_context(first.context, entities, self.policy)

        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(second.context.entities, first.context.entities)

    async def test_child_create_references_the_parent_temp_id(self) -> None:
        lessons = [
            entity("module-1", title="Unit 1"),
            entity("topic-1", title="Kinematics", parent_remote_id="module-1"),
        ]

        outcome = await self.engine.sync_context(make_context(), lessons, self.policy)

        parent, child = self.client.commands_of_type("item_add")
        self.assertEqual(child["args"]["parent_id"], parent["temp_id"])
        self.assertEqual(outcome.context.entities["module-1"].target_id, "1000")
        self.assertEqual(outcome.context.entities["topic-1"].target_id, "1001")

    async def test_child_of_existing_parent_references_the_real_id(self) -> None:
        context = make_context({"module-1": SnapshotRecord(title="Unit 1", target_id="55")})

        await self.engine.sync_context(
            context, [entity("module-1", title="Unit 1"), entity("topic-1", parent_remote_id="module-1")], self.policy
        )

        self.assertEqual(self.client.commands_of_type("item_add")[0]["args"]["parent_id"], "55")

    def test_unknown_parent_raises(self) -> None:
        with self.assertRaises(MissingParentError):
            self.engine.plan(make_context(), [entity("topic-1", parent_remote_id="module-9")], self.policy)

    async def test_gate_surfaces_only_items_newer_than_the_marker(self) -> None:
        feed = [entity("n3", title="three", update_time=T3), entity("n2", title="two", update_time=T2),
                entity("n1", title="one", update_time=T1)]
        plan = self.engine.begin(make_context(marker=T2))
        self.engine.gate(plan, feed, self.policy)

        outcome = await self.engine.commit(plan)

        self.assertEqual([c["args"]["content"] for c in self.client.commands], ["Announcement: three"])
        self.assertEqual(outcome.context.last_change_marker, T3)
        self.assertEqual(outcome.stats.announced, 1)

    async def test_gate_first_run_only_initialises_the_marker(self) -> None:
        feed = [entity("n2", update_time=T2), entity("n1", update_time=T1)]
        plan = self.engine.begin(make_context())
        self.engine.gate(plan, feed, self.policy)

        outcome = await self.engine.commit(plan)

        self.assertEqual(self.client.calls, [])
        self.assertEqual(outcome.context.last_change_marker, T2)

    async def test_gate_first_run_without_items_starts_at_epoch(self) -> None:
        plan = self.engine.begin(make_context())
        self.engine.gate(plan, [], self.policy)

        outcome = await self.engine.commit(plan)

        self.assertEqual(outcome.context.last_change_marker, EPOCH)

    async def test_gate_keeps_the_marker_below_the_oldest_failure(self) -> None:
        feed = [entity("n3", title="three", update_time=T3), entity("n2", title="two", update_time=T2)]
        self.client.fail_when = lambda command: "boom" if command["args"]["content"].endswith("three") else None

        plan = self.engine.begin(make_context(marker=T1))
        self.engine.gate(plan, feed, self.policy)
        outcome = await self.engine.commit(plan)

        self.assertEqual(outcome.context.last_change_marker, T2)
        self.assertEqual(outcome.stats.announced, 1)

        self.client.fail_when = lambda command: "boom" if command["args"]["content"].endswith("two") else None
        plan = self.engine.begin(make_context(marker=T1))
        self.engine.gate(plan, feed, self.policy)
        outcome = await self.engine.commit(plan)

        self.assertEqual(outcome.context.last_change_marker, T1)

    async def test_delete_missing_removes_vanished_entities(self) -> None:
        context = make_context({
            "a1": SnapshotRecord(title="Essay", target_id="7"),
            "a2": SnapshotRecord(title="Lab", target_id="8"),
        })

        outcome = await self.engine.sync_context(context, [entity("a1")], DeletingPolicy())

        self.assertEqual([c["args"] for c in self.client.commands_of_type("item_delete")], [{"id": "8"}])
        self.assertEqual(set(outcome.context.entities), {"a1"})
        self.assertEqual(outcome.stats.deleted, 1)

    async def test_failed_delete_keeps_the_entity(self) -> None:
        context = make_context({"a2": SnapshotRecord(title="Lab", target_id="8")})
        self.client.fail_when = lambda command: "boom"

        outcome = await self.engine.sync_context(context, [], DeletingPolicy())

        self.assertIn("a2", outcome.context.entities)
        self.assertEqual(outcome.stats.errors, 1)

    async def test_transport_failure_propagates_and_keeps_the_queue(self) -> None:
        self.client.raise_error = RuntimeError("connection reset")
        plan = self.engine.plan(make_context(), [entity("a1")], self.policy)

        with self.assertRaises(RuntimeError):
            await self.engine.commit(plan)

        self.assertEqual(self.queue.pending, plan.commands)

    async def test_state_change_of_an_untargeted_entity_creates_the_auxiliary_task(self) -> None:
        # first seen already done, so no primary task was ever created
        context = make_context({"a1": SnapshotRecord(title="Essay", state="DONE")})

        outcome = await self.engine.sync_context(context, [entity("a1", state="GRADED")], self.policy)

        self.assertEqual([c["args"]["content"] for c in self.client.commands_of_type("item_add")],
                         ["Essay", "Graded: Essay"])
        self.assertEqual(outcome.context.entities["a1"].state, "GRADED")
        self.assertEqual(outcome.context.entities["a1"].target_id, "1000")

    async def test_applied_close_is_kept_when_the_update_fails(self) -> None:
        old = SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")
        self.client.fail_when = lambda command: "Item not found" if command["type"] == "item_update" else None

        outcome = await self.engine.sync_context(
            make_context({"a1": old}), [entity("a1", title="Essay v2", state="DONE")], self.policy
        )

        self.assertEqual(outcome.context.entities["a1"], SnapshotRecord(title="Essay", state="DONE", target_id="7"))
        self.assertEqual((outcome.stats.closed, outcome.stats.errors), (1, 1))

        # the next run only retries the update
        await self.engine.sync_context(outcome.context, [entity("a1", title="Essay v2", state="DONE")], self.policy)
        self.assertEqual([c["type"] for c in self.client.calls[-1][1]], ["item_update"])

    async def test_applied_update_is_kept_when_the_close_fails(self) -> None:
        old = SnapshotRecord(title="Essay", state="ACTIVE", target_id="7")
        self.client.fail_when = lambda command: "boom" if command["type"] == "item_close" else None

        outcome = await self.engine.sync_context(
            make_context({"a1": old}), [entity("a1", title="Essay v2", state="DONE")], self.policy
        )

        self.assertEqual(outcome.context.entities["a1"], SnapshotRecord(title="Essay v2", state="ACTIVE", target_id="7"))

    async def test_interrupted_commit_resolves_the_applied_chunk_and_drops_the_rest(self) -> None:
        self.queue = TodoistCommandQueue(self.client, chunk_size=2)
        self.engine = ReconciliationEngine(self.queue)
        self.client.raise_error = httpx.ConnectError("reset by peer")
        self.client.raise_after = 1
        plan = self.engine.plan(make_context(), [entity("a1"), entity("a2"), entity("a3")], self.policy)

        with self.assertRaises(PartialFlushError) as raised:
            await self.engine.commit(plan)

        context = raised.exception.outcome.context
        self.assertEqual({k: v.target_id for k, v in context.entities.items()}, {"a1": "1000", "a2": "1001"})
        self.assertEqual(len(self.queue), 0)

        self.client.raise_error = None
        outcome = await self.engine.sync_context(context, [entity("a1"), entity("a2"), entity("a3")], self.policy)

        self.assertEqual(len(self.client.commands_of_type("item_add")), 3)
        self.assertEqual(outcome.context.entities["a3"].target_id, "1002")
