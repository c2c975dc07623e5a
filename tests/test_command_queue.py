from unittest import IsolatedAsyncioTestCase

import httpx

from fakes import FakeCalendarClient, FakeTodoistClient, RecordingSink

from taskbridge.command_queue import COMMAND_TYPE_KEY, CalendarCommandQueue, TodoistCommandQueue
from taskbridge.exceptions import DuplicateTemporaryIdError, InvariantError, PartialFlushError
from taskbridge.models import OperationKind


class TodoistCommandQueueTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = FakeTodoistClient()
        self.sink = RecordingSink()
        self.queue = TodoistCommandQueue(self.client, on_error=self.sink)

    def test_enqueue_is_pure_and_hands_out_temp_ids(self) -> None:
        temp_id = self.queue.create("course/a1", {"content": "Essay"})

        self.assertEqual(len(self.queue), 1)
        self.assertEqual(self.queue.pending[0].temp_id, temp_id)
        self.assertEqual(self.client.calls, [])

    def test_reusing_a_temp_id_is_an_invariant_error(self) -> None:
        self.queue.create("course/a1", {"content": "Essay"}, temp_id="fixed")

        with self.assertRaises(DuplicateTemporaryIdError):
            self.queue.create("course/a2", {"content": "Lab"}, temp_id="fixed")

    def test_temp_id_on_a_non_create_is_an_invariant_error(self) -> None:
        with self.assertRaises(InvariantError):
            self.queue.enqueue("course/a1", OperationKind.CLOSE, {"id": "7"}, temp_id="nope")

    async def test_flushing_an_empty_queue_sends_nothing(self) -> None:
        result = await self.queue.flush()

        self.assertEqual(self.client.calls, [])
        self.assertEqual(result.commands, [])
        self.assertEqual(self.queue.sync_token, "*")

    async def test_flush_maps_kinds_and_advances_the_sync_token(self) -> None:
        temp_id = self.queue.create("course/a1", {"content": "Essay"})
        self.queue.enqueue("course/a2", OperationKind.CLOSE, {"id": "7"})
        self.queue.create("label/homework", {COMMAND_TYPE_KEY: "label_add", "name": "homework"})

        result = await self.queue.flush()

        sync_token, commands = self.client.calls[0]
        self.assertEqual(sync_token, "*")
        self.assertEqual([c["type"] for c in commands], ["item_add", "item_close", "label_add"])
        self.assertEqual(commands[0]["temp_id"], temp_id)
        self.assertNotIn("temp_id", commands[1])
        self.assertEqual(commands[2]["args"], {"name": "homework"})
        self.assertEqual(result.real_id(temp_id), "1000")
        self.assertEqual(result.failed_keys(), set())
        self.assertEqual(self.queue.sync_token, "token-1")
        self.assertEqual(len(self.queue), 0)

    async def test_large_batches_are_chunked_and_later_chunks_see_real_ids(self) -> None:
        parent = self.queue.create("course/parent", {"content": "Unit"})
        for i in range(150):
            self.queue.create(f"course/t{i}", {"content": f"Topic {i}", "parent_id": parent})

        result = await self.queue.flush()

        self.assertEqual([len(commands) for _, commands in self.client.calls], [100, 51])
        self.assertEqual([token for token, _ in self.client.calls], ["*", "token-1"])
        first_chunk, second_chunk = self.client.calls[0][1], self.client.calls[1][1]
        self.assertEqual(first_chunk[1]["args"]["parent_id"], parent)
        self.assertEqual(second_chunk[0]["args"]["parent_id"], "1000")
        self.assertEqual(len(result.commands), 151)
        self.assertEqual(len(result.temp_id_mapping), 151)

    async def test_command_errors_are_reported_not_raised(self) -> None:
        self.client.fail_when = lambda command: "Item not found" if command["type"] == "item_close" else None
        self.queue.enqueue("course/a1", OperationKind.CLOSE, {"id": "7"})
        self.queue.create("course/a2", {"content": "Essay"})

        result = await self.queue.flush()

        self.assertEqual(result.failed_keys(), {"course/a1"})
        self.assertEqual(len(self.sink.calls), 1)
        context, message = self.sink.calls[0]
        self.assertEqual(context, "todoist_command")
        self.assertIn("[course/a1/close]", message)
        self.assertIn("Item not found", message)

    async def test_transport_failure_leaves_the_queue_intact(self) -> None:
        self.client.raise_error = ConnectionError("reset by peer")
        self.queue.create("course/a1", {"content": "Essay"})
        pending = self.queue.pending

        with self.assertRaises(ConnectionError):
            await self.queue.flush()

        self.assertEqual(self.queue.pending, pending)
        self.assertEqual(self.queue.sync_token, "*")

        self.client.raise_error = None
        result = await self.queue.flush()
        self.assertEqual(result.real_id(pending[0].temp_id), "1000")

    async def test_failure_after_an_applied_chunk_keeps_only_the_unsent_commands(self) -> None:
        self.queue = TodoistCommandQueue(self.client, on_error=self.sink, chunk_size=2)
        first = self.queue.create("course/a1", {"content": "Essay"})
        second = self.queue.create("course/a2", {"content": "Lab"})
        third = self.queue.create("course/a3", {"content": "Quiz"})
        self.client.raise_error = httpx.ConnectError("reset by peer")
        self.client.raise_after = 1

        with self.assertRaises(PartialFlushError) as raised:
            await self.queue.flush()

        applied = raised.exception.result
        self.assertIsInstance(raised.exception.cause, httpx.ConnectError)
        self.assertEqual((applied.real_id(first), applied.real_id(second)), ("1000", "1001"))
        self.assertEqual([command.temp_id for command in self.queue.pending], [third])
        self.assertEqual(self.queue.sync_token, "token-1")

        self.client.raise_error = None
        result = await self.queue.flush()

        self.assertEqual(len(self.client.commands_of_type("item_add")), 3)
        self.assertEqual(result.real_id(third), "1002")


class CalendarCommandQueueTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.calendar = FakeCalendarClient()
        self.sink = RecordingSink()
        self.queue = CalendarCommandQueue(self.calendar, "cal@example.com", on_error=self.sink)

    def test_close_and_reopen_are_not_supported(self) -> None:
        with self.assertRaises(InvariantError):
            self.queue.enqueue("term/p1", OperationKind.CLOSE, {"id": "e1"})

    async def test_create_uses_the_temp_id_as_event_id(self) -> None:
        temp_id = self.queue.create("term/p1", {"summary": "CS 245 - A1"})

        result = await self.queue.flush()

        self.assertEqual(self.calendar.calls[0], ("insert", "cal@example.com", {"summary": "CS 245 - A1", "id": temp_id}))
        self.assertEqual(result.real_id(temp_id), temp_id)

    async def test_existing_event_on_create_counts_as_success(self) -> None:
        temp_id = self.queue.create("term/p1", {"summary": "CS 245 - A1"})
        self.calendar.errors[("insert", temp_id)] = 409

        result = await self.queue.flush()

        self.assertEqual(result.real_id(temp_id), temp_id)
        self.assertEqual(result.failed_commands(), [])

    async def test_update_patches_and_delete_of_missing_event_is_ok(self) -> None:
        self.queue.enqueue("term/p1", OperationKind.UPDATE, {"id": "e1", "summary": "new"})
        self.queue.enqueue("term/p2", OperationKind.DELETE, {"id": "gone"})

        result = await self.queue.flush()

        self.assertEqual(self.calendar.calls[0], ("patch", "cal@example.com", "e1", {"summary": "new"}))
        self.assertEqual(self.calendar.calls[1], ("delete", "cal@example.com", "gone"))
        self.assertEqual(result.failed_commands(), [])

    async def test_client_errors_become_failed_statuses(self) -> None:
        self.calendar.errors[("patch", "e1")] = 400
        command = self.queue.enqueue("term/p1", OperationKind.UPDATE, {"id": "e1", "summary": "x"})

        result = await self.queue.flush()

        self.assertEqual(result.status_of(command).error_code, 400)
        self.assertEqual(result.failed_keys(), {"term/p1"})
        self.assertEqual(self.sink.calls[0][0], "calendar_command")

    async def test_unreachable_calendar_mid_batch_keeps_only_the_unsent_commands(self) -> None:
        created = self.queue.create("term/p1", {"summary": "CS 245 - A1"})
        self.queue.enqueue("term/p2", OperationKind.UPDATE, {"id": "e2", "summary": "A2"})
        deleted = self.queue.enqueue("term/p3", OperationKind.DELETE, {"id": "e3"})
        self.calendar.unreachable.add(("patch", "e2"))

        with self.assertRaises(PartialFlushError) as raised:
            await self.queue.flush()

        self.assertEqual(raised.exception.result.real_id(created), created)
        self.assertEqual([command.correlation_key for command in self.queue.pending], ["term/p2", "term/p3"])
        self.assertNotIn(("delete", "cal@example.com", "e3"), self.calendar.calls)

        self.calendar.unreachable.clear()
        result = await self.queue.flush()

        inserts = [call for call in self.calendar.calls if call[0] == "insert"]
        self.assertEqual(len(inserts), 1)
        self.assertTrue(result.succeeded(deleted))
