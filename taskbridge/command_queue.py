"""
===================================================================================
COMMAND QUEUE - Batched mutations with temporary ids
===================================================================================

Sync jobs never call the target service directly. They enqueue commands while
diffing and flush once per tracked context:

1. enqueue() is pure: it records the command and, for creates, hands out a
   temporary id that later commands in the same batch may reference
   (e.g. a sub-task's parent_id, a task's section_id).
2. flush() submits the batch, returns a BatchResult (temp id -> real id plus a
   status per command) and clears the queue.
3. A transport/HTTP failure before anything was applied raises and leaves the
   queue untouched so the caller can resubmit the same batch. A failure after
   some chunks or events were applied drops those commands from the queue and
   raises PartialFlushError carrying their result. Individual command failures
   do NOT raise: they are logged, sent to the error sink and reported in the
   result.
"""

import json
import logging
import httpx
from typing import Any, Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from taskbridge.config import TODOIST_BATCH_LIMIT
from taskbridge.exceptions import DuplicateTemporaryIdError, InvariantError, PartialFlushError
from taskbridge.google_calendar import GoogleCalendarClient, is_status
from taskbridge.logging_service import ErrorSink
from taskbridge.models import OK, BatchResult, CommandStatus, OperationKind, PendingCommand
from taskbridge.todoist_client import TodoistClient
from taskbridge.utils import chunked


def new_temp_id() -> str:
    return uuid4().hex


class CommandQueue:
    name = "queue"
    supported_kinds: FrozenSet[OperationKind] = frozenset(OperationKind)

    def __init__(self, on_error: Optional[ErrorSink] = None):
        self.on_error = on_error
        self.logger = logging.getLogger(f"CommandQueue.{self.name}")
        self._commands: List[PendingCommand] = []
        self._temp_ids: Set[str] = set()

    def __len__(self) -> int:
        return len(self._commands)

    @property
    def pending(self) -> List[PendingCommand]:
        return list(self._commands)

    def enqueue(
        self,
        correlation_key: str,
        kind: OperationKind,
        args: Dict[str, Any],
        temp_id: Optional[str] = None,
    ) -> PendingCommand:
        kind = OperationKind(kind)
        if kind not in self.supported_kinds:
            raise InvariantError(f"{self.name} does not support {kind.value} commands")

        if kind is OperationKind.CREATE:
            temp_id = temp_id or new_temp_id()
            if temp_id in self._temp_ids:
                raise DuplicateTemporaryIdError(temp_id)
            self._temp_ids.add(temp_id)
        elif temp_id is not None:
            raise InvariantError(f"Only create commands carry a temporary id ({kind.value} given {temp_id})")

        command = PendingCommand(kind=kind, args=dict(args), correlation_key=correlation_key, temp_id=temp_id)
        self._commands.append(command)
        self.logger.info(f"[{correlation_key}/{kind.value}] queued")
        return command

    def create(self, correlation_key: str, args: Dict[str, Any], temp_id: Optional[str] = None) -> str:
        """Enqueue a create command and return its temporary id."""
        return self.enqueue(correlation_key, OperationKind.CREATE, args, temp_id=temp_id).temp_id

    def discard(self) -> List[PendingCommand]:
        """Drop every queued command without sending it."""
        dropped, self._commands = self._commands, []
        if dropped:
            self.logger.warning(f"Discarding {len(dropped)} unsent {self.name} commands")
        return dropped

    async def flush(self) -> BatchResult:
        if not self._commands:
            return BatchResult()

        commands = list(self._commands)
        self.logger.info(f"Running {len(commands)} {self.name} commands...")
        result = BatchResult()
        try:
            await self._submit(commands, result)
        except Exception as e:
            if not result.commands:
                raise
            applied = {command.uuid for command in result.commands}
            self._commands = [command for command in self._commands if command.uuid not in applied]
            self.logger.error(
                f"{self.name} flush interrupted: {len(applied)} applied, {len(self._commands)} left queued: {e}"
            )
            await self._report(result)
            raise PartialFlushError(result, e) from e

        self._commands = []
        await self._report(result)
        return result

    async def _submit(self, commands: List[PendingCommand], result: BatchResult):
        """Send `commands`, extending `result` as each chunk or event is applied."""
        raise NotImplementedError

    async def _report(self, result: BatchResult):
        for command in result.commands:
            status = result.status_of(command)
            label = f"[{command.correlation_key}/{command.kind.value}]"
            if status.ok:
                self.logger.info(f"{label} {self.name} sync ok")
                continue

            message = f"{label} {self.name} sync error {status.error_code}: {status.error}"
            message += f"\n{json.dumps(command.args, default=str)}"
            self.logger.error(message)
            if self.on_error:
                await self.on_error(f"{self.name}_command", message)


# ============================================================================
# TODOIST
# ============================================================================

ITEM_COMMAND_TYPES = {
    OperationKind.CREATE: "item_add",
    OperationKind.UPDATE: "item_update",
    OperationKind.CLOSE: "item_close",
    OperationKind.REOPEN: "item_uncomplete",
    OperationKind.DELETE: "item_delete",
}

# args key used to send a command type other than the item default
COMMAND_TYPE_KEY = "type"


def _substitute(value: Any, mapping: Dict[str, str]) -> Any:
    """Replace temp ids resolved by an earlier chunk with their real ids."""
    if isinstance(value, str):
        return mapping.get(value, value)
    if isinstance(value, list):
        return [_substitute(v, mapping) for v in value]
    if isinstance(value, dict):
        return {k: _substitute(v, mapping) for k, v in value.items()}
    return value


class TodoistCommandQueue(CommandQueue):
    """
    Queue backed by the Todoist Sync API.

    The sync token is the evolving cursor: it starts at "*" and is replaced by
    the token of every successful response.
    """
    name = "todoist"

    def __init__(self, client: TodoistClient, on_error: Optional[ErrorSink] = None, chunk_size: int = TODOIST_BATCH_LIMIT):
        super().__init__(on_error=on_error)
        self.client = client
        self.chunk_size = chunk_size
        self.sync_token = "*"

    def _to_wire(self, command: PendingCommand, resolved: Dict[str, str]) -> Dict[str, Any]:
        args = dict(command.args)
        command_type = args.pop(COMMAND_TYPE_KEY, None) or ITEM_COMMAND_TYPES[command.kind]
        wire = {
            "type": command_type,
            "uuid": command.uuid,
            "args": _substitute(args, resolved) if resolved else args,
        }
        if command.temp_id:
            wire["temp_id"] = command.temp_id
        return wire

    async def _submit(self, commands: List[PendingCommand], result: BatchResult):
        for chunk in chunked(commands, self.chunk_size):
            wire = [self._to_wire(command, result.temp_id_mapping) for command in chunk]
            data = await self.client.sync(self.sync_token, wire)

            statuses = {
                command_uuid: CommandStatus.from_wire(status)
                for command_uuid, status in (data.get("sync_status") or {}).items()
            }
            mapping = {
                temp_id: str(real_id)
                for temp_id, real_id in (data.get("temp_id_mapping") or {}).items()
            }
            result.extend(BatchResult(temp_id_mapping=mapping, per_command_status=statuses, commands=chunk))
            if data.get("sync_token"):
                self.sync_token = data["sync_token"]


# ============================================================================
# GOOGLE CALENDAR
# ============================================================================

class CalendarCommandQueue(CommandQueue):
    """
    Queue that replays commands against one Google Calendar.

    Calendar has no batch endpoint with temporary ids, so creates use the
    temporary id as the client-chosen event id. Replaying a batch is therefore
    safe: an event that already exists answers 409 and keeps that id.
    """
    name = "calendar"
    supported_kinds = frozenset({OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE})

    def __init__(self, client: GoogleCalendarClient, calendar_id: str, on_error: Optional[ErrorSink] = None):
        super().__init__(on_error=on_error)
        self.client = client
        self.calendar_id = calendar_id

    async def _apply(self, command: PendingCommand, result: BatchResult):
        args = dict(command.args)
        if command.kind is OperationKind.CREATE:
            try:
                event = await self.client.insert_event(self.calendar_id, {**args, "id": command.temp_id})
                result.temp_id_mapping[command.temp_id] = event.get("id", command.temp_id)
            except httpx.HTTPStatusError as e:
                if not is_status(e, 409):
                    raise
                result.temp_id_mapping[command.temp_id] = command.temp_id
        elif command.kind is OperationKind.UPDATE:
            event_id = args.pop("id")
            await self.client.patch_event(self.calendar_id, event_id, args)
        else:
            await self.client.delete_event(self.calendar_id, args["id"])

    async def _submit(self, commands: List[PendingCommand], result: BatchResult):
        for command in commands:
            try:
                await self._apply(command, result)
                result.per_command_status[command.uuid] = OK
            except httpx.HTTPStatusError as e:
                result.per_command_status[command.uuid] = CommandStatus(
                    ok=False,
                    error_code=e.response.status_code,
                    error=e.response.text[:500],
                )
            result.commands.append(command)
