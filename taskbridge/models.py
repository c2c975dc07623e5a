"""
Canonical records shared by the adapters, the reconciliation engine and the
command queues.

Remote payloads are turned into `RemoteEntity` objects at the adapter boundary;
everything downstream only looks at these typed fields. Snapshot documents are
plain JSON (datetimes as ISO strings) so any key-value store can hold them.
"""

from dataclasses import dataclass, field, replace, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from taskbridge.exceptions import InvalidRecordError
from taskbridge.utils import parse_timestamp, to_iso


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CLOSE = "close"
    REOPEN = "reopen"
    DELETE = "delete"


def _check_aware(name: str, value: Optional[datetime]) -> None:
    if value is None:
        return
    if not isinstance(value, datetime):
        raise InvalidRecordError(f"{name} must be a datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        raise InvalidRecordError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class SnapshotRecord:
    """Last-synchronized state of one remote entity."""
    title: str
    link: Optional[str] = None
    state: Optional[str] = None
    due_at: Optional[datetime] = None
    target_id: Optional[str] = None
    revision: Optional[str] = None

    def with_target(self, target_id: Optional[str]) -> "SnapshotRecord":
        return replace(self, target_id=target_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["due_at"] = to_iso(self.due_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotRecord":
        target_id = data.get("target_id")
        return cls(
            title=data.get("title") or "",
            link=data.get("link"),
            state=data.get("state"),
            due_at=parse_timestamp(data.get("due_at")),
            target_id=str(target_id) if target_id is not None else None,
            revision=data.get("revision"),
        )


@dataclass(frozen=True)
class RemoteEntity:
    """
    Freshly fetched, canonical form of one remote entity.

    `attributes` carries domain-only payload (course name, raw dates, ...) that
    the per-domain policy reads when it builds target arguments. The diff itself
    never looks inside it.
    """
    remote_id: str
    title: str
    link: Optional[str] = None
    state: Optional[str] = None
    due_at: Optional[datetime] = None
    points: Optional[float] = None
    update_time: Optional[datetime] = None
    parent_remote_id: Optional[str] = None
    revision: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if not isinstance(self.remote_id, str) or not self.remote_id:
            raise InvalidRecordError(f"Entity id must be a non-empty string, got {self.remote_id!r}")
        if not isinstance(self.title, str):
            raise InvalidRecordError(f"Entity {self.remote_id} has a non-string title")
        _check_aware("due_at", self.due_at)
        _check_aware("update_time", self.update_time)

    def to_record(self, target_id: Optional[str] = None) -> SnapshotRecord:
        return SnapshotRecord(
            title=self.title,
            link=self.link,
            state=self.state,
            due_at=self.due_at,
            target_id=target_id,
            revision=self.revision,
        )


@dataclass
class TrackedContext:
    """One remote course/subject and its entity snapshot."""
    key: str
    remote_id: str
    name: str
    container_id: Optional[str] = None
    last_change_marker: Optional[datetime] = None
    entities: Dict[str, SnapshotRecord] = field(default_factory=dict)

    @classmethod
    def from_document(
        cls,
        key: str,
        remote_id: str,
        document: Dict[str, Any],
        container_id: Optional[str] = None,
    ) -> "TrackedContext":
        entities = {
            entity_id: SnapshotRecord.from_dict(value)
            for entity_id, value in (document.get("entities") or {}).items()
        }
        project_id = document.get("project_id")
        return cls(
            key=key,
            remote_id=remote_id,
            name=document.get("name") or remote_id,
            container_id=container_id or (str(project_id) if project_id is not None else None),
            last_change_marker=parse_timestamp(document.get("last_change_marker")),
            entities=entities,
        )

    def to_document(self) -> Dict[str, Any]:
        """The part of the context document owned by the sync run."""
        return {
            "last_change_marker": to_iso(self.last_change_marker),
            "entities": {key: record.to_dict() for key, record in self.entities.items()},
        }


@dataclass
class PendingCommand:
    """One queued mutation against the target service."""
    kind: OperationKind
    args: Dict[str, Any]
    correlation_key: str
    temp_id: Optional[str] = None
    uuid: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class CommandStatus:
    ok: bool
    error_code: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_wire(cls, value: Any) -> "CommandStatus":
        if value == "ok":
            return OK
        if isinstance(value, dict):
            return cls(ok=False, error_code=value.get("error_code"), error=value.get("error"))
        return cls(ok=False, error=str(value))


OK = CommandStatus(ok=True)
MISSING_STATUS = CommandStatus(ok=False, error="No status returned for command")


@dataclass
class BatchResult:
    """Outcome of one flush of a command queue."""
    temp_id_mapping: Dict[str, str] = field(default_factory=dict)
    per_command_status: Dict[str, CommandStatus] = field(default_factory=dict)
    commands: List[PendingCommand] = field(default_factory=list)

    def status_of(self, command: PendingCommand) -> CommandStatus:
        return self.per_command_status.get(command.uuid, MISSING_STATUS)

    def succeeded(self, command: PendingCommand) -> bool:
        return self.status_of(command).ok

    def real_id(self, temp_id: str) -> Optional[str]:
        return self.temp_id_mapping.get(temp_id)

    def failed_commands(self) -> List[PendingCommand]:
        return [command for command in self.commands if not self.succeeded(command)]

    def failed_keys(self) -> Set[str]:
        return {command.correlation_key for command in self.failed_commands()}

    def extend(self, other: "BatchResult") -> None:
        self.temp_id_mapping.update(other.temp_id_mapping)
        self.per_command_status.update(other.per_command_status)
        self.commands.extend(other.commands)
