"""
===================================================================================
RECONCILIATION ENGINE - Snapshot diff → batched commands → resolved snapshot
===================================================================================

One engine serves every job. What differs between domains lives in a small
`SyncPolicy` subclass:

- terminal_states:  states that mean "already handled" (never surfaced as new)
- transition():     (old state, new state) -> "close" | "reopen" | "auxiliary"
- drift_fields:     snapshot fields whose change triggers an update
- delete_missing:   delete target objects whose remote entity disappeared
- build_*():        target-service arguments for each kind of command

Per tracked context:

    plan = engine.begin(context)
    engine.diff(plan, entities, policy)          # any number of collections
    engine.gate(plan, feed_items, feed_policy)   # append-only feed, optional
    outcome = await engine.commit(plan)          # one flush + id resolution

`outcome.context` is the snapshot to persist (one write). Commands that failed
leave their part of the snapshot as if they were never attempted, so the next
run re-diffs the entity as new/changed.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from taskbridge.command_queue import CommandQueue
from taskbridge.exceptions import InvalidRecordError, MissingParentError, PartialFlushError
from taskbridge.models import (
    BatchResult,
    OperationKind,
    PendingCommand,
    RemoteEntity,
    SnapshotRecord,
    TrackedContext,
)
from taskbridge.sync_base import SyncStats

logger = logging.getLogger("ReconciliationEngine")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CLOSE = "close"
REOPEN = "reopen"
AUXILIARY = "auxiliary"


class SyncPolicy:
    """Per-domain diff rules. Subclasses override what their domain needs."""

    name = "entity"
    terminal_states: FrozenSet[str] = frozenset()
    drift_fields: Tuple[str, ...] = ("title", "due_at")
    delete_missing = False
    key_prefix = ""

    def is_terminal(self, state: Optional[str]) -> bool:
        return state in self.terminal_states

    def transition(self, old_state: Optional[str], new_state: Optional[str]) -> Optional[str]:
        return None

    def owns(self, remote_id: str) -> bool:
        return remote_id.startswith(self.key_prefix)

    def has_drifted(self, entity: RemoteEntity, old: SnapshotRecord) -> bool:
        for name in self.drift_fields:
            new_value, old_value = getattr(entity, name), getattr(old, name)
            if name == "due_at":
                # a due date that appears or disappears is not drift
                if new_value is not None and old_value is not None and new_value != old_value:
                    return True
            elif new_value != old_value:
                return True
        return False

    def build_create(self, entity: RemoteEntity, parent_ref: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError

    def build_update(self, entity: RemoteEntity, record: SnapshotRecord) -> Dict[str, Any]:
        raise NotImplementedError

    def build_auxiliary(self, entity: RemoteEntity) -> Dict[str, Any]:
        raise NotImplementedError

    def build_announcement(self, entity: RemoteEntity) -> Dict[str, Any]:
        raise NotImplementedError

    def build_close(self, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id}

    def build_reopen(self, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id}

    def build_delete(self, record: SnapshotRecord) -> Dict[str, Any]:
        return {"id": record.target_id}


@dataclass
class StagedEntity:
    remote_id: str
    record: SnapshotRecord
    previous: Optional[SnapshotRecord] = None
    create: Optional[PendingCommand] = None
    commands: List[PendingCommand] = field(default_factory=list)


@dataclass
class FeedPlan:
    previous_marker: Optional[datetime]
    marker: Optional[datetime]
    surfaced: List[Tuple[datetime, PendingCommand]] = field(default_factory=list)


@dataclass
class ContextPlan:
    context: TrackedContext
    staged: Dict[str, StagedEntity] = field(default_factory=dict)
    removals: Dict[str, Optional[PendingCommand]] = field(default_factory=dict)
    feed: Optional[FeedPlan] = None
    # remote id -> target id, real or temporary, for parent references
    refs: Dict[str, str] = field(default_factory=dict)
    seen: set = field(default_factory=set)

    @property
    def commands(self) -> List[PendingCommand]:
        commands = [c for staged in self.staged.values() for c in staged.commands]
        commands.extend(c for c in self.removals.values() if c)
        if self.feed:
            commands.extend(c for _, c in self.feed.surfaced)
        return commands


@dataclass
class ContextOutcome:
    context: TrackedContext
    stats: SyncStats
    result: BatchResult
    failures: List[PendingCommand] = field(default_factory=list)


class ReconciliationEngine:
    def __init__(self, queue: CommandQueue):
        self.queue = queue

    def begin(self, context: TrackedContext) -> ContextPlan:
        refs = {
            remote_id: record.target_id
            for remote_id, record in context.entities.items()
            if record.target_id
        }
        return ContextPlan(context=context, refs=refs)

    def _key(self, plan: ContextPlan, remote_id: str) -> str:
        return f"{plan.context.name}/{remote_id}"

    def _parent_ref(self, plan: ContextPlan, entity: RemoteEntity) -> Optional[str]:
        if entity.parent_remote_id is None:
            return None
        ref = plan.refs.get(entity.parent_remote_id)
        if ref is None:
            raise MissingParentError(entity.remote_id, entity.parent_remote_id)
        return ref

    def _diff_new(self, plan: ContextPlan, entity: RemoteEntity, policy: SyncPolicy, previous: Optional[SnapshotRecord]):
        staged = StagedEntity(remote_id=entity.remote_id, record=entity.to_record(), previous=previous)
        if policy.is_terminal(entity.state):
            # already handled when first seen: remember it, surface nothing
            if previous is None or previous != staged.record:
                plan.staged[entity.remote_id] = staged
            return

        args = policy.build_create(entity, self._parent_ref(plan, entity))
        staged.create = self.queue.enqueue(self._key(plan, entity.remote_id), OperationKind.CREATE, args)
        staged.commands.append(staged.create)
        plan.refs[entity.remote_id] = staged.create.temp_id
        plan.staged[entity.remote_id] = staged

    def _diff_untargeted(self, plan: ContextPlan, entity: RemoteEntity, policy: SyncPolicy, old: SnapshotRecord):
        """A tracked entity without a target object, e.g. first seen in a terminal state."""
        self._diff_new(plan, entity, policy, old)
        if entity.state != old.state and policy.transition(old.state, entity.state) == AUXILIARY:
            command = self.queue.enqueue(
                self._key(plan, entity.remote_id), OperationKind.CREATE, policy.build_auxiliary(entity)
            )
            plan.staged[entity.remote_id].commands.append(command)

    def _diff_existing(self, plan: ContextPlan, entity: RemoteEntity, policy: SyncPolicy, old: SnapshotRecord):
        key = self._key(plan, entity.remote_id)
        commands = []

        if entity.state != old.state:
            action = policy.transition(old.state, entity.state)
            if action == CLOSE:
                commands.append(self.queue.enqueue(key, OperationKind.CLOSE, policy.build_close(old)))
            elif action == REOPEN:
                commands.append(self.queue.enqueue(key, OperationKind.REOPEN, policy.build_reopen(old)))
            elif action == AUXILIARY:
                commands.append(self.queue.enqueue(key, OperationKind.CREATE, policy.build_auxiliary(entity)))
            state_changed = True
        else:
            state_changed = False

        drifted = policy.has_drifted(entity, old)
        if drifted:
            commands.append(self.queue.enqueue(key, OperationKind.UPDATE, policy.build_update(entity, old)))

        if state_changed or drifted:
            plan.staged[entity.remote_id] = StagedEntity(
                remote_id=entity.remote_id,
                record=entity.to_record(target_id=old.target_id),
                previous=old,
                commands=commands,
            )

    def diff(self, plan: ContextPlan, entities: Sequence[RemoteEntity], policy: SyncPolicy) -> ContextPlan:
        """
        Diff one collection of freshly fetched entities against the snapshot.

        Entities must be ordered so that parents come before their children.
        """
        old_entities = plan.context.entities
        fetched = set()
        for entity in entities:
            fetched.add(entity.remote_id)
            plan.seen.add(entity.remote_id)
            old = old_entities.get(entity.remote_id)
            if old is None:
                self._diff_new(plan, entity, policy, old)
            elif old.target_id is None:
                self._diff_untargeted(plan, entity, policy, old)
            else:
                self._diff_existing(plan, entity, policy, old)

        if policy.delete_missing:
            for remote_id, record in old_entities.items():
                if remote_id in fetched or remote_id in plan.seen or not policy.owns(remote_id):
                    continue
                command = None
                if record.target_id:
                    command = self.queue.enqueue(
                        self._key(plan, remote_id), OperationKind.DELETE, policy.build_delete(record)
                    )
                plan.removals[remote_id] = command

        logger.info(
            f"[{plan.context.name}] {policy.name}: {len(entities)} fetched, "
            f"{len(plan.staged)} staged, {len(plan.removals)} removals"
        )
        return plan

    def plan(self, context: TrackedContext, entities: Sequence[RemoteEntity], policy: SyncPolicy) -> ContextPlan:
        return self.diff(self.begin(context), entities, policy)

    def gate(self, plan: ContextPlan, items: Sequence[RemoteEntity], policy: SyncPolicy) -> ContextPlan:
        """
        Collection-level gating for append-only feeds (announcements).

        Only items newer than the context's last change marker are surfaced.
        On the very first run nothing is surfaced; the marker is just initialised.
        """
        for item in items:
            if item.update_time is None:
                raise InvalidRecordError(f"Feed item {item.remote_id} has no update time")

        previous = plan.context.last_change_marker
        latest = max((item.update_time for item in items), default=None)
        if previous is None:
            plan.feed = FeedPlan(previous_marker=None, marker=latest or EPOCH)
            return plan

        feed = FeedPlan(previous_marker=previous, marker=max(previous, latest) if latest else previous)
        for item in sorted(items, key=lambda i: i.update_time):
            if item.update_time > previous:
                command = self.queue.enqueue(
                    self._key(plan, item.remote_id), OperationKind.CREATE, policy.build_announcement(item)
                )
                feed.surfaced.append((item.update_time, command))
        plan.feed = feed
        return plan

    @staticmethod
    def _count(stats: SyncStats, commands: Sequence[PendingCommand]):
        for command in commands:
            if command.kind is OperationKind.CLOSE:
                stats.closed += 1
            elif command.kind is OperationKind.REOPEN:
                stats.reopened += 1
            elif command.kind is OperationKind.UPDATE:
                stats.updated += 1
            elif command.kind is OperationKind.CREATE:
                stats.created += 1

    @staticmethod
    def _applied_part(staged: StagedEntity, result: BatchResult) -> Optional[SnapshotRecord]:
        """The previous record with only the successful commands of `staged` applied."""
        record = staged.previous
        if staged.create is not None:
            real_id = result.real_id(staged.create.temp_id)
            if not result.succeeded(staged.create) or real_id is None:
                return record
            created = staged.record.with_target(real_id)
            record = replace(created, state=record.state) if record is not None else created

        for command in staged.commands:
            if command is staged.create or not result.succeeded(command):
                continue
            if command.kind is OperationKind.UPDATE:
                new = staged.record
                record = replace(record, title=new.title, link=new.link, due_at=new.due_at, revision=new.revision)
            else:
                # close, reopen and auxiliary creates all stand for the state change
                record = replace(record, state=staged.record.state)
        return record

    def resolve(self, plan: ContextPlan, result: BatchResult) -> ContextOutcome:
        """Fold the batch outcome back into the snapshot of the context."""
        stats = SyncStats()
        failures = []
        entities = dict(plan.context.entities)

        for remote_id, staged in plan.staged.items():
            failed = [c for c in staged.commands if not result.succeeded(c)]
            if failed:
                failures.extend(failed)
                stats.errors += len(failed)
                # fold in what was applied, the rest is re-diffed next run
                record = self._applied_part(staged, result)
                if record is not None:
                    entities[remote_id] = record
                    self._count(stats, [c for c in staged.commands if result.succeeded(c)])
                continue

            if staged.create:
                real_id = result.real_id(staged.create.temp_id)
                if real_id is None:
                    failures.append(staged.create)
                    stats.errors += 1
                    continue
                entities[remote_id] = staged.record.with_target(real_id)
                stats.created += 1
                continue

            entities[remote_id] = staged.record
            if not staged.commands:
                stats.skipped += 1
            self._count(stats, staged.commands)

        for remote_id, command in plan.removals.items():
            if command is not None and not result.succeeded(command):
                failures.append(command)
                stats.errors += 1
                continue
            entities.pop(remote_id, None)
            if command is not None:
                stats.deleted += 1

        marker = plan.context.last_change_marker
        if plan.feed:
            marker = plan.feed.marker
            failed_times = [t for t, c in plan.feed.surfaced if not result.succeeded(c)]
            if failed_times:
                # advance only past the items older than the oldest failure
                oldest_failure = min(failed_times)
                delivered = [t for t, _ in plan.feed.surfaced if t < oldest_failure]
                marker = max(delivered, default=plan.feed.previous_marker)
                failures.extend(c for _, c in plan.feed.surfaced if not result.succeeded(c))
                stats.errors += len(failed_times)
            stats.announced += sum(1 for _, c in plan.feed.surfaced if result.succeeded(c))

        context = TrackedContext(
            key=plan.context.key,
            remote_id=plan.context.remote_id,
            name=plan.context.name,
            container_id=plan.context.container_id,
            last_change_marker=marker,
            entities=entities,
        )
        return ContextOutcome(context=context, stats=stats, result=result, failures=failures)

    async def commit(self, plan: ContextPlan) -> ContextOutcome:
        """
        Flush the shared queue once and resolve the plan against the result.

        When the flush breaks off after part of the batch was applied, the
        unsent rest is dropped and the applied part is resolved. The outcome is
        attached to the re-raised PartialFlushError so callers can persist it.
        """
        logger.info(f"[{plan.context.name}] committing {len(plan.commands)} commands")
        try:
            result = await self.queue.flush()
        except PartialFlushError as e:
            self.queue.discard()
            e.outcome = self.resolve(plan, e.result)
            logger.error(f"[{plan.context.name}] partially committed: {e.outcome.stats.to_dict()}")
            raise
        outcome = self.resolve(plan, result)
        logger.info(f"[{plan.context.name}] {outcome.stats.to_dict()}")
        return outcome

    async def sync_context(
        self,
        context: TrackedContext,
        entities: Sequence[RemoteEntity],
        policy: SyncPolicy,
        feed: Optional[Sequence[RemoteEntity]] = None,
        feed_policy: Optional[SyncPolicy] = None,
    ) -> ContextOutcome:
        plan = self.plan(context, entities, policy)
        if feed is not None:
            self.gate(plan, feed, feed_policy or policy)
        return await self.commit(plan)
