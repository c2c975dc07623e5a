import logging
import httpx
from typing import Optional

from taskbridge.command_queue import TodoistCommandQueue
from taskbridge.config import Settings
from taskbridge.engine import ContextOutcome, ContextPlan, ReconciliationEngine
from taskbridge.exceptions import ConfigError, PartialFlushError
from taskbridge.logging_service import ErrorSink, report_error
from taskbridge.provisioner import StructuralProvisioner
from taskbridge.models import BatchResult, OperationKind, TrackedContext
from taskbridge.snapshot_store import SnapshotStore, SupabaseSnapshotStore, load_context, save_context
from taskbridge.supabase_client import get_supabase
from taskbridge.todoist_client import TodoistClient

logger = logging.getLogger("SyncSession")


class SyncSession:
    """
    Everything one job run shares: settings, the HTTP client, the snapshot
    store and the error sink. Todoist collaborators are built on first use so
    the calendar job never needs a Todoist token.

        async with SyncSession(settings) as session:
            ...
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[SnapshotStore] = None,
        http: Optional[httpx.AsyncClient] = None,
        todoist: Optional[TodoistClient] = None,
        on_error: ErrorSink = report_error,
    ):
        self.settings = settings
        self._store = store
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=settings.http_timeout)
        self.on_error = on_error
        self._todoist = todoist
        self._queue: Optional[TodoistCommandQueue] = None
        self._provisioner: Optional[StructuralProvisioner] = None

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._owns_http:
            await self.http.aclose()

    @property
    def store(self) -> SnapshotStore:
        if self._store is None:
            self._store = SupabaseSnapshotStore(get_supabase(self.settings))
        return self._store

    @property
    def todoist(self) -> TodoistClient:
        if self._todoist is None:
            self.settings.require("todoist_api_token")
            self._todoist = TodoistClient(self.http, self.settings.todoist_api_token, self.settings.todoist_sync_url)
        return self._todoist

    @property
    def queue(self) -> TodoistCommandQueue:
        if self._queue is None:
            self._queue = TodoistCommandQueue(self.todoist, on_error=self.on_error)
        return self._queue

    @property
    def provisioner(self) -> StructuralProvisioner:
        if self._provisioner is None:
            self._provisioner = StructuralProvisioner(self.todoist, self.queue)
        return self._provisioner

    def load_project_context(self, job: str, remote_id: str) -> TrackedContext:
        """Load a Todoist-backed context; its document must name the project."""
        context = load_context(self.store, f"{job}/{remote_id}", remote_id)
        if not context.container_id:
            raise ConfigError(f"Snapshot document {context.key} has no project_id")
        return context

    async def delete_labelled(self, label: str) -> BatchResult:
        """Delete every Todoist task carrying `label` in one flush."""
        items = await self.todoist.list_items(label=label)
        logger.info(f"Deleting {len(items)} tasks labelled {label}...")
        ids = {str(item["id"]) for item in items}
        for item in items:
            # deleting a parent task deletes its sub-tasks
            if item.get("parent_id") and str(item["parent_id"]) in ids:
                continue
            self.queue.enqueue(f"{label}/{item['id']}", OperationKind.DELETE, {"id": item["id"]})
        return await self.queue.flush()

    async def commit(self, engine: ReconciliationEngine, plan: ContextPlan) -> ContextOutcome:
        """Flush a context, settle provisioned ids and persist the snapshot once."""
        try:
            outcome = await engine.commit(plan)
        except PartialFlushError as e:
            self._settle(e.outcome)
            raise
        self._settle(outcome)
        return outcome

    def _settle(self, outcome: ContextOutcome):
        if self._provisioner is not None:
            self._provisioner.resolve(outcome.result)
        save_context(self.store, outcome.context)
