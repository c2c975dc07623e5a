"""
===================================================================================
SNAPSHOT STORE - Persisted key → document map
===================================================================================

Every tracked context keeps one document holding its entity snapshot and its
collection-level change marker. The sync core only needs get/set(merge), so the
store is a thin wrapper over one Supabase table:

    sync_snapshots(key text primary key, value jsonb, updated_at timestamptz)

Key format: "{job}/{remote context id}", e.g. "classroom/49975101864".
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from taskbridge.models import TrackedContext

logger = logging.getLogger(__name__)

SNAPSHOT_TABLE = "sync_snapshots"


class SnapshotStore:
    """Interface consumed by the sync jobs."""

    def get(self, key: str) -> Dict[str, Any]:
        raise NotImplementedError

    def set(self, key: str, value: Dict[str, Any], merge: bool = False) -> None:
        raise NotImplementedError


class SupabaseSnapshotStore(SnapshotStore):
    def __init__(self, supabase_client, table: str = SNAPSHOT_TABLE):
        self.supabase = supabase_client
        self.table = table

    def get(self, key: str) -> Dict[str, Any]:
        result = self.supabase.table(self.table).select("value").eq("key", key).execute()
        if result.data and result.data[0].get("value"):
            return dict(result.data[0]["value"])
        return {}

    def set(self, key: str, value: Dict[str, Any], merge: bool = False) -> None:
        document = dict(value)
        if merge:
            document = {**self.get(key), **value}
        self.supabase.table(self.table).upsert({
            "key": key,
            "value": document,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }).execute()
        logger.debug(f"Wrote snapshot {key} ({len(document)} fields, merge={merge})")


def load_context(
    store: SnapshotStore,
    key: str,
    remote_id: str,
    container_id: Optional[str] = None,
) -> TrackedContext:
    return TrackedContext.from_document(key, remote_id, store.get(key), container_id=container_id)


def save_context(store: SnapshotStore, context: TrackedContext) -> None:
    """Persist the whole entity mapping and marker of a context in one write."""
    store.set(context.key, context.to_document(), merge=True)


def clear_context(store: SnapshotStore, key: str) -> None:
    """Forget the snapshot of a context but keep its configuration (name, project_id)."""
    store.set(key, {"last_change_marker": None, "entities": {}}, merge=True)
