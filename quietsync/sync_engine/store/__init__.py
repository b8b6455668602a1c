"""Sync state store implementations."""

from quietsync.sync_engine.store.base import SyncStateStore
from quietsync.sync_engine.store.local import LocalSyncStateStore

__all__ = ["LocalSyncStateStore", "SyncStateStore"]
