"""Sync state store interface.

The sync state store is the single source of truth for a workspace's
identity (codebase id, path key, key hash, transform seed, repository name)
and its pending-change flag.  One record per workspace, keyed by a stable hash
of the workspace root, plus one global "active workspace" pointer.

The interface is async so that file I/O never blocks the event loop while
uploads are in flight.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from quietsync.sync_engine.models.identity import WorkspaceIdentity


@runtime_checkable
class SyncStateStore(Protocol):
    """Async protocol for reading and writing workspace identity records.

    Loads and saves for the same root serialize; different roots never block
    each other.
    """

    async def load(self, workspace_root: str) -> WorkspaceIdentity:
        """Read a record.  Returns a zero-valued identity if missing or corrupt."""
        ...

    async def save(self, identity: WorkspaceIdentity) -> None:
        """Atomically replace a record.  Raises ``OSError`` on failure."""
        ...

    async def update(self, workspace_root: str, **changes: Any) -> WorkspaceIdentity:
        """Read-modify-write a record under its lock and return the result."""
        ...

    async def mark_pending_changes(self, workspace_root: str) -> bool:
        """Set the pending flag on an indexed workspace.  Returns whether it was set."""
        ...

    async def list_all(self) -> list[str]:
        """Return the roots of every readable record."""
        ...

    async def get_active(self) -> str | None: ...

    async def set_active(self, workspace_root: str | None) -> None: ...

    async def clear_active(self) -> None: ...
