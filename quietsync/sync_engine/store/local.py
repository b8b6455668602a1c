"""Local filesystem sync state store.

Stores one JSON record per workspace under the data root::

    {data_root}/workspaces/{safe_name}-{hash}/state.json
    {data_root}/active.json

``safe_name`` is a filesystem-friendly prefix of the workspace root and
``hash`` the first 10 hex digits of its SHA-256, so the directory is stable
for a given root.

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: data is written to a temporary file in the same directory,
then renamed to the target path.  A crash mid-write leaves the previous
record in place, never a partial one.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
import re
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger
from pydantic import ValidationError

from quietsync.sync_engine.models.identity import ActiveWorkspace, WorkspaceIdentity

_UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|]')
_WHITESPACE_RE = re.compile(r"\s+")


def record_key(workspace_root: str) -> str:
    """Directory name for a workspace record."""
    safe_name = _WHITESPACE_RE.sub("_", _UNSAFE_CHARS_RE.sub("_", workspace_root))[:60] or "project"
    digest = hashlib.sha256(workspace_root.encode("utf-8")).hexdigest()[:10]
    return f"{safe_name}-{digest}"


class LocalSyncStateStore:
    """Local filesystem implementation of the SyncStateStore protocol.

    Holds one ``asyncio.Lock`` per record key.  The store is meant to be
    created once per process and shared by every engine run.
    """

    def __init__(self, data_root: str | Path) -> None:
        self._root = Path(data_root)
        self._base = self._root / "workspaces"
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, workspace_root: str) -> asyncio.Lock:
        key = record_key(workspace_root)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def record_path(self, workspace_root: str) -> Path:
        return self._base / record_key(workspace_root) / "state.json"

    @property
    def _active_path(self) -> Path:
        return self._root / "active.json"

    # -- Read ------------------------------------------------------------------

    async def load(self, workspace_root: str) -> WorkspaceIdentity:
        async with self._lock(workspace_root):
            return await self._load_unlocked(workspace_root)

    async def _load_unlocked(self, workspace_root: str) -> WorkspaceIdentity:
        path = self.record_path(workspace_root)
        try:
            raw = await to_thread.run_sync(partial(_read_file, path))
        except FileNotFoundError:
            return WorkspaceIdentity(workspace_root=workspace_root)
        except OSError as exc:
            logger.warning("Unreadable state record {}: {}", path, exc)
            return WorkspaceIdentity(workspace_root=workspace_root)

        try:
            identity = WorkspaceIdentity.model_validate_json(raw)
        except ValidationError:
            logger.warning("Corrupt state record {}, treating workspace as not indexed", path)
            return WorkspaceIdentity(workspace_root=workspace_root)
        if identity.workspace_root != workspace_root:
            logger.warning("State record {} belongs to {}, ignoring", path, identity.workspace_root)
            return WorkspaceIdentity(workspace_root=workspace_root)
        return identity

    # -- Write -----------------------------------------------------------------

    async def save(self, identity: WorkspaceIdentity) -> None:
        async with self._lock(identity.workspace_root):
            await self._save_unlocked(identity)

    async def _save_unlocked(self, identity: WorkspaceIdentity) -> None:
        path = self.record_path(identity.workspace_root)
        data = identity.model_dump_json(indent=2)
        await to_thread.run_sync(partial(_atomic_write, path, data))

    async def update(self, workspace_root: str, **changes: Any) -> WorkspaceIdentity:
        async with self._lock(workspace_root):
            current = await self._load_unlocked(workspace_root)
            updated = WorkspaceIdentity.model_validate({**current.model_dump(), **changes})
            if updated != current:
                await self._save_unlocked(updated)
            return updated

    async def mark_pending_changes(self, workspace_root: str) -> bool:
        async with self._lock(workspace_root):
            current = await self._load_unlocked(workspace_root)
            if not current.is_indexed:
                logger.warning("Workspace {} is not indexed, not marking pending changes", workspace_root)
                return False
            if not current.pending_changes:
                await self._save_unlocked(current.model_copy(update={"pending_changes": True}))
                logger.debug("Marked workspace {} as changed", workspace_root)
            return True

    # -- Listing ---------------------------------------------------------------

    async def list_all(self) -> list[str]:
        paths = await to_thread.run_sync(partial(_list_records, self._base))
        roots: list[str] = []
        for path in paths:
            try:
                raw = await to_thread.run_sync(partial(_read_file, path))
                identity = WorkspaceIdentity.model_validate_json(raw)
            except (OSError, ValidationError):
                continue
            if identity.workspace_root not in roots:
                roots.append(identity.workspace_root)
        return roots

    # -- Active workspace ------------------------------------------------------

    async def get_active(self) -> str | None:
        try:
            raw = await to_thread.run_sync(partial(_read_file, self._active_path))
            return ActiveWorkspace.model_validate_json(raw).active_workspace_root
        except (OSError, ValidationError):
            return None

    async def set_active(self, workspace_root: str | None) -> None:
        data = ActiveWorkspace(active_workspace_root=workspace_root).model_dump_json(indent=2)
        await to_thread.run_sync(partial(_atomic_write, self._active_path, data))

    async def clear_active(self) -> None:
        await self.set_active(None)


# -- Sync helpers (run in thread pool) -----------------------------------------


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    Ensures readers never see a partially-written file.  The temp file is
    created in the same directory so ``os.replace`` is atomic.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    """Read file contents.  Raises ``FileNotFoundError`` if missing."""
    return path.read_text(encoding="utf-8")


def _list_records(base: Path) -> list[Path]:
    if not base.is_dir():
        return []
    return sorted(p / "state.json" for p in base.iterdir() if (p / "state.json").is_file())
