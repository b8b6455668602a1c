"""Per-workspace runtime session.

Holds the in-process state that belongs to one workspace while the hosting
process is alive: the runtime codebase-id cache, the cancellation signals of
the runs started against it, and the current phase of the sync state
machine.  Sessions are owned by a ``SessionRegistry`` and passed by handle to
the engine; nothing here is a module-level global.

The codebase-id cache is a shortcut only.  Persisted state is authoritative
and the cache is re-validated against it before it is trusted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from quietsync.sync_engine.models.enums import SyncPhase


@dataclass
class WorkspaceSession:
    """In-process state for a single workspace."""

    # -- Identity --------------------------------------------------------------
    workspace_root: str

    # -- Runtime cache ---------------------------------------------------------
    codebase_id: str | None = None
    """Last codebase id confirmed by a successful run in this process."""

    # -- Execution -------------------------------------------------------------
    phase: SyncPhase = SyncPhase.IDLE
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    """Held for the duration of a run; one run per workspace at a time."""
    _run_signals: set[asyncio.Event] = field(default_factory=set, repr=False)

    @property
    def is_running(self) -> bool:
        return self.lock.locked()

    @property
    def pending_runs(self) -> int:
        """Runs that are executing or waiting for the lock."""
        return len(self._run_signals)

    @contextmanager
    def run_signal(self) -> Iterator[asyncio.Event]:
        """Cancellation signal for one run, from before it queues for the lock until it ends.

        Runs that start after a ``cancel()`` get a fresh, unset signal.
        """
        event = asyncio.Event()
        self._run_signals.add(event)
        try:
            yield event
        finally:
            self._run_signals.discard(event)

    def cancel(self) -> None:
        """Make not-yet-started network operations of every current run fail fast.

        Covers runs still waiting for the lock.
        """
        for event in self._run_signals:
            event.set()

    def revalidate(self, persisted_codebase_id: str | None) -> str | None:
        """Drop the cached codebase id unless persisted state agrees; return what remains."""
        if self.codebase_id != persisted_codebase_id:
            self.codebase_id = None
        return self.codebase_id
