"""In-process workspace session registry.

Tracks one ``WorkspaceSession`` per workspace root for the lifetime of the
hosting process.  Ephemeral -- empty on process restart.  All durable state
lives in the sync state store.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from quietsync.sync_engine.context import WorkspaceSession


class ShuttingDownError(RuntimeError):
    """Raised when attempting to open a session during shutdown."""


class SessionRegistry:
    """Registry of workspace sessions owned by the hosting process.

    Provides a drain mechanism for graceful shutdown: ``begin_shutdown``
    cancels pending network work of every session and ``wait_until_drained``
    blocks until in-flight runs have finished.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, WorkspaceSession] = {}
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def open(self, workspace_root: str) -> WorkspaceSession:
        """Return the session for a workspace, creating it on first use.

        Raises ``ShuttingDownError`` if shutting down.
        """
        if self._shutting_down:
            raise ShuttingDownError(workspace_root)
        session = self._sessions.get(workspace_root)
        if session is None:
            session = WorkspaceSession(workspace_root=workspace_root)
            self._sessions[workspace_root] = session
            logger.debug("Registry: opened session for {}", workspace_root)
        return session

    def close(self, workspace_root: str) -> WorkspaceSession | None:
        session = self._sessions.pop(workspace_root, None)
        if session:
            session.cancel()
            logger.debug("Registry: closed session for {}", workspace_root)
        return session

    # -- Query -----------------------------------------------------------------

    def get(self, workspace_root: str) -> WorkspaceSession | None:
        return self._sessions.get(workspace_root)

    def all_sessions(self) -> list[WorkspaceSession]:
        """Return a snapshot of all sessions."""
        return list(self._sessions.values())

    @property
    def active_count(self) -> int:
        """Number of sessions with a run in progress."""
        return sum(1 for s in self._sessions.values() if s.is_running)

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Refuse new sessions and cancel not-yet-started work of existing ones."""
        self._shutting_down = True
        for session in self._sessions.values():
            session.cancel()
        logger.info("Registry: shutdown initiated, cancelled {} sessions", len(self._sessions))

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no session has a run in progress.

        Returns ``True`` when drained, ``False`` if *timeout* expired first.
        """

        async def _drain() -> None:
            for session in list(self._sessions.values()):
                async with session.lock:
                    pass

        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} runs still active",
                timeout,
                self.active_count,
            )
            return False
        else:
            return True
