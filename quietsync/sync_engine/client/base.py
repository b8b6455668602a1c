"""Remote index service interface.

The engine only depends on five logical operations.  How they travel over the
wire is the implementation's concern; ``HttpIndexService`` is the production
one, tests use an in-memory fake.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from quietsync.sync_engine.models.protocol import (
    DiffNodeRequest,
    DiffNodeResult,
    HandshakeRequest,
    HandshakeResult,
    RepositoryInfo,
    SyncCompleteRequest,
    UploadFileRequest,
)


class ProtocolShapeError(RuntimeError):
    """Raised when a response lacks a field the engine cannot proceed without.

    Fatal to the current step and never retried.
    """


@runtime_checkable
class IndexService(Protocol):
    async def handshake(self, request: HandshakeRequest) -> HandshakeResult:
        """Register the tree; returns the codebase id and whether it already existed."""
        ...

    async def diff_node(self, request: DiffNodeRequest) -> DiffNodeResult:
        """Compare one encrypted node hash with the server-held tree."""
        ...

    async def upload_file(self, request: UploadFileRequest) -> None: ...

    async def ensure_index(self, repository: RepositoryInfo) -> None:
        """Idempotently make sure the index for ``repository`` exists."""
        ...

    async def sync_complete(self, request: SyncCompleteRequest) -> None: ...
