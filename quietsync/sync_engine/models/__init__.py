"""Data models for the sync engine."""

from quietsync.sync_engine.models.enums import (
    CodebaseStatus,
    IdentityVerdict,
    SyncMode,
    SyncPhase,
)
from quietsync.sync_engine.models.identity import (
    ActiveWorkspace,
    IndexResult,
    MismatchReport,
    WorkspaceIdentity,
    default_repo_name,
)
from quietsync.sync_engine.models.protocol import (
    DiffNodeRequest,
    DiffNodeResult,
    HandshakeRequest,
    HandshakeResult,
    NodeHint,
    RepositoryInfo,
    SyncCompleteRequest,
    UploadFileRequest,
)

__all__ = [
    "ActiveWorkspace",
    "CodebaseStatus",
    "DiffNodeRequest",
    "DiffNodeResult",
    "HandshakeRequest",
    "HandshakeResult",
    "IdentityVerdict",
    "IndexResult",
    "MismatchReport",
    "NodeHint",
    "RepositoryInfo",
    "SyncCompleteRequest",
    "SyncMode",
    "SyncPhase",
    "UploadFileRequest",
    "WorkspaceIdentity",
    "default_repo_name",
]
