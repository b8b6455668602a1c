"""Workspace identity and sync result models."""

from __future__ import annotations

import hashlib

from pydantic import BaseModel, Field

from quietsync.sync_engine.models.enums import SyncMode

DEFAULT_REPO_OWNER = "local-user"


def default_repo_name(workspace_root: str) -> str:
    """Stable repository name derived from the workspace root path."""
    return f"local-{hashlib.sha256(workspace_root.encode('utf-8')).hexdigest()[:12]}"


class WorkspaceIdentity(BaseModel):
    """Persisted per-workspace record.

    A zero-valued identity (only ``workspace_root`` set) means "not yet
    indexed".  ``path_key_hash`` always equals ``sha256_hex(path_key)`` when
    both are present; a record where they disagree is treated as bound to the
    stored hash.
    """

    workspace_root: str
    codebase_id: str | None = None
    path_key: str | None = None
    path_key_hash: str | None = None
    transform_seed: int | None = None
    repo_name: str | None = None
    repo_owner: str | None = None
    pending_changes: bool = False

    @property
    def is_indexed(self) -> bool:
        return bool(self.codebase_id and self.path_key)

    @property
    def has_path_key(self) -> bool:
        return bool(self.path_key and self.path_key_hash)


class ActiveWorkspace(BaseModel):
    """Global pointer record, independent of per-workspace records."""

    active_workspace_root: str | None = None


# -- Results -----------------------------------------------------------------


class MismatchReport(BaseModel):
    """Structured payload describing a confirmed path-key mismatch."""

    codebase_id: str
    stored_path_key_hash: str
    current_path_key_hash: str
    remediation: list[str] = Field(default_factory=list)

    def render(self) -> str:
        lines = [
            "Path key mismatch detected.",
            f"  Codebase id:           {self.codebase_id}",
            f"  Stored path key hash:  {self.stored_path_key_hash}",
            f"  Current path key hash: {self.current_path_key_hash}",
            "",
            "The service returned a codebase whose paths were encrypted under a",
            "different key.  Nothing was uploaded or decrypted.",
        ]
        if self.remediation:
            lines.append("")
            lines.append("Recommended actions:")
            lines.extend(f"  {i}. {step}" for i, step in enumerate(self.remediation, start=1))
        return "\n".join(lines)


class IndexResult(BaseModel):
    """Outcome of a sync run (full or incremental)."""

    workspace_root: str
    mode: SyncMode
    codebase_id: str | None = None
    repo_name: str | None = None
    uploaded: int = 0
    skipped: int = 0
    batches: int = 0
    files: list[str] = Field(default_factory=list)
