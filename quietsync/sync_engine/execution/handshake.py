"""Handshake and identity validation.

The service assigns a codebase id from tree content alone, ignoring the key
the client encrypts paths with.  Two different situations can therefore hide
behind "the service already knows this tree":

- **latent collision** -- the service reports an existing codebase but there
  is no local key for it (state deleted, new machine).  Its stored paths may
  be encrypted under a key we no longer have.  Remediated by policy: mint a
  fresh codebase under a disambiguated repository name, or refuse.
- **confirmed mismatch** -- the returned codebase id is the one we have bound
  locally, but to a different key hash.  Never auto-resolved: guessing either
  key risks corrupting the server index or reading garbage.
"""

from __future__ import annotations

import secrets
import string
import time

from quietsync.sync_engine.models.enums import IdentityVerdict
from quietsync.sync_engine.models.identity import MismatchReport, WorkspaceIdentity
from quietsync.sync_engine.models.protocol import HandshakeResult

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase

MISMATCH_REMEDIATION = [
    "Restore the path key that was used to index this codebase (QUIETSYNC_PATH_KEY).",
    "Or delete the workspace state record and re-index to create a fresh codebase.",
]


class IdentityError(RuntimeError):
    """Base class for local/remote identity conflicts."""


class PathKeyMismatchError(IdentityError):
    """Returned codebase id is bound locally to a different path key hash."""

    def __init__(self, report: MismatchReport) -> None:
        super().__init__(f"Path key mismatch for codebase {report.codebase_id}")
        self.report = report


class LatentCollisionError(IdentityError):
    """Service knows the tree but no local key exists, and policy is ``refuse``."""

    def __init__(self, codebase_id: str) -> None:
        super().__init__(
            f"Service reports existing codebase {codebase_id} but no local path key is stored; "
            "refusing to continue (latent_collision_policy=refuse)"
        )
        self.codebase_id = codebase_id


def validate_identity(
    result: HandshakeResult,
    persisted: WorkspaceIdentity,
    current_path_key_hash: str,
) -> IdentityVerdict:
    """Classify a handshake result against the persisted key binding.

    Only persisted state is consulted; the runtime codebase-id cache never
    takes part in a mismatch decision.
    """
    if (
        persisted.codebase_id
        and persisted.codebase_id == result.codebase_id
        and persisted.path_key_hash
        and persisted.path_key_hash != current_path_key_hash
    ):
        return IdentityVerdict.CONFIRMED_MISMATCH
    if result.status.is_existing and not persisted.has_path_key:
        return IdentityVerdict.LATENT_COLLISION
    return IdentityVerdict.OK


def build_mismatch_report(
    codebase_id: str,
    stored_path_key_hash: str,
    current_path_key_hash: str,
) -> MismatchReport:
    return MismatchReport(
        codebase_id=codebase_id,
        stored_path_key_hash=stored_path_key_hash,
        current_path_key_hash=current_path_key_hash,
        remediation=list(MISMATCH_REMEDIATION),
    )


def disambiguate_repo_name(repo_name: str, *, now_ms: int | None = None, suffix: str | None = None) -> str:
    """``local-abc`` -> ``local-abc-1718000000000-k3x9qa``.

    Forces the service to mint a new codebase id bound to the current key.
    """
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    if suffix is None:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{repo_name}-{now_ms}-{suffix}"
