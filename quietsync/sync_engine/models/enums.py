"""Shared enumerations used across the sync engine."""

from __future__ import annotations

from enum import StrEnum

# -- Engine ------------------------------------------------------------------


class SyncPhase(StrEnum):
    """Where a workspace session currently is in the sync state machine."""

    IDLE = "idle"
    HANDSHAKING = "handshaking"
    VALIDATING = "validating"
    DIFFING = "diffing"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


class SyncMode(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    NOOP = "noop"


# -- Identity ----------------------------------------------------------------


class IdentityVerdict(StrEnum):
    """Outcome of checking a handshake result against the local key binding."""

    OK = "ok"
    LATENT_COLLISION = "latent_collision"
    """Service knows the tree, but no local key exists for it."""

    CONFIRMED_MISMATCH = "confirmed_mismatch"
    """Same codebase id, different key hash.  Never auto-resolved."""


# -- Remote service ----------------------------------------------------------


class CodebaseStatus(StrEnum):
    """Codebase status reported by the handshake.

    The service reports these either by name or by their wire ordinal.
    """

    UNSPECIFIED = "STATUS_UNSPECIFIED"
    UP_TO_DATE = "STATUS_UP_TO_DATE"
    OUT_OF_SYNC = "STATUS_OUT_OF_SYNC"
    NOT_FOUND = "STATUS_NOT_FOUND"

    @property
    def is_existing(self) -> bool:
        return self in (CodebaseStatus.UP_TO_DATE, CodebaseStatus.OUT_OF_SYNC)

    @classmethod
    def parse(cls, raw: object) -> CodebaseStatus:
        if isinstance(raw, int) and not isinstance(raw, bool):
            return _STATUS_BY_ORDINAL.get(raw, cls.UNSPECIFIED)
        if isinstance(raw, str):
            try:
                return cls(raw)
            except ValueError:
                return cls.UNSPECIFIED
        return cls.UNSPECIFIED


_STATUS_BY_ORDINAL = {
    0: CodebaseStatus.UNSPECIFIED,
    1: CodebaseStatus.UP_TO_DATE,
    2: CodebaseStatus.OUT_OF_SYNC,
    3: CodebaseStatus.NOT_FOUND,
}
