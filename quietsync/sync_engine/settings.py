"""Service configuration loaded from QUIETSYNC_* environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuietSyncSettings(BaseSettings):
    """quietsync settings.

    All fields are read from environment variables with the ``QUIETSYNC_``
    prefix.  For example, ``QUIETSYNC_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    The path key is normally generated on first index and persisted in the
    workspace state record.  ``QUIETSYNC_PATH_KEY`` overrides it, which is how
    the same key is shared across hosts.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUIETSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"
    """``json`` emits one serialized loguru record per line."""

    # -- Remote index service --------------------------------------------------
    base_url: str = "https://api2.cursor.sh"
    auth_token: SecretStr | None = None
    request_timeout: float = 30.0
    """Seconds before a single network call is abandoned (retryable)."""

    # -- Data storage ----------------------------------------------------------
    data_root: Path = Field(default_factory=lambda: Path.home() / ".quietsync")
    """Root directory holding per-workspace state records and the active pointer."""

    path_key: SecretStr | None = None

    # -- Sync limits -----------------------------------------------------------
    sync_concurrency: int = 4
    sync_max_nodes: int = 2000
    """Ceiling on changed files reported by one incremental diff."""

    sync_max_iterations: int = 10000
    """Ceiling on nodes visited by one incremental diff."""

    sync_list_limit: int = 1000
    """Ceiling on files discovered in a workspace."""

    file_size_limit_bytes: int = 2 * 1024 * 1024
    initial_upload_batch_size: int = 10

    # -- Retry -----------------------------------------------------------------
    retry_attempts: int = 3
    retry_delay: float = 0.2
    """Base delay in seconds; attempt ``n`` waits ``retry_delay * n``."""

    # -- Identity --------------------------------------------------------------
    latent_collision_policy: Literal["mint", "refuse"] = "mint"
    """What to do when the service knows the tree but no local key exists.

    ``mint`` re-handshakes under a disambiguated repository name so the
    service issues a fresh codebase bound to the current key.  ``refuse``
    stops the run and leaves the decision to an operator.
    """

    # -- Discovery -------------------------------------------------------------
    extra_text_extensions: list[str] = Field(default_factory=list)

    def resolve_auth_token(self) -> str:
        """Return the configured token, or an empty string when unset."""
        if self.auth_token is None:
            return ""
        return self.auth_token.get_secret_value()


def get_settings() -> QuietSyncSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> QuietSyncSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return QuietSyncSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
