"""Tests for environment-driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from quietsync.sync_engine.settings import QuietSyncSettings, get_settings


def test_defaults() -> None:
    settings = QuietSyncSettings(_env_file=None)
    assert settings.sync_concurrency == 4
    assert settings.sync_max_nodes == 2000
    assert settings.sync_max_iterations == 10000
    assert settings.sync_list_limit == 1000
    assert settings.file_size_limit_bytes == 2 * 1024 * 1024
    assert settings.initial_upload_batch_size == 10
    assert settings.retry_attempts == 3
    assert settings.retry_delay == pytest.approx(0.2)
    assert settings.request_timeout == pytest.approx(30.0)
    assert settings.latent_collision_policy == "mint"
    assert settings.path_key is None
    assert settings.log_format == "text"
    assert settings.resolve_auth_token() == ""


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("QUIETSYNC_SYNC_CONCURRENCY", "8")
    monkeypatch.setenv("QUIETSYNC_DATA_ROOT", str(tmp_path))
    monkeypatch.setenv("QUIETSYNC_AUTH_TOKEN", "secret-token")
    monkeypatch.setenv("QUIETSYNC_LATENT_COLLISION_POLICY", "refuse")
    monkeypatch.setenv("QUIETSYNC_EXTRA_TEXT_EXTENSIONS", '["bin", ".dat"]')

    settings = QuietSyncSettings(_env_file=None)

    assert settings.sync_concurrency == 8
    assert settings.data_root == tmp_path
    assert settings.resolve_auth_token() == "secret-token"
    assert "secret-token" not in repr(settings)
    assert settings.latent_collision_policy == "refuse"
    assert settings.extra_text_extensions == ["bin", ".dat"]


def test_invalid_policy_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUIETSYNC_LATENT_COLLISION_POLICY", "guess")
    with pytest.raises(ValueError):
        QuietSyncSettings(_env_file=None)


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
