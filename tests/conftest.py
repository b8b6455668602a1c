"""Shared test fixtures.

Async tests run on the anyio pytest plugin with the asyncio backend only:
the engine uses asyncio primitives (locks, events, ``wait_for``) directly.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from quietsync.sync_engine.settings import _get_settings_cached


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop QUIETSYNC_* variables from the environment and reset the settings cache."""
    for key in list(os.environ):
        if key.startswith("QUIETSYNC_"):
            monkeypatch.delenv(key)
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()
