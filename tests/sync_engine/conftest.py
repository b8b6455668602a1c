"""Fixtures for sync-engine tests: workspaces, settings, and a fake index service."""

from __future__ import annotations

from pathlib import Path

import pytest

from quietsync.sync_engine.execution.engine import DiffEngine
from quietsync.sync_engine.settings import QuietSyncSettings
from quietsync.sync_engine.store.local import LocalSyncStateStore

from .fakes import FakeIndexService, write_files

WORKSPACE_FILES = {
    "README.md": "# demo\n",
    "src/main.py": "print('hello')\n",
    "src/util/helpers.py": "def helper():\n    return 1\n",
}


@pytest.fixture
def write_tree():
    """Return a helper writing ``{rel_path: content}`` under a directory."""
    return write_files


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    write_files(root, WORKSPACE_FILES)
    return root.resolve()


@pytest.fixture
def settings(tmp_path: Path) -> QuietSyncSettings:
    return QuietSyncSettings(
        _env_file=None,
        data_root=tmp_path / "state",
        retry_delay=0.0,
        request_timeout=5.0,
    )


@pytest.fixture
def store(settings: QuietSyncSettings) -> LocalSyncStateStore:
    return LocalSyncStateStore(settings.data_root)


@pytest.fixture
def service() -> FakeIndexService:
    return FakeIndexService()


@pytest.fixture
def engine(store: LocalSyncStateStore, service: FakeIndexService, settings: QuietSyncSettings) -> DiffEngine:
    return DiffEngine(store=store, service=service, settings=settings)
