"""Tests for file upload and batch finalization."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from quietsync.sync_engine.cipher import PathCipher, generate_path_key
from quietsync.sync_engine.execution.upload import FileUploader, ancestor_chain, finalize_batch
from quietsync.sync_engine.models.protocol import RepositoryInfo
from quietsync.sync_engine.work_queue import BoundedWorkQueue, WorkCancelledError

from .fakes import FakeIndexService

pytestmark = pytest.mark.anyio

KEY = generate_path_key()


@pytest.mark.parametrize(
    ("rel_path", "chain"),
    [
        ("a/b/c.py", ["a", "a/b"]),
        ("src/main.py", ["src"]),
        ("README.md", ["."]),
    ],
)
def test_ancestor_chain(rel_path: str, chain: list[str]) -> None:
    assert ancestor_chain(rel_path) == chain


@pytest.fixture
def uploader_for(service: FakeIndexService, workspace: Path):
    codebase = service.seed_codebase("local-test", KEY, {})

    def make(*, queue: BoundedWorkQueue | None = None, size_limit: int = 1024) -> FileUploader:
        return FileUploader(
            service=service,
            cipher=PathCipher(KEY),
            queue=queue or BoundedWorkQueue(4),
            workspace_root=workspace,
            codebase_id=codebase.codebase_id,
            transform_seed=99,
            size_limit=size_limit,
            retry_delay=0.0,
        )

    return make


async def test_prepare_builds_encrypted_request(uploader_for, workspace: Path) -> None:
    request = await uploader_for().prepare("src/util/helpers.py")
    cipher = PathCipher(KEY)

    content = (workspace / "src/util/helpers.py").read_text()
    assert request is not None
    assert request.contents == content
    assert request.content_hash == hashlib.sha256(content.encode()).hexdigest()
    assert request.orthogonal_transform_seed == 99
    assert cipher.decrypt_to_relative_posix(request.encrypted_path) == "src/util/helpers.py"
    assert [cipher.decrypt_to_relative_posix(p) for p in request.ancestor_paths] == ["src", "src/util"]
    assert "helpers" not in request.encrypted_path


async def test_upload_batch(uploader_for, service: FakeIndexService) -> None:
    stats = await uploader_for().upload_batch(["README.md", "src/main.py"])
    assert sorted(stats.uploaded) == ["README.md", "src/main.py"]
    assert stats.skipped == []
    assert service.uploaded_paths(KEY) == ["README.md", "src/main.py"]


async def test_oversized_file_is_skipped(uploader_for, service: FakeIndexService, workspace: Path) -> None:
    (workspace / "big.txt").write_text("x" * 2048)
    stats = await uploader_for(size_limit=1024).upload_batch(["big.txt", "README.md"])
    assert stats.skipped == ["big.txt"]
    assert stats.uploaded == ["README.md"]
    assert service.uploaded_paths(KEY) == ["README.md"]


async def test_non_utf8_file_is_skipped(uploader_for, workspace: Path) -> None:
    (workspace / "latin.txt").write_bytes(b"caf\xe9")
    stats = await uploader_for().upload_batch(["latin.txt"])
    assert stats.skipped == ["latin.txt"]


async def test_missing_file_is_skipped(uploader_for) -> None:
    stats = await uploader_for().upload_batch(["gone.py"])
    assert stats.skipped == ["gone.py"]


async def test_exhausted_upload_skips_file(uploader_for, service: FakeIndexService) -> None:
    service.failures["upload_file"] = 3
    stats = await uploader_for().upload_batch(["README.md"])
    assert stats.failed == ["README.md"]
    assert stats.uploaded == []
    assert service.calls.count("upload_file") == 3


async def test_cancelled_queue_aborts_batch(uploader_for, service: FakeIndexService) -> None:
    queue = BoundedWorkQueue(1)
    queue.cancel()
    with pytest.raises(WorkCancelledError):
        await uploader_for(queue=queue).upload_batch(["README.md", "src/main.py"])
    assert service.uploads == []


async def test_upload_concurrency_is_bounded(workspace: Path, write_tree) -> None:
    write_tree(workspace, {f"f{i}.py": f"x = {i}\n" for i in range(10)})
    service = FakeIndexService(latency=0.01)
    codebase = service.seed_codebase("local-slow", KEY, {})
    uploader = FileUploader(
        service=service,
        cipher=PathCipher(KEY),
        queue=BoundedWorkQueue(3),
        workspace_root=workspace,
        codebase_id=codebase.codebase_id,
        transform_seed=1,
    )
    stats = await uploader.upload_batch([f"f{i}.py" for i in range(10)])
    assert len(stats.uploaded) == 10
    assert service.max_in_flight <= 3


async def test_finalize_batch_is_idempotent(service: FakeIndexService) -> None:
    repository = RepositoryInfo(repo_name="local-test", repo_owner="local-user")
    queue = BoundedWorkQueue(2)
    for _ in range(2):
        await finalize_batch(
            service=service,
            queue=queue,
            repository=repository,
            codebase_id="cb-1",
            fingerprint=[0.0] * 64,
            path_key_hash="h" * 64,
            retry_delay=0.0,
        )
    assert service.calls == ["ensure_index", "sync_complete"] * 2
    assert service.completed[0] == service.completed[1]
    assert service.ensured[0] == service.ensured[1]


async def test_finalize_batch_propagates_exhaustion(service: FakeIndexService) -> None:
    service.failures["ensure_index"] = 3
    with pytest.raises(ConnectionError):
        await finalize_batch(
            service=service,
            queue=BoundedWorkQueue(2),
            repository=RepositoryInfo(repo_name="local-test", repo_owner="local-user"),
            codebase_id="cb-1",
            fingerprint=[],
            path_key_hash="h",
            retry_attempts=3,
            retry_delay=0.0,
        )
    assert "sync_complete" not in service.calls


async def test_file_contents_held_are_bounded_by_concurrency(workspace: Path, write_tree) -> None:
    write_tree(workspace, {f"pkg/f{i}.py": f"x = {i}\n" for i in range(40)})
    service = FakeIndexService(latency=0.005)
    codebase = service.seed_codebase("local-memory", KEY, {})
    uploader = FileUploader(
        service=service,
        cipher=PathCipher(KEY),
        queue=BoundedWorkQueue(2),
        workspace_root=workspace,
        codebase_id=codebase.codebase_id,
        transform_seed=1,
    )
    held = 0
    peak = 0
    prepare = uploader.prepare
    upload_file = service.upload_file

    async def counting_prepare(rel_path: str):
        nonlocal held, peak
        request = await prepare(rel_path)
        held += 1
        peak = max(peak, held)
        return request

    async def counting_upload(request):
        nonlocal held
        try:
            return await upload_file(request)
        finally:
            held -= 1

    uploader.prepare = counting_prepare
    service.upload_file = counting_upload

    stats = await uploader.upload_batch([f"pkg/f{i}.py" for i in range(40)])

    assert len(stats.uploaded) == 40
    assert peak <= 2
