"""File upload and batch finalization.

Each file travels as plaintext content plus its encrypted path and the
encrypted chain of its ancestor directories.  Files are read off the event
loop; network calls go through the run's ``BoundedWorkQueue``.  A file that
cannot be read, is too large or is not UTF-8 text is skipped, and so is a
file whose upload still fails after retries.  Neither stops the batch.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

import anyio
from anyio import to_thread
from loguru import logger

from quietsync.sync_engine.client.base import ProtocolShapeError
from quietsync.sync_engine.models.protocol import SyncCompleteRequest, UploadFileRequest
from quietsync.sync_engine.work_queue import WorkCancelledError

if TYPE_CHECKING:
    from quietsync.sync_engine.cipher import PathCipher
    from quietsync.sync_engine.client.base import IndexService
    from quietsync.sync_engine.models.protocol import RepositoryInfo
    from quietsync.sync_engine.work_queue import BoundedWorkQueue


def ancestor_chain(rel_path: str) -> list[str]:
    """``a/b/c.py`` -> ``["a", "a/b"]``; a top-level file -> ``["."]``."""
    parts = rel_path.split("/")
    chain = ["/".join(parts[:i]) for i in range(1, len(parts))]
    return chain or ["."]


@dataclass
class UploadStats:
    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class FileUploader:
    def __init__(
        self,
        *,
        service: IndexService,
        cipher: PathCipher,
        queue: BoundedWorkQueue,
        workspace_root: str | Path,
        codebase_id: str,
        transform_seed: int,
        size_limit: int = 2 * 1024 * 1024,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self._service = service
        self._cipher = cipher
        self._queue = queue
        self._root = Path(workspace_root)
        self._codebase_id = codebase_id
        self._transform_seed = transform_seed
        self._size_limit = size_limit
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        # A file is read only once it holds one of these tokens and keeps it
        # until its upload settles, so at most max_concurrency contents are
        # in memory at a time.
        self._file_limiter = anyio.CapacityLimiter(queue.max_concurrency)

    # -- Read ------------------------------------------------------------------

    def _read_text(self, rel_path: str) -> str | None:
        path = self._root / rel_path
        try:
            if path.stat().st_size > self._size_limit:
                logger.debug("Skipping {}: larger than {} bytes", rel_path, self._size_limit)
                return None
            data = path.read_bytes()
        except OSError as exc:
            logger.debug("Skipping {}: {}", rel_path, exc)
            return None
        if len(data) > self._size_limit:
            logger.debug("Skipping {}: larger than {} bytes", rel_path, self._size_limit)
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Skipping {}: not UTF-8 text", rel_path)
            return None

    async def prepare(self, rel_path: str) -> UploadFileRequest | None:
        contents = await to_thread.run_sync(self._read_text, rel_path)
        if contents is None:
            return None
        return UploadFileRequest(
            codebase_id=self._codebase_id,
            orthogonal_transform_seed=self._transform_seed,
            encrypted_path=self._cipher.encrypt_relative_path(rel_path),
            contents=contents,
            content_hash=hashlib.sha256(contents.encode("utf-8")).hexdigest(),
            ancestor_paths=[self._cipher.encrypt_relative_path(p) for p in ancestor_chain(rel_path)],
        )

    # -- Upload ----------------------------------------------------------------

    async def _upload_one(self, rel_path: str, stats: UploadStats) -> None:
        async with self._file_limiter:
            await self._prepare_and_send(rel_path, stats)

    async def _prepare_and_send(self, rel_path: str, stats: UploadStats) -> None:
        if self._queue.cancelled:
            raise WorkCancelledError("Work queue cancelled")
        request = await self.prepare(rel_path)
        if request is None:
            stats.skipped.append(rel_path)
            return
        try:
            await self._queue.run_with_retry(
                partial(self._service.upload_file, request),
                max_attempts=self._retry_attempts,
                base_delay=self._retry_delay,
                operation_name=f"Upload {rel_path}",
                give_up_on=(ProtocolShapeError,),
            )
        except (WorkCancelledError, ProtocolShapeError):
            raise
        except Exception as exc:
            logger.warning("Upload of {} failed, skipping: {}", rel_path, exc)
            stats.failed.append(rel_path)
        else:
            stats.uploaded.append(rel_path)

    async def upload_batch(self, rel_paths: list[str]) -> UploadStats:
        """Upload ``rel_paths`` concurrently; returns per-file outcomes."""
        stats = UploadStats()
        outcomes = await asyncio.gather(
            *(self._upload_one(rel_path, stats) for rel_path in rel_paths),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        logger.debug(
            "Batch done: {} uploaded, {} skipped, {} failed",
            len(stats.uploaded),
            len(stats.skipped),
            len(stats.failed),
        )
        return stats


async def finalize_batch(
    *,
    service: IndexService,
    queue: BoundedWorkQueue,
    repository: RepositoryInfo,
    codebase_id: str,
    fingerprint: list[float],
    path_key_hash: str,
    retry_attempts: int = 3,
    retry_delay: float = 0.2,
) -> None:
    """Ensure the index exists, then record sync completion.

    Both calls are idempotent on the service side, so finalizing twice has
    the same effect as finalizing once.  Failures propagate.
    """
    await queue.run_with_retry(
        partial(service.ensure_index, repository),
        max_attempts=retry_attempts,
        base_delay=retry_delay,
        operation_name="Ensure index",
        give_up_on=(ProtocolShapeError,),
    )
    await queue.run_with_retry(
        partial(
            service.sync_complete,
            SyncCompleteRequest(
                codebase_id=codebase_id,
                similarity_metric=fingerprint,
                path_key_hash=path_key_hash,
            ),
        ),
        max_attempts=retry_attempts,
        base_delay=retry_delay,
        operation_name="Sync complete",
        give_up_on=(ProtocolShapeError,),
    )
