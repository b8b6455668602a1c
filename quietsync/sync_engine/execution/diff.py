"""Incremental, hint-driven Merkle diff against the server-held tree.

Breadth-first worklist starting at the workspace root.  For every visited
node the local subtree hash is sent with the node's encrypted path; the
service answers ``match`` (prune) or ``mismatch`` with the children it knows
about.  Hints are decrypted and compared with fresh local hashes:

- a child whose hash disagrees is queued (directories) or reported (files),
- a local child the service did not mention is new,
- a child whose hash agrees is pruned.

Without hints the node's local children are taken as they are: every file is
changed, every directory is descended.  The walk is bounded by an iteration
ceiling and the work queue's concurrency cap, so a slow or pathological
service cannot make it run forever.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from quietsync.sync_engine.cipher import PathDecryptionError
from quietsync.sync_engine.client.base import ProtocolShapeError
from quietsync.sync_engine.merkle import ROOT
from quietsync.sync_engine.models.protocol import DiffNodeRequest, NodeHint
from quietsync.sync_engine.work_queue import WorkCancelledError

if TYPE_CHECKING:
    from quietsync.sync_engine.cipher import PathCipher
    from quietsync.sync_engine.client.base import IndexService
    from quietsync.sync_engine.discovery import FileDiscovery
    from quietsync.sync_engine.merkle import ContentHashOracle
    from quietsync.sync_engine.work_queue import BoundedWorkQueue


@dataclass
class ChangeSet:
    """Result of one diff run.  Never persisted."""

    changed_files: set[str] = field(default_factory=set)
    new_directories: set[str] = field(default_factory=set)
    visited: int = 0
    undecryptable: int = 0
    truncated: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.changed_files and not self.new_directories


class IncrementalDiff:
    """One diff run for one codebase."""

    def __init__(
        self,
        *,
        service: IndexService,
        cipher: PathCipher,
        oracle: ContentHashOracle,
        discovery: FileDiscovery,
        queue: BoundedWorkQueue,
        codebase_id: str,
        transform_seed: int,
        max_iterations: int = 10000,
        max_nodes: int = 2000,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self._service = service
        self._cipher = cipher
        self._oracle = oracle
        self._discovery = discovery
        self._queue = queue
        self._codebase_id = codebase_id
        self._transform_seed = transform_seed
        self._max_iterations = max_iterations
        self._max_nodes = max_nodes
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay

        self._pending: deque[str] = deque()
        self._visited: set[str] = set()
        self._changes = ChangeSet()

    async def run(self) -> ChangeSet:
        self._pending.append(ROOT)
        running: set[asyncio.Task[None]] = set()
        iterations = 0
        try:
            while (self._pending and iterations < self._max_iterations) or running:
                while self._pending and iterations < self._max_iterations:
                    rel_path = self._pending.popleft()
                    if rel_path in self._visited:
                        continue
                    self._visited.add(rel_path)
                    iterations += 1
                    running.add(asyncio.create_task(self._process_node(rel_path)))
                if running:
                    done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        task.result()
        except BaseException:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        if self._pending:
            self._changes.truncated = True
            logger.warning(
                "Diff stopped after {} iterations with {} nodes unvisited",
                iterations,
                len(self._pending),
            )
        self._changes.visited = iterations
        logger.info(
            "Incremental diff result: {} changed files, {} new directories ({} nodes visited)",
            len(self._changes.changed_files),
            len(self._changes.new_directories),
            iterations,
        )
        return self._changes

    # -- Classification --------------------------------------------------------

    def _enqueue(self, rel_path: str) -> None:
        if rel_path not in self._visited:
            self._pending.append(rel_path)

    def _add_changed(self, rel_path: str) -> None:
        if rel_path in self._changes.changed_files:
            return
        if len(self._changes.changed_files) >= self._max_nodes:
            if not self._changes.truncated:
                logger.warning("Changed-file ceiling of {} reached, ignoring further changes", self._max_nodes)
            self._changes.truncated = True
            return
        self._changes.changed_files.add(rel_path)

    async def _process_node(self, rel_path: str) -> None:
        try:
            node_hash = self._oracle.subtree_hash(rel_path)
        except KeyError:
            return

        request = DiffNodeRequest(
            codebase_id=self._codebase_id,
            orthogonal_transform_seed=self._transform_seed,
            encrypted_path=self._cipher.encrypt_relative_path(rel_path),
            hash_of_node=node_hash,
        )
        try:
            result = await self._queue.run_with_retry(
                partial(self._service.diff_node, request),
                max_attempts=self._retry_attempts,
                base_delay=self._retry_delay,
                operation_name=f"Diff node {rel_path}",
                give_up_on=(ProtocolShapeError,),
            )
        except (WorkCancelledError, ProtocolShapeError):
            raise
        except Exception as exc:
            logger.warning("Skipping node {} after failed diff: {}", rel_path, exc)
            return

        if result.match:
            return
        if result.children:
            await self._classify_hints(rel_path, result.children)
        else:
            await self._classify_local(rel_path)

    async def _classify_hints(self, rel_path: str, hints: list[NodeHint]) -> None:
        local_children = await to_thread.run_sync(self._discovery.list_children, rel_path)
        local_by_path = {child.rel_path: child for child in local_children}

        hinted: set[str] = set()
        for hint in hints:
            try:
                plain = self._cipher.decrypt_to_relative_posix(hint.encrypted_path)
            except PathDecryptionError:
                # Wrong key for this hint: never guess a plaintext.
                self._changes.undecryptable += 1
                logger.warning("Hint under {} does not decrypt with the current path key, skipping", rel_path)
                continue
            hinted.add(plain)

            entry = local_by_path.get(plain)
            if entry is None:
                continue
            try:
                local_hash = self._oracle.subtree_hash(plain)
            except KeyError:
                continue
            if local_hash == hint.hash_of_node:
                continue
            if entry.is_dir:
                self._enqueue(plain)
            else:
                self._add_changed(plain)

        for entry in local_children:
            if entry.rel_path in hinted:
                continue
            if entry.is_dir:
                self._changes.new_directories.add(entry.rel_path)
            else:
                self._add_changed(entry.rel_path)

    async def _classify_local(self, rel_path: str) -> None:
        if rel_path != ROOT and await to_thread.run_sync(self._discovery.is_file, rel_path):
            self._add_changed(rel_path)
            return
        for entry in await to_thread.run_sync(self._discovery.list_children, rel_path):
            if entry.is_dir:
                self._enqueue(entry.rel_path)
            else:
                self._add_changed(entry.rel_path)
