"""In-memory stand-ins used across sync-engine tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from quietsync.sync_engine.cipher import PathCipher, PathDecryptionError
from quietsync.sync_engine.merkle import MerkleTree
from quietsync.sync_engine.models.enums import CodebaseStatus
from quietsync.sync_engine.models.protocol import (
    DiffNodeRequest,
    DiffNodeResult,
    HandshakeRequest,
    HandshakeResult,
    NodeHint,
    RepositoryInfo,
    SyncCompleteRequest,
    UploadFileRequest,
)


@dataclass
class FakeCodebase:
    codebase_id: str
    repo_name: str
    path_key: str
    files: dict[str, str] = field(default_factory=dict)
    """Plaintext relative path -> content hash, as uploaded."""


class FakeIndexService:
    """In-memory service holding one Merkle tree per codebase.

    Codebases are keyed by repository name and bound to the path key sent
    with the handshake that created them, which is how the real service
    can end up holding paths encrypted under a key the client lost.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self.codebases: dict[str, FakeCodebase] = {}
        self._by_repo: dict[str, str] = {}

        self.calls: list[str] = []
        self.handshakes: list[HandshakeRequest] = []
        self.diff_requests: list[DiffNodeRequest] = []
        self.uploads: list[UploadFileRequest] = []
        self.ensured: list[RepositoryInfo] = []
        self.completed: list[SyncCompleteRequest] = []

        self.failures: dict[str, int] = {}
        """Method name -> number of upcoming calls that fail."""
        self.failing_uploads: set[str] = set()
        """Plaintext paths whose every upload fails."""

        self.in_flight = 0
        self.max_in_flight = 0

    async def _tick(self, method: str) -> None:
        self.calls.append(method)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            remaining = self.failures.get(method, 0)
            if remaining:
                self.failures[method] = remaining - 1
                msg = f"injected {method} failure"
                raise ConnectionError(msg)
        finally:
            self.in_flight -= 1

    # -- Helpers for tests -----------------------------------------------------

    def codebase_for(self, repo_name: str) -> FakeCodebase:
        return self.codebases[self._by_repo[repo_name]]

    def uploaded_paths(self, path_key: str) -> list[str]:
        cipher = PathCipher(path_key)
        return sorted(cipher.decrypt_to_relative_posix(u.encrypted_path) for u in self.uploads)

    def seed_codebase(self, repo_name: str, path_key: str, files: dict[str, str]) -> FakeCodebase:
        codebase = FakeCodebase(f"cb-{len(self.codebases) + 1}", repo_name, path_key, dict(files))
        self.codebases[codebase.codebase_id] = codebase
        self._by_repo[repo_name] = codebase.codebase_id
        return codebase

    # -- IndexService ----------------------------------------------------------

    async def handshake(self, request: HandshakeRequest) -> HandshakeResult:
        await self._tick("handshake")
        self.handshakes.append(request)
        repo_name = request.repository.repo_name
        if repo_name in self._by_repo:
            return HandshakeResult(codebase_id=self._by_repo[repo_name], status=CodebaseStatus.UP_TO_DATE)
        codebase = self.seed_codebase(repo_name, request.path_key, {})
        return HandshakeResult(codebase_id=codebase.codebase_id, status=CodebaseStatus.NOT_FOUND)

    async def diff_node(self, request: DiffNodeRequest) -> DiffNodeResult:
        await self._tick("diff_node")
        self.diff_requests.append(request)
        codebase = self.codebases[request.codebase_id]
        cipher = PathCipher(codebase.path_key)
        try:
            rel_path = cipher.decrypt_to_relative_posix(request.encrypted_path)
        except PathDecryptionError:
            return DiffNodeResult(match=False)
        tree = MerkleTree(codebase.files)
        if rel_path not in tree:
            return DiffNodeResult(match=False)
        if tree.subtree_hash(rel_path) == request.hash_of_node:
            return DiffNodeResult(match=True)
        return DiffNodeResult(
            match=False,
            children=[
                NodeHint(encrypted_path=cipher.encrypt_relative_path(child), hash_of_node=tree.subtree_hash(child))
                for child in tree.children(rel_path)
            ],
        )

    async def upload_file(self, request: UploadFileRequest) -> None:
        await self._tick("upload_file")
        codebase = self.codebases[request.codebase_id]
        rel_path = PathCipher(codebase.path_key).decrypt_to_relative_posix(request.encrypted_path)
        if rel_path in self.failing_uploads:
            msg = f"injected upload failure for {rel_path}"
            raise ConnectionError(msg)
        self.uploads.append(request)
        codebase.files[rel_path] = request.content_hash

    async def ensure_index(self, repository: RepositoryInfo) -> None:
        await self._tick("ensure_index")
        self.ensured.append(repository)

    async def sync_complete(self, request: SyncCompleteRequest) -> None:
        await self._tick("sync_complete")
        self.completed.append(request)


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
