"""Content-hash oracle: Merkle subtree hashes and a similarity fingerprint.

A file's hash is the SHA-256 of its bytes.  A directory's hash is the SHA-256
of its sorted ``name NUL child_hash LF`` lines, so any change below a directory
changes the hash of every ancestor up to the root and nothing else.

The similarity fingerprint is a SimHash-style vector: every file votes +1/-1 on
each of ``FINGERPRINT_BITS`` positions according to a hash of its path and
content, and the votes are averaged.  Trees that share most files produce
nearby vectors.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from loguru import logger

if TYPE_CHECKING:
    from quietsync.sync_engine.discovery import FileDiscovery

FINGERPRINT_BITS = 64
_READ_CHUNK = 1024 * 1024
ROOT = "."


@runtime_checkable
class ContentHashOracle(Protocol):
    """Per-path subtree hashes and a whole-tree fingerprint."""

    def subtree_hash(self, rel_path: str) -> str:
        """Hash of a file or directory and everything beneath it.

        ``""`` and ``"."`` name the root.  Raises ``KeyError`` for unknown paths.
        """
        ...

    def similarity_fingerprint(self) -> list[float]: ...


def _normalize(rel_path: str) -> str:
    rel_path = rel_path.strip("/")
    return ROOT if rel_path in ("", ".") else rel_path


def _parent(rel_path: str) -> str:
    return rel_path.rsplit("/", 1)[0] if "/" in rel_path else ROOT


def hash_file(path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_READ_CHUNK):
            digest.update(chunk)
    return digest.hexdigest()


class MerkleTree:
    """Immutable Merkle tree over a set of workspace-relative files."""

    def __init__(self, file_hashes: dict[str, str]) -> None:
        self._files = {_normalize(k): v for k, v in file_hashes.items()}
        self._children: dict[str, set[str]] = {ROOT: set()}
        for rel_path in self._files:
            child = rel_path
            parent = _parent(child)
            while True:
                self._children.setdefault(parent, set()).add(child)
                if parent == ROOT:
                    break
                child, parent = parent, _parent(parent)
        self._hashes: dict[str, str] = dict(self._files)
        self._hash_directory(ROOT)

    def _hash_directory(self, rel_path: str) -> str:
        # Iterative post-order so deep trees cannot exhaust the stack.
        stack: list[tuple[str, bool]] = [(rel_path, False)]
        while stack:
            node, expanded = stack.pop()
            if node in self._hashes:
                continue
            children = self._children.get(node, set())
            if not expanded:
                stack.append((node, True))
                stack.extend((c, False) for c in children if c not in self._hashes)
                continue
            digest = hashlib.sha256()
            for child in sorted(children):
                name = child.rsplit("/", 1)[-1]
                digest.update(f"{name}\0{self._hashes[child]}\n".encode())
            self._hashes[node] = digest.hexdigest()
        return self._hashes[rel_path]

    @classmethod
    def build(cls, discovery: FileDiscovery, files: list[str] | None = None) -> MerkleTree:
        """Hash every eligible file of a workspace.  Blocks on file I/O."""
        rel_paths = discovery.list_files() if files is None else files
        file_hashes: dict[str, str] = {}
        for rel_path in rel_paths:
            try:
                file_hashes[rel_path] = hash_file(discovery.root / rel_path)
            except OSError as exc:
                logger.debug("Skipping unreadable file {} while hashing: {}", rel_path, exc)
        tree = cls(file_hashes)
        logger.debug("Merkle tree built: {} files, root={}", len(file_hashes), tree.root_hash[:12])
        return tree

    # -- Oracle ----------------------------------------------------------------

    @property
    def root_hash(self) -> str:
        return self._hashes[ROOT]

    def subtree_hash(self, rel_path: str) -> str:
        return self._hashes[_normalize(rel_path)]

    def __contains__(self, rel_path: object) -> bool:
        return isinstance(rel_path, str) and _normalize(rel_path) in self._hashes

    def is_file(self, rel_path: str) -> bool:
        return _normalize(rel_path) in self._files

    def children(self, rel_path: str = ROOT) -> list[str]:
        return sorted(self._children.get(_normalize(rel_path), ()))

    def files(self) -> list[str]:
        return sorted(self._files)

    def similarity_fingerprint(self) -> list[float]:
        if not self._files:
            return [0.0] * FINGERPRINT_BITS
        votes = [0] * FINGERPRINT_BITS
        for rel_path, file_hash in self._files.items():
            bits = int.from_bytes(hashlib.sha256(f"{rel_path}\0{file_hash}".encode()).digest()[:8], "big")
            for i in range(FINGERPRINT_BITS):
                votes[i] += 1 if (bits >> i) & 1 else -1
        total = len(self._files)
        return [v / total for v in votes]
