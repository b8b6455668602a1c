"""Sync engine -- orchestrates handshake, validation, diff, upload, finalize.

One run per workspace at a time, serialized by the session lock.  Phases:

    IDLE -> HANDSHAKING -> VALIDATING -> DIFFING -> UPLOADING -> FINALIZING -> IDLE
                         \\-> ABORTED (identity conflict, malformed response)

Full index (``index_workspace``) skips DIFFING and uploads every eligible file
in batches, finalizing after each batch.  Incremental sync (``resync``) is a
no-op unless the workspace is indexed and has pending changes; otherwise it
diffs against the server-held tree and uploads only what changed.

Identity is persisted right after a successful validation and before any
upload, so a crash mid-upload never leaves uploaded content bound to an
unrecorded key.  ``pending_changes`` is cleared only after finalization.
"""

from __future__ import annotations

import asyncio
import secrets
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from quietsync.sync_engine.cipher import PathCipher, generate_path_key, hash_path_key
from quietsync.sync_engine.client.base import ProtocolShapeError
from quietsync.sync_engine.discovery import FileDiscovery
from quietsync.sync_engine.execution.diff import IncrementalDiff
from quietsync.sync_engine.execution.handshake import (
    IdentityError,
    LatentCollisionError,
    PathKeyMismatchError,
    build_mismatch_report,
    disambiguate_repo_name,
    validate_identity,
)
from quietsync.sync_engine.execution.upload import FileUploader, finalize_batch
from quietsync.sync_engine.log import redact_secret
from quietsync.sync_engine.merkle import MerkleTree
from quietsync.sync_engine.models.enums import IdentityVerdict, SyncMode, SyncPhase
from quietsync.sync_engine.models.identity import DEFAULT_REPO_OWNER, IndexResult, WorkspaceIdentity, default_repo_name
from quietsync.sync_engine.models.protocol import HandshakeRequest, HandshakeResult, RepositoryInfo
from quietsync.sync_engine.registry import SessionRegistry
from quietsync.sync_engine.work_queue import BoundedWorkQueue, WorkCancelledError

if TYPE_CHECKING:
    from quietsync.sync_engine.client.base import IndexService
    from quietsync.sync_engine.context import WorkspaceSession
    from quietsync.sync_engine.execution.diff import ChangeSet
    from quietsync.sync_engine.settings import QuietSyncSettings
    from quietsync.sync_engine.store.base import SyncStateStore

_SEED_BOUND = 2**53


def normalize_root(workspace_root: str | Path) -> str:
    return str(Path(workspace_root).expanduser().resolve())


def chunk(items: list[str], size: int) -> list[list[str]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


class _RunContext:
    """Everything one run needs once the local tree is known."""

    def __init__(
        self,
        *,
        session: WorkspaceSession,
        persisted: WorkspaceIdentity,
        path_key: str,
        transform_seed: int,
        repo_name: str,
        repo_owner: str,
        discovery: FileDiscovery,
        tree: MerkleTree,
        queue: BoundedWorkQueue,
    ) -> None:
        self.session = session
        self.persisted = persisted
        self.path_key = path_key
        self.path_key_hash = hash_path_key(path_key)
        self.cipher = PathCipher(path_key)
        self.transform_seed = transform_seed
        self.repo_name = repo_name
        self.repo_owner = repo_owner
        self.discovery = discovery
        self.tree = tree
        self.queue = queue
        self.codebase_id: str | None = None

    @property
    def workspace_root(self) -> str:
        return self.session.workspace_root

    def repository(self) -> RepositoryInfo:
        return RepositoryInfo(
            orthogonal_transform_seed=self.transform_seed,
            repo_name=self.repo_name,
            repo_owner=self.repo_owner,
            num_files=len(self.tree.files()),
        )


class DiffEngine:
    """Public entry point for indexing and re-syncing workspaces."""

    def __init__(
        self,
        *,
        store: SyncStateStore,
        service: IndexService,
        settings: QuietSyncSettings,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._settings = settings
        self._registry = registry or SessionRegistry()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # -- Public operations -----------------------------------------------------

    async def index_workspace(self, workspace_root: str | Path, *, include_files: bool = False) -> IndexResult:
        """Index the whole workspace and mark it active."""
        result = await self._run(normalize_root(workspace_root), SyncMode.FULL, include_files=include_files)
        await self._store.set_active(result.workspace_root)
        return result

    async def resync(self, workspace_root: str | Path, *, include_files: bool = False) -> IndexResult:
        """Upload what changed since the last sync, if anything is pending."""
        return await self._run(normalize_root(workspace_root), SyncMode.INCREMENTAL, include_files=include_files)

    async def mark_changed(self, workspace_root: str | Path) -> bool:
        """Flag an indexed workspace for the next ``resync``.  Returns ``False`` if not indexed."""
        return await self._store.mark_pending_changes(normalize_root(workspace_root))

    async def status(self, workspace_root: str | Path) -> WorkspaceIdentity:
        return await self._store.load(normalize_root(workspace_root))

    # -- Run -------------------------------------------------------------------

    async def _run(self, root: str, mode: SyncMode, *, include_files: bool) -> IndexResult:
        session = self._registry.open(root)
        with session.run_signal() as cancel_event:
            async with session.lock:
                return await self._run_locked(session, mode, cancel_event, include_files=include_files)

    async def _run_locked(
        self, session: WorkspaceSession, mode: SyncMode, cancel_event: asyncio.Event, *, include_files: bool
    ) -> IndexResult:
        root = session.workspace_root
        if cancel_event.is_set():
            msg = f"Sync of {root} was cancelled before it started"
            raise WorkCancelledError(msg)
        try:
            if mode is SyncMode.FULL:
                result = await self._full(session, cancel_event, include_files=include_files)
            else:
                result = await self._incremental(session, cancel_event, include_files=include_files)
        except (IdentityError, ProtocolShapeError) as exc:
            if session.phase in (SyncPhase.HANDSHAKING, SyncPhase.VALIDATING):
                session.phase = SyncPhase.ABORTED
                logger.error("Sync of {} aborted: {}", root, exc)
            else:
                session.phase = SyncPhase.IDLE
            raise
        except BaseException:
            session.phase = SyncPhase.IDLE
            raise
        session.phase = SyncPhase.IDLE
        return result

    async def _prepare(
        self, session: WorkspaceSession, persisted: WorkspaceIdentity, cancel_event: asyncio.Event
    ) -> _RunContext:
        root = session.workspace_root
        if not await to_thread.run_sync(Path(root).is_dir):
            msg = f"Workspace root is not a directory: {root}"
            raise NotADirectoryError(msg)

        discovery = await to_thread.run_sync(
            partial(
                FileDiscovery,
                root,
                limit=self._settings.sync_list_limit,
                extra_extensions=self._settings.extra_text_extensions,
            )
        )
        files = await to_thread.run_sync(discovery.list_files)
        tree = await to_thread.run_sync(MerkleTree.build, discovery, files)
        logger.debug("Local tree of {}: {} files, root hash {}", root, len(files), tree.root_hash[:12])

        return _RunContext(
            session=session,
            persisted=persisted,
            path_key=self._resolve_path_key(persisted),
            transform_seed=persisted.transform_seed
            if persisted.transform_seed is not None
            else secrets.randbelow(_SEED_BOUND),
            repo_name=persisted.repo_name or default_repo_name(root),
            repo_owner=persisted.repo_owner or DEFAULT_REPO_OWNER,
            discovery=discovery,
            tree=tree,
            queue=BoundedWorkQueue(
                self._settings.sync_concurrency,
                timeout=self._settings.request_timeout,
                cancel_event=cancel_event,
            ),
        )

    def _resolve_path_key(self, persisted: WorkspaceIdentity) -> str:
        if self._settings.path_key is not None:
            path_key = self._settings.path_key.get_secret_value()
        elif persisted.path_key:
            path_key = persisted.path_key
        else:
            path_key = generate_path_key()
            logger.info("Generated new path key (hash {})", hash_path_key(path_key)[:12])
        redact_secret(path_key)
        return path_key

    async def _full(self, session: WorkspaceSession, cancel_event: asyncio.Event, *, include_files: bool) -> IndexResult:
        persisted = await self._store.load(session.workspace_root)
        ctx = await self._prepare(session, persisted, cancel_event)
        await self._establish_identity(ctx)

        files = ctx.tree.files()
        batches = chunk(files, self._settings.initial_upload_batch_size)
        if not batches:
            logger.warning("No eligible files found in {}", ctx.workspace_root)
            batches = [[]]

        uploaded: list[str] = []
        skipped = 0
        for index, batch in enumerate(batches, start=1):
            session.phase = SyncPhase.UPLOADING
            stats = await self._uploader(ctx).upload_batch(batch)
            uploaded.extend(stats.uploaded)
            skipped += len(stats.skipped) + len(stats.failed)
            session.phase = SyncPhase.FINALIZING
            await self._finalize(ctx)
            logger.info("Batch {}/{}: {} files uploaded", index, len(batches), len(stats.uploaded))

        await self._complete(ctx)
        return IndexResult(
            workspace_root=ctx.workspace_root,
            mode=SyncMode.FULL,
            codebase_id=ctx.codebase_id,
            repo_name=ctx.repo_name,
            uploaded=len(uploaded),
            skipped=skipped,
            batches=len(batches),
            files=sorted(uploaded) if include_files else [],
        )

    async def _incremental(
        self, session: WorkspaceSession, cancel_event: asyncio.Event, *, include_files: bool
    ) -> IndexResult:
        persisted = await self._store.load(session.workspace_root)
        session.revalidate(persisted.codebase_id)
        if not persisted.is_indexed:
            logger.info("{} is not indexed yet, nothing to re-sync", session.workspace_root)
            return IndexResult(workspace_root=session.workspace_root, mode=SyncMode.NOOP)
        if not persisted.pending_changes:
            logger.debug("No pending changes for {}", session.workspace_root)
            return IndexResult(
                workspace_root=session.workspace_root,
                mode=SyncMode.NOOP,
                codebase_id=persisted.codebase_id,
                repo_name=persisted.repo_name,
            )

        ctx = await self._prepare(session, persisted, cancel_event)
        await self._establish_identity(ctx)

        session.phase = SyncPhase.DIFFING
        changes = await IncrementalDiff(
            service=self._service,
            cipher=ctx.cipher,
            oracle=ctx.tree,
            discovery=ctx.discovery,
            queue=ctx.queue,
            codebase_id=ctx.codebase_id,
            transform_seed=ctx.transform_seed,
            max_iterations=self._settings.sync_max_iterations,
            max_nodes=self._settings.sync_max_nodes,
            retry_attempts=self._settings.retry_attempts,
            retry_delay=self._settings.retry_delay,
        ).run()
        if changes.undecryptable:
            logger.warning("{} server hints could not be decrypted with the current path key", changes.undecryptable)

        to_upload = await to_thread.run_sync(self._expand_changes, ctx.discovery, changes)
        uploaded: list[str] = []
        skipped = 0
        if to_upload:
            session.phase = SyncPhase.UPLOADING
            stats = await self._uploader(ctx).upload_batch(to_upload)
            uploaded = stats.uploaded
            skipped = len(stats.skipped) + len(stats.failed)
        # Finalize even with nothing to upload: a previous cycle may have
        # uploaded everything and then failed here.
        session.phase = SyncPhase.FINALIZING
        await self._finalize(ctx)

        await self._complete(ctx)
        return IndexResult(
            workspace_root=ctx.workspace_root,
            mode=SyncMode.INCREMENTAL,
            codebase_id=ctx.codebase_id,
            repo_name=ctx.repo_name,
            uploaded=len(uploaded),
            skipped=skipped,
            batches=1 if to_upload else 0,
            files=sorted(uploaded) if include_files else [],
        )

    def _expand_changes(self, discovery: FileDiscovery, changes: ChangeSet) -> list[str]:
        """Changed files plus every eligible file under a new directory, capped."""
        selected = set(changes.changed_files)
        limit = self._settings.sync_max_nodes
        for directory in sorted(changes.new_directories):
            if len(selected) >= limit:
                break
            selected.update(discovery.files_under(directory, limit=limit - len(selected)))
        return sorted(selected)[:limit]

    # -- Handshake -------------------------------------------------------------

    async def _handshake(self, ctx: _RunContext) -> HandshakeResult:
        ctx.session.phase = SyncPhase.HANDSHAKING
        request = HandshakeRequest(
            repository=ctx.repository(),
            root_hash=ctx.tree.root_hash,
            similarity_metric=ctx.tree.similarity_fingerprint(),
            path_key_hash=ctx.path_key_hash,
            path_key=ctx.path_key,
        )
        result = await ctx.queue.run_with_retry(
            partial(self._service.handshake, request),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_delay,
            operation_name="Handshake",
            give_up_on=(ProtocolShapeError,),
        )
        logger.debug("Handshake for {}: codebase {} ({})", ctx.repo_name, result.codebase_id, result.status)
        return result

    async def _establish_identity(self, ctx: _RunContext) -> None:
        """Handshake, validate the key binding, and persist the identity."""
        result = await self._handshake(ctx)
        ctx.session.phase = SyncPhase.VALIDATING
        verdict = validate_identity(result, ctx.persisted, ctx.path_key_hash)

        if verdict is IdentityVerdict.CONFIRMED_MISMATCH:
            raise PathKeyMismatchError(
                build_mismatch_report(result.codebase_id, ctx.persisted.path_key_hash or "", ctx.path_key_hash)
            )
        if verdict is IdentityVerdict.LATENT_COLLISION:
            if self._settings.latent_collision_policy == "refuse":
                raise LatentCollisionError(result.codebase_id)
            previous = result.codebase_id
            ctx.repo_name = disambiguate_repo_name(ctx.repo_name)
            logger.warning(
                "Service already knows codebase {} but no local path key exists; re-registering as {}",
                previous,
                ctx.repo_name,
            )
            result = await self._handshake(ctx)
            ctx.session.phase = SyncPhase.VALIDATING
            if validate_identity(result, ctx.persisted, ctx.path_key_hash) is IdentityVerdict.CONFIRMED_MISMATCH:
                raise PathKeyMismatchError(
                    build_mismatch_report(result.codebase_id, ctx.persisted.path_key_hash or "", ctx.path_key_hash)
                )
            if result.codebase_id == previous:
                logger.warning("Service returned the same codebase {} after re-registration", previous)

        ctx.codebase_id = result.codebase_id
        await self._store.update(
            ctx.workspace_root,
            codebase_id=ctx.codebase_id,
            path_key=ctx.path_key,
            path_key_hash=ctx.path_key_hash,
            transform_seed=ctx.transform_seed,
            repo_name=ctx.repo_name,
            repo_owner=ctx.repo_owner,
        )

    # -- Upload / finalize -----------------------------------------------------

    def _uploader(self, ctx: _RunContext) -> FileUploader:
        return FileUploader(
            service=self._service,
            cipher=ctx.cipher,
            queue=ctx.queue,
            workspace_root=ctx.workspace_root,
            codebase_id=ctx.codebase_id,
            transform_seed=ctx.transform_seed,
            size_limit=self._settings.file_size_limit_bytes,
            retry_attempts=self._settings.retry_attempts,
            retry_delay=self._settings.retry_delay,
        )

    async def _finalize(self, ctx: _RunContext) -> None:
        await finalize_batch(
            service=self._service,
            queue=ctx.queue,
            repository=ctx.repository(),
            codebase_id=ctx.codebase_id,
            fingerprint=ctx.tree.similarity_fingerprint(),
            path_key_hash=ctx.path_key_hash,
            retry_attempts=self._settings.retry_attempts,
            retry_delay=self._settings.retry_delay,
        )

    async def _complete(self, ctx: _RunContext) -> None:
        await self._store.update(ctx.workspace_root, pending_changes=False)
        ctx.session.codebase_id = ctx.codebase_id
        logger.info("Workspace {} synced as codebase {}", ctx.workspace_root, ctx.codebase_id)
