import click


@click.group()
def main() -> None:
    """quietsync - Encrypted-path workspace sync for a remote code index."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings():
    from quietsync.sync_engine.log import setup_logging
    from quietsync.sync_engine.settings import get_settings

    settings = get_settings()
    setup_logging(settings)
    return settings


def _store(settings):
    from quietsync.sync_engine.store.local import LocalSyncStateStore

    return LocalSyncStateStore(settings.data_root)


async def _resolve_root(store, path: str | None) -> str:
    from quietsync.sync_engine.execution.engine import normalize_root

    if path is not None:
        return normalize_root(path)
    active = await store.get_active()
    if active is None:
        msg = "No workspace given and no active workspace set (see `quietsync activate`)."
        raise click.UsageError(msg)
    return active


def _run_engine(path: str | None, *, full: bool, verbose: bool) -> None:
    import asyncio

    import httpx

    from quietsync.sync_engine.client.base import ProtocolShapeError
    from quietsync.sync_engine.client.http import HttpIndexService
    from quietsync.sync_engine.execution.engine import DiffEngine
    from quietsync.sync_engine.execution.handshake import LatentCollisionError, PathKeyMismatchError
    from quietsync.sync_engine.work_queue import WorkCancelledError

    settings = _settings()
    if settings.auth_token is None:
        click.echo("Warning: QUIETSYNC_AUTH_TOKEN is not set.", err=True)

    async def _go():
        store = _store(settings)
        root = await _resolve_root(store, path)
        async with HttpIndexService(
            settings.base_url,
            settings.resolve_auth_token(),
            timeout=settings.request_timeout,
        ) as service:
            engine = DiffEngine(store=store, service=service, settings=settings)
            if full:
                return await engine.index_workspace(root, include_files=verbose)
            return await engine.resync(root, include_files=verbose)

    try:
        result = asyncio.run(_go())
    except PathKeyMismatchError as exc:
        click.echo(exc.report.render(), err=True)
        raise SystemExit(1) from exc
    except (LatentCollisionError, ProtocolShapeError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    except (httpx.HTTPError, OSError, WorkCancelledError) as exc:
        # Retries are already exhausted; persisted state is left for the next run.
        detail = str(exc) or type(exc).__name__
        click.echo(f"Error: sync of the workspace did not complete: {detail}", err=True)
        raise SystemExit(1) from exc

    click.echo(f"{result.mode.value}: {result.workspace_root}")
    if result.codebase_id:
        click.echo(f"  codebase: {result.codebase_id} ({result.repo_name})")
    click.echo(f"  uploaded: {result.uploaded}, skipped: {result.skipped}, batches: {result.batches}")
    for rel_path in result.files:
        click.echo(f"    {rel_path}")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("-v", "--verbose", is_flag=True, default=False, help="List uploaded files.")
def index(path: str | None, verbose: bool) -> None:
    """Index a workspace from scratch and make it the active one."""
    _run_engine(path, full=True, verbose=verbose)


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("-v", "--verbose", is_flag=True, default=False, help="List uploaded files.")
def sync(path: str | None, verbose: bool) -> None:
    """Upload changes since the last sync (default: active workspace)."""
    _run_engine(path, full=False, verbose=verbose)


@main.command("mark-changed")
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
def mark_changed(path: str | None) -> None:
    """Flag a workspace so the next `sync` runs a diff."""
    import asyncio

    settings = _settings()

    async def _go() -> tuple[str, bool]:
        store = _store(settings)
        root = await _resolve_root(store, path)
        return root, await store.mark_pending_changes(root)

    root, marked = asyncio.run(_go())
    if not marked:
        click.echo(f"{root} is not indexed; run `quietsync index` first.", err=True)
        raise SystemExit(1)
    click.echo(f"Marked {root} as changed.")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@main.command()
@click.argument("path", required=False, type=click.Path(file_okay=False))
def status(path: str | None) -> None:
    """Show the persisted identity of a workspace."""
    import asyncio

    from quietsync.sync_engine.cipher import hash_path_key

    settings = _settings()

    async def _go():
        store = _store(settings)
        root = await _resolve_root(store, path)
        return await store.load(root), await store.get_active()

    identity, active = asyncio.run(_go())
    click.echo(f"Workspace: {identity.workspace_root}{' (active)' if identity.workspace_root == active else ''}")
    if not identity.is_indexed:
        click.echo("  not indexed")
        return
    click.echo(f"  codebase:        {identity.codebase_id}")
    click.echo(f"  repo:            {identity.repo_owner}/{identity.repo_name}")
    click.echo(f"  path key hash:   {(identity.path_key_hash or '')[:12]}")
    click.echo(f"  pending changes: {'yes' if identity.pending_changes else 'no'}")
    if settings.path_key is not None and hash_path_key(settings.path_key.get_secret_value()) != identity.path_key_hash:
        click.echo("  warning: QUIETSYNC_PATH_KEY differs from the stored path key", err=True)


@main.command("list")
def list_workspaces() -> None:
    """List every workspace with a state record."""
    import asyncio

    settings = _settings()

    async def _go():
        store = _store(settings)
        return await store.list_all(), await store.get_active()

    roots, active = asyncio.run(_go())
    if not roots:
        click.echo("No workspaces recorded.")
        return
    for root in sorted(roots):
        click.echo(f"{'*' if root == active else ' '} {root}")


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("--clear", is_flag=True, default=False, help="Unset the active workspace.")
def activate(path: str | None, clear: bool) -> None:
    """Set (or with --clear, unset) the active workspace."""
    import asyncio

    from quietsync.sync_engine.execution.engine import normalize_root

    settings = _settings()
    store = _store(settings)
    if clear:
        asyncio.run(store.clear_active())
        click.echo("Active workspace cleared.")
        return
    if path is None:
        msg = "PATH is required unless --clear is given."
        raise click.UsageError(msg)
    root = normalize_root(path)
    asyncio.run(store.set_active(root))
    click.echo(f"Active workspace: {root}")


if __name__ == "__main__":
    main()
