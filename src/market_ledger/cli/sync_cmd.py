"""CLI commands for the background scheduler and manual sync triggers."""

import asyncio
from datetime import UTC, datetime
from typing import Annotated

import typer

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.cli._helpers import configure_logging, fail, load_settings
from market_ledger.core.config import EngineSettings
from market_ledger.core.errors import InternalError, LedgerError
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.reconciler import ChainReconciler, ReconcileReport, VerifyReport
from market_ledger.engine.scheduler import Scheduler
from market_ledger.engine.sync import FullSyncReport, SyncService, SyncStatus

_VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]
_DbUrlOption = Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")]


def run(
    interval: Annotated[
        int, typer.Option(help="Seconds between ticks (default: scheduler.interval_seconds)")
    ] = 0,
    max_ticks: Annotated[int, typer.Option(help="Stop after this many ticks (0 = forever)")] = 0,
    db_url: _DbUrlOption = "",
    verbose: _VerboseOption = False,  # noqa: FBT002
) -> None:
    """Run the background scheduler until interrupted."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    if not settings.scheduler.enabled:
        typer.echo("Scheduler disabled (scheduler.enabled is false)")
        return
    seconds = interval or settings.scheduler.interval_seconds
    typer.echo(f"Starting scheduler every {seconds}s (db: {settings.db_url})")
    asyncio.run(_run(settings, seconds, max_ticks or None))


async def _run(settings: EngineSettings, interval: int, max_ticks: int | None) -> None:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        service = SyncService(
            repo,
            settings.chain,
            create_missing_markets=settings.scheduler.create_missing_markets,
        )
        scheduler = Scheduler(service.build_jobs(), interval_seconds=interval, repository=repo)
        await scheduler.run(max_ticks=max_ticks, handle_signals=True)
    finally:
        await repo.close()


def sync(
    db_url: _DbUrlOption = "",
    verbose: _VerboseOption = False,  # noqa: FBT002
) -> None:
    """Run every background job once (protocols, chain, bets, resolutions)."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    try:
        report = asyncio.run(_sync(settings))
    except LedgerError as exc:
        fail(exc)
    typer.echo(f"Protocols updated:  {report.protocols_updated}")
    typer.echo(f"Markets linked:     {report.reconcile.linked}")
    if report.pushed is not None:
        typer.echo(f"Markets created:    {report.pushed.created}")
    typer.echo(f"Bets ingested:      {report.bets.processed}")
    typer.echo(f"Markets resolved:   {report.resolved}")


async def _sync(settings: EngineSettings) -> FullSyncReport:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        service = SyncService(
            repo,
            settings.chain,
            create_missing_markets=settings.scheduler.create_missing_markets,
        )
        return await service.trigger_full_sync()
    finally:
        await repo.close()


def sync_chain(
    contract: Annotated[str, typer.Option(help="Contract address (default: chain config)")] = "",
    rpc_url: Annotated[str, typer.Option(help="RPC endpoint (default: chain config)")] = "",
    db_url: _DbUrlOption = "",
    verbose: _VerboseOption = False,  # noqa: FBT002
) -> None:
    """Link database markets to on-chain markets and verify the links."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    contract_address = contract or settings.chain.contract_address
    rpc = rpc_url or settings.chain.rpc_url
    try:
        reconcile, verify = asyncio.run(_sync_chain(settings, contract_address, rpc))
    except LedgerError as exc:
        fail(exc)
    typer.echo(f"On-chain markets:   {verify.on_chain}")
    typer.echo(f"Linked this run:    {reconcile.linked + verify.linked}")
    typer.echo(f"Verified:           {verify.verified}")
    typer.echo(f"Not in database:    {verify.missing}")
    typer.echo(f"Conflicts:          {reconcile.conflicts}")


async def _sync_chain(
    settings: EngineSettings, contract_address: str, rpc_url: str
) -> tuple[ReconcileReport, VerifyReport]:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        service = SyncService(repo, settings.chain)
        return await service.trigger_blockchain_sync(contract_address, rpc_url)
    finally:
        await repo.close()


def push_markets(
    db_url: _DbUrlOption = "",
    verbose: _VerboseOption = False,  # noqa: FBT002
) -> None:
    """Create on-chain markets for active database markets without a chain id."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    if not settings.chain.private_key:
        typer.echo("Error: chain.private_key is required to create markets", err=True)
        raise typer.Exit(code=1)
    try:
        report = asyncio.run(_push_markets(settings))
    except LedgerError as exc:
        fail(exc)
    typer.echo(f"Linked:   {report.linked}")
    typer.echo(f"Created:  {report.created}")
    typer.echo(f"Skipped:  {report.skipped}")
    typer.echo(f"Failed:   {report.failed}")


async def _push_markets(settings: EngineSettings) -> ReconcileReport:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        try:
            reconciler = ChainReconciler(repo, ChainClient(settings.chain))
            return await reconciler.push_unlinked_markets()
        except ChainError as exc:
            raise InternalError(f"Push failed: {exc.msg}", tx_hash=exc.tx_hash) from exc
    finally:
        await repo.close()


def status(
    db_url: _DbUrlOption = "",
    verbose: _VerboseOption = False,  # noqa: FBT002
) -> None:
    """Show ledger counts and background job health."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    result = asyncio.run(_status(settings))

    typer.echo(f"Markets:          {result.markets} ({result.linked_markets} linked)")
    typer.echo(f"Bets:             {result.bets}")
    typer.echo(f"Protocols:        {result.protocols}")
    typer.echo(f"Last sync:        {_format_ts(result.last_sync_time)}")
    if not result.jobs:
        typer.echo("No job has run yet.")
        return
    typer.echo("")
    typer.echo(f"{'Job':<18} {'Runs':>6} {'Last success':<20} {'Last failure':<20}")
    typer.echo("-" * 67)
    for job in result.jobs:
        typer.echo(
            f"{job.name:<18} {job.runs:>6} {_format_ts(job.last_success_at):<20} "
            f"{_format_ts(job.last_failure_at):<20}"
        )
        if job.last_error and (job.last_failure_at or 0) >= (job.last_success_at or 0):
            typer.echo(f"  last error: {job.last_error}")


async def _status(settings: EngineSettings) -> SyncStatus:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        return await SyncService(repo, settings.chain).get_sync_status()
    finally:
        await repo.close()


def _format_ts(ts: int | None) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")
