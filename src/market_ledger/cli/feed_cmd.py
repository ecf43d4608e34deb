"""CLI command for ingesting markets from the third-party data feed."""

import asyncio
from typing import Annotated

import typer

from market_ledger.cli._helpers import configure_logging, load_settings
from market_ledger.clients.feed import FeedAPIError, FeedClient
from market_ledger.core.config import EngineSettings
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.ingestion_feed import FeedIngestor, FeedIngestReport

_DEFAULT_COUNT = 50


def ingest_feed(
    count: Annotated[int, typer.Option(help="Number of quality markets to accept")] = _DEFAULT_COUNT,
    min_description: Annotated[
        int, typer.Option(help="Minimum description length for a market to qualify")
    ] = 0,
    ticker: Annotated[
        str, typer.Option(help="Sync a single market by feed ticker instead")
    ] = "",
    db_url: Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")] = "",
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Pull binary markets from the data feed into the ledger."""
    configure_logging(verbose=verbose)
    if count < 1:
        raise typer.BadParameter("--count must be at least 1", param_hint="'--count'")
    settings = load_settings(db_url)
    try:
        if ticker:
            created = asyncio.run(_sync_one(settings, ticker))
            typer.echo(f"{'Created' if created else 'Updated'} market {ticker}")
            return
        report = asyncio.run(_ingest(settings, count, min_description))
    except FeedAPIError as exc:
        typer.echo(f"Feed error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(f"Fetched:  {report.fetched}")
    typer.echo(f"Created:  {report.created}")
    typer.echo(f"Updated:  {report.updated}")
    typer.echo(f"Skipped:  {report.skipped}")
    typer.echo(f"Errors:   {report.errors}")


def _feed_client(settings: EngineSettings) -> FeedClient:
    return FeedClient(
        base_url=settings.feed.base_url,
        api_key=settings.feed.api_key,
        timeout=settings.feed.timeout_seconds,
    )


async def _ingest(settings: EngineSettings, count: int, min_description: int) -> FeedIngestReport:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        async with _feed_client(settings) as feed:
            return await FeedIngestor(repo, feed).ingest(
                count, min_description_length=min_description
            )
    finally:
        await repo.close()


async def _sync_one(settings: EngineSettings, ticker: str) -> bool:
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        async with _feed_client(settings) as feed:
            return await FeedIngestor(repo, feed).sync_market(ticker)
    finally:
        await repo.close()
