"""CLI command for creating the ledger database schema."""

import asyncio
from typing import Annotated

import typer

from market_ledger.cli._helpers import configure_logging, load_settings
from market_ledger.db.repository import LedgerRepository


def init_db(
    db_url: Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")] = "",
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Create all ledger tables if they do not already exist."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    asyncio.run(_init_db(settings.db_url))
    typer.echo(f"Database initialised ({settings.db_url})")


async def _init_db(db_url: str) -> None:
    repo = LedgerRepository(db_url)
    try:
        await repo.init_db()
    finally:
        await repo.close()
