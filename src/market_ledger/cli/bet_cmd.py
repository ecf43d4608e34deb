"""CLI commands for placing wagers and repairing legacy bet odds.

``place-bet`` settles a wager against the settlement contract with the
configured signing key and records it for the given wallet address. A bet
that confirmed on chain but could not be recorded prints its transaction
hash so it can be repaired by hand.
"""

import asyncio
from typing import Annotated

import typer

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.cli._helpers import configure_logging, fail, load_settings
from market_ledger.core.config import EngineSettings
from market_ledger.core.errors import InternalError, LedgerError
from market_ledger.core.models import MarketRef
from market_ledger.core.units import format_amount
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.ingestion import backfill_zero_odds
from market_ledger.engine.settlement import BetSettlementEngine, PlacedBet


def place_bet(
    market: Annotated[str, typer.Argument(help="Market id, ticker, or chain id (e.g. chain:7)")],
    amount: Annotated[str, typer.Argument(help="Stake in USDC, e.g. 12.5")],
    address: Annotated[str, typer.Option(help="Wallet address the bet is recorded for")],
    yes: Annotated[  # noqa: FBT002
        bool, typer.Option("--yes/--no", help="Bet on the yes or the no outcome")
    ] = True,
    db_url: Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")] = "",
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Settle a wager on chain and record it in the ledger."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    if not settings.chain.private_key:
        typer.echo("Error: chain.private_key is required to place bets", err=True)
        raise typer.Exit(code=1)
    try:
        placed = asyncio.run(_place_bet(settings, market, address, yes, amount))
    except LedgerError as exc:
        if isinstance(exc, InternalError) and exc.tx_hash:
            typer.echo(f"Transaction: {exc.tx_hash}", err=True)
        fail(exc)

    side = "YES" if placed.position else "NO"
    typer.echo(f"Bet recorded: {placed.bet_id}")
    typer.echo(f"  Market:   {placed.market_id} (chain id {placed.chain_market_id})")
    typer.echo(f"  Position: {side}")
    typer.echo(f"  Amount:   {format_amount(placed.amount)}")
    typer.echo(f"  Odds:     {placed.odds}")
    typer.echo(f"  Tx:       {placed.tx_hash}")
    if placed.approval_tx_hash:
        typer.echo(f"  Approval: {placed.approval_tx_hash}")


async def _place_bet(
    settings: EngineSettings,
    market: str,
    address: str,
    position: bool,  # noqa: FBT001
    amount: str,
) -> PlacedBet:
    ref = MarketRef.parse(market)
    repo = LedgerRepository(settings.db_url)
    try:
        await repo.init_db()
        try:
            chain = ChainClient(settings.chain)
        except ChainError as exc:
            raise InternalError(f"Chain client unavailable: {exc.msg}") from exc
        engine = BetSettlementEngine(repo, chain)
        return await engine.place_bet(ref, address, position, amount)
    finally:
        await repo.close()


def backfill_odds(
    db_url: Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")] = "",
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Set odds on legacy bets stored with zero odds from current pools."""
    configure_logging(verbose=verbose)
    settings = load_settings(db_url)
    repaired = asyncio.run(_backfill_odds(settings.db_url))
    typer.echo(f"Repaired odds on {repaired} bets")


async def _backfill_odds(db_url: str) -> int:
    repo = LedgerRepository(db_url)
    try:
        await repo.init_db()
        return await backfill_zero_odds(repo)
    finally:
        await repo.close()
