"""CLI subpackage for the market ledger.

Create the Typer application and register all command modules.
"""

import typer

from market_ledger.cli.bet_cmd import backfill_odds, place_bet
from market_ledger.cli.chart_cmd import chart
from market_ledger.cli.db_cmd import init_db
from market_ledger.cli.feed_cmd import ingest_feed
from market_ledger.cli.sync_cmd import push_markets, run, status, sync, sync_chain

app = typer.Typer(help="Prediction-market ledger and settlement engine")

app.command(name="init-db")(init_db)
app.command()(run)
app.command()(sync)
app.command(name="sync-chain")(sync_chain)
app.command(name="push-markets")(push_markets)
app.command()(status)
app.command(name="place-bet")(place_bet)
app.command()(chart)
app.command(name="ingest-feed")(ingest_feed)
app.command(name="backfill-odds")(backfill_odds)

__all__ = ["app"]
