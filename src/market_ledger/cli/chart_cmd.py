"""CLI command for printing market and platform chart series."""

import asyncio
from datetime import UTC, datetime
from typing import Annotated

import typer

from market_ledger.cli._helpers import configure_logging, fail, load_settings
from market_ledger.core.errors import LedgerError
from market_ledger.core.models import MarketRef
from market_ledger.core.timestamps import parse_timestamp
from market_ledger.core.units import from_base_units
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.charts import ChartAggregator, MarketChartSeries, PlatformChartSeries

_DEFAULT_DAYS = 30


def chart(
    market: Annotated[
        str, typer.Argument(help="Market id, ticker, or chain id (omit with --platform)")
    ] = "",
    interval: Annotated[str, typer.Option(help="Bucket width: 1m, 5m, 15m, 1h, 4h, 1d")] = "1h",
    from_date: Annotated[
        str, typer.Option("--from", help="Range start (YYYY-MM-DD or Unix timestamp)")
    ] = "",
    to_date: Annotated[
        str, typer.Option("--to", help="Range end (YYYY-MM-DD or Unix timestamp)")
    ] = "",
    platform: Annotated[  # noqa: FBT002
        bool, typer.Option("--platform", help="Show daily platform metrics instead")
    ] = False,
    days: Annotated[int, typer.Option(help="Trailing days for --platform")] = _DEFAULT_DAYS,
    db_url: Annotated[str, typer.Option(help="SQLAlchemy async DB URL override")] = "",
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Print a market's probability and volume series, or platform metrics."""
    configure_logging(verbose=verbose)
    if not platform and not market:
        raise typer.BadParameter("a market is required unless --platform is given")
    try:
        from_ts = parse_timestamp(from_date) if from_date else None
        to_ts = parse_timestamp(to_date) if to_date else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    settings = load_settings(db_url)
    try:
        if platform:
            _print_platform(asyncio.run(_platform_series(settings.db_url, days)))
        else:
            ref = MarketRef.parse(market)
            series = asyncio.run(_market_series(settings.db_url, ref, interval, from_ts, to_ts))
            _print_market(series)
    except LedgerError as exc:
        fail(exc)


async def _market_series(
    db_url: str,
    ref: MarketRef,
    interval: str,
    from_ts: int | None,
    to_ts: int | None,
) -> MarketChartSeries:
    repo = LedgerRepository(db_url)
    try:
        await repo.init_db()
        return await ChartAggregator(repo).get_market_series(ref, interval, from_ts, to_ts)
    finally:
        await repo.close()


async def _platform_series(db_url: str, days: int) -> PlatformChartSeries:
    repo = LedgerRepository(db_url)
    try:
        await repo.init_db()
        return await ChartAggregator(repo).get_platform_series(days)
    finally:
        await repo.close()


def _print_market(series: MarketChartSeries) -> None:
    typer.echo(
        f"Market {series.market_id}  interval={series.interval.value}  "
        f"points={len(series.points)}"
    )
    typer.echo(
        f"\n{'Time (UTC)':<17} {'P(yes)':>7} {'P(no)':>7} {'Odds Y':>8} {'Odds N':>8} "
        f"{'Pool (USDC)':>14} {'Bets':>5}"
    )
    typer.echo("-" * 72)
    for point in series.points:
        pool = from_base_units(point.total_volume)
        typer.echo(
            f"{_format_ts(point.timestamp):<17} {point.yes_probability:>7.4f} "
            f"{point.no_probability:>7.4f} {point.yes_odds:>8.4f} {point.no_odds:>8.4f} "
            f"{pool:>14.2f} {point.bet_count:>5}"
        )


def _print_platform(series: PlatformChartSeries) -> None:
    typer.echo(f"Platform metrics, last {series.days} days")
    typer.echo(f"\n{'Day':<11} {'Volume (USDC)':>14} {'New mkts':>9} {'Users':>7} {'Bets':>7}")
    typer.echo("-" * 52)
    for point in series.points:
        day = datetime.fromtimestamp(point.day, tz=UTC).strftime("%Y-%m-%d")
        typer.echo(
            f"{day:<11} {from_base_units(point.volume):>14.2f} {point.new_active_markets:>9} "
            f"{point.total_users:>7} {point.total_bets:>7}"
        )


def _format_ts(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M")
