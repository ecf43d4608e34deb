"""Reconstruct market and platform time series from raw bets.

Bucketing is pure: ``build_series`` folds a time-ordered bet stream into
fixed-width buckets keyed by ``ts - ts % width``. Pool values are running
totals, so a bucket with no bets repeats the previous state. Probability
is ``yes / total`` (``0.5`` for an empty pool) and each side's odds are
``1 / probability`` (``2.0`` when that side's probability is zero).
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from market_ledger.core.errors import BadRequestError, NotFoundError
from market_ledger.core.models import ONE, Interval, MarketRef
from market_ledger.core.timestamps import now_ts
from market_ledger.db.models import Bet
from market_ledger.db.repository import DailyPoint, LedgerRepository
from market_ledger.engine.pools import (
    PoolState,
    apply_bet,
    implied_probability,
    odds_from_probability,
)

logger = logging.getLogger(__name__)

MAX_POINTS = 10_000
_SECONDS_PER_DAY = 86400
_PROBABILITY_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class BetSample:
    """The fields of a bet that charting needs."""

    timestamp: int
    position: bool
    amount: int


@dataclass(frozen=True)
class ChartPoint:
    """Market state at the close of one bucket.

    Args:
        timestamp: Bucket start, epoch seconds.
        yes_probability: Implied yes probability.
        no_probability: ``1 - yes_probability``.
        yes_odds: ``1 / yes_probability``.
        no_odds: ``1 / no_probability``.
        yes_volume: Cumulative yes pool.
        no_volume: Cumulative no pool.
        total_volume: Cumulative total pool.
        bet_count: Bets placed inside this bucket.

    """

    timestamp: int
    yes_probability: Decimal
    no_probability: Decimal
    yes_odds: Decimal
    no_odds: Decimal
    yes_volume: int
    no_volume: int
    total_volume: int
    bet_count: int


@dataclass(frozen=True)
class MarketChartSeries:
    """A market's bucketed series."""

    market_id: str
    interval: Interval
    start: int
    end: int
    points: tuple[ChartPoint, ...]


@dataclass(frozen=True)
class PlatformPoint:
    """One day of platform-wide metrics."""

    day: int
    volume: int
    new_active_markets: int
    total_users: int
    total_bets: int


@dataclass(frozen=True)
class PlatformChartSeries:
    """Daily platform series over a trailing window."""

    days: int
    points: tuple[PlatformPoint, ...]


def bucket_start(ts: int, width: int) -> int:
    """Return the start of the bucket containing ``ts``."""
    return ts - ts % width


def _point(timestamp: int, pool: PoolState, bet_count: int) -> ChartPoint:
    yes_probability = implied_probability(pool)
    no_probability = ONE - yes_probability
    return ChartPoint(
        timestamp=timestamp,
        yes_probability=yes_probability.quantize(_PROBABILITY_QUANTUM),
        no_probability=no_probability.quantize(_PROBABILITY_QUANTUM),
        yes_odds=odds_from_probability(yes_probability).quantize(_PROBABILITY_QUANTUM),
        no_odds=odds_from_probability(no_probability).quantize(_PROBABILITY_QUANTUM),
        yes_volume=pool.yes_pool,
        no_volume=pool.no_pool,
        total_volume=pool.total_pool,
        bet_count=bet_count,
    )


def build_series(
    bets: Iterable[BetSample],
    interval: Interval,
    start_ts: int,
    end_ts: int,
) -> list[ChartPoint]:
    """Fold time-ordered bets into one point per bucket in ``[start, end]``.

    Bets before the first bucket seed the opening pool state; bets after
    ``end_ts`` are ignored.

    Args:
        bets: Bets sorted by timestamp.
        interval: Bucket width.
        start_ts: Range start, epoch seconds.
        end_ts: Range end, epoch seconds (inclusive).

    Returns:
        Points for every bucket from the one holding ``start_ts`` to the
        one holding ``end_ts``.

    Raises:
        BadRequestError: If the range is inverted or needs more than
            ``MAX_POINTS`` buckets.

    """
    if start_ts > end_ts:
        raise BadRequestError("'from' must not be after 'to'")
    width = interval.seconds
    first = bucket_start(start_ts, width)
    last = bucket_start(end_ts, width)
    if (last - first) // width + 1 > MAX_POINTS:
        msg = f"Range too large for interval {interval.value} (max {MAX_POINTS} points)"
        raise BadRequestError(msg)

    pool = PoolState()
    counts: dict[int, int] = {}
    by_bucket: dict[int, list[BetSample]] = {}
    for bet in bets:
        if bet.timestamp > end_ts:
            continue
        key = bucket_start(bet.timestamp, width)
        if key < first:
            pool = apply_bet(pool, bet.position, bet.amount)
            continue
        by_bucket.setdefault(key, []).append(bet)
        counts[key] = counts.get(key, 0) + 1

    points: list[ChartPoint] = []
    for key in range(first, last + 1, width):
        for bet in by_bucket.get(key, ()):
            pool = apply_bet(pool, bet.position, bet.amount)
        points.append(_point(key, pool, counts.get(key, 0)))
    return points


def _sample(bet: Bet) -> BetSample:
    return BetSample(timestamp=bet.created_at, position=bet.position, amount=bet.amount)


class ChartAggregator:
    """Serve chart series from the ledger database.

    Args:
        repository: Ledger database repository.

    """

    def __init__(self, repository: LedgerRepository) -> None:
        """Initialize the aggregator.

        Args:
            repository: Ledger database repository.

        """
        self._repo = repository

    async def get_market_series(
        self,
        market_ref: MarketRef,
        interval: Interval | str,
        from_ts: int | None = None,
        to_ts: int | None = None,
    ) -> MarketChartSeries:
        """Build a market's probability, volume, and odds series.

        The range starts at ``from_ts`` if given, else at the first bet,
        else at the market's creation time, and ends at ``to_ts`` or now.

        Args:
            market_ref: Market to chart.
            interval: Bucket width or its label (``1m`` ... ``1d``).
            from_ts: Optional range start, epoch seconds.
            to_ts: Optional range end, epoch seconds.

        Returns:
            The bucketed series.

        Raises:
            BadRequestError: If the interval or range is invalid.
            NotFoundError: If the market does not exist.

        """
        if isinstance(interval, str):
            interval = Interval.parse(interval)
        market = await self._repo.resolve_ref(market_ref)
        if market is None:
            raise NotFoundError(f"Market not found: {market_ref}")

        end = to_ts if to_ts is not None else now_ts()
        bets = [_sample(b) for b in await self._repo.get_bets_for_market(market.id, until_ts=end)]
        if from_ts is not None:
            start = from_ts
        else:
            start = min(bets[0].timestamp if bets else market.created_at, end)

        points = build_series(bets, interval, start, end)
        logger.debug(
            "Built %d %s points for market %s from %d bets",
            len(points),
            interval.value,
            market.id,
            len(bets),
        )
        return MarketChartSeries(
            market_id=market.id,
            interval=interval,
            start=start,
            end=end,
            points=tuple(points),
        )

    async def get_platform_series(self, days: int = 30) -> PlatformChartSeries:
        """Build daily platform metrics for the trailing ``days`` days.

        Volume and new active markets are per day; users and bets are
        cumulative, including everything created before the window.

        Args:
            days: Window length in days, at least 1.

        Returns:
            One point per day, oldest first.

        Raises:
            BadRequestError: If ``days`` is not positive.

        """
        if days < 1:
            raise BadRequestError("days must be at least 1")
        today = bucket_start(now_ts(), _SECONDS_PER_DAY)
        since = today - (days - 1) * _SECONDS_PER_DAY

        volume = _by_day(await self._repo.daily_bet_volume(since))
        markets = _by_day(await self._repo.daily_new_active_markets(since))
        new_users = _by_day(await self._repo.daily_new_users(since))
        new_bets = _by_day(await self._repo.daily_bet_count(since))
        total_users = await self._repo.count_users(before_ts=since)
        total_bets = await self._repo.count_bets(before_ts=since)

        points: list[PlatformPoint] = []
        for day in range(since, today + 1, _SECONDS_PER_DAY):
            total_users += new_users.get(day, 0)
            total_bets += new_bets.get(day, 0)
            points.append(
                PlatformPoint(
                    day=day,
                    volume=volume.get(day, 0),
                    new_active_markets=markets.get(day, 0),
                    total_users=total_users,
                    total_bets=total_bets,
                )
            )
        return PlatformChartSeries(days=days, points=tuple(points))


def _by_day(rows: list[DailyPoint]) -> dict[int, int]:
    return {row.day: row.value for row in rows}
