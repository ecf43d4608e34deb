"""Pari-mutuel pool arithmetic.

Pure functions over an immutable ``PoolState``. Amounts are integer base
units; odds and probabilities are ``Decimal`` so the values stored on bet
rows are exact.
"""

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any

from market_ledger.core.models import HALF, ONE, ZERO

ODDS_QUANTUM = Decimal("0.0001")
_TWO = Decimal(2)


@dataclass(frozen=True)
class PoolState:
    """Stake totals of one market.

    Args:
        yes_pool: Total yes stake in base units.
        no_pool: Total no stake in base units.
        yes_count: Number of yes bets.
        no_count: Number of no bets.

    """

    yes_pool: int = 0
    no_pool: int = 0
    yes_count: int = 0
    no_count: int = 0

    @property
    def total_pool(self) -> int:
        """Return ``yes_pool + no_pool``."""
        return self.yes_pool + self.no_pool

    def side(self, position: bool) -> int:  # noqa: FBT001
        """Return the pool backing ``position``."""
        return self.yes_pool if position else self.no_pool

    @classmethod
    def of(cls, market: Any) -> "PoolState":
        """Snapshot the pool counters of a market row."""
        return cls(
            yes_pool=market.yes_pool or 0,
            no_pool=market.no_pool or 0,
            yes_count=market.yes_count or 0,
            no_count=market.no_count or 0,
        )


def apply_bet(pool: PoolState, position: bool, amount: int) -> PoolState:  # noqa: FBT001
    """Return the pool state after one bet.

    Args:
        pool: State before the bet.
        position: ``True`` for yes.
        amount: Stake in base units; must not be negative.

    Returns:
        New state with the stake and count added to ``position``'s side.

    Raises:
        ValueError: If ``amount`` is negative.

    """
    if amount < 0:
        msg = f"Bet amount must not be negative, got {amount}"
        raise ValueError(msg)
    if position:
        return replace(pool, yes_pool=pool.yes_pool + amount, yes_count=pool.yes_count + 1)
    return replace(pool, no_pool=pool.no_pool + amount, no_count=pool.no_count + 1)


def prospective_odds(pool: PoolState, position: bool, amount: int) -> Decimal:  # noqa: FBT001
    """Return the odds a bet gets once its own stake is in the pool.

    ``max(1, final_total / final_position_pool)``, quantized to four
    decimal places. An empty final position pool yields ``1``.

    Args:
        pool: State before the bet.
        position: ``True`` for yes.
        amount: Stake in base units.

    Returns:
        Odds, always at least ``1``.

    """
    final_total = pool.total_pool + amount
    final_side = pool.side(position) + amount
    if final_side <= 0:
        return ONE.quantize(ODDS_QUANTUM)
    odds = Decimal(final_total) / Decimal(final_side)
    return max(ONE, odds).quantize(ODDS_QUANTUM)


def current_odds(pool: PoolState, position: bool) -> Decimal:  # noqa: FBT001
    """Return pre-trade odds ``total / position_pool``, or ``1`` when that side is empty."""
    side = pool.side(position)
    if side <= 0:
        return ONE.quantize(ODDS_QUANTUM)
    return max(ONE, Decimal(pool.total_pool) / Decimal(side)).quantize(ODDS_QUANTUM)


def implied_probability(pool: PoolState) -> Decimal:
    """Return the implied yes probability ``yes / total``, ``0.5`` when empty."""
    if pool.total_pool <= 0:
        return HALF
    return Decimal(pool.yes_pool) / Decimal(pool.total_pool)


def odds_from_probability(probability: Decimal) -> Decimal:
    """Return ``1 / probability``, or ``2`` when the probability is zero."""
    if probability <= ZERO:
        return _TWO
    return ONE / probability
