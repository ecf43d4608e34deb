"""Mirror indexer ``BetPlaced`` events into bets and pool counters.

The external indexer writes one ``bet_placed_events`` row per on-chain
``BetPlaced`` log. This module turns unprocessed events into ``Bet`` rows
with the same odds rule and atomic pool increment the settlement engine
uses, and repairs legacy bets that were stored with zero odds.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from market_ledger.db.models import BetPlacedEvent
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.pools import PoolState, current_odds, prospective_odds

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class IngestReport:
    """Counters for one ingestion run."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0


class BetIngestor:
    """Turn indexer events into recorded bets.

    Args:
        repository: Ledger database repository.
        batch_size: Maximum events handled per run.

    """

    def __init__(self, repository: LedgerRepository, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        """Initialize the ingestor.

        Args:
            repository: Ledger database repository.
            batch_size: Maximum events handled per run.

        """
        self._repo = repository
        self._batch_size = batch_size

    async def ingest_pending(self) -> IngestReport:
        """Process up to ``batch_size`` unprocessed events in block order.

        Events for a chain id no market holds yet are skipped and picked up
        again once the reconciler links that market. A database error on
        one event is logged and the run continues.

        Returns:
            Counters for the run.

        """
        report = IngestReport()
        events = await self._repo.list_unprocessed_events(self._batch_size)
        if not events:
            logger.debug("No unprocessed bet events")
            return report

        for event in events:
            try:
                if await self._ingest_one(event):
                    report.processed += 1
                else:
                    report.skipped += 1
            except SQLAlchemyError:
                logger.exception("Failed to ingest bet event %s", event.id)
                report.failed += 1

        logger.info(
            "Ingested bet events: processed=%d skipped=%d failed=%d",
            report.processed,
            report.skipped,
            report.failed,
        )
        return report

    async def _ingest_one(self, event: BetPlacedEvent) -> bool:
        """Record one event as a bet; return False if its market is unknown."""
        market = await self._repo.get_market_by_chain_id(event.chain_market_id)
        if market is None:
            logger.warning(
                "Bet event %s references chain market %d with no linked market",
                event.id,
                event.chain_market_id,
            )
            return False

        user = await self._repo.upsert_user(event.user_address)
        odds = prospective_odds(PoolState.of(market), event.position, event.amount)
        await self._repo.record_bet(
            market_id=market.id,
            user_id=user.id,
            position=event.position,
            amount=event.amount,
            odds=odds,
            bet_id=event.id,
            tx_hash=event.tx_hash,
            shares=event.shares,
            created_at=event.block_timestamp,
        )
        return True


async def backfill_zero_odds(repository: LedgerRepository) -> int:
    """Repair legacy bets stored with zero odds.

    Odds are taken from the market's current pools (``total / position
    pool``). Bets that already carry odds are never touched, so the repair
    is safe to re-run.

    Args:
        repository: Ledger database repository.

    Returns:
        Number of bets repaired.

    """
    repaired = 0
    for bet, market in await repository.list_zero_odds_bets():
        odds = current_odds(PoolState.of(market), bet.position)
        if await repository.repair_bet_odds(bet.id, odds):
            repaired += 1
    logger.info("Backfilled odds on %d legacy bets", repaired)
    return repaired
