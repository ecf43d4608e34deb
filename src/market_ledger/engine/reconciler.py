"""Chain reconciler: map on-chain market ids onto database markets.

The contract only stores a market's question text, so the link between a
database row and its on-chain record is recovered by text matching. A
chain id is bound to at most one row through the repository's
conditional assignment; losing a race to another reconciler is a benign
no-op, so every pass is safe to repeat.
"""

import logging
from dataclasses import dataclass

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError, ChainIndeterminateError
from market_ledger.db.models import Market
from market_ledger.db.repository import LedgerRepository

logger = logging.getLogger(__name__)

_LOG_TEXT_LIMIT = 60

MATCH_EXACT = "exact"
MATCH_PREFIX = "prefix"


def match_questions(db_question: str, chain_question: str) -> str | None:
    """Compare a database question with a chain question.

    Both sides are trimmed. A prefix match in either direction tolerates
    the contract truncating long questions.

    Args:
        db_question: Question stored in the database.
        chain_question: Question read from the contract.

    Returns:
        ``"exact"``, ``"prefix"``, or ``None`` when the texts do not match
        or either side is empty.

    """
    db_text = db_question.strip()
    chain_text = chain_question.strip()
    if not db_text or not chain_text:
        return None
    if db_text == chain_text:
        return MATCH_EXACT
    if db_text.startswith(chain_text) or chain_text.startswith(db_text):
        return MATCH_PREFIX
    return None


def _short(text: str) -> str:
    return text[:_LOG_TEXT_LIMIT]


@dataclass
class ReconcileReport:
    """Counters for one reconciliation pass.

    Attributes:
        scanned: Chain ids examined.
        linked: Rows that received a chain id in this pass.
        already_linked: Chain ids already held by a row.
        conflicts: Matches skipped because another row won the chain id.
        unmatched: Chain markets with no matching unlinked row.
        created: Markets created on chain by the creation path.
        skipped: Rows the creation path declined to push.
        failed: Items that raised a chain error and were left for the next tick.

    """

    scanned: int = 0
    linked: int = 0
    already_linked: int = 0
    conflicts: int = 0
    unmatched: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class VerifyReport:
    """Counters for a link verification pass."""

    on_chain: int = 0
    verified: int = 0
    linked: int = 0
    missing: int = 0
    failed: int = 0


class ChainReconciler:
    """Keep database markets and on-chain markets consistently linked.

    Args:
        repository: Ledger database repository.
        chain: Settlement contract client.

    """

    def __init__(self, repository: LedgerRepository, chain: ChainClient) -> None:
        """Initialize the reconciler.

        Args:
            repository: Ledger database repository.
            chain: Settlement contract client.

        """
        self._repo = repository
        self._chain = chain

    async def reconcile(self) -> ReconcileReport:
        """Scan ``[0, nextMarketId)`` and link matching unlinked rows.

        A chain error on one id is logged and the scan continues. A second
        pass over unchanged state performs no writes.

        Returns:
            Counters for the pass.

        Raises:
            ChainError: When ``nextMarketId`` itself cannot be read.

        """
        report = ReconcileReport()
        next_id = await self._chain.next_market_id()
        logger.info("Reconciling %d on-chain markets", next_id)

        for chain_id in range(next_id):
            report.scanned += 1
            try:
                await self._reconcile_one(chain_id, report)
            except ChainError:
                logger.exception("Failed to read on-chain market %d", chain_id)
                report.failed += 1

        logger.info(
            "Reconciliation complete: scanned=%d linked=%d already_linked=%d "
            "conflicts=%d unmatched=%d failed=%d",
            report.scanned,
            report.linked,
            report.already_linked,
            report.conflicts,
            report.unmatched,
            report.failed,
        )
        return report

    async def _reconcile_one(self, chain_id: int, report: ReconcileReport) -> None:
        """Try to link a single on-chain market to an unlinked row."""
        if await self._repo.get_market_by_chain_id(chain_id) is not None:
            report.already_linked += 1
            return

        on_chain = await self._chain.get_market(chain_id)
        question = on_chain.question.strip()
        if not question:
            report.unmatched += 1
            return

        hit = await self._repo.find_unlinked_by_question(question)
        if hit is None:
            logger.debug("No unlinked market matches chain id %d: %r", chain_id, _short(question))
            report.unmatched += 1
            return

        market, match = hit
        if match == MATCH_PREFIX:
            logger.warning(
                "Prefix match for chain id %d: db=%r chain=%r",
                chain_id,
                market.question,
                question,
            )
        if await self._link(market, chain_id):
            report.linked += 1
        else:
            report.conflicts += 1

    async def _link(self, market: Market, chain_id: int) -> bool:
        """Assign ``chain_id`` to ``market`` unless another row already holds it."""
        holder = await self._repo.get_market_by_chain_id(chain_id)
        if holder is not None and holder.id != market.id:
            logger.warning(
                "Soft conflict: chain id %d already held by %s; not linking %s (%r)",
                chain_id,
                holder.id,
                market.id,
                _short(market.question),
            )
            return False

        if await self._repo.assign_chain_id(market.id, chain_id):
            logger.info("Linked market %s to chain id %d", market.id, chain_id)
            return True

        logger.info(
            "Market %s was linked concurrently; chain id %d assignment skipped",
            market.id,
            chain_id,
        )
        return False

    async def push_unlinked_markets(self) -> ReconcileReport:
        """Link or create on chain every active market without a chain id.

        Each row is first matched against existing on-chain questions;
        only a row with no match is created with ``createMarket``. If the
        contract stored a shortened question, the database question is
        overwritten with the chain's text before linking.

        Returns:
            Counters for the pass.

        Raises:
            ChainError: When the initial chain scan cannot start.

        """
        report = ReconcileReport()
        markets = await self._repo.list_unlinked_active_markets()
        if not markets:
            logger.info("No unlinked markets to push")
            return report

        logger.info("Pushing %d unlinked markets to chain", len(markets))
        chain_questions = await self._read_chain_questions()

        for market in markets:
            report.scanned += 1
            try:
                await self._push_one(market, chain_questions, report)
            except ChainIndeterminateError as exc:
                logger.warning(
                    "Outcome unknown for market %s (tx: %s); retrying next tick",
                    market.id,
                    exc.tx_hash,
                )
                report.failed += 1
            except ChainError:
                logger.exception("Failed to push market %s", market.id)
                report.failed += 1

        logger.info(
            "Push complete: linked=%d created=%d skipped=%d failed=%d",
            report.linked,
            report.created,
            report.skipped,
            report.failed,
        )
        return report

    async def _read_chain_questions(self) -> dict[int, str]:
        """Read every on-chain question, skipping ids that fail to load."""
        questions: dict[int, str] = {}
        for chain_id in range(await self._chain.next_market_id()):
            try:
                questions[chain_id] = (await self._chain.get_market(chain_id)).question
            except ChainError:
                logger.exception("Failed to read on-chain market %d", chain_id)
        return questions

    async def _push_one(
        self,
        market: Market,
        chain_questions: dict[int, str],
        report: ReconcileReport,
    ) -> None:
        """Link one row to an existing chain market, or create it on chain."""
        for chain_id, chain_question in chain_questions.items():
            match = match_questions(market.question, chain_question)
            if match is None:
                continue
            if match == MATCH_PREFIX:
                logger.warning(
                    "Prefix match for chain id %d: db=%r chain=%r",
                    chain_id,
                    market.question,
                    chain_question,
                )
            if await self._link(market, chain_id):
                report.linked += 1
            else:
                report.conflicts += 1
            return

        next_id = await self._chain.next_market_id()
        holder = await self._repo.get_market_by_chain_id(next_id)
        if holder is not None:
            logger.warning(
                "Chain id %d already assigned to %s; skipping creation of %r",
                next_id,
                holder.id,
                _short(market.question),
            )
            report.skipped += 1
            return

        question = market.question.strip()
        logger.info("Creating on-chain market for %s: %r", market.id, _short(question))
        created = await self._chain.create_market(question, market.end_time)
        report.created += 1

        on_chain = await self._chain.get_market(created.market_id)
        chain_question = on_chain.question.strip()
        chain_questions[created.market_id] = chain_question
        if chain_question and chain_question != question:
            logger.warning(
                "Chain stored a different question for %d; updating database: db=%r chain=%r",
                created.market_id,
                question,
                chain_question,
            )
            await self._repo.update_question(market.id, chain_question)

        if await self._link(market, created.market_id):
            report.linked += 1
        else:
            report.conflicts += 1

    async def verify_links(self) -> VerifyReport:
        """Count linked chain markets and link remaining exact-text matches.

        Returns:
            Counters for the pass.

        Raises:
            ChainError: When ``nextMarketId`` cannot be read.

        """
        report = VerifyReport()
        next_id = await self._chain.next_market_id()
        report.on_chain = next_id

        for chain_id in range(next_id):
            if await self._repo.get_market_by_chain_id(chain_id) is not None:
                report.verified += 1
                continue
            try:
                on_chain = await self._chain.get_market(chain_id)
            except ChainError:
                logger.exception("Failed to read on-chain market %d", chain_id)
                report.failed += 1
                continue

            market = await self._repo.find_by_question(on_chain.question.strip())
            if market is None:
                logger.info(
                    "Chain market %d not in database: %r", chain_id, _short(on_chain.question)
                )
                report.missing += 1
                continue
            if market.chain_market_id is not None:
                logger.info(
                    "Market %s already holds chain id %d, chain id %d left unlinked",
                    market.id,
                    market.chain_market_id,
                    chain_id,
                )
                report.verified += 1
                continue
            if await self._link(market, chain_id):
                report.linked += 1
            report.verified += 1

        logger.info(
            "Verification complete: on_chain=%d verified=%d linked=%d missing=%d",
            report.on_chain,
            report.verified,
            report.linked,
            report.missing,
        )
        return report
