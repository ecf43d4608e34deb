"""Create and refresh unlinked markets from the third-party feed.

New markets are filtered for quality (a binary question with a future
end date and, when requested, a description of some length) and skipped
when their question is a near-duplicate of one already in the database.
Markets already known by ticker are refreshed in place.
"""

import asyncio
import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from market_ledger.clients.feed.client import FeedClient
from market_ledger.clients.feed.models import FeedMarket
from market_ledger.core.models import MarketRef
from market_ledger.core.timestamps import now_ts
from market_ledger.db.repository import LedgerRepository

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8
_MULTI_OUTCOME_MARKERS = (",yes ", ",no ")
_MULTI_OUTCOME_LIMIT = 2
_BATCH_SIZE = 50
_MAX_BATCHES = 10
_BATCH_PAUSE_SECONDS = 0.5
_STRIP_CHARS = re.compile(r"[?.,]")


def normalize_question(question: str) -> str:
    """Lower-case, trim, drop ``?``, ``.`` and ``,``, and collapse double spaces."""
    text = _STRIP_CHARS.sub("", question.lower().strip())
    return text.replace("  ", " ")


def question_similarity(first: str, second: str) -> float:
    """Return the Jaccard similarity of the word sets of two normalized questions."""
    words_a = set(first.split())
    words_b = set(second.split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def is_duplicate_question(question: str, existing: list[str]) -> bool:
    """Return True if ``question`` equals or closely resembles any of ``existing``.

    Args:
        question: Candidate question.
        existing: Questions already accepted.

    Returns:
        True for an exact normalized match or a word similarity above
        ``SIMILARITY_THRESHOLD``.

    """
    candidate = normalize_question(question)
    for other in existing:
        normalized = normalize_question(other)
        if candidate == normalized:
            return True
        if question_similarity(candidate, normalized) > SIMILARITY_THRESHOLD:
            return True
    return False


def is_quality_market(market: FeedMarket, *, min_description_length: int, now: int) -> bool:
    """Return True for a binary market with a future end date and enough description."""
    if not market.question:
        return False
    lowered = market.question.lower()
    markers = sum(lowered.count(marker) for marker in _MULTI_OUTCOME_MARKERS)
    if markers >= _MULTI_OUTCOME_LIMIT:
        return False
    if len(market.description or "") <= min_description_length:
        return False
    return market.end_time is not None and market.end_time > now


@dataclass
class FeedIngestReport:
    """Counters for one feed ingestion run."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class FeedIngestor:
    """Pull markets from the feed into the database.

    Args:
        repository: Ledger database repository.
        feed: Feed API client.

    """

    def __init__(self, repository: LedgerRepository, feed: FeedClient) -> None:
        """Initialize the feed ingestor.

        Args:
            repository: Ledger database repository.
            feed: Feed API client.

        """
        self._repo = repository
        self._feed = feed

    async def ingest(self, count: int, *, min_description_length: int = 0) -> FeedIngestReport:
        """Fetch up to ``count`` quality markets and store the new or changed ones.

        Args:
            count: Target number of markets to accept.
            min_description_length: Descriptions must be longer than this.

        Returns:
            Counters for the run.

        Raises:
            FeedAPIError: When the feed cannot be read.

        """
        report = FeedIngestReport()
        candidates = await self._fetch_quality(count, min_description_length, report)
        seen = await self._repo.list_questions()

        for market in candidates:
            if not market.is_valid:
                logger.warning("Invalid feed market %s; skipping", market.ticker)
                report.skipped += 1
                continue
            known = await self._repo.resolve_ref(MarketRef.by_ticker(market.ticker))
            if known is None and is_duplicate_question(market.question, seen):
                logger.info("Skipping near-duplicate question: %r", market.question[:60])
                report.skipped += 1
                continue
            try:
                created = await self._repo.upsert_feed_market(
                    ticker=market.ticker,
                    question=market.question,
                    description=market.description,
                    end_time=market.end_time or 0,
                )
            except SQLAlchemyError:
                logger.exception("Failed to store feed market %s", market.ticker)
                report.errors += 1
                continue
            seen.append(market.question)
            if created:
                report.created += 1
            else:
                report.updated += 1

        logger.info(
            "Feed ingestion complete: fetched=%d created=%d updated=%d skipped=%d errors=%d",
            report.fetched,
            report.created,
            report.updated,
            report.skipped,
            report.errors,
        )
        return report

    async def sync_market(self, ticker: str) -> bool:
        """Fetch one market by ticker and create or refresh it.

        Returns:
            True if a new row was created.

        Raises:
            FeedAPIError: When the feed cannot be read.
            ValueError: When the feed returns an invalid record.

        """
        market = await self._feed.get_market(ticker)
        if not market.is_valid:
            msg = f"Invalid market data for {ticker}"
            raise ValueError(msg)
        return await self._repo.upsert_feed_market(
            ticker=market.ticker,
            question=market.question,
            description=market.description,
            end_time=market.end_time or 0,
        )

    async def _fetch_quality(
        self,
        count: int,
        min_description_length: int,
        report: FeedIngestReport,
    ) -> list[FeedMarket]:
        """Page through the feed until ``count`` quality markets are found."""
        accepted: list[FeedMarket] = []
        offset = 0
        now = now_ts()
        for batch in range(_MAX_BATCHES):
            page = await self._feed.get_markets(limit=_BATCH_SIZE, offset=offset)
            if not page:
                break
            report.fetched += len(page)
            accepted.extend(
                m
                for m in page
                if is_quality_market(m, min_description_length=min_description_length, now=now)
            )
            logger.debug("Feed batch %d: %d quality markets so far", batch + 1, len(accepted))
            if len(accepted) >= count or len(page) < _BATCH_SIZE:
                break
            offset += _BATCH_SIZE
            await asyncio.sleep(_BATCH_PAUSE_SECONDS)
        return accepted[:count]
