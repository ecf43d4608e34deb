"""Typed data model for markets returned by the market-data feed."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from market_ledger.core.timestamps import parse_iso_datetime

_MAX_PROBABILITY = Decimal(100)


@dataclass(frozen=True)
class FeedMarket:
    """A binary market as published by the feed.

    Args:
        ticker: Feed-wide unique ticker.
        external_id: Id of the market on its source platform.
        platform: Source platform name.
        question: Market question.
        description: Longer description, if any.
        status: Feed status string (e.g. ``active``).
        probability: Yes probability in percent, 0 to 100.
        end_time: Betting deadline, epoch seconds; ``None`` if unparsable.

    """

    ticker: str
    external_id: str
    platform: str
    question: str
    description: str | None
    status: str
    probability: Decimal
    end_time: int | None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "FeedMarket":
        """Build a ``FeedMarket`` from one API payload entry.

        Missing or malformed fields degrade to empty values; use
        ``is_valid`` to decide whether the record is usable.

        Args:
            raw: Market dictionary from the feed API.

        Returns:
            Parsed market.

        """
        try:
            probability = Decimal(str(raw.get("probability", 0)))
        except InvalidOperation:
            probability = Decimal(-1)
        try:
            end_time: int | None = parse_iso_datetime(str(raw.get("end_date", "")))
        except ValueError:
            end_time = None
        description = raw.get("description")
        return cls(
            ticker=str(raw.get("adj_ticker", "")),
            external_id=str(raw.get("market_id", "")),
            platform=str(raw.get("platform", "")),
            question=str(raw.get("question", "")).strip(),
            description=str(description).strip() if description else None,
            status=str(raw.get("status", "")),
            probability=probability,
            end_time=end_time,
        )

    @property
    def is_valid(self) -> bool:
        """Return True when the record has identifiers, a question, and a parsable end date."""
        if not self.ticker or not self.external_id or not self.question:
            return False
        if self.end_time is None:
            return False
        return 0 <= self.probability <= _MAX_PROBABILITY
