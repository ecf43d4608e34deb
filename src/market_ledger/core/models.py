"""Core value types shared across the engines.

Define the status enums stored on database rows, the chart ``Interval``
set, and the ``MarketRef`` tagged variant that callers use to name a
market by internal id, feed ticker, or chain id.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from market_ledger.core.errors import BadRequestError

ZERO = Decimal(0)
ONE = Decimal(1)
HALF = Decimal("0.5")


class MarketStatus(Enum):
    """Lifecycle status of a market row."""

    ACTIVE = "active"
    RESOLVED = "resolved"


class BetStatus(Enum):
    """Settlement status of a bet row."""

    ACTIVE = "active"
    WON = "won"
    LOST = "lost"


class Interval(Enum):
    """Supported chart bucket widths from 1 minute to 1 day."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def seconds(self) -> int:
        """Return the bucket width in seconds."""
        return _INTERVAL_SECONDS[self]

    @classmethod
    def parse(cls, value: str) -> "Interval":
        """Parse an interval label such as ``"1h"``.

        Args:
            value: Interval label.

        Returns:
            The matching ``Interval``.

        Raises:
            BadRequestError: If the label is not one of the supported values.

        """
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(i.value for i in cls)
            msg = f"Invalid interval '{value}'. Allowed values: {allowed}"
            raise BadRequestError(msg) from None


MAX_CHAIN_ID = 2**63 - 1

_INTERVAL_SECONDS: dict[Interval, int] = {
    Interval.M1: 60,
    Interval.M5: 300,
    Interval.M15: 900,
    Interval.H1: 3600,
    Interval.H4: 14400,
    Interval.D1: 86400,
}


class RefKind(Enum):
    """Which identifier space a ``MarketRef`` points into."""

    INTERNAL_ID = "id"
    TICKER = "ticker"
    CHAIN_ID = "chain"


@dataclass(frozen=True)
class MarketRef:
    """A market identifier tagged with the identifier space it belongs to.

    Parse once at the API boundary with ``MarketRef.parse`` and pass the
    tagged value down, so no query has to guess which column to match.

    Args:
        kind: Identifier space.
        value: Identifier text (decimal digits for ``CHAIN_ID``).

    """

    kind: RefKind
    value: str

    @property
    def chain_id(self) -> int:
        """Return the numeric chain id of a ``CHAIN_ID`` reference."""
        return int(self.value)

    @classmethod
    def by_id(cls, market_id: str) -> "MarketRef":
        """Build a reference to an internal market id."""
        return cls(RefKind.INTERNAL_ID, market_id)

    @classmethod
    def by_ticker(cls, ticker: str) -> "MarketRef":
        """Build a reference to a content-feed ticker."""
        return cls(RefKind.TICKER, ticker)

    @classmethod
    def by_chain_id(cls, chain_id: int) -> "MarketRef":
        """Build a reference to an on-chain market id."""
        return cls(RefKind.CHAIN_ID, str(chain_id))

    @classmethod
    def parse(cls, raw: str) -> "MarketRef":
        """Parse a raw identifier string into a tagged reference.

        Accept an explicit ``id:``, ``ticker:`` or ``chain:`` prefix.
        Without a prefix, all-digit strings are chain ids, UUIDs are
        internal ids, and anything else is a feed ticker.

        Args:
            raw: Identifier supplied by a caller.

        Returns:
            Tagged market reference.

        Raises:
            BadRequestError: If the identifier is empty or a chain id is not
                a non-negative integer that fits a signed 64-bit column.

        """
        text = raw.strip()
        if not text:
            raise BadRequestError("Market identifier is empty")

        prefix, sep, rest = text.partition(":")
        if sep and prefix in {k.value for k in RefKind}:
            kind = RefKind(prefix)
            if kind is RefKind.CHAIN_ID:
                return cls.by_chain_id(_parse_chain_id(rest))
            return cls(kind, rest)

        if text.isdigit():
            return cls.by_chain_id(_parse_chain_id(text))
        if _is_uuid(text):
            return cls(RefKind.INTERNAL_ID, text)
        return cls(RefKind.TICKER, text)

    def __str__(self) -> str:
        """Render as ``kind:value``."""
        return f"{self.kind.value}:{self.value}"


def _is_uuid(value: str) -> bool:
    """Return True when ``value`` parses as a UUID."""
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _parse_chain_id(text: str) -> int:
    """Parse ASCII decimal digits into a chain id that fits a BIGINT column."""
    if not (text.isascii() and text.isdigit()):
        msg = f"Invalid chain market id: {text!r}"
        raise BadRequestError(msg)
    value = int(text)
    if value > MAX_CHAIN_ID:
        msg = f"Chain market id out of range: {text}"
        raise BadRequestError(msg)
    return value
