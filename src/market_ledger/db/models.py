"""SQLAlchemy ORM models for the market ledger database.

Pool amounts are stored as integer base units and timestamps as Unix
epoch seconds. The ``chain_market_id`` unique constraint is what makes
chain-id assignment at-most-once across concurrent reconcilers.
"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from market_ledger.core.models import BetStatus, MarketStatus
from market_ledger.core.timestamps import now_ts


def _new_id() -> str:
    """Return a fresh UUID4 string primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base class for all market ledger ORM models."""


class Market(Base):
    """A prediction market as known to the database.

    Attributes:
        id: Internal UUID owned by the database.
        ticker: External content-feed ticker, if the market came from the feed.
        chain_market_id: On-chain market id; ``None`` until reconciled and
            immutable once set.
        question: Market question text; may be shortened to match the chain.
        description: Optional longer description from the feed.
        end_time: Betting deadline as epoch seconds.
        status: ``active`` or ``resolved``.
        outcome: Resolution outcome (``True`` = yes), ``None`` until resolved.
        yes_pool: Total yes stake in base units.
        no_pool: Total no stake in base units.
        total_pool: Always ``yes_pool + no_pool``.
        yes_count: Number of yes bets.
        no_count: Number of no bets.
        current_yield: Current yield accrued by the market vault.
        total_yield_earned: Cumulative yield earned.
        created_at: Creation time, epoch seconds.
        updated_at: Last modification time, epoch seconds.

    """

    __tablename__ = "markets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ticker: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    chain_market_id: Mapped[int | None] = mapped_column(BigInteger, unique=True, nullable=True)
    question: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_time: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default=MarketStatus.ACTIVE.value, index=True)
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    yes_pool: Mapped[int] = mapped_column(BigInteger, default=0)
    no_pool: Mapped[int] = mapped_column(BigInteger, default=0)
    total_pool: Mapped[int] = mapped_column(BigInteger, default=0)
    yes_count: Mapped[int] = mapped_column(Integer, default=0)
    no_count: Mapped[int] = mapped_column(Integer, default=0)
    current_yield: Mapped[Decimal] = mapped_column(Numeric(20, 6), default=Decimal(0))
    total_yield_earned: Mapped[Decimal] = mapped_column(Numeric(20, 6), default=Decimal(0))
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, onupdate=now_ts)


class User(Base):
    """A wallet holder, keyed by lower-cased address."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    address: Mapped[str] = mapped_column(String(42), unique=True)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, onupdate=now_ts)


class Bet(Base):
    """A recorded wager on one side of a market.

    Attributes:
        id: UUID for engine-placed bets, or the indexer event id for
            bets ingested from chain events.
        market_id: Owning market.
        user_id: Owning user.
        position: ``True`` for yes, ``False`` for no.
        amount: Stake in base units.
        shares: Vault shares minted for the stake, when known.
        odds: Odds snapshot taken at insertion.
        status: ``active``, ``won`` or ``lost``.
        payout: Payout in base units once settled.
        tx_hash: Settlement transaction hash; unique so a chain event and an
            engine-placed bet for the same transaction are recorded once.
        created_at: Placement time, epoch seconds.
        updated_at: Last modification time, epoch seconds.

    """

    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    market_id: Mapped[str] = mapped_column(ForeignKey("markets.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    position: Mapped[bool] = mapped_column(Boolean)
    amount: Mapped[int] = mapped_column(BigInteger)
    shares: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    odds: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    status: Mapped[str] = mapped_column(String(16), default=BetStatus.ACTIVE.value)
    payout: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), unique=True, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ts)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, onupdate=now_ts)

    __table_args__ = (Index("ix_bets_market_created", "market_id", "created_at"),)


class Protocol(Base):
    """A yield source whose APY is refreshed from the chain."""

    __tablename__ = "protocols"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    address: Mapped[str | None] = mapped_column(String(42), unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String)
    apy: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal(0))
    risk_level: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ts)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ts, onupdate=now_ts)


class BetPlacedEvent(Base):
    """A ``BetPlaced`` log captured by the external chain indexer.

    The engine only reads this table; it is written by the indexer.
    """

    __tablename__ = "bet_placed_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    chain_market_id: Mapped[int] = mapped_column(BigInteger, index=True)
    user_address: Mapped[str] = mapped_column(String(42))
    position: Mapped[bool] = mapped_column(Boolean)
    amount: Mapped[int] = mapped_column(BigInteger)
    shares: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, index=True)
    block_timestamp: Mapped[int] = mapped_column(BigInteger)
    tx_hash: Mapped[str] = mapped_column(String(66))


class SyncCheckpoint(Base):
    """Outcome of the most recent runs of one background job."""

    __tablename__ = "sync_checkpoints"

    job_name: Mapped[str] = mapped_column(String, primary_key=True)
    last_success_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_failure_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    runs: Mapped[int] = mapped_column(Integer, default=0)
