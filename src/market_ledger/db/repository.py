"""Async repository for the market ledger database.

Wrap SQLAlchemy async engine and session management. Every write the
engines need is expressed as one of four primitives so that correctness
never depends on in-process locking:

- conditional assignment (``SET chain_market_id = n WHERE chain_market_id IS NULL``)
- atomic increment (``SET yes_pool = yes_pool + amount``)
- exact and prefix text matching for reconciliation
- append-only inserts for bets

The repository is database-agnostic: swap from SQLite to PostgreSQL by
changing the connection string.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import and_, exists, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from market_ledger.core.models import BetStatus, MarketRef, MarketStatus, RefKind
from market_ledger.core.timestamps import now_ts
from market_ledger.db.models import (
    Base,
    Bet,
    BetPlacedEvent,
    Market,
    Protocol,
    SyncCheckpoint,
    User,
)

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400
_DEFAULT_EVENT_BATCH = 100


@dataclass(frozen=True)
class DailyPoint:
    """One day of an aggregated platform metric."""

    day: int
    value: int


class LedgerRepository:
    """Async repository for market, bet, user, and protocol persistence.

    Args:
        db_url: SQLAlchemy async connection string
            (e.g. ``sqlite+aiosqlite:///market_ledger.db``).

    """

    def __init__(self, db_url: str) -> None:
        """Initialize the repository with an async database engine.

        Args:
            db_url: SQLAlchemy async connection string.

        """
        self._engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self) -> None:
        """Create all tables if they do not already exist.

        Idempotent; safe to call on every startup.
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialised")

    async def close(self) -> None:
        """Dispose the async engine and release all connections."""
        await self._engine.dispose()
        logger.info("Database engine disposed")

    # -- markets -----------------------------------------------------------

    async def create_market(
        self,
        question: str,
        *,
        ticker: str | None = None,
        description: str | None = None,
        end_time: int = 0,
        created_at: int | None = None,
    ) -> Market:
        """Insert a new, unlinked market.

        Args:
            question: Market question text.
            ticker: Optional content-feed ticker.
            description: Optional description.
            end_time: Betting deadline, epoch seconds.
            created_at: Creation time override, epoch seconds.

        Returns:
            The persisted ``Market``.

        """
        ts = created_at if created_at is not None else now_ts()
        market = Market(
            question=question,
            ticker=ticker,
            description=description,
            end_time=end_time,
            status=MarketStatus.ACTIVE.value,
            yes_pool=0,
            no_pool=0,
            total_pool=0,
            yes_count=0,
            no_count=0,
            created_at=ts,
            updated_at=ts,
        )
        async with self._session_factory() as session, session.begin():
            session.add(market)
        return market

    async def get_market(self, market_id: str) -> Market | None:
        """Fetch a market by internal id."""
        async with self._session_factory() as session:
            return await session.get(Market, market_id)

    async def get_market_by_chain_id(self, chain_market_id: int) -> Market | None:
        """Fetch the market currently holding ``chain_market_id``, if any."""
        stmt = select(Market).where(Market.chain_market_id == chain_market_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def resolve_ref(self, ref: MarketRef) -> Market | None:
        """Look up a market by a tagged reference.

        Args:
            ref: Market reference in one of the three identifier spaces.

        Returns:
            The matching market, or ``None``.

        """
        if ref.kind is RefKind.INTERNAL_ID:
            return await self.get_market(ref.value)
        if ref.kind is RefKind.CHAIN_ID:
            return await self.get_market_by_chain_id(ref.chain_id)
        stmt = select(Market).where(Market.ticker == ref.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_unlinked_by_question(self, question: str) -> tuple[Market, str] | None:
        """Find an unlinked market whose question matches ``question``.

        Try an exact match first. Fall back to a prefix match in either
        direction, tolerating chain-side truncation of long questions.
        Among several candidates the oldest market wins.

        Args:
            question: Trimmed question text read from the chain.

        Returns:
            ``(market, "exact" | "prefix")`` or ``None``.

        """
        unlinked = Market.chain_market_id.is_(None)
        exact = (
            select(Market)
            .where(unlinked, Market.question == question)
            .order_by(Market.created_at, Market.id)
            .limit(1)
        )
        prefix = (
            select(Market)
            .where(
                unlinked,
                func.length(Market.question) > 0,
                or_(
                    Market.question.startswith(question, autoescape=True),
                    func.substr(literal(question), 1, func.length(Market.question))
                    == Market.question,
                ),
            )
            .order_by(Market.created_at, Market.id)
            .limit(1)
        )
        async with self._session_factory() as session:
            hit = (await session.execute(exact)).scalar_one_or_none()
            if hit is not None:
                return hit, "exact"
            hit = (await session.execute(prefix)).scalar_one_or_none()
            if hit is not None:
                return hit, "prefix"
        return None

    async def find_by_question(self, question: str) -> Market | None:
        """Return the oldest market with exactly this question, linked or not."""
        stmt = (
            select(Market)
            .where(Market.question == question)
            .order_by(Market.created_at, Market.id)
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_unlinked_active_markets(self) -> list[Market]:
        """Return active markets without a chain id, oldest first."""
        stmt = (
            select(Market)
            .where(
                Market.chain_market_id.is_(None),
                Market.status == MarketStatus.ACTIVE.value,
            )
            .order_by(Market.created_at, Market.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_linked_active_markets(self) -> list[Market]:
        """Return active markets that already carry a chain id."""
        stmt = (
            select(Market)
            .where(
                Market.chain_market_id.is_not(None),
                Market.status == MarketStatus.ACTIVE.value,
            )
            .order_by(Market.chain_market_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def assign_chain_id(self, market_id: str, chain_market_id: int) -> bool:
        """Claim ``chain_market_id`` for a market that has no chain id yet.

        The update only matches while the row's chain id is still NULL,
        and the unique constraint rejects a claim on an id another row
        already holds. Either way a lost race is reported as ``False``,
        never raised.

        Args:
            market_id: Internal market id.
            chain_market_id: On-chain market id to assign.

        Returns:
            True if this call performed the assignment.

        """
        stmt = (
            update(Market)
            .where(Market.id == market_id, Market.chain_market_id.is_(None))
            .values(chain_market_id=chain_market_id, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                assigned = result.rowcount > 0  # type: ignore[attr-defined]
        except IntegrityError:
            logger.warning(
                "Chain id %d already taken by another market; %s left unlinked",
                chain_market_id,
                market_id,
            )
            return False
        return assigned

    async def update_question(self, market_id: str, question: str) -> None:
        """Overwrite a market's question text."""
        stmt = (
            update(Market)
            .where(Market.id == market_id)
            .values(question=question, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)

    async def list_questions(self) -> list[str]:
        """Return the question text of every market."""
        async with self._session_factory() as session:
            result = await session.execute(select(Market.question))
            return list(result.scalars().all())

    async def upsert_feed_market(
        self,
        *,
        ticker: str,
        question: str,
        description: str | None,
        end_time: int,
    ) -> bool:
        """Create or refresh a market that came from the content feed.

        Existing rows are matched by ticker. The question of a row that is
        already linked to the chain is left alone, since the chain text is
        authoritative once committed.

        Returns:
            True if a new row was created.

        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(select(Market).where(Market.ticker == ticker))
            existing = result.scalar_one_or_none()
            if existing is None:
                ts = now_ts()
                session.add(
                    Market(
                        ticker=ticker,
                        question=question,
                        description=description,
                        end_time=end_time,
                        status=MarketStatus.ACTIVE.value,
                        yes_pool=0,
                        no_pool=0,
                        total_pool=0,
                        yes_count=0,
                        no_count=0,
                        created_at=ts,
                        updated_at=ts,
                    )
                )
                return True
            if existing.chain_market_id is None:
                existing.question = question
            existing.description = description
            existing.end_time = end_time
            return False

    async def resolve_market(self, market_id: str, outcome: bool) -> bool:  # noqa: FBT001
        """Mark a market resolved and settle its bets, exactly once.

        The status transition is a conditional update on ``status =
        'active'``; only the call that wins it settles bets. Winners are
        paid ``amount * total_pool // winning_pool``, computed in Python so the
        product never overflows a 64-bit column.

        Args:
            market_id: Internal market id.
            outcome: Resolution outcome, ``True`` for yes.

        Returns:
            True if this call performed the resolution.

        """
        ts = now_ts()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(Market)
                .where(Market.id == market_id, Market.status == MarketStatus.ACTIVE.value)
                .values(status=MarketStatus.RESOLVED.value, outcome=outcome, updated_at=ts)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                return False

            market = await session.get(Market, market_id)
            if market is None:
                return False
            winning_pool = market.yes_pool if outcome else market.no_pool
            total_pool = market.total_pool

            await session.execute(
                update(Bet)
                .where(Bet.market_id == market_id, Bet.position != outcome)
                .values(status=BetStatus.LOST.value, payout=0, updated_at=ts)
                .execution_options(synchronize_session=False)
            )
            winners = await session.scalars(
                select(Bet).where(Bet.market_id == market_id, Bet.position == outcome)
            )
            for bet in winners:
                bet.status = BetStatus.WON.value
                bet.payout = (
                    bet.amount * total_pool // winning_pool if winning_pool > 0 else bet.amount
                )
                bet.updated_at = ts
        return True

    # -- bets ----------------------------------------------------------------

    async def record_bet(  # noqa: PLR0913
        self,
        *,
        market_id: str,
        user_id: str,
        position: bool,
        amount: int,
        odds: Decimal,
        bet_id: str | None = None,
        tx_hash: str | None = None,
        shares: int | None = None,
        created_at: int | None = None,
    ) -> Bet:
        """Insert a bet and apply its pool increment in one transaction.

        The pool update is an atomic SQL increment so concurrent bettors on
        the same market never lose each other's stake.

        Args:
            market_id: Owning market.
            user_id: Owning user.
            position: ``True`` for yes.
            amount: Stake in base units.
            odds: Odds snapshot to store.
            bet_id: Explicit id (indexer event id); a UUID otherwise.
            tx_hash: Settlement transaction hash.
            shares: Vault shares minted, when known.
            created_at: Placement time override, epoch seconds.

        Returns:
            The persisted ``Bet``.

        """
        ts = created_at if created_at is not None else now_ts()
        bet = Bet(
            market_id=market_id,
            user_id=user_id,
            position=position,
            amount=amount,
            shares=shares,
            odds=odds,
            status=BetStatus.ACTIVE.value,
            tx_hash=tx_hash,
            created_at=ts,
            updated_at=ts,
        )
        if bet_id is not None:
            bet.id = bet_id

        if position:
            values = {
                "yes_pool": Market.yes_pool + amount,
                "yes_count": Market.yes_count + 1,
            }
        else:
            values = {
                "no_pool": Market.no_pool + amount,
                "no_count": Market.no_count + 1,
            }
        pool_update = (
            update(Market)
            .where(Market.id == market_id)
            .values(total_pool=Market.total_pool + amount, updated_at=now_ts(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            session.add(bet)
            await session.flush()
            await session.execute(pool_update)
        logger.debug(
            "Recorded bet %s on market %s: position=%s amount=%d",
            bet.id,
            market_id,
            position,
            amount,
        )
        return bet

    async def get_bet(self, bet_id: str) -> Bet | None:
        """Fetch a bet by id."""
        async with self._session_factory() as session:
            return await session.get(Bet, bet_id)

    async def get_bet_by_tx_hash(self, tx_hash: str) -> Bet | None:
        """Fetch the bet recorded for a settlement transaction."""
        stmt = select(Bet).where(Bet.tx_hash == tx_hash)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def bet_exists(self, *, bet_id: str, tx_hash: str | None = None) -> bool:
        """Return True if a bet with this id (or settlement tx hash) exists."""
        condition = Bet.id == bet_id
        if tx_hash:
            condition = or_(condition, Bet.tx_hash == tx_hash)
        stmt = select(exists().where(condition))
        async with self._session_factory() as session:
            return bool((await session.execute(stmt)).scalar())

    async def get_bets_for_market(self, market_id: str, *, until_ts: int) -> list[Bet]:
        """Return a market's bets placed at or before ``until_ts``, oldest first."""
        stmt = (
            select(Bet)
            .where(Bet.market_id == market_id, Bet.created_at <= until_ts)
            .order_by(Bet.created_at, Bet.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_zero_odds_bets(self) -> list[tuple[Bet, Market]]:
        """Return legacy bets stored with zero odds, paired with their market."""
        stmt = (
            select(Bet, Market)
            .join(Market, Bet.market_id == Market.id)
            .where(Bet.odds == 0)
            .order_by(Bet.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    async def repair_bet_odds(self, bet_id: str, odds: Decimal) -> bool:
        """Set odds on a zero-odds bet; a bet with real odds is never touched.

        Returns:
            True if the row was updated.

        """
        stmt = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.odds == 0)
            .values(odds=odds, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount > 0  # type: ignore[attr-defined]

    # -- indexer events ------------------------------------------------------

    async def save_events(self, events: list[BetPlacedEvent]) -> None:
        """Batch-insert indexer events (used by the indexer and by seeding)."""
        if not events:
            return
        async with self._session_factory() as session, session.begin():
            session.add_all(events)
        logger.debug("Saved %d bet events", len(events))

    async def list_unprocessed_events(
        self, limit: int = _DEFAULT_EVENT_BATCH
    ) -> list[BetPlacedEvent]:
        """Return indexer events with no matching bet, in block order.

        An event counts as processed when a bet exists with the event's id
        or with the event's transaction hash.
        """
        processed = exists().where(
            or_(Bet.id == BetPlacedEvent.id, Bet.tx_hash == BetPlacedEvent.tx_hash)
        )
        stmt = (
            select(BetPlacedEvent)
            .where(~processed)
            .order_by(BetPlacedEvent.block_number, BetPlacedEvent.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # -- users ---------------------------------------------------------------

    async def get_user_by_address(self, address: str) -> User | None:
        """Fetch a user by wallet address (case-insensitive)."""
        stmt = select(User).where(User.address == address.lower())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def upsert_user(self, address: str) -> User:
        """Return the user for ``address``, creating it on first sight.

        A concurrent insert of the same address loses on the unique
        constraint and re-reads the winner's row.
        """
        normalized = address.lower()
        existing = await self.get_user_by_address(normalized)
        if existing is not None:
            return existing
        ts = now_ts()
        user = User(address=normalized, created_at=ts, updated_at=ts)
        try:
            async with self._session_factory() as session, session.begin():
                session.add(user)
        except IntegrityError:
            winner = await self.get_user_by_address(normalized)
            if winner is None:
                raise
            return winner
        logger.info("Created user %s for address %s", user.id, normalized)
        return user

    async def update_user_profile(
        self,
        address: str,
        *,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> User | None:
        """Update the mutable profile fields of a user.

        Returns:
            The updated user, or ``None`` if no user has this address.

        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(select(User).where(User.address == address.lower()))
            user = result.scalar_one_or_none()
            if user is None:
                return None
            if username is not None:
                user.username = username
            if avatar_url is not None:
                user.avatar_url = avatar_url
            user.updated_at = now_ts()
            return user

    # -- protocols -----------------------------------------------------------

    async def upsert_protocol(self, *, address: str, name: str, risk_level: int = 1) -> Protocol:
        """Register a yield protocol, or refresh the name and risk of a known one."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(select(Protocol).where(Protocol.address == address))
            protocol = result.scalar_one_or_none()
            if protocol is None:
                ts = now_ts()
                protocol = Protocol(
                    address=address,
                    name=name,
                    risk_level=risk_level,
                    apy=Decimal(0),
                    is_active=True,
                    created_at=ts,
                    updated_at=ts,
                )
                session.add(protocol)
            else:
                protocol.name = name
                protocol.risk_level = risk_level
            return protocol

    async def list_active_protocols(self) -> list[Protocol]:
        """Return active protocols ordered by name."""
        stmt = select(Protocol).where(Protocol.is_active.is_(True)).order_by(Protocol.name)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_protocol_apy(self, protocol_id: str, apy: Decimal) -> None:
        """Store a freshly read APY for a protocol."""
        stmt = (
            update(Protocol)
            .where(Protocol.id == protocol_id)
            .values(apy=apy, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)

    # -- sync bookkeeping ----------------------------------------------------

    async def record_job_result(self, job_name: str, error: str | None = None) -> None:
        """Record the outcome of one background job run.

        Args:
            job_name: Scheduler job name.
            error: Error text for a failed run, ``None`` for success.

        """
        ts = now_ts()
        async with self._session_factory() as session, session.begin():
            checkpoint = await session.get(SyncCheckpoint, job_name)
            if checkpoint is None:
                checkpoint = SyncCheckpoint(job_name=job_name, runs=0)
                session.add(checkpoint)
            checkpoint.runs = (checkpoint.runs or 0) + 1
            if error is None:
                checkpoint.last_success_at = ts
            else:
                checkpoint.last_failure_at = ts
                checkpoint.last_error = error

    async def get_checkpoints(self) -> list[SyncCheckpoint]:
        """Return the checkpoint row of every job that has run."""
        stmt = select(SyncCheckpoint).order_by(SyncCheckpoint.job_name)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_markets(self, *, linked_only: bool = False) -> int:
        """Return the number of markets, optionally only those with a chain id."""
        stmt = select(func.count()).select_from(Market)
        if linked_only:
            stmt = stmt.where(Market.chain_market_id.is_not(None))
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def count_bets(self, *, before_ts: int | None = None) -> int:
        """Return the number of bets, optionally only those placed before ``before_ts``."""
        stmt = select(func.count()).select_from(Bet)
        if before_ts is not None:
            stmt = stmt.where(Bet.created_at < before_ts)
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def count_users(self, *, before_ts: int | None = None) -> int:
        """Return the number of users, optionally only those created before ``before_ts``."""
        stmt = select(func.count()).select_from(User)
        if before_ts is not None:
            stmt = stmt.where(User.created_at < before_ts)
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def count_protocols(self) -> int:
        """Return the number of protocols."""
        stmt = select(func.count()).select_from(Protocol)
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    # -- platform aggregates -------------------------------------------------

    async def daily_bet_volume(self, since_ts: int) -> list[DailyPoint]:
        """Sum bet amounts per UTC day since ``since_ts``."""
        day = (Bet.created_at - Bet.created_at % _SECONDS_PER_DAY).label("day")
        stmt = (
            select(day, func.coalesce(func.sum(Bet.amount), 0))
            .where(Bet.created_at >= since_ts)
            .group_by(day)
            .order_by(day)
        )
        return await self._daily(stmt)

    async def daily_bet_count(self, since_ts: int) -> list[DailyPoint]:
        """Count bets per UTC day since ``since_ts``."""
        day = (Bet.created_at - Bet.created_at % _SECONDS_PER_DAY).label("day")
        stmt = (
            select(day, func.count())
            .where(Bet.created_at >= since_ts)
            .group_by(day)
            .order_by(day)
        )
        return await self._daily(stmt)

    async def daily_new_users(self, since_ts: int) -> list[DailyPoint]:
        """Count newly created users per UTC day since ``since_ts``."""
        day = (User.created_at - User.created_at % _SECONDS_PER_DAY).label("day")
        stmt = (
            select(day, func.count())
            .where(User.created_at >= since_ts)
            .group_by(day)
            .order_by(day)
        )
        return await self._daily(stmt)

    async def daily_new_active_markets(self, since_ts: int) -> list[DailyPoint]:
        """Count markets created per UTC day since ``since_ts`` that are still active."""
        day = (Market.created_at - Market.created_at % _SECONDS_PER_DAY).label("day")
        stmt = (
            select(day, func.count())
            .where(
                and_(
                    Market.created_at >= since_ts,
                    Market.status == MarketStatus.ACTIVE.value,
                )
            )
            .group_by(day)
            .order_by(day)
        )
        return await self._daily(stmt)

    async def _daily(self, stmt: object) -> list[DailyPoint]:
        """Execute a ``(day, value)`` aggregate query."""
        async with self._session_factory() as session:
            result = await session.execute(stmt)  # type: ignore[arg-type]
            return [DailyPoint(day=int(row[0]), value=int(row[1])) for row in result.all()]
