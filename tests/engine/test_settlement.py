"""Tests for the bet settlement engine."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from market_ledger.chain.abi import MAX_UINT256
from market_ledger.chain.exceptions import ChainTransactionError
from market_ledger.core.errors import BadRequestError, InternalError, NotFoundError
from market_ledger.core.models import MarketRef
from market_ledger.db.models import Market
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.settlement import BetSettlementEngine, SettlementState

_ADDRESS = "0x1111111111111111111111111111111111111111"
_QUESTION = "Will it rain in London tomorrow?"
_CHAIN_ID = 4
_STAKE_RAW = 12_500_000
_HUNDRED_RAW = 100_000_000
_FIFTY_RAW = 50_000_000


async def _linked_market(repo: LedgerRepository) -> Market:
    market = await repo.create_market(_QUESTION)
    await repo.assign_chain_id(market.id, _CHAIN_ID)
    return market


class TestPlaceBet:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_settles_and_records(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Approve, place on chain, then record the bet with its odds snapshot."""
        market = await _linked_market(repo)
        engine = BetSettlementEngine(repo, chain)

        placed = await engine.place_bet(MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "12.5")

        chain.approve.assert_awaited_once_with(MAX_UINT256)
        chain.place_bet.assert_awaited_once_with(_CHAIN_ID, True, _STAKE_RAW)
        assert placed.state is SettlementState.RECORDED
        assert placed.market_id == market.id
        assert placed.chain_market_id == _CHAIN_ID
        assert placed.amount == _STAKE_RAW
        assert placed.odds == Decimal(1)
        assert placed.tx_hash == chain.place_bet.return_value.tx_hash
        assert placed.approval_tx_hash == chain.approve.return_value.tx_hash

        stored = await repo.get_market(market.id)
        assert stored is not None
        assert (stored.yes_pool, stored.total_pool, stored.yes_count) == (
            _STAKE_RAW,
            _STAKE_RAW,
            1,
        )
        bet = await repo.get_bet_by_tx_hash(placed.tx_hash)
        assert bet is not None
        user = await repo.get_user_by_address(_ADDRESS)
        assert user is not None
        assert bet.user_id == user.id

    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approval(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Go straight to placeBet when the allowance already covers the stake."""
        await _linked_market(repo)
        chain.allowance = AsyncMock(return_value=MAX_UINT256)

        placed = await BetSettlementEngine(repo, chain).place_bet(
            MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, False, Decimal(5)
        )

        chain.approve.assert_not_awaited()
        assert placed.approval_tx_hash is None
        assert placed.position is False

    @pytest.mark.asyncio
    async def test_odds_include_own_stake(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Snapshot odds from the pools after the bet's own stake is added."""
        market = await _linked_market(repo)
        user = await repo.upsert_user(_ADDRESS)
        await repo.record_bet(
            market_id=market.id,
            user_id=user.id,
            position=True,
            amount=_HUNDRED_RAW,
            odds=Decimal(1),
            tx_hash="0xearlier",
        )

        placed = await BetSettlementEngine(repo, chain).place_bet(
            MarketRef.by_id(market.id), _ADDRESS, False, "50"
        )

        assert placed.odds == Decimal(3)

    @pytest.mark.asyncio
    async def test_yes_bet_into_no_heavy_pool(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Record odds of three and a yes pool of 150 after 50 on yes into 100/300."""
        market = await _linked_market(repo)
        user = await repo.upsert_user(_ADDRESS)
        for position, amount, tx_hash in (
            (True, _HUNDRED_RAW, "0xyes"),
            (False, 3 * _HUNDRED_RAW, "0xno"),
        ):
            await repo.record_bet(
                market_id=market.id,
                user_id=user.id,
                position=position,
                amount=amount,
                odds=Decimal(1),
                tx_hash=tx_hash,
            )

        placed = await BetSettlementEngine(repo, chain).place_bet(
            MarketRef.by_id(market.id), _ADDRESS, True, "50"
        )

        assert placed.odds == Decimal(3)
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.yes_pool == _FIFTY_RAW + _HUNDRED_RAW
        assert (stored.no_pool, stored.total_pool) == (3 * _HUNDRED_RAW, 450_000_000)

    @pytest.mark.asyncio
    async def test_bet_already_recorded_by_ingestion(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Return the existing row when ingestion recorded the transaction first."""
        market = await _linked_market(repo)
        user = await repo.upsert_user(_ADDRESS)
        tx_hash = chain.place_bet.return_value.tx_hash
        existing = await repo.record_bet(
            market_id=market.id,
            user_id=user.id,
            position=True,
            amount=_STAKE_RAW,
            odds=Decimal(1),
            bet_id="evt-1",
            tx_hash=tx_hash,
        )

        placed = await BetSettlementEngine(repo, chain).place_bet(
            MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "12.5"
        )

        assert placed.bet_id == existing.id
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.total_pool == _STAKE_RAW


class TestRejections:
    """Tests for validation failures, which never reach the chain."""

    @pytest.mark.asyncio
    async def test_unknown_market(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Raise NotFoundError for a market that does not exist."""
        with pytest.raises(NotFoundError):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(99), _ADDRESS, True, "10"
            )
        chain.place_bet.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unlinked_market(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Refuse a market that has no chain id yet."""
        market = await repo.create_market(_QUESTION)

        with pytest.raises(BadRequestError, match="not yet available on chain"):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_id(market.id), _ADDRESS, True, "10"
            )
        chain.place_bet.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolved_market(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Refuse a market that is no longer active."""
        market = await _linked_market(repo)
        await repo.resolve_market(market.id, True)

        with pytest.raises(BadRequestError, match="not active"):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "10"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("amount", "message"),
        [
            ("0.5", "Minimum bet"),
            ("10001", "Maximum bet"),
            ("ten", "Invalid amount"),
            ("1e999999", "Invalid amount"),
        ],
    )
    async def test_bad_amount(
        self, repo: LedgerRepository, chain: MagicMock, amount: str, message: str
    ) -> None:
        """Reject stakes outside the bet bounds or not a number."""
        await _linked_market(repo)

        with pytest.raises(BadRequestError, match=message):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, amount
            )
        chain.allowance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_address(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Reject a malformed wallet address."""
        await _linked_market(repo)

        with pytest.raises(BadRequestError, match="Invalid wallet address"):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), "0x123", True, "10"
            )


class TestFailures:
    """Tests for chain and database failures."""

    @pytest.mark.asyncio
    async def test_reverted_bet_leaves_no_row(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Translate a reverted placeBet into InternalError without recording."""
        market = await _linked_market(repo)
        chain.place_bet = AsyncMock(
            side_effect=ChainTransactionError("Transaction reverted", tx_hash="0xbad")
        )

        with pytest.raises(InternalError, match="Bet transaction failed") as exc_info:
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "10"
            )

        assert exc_info.value.tx_hash == "0xbad"
        assert await repo.count_bets() == 0
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.total_pool == 0

    @pytest.mark.asyncio
    async def test_unrecorded_bet_reports_tx_hash(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Surface the confirmed transaction hash when the database write fails."""
        await _linked_market(repo)
        failure = OperationalError("INSERT INTO bets", {}, Exception("disk I/O error"))

        with (
            patch.object(repo, "record_bet", AsyncMock(side_effect=failure)),
            pytest.raises(InternalError, match="could not be recorded") as exc_info,
        ):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "10"
            )

        assert exc_info.value.tx_hash == chain.place_bet.return_value.tx_hash

    @pytest.mark.asyncio
    async def test_duplicate_lookup_failure_reports_tx_hash(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Report the confirmed hash when the duplicate-bet lookup itself fails."""
        await _linked_market(repo)
        duplicate = IntegrityError("INSERT INTO bets", {}, Exception("UNIQUE constraint failed"))
        lookup_failure = OperationalError("SELECT FROM bets", {}, Exception("database is locked"))

        with (
            patch.object(repo, "record_bet", AsyncMock(side_effect=duplicate)),
            patch.object(repo, "get_bet_by_tx_hash", AsyncMock(side_effect=lookup_failure)),
            pytest.raises(InternalError, match="could not be recorded") as exc_info,
        ):
            await BetSettlementEngine(repo, chain).place_bet(
                MarketRef.by_chain_id(_CHAIN_ID), _ADDRESS, True, "10"
            )

        assert exc_info.value.tx_hash == chain.place_bet.return_value.tx_hash
