"""Tests for the chain reconciler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_ledger.chain.exceptions import ChainError, ChainIndeterminateError
from market_ledger.chain.models import OnChainMarket
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.reconciler import ChainReconciler, match_questions

_Q_BTC = "Will BTC close above $100k on Dec 31?"
_Q_ETH = "Will ETH close above $5k on Dec 31?"
_Q_SOL = "Will SOL flip ETH by market cap this year?"
_TOKEN = "0x70dA56284e963dc848D2Ea247664Cbc486dAbd7f"


def _on_chain(market_id: int, question: str) -> OnChainMarket:
    return OnChainMarket(
        market_id=market_id,
        question=question,
        end_time=1_900_000_000,
        token=_TOKEN,
        vault=_TOKEN,
        total_yes_shares=0,
        total_no_shares=0,
        resolved=False,
        outcome=False,
        status=0,
    )


class TestMatchQuestions:
    """Tests for the pure text comparison."""

    def test_exact_after_trim(self) -> None:
        """Match identical texts after trimming whitespace."""
        assert match_questions(f"  {_Q_BTC} ", _Q_BTC) == "exact"

    def test_prefix_either_direction(self) -> None:
        """Match when either side is a prefix of the other."""
        assert match_questions(_Q_BTC, _Q_BTC[:25]) == "prefix"
        assert match_questions(_Q_BTC[:25], _Q_BTC) == "prefix"

    def test_empty_never_matches(self) -> None:
        """Refuse to match an empty question on either side."""
        assert match_questions("", _Q_BTC) is None
        assert match_questions(_Q_BTC, "   ") is None

    def test_unrelated(self) -> None:
        """Return None for different questions."""
        assert match_questions(_Q_BTC, _Q_ETH) is None


class TestReconcile:
    """Tests for linking on-chain ids to database rows."""

    @pytest.mark.asyncio
    async def test_links_exact_and_prefix_matches(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Link rows whose question matches exactly or by prefix."""
        btc = await repo.create_market(_Q_BTC)
        eth = await repo.create_market(_Q_ETH)
        chain_markets[0] = _on_chain(0, _Q_BTC)
        chain_markets[1] = _on_chain(1, _Q_ETH[:20])
        chain_markets[2] = _on_chain(2, _Q_SOL)

        report = await ChainReconciler(repo, chain).reconcile()

        assert (report.scanned, report.linked, report.unmatched) == (3, 2, 1)
        linked_btc = await repo.get_market(btc.id)
        linked_eth = await repo.get_market(eth.id)
        assert linked_btc is not None
        assert linked_eth is not None
        assert linked_btc.chain_market_id == 0
        assert linked_eth.chain_market_id == 1

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Perform no new links when nothing changed since the last pass."""
        await repo.create_market(_Q_BTC)
        chain_markets[0] = _on_chain(0, _Q_BTC)
        reconciler = ChainReconciler(repo, chain)

        await reconciler.reconcile()
        second = await reconciler.reconcile()

        assert second.linked == 0
        assert second.already_linked == 1
        assert await repo.count_markets(linked_only=True) == 1

    @pytest.mark.asyncio
    async def test_duplicate_questions_link_oldest_only(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Give a chain id to one of two identical rows and leave the other unlinked."""
        oldest = await repo.create_market(_Q_BTC, created_at=1_000)
        newer = await repo.create_market(_Q_BTC, created_at=2_000)
        chain_markets[0] = _on_chain(0, _Q_BTC)

        await ChainReconciler(repo, chain).reconcile()

        linked = await repo.get_market(oldest.id)
        unlinked = await repo.get_market(newer.id)
        assert linked is not None
        assert unlinked is not None
        assert linked.chain_market_id == 0
        assert unlinked.chain_market_id is None

    @pytest.mark.asyncio
    async def test_chain_error_on_one_id_continues(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Count a failed read and keep scanning."""
        await repo.create_market(_Q_ETH)
        chain_markets[0] = _on_chain(0, _Q_BTC)
        chain_markets[1] = _on_chain(1, _Q_ETH)

        def _get(market_id: int) -> OnChainMarket:
            if market_id == 0:
                raise ChainError("rpc timeout")
            return chain_markets[market_id]

        chain.get_market = AsyncMock(side_effect=_get)

        report = await ChainReconciler(repo, chain).reconcile()

        assert (report.failed, report.linked) == (1, 1)

    @pytest.mark.asyncio
    async def test_concurrent_reconcilers_claim_once(
        self,
        file_repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Bind chain id 7 to exactly one row when two reconcilers race."""
        await file_repo.create_market(_Q_BTC)
        await file_repo.create_market(_Q_BTC)
        for i in range(7):
            chain_markets[i] = _on_chain(i, f"Unrelated question {i}")
        chain_markets[7] = _on_chain(7, _Q_BTC)

        reports = await asyncio.gather(
            ChainReconciler(file_repo, chain).reconcile(),
            ChainReconciler(file_repo, chain).reconcile(),
        )

        assert sum(r.linked for r in reports) == 1
        holder = await file_repo.get_market_by_chain_id(7)
        assert holder is not None
        assert await file_repo.count_markets(linked_only=True) == 1


class TestPushUnlinkedMarkets:
    """Tests for creating missing markets on chain."""

    @pytest.mark.asyncio
    async def test_links_existing_chain_market_without_creating(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Link to an existing on-chain question instead of creating a duplicate."""
        market = await repo.create_market(_Q_BTC)
        chain_markets[0] = _on_chain(0, _Q_BTC)

        report = await ChainReconciler(repo, chain).push_unlinked_markets()

        assert (report.linked, report.created) == (1, 0)
        chain.create_market.assert_not_awaited()
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.chain_market_id == 0

    @pytest.mark.asyncio
    async def test_creates_and_links_missing_market(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Create a market on chain and link it to the new id."""
        market = await repo.create_market(_Q_SOL, end_time=1_900_000_000)
        chain_markets[0] = _on_chain(0, _Q_BTC)

        report = await ChainReconciler(repo, chain).push_unlinked_markets()

        assert (report.created, report.linked) == (1, 1)
        chain.create_market.assert_awaited_once_with(_Q_SOL, 1_900_000_000)
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.chain_market_id == 1

    @pytest.mark.asyncio
    async def test_truncated_chain_question_overwrites_database(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Adopt the question text the contract actually stored."""
        market = await repo.create_market(_Q_SOL)

        def _create(question: str, _end_time: int) -> MagicMock:
            chain_markets[0] = _on_chain(0, question[:16])
            created = MagicMock()
            created.market_id = 0
            return created

        chain.create_market = AsyncMock(side_effect=_create)

        await ChainReconciler(repo, chain).push_unlinked_markets()

        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.question == _Q_SOL[:16]
        assert stored.chain_market_id == 0

    @pytest.mark.asyncio
    async def test_indeterminate_outcome_left_for_next_tick(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
    ) -> None:
        """Leave the row unlinked when the creation receipt never arrives."""
        market = await repo.create_market(_Q_SOL)
        chain.create_market = AsyncMock(
            side_effect=ChainIndeterminateError("no receipt", tx_hash="0xfeed")
        )

        report = await ChainReconciler(repo, chain).push_unlinked_markets()

        assert (report.failed, report.created) == (1, 0)
        stored = await repo.get_market(market.id)
        assert stored is not None
        assert stored.chain_market_id is None

    @pytest.mark.asyncio
    async def test_nothing_to_push(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Skip the chain scan entirely when every market is linked."""
        report = await ChainReconciler(repo, chain).push_unlinked_markets()

        assert report.scanned == 0
        chain.next_market_id.assert_not_awaited()


class TestVerifyLinks:
    """Tests for link verification."""

    @pytest.mark.asyncio
    async def test_counts_and_links(
        self,
        repo: LedgerRepository,
        chain: MagicMock,
        chain_markets: dict[int, OnChainMarket],
    ) -> None:
        """Count linked ids, link exact matches, and report missing markets."""
        linked = await repo.create_market(_Q_BTC)
        await repo.assign_chain_id(linked.id, 0)
        await repo.create_market(_Q_ETH)
        chain_markets[0] = _on_chain(0, _Q_BTC)
        chain_markets[1] = _on_chain(1, _Q_ETH)
        chain_markets[2] = _on_chain(2, _Q_SOL)

        report = await ChainReconciler(repo, chain).verify_links()

        assert report.on_chain == 3
        assert report.verified == 2
        assert report.linked == 1
        assert report.missing == 1
