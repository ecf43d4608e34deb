"""Bet settlement: validate a wager, settle it on chain, then record it.

A bet moves through ``VALIDATED -> SUBMITTED -> CONFIRMED -> RECORDED``.
Validation failures reject the bet before any external call. Chain
failures leave no database row. A database failure after the chain has
confirmed is surfaced with the transaction hash so it can be repaired out
of band; it is never retried here.

Token approval is a re-entrant state machine: every attempt starts from
the on-chain allowance, so a crash between ``approve`` and ``placeBet``
resumes cleanly on the next call.
"""

import logging
import re
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from market_ledger.chain.abi import MAX_UINT256
from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.chain.models import TxResult
from market_ledger.core.errors import BadRequestError, InternalError, NotFoundError
from market_ledger.core.models import MarketRef, MarketStatus
from market_ledger.core.units import format_amount, parse_amount, validate_bet_amount
from market_ledger.db.models import Bet, Market
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.pools import PoolState, prospective_odds

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class SettlementState(Enum):
    """Lifecycle of one bet placement."""

    VALIDATED = "validated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    RECORDED = "recorded"
    REJECTED = "rejected"
    FAILED = "failed"


class AllowanceState(Enum):
    """Outcome of the allowance phase."""

    SUFFICIENT = "sufficient"
    APPROVED = "approved"


@dataclass(frozen=True)
class PlacedBet:
    """A bet that has been settled on chain and recorded.

    Args:
        bet_id: Database bet id.
        market_id: Internal market id.
        chain_market_id: On-chain market id.
        user_id: Database user id.
        position: ``True`` for yes.
        amount: Stake in base units.
        odds: Odds snapshot stored on the bet.
        tx_hash: ``placeBet`` transaction hash.
        approval_tx_hash: ``approve`` transaction hash, if one was needed.
        state: Final settlement state.

    """

    bet_id: str
    market_id: str
    chain_market_id: int
    user_id: str
    position: bool
    amount: int
    odds: Decimal
    tx_hash: str
    approval_tx_hash: str | None
    state: SettlementState = SettlementState.RECORDED


class BetSettlementEngine:
    """Place wagers against the settlement contract and record them.

    Args:
        repository: Ledger database repository.
        chain: Settlement contract client with a signing key.

    """

    def __init__(self, repository: LedgerRepository, chain: ChainClient) -> None:
        """Initialize the settlement engine.

        Args:
            repository: Ledger database repository.
            chain: Settlement contract client with a signing key.

        """
        self._repo = repository
        self._chain = chain

    async def place_bet(
        self,
        market_ref: MarketRef,
        user_address: str,
        position: bool,  # noqa: FBT001
        amount: str | Decimal,
    ) -> PlacedBet:
        """Validate, settle, and record one wager.

        Args:
            market_ref: Market to bet on.
            user_address: Wallet address the bet is recorded for.
            position: ``True`` for yes.
            amount: Human-decimal USDC amount, e.g. ``"12.5"``.

        Returns:
            The recorded bet.

        Raises:
            NotFoundError: If the market does not exist.
            BadRequestError: If the market cannot take bets or the amount or
                address is invalid.
            InternalError: If the chain rejects the bet, or the bet was
                confirmed but could not be recorded (``tx_hash`` is set).

        """
        try:
            market, chain_market_id = await self._validate(market_ref, user_address)
            amount_raw = parse_amount(str(amount))
            validate_bet_amount(amount_raw)
        except (BadRequestError, NotFoundError) as exc:
            logger.info("Bet on %s %s: %s", market_ref, SettlementState.REJECTED.value, exc.msg)
            raise
        self._log_state(market, SettlementState.VALIDATED, amount_raw)

        try:
            approval = await self.ensure_allowance(amount_raw)
            self._log_state(market, SettlementState.SUBMITTED, amount_raw)
            tx = await self._chain.place_bet(chain_market_id, position, amount_raw)
        except ChainError as exc:
            self._log_state(market, SettlementState.FAILED, amount_raw)
            logger.exception("Bet on market %s failed on chain", market.id)
            raise InternalError(f"Bet transaction failed: {exc.msg}", tx_hash=exc.tx_hash) from exc
        self._log_state(market, SettlementState.CONFIRMED, amount_raw)

        placed = await self._record(market, user_address, position, amount_raw, tx)
        if approval is not None:
            placed = replace(placed, approval_tx_hash=approval.tx_hash)
        self._log_state(market, SettlementState.RECORDED, amount_raw)
        return placed

    async def ensure_allowance(self, amount: int) -> TxResult | None:
        """Make sure the settlement contract may spend ``amount`` tokens.

        Args:
            amount: Stake in base units.

        Returns:
            The approval receipt, or ``None`` when the allowance already
            covered ``amount``.

        Raises:
            ChainError: When the allowance read or approval fails.

        """
        current = await self._chain.allowance()
        if current >= amount:
            logger.debug("Allowance %s", AllowanceState.SUFFICIENT.value)
            return None
        logger.info(
            "Allowance %d below stake %d; approving settlement contract", current, amount
        )
        tx = await self._chain.approve(MAX_UINT256)
        logger.info("Allowance %s (tx: %s)", AllowanceState.APPROVED.value, tx.tx_hash)
        return tx

    async def _validate(self, market_ref: MarketRef, user_address: str) -> tuple[Market, int]:
        """Resolve the market and check that it can take a bet."""
        if not _ADDRESS_RE.match(user_address):
            raise BadRequestError(f"Invalid wallet address: {user_address!r}")
        market = await self._repo.resolve_ref(market_ref)
        if market is None:
            raise NotFoundError(f"Market not found: {market_ref}")
        if market.chain_market_id is None:
            raise BadRequestError("Market is not yet available on chain")
        if market.status != MarketStatus.ACTIVE.value:
            raise BadRequestError(f"Market is not active (status: {market.status})")
        return market, market.chain_market_id

    async def _record(
        self,
        market: Market,
        user_address: str,
        position: bool,  # noqa: FBT001
        amount: int,
        tx: TxResult,
    ) -> PlacedBet:
        """Persist a confirmed bet with its odds snapshot and pool increment."""
        try:
            snapshot = await self._repo.get_market(market.id)
            odds = prospective_odds(PoolState.of(snapshot or market), position, amount)
            user = await self._repo.upsert_user(user_address)
            bet = await self._repo.record_bet(
                market_id=market.id,
                user_id=user.id,
                position=position,
                amount=amount,
                odds=odds,
                tx_hash=tx.tx_hash,
            )
        except IntegrityError as exc:
            try:
                existing = await self._repo.get_bet_by_tx_hash(tx.tx_hash)
            except SQLAlchemyError as lookup_exc:
                raise self._unrecorded(market, tx, lookup_exc) from exc
            if existing is None:
                raise self._unrecorded(market, tx, exc) from exc
            logger.info("Bet for tx %s was already recorded by ingestion", tx.tx_hash)
            return _placed_from(existing, market, tx)
        except SQLAlchemyError as exc:
            raise self._unrecorded(market, tx, exc) from exc

        logger.info(
            "Recorded bet %s: market=%s position=%s amount=%s odds=%s",
            bet.id,
            market.id,
            "yes" if position else "no",
            format_amount(amount),
            odds,
        )
        return _placed_from(bet, market, tx)

    @staticmethod
    def _unrecorded(market: Market, tx: TxResult, exc: Exception) -> InternalError:
        logger.error(
            "Bet on market %s confirmed on chain but not recorded (tx: %s): %s",
            market.id,
            tx.tx_hash,
            exc,
        )
        return InternalError("Bet confirmed on chain but could not be recorded", tx_hash=tx.tx_hash)

    @staticmethod
    def _log_state(market: Market, state: SettlementState, amount: int) -> None:
        logger.debug("Bet on market %s (%d base units): %s", market.id, amount, state.value)


def _placed_from(bet: Bet, market: Market, tx: TxResult) -> PlacedBet:
    return PlacedBet(
        bet_id=bet.id,
        market_id=market.id,
        chain_market_id=market.chain_market_id or 0,
        user_id=bet.user_id,
        position=bet.position,
        amount=bet.amount,
        odds=bet.odds,
        tx_hash=tx.tx_hash,
        approval_tx_hash=None,
    )
