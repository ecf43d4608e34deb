"""Async client for the prediction-market settlement contract.

Wrap the synchronous ``web3`` contract calls in ``asyncio.to_thread()`` so
chain RPC never blocks the event loop. Writes are signed locally with the
configured account and serialised through a lock so nonces are issued in
order. Every write waits for its receipt: a reverted transaction raises
``ChainTransactionError`` and a missing receipt raises
``ChainIndeterminateError``.
"""

import asyncio
import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.logs import DISCARD
from web3.types import Nonce, TxParams, TxReceipt, Wei

from market_ledger.chain.abi import (
    ERC20_ABI,
    MAX_UINT256,
    PREDICTION_MARKET_ABI,
    YIELD_PROTOCOL_ABI,
)
from market_ledger.chain.exceptions import (
    ChainError,
    ChainIndeterminateError,
    ChainTransactionError,
)
from market_ledger.chain.models import CreatedMarket, OnChainMarket, TxResult
from market_ledger.core.config import ChainSettings

logger = logging.getLogger(__name__)

_DEFAULT_GAS = 500_000
_CREATE_MARKET_GAS = 3_000_000
_GAS_PRICE_MULTIPLIER = 1.25  # 25% above estimated to ensure inclusion
_RPC_ERRORS = (Web3Exception, OSError, ValueError)


def _to_hex(value: bytes) -> str:
    """Render a transaction hash as a ``0x``-prefixed hex string."""
    return "0x" + bytes(value).hex()


class ChainClient:
    """Typed async client for the settlement contract and its collateral token.

    Without a private key the client is read-only; any write raises
    ``ChainError``.

    Args:
        settings: Chain connection and contract settings.

    """

    def __init__(self, settings: ChainSettings) -> None:
        """Initialize the chain client.

        Args:
            settings: Chain connection and contract settings.

        """
        self._settings = settings
        self._w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        try:
            self._contract_address = Web3.to_checksum_address(settings.contract_address)
            self._token_address = Web3.to_checksum_address(settings.token_address)
        except ValueError as exc:
            raise ChainError(f"Invalid contract or token address: {exc}") from exc
        self._market = self._w3.eth.contract(
            address=self._contract_address, abi=PREDICTION_MARKET_ABI
        )
        self._token = self._w3.eth.contract(address=self._token_address, abi=ERC20_ABI)
        self._account: LocalAccount | None = None
        if settings.private_key:
            try:
                self._account = Account.from_key(settings.private_key)
            except ValueError as exc:
                raise ChainError("Invalid chain.private_key") from exc
        self._write_lock = asyncio.Lock()

    @property
    def account_address(self) -> str | None:
        """Return the signing account address, or ``None`` when read-only."""
        return None if self._account is None else str(self._account.address)

    @property
    def contract_address(self) -> str:
        """Return the checksummed settlement contract address."""
        return str(self._contract_address)

    # -- reads -----------------------------------------------------------------

    async def next_market_id(self) -> int:
        """Return the contract's ``nextMarketId`` (the exclusive upper bound of ids)."""
        return int(await asyncio.to_thread(self._call, self._market.functions.nextMarketId()))

    async def get_market(self, market_id: int) -> OnChainMarket:
        """Read one market record from the contract.

        Args:
            market_id: On-chain market id.

        Returns:
            The decoded market record.

        Raises:
            ChainError: When the RPC call fails.

        """
        raw = await asyncio.to_thread(self._call, self._market.functions.markets(market_id))
        return OnChainMarket(
            market_id=int(raw[0]),
            question=str(raw[1]),
            end_time=int(raw[2]),
            token=str(raw[3]),
            vault=str(raw[4]),
            total_yes_shares=int(raw[5]),
            total_no_shares=int(raw[6]),
            resolved=bool(raw[7]),
            outcome=bool(raw[8]),
            status=int(raw[9]),
        )

    async def allowance(self, owner: str | None = None) -> int:
        """Return the token allowance granted by ``owner`` to the settlement contract.

        Args:
            owner: Token holder; defaults to the signing account.

        """
        holder = owner or self._require_account().address
        fn = self._token.functions.allowance(holder, self._contract_address)
        return int(await asyncio.to_thread(self._call, fn))

    async def balance_of(self, owner: str | None = None) -> int:
        """Return the token balance of ``owner`` in base units.

        Args:
            owner: Token holder; defaults to the signing account.

        """
        holder = owner or self._require_account().address
        fn = self._token.functions.balanceOf(holder)
        return int(await asyncio.to_thread(self._call, fn))

    async def get_current_apy(self, protocol_address: str) -> int:
        """Return a yield protocol's current APY in basis points.

        Args:
            protocol_address: Yield protocol contract address.

        """
        try:
            address = Web3.to_checksum_address(protocol_address)
        except ValueError as exc:
            raise ChainError(f"Invalid protocol address: {protocol_address}") from exc
        protocol = self._w3.eth.contract(address=address, abi=YIELD_PROTOCOL_ABI)
        return int(await asyncio.to_thread(self._call, protocol.functions.getCurrentApy()))

    # -- writes ----------------------------------------------------------------

    async def approve(self, amount: int = MAX_UINT256) -> TxResult:
        """Approve the settlement contract to spend the signer's tokens.

        Args:
            amount: Allowance to grant; unlimited by default.

        Returns:
            Receipt summary of the confirmed approval.

        """
        fn = self._token.functions.approve(self._contract_address, amount)
        async with self._write_lock:
            _, result = await asyncio.to_thread(self._transact, fn, _DEFAULT_GAS)
        return result

    async def place_bet(self, market_id: int, position: bool, amount: int) -> TxResult:  # noqa: FBT001
        """Submit ``placeBet`` and wait for confirmation.

        Args:
            market_id: On-chain market id.
            position: ``True`` for yes.
            amount: Stake in token base units.

        Returns:
            Receipt summary of the confirmed wager.

        """
        fn = self._market.functions.placeBet(market_id, position, amount)
        async with self._write_lock:
            _, result = await asyncio.to_thread(self._transact, fn, _DEFAULT_GAS)
        return result

    async def create_market(self, question: str, end_time: int) -> CreatedMarket:
        """Submit ``createMarket`` and decode the assigned id from its receipt.

        Args:
            question: Market question text.
            end_time: Betting deadline, epoch seconds.

        Returns:
            The new market id with the receipt summary.

        Raises:
            ChainTransactionError: When the receipt carries no ``MarketCreated`` log.

        """
        fn = self._market.functions.createMarket(question, end_time, self._token_address)
        async with self._write_lock:
            receipt, result = await asyncio.to_thread(self._transact, fn, _CREATE_MARKET_GAS)
        events = self._market.events.MarketCreated().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise ChainTransactionError(
                "MarketCreated event missing from receipt", tx_hash=result.tx_hash
            )
        market_id = int(events[0]["args"]["marketId"])
        logger.info("Created on-chain market %d (tx: %s)", market_id, result.tx_hash)
        return CreatedMarket(market_id=market_id, tx=result)

    # -- sync helpers (run in worker threads) ------------------------------------

    def _require_account(self) -> LocalAccount:
        """Return the signing account or raise for a read-only client."""
        if self._account is None:
            raise ChainError("No signing key configured (chain.private_key)")
        return self._account

    @staticmethod
    def _call(fn: Any) -> Any:
        """Execute a read-only contract call."""
        try:
            return fn.call()
        except _RPC_ERRORS as exc:
            raise ChainError(f"Contract call failed: {exc}") from exc

    def _transact(self, fn: Any, gas: int) -> tuple[TxReceipt, TxResult]:
        """Sign, send, and await a contract transaction.

        Use the network's gas price with a 25% buffer and the pending
        nonce of the signing account.

        Args:
            fn: Bound contract function to execute.
            gas: Gas limit.

        Returns:
            The raw receipt and its summary.

        Raises:
            ChainTransactionError: When submission fails or the tx reverts.
            ChainIndeterminateError: When no receipt arrives in time.

        """
        account = self._require_account()
        w3 = self._w3
        try:
            nonce = w3.eth.get_transaction_count(account.address, "pending")
            gas_price = Wei(int(w3.eth.gas_price * _GAS_PRICE_MULTIPLIER))
            tx_params: TxParams = {
                "from": account.address,
                "gas": gas,
                "gasPrice": gas_price,
                "nonce": Nonce(nonce),
                "chainId": self._settings.chain_id,
            }
            tx = fn.build_transaction(tx_params)
            signed = w3.eth.account.sign_transaction(tx, private_key=self._settings.private_key)
            raw_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except _RPC_ERRORS as exc:
            raise ChainTransactionError(f"Transaction submission failed: {exc}") from exc

        tx_hash = _to_hex(raw_hash)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self._settings.receipt_timeout_seconds
            )
        except TimeExhausted as exc:
            raise ChainIndeterminateError(
                "No receipt before timeout; outcome unknown", tx_hash=tx_hash
            ) from exc
        except _RPC_ERRORS as exc:
            raise ChainIndeterminateError(
                f"Receipt lookup failed: {exc}", tx_hash=tx_hash
            ) from exc

        if receipt["status"] != 1:
            raise ChainTransactionError("Transaction reverted", tx_hash=tx_hash)

        result = TxResult(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
        )
        logger.info(
            "Confirmed tx %s in block %d (gas used: %d)",
            tx_hash,
            result.block_number,
            result.gas_used,
        )
        return receipt, result
