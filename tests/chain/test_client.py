"""Tests for the settlement contract client."""

from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from eth_account import Account
from web3.exceptions import TimeExhausted

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import (
    ChainError,
    ChainIndeterminateError,
    ChainTransactionError,
)
from market_ledger.core.config import ChainSettings

_CONTRACT = "0x0000000000000000000000000000000000000abc"
_TOKEN = "0x0000000000000000000000000000000000000def"
_PROTOCOL = "0x00000000000000000000000000000000000000aa"
_PRIVATE_KEY = "0x" + "11" * 32
_SIGNER = Account.from_key(_PRIVATE_KEY).address
_RAW_HASH = bytes.fromhex("ab" * 32)
_TX_HASH = "0x" + "ab" * 32
_CHAIN_ID = 296
_GAS_PRICE = 100
_NONCE = 7
_BLOCK = 10
_GAS_USED = 21_000


def _settings(*, private_key: str | None = _PRIVATE_KEY) -> ChainSettings:
    return ChainSettings(
        rpc_url="http://localhost:8545",
        chain_id=_CHAIN_ID,
        contract_address=_CONTRACT,
        token_address=_TOKEN,
        private_key=private_key,
        receipt_timeout_seconds=5,
    )


@pytest.fixture
def contracts() -> dict[str, MagicMock]:
    """Contract doubles keyed by address."""
    return {_CONTRACT: MagicMock(), _TOKEN: MagicMock(), _PROTOCOL: MagicMock()}


@pytest.fixture
def w3(contracts: dict[str, MagicMock]) -> Iterator[MagicMock]:
    """Patch ``Web3`` in the client module and yield the provider instance."""
    with patch("market_ledger.chain.client.Web3") as mock_web3:
        instance = MagicMock()
        mock_web3.return_value = instance
        mock_web3.HTTPProvider = MagicMock()
        mock_web3.to_checksum_address = lambda addr: addr

        def _contract(address: str, abi: Any) -> MagicMock:  # noqa: ARG001
            return contracts[address]

        instance.eth.contract.side_effect = _contract
        instance.eth.get_transaction_count.return_value = _NONCE
        instance.eth.gas_price = _GAS_PRICE
        instance.eth.send_raw_transaction.return_value = _RAW_HASH
        instance.eth.wait_for_transaction_receipt.return_value = {
            "status": 1,
            "blockNumber": _BLOCK,
            "gasUsed": _GAS_USED,
        }
        yield instance


class TestConstruction:
    """Tests for client construction."""

    def test_invalid_address_raises_chain_error(self) -> None:
        """Translate a bad contract address into ChainError."""
        with patch("market_ledger.chain.client.Web3") as mock_web3:
            mock_web3.to_checksum_address.side_effect = ValueError("bad address")

            with pytest.raises(ChainError, match="Invalid contract or token address"):
                ChainClient(_settings())

    def test_read_only_without_key(self, w3: MagicMock) -> None:
        """Have no signing account when no private key is configured."""
        client = ChainClient(_settings(private_key=None))

        assert client.account_address is None
        assert client.contract_address == _CONTRACT
        w3.eth.account.sign_transaction.assert_not_called()

    def test_signer_from_private_key(self, w3: MagicMock) -> None:
        """Derive the signing address from the configured key."""
        assert ChainClient(_settings()).account_address == _SIGNER

    def test_invalid_private_key(self, w3: MagicMock) -> None:
        """Translate a malformed private key into ChainError."""
        with pytest.raises(ChainError, match="Invalid chain.private_key"):
            ChainClient(_settings(private_key="not-a-key"))


class TestReads:
    """Tests for read-only contract calls."""

    @pytest.mark.asyncio
    async def test_get_market_decodes_record(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Decode the raw ``markets`` tuple into an OnChainMarket."""
        contracts[_CONTRACT].functions.markets.return_value.call.return_value = (
            3,
            "Will it rain?",
            1_900_000_000,
            _TOKEN,
            _PROTOCOL,
            50,
            60,
            True,
            False,
            2,
        )
        client = ChainClient(_settings())

        market = await client.get_market(3)

        contracts[_CONTRACT].functions.markets.assert_called_once_with(3)
        assert market.market_id == 3
        assert market.question == "Will it rain?"
        assert (market.total_yes_shares, market.total_no_shares) == (50, 60)
        assert market.resolved is True
        assert market.outcome is False
        assert market.exists

    @pytest.mark.asyncio
    async def test_next_market_id(self, w3: MagicMock, contracts: dict[str, MagicMock]) -> None:
        """Return nextMarketId as an int."""
        contracts[_CONTRACT].functions.nextMarketId.return_value.call.return_value = 12

        assert await ChainClient(_settings()).next_market_id() == 12

    @pytest.mark.asyncio
    async def test_failed_call_raises_chain_error(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Translate an RPC failure into ChainError."""
        contracts[_CONTRACT].functions.nextMarketId.return_value.call.side_effect = OSError(
            "connection refused"
        )

        with pytest.raises(ChainError, match="Contract call failed"):
            await ChainClient(_settings()).next_market_id()

    @pytest.mark.asyncio
    async def test_allowance_of_signer(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Read the signer's allowance towards the settlement contract."""
        contracts[_TOKEN].functions.allowance.return_value.call.return_value = 5_000_000

        assert await ChainClient(_settings()).allowance() == 5_000_000
        contracts[_TOKEN].functions.allowance.assert_called_once_with(_SIGNER, _CONTRACT)

    @pytest.mark.asyncio
    async def test_allowance_without_key(self, w3: MagicMock) -> None:
        """Require an owner or a signing key."""
        with pytest.raises(ChainError, match="No signing key"):
            await ChainClient(_settings(private_key=None)).allowance()

    @pytest.mark.asyncio
    async def test_current_apy(self, w3: MagicMock, contracts: dict[str, MagicMock]) -> None:
        """Read a protocol's APY in basis points."""
        contracts[_PROTOCOL].functions.getCurrentApy.return_value.call.return_value = 525

        assert await ChainClient(_settings()).get_current_apy(_PROTOCOL) == 525


class TestWrites:
    """Tests for signed transactions."""

    @pytest.mark.asyncio
    async def test_place_bet_signs_and_waits(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Sign with a buffered gas price and the pending nonce, then await the receipt."""
        fn = contracts[_CONTRACT].functions.placeBet.return_value
        fn.build_transaction.return_value = {"data": "0x"}

        result = await ChainClient(_settings()).place_bet(3, True, 10_000_000)

        contracts[_CONTRACT].functions.placeBet.assert_called_once_with(3, True, 10_000_000)
        params = fn.build_transaction.call_args.args[0]
        assert params["gasPrice"] == 125
        assert params["nonce"] == _NONCE
        assert params["chainId"] == _CHAIN_ID
        assert params["from"] == _SIGNER
        w3.eth.get_transaction_count.assert_called_once_with(_SIGNER, "pending")
        w3.eth.account.sign_transaction.assert_called_once_with(
            {"data": "0x"}, private_key=_PRIVATE_KEY
        )
        assert result.tx_hash == _TX_HASH
        assert (result.block_number, result.gas_used) == (_BLOCK, _GAS_USED)

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, w3: MagicMock) -> None:
        """Raise ChainTransactionError with the hash when the receipt shows a revert."""
        w3.eth.wait_for_transaction_receipt.return_value = {
            "status": 0,
            "blockNumber": _BLOCK,
            "gasUsed": _GAS_USED,
        }

        with pytest.raises(ChainTransactionError, match="reverted") as exc_info:
            await ChainClient(_settings()).approve()

        assert exc_info.value.tx_hash == _TX_HASH

    @pytest.mark.asyncio
    async def test_missing_receipt_is_indeterminate(self, w3: MagicMock) -> None:
        """Raise ChainIndeterminateError when no receipt arrives in time."""
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timed out")

        with pytest.raises(ChainIndeterminateError) as exc_info:
            await ChainClient(_settings()).place_bet(1, False, 1_000_000)

        assert exc_info.value.tx_hash == _TX_HASH

    @pytest.mark.asyncio
    async def test_submission_failure(self, w3: MagicMock) -> None:
        """Raise ChainTransactionError when the node rejects the transaction."""
        w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")

        with pytest.raises(ChainTransactionError, match="submission failed") as exc_info:
            await ChainClient(_settings()).approve()

        assert exc_info.value.tx_hash is None

    @pytest.mark.asyncio
    async def test_write_without_key(self, w3: MagicMock) -> None:
        """Refuse to sign on a read-only client."""
        with pytest.raises(ChainError, match="No signing key"):
            await ChainClient(_settings(private_key=None)).place_bet(1, True, 1_000_000)
        w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_market_decodes_id(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Return the id carried by the MarketCreated log."""
        market = contracts[_CONTRACT]
        market.events.MarketCreated.return_value.process_receipt.return_value = [
            {"args": {"marketId": 4}}
        ]

        created = await ChainClient(_settings()).create_market("Will it rain?", 1_900_000_000)

        market.functions.createMarket.assert_called_once_with(
            "Will it rain?", 1_900_000_000, _TOKEN
        )
        assert created.market_id == 4
        assert created.tx.tx_hash == _TX_HASH

    @pytest.mark.asyncio
    async def test_create_market_without_event(
        self, w3: MagicMock, contracts: dict[str, MagicMock]
    ) -> None:
        """Raise when the receipt carries no MarketCreated log."""
        contracts[_CONTRACT].events.MarketCreated.return_value.process_receipt.return_value = []

        with pytest.raises(ChainTransactionError, match="MarketCreated event missing"):
            await ChainClient(_settings()).create_market("Will it rain?", 1_900_000_000)
