"""Shared test configuration and fixtures."""

import os
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from market_ledger.chain.client import ChainClient
from market_ledger.chain.models import CreatedMarket, OnChainMarket, TxResult
from market_ledger.db.repository import LedgerRepository

_REQUIRED_ENV_VARS = {
    "CHAIN_PRIVATE_KEY": "",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
}

_BET_TX_HASH = "0x" + "ab" * 32
_APPROVE_TX_HASH = "0x" + "cd" * 32
_CREATE_TX_HASH = "0x" + "ef" * 32
_TOKEN = "0x70dA56284e963dc848D2Ea247664Cbc486dAbd7f"
_VAULT = "0x0000000000000000000000000000000000000001"


@pytest.fixture(autouse=True)
def _set_required_env_vars() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    """Point the default configuration at harmless values.

    Any test that loads the real ``settings.yaml`` gets an in-memory
    database and a read-only chain client, so nothing touches a file on
    disk or a live signing key.
    """
    missing = {k: v for k, v in _REQUIRED_ENV_VARS.items() if k not in os.environ}
    if not missing:
        yield
        return
    with patch.dict(os.environ, missing):
        yield


@pytest_asyncio.fixture
async def repo() -> AsyncIterator[LedgerRepository]:
    """Create an in-memory SQLite repository for testing."""
    repository = LedgerRepository("sqlite+aiosqlite:///:memory:")
    await repository.init_db()
    yield repository
    await repository.close()


@pytest_asyncio.fixture
async def file_repo(tmp_path: Path) -> AsyncIterator[LedgerRepository]:
    """Create a file-backed repository so concurrent sessions use separate connections."""
    repository = LedgerRepository(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await repository.init_db()
    yield repository
    await repository.close()


def _on_chain_market(
    market_id: int,
    question: str,
    *,
    resolved: bool = False,
    outcome: bool = False,
) -> OnChainMarket:
    """Build an on-chain market record for the fake contract."""
    return OnChainMarket(
        market_id=market_id,
        question=question,
        end_time=1_900_000_000,
        token=_TOKEN,
        vault=_VAULT,
        total_yes_shares=0,
        total_no_shares=0,
        resolved=resolved,
        outcome=outcome,
        status=1 if resolved else 0,
    )


@pytest.fixture
def chain_markets() -> dict[int, OnChainMarket]:
    """On-chain markets of the fake contract, keyed by contiguous id."""
    return {}


@pytest.fixture
def chain(chain_markets: dict[int, OnChainMarket]) -> MagicMock:
    """Create a ``ChainClient`` double backed by ``chain_markets``.

    ``createMarket`` appends to ``chain_markets``; ``placeBet`` and
    ``approve`` confirm immediately with fixed hashes.
    """
    client = MagicMock(spec=ChainClient)

    def _create(question: str, _end_time: int) -> CreatedMarket:
        market_id = len(chain_markets)
        chain_markets[market_id] = _on_chain_market(market_id, question)
        return CreatedMarket(
            market_id=market_id,
            tx=TxResult(tx_hash=_CREATE_TX_HASH, block_number=1, gas_used=200_000),
        )

    client.next_market_id = AsyncMock(side_effect=lambda: len(chain_markets))
    client.get_market = AsyncMock(side_effect=lambda market_id: chain_markets[market_id])
    client.create_market = AsyncMock(side_effect=_create)
    client.allowance = AsyncMock(return_value=0)
    client.approve = AsyncMock(
        return_value=TxResult(tx_hash=_APPROVE_TX_HASH, block_number=9, gas_used=46_000)
    )
    client.place_bet = AsyncMock(
        return_value=TxResult(tx_hash=_BET_TX_HASH, block_number=10, gas_used=120_000)
    )
    client.get_current_apy = AsyncMock(return_value=525)
    return client
