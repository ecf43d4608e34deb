"""Async client for the settlement contract and its ERC-20 collateral token."""

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import (
    ChainError,
    ChainIndeterminateError,
    ChainTransactionError,
)
from market_ledger.chain.models import CreatedMarket, OnChainMarket, TxResult

__all__ = [
    "ChainClient",
    "ChainError",
    "ChainIndeterminateError",
    "ChainTransactionError",
    "CreatedMarket",
    "OnChainMarket",
    "TxResult",
]
