"""Minimal ABIs for the settlement contract, its collateral token, and yield protocols."""

from typing import Any

MAX_UINT256 = 2**256 - 1

PREDICTION_MARKET_ABI: list[dict[str, Any]] = [
    {
        "name": "createMarket",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "question", "type": "string"},
            {"name": "endTime", "type": "uint256"},
            {"name": "token", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "markets",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "id", "type": "uint256"},
            {"name": "question", "type": "string"},
            {"name": "endTime", "type": "uint256"},
            {"name": "token", "type": "address"},
            {"name": "vault", "type": "address"},
            {"name": "totalYesShares", "type": "uint256"},
            {"name": "totalNoShares", "type": "uint256"},
            {"name": "resolved", "type": "bool"},
            {"name": "outcome", "type": "bool"},
            {"name": "status", "type": "uint8"},
        ],
    },
    {
        "name": "nextMarketId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "placeBet",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "uint256"},
            {"name": "isYes", "type": "bool"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "MarketCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "marketId", "type": "uint256", "indexed": True},
            {"name": "question", "type": "string", "indexed": False},
            {"name": "endTime", "type": "uint256", "indexed": False},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "vault", "type": "address", "indexed": False},
        ],
    },
    {
        "name": "BetPlaced",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "marketId", "type": "uint256", "indexed": True},
            {"name": "user", "type": "address", "indexed": True},
            {"name": "position", "type": "bool", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "shares", "type": "uint256", "indexed": False},
        ],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# APY is reported in basis points.
YIELD_PROTOCOL_ABI: list[dict[str, Any]] = [
    {
        "name": "getCurrentApy",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
