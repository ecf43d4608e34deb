"""Typed data models for settlement-contract reads and receipts.

Provide frozen dataclasses that insulate the engines from the raw tuples
and attribute dicts returned by ``web3``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class OnChainMarket:
    """A market record as stored in the settlement contract.

    Args:
        market_id: On-chain market id.
        question: Question text (possibly truncated by the contract).
        end_time: Betting deadline, epoch seconds.
        token: Collateral token address.
        vault: Yield vault address holding the market's stake.
        total_yes_shares: Vault shares minted for yes bets.
        total_no_shares: Vault shares minted for no bets.
        resolved: Whether the market has been resolved on chain.
        outcome: Resolution outcome, meaningful only when ``resolved``.
        status: Raw contract status code.

    """

    market_id: int
    question: str
    end_time: int
    token: str
    vault: str
    total_yes_shares: int
    total_no_shares: int
    resolved: bool
    outcome: bool
    status: int

    @property
    def exists(self) -> bool:
        """Return True unless this is the zero record of an unused slot."""
        return bool(self.question) or self.end_time > 0


@dataclass(frozen=True)
class TxResult:
    """Summary of a confirmed transaction receipt."""

    tx_hash: str
    block_number: int
    gas_used: int


@dataclass(frozen=True)
class CreatedMarket:
    """Result of a confirmed ``createMarket`` transaction.

    Args:
        market_id: Id assigned by the contract, decoded from ``MarketCreated``.
        tx: Receipt summary of the creating transaction.

    """

    market_id: int
    tx: TxResult
