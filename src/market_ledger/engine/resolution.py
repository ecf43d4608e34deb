"""Mirror on-chain market resolution into the database."""

import logging

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.db.repository import LedgerRepository

logger = logging.getLogger(__name__)


class ResolutionSync:
    """Resolve linked markets whose on-chain record is resolved.

    Args:
        repository: Ledger database repository.
        chain: Settlement contract client.

    """

    def __init__(self, repository: LedgerRepository, chain: ChainClient) -> None:
        """Initialize the resolution sync.

        Args:
            repository: Ledger database repository.
            chain: Settlement contract client.

        """
        self._repo = repository
        self._chain = chain

    async def sync_resolutions(self) -> int:
        """Check every linked active market and resolve those settled on chain.

        The database transition is conditional on the market still being
        active, so a market is resolved and its bets settled exactly once
        even if two passes overlap.

        Returns:
            Number of markets resolved by this pass.

        """
        resolved = 0
        for market in await self._repo.list_linked_active_markets():
            chain_id = market.chain_market_id
            if chain_id is None:
                continue
            try:
                on_chain = await self._chain.get_market(chain_id)
            except ChainError:
                logger.exception("Failed to read resolution of chain market %d", chain_id)
                continue
            if not on_chain.resolved:
                continue
            if await self._repo.resolve_market(market.id, on_chain.outcome):
                logger.info(
                    "Resolved market %s (chain id %d) as %s",
                    market.id,
                    chain_id,
                    "yes" if on_chain.outcome else "no",
                )
                resolved += 1
        return resolved
