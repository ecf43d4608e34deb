"""Refresh yield protocol APYs from the chain."""

import logging
from decimal import Decimal

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.db.repository import LedgerRepository

logger = logging.getLogger(__name__)

_BASIS_POINTS_PER_PERCENT = Decimal(100)
_APY_QUANTUM = Decimal("0.01")


def apy_from_basis_points(basis_points: int) -> Decimal:
    """Convert an on-chain APY in basis points to a percentage, e.g. ``525 -> 5.25``."""
    return (Decimal(basis_points) / _BASIS_POINTS_PER_PERCENT).quantize(_APY_QUANTUM)


async def refresh_protocol_apys(repository: LedgerRepository, chain: ChainClient) -> int:
    """Read ``getCurrentApy`` for every active protocol and store it.

    A protocol without an address is skipped; a failed read is logged and
    leaves the stored APY unchanged.

    Args:
        repository: Ledger database repository.
        chain: Chain client used for the read-only calls.

    Returns:
        Number of protocols updated.

    """
    updated = 0
    for protocol in await repository.list_active_protocols():
        if not protocol.address:
            logger.debug("Protocol %s has no address; skipping APY refresh", protocol.name)
            continue
        try:
            basis_points = await chain.get_current_apy(protocol.address)
        except ChainError:
            logger.exception("Failed to read APY for protocol %s", protocol.name)
            continue
        apy = apy_from_basis_points(basis_points)
        await repository.update_protocol_apy(protocol.id, apy)
        logger.info("Protocol %s APY: %s%%", protocol.name, apy)
        updated += 1
    return updated
