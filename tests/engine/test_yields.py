"""Tests for protocol APY refresh."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_ledger.chain.exceptions import ChainError
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.yields import apy_from_basis_points, refresh_protocol_apys

_AAVE = "0x00000000000000000000000000000000000000aa"
_COMP = "0x00000000000000000000000000000000000000cc"


class TestApyFromBasisPoints:
    """Tests for the basis-point conversion."""

    def test_conversion(self) -> None:
        """Divide by one hundred and keep two decimal places."""
        assert apy_from_basis_points(525) == Decimal("5.25")
        assert apy_from_basis_points(0) == Decimal("0.00")


class TestRefreshProtocolApys:
    """Tests for refresh_protocol_apys."""

    @pytest.mark.asyncio
    async def test_updates_every_protocol(self, repo: LedgerRepository, chain: MagicMock) -> None:
        """Store the APY read for each active protocol."""
        await repo.upsert_protocol(address=_AAVE, name="Aave")
        await repo.upsert_protocol(address=_COMP, name="Compound", risk_level=2)

        updated = await refresh_protocol_apys(repo, chain)

        assert updated == 2
        protocols = await repo.list_active_protocols()
        assert [p.apy for p in protocols] == [Decimal("5.25"), Decimal("5.25")]

    @pytest.mark.asyncio
    async def test_failed_read_keeps_old_apy(
        self, repo: LedgerRepository, chain: MagicMock
    ) -> None:
        """Leave the stored APY alone when the chain read fails."""
        await repo.upsert_protocol(address=_AAVE, name="Aave")
        await repo.upsert_protocol(address=_COMP, name="Compound")

        async def _apy(address: str) -> int:
            if address == _AAVE:
                raise ChainError("execution reverted")
            return 310

        chain.get_current_apy = AsyncMock(side_effect=_apy)

        updated = await refresh_protocol_apys(repo, chain)

        assert updated == 1
        by_name = {p.name: p.apy for p in await repo.list_active_protocols()}
        assert by_name == {"Aave": Decimal(0), "Compound": Decimal("3.10")}
