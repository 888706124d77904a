"""Tests for PoolStateProjector resynchronization and catch-up."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from indexer.engine.projector import PoolStateProjector
from indexer.exceptions import LedgerReadError
from indexer.models import PoolAccountState, PoolRecord
from indexer.store.sqlite_store import SqliteMirrorStore

Q96 = 2**96


def _state(pool: str) -> PoolAccountState:
    return PoolAccountState(
        pool_address=pool,
        s_long=500,
        s_short=400,
        r_long=30_000_000,
        r_short=10_000_000,
        vault_balance=40_000_000,
        sqrt_price_long_x96=Q96,
        sqrt_price_short_x96=Q96 // 2,
        current_epoch=2,
        f=1,
        beta_num=1,
        beta_den=2,
    )


class TestResync:
    """Tests for PoolStateProjector.resync."""

    @pytest.mark.asyncio
    async def test_overwrites_snapshot_from_ledger(
        self, projector: PoolStateProjector, store: SqliteMirrorStore, mock_ledger: AsyncMock
    ) -> None:
        """A direct ledger read replaces the stored snapshot."""
        await store.upsert_deployed_pool(PoolRecord(pool_address="PoolA", current_epoch=0))
        mock_ledger.fetch_pool_state.return_value = _state("PoolA")

        assert await projector.resync("PoolA") is True

        pool = await store.get_pool("PoolA")
        assert pool is not None
        assert pool.r_long == Decimal("30")
        assert pool.vault_balance == Decimal("40")
        assert pool.price_short == Decimal("0.25")
        assert pool.current_epoch == 2

    @pytest.mark.asyncio
    async def test_ledger_error_returns_false(
        self, projector: PoolStateProjector, store: SqliteMirrorStore, mock_ledger: AsyncMock
    ) -> None:
        """A failed read is logged and reported as False."""
        await store.upsert_deployed_pool(PoolRecord(pool_address="PoolA"))
        mock_ledger.fetch_pool_state.side_effect = LedgerReadError("rpc down")

        assert await projector.resync("PoolA") is False

    @pytest.mark.asyncio
    async def test_sync_unindexed_pools(
        self, projector: PoolStateProjector, store: SqliteMirrorStore, mock_ledger: AsyncMock
    ) -> None:
        """Pools without a sqrt price are resynced at startup."""
        await store.upsert_deployed_pool(PoolRecord(pool_address="PoolA"))
        await store.upsert_deployed_pool(PoolRecord(pool_address="PoolB"))
        mock_ledger.fetch_pool_state.side_effect = lambda address: _state(address)

        synced = await projector.sync_unindexed_pools()

        assert synced == 2
        assert await store.list_unsynced_pools(10) == []
