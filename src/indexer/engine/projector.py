"""Pool state projector -- persists the current AMM snapshot of a pool.

Snapshots are always taken from an event's "after" fields or from a direct
ledger read and written with set semantics. Nothing is summed incrementally,
so a missed event cannot cause drift: the next event or resync overwrites it.
"""

from decimal import Decimal

from indexer.exceptions import LedgerReadError
from indexer.ledger.client import LedgerClient
from indexer.logging import get_logger
from indexer.models import (
    EventContext,
    LiquidityAddedEvent,
    MarketDeployedEvent,
    PoolAccountState,
    PoolRecord,
    PoolSnapshot,
    SettlementEvent,
    TradeEvent,
)
from indexer.pricing import sqrt_price_x96_to_price
from indexer.store.repository import MirrorRepository
from indexer.units import UnitNormalizer

logger = get_logger(__name__)


class PoolStateProjector:
    """Projects ledger events and reads onto the pools table.

    Args:
        repository: Mirror repository.
        ledger: Direct ledger reader used for resynchronization.
        normalizer: Atomic/display unit converter.
        unsynced_batch: Maximum pools resynchronized by one catch-up pass.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        ledger: LedgerClient,
        normalizer: UnitNormalizer,
        unsynced_batch: int = 50,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._normalizer = normalizer
        self._unsynced_batch = unsynced_batch

    def _display(self, atomic: int) -> Decimal:
        return self._normalizer.to_display(atomic).value

    def _price_fields(self, sqrt_long: int, sqrt_short: int) -> dict:
        return {
            "sqrt_price_long_x96": str(sqrt_long),
            "sqrt_price_short_x96": str(sqrt_short),
            "price_long": sqrt_price_x96_to_price(sqrt_long),
            "price_short": sqrt_price_x96_to_price(sqrt_short),
        }

    async def _persist(self, pool_address: str, snapshot: PoolSnapshot, source: str) -> PoolSnapshot:
        updated = await self._repository.update_pool_snapshot(pool_address, snapshot)
        if not updated:
            logger.warning("pool_snapshot_target_missing", pool=pool_address, source=source)
        else:
            logger.debug("pool_snapshot_persisted", pool=pool_address, source=source)
        return snapshot

    async def apply_trade(self, event: TradeEvent) -> PoolSnapshot:
        snapshot = PoolSnapshot(
            s_long_supply=event.s_long_after,
            s_short_supply=event.s_short_after,
            r_long=self._display(event.r_long_after),
            r_short=self._display(event.r_short_after),
            vault_balance=self._display(event.vault_balance_after),
            **self._price_fields(event.sqrt_price_long_x96_after, event.sqrt_price_short_x96_after),
        )
        return await self._persist(event.pool, snapshot, "trade")

    async def apply_liquidity(self, event: LiquidityAddedEvent) -> PoolSnapshot:
        snapshot = PoolSnapshot(
            s_long_supply=event.new_s_long,
            s_short_supply=event.new_s_short,
            r_long=self._display(event.new_r_long),
            r_short=self._display(event.new_r_short),
        )
        return await self._persist(event.pool, snapshot, "liquidity")

    async def apply_settlement(self, event: SettlementEvent) -> PoolSnapshot:
        """Fast-path hint: scaled reserves from the payload. Resync follows."""
        snapshot = PoolSnapshot(
            r_long=self._display(event.r_long_after),
            r_short=self._display(event.r_short_after),
        )
        return await self._persist(event.pool, snapshot, "settlement")

    async def apply_deployment(self, event: MarketDeployedEvent, context: EventContext) -> PoolRecord:
        """Create or fill the pool row, then backfill curve state from the ledger."""
        inserted = await self._repository.upsert_deployed_pool(
            PoolRecord(
                pool_address=event.pool,
                deployer=event.deployer,
                s_long_supply=event.long_tokens,
                s_short_supply=event.short_tokens,
                r_long=self._display(event.long_allocation),
                r_short=self._display(event.short_allocation),
                vault_balance=self._display(event.initial_deposit),
                current_epoch=0,
                deployment_tx_signature=context.signature,
            )
        )
        logger.info("pool_deployment_projected", pool=event.pool, inserted=inserted)

        pool = await self._repository.get_pool(event.pool)
        assert pool is not None
        if pool.f is None or pool.sqrt_price_long_x96 is None:
            if await self.resync(event.pool):
                pool = await self._repository.get_pool(event.pool)
                assert pool is not None
        return pool

    def snapshot_from_account(self, state: PoolAccountState) -> PoolSnapshot:
        return PoolSnapshot(
            s_long_supply=state.s_long,
            s_short_supply=state.s_short,
            r_long=self._display(state.r_long),
            r_short=self._display(state.r_short),
            vault_balance=self._display(state.vault_balance),
            current_epoch=state.current_epoch,
            f=state.f,
            beta_num=state.beta_num,
            beta_den=state.beta_den,
            **self._price_fields(state.sqrt_price_long_x96, state.sqrt_price_short_x96),
        )

    async def resync(self, pool_address: str) -> bool:
        """Overwrite the pool snapshot with a direct ledger read.

        Returns False (after logging) when the account cannot be read.
        """
        try:
            state = await self._ledger.fetch_pool_state(pool_address)
        except LedgerReadError:
            logger.warning("pool_resync_failed", pool=pool_address, exc_info=True)
            return False
        if state is None:
            logger.warning("pool_resync_account_missing", pool=pool_address)
            return False

        await self._persist(pool_address, self.snapshot_from_account(state), "ledger")
        logger.info("pool_resynced", pool=pool_address, epoch=state.current_epoch)
        return True

    async def sync_unindexed_pools(self) -> int:
        """Resynchronize pools whose sqrt price was never indexed.

        Catches up deployments that happened while no listener was running.
        Returns the number of pools synced.
        """
        addresses = await self._repository.list_unsynced_pools(self._unsynced_batch)
        if not addresses:
            return 0

        synced = 0
        for address in addresses:
            if await self.resync(address):
                synced += 1
        logger.info("unindexed_pools_synced", candidates=len(addresses), synced=synced)
        return synced

    async def refresh_volume(self, pool_address: str) -> int:
        total = await self._repository.refresh_pool_volume(pool_address)
        logger.debug("pool_volume_refreshed", pool=pool_address, total_volume=total)
        return total
