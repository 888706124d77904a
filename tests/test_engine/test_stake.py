"""Tests for stake lock rules and StakeLedger.

Tests verify:
- buy_lock adds floor(paid * fraction)
- sell_lock scales the lock by remaining/previous and releases it on full exit
- Trade stake is applied once per indexer trade row, never for server rows
- A failed stake update leaves the row unclaimed so redelivery completes it
- Custodian credits are applied once per source row
- Store failures surface as StakeUpdateError
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from indexer.engine.stake import FundingSource, StakeLedger, buy_lock, sell_lock
from indexer.exceptions import StakeUpdateError
from indexer.models import FundingFlowRecord, FundingTable, RecordedBy, TokenSide, TradeRecord, TradeType
from indexer.store.repository import MirrorRepository
from indexer.store.sqlite_store import SqliteMirrorStore
from indexer.units import AtomicAmount


async def _insert_trade(
    store: SqliteMirrorStore,
    signature: str,
    agent_id: str,
    pool: str = "PoolA",
    side: TokenSide = TokenSide.LONG,
    trade_type: TradeType = TradeType.BUY,
    tokens: int = 10,
    usdc: int = 50_000_000,
    recorded_by: RecordedBy = RecordedBy.INDEXER,
) -> None:
    await store.insert_trade(
        TradeRecord(
            tx_signature=signature,
            pool_address=pool,
            wallet_address="AgentWallet",
            agent_id=agent_id,
            side=side,
            trade_type=trade_type,
            token_amount=tokens,
            usdc_amount=usdc,
            recorded_by=recorded_by,
        )
    )


class TestBuyLock:
    """Tests for buy_lock."""

    def test_two_percent_of_paid(self) -> None:
        """50 USDC paid locks 1 USDC."""
        assert buy_lock(0, 50_000_000, Decimal("0.02")) == 1_000_000

    def test_accumulates_on_existing_lock(self) -> None:
        """A second buy adds to the lock already held."""
        assert buy_lock(1_000_000, 50_000_000, Decimal("0.02")) == 2_000_000

    def test_rounds_down(self) -> None:
        """0.02 * 49 = 0.98 floors to 0."""
        assert buy_lock(0, 49, Decimal("0.02")) == 0

    def test_zero_paid_keeps_lock(self) -> None:
        """Nothing paid, nothing added."""
        assert buy_lock(700, 0, Decimal("0.02")) == 700


class TestSellLock:
    """Tests for sell_lock."""

    def test_half_sold_halves_lock(self) -> None:
        """Selling half the balance keeps half the lock."""
        assert sell_lock(1_000_000, 100, 50) == 500_000

    def test_full_exit_releases_lock(self) -> None:
        """Selling everything releases the whole lock."""
        assert sell_lock(1_000_000, 100, 0) == 0

    def test_floor_division(self) -> None:
        """10 * 1 / 3 floors to 3."""
        assert sell_lock(10, 3, 1) == 3

    def test_no_previous_balance(self) -> None:
        """No prior position means no lock to keep."""
        assert sell_lock(500, 0, 0) == 0

    def test_balance_not_reduced_keeps_lock(self) -> None:
        """A sell that leaves the balance unchanged keeps the lock."""
        assert sell_lock(500, 100, 100) == 500


class TestStakeLedger:
    """StakeLedger against the in-memory mirror."""

    @pytest.mark.asyncio
    async def test_total_stake_is_sum_of_locks(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """Locks from two pools add up to total_stake."""
        agent = await store.ensure_agent("AgentWallet")
        await _insert_trade(store, "sig-a", agent.id, pool="PoolA", usdc=50_000_000)
        await _insert_trade(store, "sig-b", agent.id, pool="PoolB", side=TokenSide.SHORT, usdc=25_000_000)

        await stake_ledger.apply_trade("sig-a", agent.id, "PoolA", TokenSide.LONG, TradeType.BUY, 10, 50_000_000)
        await stake_ledger.apply_trade("sig-b", agent.id, "PoolB", TokenSide.SHORT, TradeType.BUY, 10, 25_000_000)

        refreshed = await store.get_agent(agent.id)
        assert refreshed is not None
        assert refreshed.total_stake == 1_500_000

    @pytest.mark.asyncio
    async def test_liquidity_adds_tokens_without_lock(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """Liquidity provision credits tokens and leaves the lock at zero."""
        agent = await store.ensure_agent("AgentWallet")
        await _insert_trade(
            store, "sig-lp", agent.id, trade_type=TradeType.LIQUIDITY_PROVISION, tokens=300, usdc=7_500_000
        )

        balance = await stake_ledger.apply_trade(
            "sig-lp", agent.id, "PoolA", TokenSide.LONG, TradeType.LIQUIDITY_PROVISION, 300, 7_500_000
        )

        assert balance is not None
        assert balance.token_balance == 300
        assert balance.belief_lock == 0

    @pytest.mark.asyncio
    async def test_trade_stake_applies_once(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """A second apply for the same signature is refused and changes nothing."""
        agent = await store.ensure_agent("AgentWallet")
        await _insert_trade(store, "sig-a", agent.id)

        first = await stake_ledger.apply_trade(
            "sig-a", agent.id, "PoolA", TokenSide.LONG, TradeType.BUY, 10, 50_000_000
        )
        second = await stake_ledger.apply_trade(
            "sig-a", agent.id, "PoolA", TokenSide.LONG, TradeType.BUY, 10, 50_000_000
        )

        assert first is not None
        assert second is None
        balance = await store.get_pool_balance(agent.id, "PoolA", TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 10
        assert balance.belief_lock == 1_000_000
        trade = await store.get_trade("sig-a")
        assert trade is not None
        assert trade.stake_applied is True

    @pytest.mark.asyncio
    async def test_server_row_is_never_applied(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """An optimistic server row carries its own stake update."""
        agent = await store.ensure_agent("AgentWallet")
        await _insert_trade(store, "sig-opt", agent.id, recorded_by=RecordedBy.SERVER)

        result = await stake_ledger.apply_trade(
            "sig-opt", agent.id, "PoolA", TokenSide.LONG, TradeType.BUY, 10, 50_000_000
        )

        assert result is None
        assert await store.get_pool_balance(agent.id, "PoolA", TokenSide.LONG) is None

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back_claim(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """Missing agent aborts the transaction, so the trade stays unclaimed."""
        await _insert_trade(store, "sig-a", "no-such-agent")

        with pytest.raises(StakeUpdateError):
            await stake_ledger.apply_trade(
                "sig-a", "no-such-agent", "PoolA", TokenSide.LONG, TradeType.BUY, 10, 50_000_000
            )

        trade = await store.get_trade("sig-a")
        assert trade is not None
        assert trade.stake_applied is False
        assert await store.get_pool_balance("no-such-agent", "PoolA", TokenSide.LONG) is None

    @pytest.mark.asyncio
    async def test_credit_is_once_per_source(
        self, stake_ledger: StakeLedger, store: SqliteMirrorStore
    ) -> None:
        """The agent_credited flag guards the custodian balance."""
        agent = await store.ensure_agent("AgentWallet")
        await store.insert_funding_flow(
            FundingTable.DEPOSITS,
            FundingFlowRecord(tx_signature="sig-dep", address="AgentWallet", amount_usdc=Decimal("2")),
        )
        source = FundingSource(FundingTable.DEPOSITS, "sig-dep")

        first = await stake_ledger.credit(agent.id, AtomicAmount(2_000_000), source)
        second = await stake_ledger.credit(agent.id, AtomicAmount(2_000_000), source)

        assert first is True
        assert second is False
        assert await stake_ledger.withdrawable(agent.id) == 2_000_000

    @pytest.mark.asyncio
    async def test_repository_failure_raises_stake_update_error(self) -> None:
        """Arbitrary store errors are wrapped."""
        repository = AsyncMock(spec=MirrorRepository)
        repository.apply_custodian_adjustment.side_effect = RuntimeError("disk I/O error")
        ledger = StakeLedger(repository)

        with pytest.raises(StakeUpdateError):
            await ledger.credit("agent-1", AtomicAmount(1), FundingSource(FundingTable.DEPOSITS, "sig"))

    @pytest.mark.asyncio
    async def test_trade_store_failure_raises_stake_update_error(self) -> None:
        """A failing trade stake write is wrapped too."""
        repository = AsyncMock(spec=MirrorRepository)
        repository.apply_trade_stake.side_effect = RuntimeError("database is locked")
        ledger = StakeLedger(repository)

        with pytest.raises(StakeUpdateError):
            await ledger.apply_trade("sig", "agent-1", "PoolA", TokenSide.LONG, TradeType.BUY, 1, 1)

    @pytest.mark.asyncio
    async def test_recompute_for_missing_agent_raises(self, stake_ledger: StakeLedger) -> None:
        """Recomputing stake for an unknown agent is an error."""
        with pytest.raises(StakeUpdateError):
            await stake_ledger.recompute_from_locks("no-such-agent")
