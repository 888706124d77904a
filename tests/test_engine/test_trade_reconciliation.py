"""Tests for trade and liquidity reconciliation in EventProcessor.

Tests verify:
- A new trade is inserted with ledger amounts, stake lock and skim deposit
- Replaying the same trade changes nothing
- A delivery that fails after the insert is completed by redelivery
- An optimistic row that diverges by any atomic amount is corrected once in favor of the ledger
- Losing the insert race reconciles the winner's row instead
- Missing pool or participant skips the event without writing
- Liquidity provision records two non-predictive legs and no belief submission
- total_stake always equals the sum of belief locks
"""

from decimal import Decimal

import pytest

from indexer.engine.processor import SHORT_LEG_SUFFIX, SKIM_SUFFIX, EventProcessor
from indexer.engine.stake import buy_lock
from indexer.exceptions import StakeUpdateError
from indexer.models import (
    DecodedTransaction,
    DepositType,
    FundingTable,
    LiquidityAddedEvent,
    RecordedBy,
    RelevanceEventType,
    TokenSide,
    TradeRecord,
    TradeType,
)
from indexer.store.sqlite_store import SqliteMirrorStore


async def _count(store: SqliteMirrorStore, table: str) -> int:
    cursor = await store._database.db.execute(f"SELECT COUNT(*) FROM {table}")
    row = await cursor.fetchone()
    return row[0]


async def _belief_submission_count(store: SqliteMirrorStore) -> int:
    return await _count(store, "belief_submissions")


async def _assert_stake_conserved(store: SqliteMirrorStore, agent_id: str) -> None:
    agent = await store.get_agent(agent_id)
    balances = await store.list_pool_balances(agent_id)
    assert agent is not None
    assert agent.total_stake == sum(b.belief_lock for b in balances)


async def _seed_server_trade(store: SqliteMirrorStore, provisioned, usdc: int, tokens: int) -> None:
    """Insert a server row plus the balance its writer already applied."""
    await store.insert_trade(
        TradeRecord(
            tx_signature="sig-opt",
            pool_address=provisioned["pool"],
            wallet_address=provisioned["wallet"],
            agent_id=provisioned["agent_id"],
            side=TokenSide.LONG,
            trade_type=TradeType.BUY,
            token_amount=tokens,
            usdc_amount=usdc,
            recorded_by=RecordedBy.SERVER,
        )
    )
    async with store._database.write() as conn:
        await conn.execute(
            "INSERT INTO pool_balances (agent_id, pool_address, side, token_balance, belief_lock) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                provisioned["agent_id"],
                provisioned["pool"],
                TokenSide.LONG.value,
                str(tokens),
                str(buy_lock(0, usdc, Decimal("0.02"))),
            ),
        )
    await store.recompute_total_stake(provisioned["agent_id"])


def _fail_first_call(monkeypatch: pytest.MonkeyPatch, target: object, name: str) -> None:
    """Make ``target.name`` raise once, then behave normally."""
    unpatched = getattr(target, name)
    calls = 0

    async def flaky(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database is locked")
        return await unpatched(*args, **kwargs)

    monkeypatch.setattr(target, name, flaky)


class TestNewTrade:
    """A trade seen for the first time."""

    @pytest.mark.asyncio
    async def test_buy_inserts_trade_lock_and_skim(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """Trade row, 2% lock, skim deposit and custodian credit in one delivery."""
        await processor.process(trade_factory(), context_factory("sig-buy"))

        trade = await store.get_trade("sig-buy")
        assert trade is not None
        assert trade.token_amount == 100
        assert trade.usdc_amount == 50_000_000
        assert trade.skim_amount == 1_000_000
        assert trade.recorded_by is RecordedBy.INDEXER
        assert trade.confirmed is True
        assert trade.stake_applied is True
        assert trade.agent_id == provisioned["agent_id"]
        assert trade.price_long == Decimal(4)

        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000

        skim = await store.get_funding_flow(FundingTable.DEPOSITS, f"sig-buy{SKIM_SUFFIX}")
        assert skim is not None
        assert skim.deposit_type is DepositType.TRADE_SKIM
        assert skim.amount_usdc == Decimal("1")
        assert skim.agent_credited is True

        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 1_000_000
        assert agent.custodian_balance == 1_000_000

    @pytest.mark.asyncio
    async def test_buy_adds_placeholder_belief_once(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """Two buys in the same epoch share one placeholder submission."""
        await processor.process(trade_factory(), context_factory("sig-a"))
        await processor.process(trade_factory(), context_factory("sig-b"))

        assert await _belief_submission_count(store) == 1

    @pytest.mark.asyncio
    async def test_trade_projects_pool_snapshot(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """The after-state of the trade becomes the pool snapshot."""
        await processor.process(trade_factory(), context_factory("sig-buy"))

        pool = await store.get_pool(provisioned["pool"])
        assert pool is not None
        assert pool.s_long_supply == 1_100
        assert pool.r_long == Decimal("60")
        assert pool.r_short == Decimal("40")
        assert pool.vault_balance == Decimal("100")
        assert pool.price_long == Decimal(4)
        assert pool.total_volume == 50_000_000

    @pytest.mark.asyncio
    async def test_trade_records_relevance(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """Implied relevance is r_long / (r_long + r_short) after the trade."""
        await processor.process(trade_factory(), context_factory("sig-buy"))

        history = await store.list_implied_relevance(provisioned["pool"])
        assert len(history) == 1
        assert history[0].event_reference == "sig-buy"
        assert history[0].event_type is RelevanceEventType.TRADE
        assert history[0].implied_relevance == Decimal("0.6")
        assert history[0].recorded_by is RecordedBy.INDEXER

    @pytest.mark.asyncio
    async def test_sell_releases_lock_proportionally(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """Selling half the tokens releases half the lock."""
        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-buy"))
        await processor.process(
            trade_factory(trade_type=TradeType.SELL, tokens_traded=50, usdc_to_trade=20_000_000, usdc_to_stake=0),
            context_factory("sig-sell"),
        )

        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 50
        assert balance.belief_lock == 500_000
        await _assert_stake_conserved(store, provisioned["agent_id"])

    @pytest.mark.asyncio
    async def test_full_exit_releases_whole_lock(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """Selling every token drops total_stake to zero."""
        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-buy"))
        await processor.process(
            trade_factory(trade_type=TradeType.SELL, tokens_traded=100, usdc_to_stake=0),
            context_factory("sig-sell"),
        )

        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 0

    @pytest.mark.asyncio
    async def test_user_without_agent_gets_one(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """A participant with no agent is given one before the trade is recorded."""
        from indexer.models import UserRecord

        wallet = "WalletWithoutAgent1111111111111111111111111"
        await store.insert_user(UserRecord(id="user-2", wallet_address=wallet))

        await processor.process(trade_factory(trader=wallet, usdc_to_stake=0), context_factory("sig-new"))

        agent = await store.get_agent_by_address(wallet)
        assert agent is not None
        trade = await store.get_trade("sig-new")
        assert trade is not None
        assert trade.agent_id == agent.id


class TestTradeSkips:
    """Lookup misses are logged and skipped, never raised."""

    @pytest.mark.asyncio
    async def test_unknown_pool_writes_nothing(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """No trade row and no skim for a pool the mirror does not know."""
        await processor.process(trade_factory(pool="UnknownPool"), context_factory("sig-x"))

        assert await store.get_trade("sig-x") is None
        assert await store.get_funding_flow(FundingTable.DEPOSITS, f"sig-x{SKIM_SUFFIX}") is None

    @pytest.mark.asyncio
    async def test_unknown_participant_writes_nothing(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """An unregistered wallet gets neither a trade row nor an agent."""
        await processor.process(trade_factory(trader="UnknownWallet"), context_factory("sig-x"))

        assert await store.get_trade("sig-x") is None
        assert await store.get_agent_by_address("UnknownWallet") is None


class TestReplay:
    """At-least-once delivery: the same event may arrive many times."""

    @pytest.mark.asyncio
    async def test_replay_is_a_no_op(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, trade_factory, context_factory
    ) -> None:
        """Three deliveries leave one row, one lock, one credit and one relevance point."""
        event = trade_factory()
        context = context_factory("sig-buy")

        await processor.process(event, context)
        await processor.process(event, context)
        await processor.process(event, context)

        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 1_000_000
        assert agent.custodian_balance == 1_000_000
        assert await _count(store, "trades") == 1
        assert len(await store.list_implied_relevance(provisioned["pool"])) == 1

    @pytest.mark.asyncio
    async def test_redelivery_completes_failed_stake_update(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A stake write that fails after the insert is applied, once, on the next delivery."""
        _fail_first_call(monkeypatch, store, "apply_trade_stake")
        event = trade_factory()
        context = context_factory("sig-buy")

        with pytest.raises(StakeUpdateError):
            await processor.process(event, context)

        trade = await store.get_trade("sig-buy")
        assert trade is not None
        assert trade.stake_applied is False

        await processor.process(event, context)
        await processor.process(event, context)

        trade = await store.get_trade("sig-buy")
        assert trade is not None
        assert trade.stake_applied is True
        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000
        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 1_000_000
        assert agent.custodian_balance == 1_000_000
        assert await _count(store, "trades") == 1

    @pytest.mark.asyncio
    async def test_process_transaction_counts_events(
        self, processor: EventProcessor, provisioned, trade_factory, context_factory
    ) -> None:
        """Successful events are counted as processed."""
        transaction = DecodedTransaction(context=context_factory("sig-tx"), events=[trade_factory()])

        result = await processor.process_transaction(transaction)

        assert result.processed == 1
        assert result.failed == 0


class TestCorrection:
    """An optimistic server row converges to the ledger amounts."""

    @pytest.mark.asyncio
    async def test_divergent_server_row_is_corrected(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """Ledger amounts win; the optimistic amounts move to the audit columns."""
        await _seed_server_trade(store, provisioned, usdc=45_000_000, tokens=90)

        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.usdc_amount == 50_000_000
        assert trade.token_amount == 100
        assert trade.indexer_corrected is True
        assert trade.confirmed is True
        assert trade.server_usdc_amount == 45_000_000
        assert trade.server_token_amount == 90
        assert trade.recorded_by is RecordedBy.SERVER

        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000
        await _assert_stake_conserved(store, provisioned["agent_id"])

    @pytest.mark.asyncio
    async def test_small_token_divergence_is_corrected(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """100 vs 5000 atomic tokens is a real divergence even though both are tiny in display units."""
        await _seed_server_trade(store, provisioned, usdc=50_000_000, tokens=100)

        await processor.process(trade_factory(tokens_traded=5_000, usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.token_amount == 5_000
        assert trade.server_token_amount == 100
        assert trade.indexer_corrected is True
        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 5_000
        assert balance.belief_lock == 1_000_000

    @pytest.mark.asyncio
    async def test_one_atomic_unit_usdc_divergence_is_corrected(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """Trade amounts are compared exactly, with no display-unit tolerance."""
        await _seed_server_trade(store, provisioned, usdc=50_000_001, tokens=100)

        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.usdc_amount == 50_000_000
        assert trade.server_usdc_amount == 50_000_001
        assert trade.indexer_corrected is True
        await _assert_stake_conserved(store, provisioned["agent_id"])

    @pytest.mark.asyncio
    async def test_correction_applies_once(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """A replayed correction leaves stake where the first one put it."""
        await _seed_server_trade(store, provisioned, usdc=45_000_000, tokens=90)
        event = trade_factory(usdc_to_stake=0)

        await processor.process(event, context_factory("sig-opt"))
        await processor.process(event, context_factory("sig-opt"))

        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 1_000_000

    @pytest.mark.asyncio
    async def test_matching_server_row_is_confirmed(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
    ) -> None:
        """Agreeing amounts only confirm the row and stamp the slot."""
        await _seed_server_trade(store, provisioned, usdc=50_000_000, tokens=100)

        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt", slot=555))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.confirmed is True
        assert trade.indexer_corrected is False
        assert trade.slot == 555
        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 1_000_000

    @pytest.mark.asyncio
    async def test_failed_correction_rolls_back_row(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Row correction and stake delta commit together, so redelivery still corrects."""
        await _seed_server_trade(store, provisioned, usdc=45_000_000, tokens=90)
        _fail_first_call(monkeypatch, store, "_recompute_total_stake")

        with pytest.raises(StakeUpdateError):
            await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.indexer_corrected is False
        assert trade.usdc_amount == 45_000_000

        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.indexer_corrected is True
        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000
        await _assert_stake_conserved(store, provisioned["agent_id"])


class TestInsertRace:
    """Another writer inserts the row between our lookup and our insert."""

    @staticmethod
    def _miss_first_lookup(store: SqliteMirrorStore, monkeypatch: pytest.MonkeyPatch) -> None:
        unpatched = store.get_trade
        calls = 0

        async def get_trade(tx_signature: str) -> TradeRecord | None:
            nonlocal calls
            calls += 1
            if calls == 1:
                return None
            return await unpatched(tx_signature)

        monkeypatch.setattr(store, "get_trade", get_trade)

    @pytest.mark.asyncio
    async def test_lost_race_to_server_row_reconciles_it(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """The winning server row is corrected, not stake-applied a second time."""
        await _seed_server_trade(store, provisioned, usdc=45_000_000, tokens=90)
        self._miss_first_lookup(store, monkeypatch)

        await processor.process(trade_factory(usdc_to_stake=0), context_factory("sig-opt"))

        trade = await store.get_trade("sig-opt")
        assert trade is not None
        assert trade.recorded_by is RecordedBy.SERVER
        assert trade.indexer_corrected is True
        assert trade.stake_applied is False
        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000
        await _assert_stake_conserved(store, provisioned["agent_id"])

    @pytest.mark.asyncio
    async def test_lost_race_to_indexer_row_applies_stake_once(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        trade_factory,
        context_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A concurrent delivery's row that has no stake yet gets exactly one lock."""
        await store.insert_trade(
            TradeRecord(
                tx_signature="sig-buy",
                pool_address=provisioned["pool"],
                wallet_address=provisioned["wallet"],
                agent_id=provisioned["agent_id"],
                side=TokenSide.LONG,
                trade_type=TradeType.BUY,
                token_amount=100,
                usdc_amount=50_000_000,
            )
        )
        self._miss_first_lookup(store, monkeypatch)
        event = trade_factory(usdc_to_stake=0)

        await processor.process(event, context_factory("sig-buy"))
        await processor.process(event, context_factory("sig-buy"))

        trade = await store.get_trade("sig-buy")
        assert trade is not None
        assert trade.stake_applied is True
        assert trade.confirmed is True
        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 100
        assert balance.belief_lock == 1_000_000


class TestLiquidity:
    """Bilateral liquidity provision."""

    @staticmethod
    def _event(pool: str, user: str) -> LiquidityAddedEvent:
        return LiquidityAddedEvent(
            pool=pool,
            user=user,
            usdc_amount=10_000_000,
            long_tokens_out=300,
            short_tokens_out=100,
            new_r_long=70_000_000,
            new_r_short=30_000_000,
            new_s_long=1_300,
            new_s_short=1_100,
        )

    @pytest.mark.asyncio
    async def test_records_two_legs_without_locks(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, context_factory
    ) -> None:
        """USDC is split by token share; neither leg locks stake."""
        await processor.process(self._event(provisioned["pool"], provisioned["wallet"]), context_factory("sig-lp"))

        long_leg = await store.get_trade("sig-lp")
        short_leg = await store.get_trade(f"sig-lp{SHORT_LEG_SUFFIX}")
        assert long_leg is not None and short_leg is not None
        assert long_leg.trade_type is TradeType.LIQUIDITY_PROVISION
        assert long_leg.side is TokenSide.LONG
        assert long_leg.usdc_amount == 7_500_000
        assert short_leg.side is TokenSide.SHORT
        assert short_leg.usdc_amount == 2_500_000

        balances = await store.list_pool_balances(provisioned["agent_id"])
        by_side = {b.side: b for b in balances}
        assert by_side[TokenSide.LONG].token_balance == 300
        assert by_side[TokenSide.SHORT].token_balance == 100
        assert all(b.belief_lock == 0 for b in balances)

        agent = await store.get_agent(provisioned["agent_id"])
        assert agent is not None
        assert agent.total_stake == 0

    @pytest.mark.asyncio
    async def test_creates_no_belief_submission(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, context_factory
    ) -> None:
        """Liquidity is non-predictive."""
        await processor.process(self._event(provisioned["pool"], provisioned["wallet"]), context_factory("sig-lp"))

        assert await _belief_submission_count(store) == 0

    @pytest.mark.asyncio
    async def test_replay_does_not_double_balances(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, context_factory
    ) -> None:
        """A second delivery leaves token balances unchanged."""
        event = self._event(provisioned["pool"], provisioned["wallet"])
        await processor.process(event, context_factory("sig-lp"))
        await processor.process(event, context_factory("sig-lp"))

        balance = await store.get_pool_balance(provisioned["agent_id"], provisioned["pool"], TokenSide.LONG)
        assert balance is not None
        assert balance.token_balance == 300

    @pytest.mark.asyncio
    async def test_redelivery_completes_both_legs(
        self,
        processor: EventProcessor,
        store: SqliteMirrorStore,
        provisioned,
        context_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A failure after the long leg's insert is finished by the next delivery."""
        _fail_first_call(monkeypatch, store, "apply_trade_stake")
        event = self._event(provisioned["pool"], provisioned["wallet"])

        with pytest.raises(StakeUpdateError):
            await processor.process(event, context_factory("sig-lp"))
        await processor.process(event, context_factory("sig-lp"))
        await processor.process(event, context_factory("sig-lp"))

        balances = {b.side: b for b in await store.list_pool_balances(provisioned["agent_id"])}
        assert balances[TokenSide.LONG].token_balance == 300
        assert balances[TokenSide.SHORT].token_balance == 100
        assert await _count(store, "trades") == 2

    @pytest.mark.asyncio
    async def test_projects_reserves(
        self, processor: EventProcessor, store: SqliteMirrorStore, provisioned, context_factory
    ) -> None:
        """New reserves, supplies and volume are projected onto the pool."""
        await processor.process(self._event(provisioned["pool"], provisioned["wallet"]), context_factory("sig-lp"))

        pool = await store.get_pool(provisioned["pool"])
        assert pool is not None
        assert pool.r_long == Decimal("70")
        assert pool.s_short_supply == 1_100
        assert pool.total_volume == 10_000_000
