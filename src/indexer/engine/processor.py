"""Reconciliation engine -- makes the mirror agree with the ledger, one event at a time.

Every handler follows the same shape: look up an existing row by the
transaction signature, insert it if absent, otherwise validate it against the
ledger amounts and either confirm or correct it. The ledger always wins.

Delivery is at-least-once from two transports, and an optimistic writer may
race us on the same signature. The unique key is the only serialization
point: an insert that loses the race falls through to validate/correct.

Failure taxonomy:
- Pool or participant not provisioned yet: log and skip this event.
- Divergence: corrected in favor of the ledger, logged as a warning.
- Uniqueness conflict: the validate/correct branch, not an error.
- Epoch-processing failure: handled inside the settlement trigger.
- Stake update failure: StakeUpdateError propagates for this event only.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

import structlog

from indexer.config import ReconcileSettings
from indexer.decoding.events import EVENT_NAMES
from indexer.engine.projector import PoolStateProjector
from indexer.engine.relevance import ImpliedRelevanceRecorder
from indexer.engine.settlement import SettlementTrigger
from indexer.engine.stake import FundingSource, StakeLedger
from indexer.logging import get_logger
from indexer.models import (
    DecodedTransaction,
    DepositEvent,
    DepositType,
    EventContext,
    FundingFlowRecord,
    FundingTable,
    LedgerEvent,
    LiquidityAddedEvent,
    MarketDeployedEvent,
    PoolRecord,
    RecordedBy,
    RelevanceEventType,
    SettlementEvent,
    SettlementRecord,
    TokenSide,
    TradeEvent,
    TradeRecord,
    TradeType,
    UserRecord,
    WithdrawEvent,
)
from indexer.pricing import sqrt_price_x96_to_price
from indexer.store.repository import MirrorRepository
from indexer.units import AtomicAmount, DisplayAmount, UnitNormalizer

logger = get_logger(__name__)

SKIM_SUFFIX = "-skim"
SHORT_LEG_SUFFIX = "-short"

PLACEHOLDER_BELIEF = Decimal("0.5")
PLACEHOLDER_META_PREDICTION = Decimal("0.5")


def _iso(block_time: int | None) -> str | None:
    if block_time is None:
        return None
    return datetime.fromtimestamp(block_time, UTC).isoformat()


@dataclass
class ProcessingResult:
    """Outcome of processing one transaction's events."""

    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class EventProcessor:
    """Dispatches decoded ledger events to their reconciliation handlers.

    Args:
        repository: Mirror repository (the only persistence dependency).
        normalizer: Atomic/display unit converter.
        projector: Pool snapshot projector.
        stake_ledger: Locks, total stake and custodian balance updater.
        relevance_recorder: Implied-relevance history writer.
        settlement_trigger: Epoch-processing dispatcher.
        settings: Reconciliation policy parameters.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        normalizer: UnitNormalizer,
        projector: PoolStateProjector,
        stake_ledger: StakeLedger,
        relevance_recorder: ImpliedRelevanceRecorder,
        settlement_trigger: SettlementTrigger,
        settings: ReconcileSettings,
    ) -> None:
        self._repository = repository
        self._normalizer = normalizer
        self._projector = projector
        self._stake = stake_ledger
        self._relevance = relevance_recorder
        self._trigger = settlement_trigger
        self._epsilon = settings.amount_epsilon
        self._handlers = {
            TradeEvent: self._handle_trade,
            SettlementEvent: self._handle_settlement,
            MarketDeployedEvent: self._handle_market_deployed,
            DepositEvent: self._handle_deposit,
            WithdrawEvent: self._handle_withdraw,
            LiquidityAddedEvent: self._handle_liquidity_added,
        }

    # ──────────────────────────────────────────────
    # Entry points
    # ──────────────────────────────────────────────

    async def process(self, event: LedgerEvent, context: EventContext) -> None:
        """Reconcile a single event. Exceptions propagate to the caller."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("unhandled_event_type", event_type=type(event).__name__)
            return
        with structlog.contextvars.bound_contextvars(
            signature=context.signature,
            slot=context.slot,
            event_type=EVENT_NAMES.get(type(event), type(event).__name__),
        ):
            await handler(event, context)

    async def process_transaction(self, transaction: DecodedTransaction) -> ProcessingResult:
        """Process a transaction's events in order; one failure does not stop the rest."""
        result = ProcessingResult()
        for event in transaction.events:
            try:
                await self.process(event, transaction.context)
                result.processed += 1
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{type(event).__name__}: {e}")
                logger.error(
                    "event_processing_failed",
                    signature=transaction.context.signature,
                    event_type=type(event).__name__,
                    exc_info=True,
                )
        return result

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    def _display(self, atomic: int) -> Decimal:
        return self._normalizer.to_display(AtomicAmount(atomic)).value

    def _atomic(self, display: Decimal) -> int:
        return self._normalizer.to_atomic(DisplayAmount(display)).value

    def _funding_amount_matches(self, stored: FundingFlowRecord, ledger: FundingFlowRecord) -> bool:
        """Exact in atomic units, except server rows, which hold display-rounded amounts."""
        if stored.recorded_by is RecordedBy.SERVER:
            return abs(stored.amount_usdc - ledger.amount_usdc) < self._epsilon
        return self._atomic(stored.amount_usdc) == self._atomic(ledger.amount_usdc)

    async def _agent_id_for(self, user: UserRecord) -> str:
        if user.agent_id:
            return user.agent_id
        agent = await self._repository.ensure_agent(user.wallet_address)
        return agent.id

    # ──────────────────────────────────────────────
    # Trade
    # ──────────────────────────────────────────────

    async def _handle_trade(self, event: TradeEvent, context: EventContext) -> None:
        signature = context.signature
        existing = await self._repository.get_trade(signature)

        if existing is None:
            pool = await self._repository.get_pool(event.pool)
            if pool is None:
                logger.warning("trade_pool_not_found", pool=event.pool)
                return
            user = await self._repository.get_user_by_wallet(event.trader)
            if user is None:
                logger.warning("trade_user_not_found", wallet=event.trader)
                return

            agent_id = await self._agent_id_for(user)
            record = self._trade_record(event, context, pool, user, agent_id)
            if await self._repository.insert_trade(record):
                logger.info(
                    "trade_inserted",
                    pool=event.pool,
                    side=event.side.value,
                    trade_type=event.trade_type.value,
                    token_amount=event.tokens_traded,
                    usdc_amount=event.usdc_to_trade,
                )
                existing = record
            else:
                # Lost the race to another writer: validate what it wrote.
                existing = await self._repository.get_trade(signature)
                if existing is not None:
                    await self._reconcile_trade(existing, event, context)
        else:
            await self._reconcile_trade(existing, event, context)

        if existing is not None and existing.recorded_by is RecordedBy.INDEXER and not existing.stake_applied:
            await self._apply_trade_stake(existing, event)

        if event.usdc_to_stake > 0:
            await self._record_skim(event, context)

        await self._projector.apply_trade(event)
        await self._projector.refresh_volume(event.pool)

        pool = await self._repository.get_pool(event.pool)
        if pool is not None:
            await self._relevance.record(
                pool,
                signature,
                self._display(event.r_long_after),
                self._display(event.r_short_after),
                RelevanceEventType.TRADE,
                recorded_at=_iso(context.block_time),
            )

    async def _apply_trade_stake(self, trade: TradeRecord, event: TradeEvent) -> None:
        """Apply an indexer trade's lock, adding the placeholder belief first."""
        if trade.agent_id is None:
            logger.warning("trade_stake_without_agent", wallet=trade.wallet_address)
            return
        pool = await self._repository.get_pool(event.pool)
        if pool is not None and pool.belief_id:
            added = await self._repository.ensure_belief_placeholder(
                trade.agent_id,
                pool.belief_id,
                pool.current_epoch or 0,
                PLACEHOLDER_BELIEF,
                PLACEHOLDER_META_PREDICTION,
            )
            if added:
                logger.info("belief_placeholder_added", agent_id=trade.agent_id, belief_id=pool.belief_id)
        await self._stake.apply_trade(
            trade.tx_signature,
            trade.agent_id,
            event.pool,
            event.side,
            event.trade_type,
            event.tokens_traded,
            event.usdc_to_trade,
        )

    def _trade_record(
        self,
        event: TradeEvent,
        context: EventContext,
        pool: PoolRecord,
        user: UserRecord,
        agent_id: str,
    ) -> TradeRecord:
        return TradeRecord(
            tx_signature=context.signature,
            pool_address=event.pool,
            post_id=pool.post_id,
            user_id=user.id,
            agent_id=agent_id,
            wallet_address=event.trader,
            side=event.side,
            trade_type=event.trade_type,
            token_amount=event.tokens_traded,
            usdc_amount=event.usdc_to_trade,
            skim_amount=event.usdc_to_stake,
            s_long_before=event.s_long_before,
            s_short_before=event.s_short_before,
            s_long_after=event.s_long_after,
            s_short_after=event.s_short_after,
            r_long_after=self._display(event.r_long_after),
            r_short_after=self._display(event.r_short_after),
            sqrt_price_long_x96=str(event.sqrt_price_long_x96_after),
            sqrt_price_short_x96=str(event.sqrt_price_short_x96_after),
            price_long=sqrt_price_x96_to_price(event.sqrt_price_long_x96_after),
            price_short=sqrt_price_x96_to_price(event.sqrt_price_short_x96_after),
            recorded_by=RecordedBy.INDEXER,
            confirmed=True,
            block_time=context.block_time,
            slot=context.slot,
        )

    async def _reconcile_trade(self, existing: TradeRecord, event: TradeEvent, context: EventContext) -> None:
        # Both sides are exact atomic integers.
        matches = existing.usdc_amount == event.usdc_to_trade and existing.token_amount == event.tokens_traded
        if matches:
            await self._repository.confirm_trade(context.signature, context.block_time, context.slot)
            logger.debug("trade_confirmed", recorded_by=existing.recorded_by.value)
            return

        if existing.recorded_by is RecordedBy.SERVER and existing.agent_id is not None:
            corrected = await self._stake.apply_correction(
                existing, event.tokens_traded, event.usdc_to_trade, context.block_time, context.slot
            )
        else:
            if existing.recorded_by is RecordedBy.SERVER:
                logger.warning("trade_correction_without_agent", wallet=existing.wallet_address)
            corrected = await self._repository.correct_trade(
                context.signature,
                event.tokens_traded,
                event.usdc_to_trade,
                context.block_time,
                context.slot,
            )
        if not corrected:
            logger.debug("trade_correction_already_applied")
            return

        logger.warning(
            "trade_corrected",
            server_token_amount=existing.token_amount,
            server_usdc_amount=existing.usdc_amount,
            ledger_token_amount=event.tokens_traded,
            ledger_usdc_amount=event.usdc_to_trade,
        )

    async def _record_skim(self, event: TradeEvent, context: EventContext) -> None:
        """Record the trade's stake skim as a deposit and credit it once."""
        skim_signature = f"{context.signature}{SKIM_SUFFIX}"
        agent = await self._repository.ensure_agent(event.trader)
        inserted = await self._repository.insert_funding_flow(
            FundingTable.DEPOSITS,
            FundingFlowRecord(
                tx_signature=skim_signature,
                address=event.trader,
                amount_usdc=self._display(event.usdc_to_stake),
                deposit_type=DepositType.TRADE_SKIM,
                recorded_by=RecordedBy.INDEXER,
                agent_id=agent.id,
                confirmed=True,
                slot=context.slot,
                block_time=context.block_time,
            ),
        )
        if inserted:
            logger.info("skim_deposit_recorded", amount=event.usdc_to_stake)
        await self._stake.credit(
            agent.id,
            AtomicAmount(event.usdc_to_stake),
            FundingSource(FundingTable.DEPOSITS, skim_signature),
        )

    # ──────────────────────────────────────────────
    # Settlement
    # ──────────────────────────────────────────────

    async def _handle_settlement(self, event: SettlementEvent, context: EventContext) -> None:
        pool = await self._repository.get_pool(event.pool)
        if pool is None:
            logger.warning("settlement_pool_not_found", pool=event.pool, epoch=event.epoch)
            return

        millionths = self._normalizer.from_millionths
        inserted = await self._repository.insert_settlement(
            SettlementRecord(
                pool_address=event.pool,
                epoch=event.epoch,
                belief_id=pool.belief_id,
                bd_score=millionths(event.bd_score),
                market_prediction=millionths(event.market_prediction_q),
                f_long=millionths(event.f_long),
                f_short=millionths(event.f_short),
                r_long_before=self._display(event.r_long_before),
                r_short_before=self._display(event.r_short_before),
                r_long_after=self._display(event.r_long_after),
                r_short_after=self._display(event.r_short_after),
                s_scale_long_before=str(event.s_scale_long_before),
                s_scale_long_after=str(event.s_scale_long_after),
                s_scale_short_before=str(event.s_scale_short_before),
                s_scale_short_after=str(event.s_scale_short_after),
                tx_signature=context.signature,
                settled_at=context.block_time or event.timestamp,
                slot=context.slot,
            )
        )

        previous = pool.current_epoch or 0
        stale = pool.current_epoch is not None and event.epoch < pool.current_epoch
        if inserted:
            if event.epoch != previous + 1:
                logger.warning(
                    "settlement_epoch_out_of_order",
                    pool=event.pool,
                    epoch=event.epoch,
                    expected=previous + 1,
                )
            logger.info("settlement_recorded", pool=event.pool, epoch=event.epoch, bd_score=event.bd_score)
        else:
            logger.info("settlement_duplicate", pool=event.pool, epoch=event.epoch)

        current = await self._repository.advance_pool_epoch(event.pool, event.epoch, context.signature)

        # The payload reserves are only a hint for the newest epoch; an older
        # or redelivered settlement must not overwrite later state.
        if inserted and not stale:
            await self._projector.apply_settlement(event)
        resynced = await self._projector.resync(event.pool)

        pool = await self._repository.get_pool(event.pool)
        if pool is None:
            return

        reserves: tuple[Decimal | None, Decimal | None] = (None, None)
        if resynced:
            reserves = (pool.r_long, pool.r_short)
        elif not stale:
            reserves = (self._display(event.r_long_after), self._display(event.r_short_after))
        reserve_long, reserve_short = reserves
        if reserve_long is not None and reserve_short is not None:
            await self._relevance.record(
                pool,
                context.signature,
                reserve_long,
                reserve_short,
                RelevanceEventType.REBASE,
                recorded_at=_iso(context.block_time),
            )
        else:
            logger.info("settlement_relevance_skipped", pool=event.pool, epoch=event.epoch, stale=stale)

        await self._dispatch_epoch_processing(event.pool, pool.belief_id, event.epoch)
        logger.debug("pool_epoch_state", pool=event.pool, current_epoch=current)

    async def _dispatch_epoch_processing(self, pool_address: str, belief_id: str | None, epoch: int) -> None:
        """Trigger epoch processing for a settlement row not yet dispatched.

        The flag is persisted, so a delivery that failed after the settlement
        was recorded still triggers on redelivery.
        """
        if not belief_id:
            return
        settlement = await self._repository.get_settlement(pool_address, epoch)
        if settlement is None or settlement.trigger_dispatched:
            return
        if self._trigger.dispatch(pool_address, belief_id, epoch):
            await self._repository.mark_settlement_dispatched(pool_address, epoch)

    # ──────────────────────────────────────────────
    # Market deployment
    # ──────────────────────────────────────────────

    async def _handle_market_deployed(self, event: MarketDeployedEvent, context: EventContext) -> None:
        pool = await self._projector.apply_deployment(event, context)
        await self._relevance.record(
            pool,
            context.signature,
            self._display(event.long_allocation),
            self._display(event.short_allocation),
            RelevanceEventType.DEPLOYMENT,
            recorded_at=_iso(context.block_time),
        )

    # ──────────────────────────────────────────────
    # Custodian deposits and withdrawals
    # ──────────────────────────────────────────────

    async def _handle_deposit(self, event: DepositEvent, context: EventContext) -> None:
        agent = await self._repository.ensure_agent(event.depositor)
        await self._reconcile_funding_flow(
            FundingTable.DEPOSITS,
            FundingFlowRecord(
                tx_signature=context.signature,
                address=event.depositor,
                amount_usdc=self._display(event.amount),
                deposit_type=DepositType.DIRECT,
                agent_id=agent.id,
                confirmed=True,
                slot=context.slot,
                block_time=context.block_time,
            ),
            sign=1,
        )
        await self._stake.credit(
            agent.id,
            AtomicAmount(event.amount),
            FundingSource(FundingTable.DEPOSITS, context.signature),
        )

    async def _handle_withdraw(self, event: WithdrawEvent, context: EventContext) -> None:
        agent = await self._repository.ensure_agent(event.recipient)
        await self._reconcile_funding_flow(
            FundingTable.WITHDRAWALS,
            FundingFlowRecord(
                tx_signature=context.signature,
                address=event.recipient,
                amount_usdc=self._display(event.amount),
                authority_address=event.authority,
                agent_id=agent.id,
                confirmed=True,
                slot=context.slot,
                block_time=context.block_time,
            ),
            sign=-1,
        )
        await self._stake.debit(
            agent.id,
            AtomicAmount(event.amount),
            FundingSource(FundingTable.WITHDRAWALS, context.signature),
        )

    async def _reconcile_funding_flow(self, table: FundingTable, record: FundingFlowRecord, sign: int) -> None:
        """Insert, confirm or correct one funding-flow row. Crediting is separate."""
        existing = await self._repository.get_funding_flow(table, record.tx_signature)
        if existing is None:
            if await self._repository.insert_funding_flow(table, record):
                logger.info(
                    "funding_flow_recorded",
                    table=table.value,
                    address=record.address,
                    amount_usdc=str(record.amount_usdc),
                )
                return
            existing = await self._repository.get_funding_flow(table, record.tx_signature)
            if existing is None:
                return

        if self._funding_amount_matches(existing, record):
            await self._repository.confirm_funding_flow(
                table, record.tx_signature, record.agent_id, record.slot, record.block_time
            )
            logger.debug("funding_flow_confirmed", table=table.value)
            return

        delta = sign * (self._atomic(record.amount_usdc) - self._atomic(existing.amount_usdc))
        corrected = await self._repository.correct_funding_flow(
            table,
            record.tx_signature,
            record.amount_usdc,
            delta,
            record.slot,
            record.block_time,
        )
        if corrected:
            logger.warning(
                "funding_flow_corrected",
                table=table.value,
                server_amount_usdc=str(existing.amount_usdc),
                ledger_amount_usdc=str(record.amount_usdc),
            )

    # ──────────────────────────────────────────────
    # Liquidity provision
    # ──────────────────────────────────────────────

    async def _handle_liquidity_added(self, event: LiquidityAddedEvent, context: EventContext) -> None:
        long_signature = context.signature
        short_signature = f"{context.signature}{SHORT_LEG_SUFFIX}"

        recorded = [await self._repository.get_trade(sig) for sig in (long_signature, short_signature)]
        if all(leg is not None and (leg.stake_applied or leg.recorded_by is RecordedBy.SERVER) for leg in recorded):
            logger.debug("liquidity_already_recorded")
            return

        pool = await self._repository.get_pool(event.pool)
        if pool is None:
            logger.warning("liquidity_pool_not_found", pool=event.pool)
            return
        user = await self._repository.get_user_by_wallet(event.user)
        if user is None:
            logger.warning("liquidity_user_not_found", wallet=event.user)
            return
        agent_id = await self._agent_id_for(user)

        total_tokens = event.long_tokens_out + event.short_tokens_out
        if total_tokens > 0:
            long_usdc = event.usdc_amount * event.long_tokens_out // total_tokens
        else:
            long_usdc = event.usdc_amount // 2
        legs = (
            (long_signature, TokenSide.LONG, event.long_tokens_out, long_usdc),
            (short_signature, TokenSide.SHORT, event.short_tokens_out, event.usdc_amount - long_usdc),
        )

        # Non-predictive positions: no belief submission is created here.
        for signature, side, tokens, usdc in legs:
            await self._repository.insert_trade(
                TradeRecord(
                    tx_signature=signature,
                    pool_address=event.pool,
                    post_id=pool.post_id,
                    user_id=user.id,
                    agent_id=agent_id,
                    wallet_address=event.user,
                    side=side,
                    trade_type=TradeType.LIQUIDITY_PROVISION,
                    token_amount=tokens,
                    usdc_amount=usdc,
                    s_long_after=event.new_s_long,
                    s_short_after=event.new_s_short,
                    r_long_after=self._display(event.new_r_long),
                    r_short_after=self._display(event.new_r_short),
                    recorded_by=RecordedBy.INDEXER,
                    confirmed=True,
                    block_time=context.block_time,
                    slot=context.slot,
                )
            )
            await self._stake.apply_trade(
                signature, agent_id, event.pool, side, TradeType.LIQUIDITY_PROVISION, tokens, usdc
            )

        logger.info(
            "liquidity_recorded",
            pool=event.pool,
            long_tokens=event.long_tokens_out,
            short_tokens=event.short_tokens_out,
            usdc_amount=event.usdc_amount,
        )
        await self._projector.apply_liquidity(event)
        await self._projector.refresh_volume(event.pool)
