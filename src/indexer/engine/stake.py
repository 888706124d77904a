"""Stake ledger -- per-pool belief locks and custodian funding flows.

Two aggregates are maintained per agent, both in micro-USDC:
- total_stake, which is always recomputed as the sum of belief locks over the
  agent's pool balances, never incremented.
- custodian_balance, the running result of deposits, trade skims and
  withdrawals. Each adjustment is guarded by the source row's agent_credited
  flag so a replayed event cannot apply it twice.

Lock policy:
- Buy: lock += floor(paid * lock_fraction).
- Sell: lock = floor(lock * remaining / previous); selling everything
  releases the whole lock.

Trade stake is applied in the same transaction that claims the trade row's
stake_applied flag (or, for a correction, its indexer_corrected flag). Any
store failure surfaces as StakeUpdateError and the redelivered event finishes
the update.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import ROUND_FLOOR, Decimal

from indexer.exceptions import StakeUpdateError
from indexer.logging import get_logger
from indexer.models import FundingTable, PoolBalance, TokenSide, TradeRecord, TradeType
from indexer.store.repository import BalanceUpdate, MirrorRepository
from indexer.units import AtomicAmount

logger = get_logger(__name__)


@dataclass(frozen=True)
class FundingSource:
    """The funding-flow row whose agent_credited flag guards an adjustment."""

    table: FundingTable
    tx_signature: str


def buy_lock(lock: int, paid: int, fraction: Decimal) -> int:
    """Lock after a buy of ``paid`` micro-USDC."""
    added = (Decimal(paid) * fraction).to_integral_value(rounding=ROUND_FLOOR)
    return lock + int(added)


def sell_lock(lock: int, previous_balance: int, remaining_balance: int) -> int:
    """Lock after selling down from ``previous_balance`` to ``remaining_balance``."""
    if remaining_balance <= 0 or previous_balance <= 0:
        return 0
    if remaining_balance >= previous_balance:
        return lock
    return lock * remaining_balance // previous_balance


class StakeLedger:
    """Maintains belief locks, total stake and custodian balances.

    Args:
        repository: Mirror repository.
        lock_fraction: Share of a buy's paid amount that becomes locked stake.
    """

    def __init__(self, repository: MirrorRepository, lock_fraction: Decimal = Decimal("0.02")) -> None:
        self._repository = repository
        self._lock_fraction = lock_fraction

    # ──────────────────────────────────────────────
    # Custodian balance
    # ──────────────────────────────────────────────

    async def credit(self, agent_id: str, amount: AtomicAmount, source: FundingSource) -> bool:
        """Add ``amount`` to the custodian balance once per source row.

        Returns False when the source was already credited.
        """
        return await self._adjust(agent_id, amount.value, source)

    async def debit(self, agent_id: str, amount: AtomicAmount, source: FundingSource) -> bool:
        """Subtract ``amount`` from the custodian balance once per source row."""
        return await self._adjust(agent_id, -amount.value, source)

    async def _adjust(self, agent_id: str, delta: int, source: FundingSource) -> bool:
        try:
            applied = await self._repository.apply_custodian_adjustment(
                source.table, source.tx_signature, agent_id, delta
            )
        except StakeUpdateError:
            raise
        except Exception as e:
            raise StakeUpdateError(
                f"Custodian adjustment failed for agent {agent_id} ({source.tx_signature})"
            ) from e

        if applied:
            logger.info(
                "custodian_balance_adjusted",
                agent_id=agent_id,
                delta=delta,
                source=source.table.value,
                signature=source.tx_signature,
            )
        else:
            logger.debug(
                "custodian_adjustment_already_applied",
                agent_id=agent_id,
                signature=source.tx_signature,
            )
        return applied

    async def withdrawable(self, agent_id: str) -> int:
        """Custodian balance not backing any belief lock (micro-USDC)."""
        agent = await self._repository.get_agent(agent_id)
        if agent is None:
            raise StakeUpdateError(f"Agent {agent_id} not found")
        return agent.custodian_balance - agent.total_stake

    # ──────────────────────────────────────────────
    # Locks
    # ──────────────────────────────────────────────

    async def recompute_from_locks(self, agent_id: str) -> int:
        """Realign total_stake with the sum of the agent's belief locks."""
        try:
            total = await self._repository.recompute_total_stake(agent_id)
        except StakeUpdateError:
            raise
        except Exception as e:
            raise StakeUpdateError(f"Stake recompute failed for agent {agent_id}") from e
        logger.debug("total_stake_recomputed", agent_id=agent_id, total_stake=total)
        return total

    def _trade_mutation(
        self, trade_type: TradeType, tokens: int, paid: int
    ) -> Callable[[PoolBalance], PoolBalance]:
        fraction = self._lock_fraction

        def mutate(balance: PoolBalance) -> PoolBalance:
            if trade_type is TradeType.BUY:
                return replace(
                    balance,
                    token_balance=balance.token_balance + tokens,
                    belief_lock=buy_lock(balance.belief_lock, paid, fraction),
                )
            if trade_type is TradeType.SELL:
                remaining = max(balance.token_balance - tokens, 0)
                return replace(
                    balance,
                    token_balance=remaining,
                    belief_lock=sell_lock(balance.belief_lock, balance.token_balance, remaining),
                )
            return replace(balance, token_balance=balance.token_balance + tokens)

        return mutate

    async def apply_trade(
        self,
        tx_signature: str,
        agent_id: str,
        pool_address: str,
        side: TokenSide,
        trade_type: TradeType,
        tokens: int,
        paid: int,
    ) -> PoolBalance | None:
        """Apply one indexer trade to the agent's balance and lock, then recompute stake.

        Guarded by the trade row's stake_applied flag, claimed in the same
        transaction, so a redelivered trade completes a stake update that
        failed earlier and never applies one twice. Returns None when the
        trade was already applied. Liquidity provision adds tokens without
        touching the lock.
        """
        update = BalanceUpdate(agent_id, pool_address, side, self._trade_mutation(trade_type, tokens, paid))
        try:
            updated = await self._repository.apply_trade_stake(tx_signature, update)
        except StakeUpdateError:
            raise
        except Exception as e:
            raise StakeUpdateError(
                f"Pool balance update failed for agent {agent_id} in {pool_address} ({tx_signature})"
            ) from e

        if updated is None:
            logger.debug("trade_stake_already_applied", agent_id=agent_id, signature=tx_signature)
        else:
            logger.debug(
                "trade_stake_applied",
                agent_id=agent_id,
                pool=pool_address,
                side=side.value,
                token_balance=updated.token_balance,
                belief_lock=updated.belief_lock,
            )
        return updated

    async def apply_correction(
        self,
        trade: TradeRecord,
        ledger_tokens: int,
        ledger_paid: int,
        block_time: int | None,
        slot: int | None,
    ) -> bool:
        """Correct an optimistic trade row and move its balance to the ledger outcome.

        The optimistic writer already applied its own amounts, so only the
        difference is applied, in the same transaction as the row correction.
        Returns False when the row was already corrected.
        """
        assert trade.agent_id is not None
        fraction = self._lock_fraction
        token_delta = ledger_tokens - trade.token_amount

        def mutate(balance: PoolBalance) -> PoolBalance:
            if trade.trade_type is TradeType.BUY:
                lock_delta = buy_lock(0, ledger_paid, fraction) - buy_lock(0, trade.usdc_amount, fraction)
                return replace(
                    balance,
                    token_balance=max(balance.token_balance + token_delta, 0),
                    belief_lock=max(balance.belief_lock + lock_delta, 0),
                )
            if trade.trade_type is TradeType.SELL:
                remaining = max(balance.token_balance - token_delta, 0)
                return replace(
                    balance,
                    token_balance=remaining,
                    belief_lock=sell_lock(balance.belief_lock, balance.token_balance, remaining),
                )
            return replace(balance, token_balance=max(balance.token_balance + token_delta, 0))

        update = BalanceUpdate(trade.agent_id, trade.pool_address, trade.side, mutate)
        try:
            corrected = await self._repository.correct_trade(
                trade.tx_signature, ledger_tokens, ledger_paid, block_time, slot, balance=update
            )
        except StakeUpdateError:
            raise
        except Exception as e:
            raise StakeUpdateError(
                f"Trade correction failed for agent {trade.agent_id} ({trade.tx_signature})"
            ) from e

        if corrected:
            logger.info(
                "trade_correction_applied_to_stake",
                agent_id=trade.agent_id,
                pool=trade.pool_address,
                side=trade.side.value,
                token_delta=token_delta,
            )
        return corrected
