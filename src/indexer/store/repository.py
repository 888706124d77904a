"""Abstract mirror repository interface.

Defines every read and write the reconciliation engine performs against the
relational mirror. Engine code depends only on this interface, keeping
SQL details isolated in the concrete store.

Write methods that can lose a race on a natural key return ``bool``: True when
this call changed the row, False when another writer (or an earlier delivery)
already did. Losing such a race is a normal branch, never an exception.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from indexer.models import (
    AgentRecord,
    FundingFlowRecord,
    FundingTable,
    ImpliedRelevanceRecord,
    PoolBalance,
    PoolRecord,
    PoolSnapshot,
    SettlementRecord,
    TokenSide,
    TradeRecord,
    UserRecord,
)


@dataclass(frozen=True)
class BalanceUpdate:
    """A read-modify-write of one pool balance row, followed by a stake recompute."""

    agent_id: str
    pool_address: str
    side: TokenSide
    mutate: Callable[[PoolBalance], PoolBalance]


class MirrorRepository(ABC):
    """Abstract base class for the ledger mirror store."""

    # ──────────────────────────────────────────────
    # Participants
    # ──────────────────────────────────────────────

    @abstractmethod
    async def get_user_by_wallet(self, wallet_address: str) -> UserRecord | None:
        """Resolve an application participant by wallet address."""
        ...

    @abstractmethod
    async def insert_user(self, user: UserRecord) -> bool:
        """Provision a participant. Returns False if the wallet is already known."""
        ...

    @abstractmethod
    async def ensure_agent(self, solana_address: str) -> AgentRecord:
        """Return the agent for an address, creating it if absent."""
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        ...

    @abstractmethod
    async def get_agent_by_address(self, solana_address: str) -> AgentRecord | None:
        ...

    # ──────────────────────────────────────────────
    # Pools
    # ──────────────────────────────────────────────

    @abstractmethod
    async def get_pool(self, pool_address: str) -> PoolRecord | None:
        ...

    @abstractmethod
    async def upsert_deployed_pool(self, pool: PoolRecord) -> bool:
        """Insert a deployed pool, or refresh its deployment fields.

        Application-owned columns (post_id, belief_id) are never overwritten
        with NULL. Returns True when the row was newly inserted.
        """
        ...

    @abstractmethod
    async def update_pool_snapshot(self, pool_address: str, snapshot: PoolSnapshot) -> bool:
        """Persist the non-None fields of a snapshot.

        Values are set, not added. current_epoch never decreases and curve
        parameters are only written while still NULL. Returns False when the
        pool does not exist.
        """
        ...

    @abstractmethod
    async def advance_pool_epoch(self, pool_address: str, epoch: int, tx_signature: str) -> int:
        """Raise current_epoch to at least ``epoch`` and stamp the settlement.

        Returns the pool's resulting current_epoch.
        """
        ...

    @abstractmethod
    async def refresh_pool_volume(self, pool_address: str) -> int:
        """Recompute total_volume as the sum of the pool's trade usdc_amount."""
        ...

    @abstractmethod
    async def list_unsynced_pools(self, limit: int) -> list[str]:
        """Pool addresses whose sqrt price was never indexed."""
        ...

    # ──────────────────────────────────────────────
    # Trades
    # ──────────────────────────────────────────────

    @abstractmethod
    async def get_trade(self, tx_signature: str) -> TradeRecord | None:
        ...

    @abstractmethod
    async def insert_trade(self, trade: TradeRecord) -> bool:
        """Insert if absent. Returns False on a signature conflict."""
        ...

    @abstractmethod
    async def confirm_trade(self, tx_signature: str, block_time: int | None, slot: int | None) -> None:
        """Mark a trade confirmed and stamp block metadata."""
        ...

    @abstractmethod
    async def correct_trade(
        self,
        tx_signature: str,
        token_amount: int,
        usdc_amount: int,
        block_time: int | None,
        slot: int | None,
        balance: BalanceUpdate | None = None,
    ) -> bool:
        """Overwrite amounts with ledger truth, keeping the old ones for audit.

        Applies at most once per row. Returns False if already corrected.
        When ``balance`` is given it is applied, and total_stake recomputed,
        in the same transaction as the correction.
        """
        ...

    # ──────────────────────────────────────────────
    # Balances, stake and beliefs
    # ──────────────────────────────────────────────

    @abstractmethod
    async def get_pool_balance(
        self, agent_id: str, pool_address: str, side: TokenSide
    ) -> PoolBalance | None:
        ...

    @abstractmethod
    async def list_pool_balances(self, agent_id: str) -> list[PoolBalance]:
        ...

    @abstractmethod
    async def apply_trade_stake(self, tx_signature: str, balance: BalanceUpdate) -> PoolBalance | None:
        """Claim an indexer trade's stake_applied flag and apply its balance update.

        The claim, the balance write and the total_stake recompute share one
        transaction. A missing balance row is presented to ``mutate`` as a zero
        balance. Returns None when the flag was already set or the row was
        written by the server.
        """
        ...

    @abstractmethod
    async def recompute_total_stake(self, agent_id: str) -> int:
        """Set the agent's total_stake to the sum of its belief locks."""
        ...

    @abstractmethod
    async def ensure_belief_placeholder(
        self,
        agent_id: str,
        belief_id: str,
        epoch: int,
        belief: Decimal,
        meta_prediction: Decimal,
    ) -> bool:
        """Insert a placeholder submission unless one exists. True if inserted."""
        ...

    # ──────────────────────────────────────────────
    # Custodian funding flows
    # ──────────────────────────────────────────────

    @abstractmethod
    async def get_funding_flow(
        self, table: FundingTable, tx_signature: str
    ) -> FundingFlowRecord | None:
        ...

    @abstractmethod
    async def insert_funding_flow(self, table: FundingTable, record: FundingFlowRecord) -> bool:
        """Insert if absent. Returns False on a signature conflict."""
        ...

    @abstractmethod
    async def confirm_funding_flow(
        self,
        table: FundingTable,
        tx_signature: str,
        agent_id: str | None,
        slot: int | None,
        block_time: int | None,
    ) -> None:
        ...

    @abstractmethod
    async def correct_funding_flow(
        self,
        table: FundingTable,
        tx_signature: str,
        amount_usdc: Decimal,
        delta_atomic: int,
        slot: int | None,
        block_time: int | None,
    ) -> bool:
        """Overwrite a flow's amount with ledger truth, at most once.

        When the row was already credited to an agent, the custodian balance
        is adjusted by ``delta_atomic`` in the same transaction.
        """
        ...

    @abstractmethod
    async def apply_custodian_adjustment(
        self,
        table: FundingTable,
        tx_signature: str,
        agent_id: str,
        delta_atomic: int,
    ) -> bool:
        """Claim the row's agent_credited flag and adjust the custodian balance.

        Both happen in one transaction. Returns False when the flag was
        already set. Raises StakeUpdateError when the agent does not exist.
        """
        ...

    # ──────────────────────────────────────────────
    # Settlements and relevance
    # ──────────────────────────────────────────────

    @abstractmethod
    async def insert_settlement(self, settlement: SettlementRecord) -> bool:
        """Insert if absent. Returns False on a duplicate (pool, epoch)."""
        ...

    @abstractmethod
    async def get_settlement(self, pool_address: str, epoch: int) -> SettlementRecord | None:
        ...

    @abstractmethod
    async def mark_settlement_dispatched(self, pool_address: str, epoch: int) -> bool:
        """Set trigger_dispatched. Returns False if it was already set."""
        ...

    @abstractmethod
    async def list_settlements(self, pool_address: str) -> list[SettlementRecord]:
        ...

    @abstractmethod
    async def upsert_implied_relevance(self, record: ImpliedRelevanceRecord) -> bool:
        """Write a relevance observation keyed by event reference.

        An indexer row replaces a server row; an indexer row is final.
        Returns True when the row was written.
        """
        ...

    @abstractmethod
    async def list_implied_relevance(
        self, pool_address: str, limit: int = 100
    ) -> list[ImpliedRelevanceRecord]:
        ...
