"""Shared data models for the pool indexer.

Two families live here:
- Ledger events, exactly as decoded from program logs. Every ledger integer is
  kept as a Python int so u64/u128 values never truncate.
- Mirror records, the rows of the relational mirror. One schema per entity;
  provenance (server vs. indexer) is a field, not a subclass.

CRITICAL: Display amounts use Decimal, atomic amounts use int. Never float.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class TokenSide(str, Enum):
    """Pool side a position or trade refers to."""

    LONG = "LONG"
    SHORT = "SHORT"


class TradeType(str, Enum):
    """Trade direction. Liquidity provision is a non-predictive position."""

    BUY = "buy"
    SELL = "sell"
    LIQUIDITY_PROVISION = "liquidity_provision"


class RecordedBy(str, Enum):
    """Which writer produced a mirror row."""

    SERVER = "server"
    INDEXER = "indexer"


class DepositType(str, Enum):
    """Custodian deposit origin."""

    DIRECT = "direct"
    TRADE_SKIM = "trade_skim"


class RelevanceEventType(str, Enum):
    """Event that produced an implied relevance observation."""

    TRADE = "trade"
    DEPLOYMENT = "deployment"
    REBASE = "rebase"


class FundingTable(str, Enum):
    """Tables whose rows carry an agent_credited once-only flag."""

    DEPOSITS = "custodian_deposits"
    WITHDRAWALS = "custodian_withdrawals"


# ──────────────────────────────────────────────
# Ledger events
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class EventContext:
    """Delivery metadata shared by every event of one transaction."""

    signature: str
    slot: int | None = None
    block_time: int | None = None  # Unix seconds


@dataclass(frozen=True)
class TradeEvent:
    """A buy or sell against a pool, with before/after curve snapshots."""

    pool: str
    trader: str
    side: TokenSide
    trade_type: TradeType
    usdc_amount: int  # total including skim
    usdc_to_trade: int
    usdc_to_stake: int  # skim
    tokens_traded: int
    s_long_before: int
    s_short_before: int
    sqrt_price_long_x96_before: int
    sqrt_price_short_x96_before: int
    s_long_after: int
    s_short_after: int
    sqrt_price_long_x96_after: int
    sqrt_price_short_x96_after: int
    r_long_after: int
    r_short_after: int
    vault_balance_after: int
    timestamp: int


@dataclass(frozen=True)
class SettlementEvent:
    """Epoch settlement. Ratios are millionths, scales are Q64.64."""

    pool: str
    settler: str
    epoch: int
    bd_score: int
    market_prediction_q: int
    f_long: int
    f_short: int
    r_long_before: int
    r_short_before: int
    r_long_after: int
    r_short_after: int
    s_scale_long_before: int
    s_scale_long_after: int
    s_scale_short_before: int
    s_scale_short_after: int
    timestamp: int


@dataclass(frozen=True)
class MarketDeployedEvent:
    """Initial market deployment for a pool."""

    pool: str
    deployer: str
    initial_deposit: int
    long_allocation: int
    short_allocation: int
    initial_q: int
    long_tokens: int
    short_tokens: int
    timestamp: int


@dataclass(frozen=True)
class DepositEvent:
    """Direct custodian deposit."""

    depositor: str
    amount: int
    timestamp: int


@dataclass(frozen=True)
class WithdrawEvent:
    """Custodian withdrawal."""

    recipient: str
    amount: int
    authority: str
    timestamp: int


@dataclass(frozen=True)
class LiquidityAddedEvent:
    """Bilateral liquidity provision (one long and one short position)."""

    pool: str
    user: str
    usdc_amount: int
    long_tokens_out: int
    short_tokens_out: int
    new_r_long: int
    new_r_short: int
    new_s_long: int
    new_s_short: int


LedgerEvent = (
    TradeEvent
    | SettlementEvent
    | MarketDeployedEvent
    | DepositEvent
    | WithdrawEvent
    | LiquidityAddedEvent
)


@dataclass
class DecodedTransaction:
    """All domain events decoded from one ledger transaction."""

    context: EventContext
    events: list[LedgerEvent] = field(default_factory=list)


# ──────────────────────────────────────────────
# Mirror records
# ──────────────────────────────────────────────


@dataclass
class PoolSnapshot:
    """Partial AMM state to persist. None fields are left untouched.

    Supplies are atomic ints; reserves and vault are display Decimals;
    sqrt prices stay raw integer strings.
    """

    s_long_supply: int | None = None
    s_short_supply: int | None = None
    r_long: Decimal | None = None
    r_short: Decimal | None = None
    vault_balance: Decimal | None = None
    sqrt_price_long_x96: str | None = None
    sqrt_price_short_x96: str | None = None
    price_long: Decimal | None = None
    price_short: Decimal | None = None
    current_epoch: int | None = None  # only ever raised, never lowered
    f: int | None = None  # curve params are set once
    beta_num: int | None = None
    beta_den: int | None = None


@dataclass
class PoolRecord:
    """One deployed market."""

    pool_address: str
    post_id: str | None = None
    belief_id: str | None = None
    deployer: str | None = None
    s_long_supply: int | None = None
    s_short_supply: int | None = None
    r_long: Decimal | None = None
    r_short: Decimal | None = None
    vault_balance: Decimal | None = None
    sqrt_price_long_x96: str | None = None
    sqrt_price_short_x96: str | None = None
    price_long: Decimal | None = None
    price_short: Decimal | None = None
    current_epoch: int | None = None
    last_settlement_epoch: int | None = None
    last_settlement_tx: str | None = None
    f: int | None = None
    beta_num: int | None = None
    beta_den: int | None = None
    total_volume: int = 0
    deployment_tx_signature: str | None = None
    last_synced_at: str | None = None


@dataclass
class UserRecord:
    """Application participant, provisioned outside the indexer."""

    id: str
    wallet_address: str
    agent_id: str | None = None


@dataclass
class AgentRecord:
    """Protocol-side stake holder.

    total_stake always equals the sum of belief_lock over the agent's pool
    balances. custodian_balance is the running result of credited funding
    flows. Both in micro-USDC.
    """

    id: str
    solana_address: str
    total_stake: int = 0
    custodian_balance: int = 0


@dataclass
class TradeRecord:
    """One trade row, keyed by ledger transaction signature."""

    tx_signature: str
    pool_address: str
    wallet_address: str
    side: TokenSide
    trade_type: TradeType
    token_amount: int
    usdc_amount: int
    post_id: str | None = None
    user_id: str | None = None
    agent_id: str | None = None
    skim_amount: int = 0
    s_long_before: int | None = None
    s_short_before: int | None = None
    s_long_after: int | None = None
    s_short_after: int | None = None
    r_long_after: Decimal | None = None
    r_short_after: Decimal | None = None
    sqrt_price_long_x96: str | None = None
    sqrt_price_short_x96: str | None = None
    price_long: Decimal | None = None
    price_short: Decimal | None = None
    recorded_by: RecordedBy = RecordedBy.INDEXER
    confirmed: bool = False
    indexer_corrected: bool = False
    server_token_amount: int | None = None
    server_usdc_amount: int | None = None
    stake_applied: bool = False
    block_time: int | None = None
    slot: int | None = None


@dataclass
class PoolBalance:
    """Per-agent, per-pool, per-side position and its stake lock (micro-USDC)."""

    agent_id: str
    pool_address: str
    side: TokenSide
    token_balance: int = 0
    belief_lock: int = 0


@dataclass
class SettlementRecord:
    """One settlement per (pool, epoch)."""

    pool_address: str
    epoch: int
    bd_score: Decimal
    market_prediction: Decimal
    f_long: Decimal
    f_short: Decimal
    r_long_before: Decimal
    r_short_before: Decimal
    r_long_after: Decimal
    r_short_after: Decimal
    s_scale_long_before: str
    s_scale_long_after: str
    s_scale_short_before: str
    s_scale_short_after: str
    tx_signature: str
    belief_id: str | None = None
    settled_at: int | None = None
    slot: int | None = None
    trigger_dispatched: bool = False


@dataclass
class FundingFlowRecord:
    """Custodian deposit or withdrawal row (display USDC)."""

    tx_signature: str
    address: str
    amount_usdc: Decimal
    recorded_by: RecordedBy = RecordedBy.INDEXER
    deposit_type: DepositType | None = None  # deposits only
    authority_address: str | None = None  # withdrawals only
    agent_id: str | None = None
    confirmed: bool = False
    indexer_corrected: bool = False
    server_amount_usdc: Decimal | None = None
    agent_credited: bool = False
    slot: int | None = None
    block_time: int | None = None


@dataclass
class ImpliedRelevanceRecord:
    """Append-only relevance observation, unique per event reference."""

    event_reference: str
    pool_address: str
    implied_relevance: Decimal
    reserve_long: Decimal
    reserve_short: Decimal
    event_type: RelevanceEventType
    recorded_by: RecordedBy
    belief_id: str | None = None
    post_id: str | None = None
    confirmed: bool = True
    recorded_at: str | None = None


@dataclass
class PoolAccountState:
    """Pool state as read directly from the ledger (ground truth)."""

    pool_address: str
    s_long: int
    s_short: int
    r_long: int
    r_short: int
    vault_balance: int
    sqrt_price_long_x96: int
    sqrt_price_short_x96: int
    current_epoch: int
    f: int
    beta_num: int
    beta_den: int
    s_scale_long_q64: int = 0
    s_scale_short_q64: int = 0
