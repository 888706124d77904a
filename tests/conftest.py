"""Shared test fixtures for the pool indexer."""

from collections.abc import AsyncIterator, Callable
from unittest.mock import AsyncMock, MagicMock

import base58
import pytest

from indexer.config import AppSettings, LedgerSettings, ReconcileSettings, WebhookSettings
from indexer.engine.processor import EventProcessor
from indexer.engine.projector import PoolStateProjector
from indexer.engine.relevance import ImpliedRelevanceRecorder
from indexer.engine.settlement import SettlementTrigger
from indexer.engine.stake import StakeLedger
from indexer.ledger.client import LedgerClient
from indexer.models import (
    EventContext,
    PoolRecord,
    TokenSide,
    TradeEvent,
    TradeType,
    UserRecord,
)
from indexer.store.database import MirrorDatabase
from indexer.store.sqlite_store import SqliteMirrorStore
from indexer.units import UnitNormalizer


def make_address(seed: int) -> str:
    """Deterministic base58 address built from a repeated byte."""
    return base58.b58encode(bytes([seed]) * 32).decode("ascii")


PROGRAM_ID = make_address(7)
POOL = make_address(1)
TRADER = make_address(2)
Q96 = 2**96


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (localnet, webhook secret set)."""
    return AppSettings(
        log_level="DEBUG",
        ledger=LedgerSettings(network="localnet", program_id=PROGRAM_ID),
        webhook=WebhookSettings(secret="test-webhook-secret"),  # type: ignore[arg-type]
        reconcile=ReconcileSettings(),
    )


@pytest.fixture
async def database() -> AsyncIterator[MirrorDatabase]:
    """In-memory mirror with the full schema."""
    async with MirrorDatabase(":memory:") as db:
        yield db


@pytest.fixture
def store(database: MirrorDatabase) -> SqliteMirrorStore:
    return SqliteMirrorStore(database)


@pytest.fixture
def normalizer() -> UnitNormalizer:
    return UnitNormalizer(6)


@pytest.fixture
def mock_ledger() -> AsyncMock:
    """LedgerClient whose account reads find nothing unless a test says otherwise."""
    ledger = AsyncMock(spec=LedgerClient)
    ledger.fetch_pool_state.return_value = None
    ledger.get_block_time.return_value = None
    return ledger


@pytest.fixture
def mock_trigger() -> MagicMock:
    trigger = MagicMock(spec=SettlementTrigger)
    trigger.dispatch.return_value = True
    return trigger


@pytest.fixture
def stake_ledger(store: SqliteMirrorStore) -> StakeLedger:
    return StakeLedger(store)


@pytest.fixture
def projector(
    store: SqliteMirrorStore, mock_ledger: AsyncMock, normalizer: UnitNormalizer
) -> PoolStateProjector:
    return PoolStateProjector(store, mock_ledger, normalizer)


@pytest.fixture
def processor(
    store: SqliteMirrorStore,
    normalizer: UnitNormalizer,
    projector: PoolStateProjector,
    stake_ledger: StakeLedger,
    mock_trigger: MagicMock,
) -> EventProcessor:
    """EventProcessor over a real in-memory mirror with a mocked ledger and trigger."""
    return EventProcessor(
        repository=store,
        normalizer=normalizer,
        projector=projector,
        stake_ledger=stake_ledger,
        relevance_recorder=ImpliedRelevanceRecorder(store),
        settlement_trigger=mock_trigger,
        settings=ReconcileSettings(),
    )


@pytest.fixture
async def provisioned(store: SqliteMirrorStore) -> dict[str, str]:
    """A pool linked to a belief and a participant with an agent, as the app provisions them."""
    await store.upsert_deployed_pool(
        PoolRecord(pool_address=POOL, post_id="post-1", belief_id="belief-1", current_epoch=0)
    )
    agent = await store.ensure_agent(TRADER)
    await store.insert_user(UserRecord(id="user-1", wallet_address=TRADER, agent_id=agent.id))
    return {"pool": POOL, "wallet": TRADER, "agent_id": agent.id, "belief_id": "belief-1"}


@pytest.fixture
def context_factory() -> Callable[..., EventContext]:
    def _make(signature: str = "sig-1", slot: int = 100, block_time: int = 1_700_000_000) -> EventContext:
        return EventContext(signature=signature, slot=slot, block_time=block_time)

    return _make


@pytest.fixture
def trade_factory() -> Callable[..., TradeEvent]:
    """Build a TradeEvent with sensible after-state; override any field by keyword."""

    def _make(**overrides: object) -> TradeEvent:
        fields: dict[str, object] = {
            "pool": POOL,
            "trader": TRADER,
            "side": TokenSide.LONG,
            "trade_type": TradeType.BUY,
            "usdc_amount": 51_000_000,
            "usdc_to_trade": 50_000_000,
            "usdc_to_stake": 1_000_000,
            "tokens_traded": 100,
            "s_long_before": 1_000,
            "s_short_before": 1_000,
            "sqrt_price_long_x96_before": Q96,
            "sqrt_price_short_x96_before": Q96,
            "s_long_after": 1_100,
            "s_short_after": 1_000,
            "sqrt_price_long_x96_after": 2 * Q96,
            "sqrt_price_short_x96_after": Q96,
            "r_long_after": 60_000_000,
            "r_short_after": 40_000_000,
            "vault_balance_after": 100_000_000,
            "timestamp": 1_700_000_000,
        }
        fields.update(overrides)
        return TradeEvent(**fields)  # type: ignore[arg-type]

    return _make
