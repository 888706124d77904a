"""Async SQLite database manager for the ledger mirror.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance. All writes go through ``write()``,
which serializes writers and makes each block a single transaction.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from indexer.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

# Atomic integers, u128 values and Decimals are TEXT so nothing truncates.
_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL UNIQUE,
    agent_id TEXT
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    solana_address TEXT NOT NULL UNIQUE,
    total_stake TEXT NOT NULL DEFAULT '0',
    custodian_balance TEXT NOT NULL DEFAULT '0',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS pools (
    pool_address TEXT PRIMARY KEY,
    post_id TEXT,
    belief_id TEXT,
    deployer TEXT,
    s_long_supply TEXT,
    s_short_supply TEXT,
    r_long TEXT,
    r_short TEXT,
    vault_balance TEXT,
    sqrt_price_long_x96 TEXT,
    sqrt_price_short_x96 TEXT,
    price_long TEXT,
    price_short TEXT,
    current_epoch INTEGER,
    last_settlement_epoch INTEGER,
    last_settlement_tx TEXT,
    f INTEGER,
    beta_num INTEGER,
    beta_den INTEGER,
    total_volume TEXT NOT NULL DEFAULT '0',
    deployment_tx_signature TEXT,
    last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    tx_signature TEXT PRIMARY KEY,
    pool_address TEXT NOT NULL,
    post_id TEXT,
    user_id TEXT,
    agent_id TEXT,
    wallet_address TEXT NOT NULL,
    side TEXT NOT NULL,
    trade_type TEXT NOT NULL,
    token_amount TEXT NOT NULL,
    usdc_amount TEXT NOT NULL,
    skim_amount TEXT NOT NULL DEFAULT '0',
    s_long_before TEXT,
    s_short_before TEXT,
    s_long_after TEXT,
    s_short_after TEXT,
    r_long_after TEXT,
    r_short_after TEXT,
    sqrt_price_long_x96 TEXT,
    sqrt_price_short_x96 TEXT,
    price_long TEXT,
    price_short TEXT,
    recorded_by TEXT NOT NULL,
    confirmed INTEGER NOT NULL DEFAULT 0,
    indexer_corrected INTEGER NOT NULL DEFAULT 0,
    server_token_amount TEXT,
    server_usdc_amount TEXT,
    stake_applied INTEGER NOT NULL DEFAULT 0,
    block_time INTEGER,
    slot INTEGER,
    confirmed_at TEXT,
    indexed_at TEXT
);

CREATE TABLE IF NOT EXISTS pool_balances (
    agent_id TEXT NOT NULL,
    pool_address TEXT NOT NULL,
    side TEXT NOT NULL,
    token_balance TEXT NOT NULL DEFAULT '0',
    belief_lock TEXT NOT NULL DEFAULT '0',
    PRIMARY KEY (agent_id, pool_address, side)
);

CREATE TABLE IF NOT EXISTS belief_submissions (
    agent_id TEXT NOT NULL,
    belief_id TEXT NOT NULL,
    epoch INTEGER NOT NULL DEFAULT 0,
    belief TEXT NOT NULL,
    meta_prediction TEXT NOT NULL,
    is_placeholder INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (agent_id, belief_id)
);

CREATE TABLE IF NOT EXISTS settlements (
    pool_address TEXT NOT NULL,
    epoch INTEGER NOT NULL,
    belief_id TEXT,
    bd_score TEXT NOT NULL,
    market_prediction TEXT NOT NULL,
    f_long TEXT NOT NULL,
    f_short TEXT NOT NULL,
    r_long_before TEXT NOT NULL,
    r_short_before TEXT NOT NULL,
    r_long_after TEXT NOT NULL,
    r_short_after TEXT NOT NULL,
    s_scale_long_before TEXT NOT NULL,
    s_scale_long_after TEXT NOT NULL,
    s_scale_short_before TEXT NOT NULL,
    s_scale_short_after TEXT NOT NULL,
    tx_signature TEXT NOT NULL,
    settled_at INTEGER,
    slot INTEGER,
    trigger_dispatched INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (pool_address, epoch)
);

CREATE TABLE IF NOT EXISTS custodian_deposits (
    tx_signature TEXT PRIMARY KEY,
    depositor_address TEXT NOT NULL,
    agent_id TEXT,
    amount_usdc TEXT NOT NULL,
    deposit_type TEXT NOT NULL,
    recorded_by TEXT NOT NULL,
    confirmed INTEGER NOT NULL DEFAULT 0,
    indexer_corrected INTEGER NOT NULL DEFAULT 0,
    server_amount_usdc TEXT,
    agent_credited INTEGER NOT NULL DEFAULT 0,
    slot INTEGER,
    block_time INTEGER,
    indexed_at TEXT
);

CREATE TABLE IF NOT EXISTS custodian_withdrawals (
    tx_signature TEXT PRIMARY KEY,
    recipient_address TEXT NOT NULL,
    authority_address TEXT,
    agent_id TEXT,
    amount_usdc TEXT NOT NULL,
    recorded_by TEXT NOT NULL,
    confirmed INTEGER NOT NULL DEFAULT 0,
    indexer_corrected INTEGER NOT NULL DEFAULT 0,
    server_amount_usdc TEXT,
    agent_credited INTEGER NOT NULL DEFAULT 0,
    slot INTEGER,
    block_time INTEGER,
    indexed_at TEXT
);

CREATE TABLE IF NOT EXISTS implied_relevance_history (
    event_reference TEXT PRIMARY KEY,
    pool_address TEXT NOT NULL,
    post_id TEXT,
    belief_id TEXT,
    implied_relevance TEXT NOT NULL,
    reserve_long TEXT NOT NULL,
    reserve_short TEXT NOT NULL,
    event_type TEXT NOT NULL,
    recorded_by TEXT NOT NULL,
    confirmed INTEGER NOT NULL DEFAULT 1,
    recorded_at TEXT NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_trades_pool
    ON trades(pool_address);

CREATE INDEX IF NOT EXISTS idx_trades_agent
    ON trades(agent_id);

CREATE INDEX IF NOT EXISTS idx_pool_balances_agent
    ON pool_balances(agent_id);

CREATE INDEX IF NOT EXISTS idx_relevance_pool_recorded
    ON implied_relevance_history(pool_address, recorded_at);
"""


class MirrorDatabase:
    """Async SQLite connection manager for the ledger mirror.

    Manages database lifecycle including schema creation, WAL mode
    configuration, write serialization and clean resource cleanup.

    Usage:
        # Context manager (recommended)
        async with MirrorDatabase("/path/to/db") as db:
            async with db.write() as conn:
                await conn.execute("UPDATE ...")

        # Manual lifecycle
        db = MirrorDatabase("/path/to/db")
        await db.connect()
        try:
            await db.db.execute("SELECT ...")
        finally:
            await db.close()
    """

    def __init__(self, db_path: str = "data/mirror.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist.
        Sets WAL journal mode and NORMAL synchronous for performance.
        """
        if self._db_path != ":memory:":
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row

        # Performance pragmas
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("mirror_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("mirror_db_closed", db_path=self._db_path)

    @asynccontextmanager
    async def write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements as one serialized transaction.

        Commits when the block exits normally and rolls back if it raises.
        Not reentrant: never open a write() inside another.
        """
        async with self._write_lock:
            conn = self.db
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not exist."""
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set."""
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Async context manager exit."""
        await self.close()
