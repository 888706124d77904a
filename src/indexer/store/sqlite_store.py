"""Typed SQLite read/write abstraction for the ledger mirror.

Provides SqliteMirrorStore, the aiosqlite implementation of MirrorRepository.
All SQL is isolated behind this interface, and every write runs inside
``MirrorDatabase.write()`` so read-recompute-write sequences are atomic.

CRITICAL: Atomic integers, u128 values and Decimals are stored as TEXT in
SQLite, restored as int or Decimal on read. Sums are computed in Python.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import aiosqlite

from indexer.exceptions import StakeUpdateError
from indexer.logging import get_logger
from indexer.models import (
    AgentRecord,
    DepositType,
    FundingFlowRecord,
    FundingTable,
    ImpliedRelevanceRecord,
    PoolBalance,
    PoolRecord,
    PoolSnapshot,
    RecordedBy,
    RelevanceEventType,
    SettlementRecord,
    TokenSide,
    TradeRecord,
    TradeType,
    UserRecord,
)
from indexer.store.database import MirrorDatabase
from indexer.store.repository import BalanceUpdate, MirrorRepository

logger = get_logger(__name__)

_ADDRESS_COLUMN = {
    FundingTable.DEPOSITS: "depositor_address",
    FundingTable.WITHDRAWALS: "recipient_address",
}

# Snapshot fields written with plain assignment
_SNAPSHOT_SET_FIELDS = (
    "s_long_supply",
    "s_short_supply",
    "r_long",
    "r_short",
    "vault_balance",
    "sqrt_price_long_x96",
    "sqrt_price_short_x96",
    "price_long",
    "price_short",
)

# Curve parameters are immutable once known
_SNAPSHOT_ONCE_FIELDS = ("f", "beta_num", "beta_den")

_TRADE_COLUMNS = (
    "tx_signature",
    "pool_address",
    "post_id",
    "user_id",
    "agent_id",
    "wallet_address",
    "side",
    "trade_type",
    "token_amount",
    "usdc_amount",
    "skim_amount",
    "s_long_before",
    "s_short_before",
    "s_long_after",
    "s_short_after",
    "r_long_after",
    "r_short_after",
    "sqrt_price_long_x96",
    "sqrt_price_short_x96",
    "price_long",
    "price_short",
    "recorded_by",
    "confirmed",
    "indexer_corrected",
    "server_token_amount",
    "server_usdc_amount",
    "stake_applied",
    "block_time",
    "slot",
    "confirmed_at",
    "indexed_at",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _text(value: Any) -> str | None:
    """Store int/Decimal as TEXT, keeping NULL."""
    return None if value is None else str(value)


def _int(value: str | None) -> int | None:
    return None if value is None else int(value)


def _dec(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


class SqliteMirrorStore(MirrorRepository):
    """Async SQLite store for the ledger mirror.

    Wraps MirrorDatabase with typed read/write methods. Reads go through
    self._database.db; writes through self._database.write().

    Usage:
        async with MirrorDatabase("data/mirror.db") as database:
            store = SqliteMirrorStore(database)
            inserted = await store.insert_trade(record)
    """

    def __init__(self, database: MirrorDatabase) -> None:
        self._database = database

    async def _fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        cursor = await self._database.db.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self._database.db.execute(sql, params)
        return list(await cursor.fetchall())

    # ──────────────────────────────────────────────
    # Participants
    # ──────────────────────────────────────────────

    async def get_user_by_wallet(self, wallet_address: str) -> UserRecord | None:
        row = await self._fetchone(
            "SELECT id, wallet_address, agent_id FROM users WHERE wallet_address = ?",
            (wallet_address,),
        )
        if row is None:
            return None
        return UserRecord(id=row["id"], wallet_address=row["wallet_address"], agent_id=row["agent_id"])

    async def insert_user(self, user: UserRecord) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "INSERT INTO users (id, wallet_address, agent_id) VALUES (?, ?, ?) "
                "ON CONFLICT(wallet_address) DO NOTHING",
                (user.id, user.wallet_address, user.agent_id),
            )
            return cursor.rowcount > 0

    async def ensure_agent(self, solana_address: str) -> AgentRecord:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "INSERT INTO agents (id, solana_address) VALUES (?, ?) "
                "ON CONFLICT(solana_address) DO NOTHING",
                (str(uuid.uuid4()), solana_address),
            )
            if cursor.rowcount > 0:
                logger.info("agent_created", address=solana_address)

        agent = await self.get_agent_by_address(solana_address)
        assert agent is not None
        return agent

    @staticmethod
    def _agent_from_row(row: aiosqlite.Row) -> AgentRecord:
        return AgentRecord(
            id=row["id"],
            solana_address=row["solana_address"],
            total_stake=int(row["total_stake"]),
            custodian_balance=int(row["custodian_balance"]),
        )

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        row = await self._fetchone(
            "SELECT id, solana_address, total_stake, custodian_balance FROM agents WHERE id = ?",
            (agent_id,),
        )
        return None if row is None else self._agent_from_row(row)

    async def get_agent_by_address(self, solana_address: str) -> AgentRecord | None:
        row = await self._fetchone(
            "SELECT id, solana_address, total_stake, custodian_balance "
            "FROM agents WHERE solana_address = ?",
            (solana_address,),
        )
        return None if row is None else self._agent_from_row(row)

    # ──────────────────────────────────────────────
    # Pools
    # ──────────────────────────────────────────────

    async def get_pool(self, pool_address: str) -> PoolRecord | None:
        row = await self._fetchone("SELECT * FROM pools WHERE pool_address = ?", (pool_address,))
        if row is None:
            return None
        return PoolRecord(
            pool_address=row["pool_address"],
            post_id=row["post_id"],
            belief_id=row["belief_id"],
            deployer=row["deployer"],
            s_long_supply=_int(row["s_long_supply"]),
            s_short_supply=_int(row["s_short_supply"]),
            r_long=_dec(row["r_long"]),
            r_short=_dec(row["r_short"]),
            vault_balance=_dec(row["vault_balance"]),
            sqrt_price_long_x96=row["sqrt_price_long_x96"],
            sqrt_price_short_x96=row["sqrt_price_short_x96"],
            price_long=_dec(row["price_long"]),
            price_short=_dec(row["price_short"]),
            current_epoch=row["current_epoch"],
            last_settlement_epoch=row["last_settlement_epoch"],
            last_settlement_tx=row["last_settlement_tx"],
            f=row["f"],
            beta_num=row["beta_num"],
            beta_den=row["beta_den"],
            total_volume=int(row["total_volume"]),
            deployment_tx_signature=row["deployment_tx_signature"],
            last_synced_at=row["last_synced_at"],
        )

    async def upsert_deployed_pool(self, pool: PoolRecord) -> bool:
        """Insert a deployed pool or fill the deployment fields of an existing row.

        State already projected by later events is kept (COALESCE), so a
        replayed deployment never rewinds supplies or reserves.
        """
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM pools WHERE pool_address = ?", (pool.pool_address,)
            )
            existed = await cursor.fetchone() is not None
            await conn.execute(
                "INSERT INTO pools "
                "(pool_address, post_id, belief_id, deployer, s_long_supply, s_short_supply, "
                "r_long, r_short, vault_balance, current_epoch, deployment_tx_signature, "
                "last_synced_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(pool_address) DO UPDATE SET "
                "post_id = COALESCE(pools.post_id, excluded.post_id), "
                "belief_id = COALESCE(pools.belief_id, excluded.belief_id), "
                "deployer = excluded.deployer, "
                "s_long_supply = COALESCE(pools.s_long_supply, excluded.s_long_supply), "
                "s_short_supply = COALESCE(pools.s_short_supply, excluded.s_short_supply), "
                "r_long = COALESCE(pools.r_long, excluded.r_long), "
                "r_short = COALESCE(pools.r_short, excluded.r_short), "
                "vault_balance = COALESCE(pools.vault_balance, excluded.vault_balance), "
                "current_epoch = COALESCE(pools.current_epoch, excluded.current_epoch), "
                "deployment_tx_signature = excluded.deployment_tx_signature, "
                "last_synced_at = excluded.last_synced_at",
                (
                    pool.pool_address,
                    pool.post_id,
                    pool.belief_id,
                    pool.deployer,
                    _text(pool.s_long_supply),
                    _text(pool.s_short_supply),
                    _text(pool.r_long),
                    _text(pool.r_short),
                    _text(pool.vault_balance),
                    pool.current_epoch,
                    pool.deployment_tx_signature,
                    _now(),
                ),
            )
        return not existed

    async def update_pool_snapshot(self, pool_address: str, snapshot: PoolSnapshot) -> bool:
        assignments: list[str] = []
        params: list[Any] = []

        for name in _SNAPSHOT_SET_FIELDS:
            value = getattr(snapshot, name)
            if value is not None:
                assignments.append(f"{name} = ?")
                params.append(_text(value))
        for name in _SNAPSHOT_ONCE_FIELDS:
            value = getattr(snapshot, name)
            if value is not None:
                assignments.append(f"{name} = COALESCE({name}, ?)")
                params.append(value)
        if snapshot.current_epoch is not None:
            assignments.append("current_epoch = MAX(COALESCE(current_epoch, 0), ?)")
            params.append(snapshot.current_epoch)

        assignments.append("last_synced_at = ?")
        params.append(_now())
        params.append(pool_address)

        async with self._database.write() as conn:
            cursor = await conn.execute(
                f"UPDATE pools SET {', '.join(assignments)} WHERE pool_address = ?",
                params,
            )
            return cursor.rowcount > 0

    async def advance_pool_epoch(self, pool_address: str, epoch: int, tx_signature: str) -> int:
        async with self._database.write() as conn:
            await conn.execute(
                "UPDATE pools SET "
                "current_epoch = MAX(COALESCE(current_epoch, 0), ?), "
                "last_settlement_tx = CASE WHEN ? >= COALESCE(last_settlement_epoch, -1) "
                "THEN ? ELSE last_settlement_tx END, "
                "last_settlement_epoch = MAX(COALESCE(last_settlement_epoch, -1), ?) "
                "WHERE pool_address = ?",
                (epoch, epoch, tx_signature, epoch, pool_address),
            )
            cursor = await conn.execute(
                "SELECT current_epoch FROM pools WHERE pool_address = ?", (pool_address,)
            )
            row = await cursor.fetchone()
        return epoch if row is None else int(row["current_epoch"])

    async def refresh_pool_volume(self, pool_address: str) -> int:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "SELECT usdc_amount FROM trades WHERE pool_address = ?", (pool_address,)
            )
            total = sum(int(row["usdc_amount"]) for row in await cursor.fetchall())
            await conn.execute(
                "UPDATE pools SET total_volume = ? WHERE pool_address = ?",
                (str(total), pool_address),
            )
        return total

    async def list_unsynced_pools(self, limit: int) -> list[str]:
        rows = await self._fetchall(
            "SELECT pool_address FROM pools WHERE sqrt_price_long_x96 IS NULL "
            "ORDER BY pool_address LIMIT ?",
            (limit,),
        )
        return [row["pool_address"] for row in rows]

    # ──────────────────────────────────────────────
    # Trades
    # ──────────────────────────────────────────────

    @staticmethod
    def _trade_from_row(row: aiosqlite.Row) -> TradeRecord:
        return TradeRecord(
            tx_signature=row["tx_signature"],
            pool_address=row["pool_address"],
            post_id=row["post_id"],
            user_id=row["user_id"],
            agent_id=row["agent_id"],
            wallet_address=row["wallet_address"],
            side=TokenSide(row["side"]),
            trade_type=TradeType(row["trade_type"]),
            token_amount=int(row["token_amount"]),
            usdc_amount=int(row["usdc_amount"]),
            skim_amount=int(row["skim_amount"]),
            s_long_before=_int(row["s_long_before"]),
            s_short_before=_int(row["s_short_before"]),
            s_long_after=_int(row["s_long_after"]),
            s_short_after=_int(row["s_short_after"]),
            r_long_after=_dec(row["r_long_after"]),
            r_short_after=_dec(row["r_short_after"]),
            sqrt_price_long_x96=row["sqrt_price_long_x96"],
            sqrt_price_short_x96=row["sqrt_price_short_x96"],
            price_long=_dec(row["price_long"]),
            price_short=_dec(row["price_short"]),
            recorded_by=RecordedBy(row["recorded_by"]),
            confirmed=bool(row["confirmed"]),
            indexer_corrected=bool(row["indexer_corrected"]),
            server_token_amount=_int(row["server_token_amount"]),
            server_usdc_amount=_int(row["server_usdc_amount"]),
            stake_applied=bool(row["stake_applied"]),
            block_time=row["block_time"],
            slot=row["slot"],
        )

    async def get_trade(self, tx_signature: str) -> TradeRecord | None:
        row = await self._fetchone("SELECT * FROM trades WHERE tx_signature = ?", (tx_signature,))
        return None if row is None else self._trade_from_row(row)

    async def insert_trade(self, trade: TradeRecord) -> bool:
        now = _now()
        values = (
            trade.tx_signature,
            trade.pool_address,
            trade.post_id,
            trade.user_id,
            trade.agent_id,
            trade.wallet_address,
            trade.side.value,
            trade.trade_type.value,
            str(trade.token_amount),
            str(trade.usdc_amount),
            str(trade.skim_amount),
            _text(trade.s_long_before),
            _text(trade.s_short_before),
            _text(trade.s_long_after),
            _text(trade.s_short_after),
            _text(trade.r_long_after),
            _text(trade.r_short_after),
            trade.sqrt_price_long_x96,
            trade.sqrt_price_short_x96,
            _text(trade.price_long),
            _text(trade.price_short),
            trade.recorded_by.value,
            int(trade.confirmed),
            int(trade.indexer_corrected),
            _text(trade.server_token_amount),
            _text(trade.server_usdc_amount),
            int(trade.stake_applied),
            trade.block_time,
            trade.slot,
            now if trade.confirmed else None,
            now,
        )
        placeholders = ", ".join("?" for _ in _TRADE_COLUMNS)
        async with self._database.write() as conn:
            cursor = await conn.execute(
                f"INSERT INTO trades ({', '.join(_TRADE_COLUMNS)}) VALUES ({placeholders}) "
                "ON CONFLICT(tx_signature) DO NOTHING",
                values,
            )
            inserted = cursor.rowcount > 0

        logger.debug("trade_insert", signature=trade.tx_signature, inserted=inserted)
        return inserted

    async def confirm_trade(self, tx_signature: str, block_time: int | None, slot: int | None) -> None:
        now = _now()
        async with self._database.write() as conn:
            await conn.execute(
                "UPDATE trades SET confirmed = 1, "
                "block_time = COALESCE(?, block_time), slot = COALESCE(?, slot), "
                "confirmed_at = COALESCE(confirmed_at, ?), indexed_at = ? "
                "WHERE tx_signature = ?",
                (block_time, slot, now, now, tx_signature),
            )

    async def correct_trade(
        self,
        tx_signature: str,
        token_amount: int,
        usdc_amount: int,
        block_time: int | None,
        slot: int | None,
        balance: BalanceUpdate | None = None,
    ) -> bool:
        now = _now()
        async with self._database.write() as conn:
            # Right-hand sides read pre-update values, so the audit columns
            # capture the optimistic amounts.
            cursor = await conn.execute(
                "UPDATE trades SET "
                "server_token_amount = token_amount, server_usdc_amount = usdc_amount, "
                "token_amount = ?, usdc_amount = ?, "
                "indexer_corrected = 1, confirmed = 1, "
                "block_time = COALESCE(?, block_time), slot = COALESCE(?, slot), "
                "confirmed_at = ?, indexed_at = ? "
                "WHERE tx_signature = ? AND indexer_corrected = 0",
                (str(token_amount), str(usdc_amount), block_time, slot, now, now, tx_signature),
            )
            if cursor.rowcount == 0:
                return False
            if balance is not None:
                await self._modify_balance(conn, balance)
                await self._recompute_total_stake(conn, balance.agent_id)
        return True

    # ──────────────────────────────────────────────
    # Balances, stake and beliefs
    # ──────────────────────────────────────────────

    @staticmethod
    def _balance_from_row(row: aiosqlite.Row) -> PoolBalance:
        return PoolBalance(
            agent_id=row["agent_id"],
            pool_address=row["pool_address"],
            side=TokenSide(row["side"]),
            token_balance=int(row["token_balance"]),
            belief_lock=int(row["belief_lock"]),
        )

    async def get_pool_balance(
        self, agent_id: str, pool_address: str, side: TokenSide
    ) -> PoolBalance | None:
        row = await self._fetchone(
            "SELECT * FROM pool_balances WHERE agent_id = ? AND pool_address = ? AND side = ?",
            (agent_id, pool_address, side.value),
        )
        return None if row is None else self._balance_from_row(row)

    async def list_pool_balances(self, agent_id: str) -> list[PoolBalance]:
        rows = await self._fetchall(
            "SELECT * FROM pool_balances WHERE agent_id = ? ORDER BY pool_address, side",
            (agent_id,),
        )
        return [self._balance_from_row(row) for row in rows]

    async def apply_trade_stake(self, tx_signature: str, balance: BalanceUpdate) -> PoolBalance | None:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "UPDATE trades SET stake_applied = 1 "
                "WHERE tx_signature = ? AND stake_applied = 0 AND recorded_by = 'indexer'",
                (tx_signature,),
            )
            if cursor.rowcount == 0:
                return None
            updated = await self._modify_balance(conn, balance)
            await self._recompute_total_stake(conn, balance.agent_id)
        return updated

    async def recompute_total_stake(self, agent_id: str) -> int:
        async with self._database.write() as conn:
            return await self._recompute_total_stake(conn, agent_id)

    async def _modify_balance(self, conn: aiosqlite.Connection, balance: BalanceUpdate) -> PoolBalance:
        cursor = await conn.execute(
            "SELECT * FROM pool_balances "
            "WHERE agent_id = ? AND pool_address = ? AND side = ?",
            (balance.agent_id, balance.pool_address, balance.side.value),
        )
        row = await cursor.fetchone()
        current = (
            self._balance_from_row(row)
            if row is not None
            else PoolBalance(agent_id=balance.agent_id, pool_address=balance.pool_address, side=balance.side)
        )
        updated = balance.mutate(current)
        await conn.execute(
            "INSERT INTO pool_balances "
            "(agent_id, pool_address, side, token_balance, belief_lock) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(agent_id, pool_address, side) DO UPDATE SET "
            "token_balance = excluded.token_balance, belief_lock = excluded.belief_lock",
            (
                balance.agent_id,
                balance.pool_address,
                balance.side.value,
                str(updated.token_balance),
                str(updated.belief_lock),
            ),
        )
        return updated

    @staticmethod
    async def _recompute_total_stake(conn: aiosqlite.Connection, agent_id: str) -> int:
        cursor = await conn.execute(
            "SELECT belief_lock FROM pool_balances WHERE agent_id = ?", (agent_id,)
        )
        total = sum(int(row["belief_lock"]) for row in await cursor.fetchall())
        cursor = await conn.execute(
            "UPDATE agents SET total_stake = ? WHERE id = ?", (str(total), agent_id)
        )
        if cursor.rowcount == 0:
            raise StakeUpdateError(f"Agent {agent_id} not found")
        return total

    async def ensure_belief_placeholder(
        self,
        agent_id: str,
        belief_id: str,
        epoch: int,
        belief: Decimal,
        meta_prediction: Decimal,
    ) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "INSERT INTO belief_submissions "
                "(agent_id, belief_id, epoch, belief, meta_prediction, is_placeholder) "
                "VALUES (?, ?, ?, ?, ?, 1) "
                "ON CONFLICT(agent_id, belief_id) DO NOTHING",
                (agent_id, belief_id, epoch, str(belief), str(meta_prediction)),
            )
            return cursor.rowcount > 0

    # ──────────────────────────────────────────────
    # Custodian funding flows
    # ──────────────────────────────────────────────

    @staticmethod
    def _flow_from_row(table: FundingTable, row: aiosqlite.Row) -> FundingFlowRecord:
        is_deposit = table is FundingTable.DEPOSITS
        return FundingFlowRecord(
            tx_signature=row["tx_signature"],
            address=row[_ADDRESS_COLUMN[table]],
            amount_usdc=Decimal(row["amount_usdc"]),
            recorded_by=RecordedBy(row["recorded_by"]),
            deposit_type=DepositType(row["deposit_type"]) if is_deposit else None,
            authority_address=None if is_deposit else row["authority_address"],
            agent_id=row["agent_id"],
            confirmed=bool(row["confirmed"]),
            indexer_corrected=bool(row["indexer_corrected"]),
            server_amount_usdc=_dec(row["server_amount_usdc"]),
            agent_credited=bool(row["agent_credited"]),
            slot=row["slot"],
            block_time=row["block_time"],
        )

    async def get_funding_flow(
        self, table: FundingTable, tx_signature: str
    ) -> FundingFlowRecord | None:
        row = await self._fetchone(
            f"SELECT * FROM {table.value} WHERE tx_signature = ?", (tx_signature,)
        )
        return None if row is None else self._flow_from_row(table, row)

    async def insert_funding_flow(self, table: FundingTable, record: FundingFlowRecord) -> bool:
        common = (
            record.tx_signature,
            record.address,
            record.agent_id,
            str(record.amount_usdc),
            record.recorded_by.value,
            int(record.confirmed),
            int(record.agent_credited),
            record.slot,
            record.block_time,
            _now(),
        )
        async with self._database.write() as conn:
            if table is FundingTable.DEPOSITS:
                deposit_type = record.deposit_type or DepositType.DIRECT
                cursor = await conn.execute(
                    "INSERT INTO custodian_deposits "
                    "(tx_signature, depositor_address, agent_id, amount_usdc, recorded_by, "
                    "confirmed, agent_credited, slot, block_time, indexed_at, deposit_type) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(tx_signature) DO NOTHING",
                    (*common, deposit_type.value),
                )
            else:
                cursor = await conn.execute(
                    "INSERT INTO custodian_withdrawals "
                    "(tx_signature, recipient_address, agent_id, amount_usdc, recorded_by, "
                    "confirmed, agent_credited, slot, block_time, indexed_at, authority_address) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(tx_signature) DO NOTHING",
                    (*common, record.authority_address),
                )
            return cursor.rowcount > 0

    async def confirm_funding_flow(
        self,
        table: FundingTable,
        tx_signature: str,
        agent_id: str | None,
        slot: int | None,
        block_time: int | None,
    ) -> None:
        async with self._database.write() as conn:
            await conn.execute(
                f"UPDATE {table.value} SET confirmed = 1, "
                "agent_id = COALESCE(agent_id, ?), "
                "slot = COALESCE(?, slot), block_time = COALESCE(?, block_time), "
                "indexed_at = ? WHERE tx_signature = ?",
                (agent_id, slot, block_time, _now(), tx_signature),
            )

    async def correct_funding_flow(
        self,
        table: FundingTable,
        tx_signature: str,
        amount_usdc: Decimal,
        delta_atomic: int,
        slot: int | None,
        block_time: int | None,
    ) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                f"UPDATE {table.value} SET "
                "server_amount_usdc = amount_usdc, amount_usdc = ?, "
                "indexer_corrected = 1, confirmed = 1, "
                "slot = COALESCE(?, slot), block_time = COALESCE(?, block_time), "
                "indexed_at = ? "
                "WHERE tx_signature = ? AND indexer_corrected = 0",
                (str(amount_usdc), slot, block_time, _now(), tx_signature),
            )
            if cursor.rowcount == 0:
                return False

            cursor = await conn.execute(
                f"SELECT agent_id, agent_credited FROM {table.value} WHERE tx_signature = ?",
                (tx_signature,),
            )
            row = await cursor.fetchone()
            if row is not None and row["agent_credited"] and row["agent_id"] and delta_atomic:
                await self._adjust_custodian_balance(conn, row["agent_id"], delta_atomic)
        return True

    async def apply_custodian_adjustment(
        self,
        table: FundingTable,
        tx_signature: str,
        agent_id: str,
        delta_atomic: int,
    ) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                f"UPDATE {table.value} SET agent_credited = 1, "
                "agent_id = COALESCE(agent_id, ?) "
                "WHERE tx_signature = ? AND agent_credited = 0",
                (agent_id, tx_signature),
            )
            if cursor.rowcount == 0:
                return False
            await self._adjust_custodian_balance(conn, agent_id, delta_atomic)
        return True

    @staticmethod
    async def _adjust_custodian_balance(
        conn: aiosqlite.Connection, agent_id: str, delta_atomic: int
    ) -> int:
        cursor = await conn.execute(
            "SELECT custodian_balance FROM agents WHERE id = ?", (agent_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise StakeUpdateError(f"Agent {agent_id} not found")
        balance = int(row["custodian_balance"]) + delta_atomic
        await conn.execute(
            "UPDATE agents SET custodian_balance = ? WHERE id = ?", (str(balance), agent_id)
        )
        return balance

    # ──────────────────────────────────────────────
    # Settlements and relevance
    # ──────────────────────────────────────────────

    async def insert_settlement(self, settlement: SettlementRecord) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "INSERT INTO settlements "
                "(pool_address, epoch, belief_id, bd_score, market_prediction, f_long, f_short, "
                "r_long_before, r_short_before, r_long_after, r_short_after, "
                "s_scale_long_before, s_scale_long_after, s_scale_short_before, "
                "s_scale_short_after, tx_signature, settled_at, slot) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(pool_address, epoch) DO NOTHING",
                (
                    settlement.pool_address,
                    settlement.epoch,
                    settlement.belief_id,
                    str(settlement.bd_score),
                    str(settlement.market_prediction),
                    str(settlement.f_long),
                    str(settlement.f_short),
                    str(settlement.r_long_before),
                    str(settlement.r_short_before),
                    str(settlement.r_long_after),
                    str(settlement.r_short_after),
                    settlement.s_scale_long_before,
                    settlement.s_scale_long_after,
                    settlement.s_scale_short_before,
                    settlement.s_scale_short_after,
                    settlement.tx_signature,
                    settlement.settled_at,
                    settlement.slot,
                ),
            )
            return cursor.rowcount > 0

    @staticmethod
    def _settlement_from_row(row: aiosqlite.Row) -> SettlementRecord:
        return SettlementRecord(
            pool_address=row["pool_address"],
            epoch=row["epoch"],
            bd_score=Decimal(row["bd_score"]),
            market_prediction=Decimal(row["market_prediction"]),
            f_long=Decimal(row["f_long"]),
            f_short=Decimal(row["f_short"]),
            r_long_before=Decimal(row["r_long_before"]),
            r_short_before=Decimal(row["r_short_before"]),
            r_long_after=Decimal(row["r_long_after"]),
            r_short_after=Decimal(row["r_short_after"]),
            s_scale_long_before=row["s_scale_long_before"],
            s_scale_long_after=row["s_scale_long_after"],
            s_scale_short_before=row["s_scale_short_before"],
            s_scale_short_after=row["s_scale_short_after"],
            tx_signature=row["tx_signature"],
            belief_id=row["belief_id"],
            settled_at=row["settled_at"],
            slot=row["slot"],
            trigger_dispatched=bool(row["trigger_dispatched"]),
        )

    async def get_settlement(self, pool_address: str, epoch: int) -> SettlementRecord | None:
        row = await self._fetchone(
            "SELECT * FROM settlements WHERE pool_address = ? AND epoch = ?",
            (pool_address, epoch),
        )
        return None if row is None else self._settlement_from_row(row)

    async def mark_settlement_dispatched(self, pool_address: str, epoch: int) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "UPDATE settlements SET trigger_dispatched = 1 "
                "WHERE pool_address = ? AND epoch = ? AND trigger_dispatched = 0",
                (pool_address, epoch),
            )
            return cursor.rowcount > 0

    async def list_settlements(self, pool_address: str) -> list[SettlementRecord]:
        rows = await self._fetchall(
            "SELECT * FROM settlements WHERE pool_address = ? ORDER BY epoch ASC",
            (pool_address,),
        )
        return [self._settlement_from_row(row) for row in rows]

    async def upsert_implied_relevance(self, record: ImpliedRelevanceRecord) -> bool:
        async with self._database.write() as conn:
            cursor = await conn.execute(
                "INSERT INTO implied_relevance_history "
                "(event_reference, pool_address, post_id, belief_id, implied_relevance, "
                "reserve_long, reserve_short, event_type, recorded_by, confirmed, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(event_reference) DO UPDATE SET "
                "pool_address = excluded.pool_address, post_id = excluded.post_id, "
                "belief_id = excluded.belief_id, "
                "implied_relevance = excluded.implied_relevance, "
                "reserve_long = excluded.reserve_long, reserve_short = excluded.reserve_short, "
                "event_type = excluded.event_type, recorded_by = excluded.recorded_by, "
                "confirmed = excluded.confirmed, recorded_at = excluded.recorded_at "
                "WHERE implied_relevance_history.recorded_by = 'server' "
                "AND excluded.recorded_by = 'indexer'",
                (
                    record.event_reference,
                    record.pool_address,
                    record.post_id,
                    record.belief_id,
                    str(record.implied_relevance),
                    str(record.reserve_long),
                    str(record.reserve_short),
                    record.event_type.value,
                    record.recorded_by.value,
                    int(record.confirmed),
                    record.recorded_at or _now(),
                ),
            )
            return cursor.rowcount > 0

    async def list_implied_relevance(
        self, pool_address: str, limit: int = 100
    ) -> list[ImpliedRelevanceRecord]:
        rows = await self._fetchall(
            "SELECT * FROM implied_relevance_history WHERE pool_address = ? "
            "ORDER BY recorded_at DESC LIMIT ?",
            (pool_address, limit),
        )
        return [
            ImpliedRelevanceRecord(
                event_reference=row["event_reference"],
                pool_address=row["pool_address"],
                post_id=row["post_id"],
                belief_id=row["belief_id"],
                implied_relevance=Decimal(row["implied_relevance"]),
                reserve_long=Decimal(row["reserve_long"]),
                reserve_short=Decimal(row["reserve_short"]),
                event_type=RelevanceEventType(row["event_type"]),
                recorded_by=RecordedBy(row["recorded_by"]),
                confirmed=bool(row["confirmed"]),
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]
