"""Anchor event decoding for program log lines and webhook payloads.

An emitted event appears in the transaction log as
``Program data: <base64>``. The payload starts with an 8-byte discriminator,
``sha256("event:<Name>")[:8]``, followed by the Borsh-encoded struct. Only the
six events the reconciliation engine consumes are decoded; every other line is
skipped without error, since most log lines are not domain events.

Everything here is pure: no I/O, no logging side effects beyond debug output.
"""

import base64
import binascii
import hashlib
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from indexer.decoding.borsh import BorshReader
from indexer.exceptions import EventDecodeError
from indexer.logging import get_logger
from indexer.models import (
    DecodedTransaction,
    DepositEvent,
    EventContext,
    LedgerEvent,
    LiquidityAddedEvent,
    MarketDeployedEvent,
    SettlementEvent,
    TokenSide,
    TradeEvent,
    TradeType,
    WithdrawEvent,
)

logger = get_logger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "

_INVOKE_RE = re.compile(r"^Program (\S+) invoke \[\d+\]$")
_EXIT_RE = re.compile(r"^Program (\S+) (success|failed)")

_SIDES = {0: TokenSide.LONG, 1: TokenSide.SHORT}
_TRADE_TYPES = {0: TradeType.BUY, 1: TradeType.SELL}


def event_discriminator(name: str) -> bytes:
    """Anchor event discriminator for the given struct name."""
    return hashlib.sha256(f"event:{name}".encode()).digest()[:8]


def _read_side(reader: BorshReader) -> TokenSide:
    raw = reader.u8()
    try:
        return _SIDES[raw]
    except KeyError:
        raise EventDecodeError(f"Unknown token side variant: {raw}") from None


def _read_trade_type(reader: BorshReader) -> TradeType:
    raw = reader.u8()
    try:
        return _TRADE_TYPES[raw]
    except KeyError:
        raise EventDecodeError(f"Unknown trade type variant: {raw}") from None


def _decode_trade(r: BorshReader) -> TradeEvent:
    return TradeEvent(
        pool=r.pubkey(),
        trader=r.pubkey(),
        side=_read_side(r),
        trade_type=_read_trade_type(r),
        usdc_amount=r.u64(),
        usdc_to_trade=r.u64(),
        usdc_to_stake=r.u64(),
        tokens_traded=r.u64(),
        s_long_before=r.u64(),
        s_short_before=r.u64(),
        sqrt_price_long_x96_before=r.u128(),
        sqrt_price_short_x96_before=r.u128(),
        s_long_after=r.u64(),
        s_short_after=r.u64(),
        sqrt_price_long_x96_after=r.u128(),
        sqrt_price_short_x96_after=r.u128(),
        r_long_after=r.u64(),
        r_short_after=r.u64(),
        vault_balance_after=r.u64(),
        timestamp=r.i64(),
    )


def _decode_settlement(r: BorshReader) -> SettlementEvent:
    return SettlementEvent(
        pool=r.pubkey(),
        settler=r.pubkey(),
        epoch=r.u64(),
        bd_score=r.u32(),
        market_prediction_q=r.u128(),
        f_long=r.u128(),
        f_short=r.u128(),
        r_long_before=r.u128(),
        r_short_before=r.u128(),
        r_long_after=r.u128(),
        r_short_after=r.u128(),
        s_scale_long_before=r.u128(),
        s_scale_long_after=r.u128(),
        s_scale_short_before=r.u128(),
        s_scale_short_after=r.u128(),
        timestamp=r.i64(),
    )


def _decode_market_deployed(r: BorshReader) -> MarketDeployedEvent:
    return MarketDeployedEvent(
        pool=r.pubkey(),
        deployer=r.pubkey(),
        initial_deposit=r.u64(),
        long_allocation=r.u64(),
        short_allocation=r.u64(),
        initial_q=r.u32(),
        long_tokens=r.u64(),
        short_tokens=r.u64(),
        timestamp=r.i64(),
    )


def _decode_deposit(r: BorshReader) -> DepositEvent:
    return DepositEvent(depositor=r.pubkey(), amount=r.u64(), timestamp=r.i64())


def _decode_withdraw(r: BorshReader) -> WithdrawEvent:
    return WithdrawEvent(
        recipient=r.pubkey(),
        amount=r.u64(),
        authority=r.pubkey(),
        timestamp=r.i64(),
    )


def _decode_liquidity_added(r: BorshReader) -> LiquidityAddedEvent:
    return LiquidityAddedEvent(
        pool=r.pubkey(),
        user=r.pubkey(),
        usdc_amount=r.u64(),
        long_tokens_out=r.u64(),
        short_tokens_out=r.u64(),
        new_r_long=r.u64(),
        new_r_short=r.u64(),
        new_s_long=r.u64(),
        new_s_short=r.u64(),
    )


EVENT_NAMES: dict[type, str] = {
    TradeEvent: "TradeEvent",
    SettlementEvent: "SettlementEvent",
    MarketDeployedEvent: "MarketDeployedEvent",
    DepositEvent: "DepositEvent",
    WithdrawEvent: "WithdrawEvent",
    LiquidityAddedEvent: "LiquidityAdded",
}

_DECODERS: dict[bytes, tuple[str, Callable[[BorshReader], LedgerEvent]]] = {
    event_discriminator(name): (name, decoder)
    for name, decoder in (
        ("TradeEvent", _decode_trade),
        ("SettlementEvent", _decode_settlement),
        ("MarketDeployedEvent", _decode_market_deployed),
        ("DepositEvent", _decode_deposit),
        ("WithdrawEvent", _decode_withdraw),
        ("LiquidityAdded", _decode_liquidity_added),
    )
}


def decode_event(data: bytes) -> LedgerEvent | None:
    """Decode one Anchor event payload.

    Returns None when the discriminator belongs to an event this engine does
    not consume. Raises EventDecodeError when a known event is truncated.
    """
    if len(data) < 8:
        raise EventDecodeError(f"Event payload too short: {len(data)} bytes")
    entry = _DECODERS.get(data[:8])
    if entry is None:
        return None
    _, decoder = entry
    return decoder(BorshReader(data, offset=8))


def decode_program_data(line: str) -> LedgerEvent | None:
    """Decode a single ``Program data:`` log line. Non-event lines yield None."""
    if not line.startswith(PROGRAM_DATA_PREFIX):
        return None
    try:
        payload = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):].strip(), validate=True)
        return decode_event(payload)
    except (binascii.Error, ValueError, EventDecodeError) as e:
        logger.debug("program_data_skipped", reason=str(e))
        return None


def parse_logs(lines: Iterable[str], program_id: str | None = None) -> list[LedgerEvent]:
    """Extract domain events from a transaction's log lines, in emission order.

    When ``program_id`` is given, data lines are only attributed to the
    program if it is the innermost executing program at that point, so a CPI
    into another Anchor program cannot inject look-alike events.
    """
    events: list[LedgerEvent] = []
    stack: list[str] = []

    for line in lines:
        if program_id is not None:
            invoke = _INVOKE_RE.match(line)
            if invoke:
                stack.append(invoke.group(1))
                continue
            exit_ = _EXIT_RE.match(line)
            if exit_:
                if stack and stack[-1] == exit_.group(1):
                    stack.pop()
                continue
            if not stack or stack[-1] != program_id:
                continue

        event = decode_program_data(line)
        if event is not None:
            events.append(event)

    return events


def _transaction_logs(tx: Mapping[str, Any]) -> list[str]:
    meta = tx.get("meta") or {}
    logs = meta.get("logMessages") or tx.get("logs") or []
    return [line for line in logs if isinstance(line, str)]


def parse_webhook_payload(
    body: Any, program_id: str | None = None
) -> list[DecodedTransaction]:
    """Decode a webhook body (one transaction object or a list of them).

    Transactions that have no signature or that failed on the ledger are
    skipped; a failed transaction's logs still contain data lines but none
    of its state changes were committed.
    """
    items = body if isinstance(body, list) else [body]
    decoded: list[DecodedTransaction] = []

    for tx in items:
        if not isinstance(tx, Mapping):
            continue
        signature = tx.get("signature")
        if not signature:
            signatures = (tx.get("transaction") or {}).get("signatures") or []
            signature = signatures[0] if signatures else None
        if not signature:
            logger.debug("webhook_transaction_without_signature")
            continue
        meta = tx.get("meta") or {}
        if meta.get("err") or tx.get("transactionError"):
            logger.debug("webhook_failed_transaction_skipped", signature=signature)
            continue

        context = EventContext(
            signature=signature,
            slot=tx.get("slot"),
            block_time=tx.get("blockTime") or tx.get("timestamp"),
        )
        events = parse_logs(_transaction_logs(tx), program_id)
        if events:
            decoded.append(DecodedTransaction(context=context, events=events))

    return decoded
