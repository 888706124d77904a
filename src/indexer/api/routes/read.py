"""JSON read endpoints over the mirror: pool snapshots, relevance and settlement history, agent stake."""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from indexer.pricing import q64_to_decimal
from indexer.units import UnitNormalizer

router = APIRouter()


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal (and large int) values to strings for JSON."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int) and abs(obj) >= 2**53:
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


@router.get("/pools/{pool_address}")
async def get_pool(pool_address: str, request: Request) -> JSONResponse:
    """Current snapshot of one pool."""
    pool = await request.app.state.repository.get_pool(pool_address)
    if pool is None:
        return JSONResponse({"error": "Pool not found"}, status_code=404)
    return JSONResponse(_decimal_to_str(asdict(pool)))


@router.get("/pools/{pool_address}/relevance")
async def get_pool_relevance(pool_address: str, request: Request, limit: int = 100) -> JSONResponse:
    """Implied relevance history, newest first."""
    limit = max(1, min(limit, 1000))
    records = await request.app.state.repository.list_implied_relevance(pool_address, limit)
    return JSONResponse(
        {
            "pool_address": pool_address,
            "history": [_decimal_to_str(asdict(r)) for r in records],
        }
    )


@router.get("/pools/{pool_address}/settlements")
async def get_pool_settlements(pool_address: str, request: Request) -> JSONResponse:
    """Settlement history, oldest epoch first, with scale factors as decimals."""
    records = await request.app.state.repository.list_settlements(pool_address)
    settlements = []
    for record in records:
        row = asdict(record)
        for name in (
            "s_scale_long_before",
            "s_scale_long_after",
            "s_scale_short_before",
            "s_scale_short_after",
        ):
            row[name] = q64_to_decimal(row[name])
        settlements.append(_decimal_to_str(row))
    return JSONResponse({"pool_address": pool_address, "settlements": settlements})


@router.get("/agents/{address}/stake")
async def get_agent_stake(address: str, request: Request) -> JSONResponse:
    """Stake breakdown for an agent, in micro-USDC and display USDC."""
    repository = request.app.state.repository
    agent = await repository.get_agent_by_address(address)
    if agent is None:
        return JSONResponse({"error": "Agent not found"}, status_code=404)

    normalizer: UnitNormalizer = request.app.state.normalizer
    balances = await repository.list_pool_balances(agent.id)
    withdrawable = await request.app.state.stake_ledger.withdrawable(agent.id)
    return JSONResponse(
        {
            "agent_id": agent.id,
            "solana_address": agent.solana_address,
            "total_stake": agent.total_stake,
            "custodian_balance": agent.custodian_balance,
            "withdrawable": withdrawable,
            "total_stake_usdc": str(normalizer.to_display(agent.total_stake)),
            "withdrawable_usdc": str(normalizer.to_display(withdrawable)) if withdrawable >= 0 else "0",
            "positions": [
                {
                    "pool_address": b.pool_address,
                    "side": b.side.value,
                    "token_balance": b.token_balance,
                    "belief_lock": b.belief_lock,
                }
                for b in balances
            ],
        }
    )
