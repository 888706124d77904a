"""JSON-RPC ledger client over httpx.

Reads content-pool accounts (getAccountInfo, base64 encoding) and
transaction block times (getTransaction). The pool account is an Anchor
account: an 8-byte account discriminator followed by the Borsh-encoded
struct. Only the leading fields the mirror needs are decoded; trailing
fields are ignored so additive program upgrades do not break the reader.
"""

import base64
import binascii
import itertools
from typing import Any

import httpx

from indexer.config import LedgerSettings
from indexer.decoding.borsh import BorshReader
from indexer.exceptions import EventDecodeError, LedgerReadError
from indexer.ledger.client import LedgerClient
from indexer.logging import get_logger
from indexer.models import PoolAccountState

logger = get_logger(__name__)

ACCOUNT_DISCRIMINATOR_LENGTH = 8

# content_id, creator, market_deployer, long_mint, short_mint, vault,
# stake_vault, factory
_LEADING_PUBKEYS = 8


def decode_pool_account(pool_address: str, data: bytes) -> PoolAccountState:
    """Decode a content-pool account body.

    Layout after the discriminator: 8 pubkeys, f/beta_num/beta_den (u16),
    sqrt_lambda long/short (u128), s_long/s_short/r_long/r_short/vault (u64),
    sqrt_price long/short (u128), s_scale long/short (u128), current_epoch (u64).
    """
    reader = BorshReader(data, offset=ACCOUNT_DISCRIMINATOR_LENGTH)
    try:
        reader.skip(32 * _LEADING_PUBKEYS)
        f = reader.u16()
        beta_num = reader.u16()
        beta_den = reader.u16()
        reader.skip(16 * 2)  # sqrt_lambda long/short
        s_long = reader.u64()
        s_short = reader.u64()
        r_long = reader.u64()
        r_short = reader.u64()
        vault_balance = reader.u64()
        sqrt_price_long = reader.u128()
        sqrt_price_short = reader.u128()
        s_scale_long = reader.u128()
        s_scale_short = reader.u128()
        current_epoch = reader.u64()
    except EventDecodeError as e:
        raise LedgerReadError(f"Pool account {pool_address} is truncated: {e}") from e

    return PoolAccountState(
        pool_address=pool_address,
        s_long=s_long,
        s_short=s_short,
        r_long=r_long,
        r_short=r_short,
        vault_balance=vault_balance,
        sqrt_price_long_x96=sqrt_price_long,
        sqrt_price_short_x96=sqrt_price_short,
        current_epoch=current_epoch,
        f=f,
        beta_num=beta_num,
        beta_den=beta_den,
        s_scale_long_q64=s_scale_long,
        s_scale_short_q64=s_scale_short,
    )


class SolanaRpcClient(LedgerClient):
    """LedgerClient backed by a Solana JSON-RPC endpoint.

    Args:
        settings: Ledger connection settings.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        settings: LedgerSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.request_timeout,
                transport=self._transport,
            )
            logger.info(
                "ledger_rpc_connected",
                rpc_url=self._settings.rpc_url,
                network=self._settings.network,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("ledger_rpc_closed")

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request and return its ``result``."""
        if self._client is None:
            await self.connect()
        assert self._client is not None

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self._settings.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerReadError(f"{method} failed: {e}") from e

        if body.get("error"):
            raise LedgerReadError(f"{method} returned error: {body['error']}")
        return body.get("result")

    async def fetch_pool_state(self, pool_address: str) -> PoolAccountState | None:
        result = await self._call(
            "getAccountInfo",
            [
                pool_address,
                {"encoding": "base64", "commitment": self._settings.commitment},
            ],
        )
        value = (result or {}).get("value")
        if value is None:
            logger.warning("pool_account_missing", pool=pool_address)
            return None

        owner = value.get("owner")
        if self._settings.program_id and owner != self._settings.program_id:
            raise LedgerReadError(
                f"Pool account {pool_address} is owned by {owner}, "
                f"expected {self._settings.program_id}"
            )

        try:
            encoded, _encoding = value["data"]
            data = base64.b64decode(encoded)
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise LedgerReadError(f"Pool account {pool_address} has invalid data") from e

        return decode_pool_account(pool_address, data)

    async def get_block_time(self, signature: str) -> int | None:
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self._settings.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        return result.get("blockTime")
