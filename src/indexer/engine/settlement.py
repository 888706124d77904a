"""Settlement trigger -- fire-and-forget call to the epoch-processing collaborator.

The collaborator is idempotent on (belief_id, epoch), so a lost call can be
re-issued by an out-of-band sweep. The trigger therefore never retries and
never lets a failure reach the code that recorded the settlement.
"""

import asyncio

import httpx

from indexer.config import EpochProcessingSettings
from indexer.logging import get_logger

logger = get_logger(__name__)


class EpochProcessingClient:
    """HTTP client for the epoch-processing collaborator.

    Args:
        settings: Endpoint, bearer key and timeout.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        settings: EpochProcessingSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    async def process_epoch(self, belief_id: str, current_epoch: int) -> dict:
        """POST one epoch-processing request and return the JSON response.

        Raises httpx.HTTPError on transport failure, timeout or non-2xx.
        """
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        async with httpx.AsyncClient(
            timeout=self._settings.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(
                self._settings.url,
                json={"belief_id": belief_id, "current_epoch": current_epoch},
                headers=headers,
            )
            response.raise_for_status()
            body = response.json() if response.content else {}
            return body if isinstance(body, dict) else {}


class SettlementTrigger:
    """Dispatches epoch processing at most once per (pool, epoch) per process.

    Each dispatch runs as an independent asyncio task with its own timeout
    and failure channel.
    """

    def __init__(self, client: EpochProcessingClient, enabled: bool = True) -> None:
        self._client = client
        self._enabled = enabled
        self._dispatched: set[tuple[str, int]] = set()
        self._tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    def dispatch(self, pool_address: str, belief_id: str, epoch: int) -> bool:
        """Schedule epoch processing. Returns False if skipped."""
        if not self._enabled:
            logger.debug("settlement_trigger_disabled", pool=pool_address, epoch=epoch)
            return False
        key = (pool_address, epoch)
        if key in self._dispatched:
            logger.debug("settlement_trigger_already_dispatched", pool=pool_address, epoch=epoch)
            return False
        self._dispatched.add(key)

        task = asyncio.create_task(self._run(pool_address, belief_id, epoch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "settlement_trigger_dispatched",
            pool=pool_address,
            belief_id=belief_id,
            epoch=epoch,
        )
        return True

    async def _run(self, pool_address: str, belief_id: str, epoch: int) -> None:
        try:
            result = await self._client.process_epoch(belief_id, epoch)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "epoch_processing_failed",
                pool=pool_address,
                belief_id=belief_id,
                epoch=epoch,
                exc_info=True,
            )
            return
        logger.info(
            "epoch_processing_completed",
            pool=pool_address,
            belief_id=belief_id,
            epoch=epoch,
            participant_count=result.get("participant_count"),
            redistribution_occurred=result.get("redistribution_occurred"),
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight dispatches to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
