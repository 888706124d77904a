"""Log subscription transport -- streams program logs over a ledger websocket.

Uses the ``logsSubscribe`` RPC subscription filtered to transactions that
mention the program. Each notification is decoded and its events are handed
to the EventProcessor in emission order. A dropped connection is retried after
a fixed delay; anything more elaborate is left to the webhook path, which
redelivers on failure.

Not started on mainnet-beta, where the webhook is the delivery path.
"""

import asyncio
import json
from typing import Any

import websockets

from indexer.config import LedgerSettings
from indexer.decoding.events import parse_logs
from indexer.engine.processor import EventProcessor, ProcessingResult
from indexer.engine.projector import PoolStateProjector
from indexer.exceptions import LedgerReadError
from indexer.ledger.client import LedgerClient
from indexer.logging import get_logger
from indexer.models import DecodedTransaction, EventContext

logger = get_logger(__name__)


class LogSubscriber:
    """Subscribes to program logs and feeds decoded events to the engine.

    Args:
        settings: Ledger connection settings.
        processor: Reconciliation engine.
        projector: Used for the startup catch-up of unindexed pools.
        ledger: Direct ledger reader (block times).
    """

    def __init__(
        self,
        settings: LedgerSettings,
        processor: EventProcessor,
        projector: PoolStateProjector,
        ledger: LedgerClient,
    ) -> None:
        self._settings = settings
        self._processor = processor
        self._projector = projector
        self._ledger = ledger
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._subscription_id: int | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def subscription_id(self) -> int | None:
        return self._subscription_id

    def subscribe_request(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self._settings.program_id]},
                {"commitment": self._settings.commitment},
            ],
        }

    async def start(self) -> bool:
        """Catch up unindexed pools, then begin streaming in the background.

        Returns False without starting on mainnet-beta or when no program id
        is configured.
        """
        if self._running:
            logger.warning("log_subscriber_already_running")
            return True
        if self._settings.network == "mainnet-beta":
            logger.info("log_subscriber_disabled_on_mainnet")
            return False
        if not self._settings.program_id:
            logger.warning("log_subscriber_missing_program_id")
            return False

        try:
            await self._projector.sync_unindexed_pools()
        except Exception:
            logger.warning("unindexed_pool_sync_failed", exc_info=True)

        self._running = True
        self._task = asyncio.create_task(self._stream_loop())
        logger.info(
            "log_subscriber_started",
            ws_url=self._settings.resolved_ws_url(),
            program_id=self._settings.program_id,
        )
        return True

    async def stop(self) -> None:
        """Stop streaming gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._subscription_id = None
        logger.info("log_subscriber_stopped")

    async def _stream_loop(self) -> None:
        """Connect, subscribe and consume notifications; reconnect on drop."""
        url = self._settings.resolved_ws_url()
        while self._running:
            try:
                async with websockets.connect(url, ping_interval=20, ping_timeout=10) as ws:
                    await ws.send(json.dumps(self.subscribe_request()))
                    async for raw in ws:
                        await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "log_subscription_disconnected",
                    reconnect_delay=self._settings.reconnect_delay,
                    exc_info=True,
                )
            self._subscription_id = None
            if self._running:
                await asyncio.sleep(self._settings.reconnect_delay)

    async def handle_message(self, raw: str | bytes) -> ProcessingResult | None:
        """Handle one websocket frame. Returns the processing result for notifications."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("log_subscription_invalid_frame")
            return None

        if message.get("method") != "logsNotification":
            if "result" in message and message.get("id") == 1:
                self._subscription_id = message["result"]
                logger.info("log_subscription_confirmed", subscription_id=self._subscription_id)
            elif "error" in message:
                logger.error("log_subscription_error", error=message["error"])
            return None

        result = message.get("params", {}).get("result", {})
        value = result.get("value") or {}
        signature = value.get("signature")
        slot = (result.get("context") or {}).get("slot")

        if not signature or value.get("err") is not None:
            logger.debug("failed_transaction_skipped", signature=signature)
            return None

        events = parse_logs(value.get("logs") or [], self._settings.program_id)
        if not events:
            return None

        block_time: int | None = None
        try:
            block_time = await self._ledger.get_block_time(signature)
        except LedgerReadError:
            logger.warning("block_time_unavailable", signature=signature)

        outcome = await self._processor.process_transaction(
            DecodedTransaction(
                context=EventContext(signature=signature, slot=slot, block_time=block_time),
                events=events,
            )
        )
        logger.info(
            "log_notification_processed",
            signature=signature,
            processed=outcome.processed,
            failed=outcome.failed,
        )
        return outcome
