"""Entry point for the pool indexer.

Wires all components together and starts the delivery transports. When the
webhook server is enabled (default), the log subscriber and the webhook
receiver share a single asyncio event loop via uvicorn's programmatic API
and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. MirrorDatabase + SqliteMirrorStore (relational mirror)
2. UnitNormalizer (atomic/display conversion)
3. SolanaRpcClient (direct ledger reads)
4. PoolStateProjector (pool snapshots)
5. StakeLedger (locks, total stake, custodian balance)
6. ImpliedRelevanceRecorder (relevance history)
7. EpochProcessingClient + SettlementTrigger (downstream epoch processing)
8. EventProcessor (reconciliation engine)
9. LogSubscriber (websocket transport, off on mainnet-beta)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from indexer.config import AppSettings
from indexer.engine.processor import EventProcessor
from indexer.engine.projector import PoolStateProjector
from indexer.engine.relevance import ImpliedRelevanceRecorder
from indexer.engine.settlement import EpochProcessingClient, SettlementTrigger
from indexer.engine.stake import StakeLedger
from indexer.ledger.rpc_client import SolanaRpcClient
from indexer.ledger.subscriber import LogSubscriber
from indexer.logging import get_logger, setup_logging
from indexer.store.database import MirrorDatabase
from indexer.store.sqlite_store import SqliteMirrorStore
from indexer.units import UnitNormalizer


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all indexer components from settings.

    Does NOT open the database or the RPC client; that happens in the
    lifespan (webhook mode) or run() (subscriber-only mode).
    """
    logger = get_logger("indexer.main")

    database = MirrorDatabase(settings.database.path)
    repository = SqliteMirrorStore(database)
    normalizer = UnitNormalizer(settings.reconcile.token_decimals)
    ledger = SolanaRpcClient(settings.ledger)

    projector = PoolStateProjector(
        repository,
        ledger,
        normalizer,
        unsynced_batch=settings.reconcile.unsynced_pool_batch,
    )
    stake_ledger = StakeLedger(repository, settings.reconcile.belief_lock_fraction)
    relevance_recorder = ImpliedRelevanceRecorder(repository)

    if settings.epoch.enabled and not settings.epoch.api_key.get_secret_value():
        logger.warning("epoch_processing_api_key_missing", url=settings.epoch.url)
    settlement_trigger = SettlementTrigger(
        EpochProcessingClient(settings.epoch),
        enabled=settings.epoch.enabled,
    )

    processor = EventProcessor(
        repository=repository,
        normalizer=normalizer,
        projector=projector,
        stake_ledger=stake_ledger,
        relevance_recorder=relevance_recorder,
        settlement_trigger=settlement_trigger,
        settings=settings.reconcile,
    )
    subscriber = LogSubscriber(settings.ledger, processor, projector, ledger)

    return {
        "database": database,
        "repository": repository,
        "normalizer": normalizer,
        "ledger": ledger,
        "projector": projector,
        "stake_ledger": stake_ledger,
        "relevance_recorder": relevance_recorder,
        "settlement_trigger": settlement_trigger,
        "processor": processor,
        "subscriber": subscriber,
    }


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to set ``stop_event``.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("indexer.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _open(components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["ledger"].connect()


async def _shutdown(components: dict[str, Any]) -> None:
    await components["subscriber"].stop()
    await components["settlement_trigger"].drain()
    await components["ledger"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage indexer component lifecycle within the FastAPI application.

    On startup: opens the mirror and RPC client, stores collaborators on
    app.state for the route handlers, starts the log subscriber.

    On shutdown: stops the subscriber, waits for in-flight epoch-processing
    calls, closes the RPC client and the mirror.
    """
    logger = get_logger("indexer.main")
    settings = app.state.settings
    components = app.state.components

    await _open(components)

    app.state.processor = components["processor"]
    app.state.repository = components["repository"]
    app.state.stake_ledger = components["stake_ledger"]
    app.state.normalizer = components["normalizer"]

    subscribed = await components["subscriber"].start()

    logger.info(
        "lifespan_started",
        network=settings.ledger.network,
        log_subscription=subscribed,
    )

    yield

    await _shutdown(components)
    logger.info("pool_indexer_stopped")


async def run() -> None:
    """Run the pool indexer.

    When the webhook server is enabled (WEBHOOK_ENABLED=true, the default),
    uvicorn serves the webhook and read routes and the lifespan starts the
    log subscriber alongside. Otherwise only the log subscriber runs, until
    SIGINT/SIGTERM.
    """
    settings = AppSettings()

    setup_logging(settings.log_level, network=settings.ledger.network, program_id=settings.ledger.program_id)
    logger = get_logger("indexer.main")

    components = _build_components(settings)

    if settings.webhook.enabled:
        from indexer.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_webhook",
            host=settings.webhook.host,
            port=settings.webhook.port,
            network=settings.ledger.network,
        )

        config = uvicorn.Config(
            app,
            host=settings.webhook.host,
            port=settings.webhook.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event)

    logger.info("starting_without_webhook", network=settings.ledger.network)

    try:
        await _open(components)
        if not await components["subscriber"].start():
            logger.error("no_delivery_transport", network=settings.ledger.network)
            return
        await stop_event.wait()
    finally:
        await _shutdown(components)
        logger.info("pool_indexer_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
