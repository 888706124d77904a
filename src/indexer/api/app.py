"""FastAPI application factory for the webhook receiver and read-side routes."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from indexer.api.routes import read, webhook


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Route handlers read their collaborators from app.state: ``processor``,
    ``repository``, ``stake_ledger`` and ``settings``.

    Returns:
        Configured FastAPI application with webhook and read routers.
    """
    app = FastAPI(
        title="Pool Indexer",
        lifespan=lifespan,
    )

    app.include_router(webhook.router, prefix="/webhooks")
    app.include_router(read.router, prefix="/api")

    return app
