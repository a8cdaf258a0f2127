"""FastAPI status application factory."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from scraper.status.routes import api


def create_status_app(
    supervisor: Any, store: Any = None, lifespan: Any = None
) -> FastAPI:
    """Create and configure the read-only status application.

    Args:
        supervisor: The running Supervisor; its status() feeds /api/status.
        store: Optional CandleStore used for per-cell row counts.
        lifespan: Optional async context manager for application lifespan events.

    Returns:
        Configured FastAPI application with the JSON API routes.
    """
    app = FastAPI(title="Candle Scraper Status", lifespan=lifespan)

    app.state.supervisor = supervisor
    app.state.store = store

    app.include_router(api.router, prefix="/api")

    return app
