"""JSON API endpoints for supervisor health and per-cell progress."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from scraper.models import Exchange, GridCell, Timeframe

router = APIRouter()


def _jsonable(value: Any) -> Any:
    """Decimals become strings (no float rounding), datetimes ISO 8601, enums their value."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(_jsonable(k)): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@router.get("/health")
async def get_health(request: Request) -> JSONResponse:
    """Liveness: 200 while the supervisor loop runs, 503 otherwise."""
    supervisor = request.app.state.supervisor
    running = supervisor.is_running
    return JSONResponse(
        content={"status": "ok" if running else "stopped"},
        status_code=200 if running else 503,
    )


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Per-cell stream state, backfill progress and latch state."""
    supervisor = request.app.state.supervisor
    return JSONResponse(content=_jsonable(supervisor.status()))


@router.get("/cells/{exchange}/{asset}/{timeframe}")
async def get_cell(
    request: Request, exchange: str, asset: str, timeframe: str
) -> JSONResponse:
    """Stored row count and latest close for one series."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        return JSONResponse(content={"error": "store not available"}, status_code=503)

    try:
        cell = GridCell(Exchange(exchange.lower()), asset, Timeframe(timeframe.lower()))
    except ValueError:
        return JSONResponse(content={"error": "unknown cell"}, status_code=404)

    count = await store.count_candles(cell)
    carry = await store.get_last_carry(cell)
    return JSONResponse(
        content=_jsonable(
            {
                "cell": str(cell),
                "candles": count,
                "last_close_time": carry.close_time,
                "last_close": carry.close,
            }
        )
    )
