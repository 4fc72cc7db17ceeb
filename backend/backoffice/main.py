"""
backend/backoffice/main.py

Purpose:
    FastAPI application bootstrap: database, scheduled catalog sync, realtime
    gateway and market broadcast lifecycle, middleware, routers and error
    mapping.

Dependencies:
    - backoffice.database
    - backoffice.services.market_broadcast
    - backoffice.workers.catalog_sync
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    ServerSelectionTimeoutError,
)

import backoffice.database as _db
from backoffice.config import settings
from backoffice.database import close_db, connect_db
from backoffice.middleware.logging import StructuredLoggingMiddleware, setup_logging

logger = logging.getLogger("backoffice")
scheduler = AsyncIOScheduler()

_CATALOG_SYNC_JOB_ID = "catalog_sync"


def _register_scheduled_jobs() -> int:
    from backoffice.workers.catalog_sync import sync_catalog

    if not settings.CATALOG_SYNC_ENABLED:
        logger.info("Scheduled catalog sync disabled via config")
        return 0
    scheduler.add_job(
        sync_catalog,
        "interval",
        id=_CATALOG_SYNC_JOB_ID,
        minutes=settings.CATALOG_SYNC_INTERVAL_MINUTES,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Catalog sync scheduled every %d min", settings.CATALOG_SYNC_INTERVAL_MINUTES)
    return 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()
    from backoffice.providers.exchange import exchange_provider
    from backoffice.services.market_broadcast import broadcast_registry
    from backoffice.services.realtime_gateway import realtime_gateway

    _register_scheduled_jobs()
    scheduler.start()
    await realtime_gateway.start()
    await broadcast_registry.start()
    logger.info("Background scheduler started")

    yield

    await broadcast_registry.stop()
    await realtime_gateway.stop()
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await exchange_provider.aclose()
    await close_db()


app = FastAPI(
    title="Exchange Back-Office",
    description="Exchange catalog sync and live market odds",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Sync-Key"],
)
app.add_middleware(StructuredLoggingMiddleware)

from backoffice.routers.catalog import router as catalog_router
from backoffice.routers.ws import router as ws_router

app.include_router(catalog_router)
app.include_router(ws_router)


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- DB connection plus realtime/broadcast state."""
    from backoffice.services.market_broadcast import broadcast_registry
    from backoffice.services.realtime_gateway import realtime_gateway

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    gateway = realtime_gateway.stats()
    broadcast = broadcast_registry.stats()
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "realtime": {
            "active_connections": gateway["active_connections"],
            "rooms": len(gateway["rooms"]),
        },
        "broadcast": {
            "active_markets": broadcast["active_markets"],
            "retired_total": broadcast["retired_total"],
        },
    }
