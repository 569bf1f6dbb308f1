"""FastAPI application factory for the StockLoyal order lifecycle service.

Run with: uvicorn stockloyal.main:app --reload
"""

from __future__ import annotations

import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app as make_metrics_app
from sqlalchemy import text

from stockloyal.api.batches import router as batches_router
from stockloyal.api.journal import router as journal_router
from stockloyal.api.orders import router as orders_router
from stockloyal.api.sweep import router as sweep_router
from stockloyal.common.config import get_settings
from stockloyal.common.exceptions import ConflictError, FetchError, NotFoundError, StockLoyalError
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import set_app_info
from stockloyal.common.middleware import (
    PrometheusMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
    request_id_var,
)

logger = get_logger("SYSTEM")

VERSION = "0.1.0"


def _status_for(exc: StockLoyalError) -> int:
    """Most specific match wins; broker failures are upstream (502)."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, FetchError):
        return 502
    return 400


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="StockLoyal Orders",
        version=VERSION,
        description="Order lifecycle core: scheduling, batch preparation, sweep, and funding",
    )

    # Admin dashboard origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Last added = outermost = runs first on request
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ─── Exception Handlers ───

    @app.exception_handler(StockLoyalError)
    async def stockloyal_exception_handler(request: Request, exc: StockLoyalError) -> JSONResponse:
        """Structured JSON for every project exception."""
        status_code = _status_for(exc)
        log = logger.warning if status_code < 500 else logger.error
        log(
            f"{type(exc).__name__}: {exc}",
            extra={"data": {"path": str(request.url), "status": status_code}},
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": exc.message},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: log traceback, return 500."""
        rid = request_id_var.get("")
        logger.error(
            f"Unhandled {type(exc).__name__}: {exc}",
            extra={
                "data": {
                    "path": str(request.url),
                    "request_id": rid,
                    "traceback": traceback.format_exc(),
                }
            },
        )
        body: dict = {
            "error": "InternalServerError",
            "detail": "An unexpected error occurred",
        }
        if rid:
            body["request_id"] = rid
        return JSONResponse(status_code=500, content=body)

    # ─── Health / Readiness ───

    @app.get("/health")
    async def health_check() -> dict:
        """Liveness probe."""
        return {"status": "ok", "version": VERSION}

    @app.get("/ready")
    async def readiness_check() -> JSONResponse:
        """Readiness probe: checks DB and Redis connectivity."""
        checks: dict[str, str] = {}
        all_ok = True

        try:
            from stockloyal.common.database import _get_engine

            engine = _get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as exc:
            checks["database"] = f"error: {type(exc).__name__}"
            all_ok = False

        try:
            import redis.asyncio as aioredis

            r = aioredis.from_url(get_settings().redis_url)
            await r.ping()
            await r.aclose()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {type(exc).__name__}"
            all_ok = False

        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={
                "status": "ok" if all_ok else "degraded",
                "version": VERSION,
                "checks": checks,
            },
        )

    # ─── Prometheus Metrics ───

    app.mount("/metrics", make_metrics_app())
    set_app_info(version=VERSION, environment=get_settings().environment)

    # ─── Router Mounting ───

    app.include_router(orders_router, prefix="/api/orders", tags=["orders"])
    app.include_router(batches_router, prefix="/api/batches", tags=["batches"])
    app.include_router(sweep_router, prefix="/api/sweep", tags=["sweep"])
    app.include_router(journal_router, prefix="/api/journal", tags=["journal"])

    logger.info("App started", extra={"data": {"version": VERSION}})

    return app


app = create_app()
