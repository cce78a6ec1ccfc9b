"""FastAPI application entry point for the multisig escrow engine.

Lifecycle:
    1. Startup: logging, database (tables in dev mode), Redis, runtime
       (ledger, resource market, key vault, notification publisher),
       background scheduler.
    2. Running: REST API at /api/v1/* plus the deposit, deadline,
       reconciliation and session-purge jobs.
    3. Shutdown: scheduler, database and Redis closed gracefully.

Run with:
    uvicorn multisig_escrow.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from multisig_escrow.config import get_settings
from multisig_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        ledger_backend=settings.ledger_backend,
    )

    from multisig_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    from multisig_escrow.infrastructure.notifications import (
        LoggingNotificationPublisher,
        RedisNotificationPublisher,
    )
    from multisig_escrow.infrastructure.redis_client import close_redis, init_redis

    redis = await init_redis()
    if redis is not None:
        publisher = RedisNotificationPublisher(redis, settings.redis_notification_channel)
    else:
        publisher = LoggingNotificationPublisher()

    from multisig_escrow.services.runtime import build_runtime

    runtime = build_runtime(settings, publisher)
    app.state.runtime = runtime

    scheduler = None
    if settings.scheduler_enabled:
        from multisig_escrow.monitors.scheduler import EscrowScheduler

        scheduler = EscrowScheduler(get_session_factory(), runtime)
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    logger.info("app.shutting_down")
    if scheduler is not None:
        scheduler.shutdown()
    await runtime.aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Multisig Escrow",
        description="2-of-3 multisig escrow for peer-to-peer deals settled on Tron.",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    from multisig_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    from multisig_escrow.api.routes.deals import router as deals_router
    from multisig_escrow.api.routes.health import router as health_router
    from multisig_escrow.api.routes.key_validation import router as key_validation_router

    app.include_router(health_router)
    app.include_router(deals_router)
    app.include_router(key_validation_router)

    return app


# The app instance used by Uvicorn
app = create_app()
