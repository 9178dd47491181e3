"""FastAPI application factory for the meeting sync service.

The HTTP surface is operational only: liveness/readiness probes and the
Prometheus /metrics endpoint. The lifespan wires logging, Sentry and the
database, then runs the sync workers and the error re-arm scheduler for
as long as the app is up.

Run with:
    uvicorn --factory src.meetsync.main:create_app
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text

from src.meetsync.config import Settings, get_settings
from src.meetsync.core.database import close_db, get_engine, get_session, init_db
from src.meetsync.core.logging import configure_structlog
from src.meetsync.core.monitoring import get_metrics_response, init_sentry
from src.meetsync.meetings.providers import MeetingsProvider
from src.meetsync.meetings.rearm import ErrorRearmPolicy, RearmScheduler
from src.meetsync.meetings.repository import MeetingSyncRepository
from src.meetsync.meetings.worker import MeetingsManager

logger = structlog.get_logger(__name__)


def build_manager(
    providers: Mapping[str, MeetingsProvider],
    settings: Settings,
) -> MeetingsManager:
    """Assemble the repository, re-arm scheduler and workers on the module engine."""
    repository = MeetingSyncRepository.from_settings(get_session, settings)
    rearm = RearmScheduler(
        ErrorRearmPolicy(get_session),
        interval_minutes=settings.MEETINGS_ERROR_REARM_INTERVAL_MINUTES,
    )
    return MeetingsManager(repository, providers, settings=settings, rearm=rearm)


def create_app(
    providers: Mapping[str, MeetingsProvider] | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        providers: Provider clients keyed by meeting_provider_id. Workers are
            not started when none are registered.
        settings: Settings override (defaults to get_settings()).
    """
    settings = settings or get_settings()
    providers = dict(providers or {})

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Init logging, Sentry and DB on startup; stop workers and DB on shutdown."""
        configure_structlog()
        await init_db()

        if settings.SENTRY_DSN:
            init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

        manager = None
        if providers:
            manager = build_manager(providers, settings)
            manager.start()
        else:
            logger.warning("meetings_workers_not_started", reason="no providers registered")
        app.state.manager = manager

        yield

        if manager is not None:
            await manager.stop()
        await close_db()

    app = FastAPI(
        title="meetsync",
        version="0.1.0",
        description="Meeting synchronization engine for events and sessions",
        lifespan=lifespan,
    )
    app.state.manager = None

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Liveness check: the process is up, plus worker task status."""
        manager = request.app.state.manager
        tasks = manager.tasks if manager is not None else []
        return {
            "status": "ok",
            "environment": settings.ENVIRONMENT.value,
            "workers": sum(1 for task in tasks if not task.done()),
        }

    @app.get("/health/ready")
    async def readiness_check() -> JSONResponse:
        """Readiness check: the database answers a trivial query."""
        checks: dict = {"database": "ok"}
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)

        healthy = checks["database"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if healthy else "degraded", "checks": checks},
        )

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app
