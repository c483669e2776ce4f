"""MetricsHub application entry point (FastAPI).

Architecture:
- FastAPI for the dashboard-facing installation API and health endpoints
- One ``Services`` container wires registry, queue, engine, scheduler and
  health monitor; the API and the worker process share it
- Async SQLAlchemy for database operations
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.api.installations import router as installations_router
from metricshub.config import settings
from metricshub.core.circuit_breaker import all_breaker_snapshots
from metricshub.core.errors import (
    AlreadyInstalled,
    ApplicationNotFound,
    InstallationNotFound,
    InvalidTrigger,
    MetricsHubError,
    QueueFull,
    RunNotFound,
    ScheduleConfigInvalid,
)
from metricshub.credentials.crypto import SecretCipher
from metricshub.credentials.oauth import GoogleTokenRefresher, TokenRefresher
from metricshub.credentials.store import CredentialStore
from metricshub.db.session import AsyncSessionLocal, close_db, db_session
from metricshub.execution.engine import ExecutionEngine
from metricshub.execution.locks import InstallationLock, SqlInstallationLock
from metricshub.execution.runs import RunRepository
from metricshub.execution.worker import WorkerPool
from metricshub.health.monitor import HealthMonitor
from metricshub.installations.registry import InstallationRegistry
from metricshub.jobs.queue import JobQueue
from metricshub.jobs.sql_queue import SqlJobQueue
from metricshub.observability.logging import configure_logging
from metricshub.observability.metrics import get_metrics
from metricshub.providers.registry import AdapterRegistry, build_default_registry
from metricshub.scheduling.scheduler import Scheduler

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE WIRING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Services:
    sessions: async_sessionmaker[AsyncSession]
    registry: InstallationRegistry
    runs: RunRepository
    queue: JobQueue
    credentials: CredentialStore
    adapters: AdapterRegistry
    locks: InstallationLock
    engine: ExecutionEngine
    monitor: HealthMonitor
    scheduler: Scheduler
    workers: WorkerPool
    refreshers: list[TokenRefresher] = field(default_factory=list)

    async def start_background(self, *, scheduler: bool = True, workers: bool = True) -> None:
        if scheduler:
            self.scheduler.start()
        if workers:
            await self.workers.start()

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.workers.stop()
        await self.adapters.aclose()
        for refresher in self.refreshers:
            close = getattr(refresher, "close", None)
            if close is not None:
                await close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    queue: JobQueue | None = None,
    locks: InstallationLock | None = None,
    adapters: AdapterRegistry | None = None,
    cipher: SecretCipher | None = None,
    refreshers: list[TokenRefresher] | None = None,
    **engine_kwargs: Any,
) -> Services:
    """Wire every component against one session factory."""
    sessions = session_factory or AsyncSessionLocal
    registry = InstallationRegistry(sessions)
    runs = RunRepository(sessions)
    queue = queue or SqlJobQueue(
        sessions, max_depth=settings.queue_max_depth, lease_seconds=settings.queue_lease_seconds
    )
    adapters = adapters or build_default_registry()
    refreshers = refreshers if refreshers is not None else [GoogleTokenRefresher()]
    credentials = CredentialStore(
        cipher or SecretCipher(settings.encryption_key),
        refreshers={r.auth_provider: r for r in refreshers},
        session_factory=sessions,
        resolve_auth_provider=adapters.auth_provider_for,
    )
    locks = locks or SqlInstallationLock(sessions)

    monitor = HealthMonitor(registry, credentials, adapters, queue=queue)
    engine = ExecutionEngine(
        registry, runs, queue, credentials, adapters, locks, health_monitor=monitor, **engine_kwargs
    )
    return Services(
        sessions=sessions,
        registry=registry,
        runs=runs,
        queue=queue,
        credentials=credentials,
        adapters=adapters,
        locks=locks,
        engine=engine,
        monitor=monitor,
        scheduler=Scheduler(registry, queue, health_monitor=monitor),
        workers=WorkerPool(queue, engine),
        refreshers=list(refreshers),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR MAPPING
# ═══════════════════════════════════════════════════════════════════════════════

_ERROR_STATUS: dict[type[MetricsHubError], int] = {
    InstallationNotFound: status.HTTP_404_NOT_FOUND,
    ApplicationNotFound: status.HTTP_404_NOT_FOUND,
    RunNotFound: status.HTTP_404_NOT_FOUND,
    ScheduleConfigInvalid: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTrigger: status.HTTP_409_CONFLICT,
    AlreadyInstalled: status.HTTP_409_CONFLICT,
    QueueFull: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def _metricshub_error_handler(request: Request, exc: MetricsHubError) -> JSONResponse:
    code = next(
        (c for cls, c in _ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    headers = {"Retry-After": str(settings.scheduler_tick_seconds)} if isinstance(exc, QueueFull) else None
    if code >= 500:
        logger.warning("api_request_failed", path=request.url.path, error=str(exc), status=code)
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": str(exc)},
        headers=headers,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(services: Services | None = None, *, run_background: bool = False) -> FastAPI:
    """Build the API.

    The API process normally only serves requests; the scheduler, health
    sweep and worker pool run in ``scripts/worker.py``. ``run_background``
    starts them in-process for single-node development.

    Serve with ``uvicorn --factory metricshub.app:create_app``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        logger.info("app_starting", env=settings.env, run_background=run_background)
        svc = app.state.services
        if run_background:
            await svc.start_background()

        yield

        logger.info("app_shutting_down")
        await svc.aclose()
        if services is None:
            await close_db()

    app = FastAPI(
        title="MetricsHub",
        version="0.1.0",
        description="Integration execution and scheduling engine",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()
    app.add_exception_handler(MetricsHubError, _metricshub_error_handler)
    app.include_router(installations_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "metricshub"}

    @app.get("/metrics")
    async def metrics_endpoint() -> dict:
        """Live engine metrics snapshot.

        Returns counters and latency histograms (p50/p95/p99) for runs,
        retries, scheduler activity, provider calls and health probes, plus
        queue depth and circuit breaker state.
        """
        svc: Services = app.state.services
        snap = await get_metrics().snapshot()
        snap["queue_depth"] = await svc.queue.depth()
        snap["workers"] = svc.workers.metrics
        snap["circuit_breakers"] = all_breaker_snapshots()
        return snap

    @app.get("/health/db")
    async def health_db() -> JSONResponse:
        """Database health check."""
        svc: Services = app.state.services
        try:
            async with db_session(svc.sessions) as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return JSONResponse({"status": "ok", "database": "connected"})
        except Exception as e:
            logger.error("db_health_check_failed", error=str(e))
            return JSONResponse(
                {"status": "error", "database": "disconnected"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

    return app

