"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                           # Run all tests
    pytest tests/test_engine.py -v          # Run specific test file

Database-backed tests run against an in-memory SQLite database (aiosqlite)
sharing one connection, so every component sees the same data.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from metricshub.config import RetryPolicy
from metricshub.core import circuit_breaker
from metricshub.credentials.crypto import SecretCipher
from metricshub.credentials.store import Credential, CredentialStore
from metricshub.db.models import Application, Base, ExecutionType, TriggerType
from metricshub.db.session import db_session, make_session_factory
from metricshub.execution.engine import ExecutionEngine, ProcessResult
from metricshub.execution.locks import LocalInstallationLock
from metricshub.execution.runs import RunRepository
from metricshub.installations.registry import InstallationRegistry
from metricshub.jobs.queue import InMemoryJobQueue
from metricshub.observability.metrics import get_metrics
from metricshub.providers.base import (
    AdapterResult,
    ProbeResult,
    ProviderAdapter,
    check_cancelled,
    operation,
)
from metricshub.providers.registry import AdapterRegistry

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TENANT = "tenant-1"


# ─────────────────────────────────────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ─────────────────────────────────────────────────────────────────────────────
# Global state
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_globals():
    circuit_breaker._breakers.clear()
    get_metrics().reset_all()
    yield
    circuit_breaker._breakers.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


async def create_application(
    session_factory: async_sessionmaker[AsyncSession],
    **overrides: Any,
) -> Application:
    values: dict[str, Any] = {
        "slug": f"fake-report-{uuid.uuid4().hex[:6]}",
        "name": "Fake Report",
        "execution_type": ExecutionType.BACKEND,
        "trigger_type": TriggerType.SCHEDULE,
        "provider_key": "fake",
        "operation": "data.fetch",
        "default_config": {},
        "supported_frequencies": [],
        "timeout_seconds": 30,
    }
    values.update(overrides)
    app = Application(**values)
    async with db_session(session_factory) as db:
        db.add(app)
    return app


@pytest_asyncio.fixture
async def application(session_factory) -> Application:
    return await create_application(session_factory)


# ─────────────────────────────────────────────────────────────────────────────
# Credentials
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def cipher() -> SecretCipher:
    return SecretCipher("test-master-key")


class FakeRefresher:
    """Token refresher that counts calls and can be told to fail."""

    def __init__(self, auth_provider: str = "fake", delay: float = 0.0, error: Exception | None = None) -> None:
        self.auth_provider = auth_provider
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def refresh(self, refresh_token: str):
        from metricshub.credentials.oauth import TokenGrant

        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"fresh-{len(self.calls)}",
            expires_at=T0 + timedelta(hours=1),
            refresh_token=f"rotated-{len(self.calls)}",
        )


# ─────────────────────────────────────────────────────────────────────────────
# Scripted adapter
# ─────────────────────────────────────────────────────────────────────────────

class FakeAdapter(ProviderAdapter):
    """Adapter whose results are scripted per test."""

    provider_key = "fake"
    auth_provider = "fake"

    def __init__(self) -> None:
        self.script: list[AdapterResult | Exception] = []
        self.calls: list[dict[str, Any]] = []
        self.block: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.probe_result = ProbeResult(ok=True, latency_ms=12, http_status=200)

    @operation("data.fetch")
    async def fetch(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        self.calls.append(dict(params))
        self.started.set()
        if self.block is not None:
            while not self.block.is_set():
                check_cancelled(cancel)
                await asyncio.sleep(0.01)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        return AdapterResult.ok({"rows": [1, 2, 3]})

    async def probe(self, credential: Credential) -> ProbeResult:
        return self.probe_result


# ─────────────────────────────────────────────────────────────────────────────
# Engine harness
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Harness:
    clock: FakeClock
    session_factory: async_sessionmaker[AsyncSession]
    registry: InstallationRegistry
    runs: RunRepository
    queue: InMemoryJobQueue
    credentials: CredentialStore
    adapter: FakeAdapter
    adapters: AdapterRegistry
    locks: LocalInstallationLock
    engine: ExecutionEngine

    async def connect(self, tenant_id: str = TENANT, expires_in: timedelta = timedelta(days=30)) -> None:
        await self.credentials.connect(
            tenant_id,
            "fake",
            Credential(
                provider_key="fake",
                access_token="live-token",
                refresh_token="refresh-1",
                expires_at=self.clock() + expires_in,
            ),
        )

    async def process_next(self) -> ProcessResult | None:
        job = await self.queue.dequeue("test-worker")
        if job is None:
            return None
        return await self.engine.process(job)

    async def drain(self, limit: int = 20) -> list[ProcessResult]:
        """Process jobs, jumping the clock past every delay, until the queue empties."""
        results = []
        for _ in range(limit):
            result = await self.process_next()
            if result is None:
                if not await self.queue.depth():
                    break
                self.clock.advance(seconds=3600)
                continue
            results.append(result)
        return results


@pytest_asyncio.fixture
async def harness(session_factory, cipher, clock) -> Harness:
    adapter = FakeAdapter()
    adapters = AdapterRegistry()
    adapters.register(adapter)
    registry = InstallationRegistry(session_factory, clock=clock)
    runs = RunRepository(session_factory, clock=clock)
    queue = InMemoryJobQueue(max_depth=100, clock=clock)
    credentials = CredentialStore(
        cipher,
        session_factory=session_factory,
        resolve_auth_provider=adapters.auth_provider_for,
        clock=clock,
    )
    locks = LocalInstallationLock(clock=clock)
    engine = ExecutionEngine(
        registry,
        runs,
        queue,
        credentials,
        adapters,
        locks,
        retry_policy=RetryPolicy(ceiling=3, base_delay_s=30, max_delay_s=900, jitter_ratio=0.0),
        lock_retry_delay_s=5,
        lock_ttl_seconds=900,
        worker_id="test",
        clock=clock,
        cancel_poll_s=0.05,
        heartbeat_s=0.02,
    )
    return Harness(
        clock=clock,
        session_factory=session_factory,
        registry=registry,
        runs=runs,
        queue=queue,
        credentials=credentials,
        adapter=adapter,
        adapters=adapters,
        locks=locks,
        engine=engine,
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
