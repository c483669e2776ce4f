"""Tests for the health monitor."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from conftest import TENANT, create_application

from metricshub.db.models import ApiStatus, HealthStatus, JobType, TriggerType
from metricshub.execution.engine import Outcome
from metricshub.health.monitor import HealthMonitor, jitter_offset
from metricshub.providers.base import AdapterError, ErrorKind, ProbeResult


@pytest.fixture
def monitor(harness) -> HealthMonitor:
    return HealthMonitor(
        harness.registry,
        harness.credentials,
        harness.adapters,
        interval_s=3600,
        jitter_s=0,
        slow_probe_ms=500,
        clock=harness.clock,
    )


async def install(harness, **app_overrides):
    app = await create_application(harness.session_factory, trigger_type=TriggerType.MANUAL, **app_overrides)
    return await harness.registry.install(TENANT, app.id)


def probe_error(kind: ErrorKind, status: int) -> ProbeResult:
    return ProbeResult(
        ok=False,
        latency_ms=40,
        error=AdapterError(provider="fake", kind=kind, message=f"HTTP {status}", http_status=status),
    )


class TestCheckInstallation:
    async def test_healthy(self, harness, monitor):
        inst = await install(harness)
        await harness.connect()

        record = await monitor.check_installation(inst)
        assert record.status == HealthStatus.HEALTHY
        assert record.api_status == ApiStatus.CONNECTED
        assert record.credentials_valid is True
        assert record.response_time_ms == 12
        assert record.details == {"provider": "fake", "scopes": [], "slow": False}

        reloaded = await harness.registry.get(inst.id)
        assert reloaded.health_status == HealthStatus.HEALTHY
        assert reloaded.health_checked_at == harness.clock()
        assert (await harness.registry.latest_health(inst.id)).id == record.id

    async def test_slow_probe_is_degraded(self, harness, monitor):
        inst = await install(harness)
        await harness.connect()
        harness.adapter.probe_result = ProbeResult(ok=True, latency_ms=900, http_status=200)
        record = await monitor.check_installation(inst)
        assert record.status == HealthStatus.DEGRADED
        assert record.details["slow"] is True

    async def test_not_connected_is_unhealthy(self, harness, monitor):
        inst = await install(harness)
        record = await monitor.check_installation(inst)
        assert record.status == HealthStatus.UNHEALTHY
        assert record.api_status == ApiStatus.DISCONNECTED
        assert record.credentials_valid is False

    @pytest.mark.parametrize(
        "kind, status, health, api_status",
        [
            (ErrorKind.AUTH_FAILED, 401, HealthStatus.UNHEALTHY, ApiStatus.UNAUTHORIZED),
            (ErrorKind.QUOTA_EXCEEDED, 429, HealthStatus.DEGRADED, ApiStatus.RATE_LIMITED),
            (ErrorKind.TRANSIENT, 503, HealthStatus.DEGRADED, ApiStatus.ERROR),
            (ErrorKind.PERMANENT, 404, HealthStatus.UNHEALTHY, ApiStatus.ERROR),
        ],
    )
    async def test_probe_failures(self, harness, monitor, kind, status, health, api_status):
        inst = await install(harness)
        await harness.connect()
        harness.adapter.probe_result = probe_error(kind, status)
        record = await monitor.check_installation(inst)
        assert record.status == health
        assert record.api_status == api_status
        assert record.api_response_code == status
        assert record.details == {"provider": "fake", "error_kind": kind.value, "error_code": None}

    async def test_daily_quota_reached_is_degraded(self, harness, monitor):
        inst = await install(harness, default_config={"daily_quota": 1})
        await harness.connect()
        await harness.engine.trigger(inst.id)
        await harness.process_next()

        record = await monitor.check_installation(inst)
        assert record.daily_api_calls == 1
        assert record.daily_quota_limit == 1
        assert record.status == HealthStatus.DEGRADED
        assert record.details["quota_reached"] is True

    async def test_unhealthy_installation_skipped_by_scheduler(self, harness, monitor):
        inst = await install(harness)
        harness.adapter.probe_result = probe_error(ErrorKind.AUTH_FAILED, 401)
        await harness.connect()
        await monitor.check_installation(inst)
        assert harness.registry.is_unhealthy(await harness.registry.get(inst.id))


class TestSweep:
    async def test_checks_due_installations_once_per_interval(self, harness, monitor):
        await install(harness)
        await install(harness)
        await harness.connect()

        assert await monitor.sweep() == 2
        assert await monitor.sweep() == 0
        harness.clock.advance(seconds=3600)
        assert await monitor.sweep() == 2

    async def test_sweep_through_queue(self, harness):
        monitor = HealthMonitor(
            harness.registry, harness.credentials, harness.adapters,
            queue=harness.queue, jitter_s=0, clock=harness.clock,
        )
        harness.engine.attach_health_monitor(monitor)
        inst = await install(harness)
        await harness.connect()

        assert await monitor.sweep() == 1
        job = await harness.queue.dequeue("w")
        assert job.job_type == JobType.HEALTH_CHECK
        assert job.installation_id == inst.id

        result = await harness.engine.process(job)
        assert result.outcome == Outcome.HEALTH_CHECKED
        assert (await harness.registry.get(inst.id)).health_status == HealthStatus.HEALTHY
        assert await harness.queue.depth() == 0

    async def test_inactive_installations_not_probed(self, harness, monitor):
        inst = await install(harness)
        await harness.connect()
        await harness.engine.trigger(inst.id)
        # Credential failure moves the installation to error
        await harness.credentials.connect(TENANT, "fake", _expired_credential(harness))
        await harness.process_next()
        assert await monitor.sweep() == 0


def _expired_credential(harness):
    from metricshub.credentials.store import Credential

    return Credential(
        provider_key="fake",
        access_token="dead",
        refresh_token=None,
        expires_at=harness.clock() - timedelta(hours=1),
    )


class TestJitter:
    def test_offset_is_stable_and_bounded(self):
        inst = uuid.uuid4()
        assert jitter_offset(inst, 300) == jitter_offset(inst, 300)
        assert 0 <= jitter_offset(inst, 300) <= 300
        assert jitter_offset(inst, 0) == 0

    async def test_is_due_respects_offset(self, harness):
        monitor = HealthMonitor(
            harness.registry, harness.credentials, harness.adapters,
            interval_s=3600, jitter_s=600, clock=harness.clock,
        )
        inst = await install(harness)
        assert monitor.is_due(inst, harness.clock())
        await harness.connect()
        await monitor.check_installation(inst)

        reloaded = await harness.registry.get(inst.id)
        offset = jitter_offset(inst.id, 600)
        now = harness.clock()
        assert not monitor.is_due(reloaded, now + timedelta(seconds=3600 + offset - 1))
        assert monitor.is_due(reloaded, now + timedelta(seconds=3600 + offset))
