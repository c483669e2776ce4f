"""Health monitor: periodic credential and reachability probes.

Independent of execution. Each active installation is probed roughly every
``health_check_interval_s`` plus a per-installation offset so probes do not
fire in lockstep. A probe writes one ``IntegrationHealth`` row and the
installation's ``health_status``; the scheduler skips slots of installations
marked unhealthy. Nothing here raises into the caller.

Status mapping:

    probe ok, fast, under quota     → healthy    / connected
    probe ok but slow or at quota   → degraded   / connected
    quota / rate limit              → degraded   / rate_limited
    transient or refresh endpoint   → degraded   / error
    auth failed / expired           → unhealthy  / unauthorized
    not connected                   → unhealthy  / disconnected
    permanent provider error        → unhealthy  / error
    monitor failure                 → unknown    / error
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Callable

import structlog

from metricshub.config import settings
from metricshub.core.errors import (
    CredentialRefreshUnavailable,
    CredentialsExpired,
    NotConnected,
    QueueFull,
    UnknownProvider,
)
from metricshub.credentials.store import CredentialStore
from metricshub.db.models import (
    ApiStatus,
    HealthStatus,
    Installation,
    IntegrationHealth,
    JobType,
    TriggerSource,
    utcnow,
)
from metricshub.installations.registry import InstallationRegistry
from metricshub.jobs.queue import JobQueue
from metricshub.observability.metrics import get_metrics
from metricshub.providers.base import ErrorKind, ProbeResult
from metricshub.providers.registry import AdapterRegistry

logger = structlog.get_logger()

_PROBE_OUTCOMES: dict[ErrorKind, tuple[HealthStatus, ApiStatus]] = {
    ErrorKind.AUTH_FAILED: (HealthStatus.UNHEALTHY, ApiStatus.UNAUTHORIZED),
    ErrorKind.QUOTA_EXCEEDED: (HealthStatus.DEGRADED, ApiStatus.RATE_LIMITED),
    ErrorKind.TRANSIENT: (HealthStatus.DEGRADED, ApiStatus.ERROR),
    ErrorKind.PERMANENT: (HealthStatus.UNHEALTHY, ApiStatus.ERROR),
    ErrorKind.CANCELLED: (HealthStatus.UNKNOWN, ApiStatus.ERROR),
}
_SWEEP_CONCURRENCY = 5


def jitter_offset(installation_id: uuid.UUID, jitter_s: int) -> int:
    """Stable per-installation offset in ``[0, jitter_s]``."""
    if jitter_s <= 0:
        return 0
    return int(installation_id.hex[:8], 16) % (jitter_s + 1)


class HealthMonitor:
    def __init__(
        self,
        registry: InstallationRegistry,
        credentials: CredentialStore,
        adapters: AdapterRegistry,
        queue: JobQueue | None = None,
        interval_s: int | None = None,
        jitter_s: int | None = None,
        probe_timeout_s: float | None = None,
        slow_probe_ms: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._adapters = adapters
        self._queue = queue
        self._interval = interval_s or settings.health_check_interval_s
        self._jitter = jitter_s if jitter_s is not None else settings.health_check_jitter_s
        self._probe_timeout = probe_timeout_s or settings.health_probe_timeout_s
        self._slow_ms = slow_probe_ms or settings.health_slow_probe_ms
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    # Sweep
    # ═══════════════════════════════════════════════════════════════════════

    def is_due(self, installation: Installation, now: datetime) -> bool:
        if installation.health_checked_at is None:
            return True
        period = timedelta(seconds=self._interval + jitter_offset(installation.id, self._jitter))
        return now - installation.health_checked_at >= period

    async def sweep(self, now: datetime | None = None) -> int:
        """Probe (or queue probes for) every installation whose check is due."""
        now = now or self._clock()
        try:
            installations = await self._registry.list_for_health_check()
        except Exception as e:
            logger.error("health_sweep_list_failed", error=str(e))
            return 0

        due = [i for i in installations if self.is_due(i, now)]
        if not due:
            return 0

        if self._queue is not None:
            queued = 0
            for installation in due:
                try:
                    await self._queue.enqueue(JobType.HEALTH_CHECK, installation.id, TriggerSource.SCHEDULE)
                except QueueFull:
                    logger.warning("health_sweep_queue_full", queued=queued, due=len(due))
                    break
                queued += 1
            logger.info("health_sweep_queued", due=len(due), queued=queued)
            return queued

        sem = asyncio.Semaphore(_SWEEP_CONCURRENCY)

        async def _one(installation: Installation) -> None:
            async with sem:
                await self.check_installation(installation)

        await asyncio.gather(*(_one(i) for i in due))
        logger.info("health_sweep_completed", checked=len(due))
        return len(due)

    # ═══════════════════════════════════════════════════════════════════════
    # Single check
    # ═══════════════════════════════════════════════════════════════════════

    async def check_installation(self, installation: Installation) -> IntegrationHealth | None:
        """Probe one installation and persist the result. Never raises."""
        started = self._clock()
        try:
            record = await self._probe(installation)
        except Exception as e:
            logger.error("health_check_failed", installation_id=str(installation.id), error=str(e))
            record = IntegrationHealth(
                installation_id=installation.id,
                status=HealthStatus.UNKNOWN,
                api_status=ApiStatus.ERROR,
                api_error_message=str(e)[:500],
                details={"monitor_error": type(e).__name__},
            )
        record.checked_at = self._clock()

        try:
            record.daily_api_calls = await self._registry.runs_started_since(
                installation.id, datetime.combine(record.checked_at.date(), time.min, tzinfo=record.checked_at.tzinfo)
            )
            quota = installation.application.default_config.get("daily_quota")
            record.daily_quota_limit = int(quota) if quota else None
            if (
                record.status == HealthStatus.HEALTHY
                and record.daily_quota_limit
                and record.daily_api_calls >= record.daily_quota_limit
            ):
                record.status = HealthStatus.DEGRADED
                record.details = {**(record.details or {}), "quota_reached": True}

            await self._registry.record_health(record)
        except Exception as e:
            logger.error("health_record_failed", installation_id=str(installation.id), error=str(e))
            return None

        elapsed_ms = (self._clock() - started).total_seconds() * 1000
        await get_metrics().health_checked(record.status.value, elapsed_ms)
        logger.info(
            "health_checked",
            installation_id=str(installation.id),
            tenant_id=installation.tenant_id,
            status=record.status.value,
            api_status=record.api_status.value if record.api_status else None,
            response_time_ms=record.response_time_ms,
        )
        return record

    async def _probe(self, installation: Installation) -> IntegrationHealth:
        app = installation.application
        base: dict[str, Any] = {"installation_id": installation.id, "details": {"provider": app.provider_key}}

        try:
            credential = await self._credentials.get_credential(
                installation.tenant_id, app.provider_key, installation.id
            )
        except NotConnected as e:
            return IntegrationHealth(
                **base, status=HealthStatus.UNHEALTHY, api_status=ApiStatus.DISCONNECTED,
                credentials_valid=False, api_error_message=str(e),
            )
        except CredentialsExpired as e:
            return IntegrationHealth(
                **base, status=HealthStatus.UNHEALTHY, api_status=ApiStatus.UNAUTHORIZED,
                credentials_valid=False, api_error_message=str(e),
            )
        except CredentialRefreshUnavailable as e:
            return IntegrationHealth(
                **base, status=HealthStatus.DEGRADED, api_status=ApiStatus.ERROR, api_error_message=str(e),
            )
        except UnknownProvider as e:
            return IntegrationHealth(
                **base, status=HealthStatus.UNKNOWN, api_status=ApiStatus.ERROR, api_error_message=str(e),
            )

        probe = await self._adapters.probe(app.provider_key, credential, timeout=self._probe_timeout)
        return self._from_probe(base, probe, credential.expires_at)

    def _from_probe(self, base: dict[str, Any], probe: ProbeResult, stored_expiry: datetime | None) -> IntegrationHealth:
        fields = {k: v for k, v in base.items() if k != "details"}
        if probe.ok:
            slow = probe.latency_ms > self._slow_ms
            return IntegrationHealth(
                **fields,
                status=HealthStatus.DEGRADED if slow else HealthStatus.HEALTHY,
                api_status=ApiStatus.CONNECTED,
                api_response_code=probe.http_status,
                response_time_ms=probe.latency_ms,
                credentials_valid=True,
                credentials_expire_at=probe.expires_at or stored_expiry,
                details={**base["details"], "scopes": probe.scopes, "slow": slow},
            )

        error = probe.error
        if error is None:
            return IntegrationHealth(**base, status=HealthStatus.UNKNOWN, api_status=ApiStatus.ERROR)
        status, api_status = _PROBE_OUTCOMES.get(error.kind, (HealthStatus.UNKNOWN, ApiStatus.ERROR))
        return IntegrationHealth(
            **fields,
            status=status,
            api_status=api_status,
            api_response_code=error.http_status,
            api_error_message=error.message,
            response_time_ms=probe.latency_ms,
            credentials_valid=False if error.kind == ErrorKind.AUTH_FAILED else None,
            credentials_expire_at=stored_expiry,
            details={**base["details"], "error_kind": error.kind.value, "error_code": error.code},
        )
