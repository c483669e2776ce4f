"""Execution run engine.

Processes one dequeued job:

  1. Take the per-installation lease. If another attempt holds it, requeue
     the job with a short delay and ack the original.
  2. Resume the job's run (retry / redelivery) or create a new one.
  3. Resolve the credential. Expired or missing credentials end the run in
     ``error`` and disable the installation; nothing is retried.
  4. Invoke the adapter, bounded by the application's timeout and racing the
     run's cancel signal.
  5. Success → ``success``. Retryable failure under the ceiling → ``retrying``
     plus a delayed requeue. Otherwise → ``error``. Cancelled → ``cancelled``.

Installation counters move only on terminal transitions. The job is acked
only after the run state is written, so a crash before that point leaves the
job to be redelivered when its lease expires.
"""

from __future__ import annotations

import asyncio
import random
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from metricshub.config import RetryPolicy, settings
from metricshub.core.errors import (
    CredentialRefreshUnavailable,
    CredentialsExpired,
    InstallationNotFound,
    InvalidTrigger,
    NotConnected,
    RunNotFound,
    UnknownProvider,
)
from metricshub.credentials.store import CredentialStore
from metricshub.db.models import (
    ExecutionRun,
    Installation,
    InstallationStatus,
    JobType,
    RunStatus,
    TriggerSource,
    utcnow,
)
from metricshub.execution.locks import InstallationLock
from metricshub.execution.runs import RunRepository
from metricshub.installations.registry import InstallationRegistry
from metricshub.jobs.queue import Job, JobQueue, Priority
from metricshub.observability.metrics import get_metrics
from metricshub.providers.base import AdapterError, AdapterResult, ErrorKind
from metricshub.providers.registry import AdapterRegistry

if TYPE_CHECKING:
    from metricshub.health.monitor import HealthMonitor

logger = structlog.get_logger()

CREDENTIALS_EXPIRED_MESSAGE = "credentials expired"
_CANCEL_GRACE_S = 1.0
_CANCEL_POLL_S = 2.0
# Job config keys that steer the engine rather than the adapter
_CONTROL_KEYS = ("operation", "scheduled_for", "frequency", "daily_quota")


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    RETRY_SCHEDULED = "retry_scheduled"
    LOCKED = "locked"
    SKIPPED = "skipped"
    HEALTH_CHECKED = "health_checked"


@dataclass(frozen=True)
class ProcessResult:
    outcome: Outcome
    run_id: uuid.UUID | None = None
    delay_s: float | None = None


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
    retry_after_ms: int | None = None,
) -> float:
    """Seconds to wait before the attempt after *attempt* (1-based).

    ``base * 2**(attempt-1)`` capped at ``max_delay_s``, spread by
    ``± jitter_ratio``, and never shorter than the provider's retry-after hint.
    """
    delay = min(policy.base_delay_s * (2 ** max(attempt - 1, 0)), policy.max_delay_s)
    if policy.jitter_ratio:
        delay *= 1 + (rng or random).uniform(-policy.jitter_ratio, policy.jitter_ratio)
    if retry_after_ms is not None:
        delay = max(delay, retry_after_ms / 1000)
    return max(delay, 0.0)


class ExecutionEngine:
    def __init__(
        self,
        registry: InstallationRegistry,
        runs: RunRepository,
        queue: JobQueue,
        credentials: CredentialStore,
        adapters: AdapterRegistry,
        locks: InstallationLock,
        health_monitor: HealthMonitor | None = None,
        retry_policy: RetryPolicy | None = None,
        lock_retry_delay_s: float | None = None,
        lock_ttl_seconds: int | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        cancel_poll_s: float = _CANCEL_POLL_S,
        heartbeat_s: float | None = None,
    ) -> None:
        self._registry = registry
        self._runs = runs
        self._queue = queue
        self._credentials = credentials
        self._adapters = adapters
        self._locks = locks
        self._health = health_monitor
        self._policy = retry_policy or RetryPolicy.from_settings()
        self._lock_delay = lock_retry_delay_s if lock_retry_delay_s is not None else settings.lock_retry_delay_s
        self._lock_ttl = lock_ttl_seconds or settings.lock_ttl_seconds
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._clock = clock
        self._rng = rng or random.Random()
        self._cancel_poll_s = cancel_poll_s
        # Renew well inside both the job lease and the lock TTL
        self._heartbeat_s = heartbeat_s or min(queue.lease_seconds, self._lock_ttl) / 3
        self._cancel_events: dict[uuid.UUID, asyncio.Event] = {}

    def attach_health_monitor(self, monitor: HealthMonitor) -> None:
        self._health = monitor

    # ═══════════════════════════════════════════════════════════════════════
    # Tenant-facing actions
    # ═══════════════════════════════════════════════════════════════════════

    async def trigger(
        self,
        installation_id: uuid.UUID,
        *,
        user_id: str | None = None,
        config: dict[str, Any] | None = None,
        source: TriggerSource = TriggerSource.MANUAL,
    ) -> str:
        """Queue a manual run. Disabled installations may still be triggered.

        Raises:
            InstallationNotFound, InvalidTrigger, QueueFull
        """
        installation = await self._registry.get(installation_id)
        app = installation.application
        if not app.is_executable:
            raise InvalidTrigger(f"{app.slug} is a UI-only application and cannot be executed")
        if installation.status in (InstallationStatus.PENDING, InstallationStatus.INSTALLING):
            raise InvalidTrigger(f"Installation is still {installation.status.value}")

        job_id = await self._queue.enqueue(
            JobType.EXECUTE_INTEGRATION,
            installation.id,
            source,
            dict(config or {}),
            user_id=user_id,
        )
        logger.info(
            "manual_run_triggered",
            installation_id=str(installation.id),
            tenant_id=installation.tenant_id,
            job_id=job_id,
            user_id=user_id,
        )
        return job_id

    async def cancel_run(self, installation_id: uuid.UUID, run_id: uuid.UUID) -> ExecutionRun:
        """Request cancellation. A run waiting for a retry is cancelled immediately."""
        existing = await self._runs.get(run_id)
        if existing is None or existing.installation_id != installation_id:
            raise RunNotFound(run_id)
        run = await self._runs.request_cancel(run_id)
        if run.completed_at is not None:
            return run

        event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()
        if run.status == RunStatus.RETRYING:
            await self._finish(run.id, installation_id, RunStatus.CANCELLED, error_message="cancelled")
        logger.info("run_cancel_requested", run_id=str(run_id), status=run.status.value)
        return await self._runs.get(run_id) or run

    # ═══════════════════════════════════════════════════════════════════════
    # Job processing
    # ═══════════════════════════════════════════════════════════════════════

    async def process(self, job: Job) -> ProcessResult:
        log = logger.bind(job_id=job.job_id, installation_id=str(job.installation_id))

        try:
            installation = await self._registry.get(job.installation_id)
        except InstallationNotFound:
            log.info("job_dropped", reason="installation_gone")
            await self._queue.ack(job.job_id)
            return ProcessResult(Outcome.SKIPPED)

        if job.job_type == JobType.HEALTH_CHECK:
            if self._health is not None:
                await self._health.check_installation(installation)
            await self._queue.ack(job.job_id)
            return ProcessResult(Outcome.HEALTH_CHECKED)

        owner = f"{self.worker_id}:{job.job_id}"
        if not await self._locks.acquire(installation.id, owner, self._lock_ttl):
            await self._queue.enqueue(
                job.job_type,
                job.installation_id,
                job.trigger_source,
                job.config,
                delay=self._lock_delay,
                attempt=job.attempt,
                run_id=job.run_id,
                user_id=job.user_id,
                priority=job.priority,
                requeue=True,
            )
            await self._queue.ack(job.job_id)
            await get_metrics().lock_contended()
            log.info("run_lock_contended", delay_s=self._lock_delay)
            return ProcessResult(Outcome.LOCKED, job.run_id, self._lock_delay)

        heartbeat = asyncio.create_task(self._heartbeat(job, installation.id, owner))
        try:
            result = await self._execute(job, installation, log)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._locks.release(installation.id, owner)
        await self._queue.ack(job.job_id)
        return result

    async def _execute(self, job: Job, installation: Installation, log: Any) -> ProcessResult:
        app = installation.application
        params = {**app.default_config, **installation.config, **job.config}
        operation = params.get("operation") or app.operation
        for key in _CONTROL_KEYS:
            params.pop(key, None)

        run = await self._begin_run(job, installation, operation, params)
        if run is None:
            log.info("job_dropped", reason="run_already_finished", run_id=str(job.run_id))
            return ProcessResult(Outcome.SKIPPED, job.run_id)
        log = log.bind(run_id=str(run.id), attempt=run.attempt)

        if run.cancel_requested:
            await self._finish(run.id, installation.id, RunStatus.CANCELLED, error_message="cancelled")
            return ProcessResult(Outcome.CANCELLED, run.id)

        # Redeliveries after crashed attempts also count against the ceiling
        if run.attempt > self._policy.ceiling + 1:
            return await self._fail(run, installation, AdapterError(
                provider=app.provider_key or "none",
                kind=ErrorKind.PERMANENT,
                message=f"Gave up after {run.attempt - 1} attempts",
                code="attempts_exhausted",
            ), log)

        log.info("run_started", provider=app.provider_key, operation=operation, triggered_by=job.trigger_source.value)

        if not app.is_executable or not app.provider_key or not operation:
            return await self._fail(run, installation, AdapterError(
                provider=app.provider_key or "none",
                kind=ErrorKind.PERMANENT,
                message=f"{app.slug} has no executable provider operation",
                code="not_executable",
            ), log)

        try:
            credential = await self._credentials.get_credential(
                installation.tenant_id, app.provider_key, installation.id
            )
        except (CredentialsExpired, NotConnected) as e:
            return await self._credentials_failed(run, installation, str(e), log)
        except CredentialRefreshUnavailable as e:
            return await self._handle_error(run, installation, job, AdapterError(
                provider=app.provider_key, kind=ErrorKind.TRANSIENT, message=str(e), code="refresh_unavailable",
            ), log)
        except UnknownProvider as e:
            return await self._fail(run, installation, AdapterError(
                provider=app.provider_key, kind=ErrorKind.PERMANENT, message=str(e), code="unknown_provider",
            ), log)

        started = self._clock()
        result = await self._invoke(run.id, app.provider_key, operation, credential, params, app.timeout_seconds)
        elapsed_ms = (self._clock() - started).total_seconds() * 1000

        if result.success:
            await self._finish(
                run.id, installation.id, RunStatus.SUCCESS,
                results={"data": result.data, "pages": result.pages, "continuation": result.continuation},
            )
            log.info("run_succeeded", pages=result.pages, elapsed_ms=round(elapsed_ms))
            return ProcessResult(Outcome.SUCCESS, run.id)

        return await self._handle_error(run, installation, job, result.error, log)

    async def _begin_run(
        self,
        job: Job,
        installation: Installation,
        operation: str | None,
        params: dict[str, Any],
    ) -> ExecutionRun | None:
        run_id = job.run_id or await self._runs.find_by_job(job.job_id)
        if run_id is not None:
            return await self._runs.start_attempt(run_id, job.job_id)
        return await self._runs.create(
            installation_id=installation.id,
            tenant_id=installation.tenant_id,
            job_id=job.job_id,
            triggered_by=job.trigger_source,
            operation=operation,
            params=params,
            user_id=job.user_id,
        )

    async def _invoke(
        self,
        run_id: uuid.UUID,
        provider_key: str,
        operation: str,
        credential: Any,
        params: dict[str, Any],
        timeout: float,
    ) -> AdapterResult:
        """Adapter call raced against the run's cancel signal."""
        cancel = asyncio.Event()
        self._cancel_events[run_id] = cancel
        call = asyncio.create_task(
            self._adapters.invoke(provider_key, operation, credential, params, cancel=cancel, timeout=timeout)
        )
        watcher = asyncio.create_task(self._watch_cancel(run_id, cancel))
        try:
            await asyncio.wait({call, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if not call.done():
                # Give the adapter a moment to notice between pages, then stop waiting
                await asyncio.wait({call}, timeout=_CANCEL_GRACE_S)
            if call.done() and not cancel.is_set():
                return call.result()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
            return AdapterResult.fail(AdapterError(
                provider=provider_key, kind=ErrorKind.CANCELLED, message="cancelled", code="cancelled",
            ))
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            self._cancel_events.pop(run_id, None)

    async def _heartbeat(self, job: Job, installation_id: uuid.UUID, owner: str) -> None:
        """Keep the job lease and the installation lock alive while an attempt runs."""
        while True:
            await asyncio.sleep(self._heartbeat_s)
            try:
                await self._queue.extend_lease(job.job_id, self._queue.lease_seconds)
                if not await self._locks.acquire(installation_id, owner, self._lock_ttl):
                    logger.warning("run_lock_lost", job_id=job.job_id, installation_id=str(installation_id))
            except SQLAlchemyError as e:
                logger.warning("run_heartbeat_failed", job_id=job.job_id, error=str(e))

    async def _watch_cancel(self, run_id: uuid.UUID, cancel: asyncio.Event) -> None:
        """Set *cancel* when a cancel request lands from another process."""
        while not cancel.is_set():
            try:
                await asyncio.wait_for(cancel.wait(), timeout=self._cancel_poll_s)
            except asyncio.TimeoutError:
                try:
                    if await self._runs.is_cancel_requested(run_id):
                        cancel.set()
                except SQLAlchemyError as e:
                    logger.warning("cancel_poll_failed", run_id=str(run_id), error=str(e))

    # ═══════════════════════════════════════════════════════════════════════
    # Outcomes
    # ═══════════════════════════════════════════════════════════════════════

    async def _handle_error(
        self,
        run: ExecutionRun,
        installation: Installation,
        job: Job,
        error: AdapterError | None,
        log: Any,
    ) -> ProcessResult:
        if error is None:
            error = AdapterError(provider="unknown", kind=ErrorKind.PERMANENT, message="adapter returned no error")

        if error.kind == ErrorKind.CANCELLED:
            await self._finish(run.id, installation.id, RunStatus.CANCELLED, error_message="cancelled",
                               error_kind=error.kind.value, error_code=error.code)
            log.info("run_cancelled")
            return ProcessResult(Outcome.CANCELLED, run.id)

        if error.kind == ErrorKind.AUTH_FAILED:
            return await self._credentials_failed(run, installation, error.message, log, error=error)

        if error.retryable and run.attempt <= self._policy.ceiling:
            delay = backoff_delay(run.attempt, self._policy, self._rng, error.retry_after_ms)
            next_attempt_at = self._clock() + timedelta(seconds=delay)
            await self._runs.mark_retrying(
                run.id,
                next_attempt_at=next_attempt_at,
                error_message=error.message,
                error_kind=error.kind.value,
                error_code=error.code,
            )
            await self._queue.enqueue(
                job.job_type,
                installation.id,
                job.trigger_source,
                job.config,
                delay=delay,
                attempt=run.attempt,
                run_id=run.id,
                user_id=job.user_id,
                priority=Priority.NORMAL,
                requeue=True,
            )
            await get_metrics().run_retried()
            log.warning(
                "run_retry_scheduled",
                error_kind=error.kind.value,
                error_code=error.code,
                delay_s=round(delay, 3),
                retry_after_ms=error.retry_after_ms,
            )
            return ProcessResult(Outcome.RETRY_SCHEDULED, run.id, delay)

        return await self._fail(run, installation, error, log)

    async def _fail(self, run: ExecutionRun, installation: Installation, error: AdapterError, log: Any) -> ProcessResult:
        await self._finish(
            run.id, installation.id, RunStatus.ERROR,
            error_message=error.message, error_kind=error.kind.value, error_code=error.code,
        )
        log.warning(
            "run_failed",
            error_kind=error.kind.value,
            error_code=error.code,
            http_status=error.http_status,
            attempts=run.attempt,
        )
        return ProcessResult(Outcome.ERROR, run.id)

    async def _credentials_failed(
        self,
        run: ExecutionRun,
        installation: Installation,
        detail: str,
        log: Any,
        error: AdapterError | None = None,
    ) -> ProcessResult:
        await self._runs.append_log(run.id, detail, level="error")
        await self._finish(
            run.id, installation.id, RunStatus.ERROR,
            error_message=CREDENTIALS_EXPIRED_MESSAGE,
            error_kind=ErrorKind.AUTH_FAILED.value,
            error_code=error.code if error else "credentials_expired",
        )
        await self._registry.disable_for_credentials(installation.id, f"Reconnect required: {detail}")
        log.warning("run_credentials_expired", detail=detail)
        return ProcessResult(Outcome.ERROR, run.id)

    async def _finish(
        self,
        run_id: uuid.UUID,
        installation_id: uuid.UUID,
        status: RunStatus,
        *,
        results: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_kind: str | None = None,
        error_code: str | None = None,
    ) -> None:
        run = await self._runs.finish(
            run_id, status,
            results=results, error_message=error_message, error_kind=error_kind, error_code=error_code,
        )
        if run is None:
            return
        await self._registry.record_outcome(
            installation_id,
            status,
            completed_at=run.completed_at,
            error_message=error_message if status == RunStatus.ERROR else None,
        )
        await get_metrics().run_finished(status.value, run.duration_ms)
