"""Provider adapter registry.

The only place provider identity is resolved. Everything that leaves
``invoke``/``probe`` is an ``AdapterResult``/``ProbeResult`` with a normalized
error; raw httpx exceptions, timeouts and adapter exceptions never escape.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping

import httpx
import structlog

from metricshub.config import settings
from metricshub.core.circuit_breaker import (
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerOpen,
    get_circuit_breaker,
)
from metricshub.core.errors import UnknownProvider
from metricshub.credentials.store import Credential
from metricshub.observability.metrics import get_metrics
from metricshub.providers.base import (
    AdapterError,
    AdapterResult,
    ErrorKind,
    InvalidParams,
    OperationCancelled,
    ProbeResult,
    ProviderAdapter,
    ProviderCallError,
)

logger = structlog.get_logger()


def _error(provider: str, kind: ErrorKind, message: str, code: str, **kw: Any) -> AdapterError:
    return AdapterError(provider=provider, kind=kind, message=message, code=code, **kw)


class AdapterRegistry:
    def __init__(
        self,
        breaker_config: BreakerConfig | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        self._breaker_config = breaker_config or BreakerConfig(
            failure_threshold=settings.provider_breaker_failure_threshold,
            recovery_timeout=settings.provider_breaker_recovery_s,
        )
        self._http = http

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider_key] = adapter

    def get(self, provider_key: str) -> ProviderAdapter:
        try:
            return self._adapters[provider_key]
        except KeyError:
            raise UnknownProvider(provider_key) from None

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def auth_provider_for(self, provider_key: str) -> str:
        """Key under which the provider's OAuth tokens are stored."""
        return self.get(provider_key).auth_provider

    def breaker(self, provider_key: str) -> CircuitBreaker:
        return get_circuit_breaker(f"provider:{provider_key}", self._breaker_config)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    # ─────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────

    async def invoke(
        self,
        provider_key: str,
        operation: str,
        credential: Credential,
        params: Mapping[str, Any] | None = None,
        *,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> AdapterResult:
        """Run one adapter operation through the provider's circuit breaker."""
        adapter = self.get(provider_key)
        breaker = self.breaker(provider_key)
        try:
            await breaker.acquire()
        except CircuitBreakerOpen as exc:
            logger.warning("provider_circuit_open", provider=provider_key, retry_after_s=round(exc.retry_after, 1))
            return AdapterResult.fail(_error(
                provider_key, ErrorKind.TRANSIENT, str(exc), "circuit_open",
                retry_after_ms=int(exc.retry_after * 1000),
            ))

        started = time.monotonic()
        try:
            result = await self._guarded(adapter, operation, credential, params, cancel, timeout)
        except asyncio.CancelledError:
            breaker.release()
            raise
        elapsed_ms = (time.monotonic() - started) * 1000

        if result.error is not None and result.error.kind == ErrorKind.TRANSIENT:
            await breaker.record_failure(result.error.message)
        else:
            await breaker.record_success()

        await get_metrics().adapter_called(
            provider_key, elapsed_ms, result.error.kind.value if result.error else None
        )
        logger.info(
            "provider_invoked",
            provider=provider_key,
            operation=operation,
            success=result.success,
            error_kind=result.error.kind.value if result.error else None,
            pages=result.pages,
            elapsed_ms=round(elapsed_ms),
        )
        return result

    async def _guarded(
        self,
        adapter: ProviderAdapter,
        operation: str,
        credential: Credential,
        params: Mapping[str, Any] | None,
        cancel: asyncio.Event | None,
        timeout: float | None,
    ) -> AdapterResult:
        key = adapter.provider_key
        try:
            call = adapter.invoke(operation, credential, params, cancel)
            if timeout:
                return await asyncio.wait_for(call, timeout)
            return await call
        except ProviderCallError as exc:
            return AdapterResult.fail(exc.error)
        except OperationCancelled:
            return AdapterResult.fail(_error(key, ErrorKind.CANCELLED, "Operation cancelled", "cancelled"))
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return AdapterResult.fail(_error(
                key, ErrorKind.TRANSIENT, f"{operation} timed out after {timeout}s", "timeout"
            ))
        except httpx.TransportError as exc:
            return AdapterResult.fail(_error(key, ErrorKind.TRANSIENT, str(exc) or type(exc).__name__, "connection_error"))
        except (InvalidParams, ValueError, KeyError, TypeError) as exc:
            return AdapterResult.fail(_error(key, ErrorKind.PERMANENT, str(exc), "invalid_params"))
        except Exception as exc:
            logger.error("adapter_crashed", provider=key, operation=operation, error=str(exc), exc_info=True)
            return AdapterResult.fail(_error(
                key, ErrorKind.PERMANENT, f"{type(exc).__name__}: {exc}", "adapter_error"
            ))

    async def probe(self, provider_key: str, credential: Credential, timeout: float | None = None) -> ProbeResult:
        adapter = self.get(provider_key)
        started = time.monotonic()
        try:
            return await asyncio.wait_for(adapter.probe(credential), timeout or settings.health_probe_timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = _error(provider_key, ErrorKind.TRANSIENT, "probe timed out", "timeout")
        except httpx.TransportError as exc:
            error = _error(provider_key, ErrorKind.TRANSIENT, str(exc) or type(exc).__name__, "connection_error")
        except Exception as exc:
            logger.error("probe_crashed", provider=provider_key, error=str(exc), exc_info=True)
            error = _error(provider_key, ErrorKind.PERMANENT, f"{type(exc).__name__}: {exc}", "adapter_error")
        return ProbeResult(ok=False, latency_ms=int((time.monotonic() - started) * 1000), error=error)


def build_default_registry(http: httpx.AsyncClient | None = None) -> AdapterRegistry:
    """Registry with every Google adapter sharing one HTTP client."""
    from metricshub.providers.google_ads import GoogleAdsAdapter
    from metricshub.providers.google_analytics import GoogleAnalyticsAdapter
    from metricshub.providers.google_workspace import (
        GmailAdapter,
        GoogleDocsAdapter,
        GoogleDriveAdapter,
        GoogleSheetsAdapter,
    )
    from metricshub.providers.search_console import SearchConsoleAdapter

    owned = http is None
    client = http or httpx.AsyncClient(timeout=settings.provider_http_timeout_s)
    registry = AdapterRegistry(http=client if owned else None)
    for adapter_cls in (
        GoogleAdsAdapter,
        GoogleAnalyticsAdapter,
        GoogleSheetsAdapter,
        GoogleDocsAdapter,
        GoogleDriveAdapter,
        GmailAdapter,
        SearchConsoleAdapter,
    ):
        registry.register(adapter_cls(client))
    return registry
