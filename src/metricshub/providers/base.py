"""Uniform provider adapter contract.

Every adapter exposes ``invoke(operation, credential, params, cancel)`` and
returns an ``AdapterResult``. Provider failures are normalized into an
``AdapterError`` whose ``kind`` drives retry decisions upstream:

    401 / 403                         → auth_failed     (not retryable)
    429 or provider quota markers     → quota_exceeded  (retryable, retry_after_ms hint)
    5xx / timeout / connection error  → transient       (retryable)
    anything else                     → permanent       (not retryable)

Operations are declared with the ``@operation("name")`` decorator; the
adapter base collects them into ``operations`` at class creation.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Mapping

import httpx

from metricshub.credentials.store import Credential

# Reason/status strings that mean "quota or rate limit" in Google-style error bodies
QUOTA_MARKERS = frozenset({
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "quotaExceeded",
    "dailyLimitExceeded",
    "RESOURCE_EXHAUSTED",
    "RATE_EXCEEDED",
    "RESOURCE_TEMPORARILY_EXHAUSTED",
})


class ErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AdapterError:
    """Provider error normalized at the adapter boundary."""

    provider: str
    kind: ErrorKind
    message: str
    http_status: int | None = None
    code: str | None = None
    retry_after_ms: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.QUOTA_EXCEEDED, ErrorKind.TRANSIENT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "kind": self.kind.value,
            "http_status": self.http_status,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
        }


@dataclass(frozen=True)
class AdapterResult:
    success: bool
    data: Any = None
    error: AdapterError | None = None
    continuation: str | None = None
    pages: int = 0

    @classmethod
    def ok(cls, data: Any = None, continuation: str | None = None, pages: int = 1) -> AdapterResult:
        return cls(success=True, data=data, continuation=continuation, pages=pages)

    @classmethod
    def fail(cls, error: AdapterError) -> AdapterResult:
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "pages": self.pages}
        if self.success:
            out["data"] = self.data
            if self.continuation:
                out["continuation"] = self.continuation
        else:
            out["error"] = self.error.to_dict() if self.error else None
        return out


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a lightweight credential/reachability check."""

    ok: bool
    latency_ms: int = 0
    http_status: int | None = None
    error: AdapterError | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)


class ProviderCallError(Exception):
    """Raised inside adapters; carries the already-normalized error."""

    def __init__(self, error: AdapterError) -> None:
        super().__init__(error.message)
        self.error = error


class OperationCancelled(Exception):
    """Raised by an adapter that observed the cancel signal between sub-calls."""


class InvalidParams(ValueError):
    """Operation parameters are missing or malformed."""


def require(params: Mapping[str, Any], *names: str) -> None:
    missing = [n for n in names if params.get(n) in (None, "")]
    if missing:
        raise InvalidParams(f"Missing required parameter(s): {', '.join(missing)}")


def check_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled()


# ─────────────────────────────────────────────────────────────────────────────
# Error classification
# ─────────────────────────────────────────────────────────────────────────────

def _walk_markers(node: Any, found: set[str], delays: list[str]) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            if key in ("reason", "status") and isinstance(value, str):
                found.add(value)
            elif key == "retryDelay" and isinstance(value, str):
                delays.append(value)
            elif key == "errorCode" and isinstance(value, dict):
                found.update(str(v) for v in value.values())
                found.update(value.keys())
            _walk_markers(value, found, delays)
    elif isinstance(node, list):
        for item in node:
            _walk_markers(item, found, delays)


def _duration_ms(text: str) -> int | None:
    """Parse protobuf Duration strings like ``"5s"`` or ``"1.5s"``."""
    text = text.strip()
    if not text.endswith("s"):
        return None
    try:
        return int(math.ceil(float(text[:-1]) * 1000))
    except ValueError:
        return None


def parse_retry_after(headers: Mapping[str, str] | None, now: datetime | None = None) -> int | None:
    """Retry-After header (seconds or HTTP date) in milliseconds."""
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if not raw:
        return None
    raw = raw.strip()
    if raw.isdigit():
        return int(raw) * 1000
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    return max(0, int((when - now).total_seconds() * 1000))


def classify_http_error(
    provider: str,
    status: int,
    body: Any = None,
    headers: Mapping[str, str] | None = None,
) -> AdapterError:
    """Normalize a provider HTTP error response."""
    markers: set[str] = set()
    delays: list[str] = []
    _walk_markers(body, markers, delays)

    message = f"HTTP {status}"
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            message = str(err["message"])
        elif isinstance(err, str):
            message = body.get("error_description") or err

    specific = sorted(markers & QUOTA_MARKERS)
    if status == 429 or specific:
        retry_after = parse_retry_after(headers)
        if retry_after is None:
            parsed = [d for d in (_duration_ms(x) for x in delays) if d is not None]
            retry_after = max(parsed) if parsed else None
        return AdapterError(
            provider=provider,
            kind=ErrorKind.QUOTA_EXCEEDED,
            message=message,
            http_status=status,
            code=specific[0] if specific else str(status),
            retry_after_ms=retry_after,
        )
    if status in (401, 403):
        return AdapterError(provider, ErrorKind.AUTH_FAILED, message, status, str(status))
    if status >= 500 or status == 408:
        return AdapterError(
            provider, ErrorKind.TRANSIENT, message, status, str(status),
            retry_after_ms=parse_retry_after(headers),
        )
    return AdapterError(provider, ErrorKind.PERMANENT, message, status, str(status))


# ─────────────────────────────────────────────────────────────────────────────
# Adapter base
# ─────────────────────────────────────────────────────────────────────────────

OperationHandler = Callable[..., Awaitable[AdapterResult]]


def operation(name: str) -> Callable[[OperationHandler], OperationHandler]:
    """Mark an adapter method as the handler for operation *name*."""

    def decorator(fn: OperationHandler) -> OperationHandler:
        fn._operation_name = name  # type: ignore[attr-defined]
        return fn

    return decorator


class ProviderAdapter(ABC):
    """Base class for provider adapters."""

    provider_key: ClassVar[str]
    auth_provider: ClassVar[str]
    operations: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        ops: dict[str, str] = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                name = getattr(value, "_operation_name", None)
                if name:
                    ops[name] = attr
        cls.operations = ops

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    def supports(self, op: str) -> bool:
        return op in self.operations

    async def invoke(
        self,
        op: str,
        credential: Credential,
        params: Mapping[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AdapterResult:
        if op not in self.operations:
            return AdapterResult.fail(
                AdapterError(
                    provider=self.provider_key,
                    kind=ErrorKind.PERMANENT,
                    message=f"Unsupported operation '{op}' for {self.provider_key}",
                    code="unsupported_operation",
                )
            )
        handler: OperationHandler = getattr(self, self.operations[op])
        return await handler(credential, dict(params or {}), cancel)

    @abstractmethod
    async def probe(self, credential: Credential) -> ProbeResult:
        """Cheap call proving the credential works against the provider."""
