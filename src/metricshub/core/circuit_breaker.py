"""Circuit breaker for outbound provider calls.

One breaker per provider key. When a provider keeps failing with transient
errors (5xx, timeouts, connection resets) the breaker opens and further calls
short-circuit to a retryable error instead of piling onto a degraded API:

  CLOSED ──(failure_threshold exceeded)──► OPEN
  OPEN   ──(recovery_timeout elapsed)───► HALF_OPEN
  HALF_OPEN ──(call succeeds)────────────► CLOSED
  HALF_OPEN ──(call fails)───────────────► OPEN

Usage
-----
    cb = get_circuit_breaker("provider:google_ads")

    await cb.acquire()          # raises CircuitBreakerOpen
    result = await adapter.invoke(...)
    if provider_looks_down(result):
        await cb.record_failure(reason)
    else:
        await cb.record_success()

Only transient failures should be recorded; auth and validation errors say
nothing about provider availability.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable

import structlog

logger = structlog.get_logger()


# ─────────────────────────────────────────────────────────────────────────────
# State and exceptions
# ─────────────────────────────────────────────────────────────────────────────

class BreakerState(Enum):
    CLOSED = auto()     # Normal: calls pass through
    OPEN = auto()       # Tripped: calls are blocked
    HALF_OPEN = auto()  # Recovery probe: limited calls allowed


class CircuitBreakerOpen(Exception):
    """Raised when a call is attempted while the breaker is OPEN."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after  # seconds until next probe
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. "
            f"Retry after {retry_after:.1f}s."
        )


@dataclass(frozen=True)
class BreakerConfig:
    """Tuning parameters for one circuit breaker."""

    # Consecutive transient failures before tripping to OPEN
    failure_threshold: int = 5

    # Seconds in OPEN before a probe is allowed
    recovery_timeout: float = 30.0

    # Concurrent probe calls allowed in HALF_OPEN
    half_open_max_calls: int = 2

    # Calls seen before the breaker may trip at all
    minimum_calls: int = 3


# ─────────────────────────────────────────────────────────────────────────────
# Circuit breaker
# ─────────────────────────────────────────────────────────────────────────────

class CircuitBreaker:
    """Async circuit breaker for a single provider."""

    def __init__(
        self,
        name: str,
        config: BreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._failure_count: int = 0
        self._call_count: int = 0
        self._half_open_calls: int = 0
        self._opened_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Admit one call or raise CircuitBreakerOpen."""
        async with self._lock:
            if self._state == BreakerState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed >= self.config.recovery_timeout:
                    self._transition_to_half_open()
                else:
                    raise CircuitBreakerOpen(self.name, self.config.recovery_timeout - elapsed)

            if self._state == BreakerState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitBreakerOpen(self.name, 0.0)
                self._half_open_calls += 1

            self._call_count += 1

    def release(self) -> None:
        """Return an admitted call that ended without an outcome (e.g. cancelled)."""
        if self._state == BreakerState.HALF_OPEN and self._half_open_calls:
            self._half_open_calls -= 1

    async def record_success(self) -> None:
        async with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._transition_to_closed()
            elif self._failure_count:
                self._failure_count = 0

    async def record_failure(self, reason: str = "") -> None:
        async with self._lock:
            self._failure_count += 1
            logger.warning(
                "circuit_breaker_failure",
                name=self.name,
                state=self._state.name,
                failure_count=self._failure_count,
                threshold=self.config.failure_threshold,
                error=reason[:200],
            )
            if self._state == BreakerState.HALF_OPEN:
                self._transition_to_open()
            elif (
                self._call_count >= self.config.minimum_calls
                and self._failure_count >= self.config.failure_threshold
            ):
                self._transition_to_open()

    def _transition_to_open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0
        logger.error("circuit_breaker_opened", name=self.name, failure_count=self._failure_count)

    def _transition_to_half_open(self) -> None:
        self._state = BreakerState.HALF_OPEN
        self._half_open_calls = 0
        logger.info("circuit_breaker_half_open", name=self.name)

    def _transition_to_closed(self) -> None:
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._call_count = 0
        self._half_open_calls = 0
        logger.info("circuit_breaker_closed", name=self.name)

    def snapshot(self) -> dict:
        elapsed_open = (
            round(self._clock() - self._opened_at, 1)
            if self._state == BreakerState.OPEN
            else None
        )
        return {
            "name": self.name,
            "state": self._state.name,
            "failure_count": self._failure_count,
            "call_count": self._call_count,
            "elapsed_open_s": elapsed_open,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout_s": self.config.recovery_timeout,
            },
        }


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
    """Return (or lazily create) the named circuit breaker singleton."""
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(name=name, config=config or BreakerConfig())
    return _breakers[name]


def all_breaker_snapshots() -> list[dict]:
    """Snapshot of all registered circuit breakers (for /metrics)."""
    return [cb.snapshot() for cb in _breakers.values()]
