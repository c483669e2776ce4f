"""Per-installation execution lease.

At most one attempt per installation may hold the lease. The lease carries a
TTL so a worker that dies while holding it cannot block the installation
forever; the TTL should exceed the longest application timeout.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.config import settings
from metricshub.db.models import Installation, utcnow
from metricshub.db.session import db_session


class InstallationLock(ABC):
    @abstractmethod
    async def acquire(self, installation_id: uuid.UUID, owner: str, ttl_seconds: int | None = None) -> bool:
        """Take the lease; False if someone else holds an unexpired one."""

    @abstractmethod
    async def release(self, installation_id: uuid.UUID, owner: str) -> None:
        """Drop the lease if *owner* still holds it."""


class LocalInstallationLock(InstallationLock):
    """In-process lease table for tests and single-process deployments."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._held: dict[uuid.UUID, tuple[str, datetime]] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, installation_id: uuid.UUID, owner: str, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds or settings.lock_ttl_seconds
        async with self._mutex:
            now = self._clock()
            held = self._held.get(installation_id)
            if held is not None and held[0] != owner and held[1] > now:
                return False
            self._held[installation_id] = (owner, now + timedelta(seconds=ttl))
            return True

    async def release(self, installation_id: uuid.UUID, owner: str) -> None:
        async with self._mutex:
            held = self._held.get(installation_id)
            if held is not None and held[0] == owner:
                del self._held[installation_id]

    def holder(self, installation_id: uuid.UUID) -> str | None:
        held = self._held.get(installation_id)
        return held[0] if held else None


class SqlInstallationLock(InstallationLock):
    """Lease stored on the installation row, taken with a conditional UPDATE."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def acquire(self, installation_id: uuid.UUID, owner: str, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds or settings.lock_ttl_seconds
        now = self._clock()
        async with db_session(self._sessions) as db:
            result = await db.execute(
                update(Installation)
                .where(
                    Installation.id == installation_id,
                    or_(
                        Installation.lock_owner.is_(None),
                        Installation.lock_owner == owner,
                        Installation.lock_expires_at.is_(None),
                        Installation.lock_expires_at <= now,
                    ),
                )
                .values(lock_owner=owner, lock_expires_at=now + timedelta(seconds=ttl))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release(self, installation_id: uuid.UUID, owner: str) -> None:
        async with db_session(self._sessions) as db:
            await db.execute(
                update(Installation)
                .where(Installation.id == installation_id, Installation.lock_owner == owner)
                .values(lock_owner=None, lock_expires_at=None)
                .execution_options(synchronize_session=False)
            )
