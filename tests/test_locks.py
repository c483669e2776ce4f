"""Tests for the per-installation execution lease."""

from __future__ import annotations

import asyncio

import pytest_asyncio
from conftest import TENANT

from metricshub.execution.locks import LocalInstallationLock, SqlInstallationLock


@pytest_asyncio.fixture(params=["local", "sql"])
async def lock_and_id(request, clock, application, session_factory, harness):
    inst = await harness.registry.install(TENANT, application.id)
    if request.param == "local":
        return LocalInstallationLock(clock=clock), inst.id
    return SqlInstallationLock(session_factory, clock=clock), inst.id


class TestInstallationLock:
    async def test_exclusive(self, lock_and_id):
        lock, inst = lock_and_id
        assert await lock.acquire(inst, "a", 60)
        assert not await lock.acquire(inst, "b", 60)

    async def test_reentrant_for_same_owner(self, lock_and_id):
        lock, inst = lock_and_id
        assert await lock.acquire(inst, "a", 60)
        assert await lock.acquire(inst, "a", 60)

    async def test_release_frees(self, lock_and_id):
        lock, inst = lock_and_id
        await lock.acquire(inst, "a", 60)
        await lock.release(inst, "a")
        assert await lock.acquire(inst, "b", 60)

    async def test_release_by_non_owner_ignored(self, lock_and_id):
        lock, inst = lock_and_id
        await lock.acquire(inst, "a", 60)
        await lock.release(inst, "b")
        assert not await lock.acquire(inst, "b", 60)

    async def test_expired_lease_taken_over(self, lock_and_id, clock):
        lock, inst = lock_and_id
        await lock.acquire(inst, "a", 60)
        clock.advance(seconds=60)
        assert await lock.acquire(inst, "b", 60)
        # The old holder can no longer release the new lease
        await lock.release(inst, "a")
        assert not await lock.acquire(inst, "c", 60)

    async def test_concurrent_acquire_has_one_winner(self, clock, application, harness):
        lock = LocalInstallationLock(clock=clock)
        inst = (await harness.registry.install(TENANT, application.id)).id
        results = await asyncio.gather(*(lock.acquire(inst, f"w{i}", 60) for i in range(8)))
        assert results.count(True) == 1
