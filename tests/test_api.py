"""Tests for the HTTP API (installation endpoints and service health)."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from conftest import TENANT, FakeAdapter, create_application

from metricshub.app import build_services, create_app
from metricshub.credentials.store import Credential
from metricshub.execution.locks import LocalInstallationLock
from metricshub.jobs.queue import InMemoryJobQueue
from metricshub.providers.registry import AdapterRegistry


@pytest.fixture
def services(session_factory, cipher):
    adapters = AdapterRegistry()
    adapters.register(FakeAdapter())
    return build_services(
        session_factory,
        queue=InMemoryJobQueue(max_depth=3),
        locks=LocalInstallationLock(),
        adapters=adapters,
        cipher=cipher,
        refreshers=[],
        worker_id="api-test",
    )


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def app_id(session_factory) -> str:
    return str((await create_application(session_factory, supported_frequencies=["1h", "24h"])).id)


async def install(client, app_id: str, **body) -> dict:
    resp = await client.post("/installations", json={"tenant_id": TENANT, "application_id": app_id, **body})
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestInstallEndpoints:
    async def test_install(self, client, app_id):
        body = await install(client, app_id, frequency="1h", config={"site_url": "https://example.com"})
        assert body["status"] == "active"
        assert body["is_enabled"] is True
        assert body["frequency"] == "1h"
        assert body["config"] == {"site_url": "https://example.com"}
        assert body["health_status"] == "unknown"
        next_run = datetime.fromisoformat(body["next_run_at"])
        assert next_run - datetime.now(timezone.utc) <= timedelta(hours=1)

    async def test_duplicate_install_conflicts(self, client, app_id):
        await install(client, app_id)
        resp = await client.post("/installations", json={"tenant_id": TENANT, "application_id": app_id})
        assert resp.status_code == 409
        assert resp.json()["error"] == "AlreadyInstalled"

    async def test_unknown_application(self, client):
        resp = await client.post("/installations", json={"tenant_id": TENANT, "application_id": str(uuid.uuid4())})
        assert resp.status_code == 404

    @pytest.mark.parametrize("frequency", ["12h", "every so often"])
    async def test_rejected_frequency(self, client, app_id, frequency):
        resp = await client.post(
            "/installations",
            json={"tenant_id": TENANT, "application_id": app_id, "frequency": frequency},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "ScheduleConfigInvalid"

    async def test_request_validation(self, client):
        resp = await client.post("/installations", json={"tenant_id": ""})
        assert resp.status_code == 422

    async def test_list_get_update_delete(self, client, app_id):
        created = await install(client, app_id)
        listed = (await client.get("/installations", params={"tenant_id": TENANT})).json()
        assert [i["id"] for i in listed] == [created["id"]]
        assert (await client.get("/installations", params={"tenant_id": "someone-else"})).json() == []

        patched = await client.patch(f"/installations/{created['id']}", json={"is_enabled": False, "name": "Weekly SEO"})
        assert patched.status_code == 200
        assert patched.json()["is_enabled"] is False
        assert patched.json()["name"] == "Weekly SEO"

        assert (await client.delete(f"/installations/{created['id']}")).status_code == 204
        assert (await client.get(f"/installations/{created['id']}")).status_code == 404

    async def test_unknown_installation(self, client):
        assert (await client.get(f"/installations/{uuid.uuid4()}")).status_code == 404
        assert (await client.post(f"/installations/{uuid.uuid4()}/trigger")).status_code == 404


class TestRunEndpoints:
    async def test_trigger_and_list_runs(self, client, services, app_id):
        created = await install(client, app_id)
        await services.credentials.connect(
            TENANT, "fake",
            Credential(provider_key="fake", access_token="t", expires_at=datetime.now(timezone.utc) + timedelta(days=1)),
        )

        resp = await client.post(f"/installations/{created['id']}/trigger", json={"user_id": "u-1"})
        assert resp.status_code == 202
        assert resp.json()["status"] == "queued"

        assert await services.workers.run_once() == 1
        runs = (await client.get(f"/installations/{created['id']}/runs")).json()
        assert len(runs) == 1
        assert runs[0]["status"] == "success"
        assert runs[0]["triggered_by"] == "manual"
        assert runs[0]["attempts"][0]["outcome"] == "success"

        inst = (await client.get(f"/installations/{created['id']}")).json()
        assert inst["run_count"] == 1

    async def test_cancel_unknown_run(self, client, app_id):
        created = await install(client, app_id)
        resp = await client.post(f"/installations/{created['id']}/runs/{uuid.uuid4()}/cancel")
        assert resp.status_code == 404
        assert resp.json()["error"] == "RunNotFound"

    async def test_queue_full_is_503_with_retry_after(self, client, app_id):
        created = await install(client, app_id)
        for _ in range(3):
            assert (await client.post(f"/installations/{created['id']}/trigger")).status_code == 202
        resp = await client.post(f"/installations/{created['id']}/trigger")
        assert resp.status_code == 503
        assert resp.json()["error"] == "QueueFull"
        assert "retry-after" in resp.headers

    async def test_runs_limit_validated(self, client, app_id):
        created = await install(client, app_id)
        assert (await client.get(f"/installations/{created['id']}/runs", params={"limit": 0})).status_code == 422

    async def test_health_before_first_probe(self, client, app_id):
        created = await install(client, app_id)
        body = (await client.get(f"/installations/{created['id']}/health")).json()
        assert body["status"] == "unknown"
        assert body["checked_at"] is None


class TestServiceEndpoints:
    async def test_health(self, client):
        assert (await client.get("/health")).json() == {"status": "ok", "service": "metricshub"}

    async def test_health_db(self, client):
        resp = await client.get("/health/db")
        assert resp.status_code == 200
        assert resp.json()["database"] == "connected"

    async def test_metrics(self, client):
        body = (await client.get("/metrics")).json()
        assert body["queue_depth"] == 0
        assert body["workers"]["running"] is False
        assert body["circuit_breakers"] == []
        assert "run_duration_ms" in body["histograms"]

    def test_factory_builds_independent_apps(self, services):
        import metricshub.app as app_module

        first, second = create_app(services), create_app(services)
        assert first is not second
        assert first.state.services is services
        assert {"/health", "/metrics", "/health/db"} <= {route.path for route in first.routes}
        assert not hasattr(app_module, "api")
