"""Tests for provider adapters, error classification and the adapter registry."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest
from conftest import FakeAdapter

from metricshub.core.circuit_breaker import BreakerConfig, BreakerState
from metricshub.core.errors import UnknownProvider
from metricshub.credentials.store import Credential
from metricshub.providers.base import (
    AdapterResult,
    ErrorKind,
    ProbeResult,
    ProviderAdapter,
    classify_http_error,
    parse_retry_after,
)
from metricshub.providers.google_analytics import GoogleAnalyticsAdapter
from metricshub.providers.google_workspace import GoogleDriveAdapter
from metricshub.providers.registry import AdapterRegistry, build_default_registry
from metricshub.providers.search_console import SearchConsoleAdapter

CREDENTIAL = Credential(provider_key="google", access_token="ya29.token")


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ─────────────────────────────────────────────────────────────────────────────
# Error classification
# ─────────────────────────────────────────────────────────────────────────────

class TestClassifyHttpError:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failures(self, status):
        error = classify_http_error("google_ads", status, {"error": {"message": "Request had invalid credentials."}})
        assert error.kind == ErrorKind.AUTH_FAILED
        assert error.message == "Request had invalid credentials."
        assert not error.retryable

    def test_rate_limit_with_retry_after_header(self):
        error = classify_http_error("google_ads", 429, None, {"Retry-After": "30"})
        assert error.kind == ErrorKind.QUOTA_EXCEEDED
        assert error.retry_after_ms == 30_000
        assert error.retryable

    def test_quota_marker_on_403(self):
        body = {"error": {"code": 403, "message": "Quota exceeded", "errors": [{"reason": "dailyLimitExceeded"}]}}
        error = classify_http_error("google_drive", 403, body)
        assert error.kind == ErrorKind.QUOTA_EXCEEDED
        assert error.code == "dailyLimitExceeded"

    def test_google_ads_resource_exhausted_with_retry_delay(self):
        body = {
            "error": {
                "status": "RESOURCE_EXHAUSTED",
                "details": [{"errors": [{"errorCode": {"quotaError": "RESOURCE_EXHAUSTED"}}]}, {"retryDelay": "12.5s"}],
            }
        }
        error = classify_http_error("google_ads", 429, body)
        assert error.kind == ErrorKind.QUOTA_EXCEEDED
        assert error.retry_after_ms == 12_500

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408])
    def test_server_errors_are_transient(self, status):
        assert classify_http_error("google", status).kind == ErrorKind.TRANSIENT

    @pytest.mark.parametrize("status", [400, 404, 409])
    def test_client_errors_are_permanent(self, status):
        error = classify_http_error("google", status, {"error": "invalid_request", "error_description": "bad field"})
        assert error.kind == ErrorKind.PERMANENT
        assert error.message == "bad field"


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after({"retry-after": "5"}) == 5000

    def test_http_date(self):
        now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=90), usegmt=True)
        assert parse_retry_after({"Retry-After": header}, now=now) == 90_000

    def test_garbage_and_missing(self):
        assert parse_retry_after({"Retry-After": "soon"}) is None
        assert parse_retry_after({}) is None
        assert parse_retry_after(None) is None


# ─────────────────────────────────────────────────────────────────────────────
# Adapters
# ─────────────────────────────────────────────────────────────────────────────

class TestOperationRegistration:
    def test_operations_collected(self):
        assert set(GoogleDriveAdapter.operations) == {"files.list", "files.get"}
        assert SearchConsoleAdapter.operations["performance.query"] == "query_performance"

    async def test_unsupported_operation_is_permanent(self):
        adapter = GoogleDriveAdapter(mock_client(lambda r: httpx.Response(200)))
        result = await adapter.invoke("files.delete", CREDENTIAL, {})
        assert not result.success
        assert result.error.kind == ErrorKind.PERMANENT
        assert result.error.code == "unsupported_operation"


class TestDrivePagination:
    async def test_follows_page_tokens(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = request.url.params.get("pageToken")
            seen.append(token)
            assert request.headers["Authorization"] == "Bearer ya29.token"
            if token is None:
                return httpx.Response(200, json={"files": [{"id": "1"}], "nextPageToken": "p2"})
            return httpx.Response(200, json={"files": [{"id": "2"}]})

        result = await GoogleDriveAdapter(mock_client(handler)).invoke("files.list", CREDENTIAL, {})
        assert result.success
        assert [f["id"] for f in result.data["files"]] == ["1", "2"]
        assert result.pages == 2
        assert result.continuation is None
        assert seen == [None, "p2"]

    async def test_stops_at_max_pages_with_continuation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            n = int(request.url.params.get("pageToken") or 0)
            return httpx.Response(200, json={"files": [{"id": str(n)}], "nextPageToken": str(n + 1)})

        adapter = GoogleDriveAdapter(mock_client(handler))
        result = await adapter.invoke("files.list", CREDENTIAL, {"max_pages": 3})
        assert result.pages == 3
        assert result.continuation == "3"

        resumed = await adapter.invoke("files.list", CREDENTIAL, {"max_pages": 1, "page_token": result.continuation})
        assert resumed.data["files"] == [{"id": "3"}]

    async def test_provider_error_normalized(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

        registry = AdapterRegistry()
        registry.register(GoogleDriveAdapter(mock_client(handler)))
        result = await registry.invoke("google_drive", "files.list", CREDENTIAL, {})
        assert result.error.kind == ErrorKind.AUTH_FAILED
        assert result.error.http_status == 401

    async def test_cancel_between_pages(self):
        cancel = asyncio.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            cancel.set()
            return httpx.Response(200, json={"files": [{"id": "1"}], "nextPageToken": "p2"})

        registry = AdapterRegistry()
        registry.register(GoogleDriveAdapter(mock_client(handler)))
        result = await registry.invoke("google_drive", "files.list", CREDENTIAL, {}, cancel=cancel)
        assert result.error.kind == ErrorKind.CANCELLED


class TestSearchConsole:
    async def test_pages_by_start_row(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            start = body["startRow"]
            rows = [{"keys": [f"q{start + i}"]} for i in range(2 if start < 4 else 1)]
            return httpx.Response(200, json={"rows": rows})

        adapter = SearchConsoleAdapter(mock_client(handler))
        result = await adapter.invoke(
            "performance.query",
            CREDENTIAL,
            {"site_url": "sc-domain:example.com", "start_date": "2026-02-01", "end_date": "2026-02-28", "page_size": 2},
        )
        assert len(result.data["rows"]) == 5
        assert [b["startRow"] for b in bodies] == [0, 2, 4]
        assert result.continuation is None

    async def test_missing_params_are_permanent(self):
        registry = AdapterRegistry()
        registry.register(SearchConsoleAdapter(mock_client(lambda r: httpx.Response(200, json={}))))
        result = await registry.invoke("google_search_console", "performance.query", CREDENTIAL, {})
        assert result.error.kind == ErrorKind.PERMANENT
        assert result.error.code == "invalid_params"
        assert "site_url" in result.error.message


class TestGoogleAnalytics:
    async def test_report_paged_by_offset(self):
        offsets = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            offsets.append(body["offset"])
            assert request.url.path == "/v1beta/properties/1234:runReport"
            return httpx.Response(200, json={"rows": [{"v": body["offset"]}], "rowCount": 3})

        adapter = GoogleAnalyticsAdapter(mock_client(handler))
        result = await adapter.invoke("reports.run", CREDENTIAL, {"property_id": "properties/1234", "page_size": 1})
        assert offsets == [0, 1, 2]
        assert result.data["rowCount"] == 3
        assert len(result.data["rows"]) == 3


class TestProbe:
    async def test_tokeninfo_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"expires_in": "1800", "scope": "a b"})

        probe = await GoogleDriveAdapter(mock_client(handler)).probe(CREDENTIAL)
        assert probe.ok
        assert probe.scopes == ["a", "b"]
        assert probe.expires_at is not None

    async def test_invalid_token_is_auth_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_token"})

        probe = await GoogleDriveAdapter(mock_client(handler)).probe(CREDENTIAL)
        assert not probe.ok
        assert probe.error.kind == ErrorKind.AUTH_FAILED


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

class SlowAdapter(ProviderAdapter):
    provider_key = "slow"
    auth_provider = "slow"

    def __init__(self) -> None:
        pass

    async def probe(self, credential: Credential) -> ProbeResult:
        await asyncio.sleep(5)
        return ProbeResult(ok=True)


class TestAdapterRegistry:
    def test_unknown_provider(self):
        with pytest.raises(UnknownProvider):
            AdapterRegistry().get("salesforce")

    def test_default_registry_has_google_products(self):
        registry = build_default_registry(mock_client(lambda r: httpx.Response(200)))
        assert "google_search_console" in registry.providers()
        assert "google_ads" in registry.providers()
        assert registry.auth_provider_for("google_analytics") == "google"

    async def test_timeout_is_transient(self):
        adapter = FakeAdapter()
        adapter.block = asyncio.Event()
        registry = AdapterRegistry()
        registry.register(adapter)
        result = await registry.invoke("fake", "data.fetch", CREDENTIAL, {}, timeout=0.05)
        assert result.error.kind == ErrorKind.TRANSIENT
        assert result.error.code == "timeout"

    async def test_probe_timeout(self):
        registry = AdapterRegistry()
        registry.register(SlowAdapter())
        probe = await registry.probe("slow", CREDENTIAL, timeout=0.05)
        assert not probe.ok
        assert probe.error.code == "timeout"

    async def test_breaker_opens_after_repeated_transient_failures(self):
        adapter = FakeAdapter()
        registry = AdapterRegistry(breaker_config=BreakerConfig(failure_threshold=3, recovery_timeout=60, minimum_calls=3))
        registry.register(adapter)
        failure = AdapterResult.fail(
            classify_http_error("fake", 503)
        )
        adapter.script = [failure, failure, failure]
        for _ in range(3):
            assert (await registry.invoke("fake", "data.fetch", CREDENTIAL, {})).error.code == "503"

        blocked = await registry.invoke("fake", "data.fetch", CREDENTIAL, {})
        assert blocked.error.kind == ErrorKind.TRANSIENT
        assert blocked.error.code == "circuit_open"
        assert blocked.error.retry_after_ms > 0
        assert len(adapter.calls) == 3

    async def test_auth_failures_do_not_trip_breaker(self):
        adapter = FakeAdapter()
        registry = AdapterRegistry(breaker_config=BreakerConfig(failure_threshold=2, minimum_calls=1))
        registry.register(adapter)
        adapter.script = [AdapterResult.fail(classify_http_error("fake", 401)) for _ in range(5)]
        for _ in range(5):
            result = await registry.invoke("fake", "data.fetch", CREDENTIAL, {})
            assert result.error.kind == ErrorKind.AUTH_FAILED
        assert registry.breaker("fake").state == BreakerState.CLOSED

    async def test_adapter_exception_becomes_permanent_error(self):
        adapter = FakeAdapter()
        registry = AdapterRegistry()
        registry.register(adapter)
        adapter.script = [RuntimeError("unexpected payload")]
        result = await registry.invoke("fake", "data.fetch", CREDENTIAL, {})
        assert not result.success
        assert result.error.kind == ErrorKind.PERMANENT
        assert result.error.code == "adapter_error"
        assert result.error.message == "RuntimeError: unexpected payload"

    async def test_cancelled_trial_call_frees_half_open_slot(self):
        adapter = FakeAdapter()
        registry = AdapterRegistry(breaker_config=BreakerConfig(
            failure_threshold=1, recovery_timeout=0, half_open_max_calls=1, minimum_calls=1,
        ))
        registry.register(adapter)
        adapter.script = [AdapterResult.fail(classify_http_error("fake", 503))]
        await registry.invoke("fake", "data.fetch", CREDENTIAL, {})
        assert registry.breaker("fake").state == BreakerState.OPEN

        adapter.started.clear()
        adapter.block = asyncio.Event()
        task = asyncio.create_task(registry.invoke("fake", "data.fetch", CREDENTIAL, {}))
        await asyncio.wait_for(adapter.started.wait(), timeout=5)
        assert registry.breaker("fake").state == BreakerState.HALF_OPEN
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        adapter.block.set()
        result = await registry.invoke("fake", "data.fetch", CREDENTIAL, {})
        assert result.success
        assert registry.breaker("fake").state == BreakerState.CLOSED
