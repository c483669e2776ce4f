"""Shared plumbing for Google API adapters.

All Google products authenticate with the tenant's single Google OAuth
token bundle (auth provider ``google``), speak JSON over REST, and page with
``pageToken`` / ``nextPageToken``.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, ClassVar, Mapping

import httpx
import structlog

from metricshub.config import settings
from metricshub.credentials.store import Credential
from metricshub.db.models import utcnow
from metricshub.providers.base import (
    AdapterResult,
    ProbeResult,
    ProviderAdapter,
    ProviderCallError,
    check_cancelled,
    classify_http_error,
)

logger = structlog.get_logger()


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


class GoogleApiAdapter(ProviderAdapter):
    """Bearer-token REST client with Google-style pagination."""

    auth_provider = "google"
    base_url: ClassVar[str] = ""

    def __init__(self, http: httpx.AsyncClient, max_pages: int | None = None) -> None:
        super().__init__(http)
        self._max_pages = max_pages or settings.provider_max_pages

    def _headers(self, credential: Credential, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"{credential.token_type or 'Bearer'} {credential.access_token}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        credential: Credential,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        resp = await self._http.request(
            method,
            self._url(path),
            params={k: v for k, v in (params or {}).items() if v is not None} or None,
            json=json,
            headers=self._headers(credential, headers),
        )
        if resp.status_code >= 400:
            error = classify_http_error(
                self.provider_key, resp.status_code, _json_or_none(resp), resp.headers
            )
            logger.info(
                "provider_call_failed",
                provider=self.provider_key,
                method=method,
                status_code=resp.status_code,
                kind=error.kind.value,
            )
            raise ProviderCallError(error)
        if resp.status_code == 204 or not resp.content:
            return {}
        body = _json_or_none(resp)
        return body if isinstance(body, dict) else {"data": body}

    async def _paginate(
        self,
        method: str,
        path: str,
        credential: Credential,
        *,
        items_key: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        cancel: asyncio.Event | None = None,
        page_token: str | None = None,
        max_pages: int | None = None,
        result_key: str | None = None,
    ) -> AdapterResult:
        """Fetch pages until exhausted or ``max_pages``; the token travels in the query for GET, body otherwise."""
        limit = max_pages or self._max_pages
        items: list[Any] = []
        token = page_token
        pages = 0
        extra: dict[str, Any] = {}

        while True:
            check_cancelled(cancel)
            query = dict(params or {})
            payload = dict(body) if body is not None else None
            if token:
                if method == "GET" or payload is None:
                    query["pageToken"] = token
                else:
                    payload["pageToken"] = token

            page = await self._request(method, path, credential, params=query, json=payload, headers=headers)
            pages += 1
            items.extend(page.get(items_key) or [])
            for key in ("resultSizeEstimate", "totalResults", "fieldMask"):
                if key in page:
                    extra[key] = page[key]

            token = page.get("nextPageToken")
            if not token:
                return AdapterResult.ok({result_key or items_key: items, **extra}, pages=pages)
            if pages >= limit:
                return AdapterResult.ok(
                    {result_key or items_key: items, **extra}, continuation=token, pages=pages
                )

    async def probe(self, credential: Credential) -> ProbeResult:
        """Token introspection against Google's tokeninfo endpoint."""
        started = time.monotonic()
        resp = await self._http.get(
            settings.google_tokeninfo_url,
            params={"access_token": credential.access_token},
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        body = _json_or_none(resp) or {}

        if resp.status_code >= 400:
            error = classify_http_error(self.provider_key, resp.status_code, body, resp.headers)
            if resp.status_code == 400:
                # tokeninfo answers 400 invalid_token for revoked/expired tokens
                error = classify_http_error(self.provider_key, 401, body, resp.headers)
            return ProbeResult(ok=False, latency_ms=latency_ms, http_status=resp.status_code, error=error)

        expires_in = body.get("expires_in")
        return ProbeResult(
            ok=True,
            latency_ms=latency_ms,
            http_status=resp.status_code,
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=str(body.get("scope", "")).split(),
        )
