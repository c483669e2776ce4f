"""Google Search Console adapter."""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

from metricshub.credentials.store import Credential
from metricshub.providers.base import AdapterResult, check_cancelled, operation, require
from metricshub.providers.google import GoogleApiAdapter

_MAX_ROW_LIMIT = 25_000


class SearchConsoleAdapter(GoogleApiAdapter):
    provider_key = "google_search_console"
    base_url = "https://www.googleapis.com/webmasters/v3"

    @operation("sites.list")
    async def list_sites(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        body = await self._request("GET", "/sites", credential)
        return AdapterResult.ok({"sites": body.get("siteEntry", [])})

    @operation("performance.query")
    async def query_performance(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        # searchAnalytics pages by startRow; a short page means no more rows
        require(params, "site_url", "start_date", "end_date")
        row_limit = min(int(params.get("page_size", _MAX_ROW_LIMIT)), _MAX_ROW_LIMIT)
        start_row = int(params.get("page_token") or 0)
        max_pages = int(params.get("max_pages") or self._max_pages)
        path = f"/sites/{quote(str(params['site_url']), safe='')}/searchAnalytics/query"

        body: dict[str, Any] = {
            "startDate": params["start_date"],
            "endDate": params["end_date"],
            "dimensions": params.get("dimensions", ["query"]),
            "rowLimit": row_limit,
        }
        if params.get("search_type"):
            body["type"] = params["search_type"]

        rows: list[Any] = []
        pages = 0
        while True:
            check_cancelled(cancel)
            page = await self._request("POST", path, credential, json={**body, "startRow": start_row})
            pages += 1
            page_rows = page.get("rows") or []
            rows.extend(page_rows)
            start_row += len(page_rows)
            if len(page_rows) < row_limit:
                return AdapterResult.ok({"rows": rows}, pages=pages)
            if pages >= max_pages:
                return AdapterResult.ok({"rows": rows}, continuation=str(start_row), pages=pages)
