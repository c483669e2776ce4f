"""Google Analytics 4 adapter (Admin API account summaries, Data API reports)."""

from __future__ import annotations

import asyncio
from typing import Any

from metricshub.credentials.store import Credential
from metricshub.providers.base import AdapterResult, check_cancelled, operation, require
from metricshub.providers.google import GoogleApiAdapter

ADMIN_URL = "https://analyticsadmin.googleapis.com/v1beta"
DATA_URL = "https://analyticsdata.googleapis.com/v1beta"
_MAX_REPORT_LIMIT = 100_000


def _names(value: Any, default: list[str]) -> list[dict[str, str]]:
    if value is None:
        value = default
    if isinstance(value, str):
        value = [v.strip() for v in value.split(",") if v.strip()]
    return [{"name": v} for v in value]


class GoogleAnalyticsAdapter(GoogleApiAdapter):
    provider_key = "google_analytics"
    base_url = ADMIN_URL

    @operation("accounts.list")
    async def list_accounts(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        return await self._paginate(
            "GET",
            "/accountSummaries",
            credential,
            items_key="accountSummaries",
            params={"pageSize": params.get("page_size", 200)},
            cancel=cancel,
            page_token=params.get("page_token"),
        )

    @operation("reports.run")
    async def run_report(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        """GA4 runReport, paged by offset. The continuation is the next offset."""
        require(params, "property_id")
        property_id = str(params["property_id"]).removeprefix("properties/")
        limit = min(int(params.get("page_size", 10_000)), _MAX_REPORT_LIMIT)
        offset = int(params.get("page_token") or 0)
        max_pages = int(params.get("max_pages") or self._max_pages)

        body: dict[str, Any] = {
            "dateRanges": [{
                "startDate": params.get("start_date", "30daysAgo"),
                "endDate": params.get("end_date", "today"),
            }],
            "metrics": _names(params.get("metrics"), ["activeUsers", "sessions"]),
            "dimensions": _names(params.get("dimensions"), ["date"]),
            "limit": limit,
        }

        rows: list[Any] = []
        headers: dict[str, Any] = {}
        row_count = 0
        pages = 0
        while True:
            check_cancelled(cancel)
            page = await self._request(
                "POST",
                f"{DATA_URL}/properties/{property_id}:runReport",
                credential,
                json={**body, "offset": offset},
            )
            pages += 1
            page_rows = page.get("rows") or []
            rows.extend(page_rows)
            row_count = int(page.get("rowCount", len(rows)))
            headers = {
                "dimensionHeaders": page.get("dimensionHeaders", []),
                "metricHeaders": page.get("metricHeaders", []),
            }
            offset += len(page_rows)
            if not page_rows or offset >= row_count:
                return AdapterResult.ok({"rows": rows, "rowCount": row_count, **headers}, pages=pages)
            if pages >= max_pages:
                return AdapterResult.ok(
                    {"rows": rows, "rowCount": row_count, **headers},
                    continuation=str(offset),
                    pages=pages,
                )
