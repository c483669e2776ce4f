"""Google Ads adapter (GAQL search over REST)."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from metricshub.config import settings
from metricshub.credentials.store import Credential
from metricshub.providers.base import AdapterResult, InvalidParams, operation, require
from metricshub.providers.google import GoogleApiAdapter

_CAMPAIGN_FIELDS = (
    "campaign.id, campaign.name, campaign.status, "
    "campaign.advertising_channel_type, metrics.impressions, metrics.clicks, "
    "metrics.cost_micros, metrics.conversions, metrics.ctr"
)
_KEYWORD_FIELDS = (
    "campaign.id, ad_group.id, ad_group_criterion.criterion_id, "
    "ad_group_criterion.keyword.text, ad_group_criterion.keyword.match_type, "
    "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.average_cpc"
)
_DATE_RANGES = {
    "TODAY", "YESTERDAY", "LAST_7_DAYS", "LAST_14_DAYS", "LAST_30_DAYS",
    "THIS_MONTH", "LAST_MONTH", "THIS_WEEK_MON_TODAY", "LAST_WEEK_MON_SUN",
}


def _customer_id(raw: Any) -> str:
    return str(raw).replace("-", "").strip()


def _date_clause(params: dict[str, Any]) -> str:
    start, end = params.get("start_date"), params.get("end_date")
    if start and end:
        return f"segments.date BETWEEN '{start}' AND '{end}'"
    date_range = str(params.get("date_range", "LAST_30_DAYS")).upper()
    if date_range not in _DATE_RANGES:
        raise InvalidParams(f"Unsupported date_range '{date_range}'")
    return f"segments.date DURING {date_range}"


class GoogleAdsAdapter(GoogleApiAdapter):
    provider_key = "google_ads"
    base_url = "https://googleads.googleapis.com"

    def __init__(
        self,
        http: httpx.AsyncClient,
        developer_token: str | None = None,
        api_version: str | None = None,
        max_pages: int | None = None,
    ) -> None:
        super().__init__(http, max_pages=max_pages)
        self._developer_token = developer_token or settings.google_ads_developer_token
        self._version = api_version or settings.google_ads_api_version

    def _ads_headers(self, params: dict[str, Any]) -> dict[str, str]:
        headers = {"developer-token": self._developer_token}
        if params.get("login_customer_id"):
            headers["login-customer-id"] = _customer_id(params["login_customer_id"])
        return headers

    async def _search(
        self,
        credential: Credential,
        params: dict[str, Any],
        query: str,
        cancel: asyncio.Event | None,
    ) -> AdapterResult:
        require(params, "customer_id")
        return await self._paginate(
            "POST",
            f"/{self._version}/customers/{_customer_id(params['customer_id'])}/googleAds:search",
            credential,
            items_key="results",
            body={"query": query},
            headers=self._ads_headers(params),
            cancel=cancel,
            page_token=params.get("page_token"),
            max_pages=params.get("max_pages"),
        )

    @operation("accounts.list")
    async def list_accounts(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        body = await self._request(
            "GET",
            f"/{self._version}/customers:listAccessibleCustomers",
            credential,
            headers=self._ads_headers(params),
        )
        names = body.get("resourceNames", [])
        return AdapterResult.ok({"customers": [n.split("/")[-1] for n in names]})

    @operation("campaigns.list")
    async def list_campaigns(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        query = f"SELECT {_CAMPAIGN_FIELDS} FROM campaign WHERE {_date_clause(params)}"
        if params.get("status"):
            query += f" AND campaign.status = '{str(params['status']).upper()}'"
        return await self._search(credential, params, query, cancel)

    @operation("keywords.list")
    async def list_keywords(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        query = (
            f"SELECT {_KEYWORD_FIELDS} FROM keyword_view WHERE {_date_clause(params)}"
        )
        if params.get("campaign_id"):
            query += f" AND campaign.id = {int(params['campaign_id'])}"
        return await self._search(credential, params, query, cancel)

    @operation("report.query")
    async def run_query(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "query")
        return await self._search(credential, params, str(params["query"]), cancel)
