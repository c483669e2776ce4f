"""OAuth refresh-token exchange.

Refreshers raise ``CredentialsExpired`` when the provider rejects the refresh
token (the tenant must reconnect) and ``CredentialRefreshUnavailable`` when the
token endpoint cannot be reached or answers 5xx.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from metricshub.config import settings
from metricshub.core.errors import CredentialRefreshUnavailable, CredentialsExpired
from metricshub.db.models import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful refresh."""

    access_token: str
    expires_at: datetime | None
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"


class TokenRefresher(Protocol):
    auth_provider: str

    async def refresh(self, refresh_token: str) -> TokenGrant: ...


class _TokenEndpointDown(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"token endpoint returned {status_code}")
        self.status_code = status_code


def _is_retryable_refresh_error(exc: BaseException) -> bool:
    return isinstance(exc, (_TokenEndpointDown, httpx.TransportError))


class GoogleTokenRefresher:
    """Exchanges a Google refresh token for a new access token."""

    auth_provider = "google"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client_id = client_id if client_id is not None else settings.google_client_id
        self._client_secret = (
            client_secret if client_secret is not None else settings.google_client_secret
        )
        self._token_url = token_url or settings.google_token_url
        self._http = http_client or httpx.AsyncClient(timeout=settings.provider_http_timeout_s)
        self._clock = clock

    async def close(self) -> None:
        await self._http.aclose()

    async def refresh(self, refresh_token: str) -> TokenGrant:
        @retry(
            retry=retry_if_exception(_is_retryable_refresh_error),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )
        async def _post() -> httpx.Response:
            resp = await self._http.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
            if resp.status_code >= 500 or resp.status_code == 429:
                raise _TokenEndpointDown(resp.status_code)
            return resp

        try:
            resp = await _post()
        except _TokenEndpointDown as e:
            raise CredentialRefreshUnavailable(self.auth_provider, str(e)) from e
        except httpx.TransportError as e:
            raise CredentialRefreshUnavailable(self.auth_provider, type(e).__name__) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if resp.status_code >= 400:
            reason = body.get("error_description") or body.get("error") or f"HTTP {resp.status_code}"
            logger.warning(
                "oauth_refresh_rejected",
                auth_provider=self.auth_provider,
                status_code=resp.status_code,
                error=body.get("error"),
            )
            raise CredentialsExpired(self.auth_provider, reason)

        access_token = body.get("access_token")
        if not access_token:
            raise CredentialsExpired(self.auth_provider, "token response missing access_token")

        expires_in = body.get("expires_in")
        expires_at = (
            self._clock() + timedelta(seconds=int(expires_in)) if expires_in is not None else None
        )
        return TokenGrant(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=body.get("refresh_token"),
            scope=body.get("scope"),
            token_type=body.get("token_type", "Bearer"),
        )
