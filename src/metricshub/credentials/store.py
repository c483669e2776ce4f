"""Credential Store: per-tenant provider credentials with transparent refresh.

Lookup contract:
    get_credential(tenant_id, provider_key, installation_id=None) -> Credential
    raises NotConnected        nothing stored for the tenant/provider
    raises CredentialsExpired  refresh token rejected or missing

Tokens expiring within the refresh margin are refreshed before being
returned. Concurrent lookups that need to refresh the same stored secret
share one in-flight call (single-flight); providers that rotate refresh
tokens invalidate the old one on first use, so a second concurrent refresh
would lock the tenant out.

There is no token cache: every lookup reads the stored secret, so the only
in-memory state is the set of refreshes currently in flight.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.config import settings
from metricshub.core.errors import CredentialsExpired, NotConnected
from metricshub.credentials.crypto import SecretCipher
from metricshub.credentials.oauth import TokenRefresher
from metricshub.db.models import Secret, utcnow
from metricshub.db.session import db_session

logger = structlog.get_logger()


def oauth_secret_key(auth_provider: str) -> str:
    """Secret key holding a provider's OAuth token bundle, e.g. ``google_oauth_tokens``."""
    return f"{auth_provider}_oauth_tokens"


def _parse_expiry(payload: dict[str, Any]) -> datetime | None:
    raw = payload.get("expires_at", payload.get("expiry_date"))
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        # google-auth style epoch milliseconds, or plain epoch seconds
        seconds = raw / 1000 if raw > 10**11 else raw
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Credential:
    """Usable provider credential. Token fields are excluded from repr."""

    provider_key: str
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    secret_id: uuid.UUID | None = None

    @classmethod
    def from_payload(
        cls, provider_key: str, payload: dict[str, Any], secret_id: uuid.UUID | None = None
    ) -> Credential:
        return cls(
            provider_key=provider_key,
            access_token=payload.get("access_token") or "",
            refresh_token=payload.get("refresh_token"),
            expires_at=_parse_expiry(payload),
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
            secret_id=secret_id,
        )

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now <= margin

    def to_payload(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "scope": self.scope,
            "token_type": self.token_type,
        }


class CredentialStore:
    """Reads, refreshes and persists encrypted provider credentials."""

    def __init__(
        self,
        cipher: SecretCipher,
        refreshers: Mapping[str, TokenRefresher] | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        resolve_auth_provider: Callable[[str], str] | None = None,
        refresh_margin: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cipher = cipher
        self._refreshers = dict(refreshers or {})
        self._sessions = session_factory
        self._resolve = resolve_auth_provider or (lambda key: key)
        self._margin = refresh_margin or timedelta(seconds=settings.credential_refresh_margin_s)
        self._clock = clock
        self._inflight: dict[tuple[str, str, uuid.UUID | None], asyncio.Task[Credential]] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_credential(
        self,
        tenant_id: str,
        provider_key: str,
        installation_id: uuid.UUID | None = None,
    ) -> Credential:
        auth_provider = self._resolve(provider_key)
        secret = await self._load_secret(tenant_id, oauth_secret_key(auth_provider), installation_id)
        if secret is None:
            raise NotConnected(tenant_id, provider_key)

        payload = self._cipher.decrypt_json(secret.encrypted_value)
        credential = Credential.from_payload(auth_provider, payload, secret.id)

        if credential.access_token and not credential.expires_within(self._margin, self._clock()):
            return credential
        return await self._refresh_single_flight(tenant_id, credential)

    async def get_secret(
        self,
        tenant_id: str,
        key: str,
        installation_id: uuid.UUID | None = None,
    ) -> str | None:
        """Decrypted value of an arbitrary secret, installation scope first."""
        secret = await self._load_secret(tenant_id, key, installation_id)
        return self._cipher.decrypt(secret.encrypted_value) if secret else None

    async def _load_secret(
        self,
        tenant_id: str,
        key: str,
        installation_id: uuid.UUID | None,
    ) -> Secret | None:
        scopes = [installation_id, None] if installation_id is not None else [None]
        async with db_session(self._sessions) as db:
            for scope in scopes:
                scope_clause = (
                    Secret.installation_id.is_(None)
                    if scope is None
                    else Secret.installation_id == scope
                )
                secret = (
                    await db.execute(
                        select(Secret).where(
                            and_(Secret.tenant_id == tenant_id, Secret.key == key, scope_clause)
                        )
                    )
                ).scalar_one_or_none()
                if secret is not None:
                    secret.last_used_at = self._clock()
                    return secret
        return None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _refresh_single_flight(self, tenant_id: str, credential: Credential) -> Credential:
        # One flight per stored secret; installation-scoped tokens refresh on their own
        key = (tenant_id, credential.provider_key, credential.secret_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(tenant_id, credential))
            self._inflight[key] = task

            def _clear(done: asyncio.Task[Credential]) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_clear)
        else:
            logger.debug("credential_refresh_joined", tenant_id=tenant_id, provider=key[1])
        # A cancelled caller must not cancel the refresh other callers are waiting on
        return await asyncio.shield(task)

    async def _reload(self, credential: Credential) -> Credential | None:
        async with db_session(self._sessions) as db:
            secret = await db.get(Secret, credential.secret_id, populate_existing=True)
            if secret is None:
                return None
            payload = self._cipher.decrypt_json(secret.encrypted_value)
        return Credential.from_payload(credential.provider_key, payload, credential.secret_id)

    async def _refresh(self, tenant_id: str, credential: Credential) -> Credential:
        refresher = self._refreshers.get(credential.provider_key)
        if not credential.refresh_token:
            raise CredentialsExpired(credential.provider_key, "no refresh token stored")
        if refresher is None:
            raise CredentialsExpired(credential.provider_key, "provider does not support refresh")

        # Another process may have refreshed since this caller read the secret
        current = await self._reload(credential)
        if (
            current is not None
            and current.access_token
            and current.access_token != credential.access_token
            and not current.expires_within(self._margin, self._clock())
        ):
            logger.debug("credential_refresh_skipped", tenant_id=tenant_id, provider=credential.provider_key)
            return current

        grant = await refresher.refresh(credential.refresh_token)
        refreshed = Credential(
            provider_key=credential.provider_key,
            access_token=grant.access_token,
            # Google omits refresh_token unless it rotated; keep the old one
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope or credential.scope,
            token_type=grant.token_type,
            secret_id=credential.secret_id,
        )

        async with db_session(self._sessions) as db:
            secret = await db.get(Secret, credential.secret_id, with_for_update=True)
            if secret is None:
                raise NotConnected(tenant_id, credential.provider_key)
            secret.encrypted_value = self._cipher.encrypt_json(refreshed.to_payload())
            secret.last_used_at = self._clock()

        logger.info(
            "credential_refreshed",
            tenant_id=tenant_id,
            provider=credential.provider_key,
            expires_at=refreshed.expires_at.isoformat() if refreshed.expires_at else None,
            rotated=grant.refresh_token is not None,
        )
        return refreshed

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put_secret(
        self,
        tenant_id: str,
        key: str,
        value: str,
        installation_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> uuid.UUID:
        """Create or replace an encrypted secret."""
        scope_clause = (
            Secret.installation_id.is_(None)
            if installation_id is None
            else Secret.installation_id == installation_id
        )
        async with db_session(self._sessions) as db:
            secret = (
                await db.execute(
                    select(Secret).where(
                        and_(Secret.tenant_id == tenant_id, Secret.key == key, scope_clause)
                    )
                )
            ).scalar_one_or_none()
            if secret is None:
                secret = Secret(tenant_id=tenant_id, key=key, installation_id=installation_id)
                db.add(secret)
            secret.encrypted_value = self._cipher.encrypt(value)
            if description is not None:
                secret.description = description
            await db.flush()
            secret_id = secret.id

        logger.info("secret_stored", tenant_id=tenant_id, key=key, installation_scoped=installation_id is not None)
        return secret_id

    async def connect(
        self,
        tenant_id: str,
        auth_provider: str,
        credential: Credential,
        installation_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        """Store an OAuth token bundle obtained by the connect flow."""
        return await self.put_secret(
            tenant_id,
            oauth_secret_key(auth_provider),
            json.dumps(credential.to_payload()),
            installation_id=installation_id,
            description=f"{auth_provider} OAuth tokens",
        )
