from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.core.config import Settings, get_settings
from mailshield.core.errors import (
    CredentialError,
    ErrorCode,
    IntegrationNotConnectedError,
    classify_error,
)
from mailshield.domain.models import DomainWideConfig, IntegrationConnection
from mailshield.domain.types import ensure_utc, utc_now
from mailshield.persistence.repos import integrations as integrations_repo
from mailshield.providers.mailbox.base import MailboxProvider, TokenGrant
from mailshield.providers.mailbox.factory import provider_for


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialManager:
    """Hands out provider access tokens, refreshing them before they expire.

    Refreshes are serialized per connection with an asyncio.Lock and the row is
    re-read after the lock is acquired, so concurrent callers that all saw an
    expiring token share one refresh instead of racing the token endpoint.
    Domain-wide tokens are minted from directory credentials and kept only in
    memory.
    """

    def __init__(
        self,
        providers: dict[str, MailboxProvider],
        *,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._providers = providers
        self._settings = settings or get_settings()
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._domain_grants: dict[tuple[str, str], TokenGrant] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def needs_refresh(self, access_token: str | None, expires_at: datetime | None) -> bool:
        if not access_token:
            return True
        if expires_at is None:
            return False
        buffer = timedelta(seconds=self._settings.token_refresh_buffer_s)
        return ensure_utc(expires_at) - buffer <= self._now()

    async def connection_token(
        self,
        session: AsyncSession,
        connection: IntegrationConnection,
        *,
        rejected: str | None = None,
    ) -> str:
        """Return a usable access token; `rejected` forces a refresh past that token."""
        if rejected is None and not self.needs_refresh(connection.access_token, connection.token_expires_at):
            return connection.access_token  # type: ignore[return-value]
        async with self._lock_for(f"connection:{connection.id}"):
            current = await integrations_repo.get_connection(session, connection.id, fresh=True)
            if current is None or current.status != "connected":
                raise IntegrationNotConnectedError(f"integration {connection.id} is not connected")
            # Another caller may have refreshed while this one waited on the lock.
            if current.access_token != rejected and not self.needs_refresh(
                current.access_token, current.token_expires_at
            ):
                return current.access_token  # type: ignore[return-value]
            return await self._refresh_connection(session, current)

    async def _refresh_connection(self, session: AsyncSession, connection: IntegrationConnection) -> str:
        if not connection.refresh_token:
            await self._fail_connection(session, connection, "refresh token missing")
            raise CredentialError(f"integration {connection.id} has no refresh token")
        provider = provider_for(self._providers, connection.provider)
        try:
            grant = await provider.refresh_access_token(connection.refresh_token)
        except CredentialError as exc:
            await self._fail_connection(session, connection, str(exc))
            raise
        await integrations_repo.store_credentials(
            session,
            connection.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or connection.refresh_token,
            expires_at=grant.expires_at,
            scopes=grant.scopes,
        )
        await session.commit()
        await integrations_repo.get_connection(session, connection.id, fresh=True)
        logger.info("integration_token_refreshed integration_id=%s", connection.id)
        return grant.access_token

    async def _fail_connection(self, session: AsyncSession, connection: IntegrationConnection, reason: str) -> None:
        logger.warning("integration_credential_invalid integration_id=%s reason=%s", connection.id, reason)
        await integrations_repo.mark_error(session, connection.id, error_message=reason)
        await session.commit()

    async def domain_token(
        self,
        config: DomainWideConfig,
        mailbox: str,
        *,
        rejected: str | None = None,
    ) -> str:
        # Google impersonates each user; Microsoft issues one app token per directory.
        subject = mailbox.lower() if config.provider == "google_workspace" else ""
        key = (config.id, subject)
        grant = self._domain_grants.get(key)
        if grant is not None and grant.access_token != rejected and not self.needs_refresh(
            grant.access_token, grant.expires_at
        ):
            return grant.access_token
        async with self._lock_for(f"domain:{config.id}:{subject}"):
            grant = self._domain_grants.get(key)
            if grant is not None and grant.access_token != rejected and not self.needs_refresh(
                grant.access_token, grant.expires_at
            ):
                return grant.access_token
            grant = await self._mint_domain_grant(config, subject)
            self._domain_grants[key] = grant
            return grant.access_token

    async def _mint_domain_grant(self, config: DomainWideConfig, subject: str) -> TokenGrant:
        provider = provider_for(self._providers, config.provider)
        if config.provider == "google_workspace":
            if not config.service_account_key_json:
                raise CredentialError(f"domain config {config.id} has no service account key")
            return await provider.service_account_token(  # type: ignore[attr-defined]
                config.service_account_key_json, subject=subject
            )
        if not (config.azure_tenant_id and config.azure_client_id and config.azure_client_secret):
            raise CredentialError(f"domain config {config.id} is missing app credentials")
        return await provider.client_credentials_token(  # type: ignore[attr-defined]
            azure_tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )


async def call_with_refresh(
    get_token: Callable[[str | None], Awaitable[str]],
    operation: Callable[[str], Awaitable[T]],
) -> T:
    """Run a provider call, refreshing once if the token is rejected.

    A second credential failure propagates and is terminal for the caller.
    """
    token = await get_token(None)
    try:
        return await operation(token)
    except Exception as exc:  # noqa: BLE001 - only credential failures are retried here
        if classify_error(exc) != ErrorCode.CREDENTIAL:
            raise
        logger.info("provider_token_rejected retrying_after_refresh=true")
    token = await get_token(token)
    return await operation(token)
