from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailshield.core.errors import CredentialError, ErrorCode, IntegrationNotConnectedError, ProviderError
from mailshield.persistence.repos import integrations as integrations_repo
from mailshield.providers.mailbox.fake import FakeMailboxProvider
from mailshield.services.ingest.credentials import CredentialManager, call_with_refresh
from mailshield.tests.utils.seed import seed_connection, seed_domain_user


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(session: AsyncSession, providers) -> None:
    connection = await seed_connection(session)
    manager = CredentialManager(providers)

    assert await manager.connection_token(session, connection) == "access-0"
    assert providers["gmail"].refresh_calls == 0


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_persisted(session: AsyncSession, providers) -> None:
    # Inside the refresh buffer counts as expired.
    connection = await seed_connection(session, expires_in_s=60)
    manager = CredentialManager(providers)

    token = await manager.connection_token(session, connection)
    assert token == "access-1"
    stored = await integrations_repo.get_connection(session, connection.id, fresh=True)
    assert stored.access_token == "access-1"
    assert stored.refresh_token == "refresh-0"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(
    session_factory: async_sessionmaker[AsyncSession], providers
) -> None:
    async with session_factory() as setup:
        connection = await seed_connection(setup, expires_in_s=0)
    manager = CredentialManager(providers)

    async def fetch() -> str:
        async with session_factory() as session:
            row = await integrations_repo.get_connection(session, connection.id)
            return await manager.connection_token(session, row)

    tokens = await asyncio.gather(*(fetch() for _ in range(5)))
    assert set(tokens) == {"access-1"}
    assert providers["gmail"].refresh_calls == 1


@pytest.mark.asyncio
async def test_rejected_token_forces_refresh(session: AsyncSession, providers) -> None:
    connection = await seed_connection(session)
    manager = CredentialManager(providers)

    token = await manager.connection_token(session, connection, rejected="access-0")
    assert token == "access-1"
    assert providers["gmail"].refresh_calls == 1


@pytest.mark.asyncio
async def test_invalid_grant_marks_connection_error(session: AsyncSession, providers) -> None:
    connection = await seed_connection(session, expires_in_s=0)
    providers["gmail"].revoked_refresh_tokens.add("refresh-0")
    manager = CredentialManager(providers)

    with pytest.raises(CredentialError):
        await manager.connection_token(session, connection)
    stored = await integrations_repo.get_connection(session, connection.id, fresh=True)
    assert stored.status == "error"
    assert stored.error_message == "invalid_grant"

    # Once in error, the connection is no longer usable.
    with pytest.raises(IntegrationNotConnectedError):
        await manager.connection_token(session, stored, rejected="access-0")


@pytest.mark.asyncio
async def test_call_with_refresh_retries_once_on_credential_failure() -> None:
    tokens: list[str | None] = []
    calls: list[str] = []

    async def get_token(rejected: str | None) -> str:
        tokens.append(rejected)
        return "fresh" if rejected else "stale"

    async def operation(token: str) -> str:
        calls.append(token)
        if token == "stale":
            raise ProviderError("unauthorized", status_code=401)
        return "ok"

    assert await call_with_refresh(get_token, operation) == "ok"
    assert tokens == [None, "stale"]
    assert calls == ["stale", "fresh"]


@pytest.mark.asyncio
async def test_call_with_refresh_second_credential_failure_propagates() -> None:
    async def get_token(rejected: str | None) -> str:
        return "token"

    async def operation(token: str) -> str:
        raise ProviderError("forbidden", status_code=403)

    with pytest.raises(ProviderError) as excinfo:
        await call_with_refresh(get_token, operation)
    assert excinfo.value.code == ErrorCode.CREDENTIAL


@pytest.mark.asyncio
async def test_call_with_refresh_leaves_other_failures_alone() -> None:
    refreshes = {"count": 0}

    async def get_token(rejected: str | None) -> str:
        refreshes["count"] += 1
        return "token"

    async def operation(token: str) -> str:
        raise ProviderError("gone", status_code=404)

    with pytest.raises(ProviderError):
        await call_with_refresh(get_token, operation)
    assert refreshes["count"] == 1


@pytest.mark.asyncio
async def test_domain_tokens_are_cached_per_mailbox(session: AsyncSession) -> None:
    provider = FakeMailboxProvider("gmail")
    manager = CredentialManager({"gmail": provider})
    config, _ = await seed_domain_user(session)

    first = await manager.domain_token(config, "Alice@corp.example")
    again = await manager.domain_token(config, "alice@corp.example")
    other = await manager.domain_token(config, "bob@corp.example")

    assert first == again == "sa-alice@corp.example"
    assert other == "sa-bob@corp.example"
    assert [op for op, _ in provider.calls] == ["domain_token", "domain_token"]


@pytest.mark.asyncio
async def test_microsoft_domain_token_is_shared_across_mailboxes(session: AsyncSession) -> None:
    provider = FakeMailboxProvider("o365")
    manager = CredentialManager({"o365": provider})
    config, _ = await seed_domain_user(session, provider="microsoft_365")

    assert await manager.domain_token(config, "alice@corp.example") == "app-azure-tenant"
    assert await manager.domain_token(config, "bob@corp.example") == "app-azure-tenant"
    assert len(provider.calls) == 1
