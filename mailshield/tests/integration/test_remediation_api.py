from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.core.errors import TransientProviderError
from mailshield.domain.models import AllowlistEntry
from mailshield.domain.types import WorkItem
from mailshield.services.runtime import Runtime
from mailshield.tests.utils.seed import seed_connection


PHISH_HEADERS = {"authentication-results": "mx.test; spf=fail; dkim=fail; dmarc=fail"}


def _admin(tenant_id: str | None = "t1") -> dict[str, str]:
    headers = {"Authorization": "Bearer admin-token", "X-Actor-Id": "analyst-1"}
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    return headers


async def _scan(runtime: Runtime, session: AsyncSession, providers, *refs: str, phishing: bool = True) -> None:
    connection = await seed_connection(session, cursor="100")
    for ref in refs:
        if phishing:
            providers["gmail"].add_message(ref, sender="mallory@bad.example", headers=PHISH_HEADERS)
        else:
            providers["gmail"].add_message(ref)
    await runtime.queue.enqueue(
        WorkItem(
            tenant_id="t1",
            integration_id=connection.id,
            provider="gmail",
            provider_message_refs=list(refs),
            sync_cursor_at_enqueue="100",
            next_sync_cursor=providers["gmail"].current_history_id,
        )
    )
    await runtime.worker.run()


@pytest.mark.asyncio
async def test_release_quarantined_message(client: AsyncClient, runtime: Runtime, session: AsyncSession, providers) -> None:
    await _scan(runtime, session, providers, "m1")

    response = await client.post("/v1/remediation/m1/release", headers=_admin())

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"message_id": "m1", "state": "released", "changed": True}
    assert body["meta"]["api_version"] == "v1"
    assert providers["gmail"].folders["m1"] == "inbox"


@pytest.mark.asyncio
async def test_repeated_release_is_a_no_op(client: AsyncClient, runtime: Runtime, session: AsyncSession, providers) -> None:
    await _scan(runtime, session, providers, "m1")

    await client.post("/v1/remediation/m1/release", headers=_admin())
    response = await client.post("/v1/remediation/m1/release", headers=_admin())

    assert response.status_code == 200
    assert response.json()["data"] == {"message_id": "m1", "state": "released", "changed": False}


@pytest.mark.asyncio
async def test_false_positive_with_sender_allowlist(
    client: AsyncClient, runtime: Runtime, session: AsyncSession, providers
) -> None:
    await _scan(runtime, session, providers, "m1")

    response = await client.post(
        "/v1/remediation/m1/false-positive",
        headers=_admin(),
        json={"allowlist": "sender", "reason": "newsletter"},
    )

    assert response.json()["data"]["state"] == "false_positive"
    entries = (await session.execute(select(AllowlistEntry))).scalars().all()
    assert [(entry.tenant_id, entry.value) for entry in entries] == [("t1", "mallory@bad.example")]


@pytest.mark.asyncio
async def test_invalid_transition_is_conflict(
    client: AsyncClient, runtime: Runtime, session: AsyncSession, providers
) -> None:
    await _scan(runtime, session, providers, "m1")
    await client.post("/v1/remediation/m1/release", headers=_admin())

    response = await client.post("/v1/remediation/m1/delete", headers=_admin())

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"] == {"state": "released"}


@pytest.mark.asyncio
async def test_unknown_message_is_not_found(client: AsyncClient) -> None:
    response = await client.post("/v1/remediation/missing/quarantine", headers=_admin())

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_other_tenant_cannot_see_message(
    client: AsyncClient, runtime: Runtime, session: AsyncSession, providers
) -> None:
    await _scan(runtime, session, providers, "m1")

    response = await client.post("/v1/remediation/m1/release", headers=_admin("t2"))

    assert response.status_code == 404
    assert providers["gmail"].folders["m1"] == "quarantine"


@pytest.mark.asyncio
async def test_operator_can_quarantine_clean_message(
    client: AsyncClient, runtime: Runtime, session: AsyncSession, providers
) -> None:
    await _scan(runtime, session, providers, "m1", phishing=False)
    assert providers["gmail"].folders["m1"] == "inbox"

    response = await client.post("/v1/remediation/m1/quarantine", headers=_admin())

    assert response.json()["data"] == {"message_id": "m1", "state": "quarantined", "changed": True}
    assert providers["gmail"].folders["m1"] == "quarantine"


@pytest.mark.asyncio
async def test_provider_failure_is_bad_gateway(
    client: AsyncClient, runtime: Runtime, session: AsyncSession, providers
) -> None:
    await _scan(runtime, session, providers, "m1")
    providers["gmail"].fail_next("release", TransientProviderError("upstream 503", status_code=503, provider="gmail"))

    response = await client.post("/v1/remediation/m1/release", headers=_admin())

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "TRANSIENT"
    assert providers["gmail"].folders["m1"] == "quarantine"


@pytest.mark.asyncio
async def test_tenant_header_is_required(client: AsyncClient) -> None:
    response = await client.post("/v1/remediation/m1/release", headers=_admin(None))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_admin_token_is_required(client: AsyncClient) -> None:
    response = await client.post("/v1/remediation/m1/release", headers={"X-Tenant-Id": "t1"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(client: AsyncClient) -> None:
    response = await client.post("/v1/remediation/m1/archive", headers=_admin())

    assert response.status_code == 422
