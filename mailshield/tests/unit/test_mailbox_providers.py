from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
import json
from typing import Callable
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mailshield.core.errors import CredentialError, ErrorCode, ProviderError
from mailshield.providers.mailbox.gmail import GOOGLE_TOKEN_URL, GmailProvider
from mailshield.providers.mailbox.graph import GraphProvider
from mailshield.providers.mailbox.http_client import ProviderHttpClient
from mailshield.services.resilience import RetryPolicy
from mailshield.services.telemetry import external_latency_by_integration


Handler = Callable[[httpx.Request], httpx.Response]


def _http(name: str, handler: Handler) -> ProviderHttpClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderHttpClient(
        name,
        client=client,
        retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1),
    )


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


@pytest.mark.asyncio
async def test_gmail_history_is_paginated_and_deduplicated() -> None:
    pages = {
        None: {
            "history": [
                {"messagesAdded": [{"message": {"id": "m1"}}, {"message": {"id": "m2"}}]},
            ],
            "historyId": "150",
            "nextPageToken": "p2",
        },
        "p2": {
            "history": [{"messagesAdded": [{"message": {"id": "m2"}}, {"message": {"id": "m3"}}]}],
            "historyId": "155",
        },
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    provider = GmailProvider(_http("mailbox.gmail", handler))
    diff = await provider.list_new_messages("tok", cursor="100")

    assert diff.message_refs == ["m1", "m2", "m3"]
    assert diff.next_cursor == "155"
    assert seen[0].url.path == "/gmail/v1/users/me/history"
    assert seen[0].url.params["startHistoryId"] == "100"
    assert seen[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_gmail_expired_history_returns_empty_diff() -> None:
    provider = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(404, json={})))

    diff = await provider.list_new_messages("tok", cursor="1")

    assert diff.message_refs == []
    assert diff.next_cursor is None


@pytest.mark.asyncio
async def test_gmail_fetch_parses_full_message() -> None:
    message = {
        "id": "m1",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "Mallory <Mallory@Bad.example>"},
                {"name": "Reply-To", "value": "collect@elsewhere.example"},
                {"name": "Subject", "value": "Verify your account"},
                {"name": "Message-ID", "value": "<abc@bad.example>"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("Click https://bad.example/login now.")}},
                {"mimeType": "text/html", "body": {"data": _b64('<a href="https://bad.example/login">x</a>')}},
            ],
        },
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/gmail/v1/users/alice@corp.example/messages/m1"
        assert request.url.params["format"] == "full"
        return httpx.Response(200, json=message)

    provider = GmailProvider(_http("mailbox.gmail", handler))
    parsed = await provider.fetch_message("tok", "m1", mailbox="alice@corp.example")

    assert parsed.message_id == parsed.provider_message_ref == "m1"
    assert parsed.from_.address == "mallory@bad.example"
    assert parsed.from_.display_name == "Mallory"
    assert parsed.reply_to.domain == "elsewhere.example"
    assert parsed.internet_message_id == "<abc@bad.example>"
    assert parsed.urls == ["https://bad.example/login"]


@pytest.mark.asyncio
async def test_gmail_quarantine_creates_label_once_per_mailbox() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/labels") and request.method == "GET":
            return httpx.Response(200, json={"labels": [{"id": "INBOX", "name": "INBOX"}]})
        if request.url.path.endswith("/labels"):
            assert json.loads(request.content)["name"] == "MailShield/Quarantine"
            return httpx.Response(200, json={"id": "Label_9"})
        body = json.loads(request.content)
        assert body in (
            {"addLabelIds": ["Label_9"], "removeLabelIds": ["INBOX"]},
            {"addLabelIds": ["INBOX"], "removeLabelIds": ["Label_9"]},
        )
        return httpx.Response(200, json={"id": "m1"})

    provider = GmailProvider(_http("mailbox.gmail", handler))

    assert await provider.quarantine("tok", "m1", mailbox="alice@corp.example") == "m1"
    assert await provider.release("tok", "m1", mailbox="alice@corp.example") == "m1"

    base = "/gmail/v1/users/alice@corp.example"
    assert calls == [
        ("GET", f"{base}/labels"),
        ("POST", f"{base}/labels"),
        ("POST", f"{base}/messages/m1/modify"),
        ("POST", f"{base}/messages/m1/modify"),
    ]


@pytest.mark.asyncio
async def test_gmail_delete_tolerates_missing_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/gmail/v1/users/me/messages/m1/trash"
        return httpx.Response(404, json={})

    provider = GmailProvider(_http("mailbox.gmail", handler))
    assert await provider.delete("tok", "m1") is None


@pytest.mark.asyncio
async def test_gmail_refresh_keeps_old_refresh_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == GOOGLE_TOKEN_URL
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["r-1"]
        return httpx.Response(200, json={"access_token": "a-2", "expires_in": 120})

    provider = GmailProvider(_http("mailbox.gmail", handler))
    grant = await provider.refresh_access_token("r-1")

    assert grant.access_token == "a-2"
    assert grant.refresh_token == "r-1"


@pytest.mark.asyncio
async def test_gmail_invalid_grant_is_credential_error() -> None:
    provider = GmailProvider(
        _http("mailbox.gmail", lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
    )

    with pytest.raises(CredentialError):
        await provider.refresh_access_token("revoked")


@pytest.mark.asyncio
async def test_gmail_service_account_assertion_impersonates_subject() -> None:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    key_json = json.dumps(
        {"client_email": "svc@project.iam.example", "private_key": pem, "private_key_id": "kid-1"}
    )

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assertion = form["assertion"][0]
        assert jwt.get_unverified_header(assertion)["kid"] == "kid-1"
        claims = jwt.decode(
            assertion, private_key.public_key(), algorithms=["RS256"], audience=GOOGLE_TOKEN_URL
        )
        assert claims["sub"] == "alice@corp.example"
        assert claims["iss"] == "svc@project.iam.example"
        assert claims["exp"] - claims["iat"] == 3600
        return httpx.Response(200, json={"access_token": "sa-token", "expires_in": 3600})

    provider = GmailProvider(_http("mailbox.gmail", handler))
    grant = await provider.service_account_token(key_json, subject="alice@corp.example")

    assert grant.access_token == "sa-token"
    assert grant.refresh_token is None


@pytest.mark.asyncio
async def test_malformed_service_account_key_is_credential_error() -> None:
    provider = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(500)))

    with pytest.raises(CredentialError):
        await provider.service_account_token("{}", subject="alice@corp.example")


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_surface_as_transient() -> None:
    attempts = {"count": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"history": [], "historyId": "9"})

    provider = GmailProvider(_http("mailbox.gmail", flaky))
    assert (await provider.list_new_messages("tok", cursor="1")).next_cursor == "9"
    assert attempts["count"] == 2

    down = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(503)))
    with pytest.raises(ProviderError) as excinfo:
        await down.fetch_message("tok", "m1")
    assert excinfo.value.code == ErrorCode.TRANSIENT
    assert external_latency_by_integration(60)["mailbox.gmail"]["error_rate"] > 0


@pytest.mark.asyncio
async def test_client_errors_carry_typed_codes() -> None:
    provider = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(401)))
    with pytest.raises(ProviderError) as excinfo:
        await provider.fetch_message("tok", "m1")
    assert excinfo.value.code == ErrorCode.CREDENTIAL

    provider = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(404)))
    with pytest.raises(ProviderError) as excinfo:
        await provider.fetch_message("tok", "m1")
    assert excinfo.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_transport_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = GmailProvider(_http("mailbox.gmail", handler))
    with pytest.raises(ProviderError) as excinfo:
        await provider.fetch_message("tok", "m1")
    assert excinfo.value.code == ErrorCode.TRANSIENT


@pytest.mark.asyncio
async def test_graph_list_follows_next_link_and_tracks_newest() -> None:
    next_link = "https://graph.microsoft.com/v1.0/me/mailFolders/inbox/messages?$skiptoken=abc"
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if "skiptoken" in str(request.url):
            return httpx.Response(200, json={"value": [{"id": "B", "receivedDateTime": "2026-01-01T10:05:00Z"}]})
        assert request.url.params["$filter"] == "receivedDateTime gt 2026-01-01T10:00:00Z"
        return httpx.Response(
            200,
            json={
                "value": [{"id": "A", "receivedDateTime": "2026-01-01T10:01:00Z"}],
                "@odata.nextLink": next_link,
            },
        )

    provider = GraphProvider(_http("mailbox.graph", handler))
    diff = await provider.list_new_messages("tok", cursor="2026-01-01T10:00:00Z")

    assert diff.message_refs == ["A", "B"]
    assert diff.next_cursor == "2026-01-01T10:05:00Z"
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_graph_quarantine_returns_moved_id() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/mailFolders") and request.method == "GET":
            return httpx.Response(200, json={"value": []})
        if request.url.path.endswith("/mailFolders"):
            return httpx.Response(201, json={"id": "folder-q"})
        assert json.loads(request.content) == {"destinationId": "folder-q"}
        return httpx.Response(201, json={"id": "AAA-in-quarantine"})

    provider = GraphProvider(_http("mailbox.graph", handler))
    new_ref = await provider.quarantine("tok", "AAA", mailbox="bob@corp.example")

    assert new_ref == "AAA-in-quarantine"
    base = "/v1.0/users/bob@corp.example"
    assert calls == [
        ("GET", f"{base}/mailFolders"),
        ("POST", f"{base}/mailFolders"),
        ("POST", f"{base}/messages/AAA/move"),
    ]


@pytest.mark.asyncio
async def test_graph_fetch_parses_html_body() -> None:
    message = {
        "id": "AAA",
        "subject": "Invoice",
        "from": {"emailAddress": {"address": "Billing@Vendor.example", "name": "Billing"}},
        "toRecipients": [{"emailAddress": {"address": "bob@corp.example"}}],
        "receivedDateTime": "2026-01-01T10:01:00Z",
        "body": {"contentType": "html", "content": '<a href="https://vendor.example/pay">Pay</a>'},
        "internetMessageHeaders": [{"name": "Authentication-Results", "value": "spf=pass"}],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1.0/me/messages/AAA"
        return httpx.Response(200, json=message)

    provider = GraphProvider(_http("mailbox.graph", handler))
    parsed = await provider.fetch_message("tok", "AAA")

    assert parsed.from_.address == "billing@vendor.example"
    assert parsed.body_text is None
    assert parsed.urls == ["https://vendor.example/pay"]
    assert parsed.headers["authentication-results"] == "spf=pass"
    assert parsed.date.year == 2026


@pytest.mark.asyncio
async def test_graph_client_credentials_use_directory_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/azure-tenant/oauth2/v2.0/token"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["client_credentials"]
        assert form["scope"] == ["https://graph.microsoft.com/.default"]
        return httpx.Response(200, json={"access_token": "app-token", "expires_in": 3599})

    provider = GraphProvider(_http("mailbox.graph", handler))
    grant = await provider.client_credentials_token(
        azure_tenant_id="azure-tenant", client_id="cid", client_secret="secret"
    )
    assert grant.access_token == "app-token"


@pytest.mark.asyncio
async def test_gmail_renew_watch_reissues_watch_on_the_topic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_PUBSUB_TOPIC", "projects/p/topics/mail")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"historyId": "4321", "expiration": "1790000000000"})

    provider = GmailProvider(_http("mailbox.gmail", handler))
    grant = await provider.renew_watch("tok", subscription_id=None, mailbox="alice@corp.example")

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/gmail/v1/users/alice@corp.example/watch"
    assert json.loads(seen[0].content) == {"topicName": "projects/p/topics/mail", "labelIds": ["INBOX"]}
    assert grant.subscription_id is None
    assert grant.cursor == "4321"
    assert grant.expires_at == datetime.fromtimestamp(1790000000, tz=timezone.utc)


@pytest.mark.asyncio
async def test_gmail_renew_watch_requires_a_topic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GOOGLE_PUBSUB_TOPIC", raising=False)
    provider = GmailProvider(_http("mailbox.gmail", lambda request: httpx.Response(200, json={})))

    with pytest.raises(ProviderError, match="google_pubsub_topic"):
        await provider.renew_watch("tok", subscription_id=None)


@pytest.mark.asyncio
async def test_graph_renew_watch_patches_subscription_expiry() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "sub-1"})

    provider = GraphProvider(_http("mailbox.graph", handler))
    before = datetime.now(timezone.utc)
    grant = await provider.renew_watch("tok", subscription_id="sub-1")

    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/v1.0/subscriptions/sub-1"
    requested = json.loads(seen[0].content)["expirationDateTime"]
    assert requested.endswith("Z")
    assert grant.subscription_id == "sub-1"
    # Graph rejects mail subscriptions longer than 4230 minutes.
    assert timedelta(minutes=4190) < grant.expires_at - before < timedelta(minutes=4230)


@pytest.mark.asyncio
async def test_graph_renew_watch_without_subscription_is_not_found() -> None:
    provider = GraphProvider(_http("mailbox.graph", lambda request: httpx.Response(200, json={})))

    with pytest.raises(ProviderError) as caught:
        await provider.renew_watch("tok", subscription_id=None)
    assert caught.value.code == ErrorCode.NOT_FOUND
