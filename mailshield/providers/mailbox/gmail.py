from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, Callable

import httpx
from redis.asyncio import Redis
import jwt

from mailshield.core.config import get_settings
from mailshield.core.errors import CredentialError, ProviderError
from mailshield.domain.types import ParsedEmail
from mailshield.providers.mailbox.base import HistoryDiff, SubscriptionGrant, TokenGrant
from mailshield.providers.mailbox.http_client import (
    ProviderHttpClient,
    grant_from_token_response,
    raise_for_token_error,
)
from mailshield.services.ingest.parsing import parse_gmail_message


logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_SCOPES = "https://www.googleapis.com/auth/gmail.modify"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class GmailProvider:
    name = "gmail"

    def __init__(
        self,
        http: ProviderHttpClient | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        redis: Redis | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = get_settings()
        self._http = http or ProviderHttpClient("mailbox.gmail", client=client, redis=redis)
        self._time = time_source or time.time
        # Quarantine label id per impersonated mailbox.
        self._label_ids: dict[str, str] = {}

    def _user_url(self, mailbox: str | None) -> str:
        return f"{GMAIL_API_URL}/users/{mailbox or 'me'}"

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        response = await self._http.request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._settings.google_client_id or "",
                "client_secret": self._settings.google_client_secret or "",
            },
            allow_statuses=frozenset({400, 401}),
        )
        raise_for_token_error(response, "gmail")
        return grant_from_token_response(response.json(), fallback_refresh=refresh_token)

    async def service_account_token(self, key_json: str, *, subject: str) -> TokenGrant:
        """Exchange a signed service-account assertion for a token impersonating `subject`."""
        try:
            key = json.loads(key_json)
            client_email = key["client_email"]
            private_key = key["private_key"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialError("service account key is malformed") from exc
        now = int(self._time())
        assertion = jwt.encode(
            {
                "iss": client_email,
                "sub": subject,
                "scope": GMAIL_SCOPES,
                "aud": key.get("token_uri") or GOOGLE_TOKEN_URL,
                "iat": now,
                "exp": now + 3600,
            },
            private_key,
            algorithm="RS256",
            headers={"kid": key.get("private_key_id")} if key.get("private_key_id") else None,
        )
        response = await self._http.request(
            "POST",
            key.get("token_uri") or GOOGLE_TOKEN_URL,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            allow_statuses=frozenset({400, 401}),
        )
        raise_for_token_error(response, "google_workspace")
        return grant_from_token_response(response.json())

    async def list_new_messages(
        self, access_token: str, *, cursor: str, mailbox: str | None = None
    ) -> HistoryDiff:
        refs: dict[str, None] = {}
        next_cursor: str | None = None
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "startHistoryId": cursor,
                "historyTypes": "messageAdded",
                "maxResults": 100,
            }
            if page_token:
                params["pageToken"] = page_token
            response = await self._http.request(
                "GET",
                f"{self._user_url(mailbox)}/history",
                access_token=access_token,
                params=params,
                allow_statuses=frozenset({404}),
            )
            if response.status_code == 404:
                # History window expired; the caller restarts from the notification cursor.
                logger.info("gmail_history_expired start_history_id=%s", cursor)
                return HistoryDiff(message_refs=[], next_cursor=None)
            body = response.json()
            for entry in body.get("history") or []:
                for added in entry.get("messagesAdded") or []:
                    message_id = (added.get("message") or {}).get("id")
                    if message_id:
                        refs.setdefault(message_id, None)
            next_cursor = body.get("historyId") or next_cursor
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return HistoryDiff(message_refs=list(refs), next_cursor=next_cursor)

    async def fetch_message(
        self, access_token: str, message_ref: str, *, mailbox: str | None = None
    ) -> ParsedEmail:
        response = await self._http.request(
            "GET",
            f"{self._user_url(mailbox)}/messages/{message_ref}",
            access_token=access_token,
            params={"format": "full"},
        )
        return parse_gmail_message(response.json())

    async def _quarantine_label_id(self, access_token: str, mailbox: str | None) -> str:
        # "me" differs per token, so only impersonated mailboxes are cached.
        cached = self._label_ids.get(mailbox) if mailbox else None
        if cached:
            return cached
        label_name = self._settings.gmail_quarantine_label
        response = await self._http.request(
            "GET", f"{self._user_url(mailbox)}/labels", access_token=access_token
        )
        label_id = next(
            (label["id"] for label in response.json().get("labels") or [] if label.get("name") == label_name),
            None,
        )
        if label_id is None:
            created = await self._http.request(
                "POST",
                f"{self._user_url(mailbox)}/labels",
                access_token=access_token,
                json={
                    "name": label_name,
                    "labelListVisibility": "labelShow",
                    "messageListVisibility": "show",
                },
            )
            label_id = created.json()["id"]
        if mailbox:
            self._label_ids[mailbox] = label_id
        return label_id

    async def _modify(
        self,
        access_token: str,
        message_ref: str,
        *,
        mailbox: str | None,
        add: list[str],
        remove: list[str],
    ) -> None:
        await self._http.request(
            "POST",
            f"{self._user_url(mailbox)}/messages/{message_ref}/modify",
            access_token=access_token,
            json={"addLabelIds": add, "removeLabelIds": remove},
        )

    async def quarantine(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        label_id = await self._quarantine_label_id(access_token, mailbox)
        await self._modify(access_token, message_ref, mailbox=mailbox, add=[label_id], remove=["INBOX"])
        # Gmail ids survive label changes.
        return message_ref

    async def release(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        label_id = await self._quarantine_label_id(access_token, mailbox)
        await self._modify(access_token, message_ref, mailbox=mailbox, add=["INBOX"], remove=[label_id])
        return message_ref

    async def delete(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> None:
        # Trash is the deepest removal gmail.modify allows; a missing message counts as deleted.
        await self._http.request(
            "POST",
            f"{self._user_url(mailbox)}/messages/{message_ref}/trash",
            access_token=access_token,
            allow_statuses=frozenset({404}),
        )

    async def renew_watch(
        self, access_token: str, *, subscription_id: str | None, mailbox: str | None = None
    ) -> SubscriptionGrant:
        # Re-issuing users.watch extends the existing watch; Gmail keeps one per mailbox.
        topic = self._settings.google_pubsub_topic
        if not topic:
            raise ProviderError("google_pubsub_topic is not configured", provider=self.name)
        response = await self._http.request(
            "POST",
            f"{self._user_url(mailbox)}/watch",
            access_token=access_token,
            json={"topicName": topic, "labelIds": ["INBOX"]},
        )
        body = response.json()
        # expiration is epoch milliseconds, serialized as a string.
        expires_at = datetime.fromtimestamp(int(body["expiration"]) / 1000, tz=timezone.utc)
        history_id = body.get("historyId")
        return SubscriptionGrant(
            subscription_id=None,
            expires_at=expires_at,
            cursor=str(history_id) if history_id is not None else None,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
