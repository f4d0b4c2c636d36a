from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

import httpx
from redis.asyncio import Redis

from mailshield.core.config import get_settings
from mailshield.core.errors import ProviderError
from mailshield.domain.types import ParsedEmail, utc_now
from mailshield.providers.mailbox.base import HistoryDiff, SubscriptionGrant, TokenGrant
from mailshield.providers.mailbox.http_client import (
    ProviderHttpClient,
    grant_from_token_response,
    raise_for_token_error,
)
from mailshield.services.ingest.parsing import parse_graph_message


logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_API_URL = "https://graph.microsoft.com/v1.0"
GRAPH_DELEGATED_SCOPES = "offline_access https://graph.microsoft.com/Mail.ReadWrite"
GRAPH_APP_SCOPE = "https://graph.microsoft.com/.default"
_MESSAGE_FIELDS = (
    "id,internetMessageId,subject,from,replyTo,toRecipients,receivedDateTime,"
    "body,internetMessageHeaders,parentFolderId"
)


class GraphProvider:
    name = "o365"

    def __init__(
        self,
        http: ProviderHttpClient | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        redis: Redis | None = None,
    ) -> None:
        self._settings = get_settings()
        self._http = http or ProviderHttpClient("mailbox.graph", client=client, redis=redis)
        self._folder_ids: dict[str, str] = {}

    def _user_url(self, mailbox: str | None) -> str:
        # App-only tokens cannot resolve /me; domain-wide calls address the user directly.
        return f"{GRAPH_API_URL}/users/{mailbox}" if mailbox else f"{GRAPH_API_URL}/me"

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        response = await self._http.request(
            "POST",
            f"{MICROSOFT_LOGIN_URL}/common/oauth2/v2.0/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._settings.microsoft_client_id or "",
                "client_secret": self._settings.microsoft_client_secret or "",
                "scope": GRAPH_DELEGATED_SCOPES,
            },
            allow_statuses=frozenset({400, 401}),
        )
        raise_for_token_error(response, "o365")
        return grant_from_token_response(response.json(), fallback_refresh=refresh_token)

    async def client_credentials_token(self, *, azure_tenant_id: str, client_id: str, client_secret: str) -> TokenGrant:
        response = await self._http.request(
            "POST",
            f"{MICROSOFT_LOGIN_URL}/{azure_tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": GRAPH_APP_SCOPE,
            },
            allow_statuses=frozenset({400, 401}),
        )
        raise_for_token_error(response, "microsoft_365")
        return grant_from_token_response(response.json())

    async def list_new_messages(
        self, access_token: str, *, cursor: str, mailbox: str | None = None
    ) -> HistoryDiff:
        # Graph keeps no history log; the cursor is the newest receivedDateTime seen.
        refs: list[str] = []
        newest = cursor
        url: str | None = f"{self._user_url(mailbox)}/mailFolders/inbox/messages"
        params: dict[str, Any] | None = {
            "$filter": f"receivedDateTime gt {cursor}",
            "$select": "id,receivedDateTime",
            "$orderby": "receivedDateTime asc",
            "$top": 50,
        }
        while url:
            response = await self._http.request("GET", url, access_token=access_token, params=params)
            body = response.json()
            for message in body.get("value") or []:
                refs.append(message["id"])
                received = message.get("receivedDateTime")
                if received and received > newest:
                    newest = received
            # @odata.nextLink already carries the query string.
            url = body.get("@odata.nextLink")
            params = None
        return HistoryDiff(message_refs=refs, next_cursor=newest)

    async def fetch_message(
        self, access_token: str, message_ref: str, *, mailbox: str | None = None
    ) -> ParsedEmail:
        response = await self._http.request(
            "GET",
            f"{self._user_url(mailbox)}/messages/{message_ref}",
            access_token=access_token,
            params={"$select": _MESSAGE_FIELDS},
        )
        return parse_graph_message(response.json())

    async def _quarantine_folder_id(self, access_token: str, mailbox: str | None) -> str:
        cached = self._folder_ids.get(mailbox) if mailbox else None
        if cached:
            return cached
        folder_name = self._settings.graph_quarantine_folder
        response = await self._http.request(
            "GET",
            f"{self._user_url(mailbox)}/mailFolders",
            access_token=access_token,
            params={"$filter": f"displayName eq '{folder_name}'"},
        )
        folders = response.json().get("value") or []
        if folders:
            folder_id = folders[0]["id"]
        else:
            created = await self._http.request(
                "POST",
                f"{self._user_url(mailbox)}/mailFolders",
                access_token=access_token,
                json={"displayName": folder_name, "isHidden": False},
            )
            folder_id = created.json()["id"]
        if mailbox:
            self._folder_ids[mailbox] = folder_id
        return folder_id

    async def _move(self, access_token: str, message_ref: str, *, mailbox: str | None, destination: str) -> str:
        response = await self._http.request(
            "POST",
            f"{self._user_url(mailbox)}/messages/{message_ref}/move",
            access_token=access_token,
            json={"destinationId": destination},
        )
        # Graph mints a new message id in the destination folder.
        return response.json().get("id") or message_ref

    async def quarantine(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        folder_id = await self._quarantine_folder_id(access_token, mailbox)
        return await self._move(access_token, message_ref, mailbox=mailbox, destination=folder_id)

    async def release(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        return await self._move(access_token, message_ref, mailbox=mailbox, destination="inbox")

    async def delete(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> None:
        await self._http.request(
            "DELETE",
            f"{self._user_url(mailbox)}/messages/{message_ref}",
            access_token=access_token,
            allow_statuses=frozenset({404}),
        )

    async def renew_watch(
        self, access_token: str, *, subscription_id: str | None, mailbox: str | None = None
    ) -> SubscriptionGrant:
        if not subscription_id:
            raise ProviderError("no graph subscription to renew", status_code=404, provider=self.name)
        expires_at = utc_now() + timedelta(seconds=self._settings.graph_subscription_lifetime_s)
        await self._http.request(
            "PATCH",
            f"{GRAPH_API_URL}/subscriptions/{subscription_id}",
            access_token=access_token,
            json={"expirationDateTime": expires_at.isoformat().replace("+00:00", "Z")},
        )
        return SubscriptionGrant(subscription_id=subscription_id, expires_at=expires_at)

    async def aclose(self) -> None:
        await self._http.aclose()
