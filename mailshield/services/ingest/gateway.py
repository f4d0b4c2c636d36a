from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.core.config import Settings, get_settings
from mailshield.core.errors import IntegrationNotConnectedError, MalformedNotificationError
from mailshield.domain.models import DomainUser, DomainWideConfig, IntegrationConnection
from mailshield.domain.types import WorkItem, utc_now
from mailshield.persistence.repos import domain_users as domain_repo
from mailshield.persistence.repos import integrations as integrations_repo
from mailshield.providers.mailbox.base import HistoryDiff, MailboxProvider, SubscriptionGrant
from mailshield.providers.mailbox.factory import provider_for
from mailshield.services.ingest.credentials import CredentialManager, call_with_refresh
from mailshield.services.queue.work_queue import WorkQueue


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class MailboxTarget:
    """A resolved mailbox: a per-user connection or one monitored domain user."""

    tenant_id: str
    integration_id: str
    provider: str
    cursor: str | None
    mailbox: str | None = None
    domain_user_id: str | None = None


@dataclass(frozen=True)
class NotificationEvent:
    # Identifier embedded by the provider: mailbox address or subscription id.
    key: str
    cursor: str | None
    message_refs: list[str] = field(default_factory=list)
    client_state: str | None = None


class IngestionGateway(Protocol):
    provider: str

    def validation_token(self, payload: Any, query: Mapping[str, str]) -> str | None:
        ...

    async def handle_notification(self, session: AsyncSession, payload: Any) -> list[WorkItem]:
        ...

    async def refresh_credential(
        self, session: AsyncSession, target: MailboxTarget, *, rejected: str | None = None
    ) -> str:
        ...

    async def diff_since(
        self,
        session: AsyncSession,
        target: MailboxTarget,
        cursor: str,
        *,
        event: NotificationEvent | None = None,
    ) -> HistoryDiff:
        ...

    async def load_target(
        self,
        session: AsyncSession,
        *,
        integration_id: str,
        mailbox: str | None = None,
        domain_user_id: str | None = None,
    ) -> MailboxTarget:
        ...

    async def advance_cursor(self, session: AsyncSession, target: MailboxTarget, cursor: str) -> bool:
        ...

    async def record_processed(
        self, session: AsyncSession, target: MailboxTarget, *, scanned: int, threats: int
    ) -> None:
        ...

    async def poll(self, session: AsyncSession, target: MailboxTarget) -> WorkItem | None:
        ...

    async def renew_subscription(
        self, session: AsyncSession, target: MailboxTarget, *, subscription_id: str | None
    ) -> SubscriptionGrant:
        ...


def _decode_pubsub(payload: Any) -> NotificationEvent:
    # Pub/Sub push envelope: {"message": {"data": base64(json{emailAddress, historyId})}}
    if not isinstance(payload, dict):
        raise MalformedNotificationError("pubsub envelope is not an object")
    data = (payload.get("message") or {}).get("data")
    if not isinstance(data, str) or not data:
        raise MalformedNotificationError("pubsub message data missing")
    try:
        decoded = json.loads(base64.b64decode(data + "=" * (-len(data) % 4), altchars=b"-_"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise MalformedNotificationError("pubsub message data is not base64 json") from exc
    if not isinstance(decoded, dict):
        raise MalformedNotificationError("pubsub message data is not an object")
    email = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not email or history_id is None:
        raise MalformedNotificationError("pubsub message missing emailAddress or historyId")
    return NotificationEvent(key=str(email).lower(), cursor=str(history_id))


def _graph_message_id(notification: dict[str, Any]) -> str | None:
    resource_data = notification.get("resourceData") or {}
    if resource_data.get("id"):
        return str(resource_data["id"])
    resource = str(notification.get("resource") or "")
    # Resource paths look like Users/<id>/Messages/<message-id>.
    lowered = resource.lower()
    marker = lowered.rfind("messages/")
    if marker == -1:
        return None
    tail = resource[marker + len("messages/"):].strip("/'()")
    return tail or None


def _graph_cursor(now: datetime) -> str:
    # Same shape as Graph receivedDateTime so cursors compare lexically.
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


# A lost compare-and-set re-reads the cursor; it only retries while ours is still newer.
_CURSOR_CAS_ATTEMPTS = 3


class _BaseGateway:
    provider: str = ""

    def __init__(
        self,
        *,
        providers: dict[str, MailboxProvider],
        credentials: CredentialManager,
        queue: WorkQueue,
        settings: Settings | None = None,
    ) -> None:
        self._providers = providers
        self._credentials = credentials
        self._queue = queue
        self._settings = settings or get_settings()

    @property
    def mailbox_provider(self) -> MailboxProvider:
        return provider_for(self._providers, self.provider)

    def validation_token(self, payload: Any, query: Mapping[str, str]) -> str | None:
        return None

    def parse_notification(self, payload: Any) -> list[NotificationEvent]:
        raise NotImplementedError

    async def resolve(self, session: AsyncSession, event: NotificationEvent) -> MailboxTarget | None:
        raise NotImplementedError

    def is_newer(self, current: str | None, candidate: str) -> bool:
        return current is None or candidate > current

    async def handle_notification(self, session: AsyncSession, payload: Any) -> list[WorkItem]:
        """Turn one provider notification into enqueued work items.

        Never raises: providers retry non-2xx deliveries aggressively, and a
        dropped notification is recovered by the next one because the stored
        cursor only moves after the worker finishes a window.
        """
        try:
            events = self.parse_notification(payload)
        except MalformedNotificationError as exc:
            logger.warning("webhook_payload_malformed provider=%s reason=%s", self.provider, exc)
            return []
        enqueued: list[WorkItem] = []
        for event in events:
            try:
                target = await self.resolve(session, event)
                if target is None:
                    logger.debug("webhook_target_unknown provider=%s key=%s", self.provider, event.key)
                    continue
                item = await self._build_item(session, target, event)
            except Exception as exc:  # noqa: BLE001 - webhook acks regardless; next notification re-diffs
                logger.warning(
                    "webhook_notification_failed provider=%s key=%s",
                    self.provider,
                    event.key,
                    exc_info=exc,
                )
                await session.rollback()
                continue
            if item is None:
                continue
            await self._queue.enqueue(item)
            enqueued.append(item)
        return enqueued

    async def _build_item(
        self, session: AsyncSession, target: MailboxTarget, event: NotificationEvent
    ) -> WorkItem | None:
        start = target.cursor or event.cursor
        if start is None:
            return None
        diff = await self.diff_since(session, target, start, event=event)
        next_cursor = diff.next_cursor or event.cursor
        if not diff.message_refs:
            # Nothing new since the stored cursor, so there is no window left to protect.
            if next_cursor and await self.advance_cursor(session, target, next_cursor):
                await session.commit()
            return None
        return WorkItem(
            tenant_id=target.tenant_id,
            integration_id=target.integration_id,
            provider=self.provider,
            provider_message_refs=diff.message_refs,
            sync_cursor_at_enqueue=target.cursor,
            next_sync_cursor=next_cursor,
            mailbox=target.mailbox,
            domain_user_id=target.domain_user_id,
        )

    async def diff_since(
        self,
        session: AsyncSession,
        target: MailboxTarget,
        cursor: str,
        *,
        event: NotificationEvent | None = None,
    ) -> HistoryDiff:
        provider = self.mailbox_provider
        return await self._with_token(
            session,
            target,
            lambda token: provider.list_new_messages(token, cursor=cursor, mailbox=target.mailbox),
        )

    async def _with_token(
        self, session: AsyncSession, target: MailboxTarget, call: Callable[[str], Awaitable[T]]
    ) -> T:
        async def _token(rejected: str | None) -> str:
            return await self.refresh_credential(session, target, rejected=rejected)

        return await call_with_refresh(_token, call)

    async def poll(self, session: AsyncSession, target: MailboxTarget) -> WorkItem | None:
        """Diff a mailbox from its stored cursor and enqueue any new window.

        Recovers messages whose notification never arrived. A mailbox with no
        stored cursor has no baseline to diff from and is skipped.
        """
        if target.cursor is None:
            return None
        item = await self._build_item(session, target, NotificationEvent(key=target.integration_id, cursor=None))
        if item is not None:
            await self._queue.enqueue(item)
        return item

    async def renew_subscription(
        self, session: AsyncSession, target: MailboxTarget, *, subscription_id: str | None
    ) -> SubscriptionGrant:
        provider = self.mailbox_provider
        grant = await self._with_token(
            session,
            target,
            lambda token: provider.renew_watch(token, subscription_id=subscription_id, mailbox=target.mailbox),
        )
        await self.record_subscription(session, target, grant)
        if grant.cursor and target.cursor is None:
            # First watch on this mailbox: its history id is the diff baseline.
            await self.advance_cursor(session, target, grant.cursor)
        return grant

    async def record_subscription(
        self, session: AsyncSession, target: MailboxTarget, grant: SubscriptionGrant
    ) -> None:
        raise NotImplementedError

    async def record_processed(
        self, session: AsyncSession, target: MailboxTarget, *, scanned: int, threats: int
    ) -> None:
        return None


class _ConnectionGateway(_BaseGateway):
    """Per-user OAuth connections stored as IntegrationConnection rows."""

    def target_for(self, connection: IntegrationConnection) -> MailboxTarget:
        return MailboxTarget(
            tenant_id=connection.tenant_id,
            integration_id=connection.id,
            provider=connection.provider,
            cursor=connection.sync_cursor,
        )

    async def refresh_credential(
        self, session: AsyncSession, target: MailboxTarget, *, rejected: str | None = None
    ) -> str:
        # Re-read by id: a rollback earlier in the session expires loaded rows.
        connection = await integrations_repo.get_connection(session, target.integration_id)
        if connection is None:
            raise IntegrationNotConnectedError(f"integration {target.integration_id} not found")
        return await self._credentials.connection_token(session, connection, rejected=rejected)

    async def load_target(
        self,
        session: AsyncSession,
        *,
        integration_id: str,
        mailbox: str | None = None,
        domain_user_id: str | None = None,
    ) -> MailboxTarget:
        connection = await integrations_repo.get_connection(session, integration_id, fresh=True)
        if connection is None or connection.status != "connected":
            raise IntegrationNotConnectedError(f"integration {integration_id} not found or not connected")
        return self.target_for(connection)

    async def advance_cursor(self, session: AsyncSession, target: MailboxTarget, cursor: str) -> bool:
        for _ in range(_CURSOR_CAS_ATTEMPTS):
            connection = await integrations_repo.get_connection(session, target.integration_id, fresh=True)
            if connection is None or not self.is_newer(connection.sync_cursor, cursor):
                return False
            if await integrations_repo.advance_sync_cursor(
                session, target.integration_id, cursor=cursor, observed=connection.sync_cursor
            ):
                return True
        return False

    async def record_subscription(
        self, session: AsyncSession, target: MailboxTarget, grant: SubscriptionGrant
    ) -> None:
        await integrations_repo.record_subscription(
            session,
            target.integration_id,
            subscription_id=grant.subscription_id,
            expires_at=grant.expires_at,
        )


class _DomainGateway(_BaseGateway):
    """Monitored users under a tenant-level DomainWideConfig."""

    def target_for(self, config: DomainWideConfig, user: DomainUser) -> MailboxTarget:
        return MailboxTarget(
            tenant_id=config.tenant_id,
            integration_id=config.id,
            provider=config.provider,
            cursor=user.sync_cursor,
            mailbox=user.email,
            domain_user_id=user.id,
        )

    async def _config(self, session: AsyncSession, target: MailboxTarget) -> DomainWideConfig:
        config = await domain_repo.get_config(session, target.integration_id)
        if config is None or config.status != "active":
            raise IntegrationNotConnectedError(f"domain config {target.integration_id} is not active")
        return config

    async def refresh_credential(
        self, session: AsyncSession, target: MailboxTarget, *, rejected: str | None = None
    ) -> str:
        config = await self._config(session, target)
        return await self._credentials.domain_token(config, target.mailbox or "", rejected=rejected)

    async def load_target(
        self,
        session: AsyncSession,
        *,
        integration_id: str,
        mailbox: str | None = None,
        domain_user_id: str | None = None,
    ) -> MailboxTarget:
        config = await domain_repo.get_config(session, integration_id)
        if config is None or config.status != "active":
            raise IntegrationNotConnectedError(f"domain config {integration_id} is not active")
        user = None
        if domain_user_id:
            user = await domain_repo.get_user(session, domain_user_id)
        elif mailbox:
            user = await domain_repo.find_user_by_email(session, config_id=config.id, email=mailbox)
        if user is None or user.status != "active" or not user.is_monitored:
            raise IntegrationNotConnectedError(f"domain user {domain_user_id or mailbox} is not monitored")
        return self.target_for(config, user)

    async def advance_cursor(self, session: AsyncSession, target: MailboxTarget, cursor: str) -> bool:
        for _ in range(_CURSOR_CAS_ATTEMPTS):
            user = await domain_repo.get_user(session, target.domain_user_id or "", fresh=True)
            if user is None or not self.is_newer(user.sync_cursor, cursor):
                return False
            if await domain_repo.advance_sync_cursor(session, user.id, cursor=cursor, observed=user.sync_cursor):
                return True
        return False

    async def record_subscription(
        self, session: AsyncSession, target: MailboxTarget, grant: SubscriptionGrant
    ) -> None:
        await domain_repo.record_subscription(
            session,
            target.domain_user_id or "",
            subscription_id=grant.subscription_id,
            expires_at=grant.expires_at,
        )

    async def record_processed(
        self, session: AsyncSession, target: MailboxTarget, *, scanned: int, threats: int
    ) -> None:
        if target.domain_user_id and (scanned or threats):
            await domain_repo.increment_stats(
                session,
                target.domain_user_id,
                emails_scanned=scanned,
                threats_detected=threats,
            )


def _history_is_newer(current: str | None, candidate: str) -> bool:
    # Gmail history ids are monotonically increasing integers.
    if current is None:
        return True
    try:
        return int(candidate) > int(current)
    except ValueError:
        return candidate != current


class GmailPushGateway(_ConnectionGateway):
    provider = "gmail"

    def parse_notification(self, payload: Any) -> list[NotificationEvent]:
        return [_decode_pubsub(payload)]

    def is_newer(self, current: str | None, candidate: str) -> bool:
        return _history_is_newer(current, candidate)

    async def resolve(self, session: AsyncSession, event: NotificationEvent) -> MailboxTarget | None:
        connection = await integrations_repo.find_connected_by_email(session, provider="gmail", email=event.key)
        return self.target_for(connection) if connection else None


class GoogleWorkspaceGateway(_DomainGateway):
    provider = "google_workspace"

    def parse_notification(self, payload: Any) -> list[NotificationEvent]:
        return [_decode_pubsub(payload)]

    def is_newer(self, current: str | None, candidate: str) -> bool:
        return _history_is_newer(current, candidate)

    async def resolve(self, session: AsyncSession, event: NotificationEvent) -> MailboxTarget | None:
        found = await domain_repo.find_monitored_user(session, provider="google_workspace", email=event.key)
        if found is None:
            return None
        config, user = found
        return self.target_for(config, user)


class _GraphNotifications:
    """Shared Graph change-notification handling for per-user and domain-wide subscriptions."""

    _settings: Settings

    def validation_token(self, payload: Any, query: Mapping[str, str]) -> str | None:
        token = query.get("validationToken")
        if token:
            return token
        if isinstance(payload, dict) and isinstance(payload.get("validationToken"), str):
            return payload["validationToken"]
        return None

    def parse_notification(self, payload: Any) -> list[NotificationEvent]:
        if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
            raise MalformedNotificationError("graph notification body has no value list")
        secret = self._settings.microsoft_webhook_secret
        cursor = _graph_cursor(utc_now())
        grouped: dict[tuple[str, str | None], list[str]] = {}
        for notification in payload["value"]:
            if not isinstance(notification, dict):
                continue
            client_state = notification.get("clientState")
            if secret and client_state != secret:
                logger.warning(
                    "graph_client_state_mismatch subscription_id=%s", notification.get("subscriptionId")
                )
                continue
            if str(notification.get("changeType", "")).lower() != "created":
                continue
            subscription_id = notification.get("subscriptionId")
            message_id = _graph_message_id(notification)
            if not subscription_id or not message_id:
                continue
            refs = grouped.setdefault((str(subscription_id), client_state), [])
            if message_id not in refs:
                refs.append(message_id)
        return [
            NotificationEvent(key=subscription_id, cursor=cursor, message_refs=refs, client_state=client_state)
            for (subscription_id, client_state), refs in grouped.items()
        ]

    async def diff_since(
        self,
        session: AsyncSession,
        target: MailboxTarget,
        cursor: str,
        *,
        event: NotificationEvent | None = None,
    ) -> HistoryDiff:
        # Graph has no history log: the notification itself names the new messages.
        if event is not None and event.message_refs:
            return HistoryDiff(message_refs=list(event.message_refs), next_cursor=event.cursor)
        return await super().diff_since(session, target, cursor, event=event)  # type: ignore[misc]


class GraphWebhookGateway(_GraphNotifications, _ConnectionGateway):
    provider = "o365"

    async def resolve(self, session: AsyncSession, event: NotificationEvent) -> MailboxTarget | None:
        connection = await integrations_repo.find_connected_by_subscription(
            session, provider="o365", subscription_id=event.key
        )
        if connection is None and event.client_state and not self._settings.microsoft_webhook_secret:
            # Subscriptions created before the id was stored carry the tenant id as client state.
            connection = await integrations_repo.find_connected_by_tenant(
                session, provider="o365", tenant_id=event.client_state
            )
        return self.target_for(connection) if connection else None


class Microsoft365Gateway(_GraphNotifications, _DomainGateway):
    provider = "microsoft_365"

    async def resolve(self, session: AsyncSession, event: NotificationEvent) -> MailboxTarget | None:
        found = await domain_repo.find_monitored_user_by_subscription(session, subscription_id=event.key)
        if found is None:
            return None
        config, user = found
        if config.provider != "microsoft_365":
            return None
        return self.target_for(config, user)


def build_gateways(
    *,
    providers: dict[str, MailboxProvider],
    credentials: CredentialManager,
    queue: WorkQueue,
    settings: Settings | None = None,
) -> dict[str, _BaseGateway]:
    kwargs = {"providers": providers, "credentials": credentials, "queue": queue, "settings": settings}
    gateways: list[_BaseGateway] = [
        GmailPushGateway(**kwargs),
        GraphWebhookGateway(**kwargs),
        GoogleWorkspaceGateway(**kwargs),
        Microsoft365Gateway(**kwargs),
    ]
    return {gateway.provider: gateway for gateway in gateways}
