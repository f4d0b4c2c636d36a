from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from mailshield.domain.types import ParsedEmail


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    # Providers may omit a rotated refresh token; callers keep the old one then.
    refresh_token: str | None = None
    scopes: str | None = None


@dataclass(frozen=True)
class SubscriptionGrant:
    # Gmail watches have no id of their own; subscription_id stays None there.
    subscription_id: str | None
    expires_at: datetime
    # Gmail reports the mailbox history id at watch time.
    cursor: str | None = None


@dataclass(frozen=True)
class HistoryDiff:
    message_refs: list[str] = field(default_factory=list)
    # None when the provider could not report a cursor (expired history window).
    next_cursor: str | None = None


class MailboxProvider(Protocol):
    """Provider API surface consumed by ingestion and remediation.

    `mailbox` selects an impersonated user for domain-wide credentials and is
    None for per-user OAuth connections. Move operations return the message
    reference after the move, since some providers mint a new id.
    """

    name: str

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        ...

    async def list_new_messages(
        self, access_token: str, *, cursor: str, mailbox: str | None = None
    ) -> HistoryDiff:
        ...

    async def fetch_message(
        self, access_token: str, message_ref: str, *, mailbox: str | None = None
    ) -> ParsedEmail:
        ...

    async def quarantine(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        ...

    async def release(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        ...

    async def delete(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> None:
        ...

    async def renew_watch(
        self, access_token: str, *, subscription_id: str | None, mailbox: str | None = None
    ) -> SubscriptionGrant:
        ...

    async def aclose(self) -> None:
        ...
