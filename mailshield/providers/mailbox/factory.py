from __future__ import annotations

import httpx
from redis.asyncio import Redis

from mailshield.core.config import Settings, get_settings
from mailshield.providers.mailbox.base import MailboxProvider
from mailshield.providers.mailbox.fake import FakeMailboxProvider
from mailshield.providers.mailbox.gmail import GmailProvider
from mailshield.providers.mailbox.graph import GraphProvider


# Provider family per connection type; domain-wide variants share the per-user API.
PROVIDER_FAMILIES = {
    "gmail": "gmail",
    "google_workspace": "gmail",
    "o365": "o365",
    "microsoft_365": "o365",
}


def build_mailbox_providers(
    settings: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    redis: Redis | None = None,
) -> dict[str, MailboxProvider]:
    settings = settings or get_settings()
    mode = (settings.mailbox_provider_mode or "live").lower()
    if mode == "fake":
        return {"gmail": FakeMailboxProvider("gmail"), "o365": FakeMailboxProvider("o365")}
    if mode == "live":
        return {"gmail": GmailProvider(client=client, redis=redis), "o365": GraphProvider(client=client, redis=redis)}
    raise ValueError(f"Unsupported mailbox provider mode: {mode}")


def provider_for(providers: dict[str, MailboxProvider], provider: str) -> MailboxProvider:
    family = PROVIDER_FAMILIES.get(provider)
    if family is None or family not in providers:
        raise ValueError(f"Unsupported mailbox provider: {provider}")
    return providers[family]
