from __future__ import annotations

from datetime import timedelta

from mailshield.core.errors import CredentialError, ProviderError
from mailshield.domain.types import EmailAddress, ParsedEmail, utc_now
from mailshield.providers.mailbox.base import HistoryDiff, SubscriptionGrant, TokenGrant


class FakeMailboxProvider:
    """In-memory mailbox for local runs and tests.

    Messages live in named folders; history is a list of (history_id, ref)
    pairs so incremental diffs behave like Gmail's. Failures are injected per
    operation through `fail_next`.
    """

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.messages: dict[str, ParsedEmail] = {}
        self.folders: dict[str, str] = {}
        self.history: list[tuple[int, str]] = []
        self.calls: list[tuple[str, str]] = []
        self.refresh_calls = 0
        self.revoked_refresh_tokens: set[str] = set()
        self._failures: dict[str, list[Exception]] = {}
        self._next_history_id = 100
        self.watch_lifetime = timedelta(days=7)

    def add_message(
        self,
        ref: str,
        *,
        subject: str = "hello",
        sender: str = "alice@example.com",
        body_text: str = "",
        urls: list[str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> int:
        self._next_history_id += 1
        self.messages[ref] = ParsedEmail(
            message_id=ref,
            provider_message_ref=ref,
            internet_message_id=f"<{ref}@mail.test>",
            subject=subject,
            from_=EmailAddress(address=sender),
            headers=headers or {},
            body_text=body_text,
            urls=urls or [],
        )
        self.folders[ref] = "inbox"
        self.history.append((self._next_history_id, ref))
        return self._next_history_id

    @property
    def current_history_id(self) -> str:
        return str(self._next_history_id)

    def fail_next(self, operation: str, exc: Exception) -> None:
        self._failures.setdefault(operation, []).append(exc)

    def _maybe_fail(self, operation: str, ref: str) -> None:
        self.calls.append((operation, ref))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self._maybe_fail("refresh", refresh_token)
        self.refresh_calls += 1
        if refresh_token in self.revoked_refresh_tokens:
            raise CredentialError("invalid_grant")
        return TokenGrant(
            access_token=f"access-{self.refresh_calls}",
            expires_at=utc_now() + timedelta(hours=1),
            refresh_token=refresh_token,
        )

    async def list_new_messages(
        self, access_token: str, *, cursor: str, mailbox: str | None = None
    ) -> HistoryDiff:
        self._maybe_fail("list", cursor)
        start = int(cursor)
        refs = [ref for history_id, ref in self.history if history_id > start]
        return HistoryDiff(message_refs=refs, next_cursor=self.current_history_id)

    async def fetch_message(
        self, access_token: str, message_ref: str, *, mailbox: str | None = None
    ) -> ParsedEmail:
        self._maybe_fail("fetch", message_ref)
        message = self.messages.get(message_ref)
        if message is None:
            raise ProviderError(f"message {message_ref} not found", status_code=404, provider=self.name)
        return message

    async def quarantine(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        self._maybe_fail("quarantine", message_ref)
        self.folders[message_ref] = "quarantine"
        return message_ref

    async def release(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        self._maybe_fail("release", message_ref)
        self.folders[message_ref] = "inbox"
        return message_ref

    async def delete(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> None:
        self._maybe_fail("delete", message_ref)
        self.folders.pop(message_ref, None)

    async def renew_watch(
        self, access_token: str, *, subscription_id: str | None, mailbox: str | None = None
    ) -> SubscriptionGrant:
        self._maybe_fail("renew", subscription_id or mailbox or "me")
        return SubscriptionGrant(
            subscription_id=subscription_id,
            expires_at=utc_now() + self.watch_lifetime,
            cursor=self.current_history_id,
        )

    async def service_account_token(self, key_json: str, *, subject: str) -> TokenGrant:
        self._maybe_fail("domain_token", subject)
        return TokenGrant(access_token=f"sa-{subject}", expires_at=utc_now() + timedelta(hours=1))

    async def client_credentials_token(self, *, azure_tenant_id: str, client_id: str, client_secret: str) -> TokenGrant:
        self._maybe_fail("domain_token", azure_tenant_id)
        return TokenGrant(access_token=f"app-{azure_tenant_id}", expires_at=utc_now() + timedelta(hours=1))

    async def aclose(self) -> None:
        return None
