from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field


VerdictClass = Literal["pass", "suspicious", "quarantine", "block"]
Severity = Literal["info", "warning", "critical"]
ProviderName = Literal["gmail", "o365"]
RemediationState = Literal["active", "quarantined", "released", "deleted", "false_positive"]

# Verdict classes that trigger automatic quarantine.
THREAT_VERDICTS: frozenset[str] = frozenset({"quarantine", "block"})


def utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # Some drivers (SQLite) hand back naive datetimes for timezone-aware columns;
    # aware values such as a sender's Date header are shifted to UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EmailAddress(BaseModel):
    address: str
    display_name: str | None = None

    @property
    def domain(self) -> str:
        _, _, domain = self.address.rpartition("@")
        return domain.lower()


class ParsedEmail(BaseModel):
    # Provider-neutral view of a fetched message handed to the pipeline.
    # Provider message id at ingest time; the per-tenant dedup key.
    message_id: str
    provider_message_ref: str
    # RFC 5322 Message-ID header, when present.
    internet_message_id: str | None = None
    subject: str = ""
    from_: EmailAddress = Field(alias="from")
    reply_to: EmailAddress | None = None
    to: list[EmailAddress] = Field(default_factory=list)
    date: datetime | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body_text: str | None = None
    body_html: str | None = None
    urls: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class Signal(BaseModel):
    type: str
    severity: Severity
    detail: str


class Verdict(BaseModel):
    tenant_id: str
    message_id: str
    verdict_class: VerdictClass
    overall_score: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=1)
    # Ordered as the pipeline emitted them.
    signals: list[Signal] = Field(default_factory=list)
    explanation: str | None = None
    processing_time_ms: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_threat(self) -> bool:
        return self.verdict_class in THREAT_VERDICTS


class WorkItem(BaseModel):
    """One notification window of new messages for a single mailbox.

    `provider_message_refs` carries every new message the gateway derived from
    the notification so the cursor advance stays atomic with the whole set.
    It replaces the single `providerMessageRef` of per-message queue payloads;
    one item now covers the whole window.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    # IntegrationConnection id, or DomainWideConfig id for domain-wide items.
    integration_id: str
    provider: str
    provider_message_refs: list[str] = Field(default_factory=list)
    sync_cursor_at_enqueue: str | None = None
    next_sync_cursor: str | None = None
    mailbox: str | None = None
    domain_user_id: str | None = None
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=utc_now)
    last_error: str | None = None
