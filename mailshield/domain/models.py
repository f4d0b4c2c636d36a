from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (
        # At most one connection per tenant and provider.
        UniqueConstraint("tenant_id", "provider", name="uq_integration_connections_tenant_provider"),
        Index("ix_integration_connections_provider_email", "provider", "connected_email"),
        Index("ix_integration_connections_subscription", "subscription_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # gmail | o365
    provider: Mapped[str] = mapped_column(String)
    # connected | disconnected | error | revoked
    status: Mapped[str] = mapped_column(String, default="connected")
    # Mailbox address verified during the OAuth callback; the only key used for push routing.
    connected_email: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider-specific incremental sync cursor (Gmail historyId, Graph timestamp).
    sync_cursor: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DomainWideConfig(Base):
    __tablename__ = "domain_wide_configs"

    # Tenant-level directory configuration for domain-wide monitoring.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # google_workspace | microsoft_365
    provider: Mapped[str] = mapped_column(String)
    # active | paused | error
    status: Mapped[str] = mapped_column(String, default="active")
    domain: Mapped[str | None] = mapped_column(String, nullable=True)
    service_account_key_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    azure_tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    azure_client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    azure_client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    emails_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    threats_detected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DomainUser(Base):
    __tablename__ = "domain_users"
    __table_args__ = (
        UniqueConstraint("domain_config_id", "email", name="uq_domain_users_config_email"),
        Index("ix_domain_users_subscription", "subscription_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    domain_config_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    is_monitored: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_cursor: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    emails_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    threats_detected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EmailVerdict(Base):
    __tablename__ = "email_verdicts"
    __table_args__ = (
        # Exactly one verdict per tenant and message; conflicting inserts are no-ops.
        UniqueConstraint("tenant_id", "message_id", name="uq_email_verdicts_tenant_message"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    message_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_message_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    mailbox: Mapped[str | None] = mapped_column(String, nullable=True)
    # pass | suspicious | quarantine | block
    verdict_class: Mapped[str] = mapped_column(String)
    overall_score: Mapped[float] = mapped_column(Float)
    confidence: Mapped[float] = mapped_column(Float)
    signals: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RemediationRecord(Base):
    __tablename__ = "remediation_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "message_id", name="uq_remediation_records_tenant_message"),
        Index("ix_remediation_records_tenant_state", "tenant_id", "state"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    message_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    # gmail | o365 | google_workspace | microsoft_365
    provider: Mapped[str] = mapped_column(String)
    provider_message_ref: Mapped[str] = mapped_column(String)
    # Impersonated mailbox for domain-wide messages; null for per-user integrations.
    mailbox: Mapped[str | None] = mapped_column(String, nullable=True)
    # active | quarantined | released | deleted | false_positive
    state: Mapped[str] = mapped_column(String, default="active")
    verdict_class: Mapped[str | None] = mapped_column(String, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    sender_address: Mapped[str | None] = mapped_column(String, nullable=True)
    quarantined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewer_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AllowlistEntry(Base):
    __tablename__ = "allowlist_entries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entry_type", "value", name="uq_allowlist_entries_value"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # email | domain
    entry_type: Mapped[str] = mapped_column(String)
    value: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FeedbackEntry(Base):
    __tablename__ = "feedback_entries"

    # Reviewer feedback captured on false-positive reports.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    message_id: Mapped[str] = mapped_column(String)
    feedback_type: Mapped[str] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    # system | user
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
