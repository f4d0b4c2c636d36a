"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "integration_connections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="connected"),
        sa.Column("connected_email", sa.String(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.String(), nullable=True),
        sa.Column("sync_cursor", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_integration_connections_tenant_provider"),
    )
    op.create_index("ix_integration_connections_tenant_id", "integration_connections", ["tenant_id"])
    # Push routing resolves mailboxes by verified address and by Graph subscription id.
    op.create_index(
        "ix_integration_connections_provider_email",
        "integration_connections",
        ["provider", "connected_email"],
    )
    op.create_index("ix_integration_connections_subscription", "integration_connections", ["subscription_id"])

    op.create_table(
        "domain_wide_configs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("domain", sa.String(), nullable=True),
        sa.Column("service_account_key_json", sa.Text(), nullable=True),
        sa.Column("azure_tenant_id", sa.String(), nullable=True),
        sa.Column("azure_client_id", sa.String(), nullable=True),
        sa.Column("azure_client_secret", sa.Text(), nullable=True),
        sa.Column("emails_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threats_detected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_domain_wide_configs_tenant_id", "domain_wide_configs", ["tenant_id"])

    op.create_table(
        "domain_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("domain_config_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("is_monitored", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sync_cursor", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("emails_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threats_detected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("domain_config_id", "email", name="uq_domain_users_config_email"),
    )
    op.create_index("ix_domain_users_domain_config_id", "domain_users", ["domain_config_id"])
    op.create_index("ix_domain_users_tenant_id", "domain_users", ["tenant_id"])
    op.create_index("ix_domain_users_subscription", "domain_users", ["subscription_id"])

    op.create_table(
        "email_verdicts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("provider_message_ref", sa.String(), nullable=True),
        sa.Column("mailbox", sa.String(), nullable=True),
        sa.Column("verdict_class", sa.String(), nullable=False),
        sa.Column("overall_score", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("signals", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("from_address", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # One verdict per tenant and message; the dedup point lookup uses this index.
        sa.UniqueConstraint("tenant_id", "message_id", name="uq_email_verdicts_tenant_message"),
    )
    op.create_index("ix_email_verdicts_tenant_id", "email_verdicts", ["tenant_id"])

    op.create_table(
        "remediation_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_message_ref", sa.String(), nullable=False),
        sa.Column("mailbox", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=False, server_default="active"),
        sa.Column("verdict_class", sa.String(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("sender_address", sa.String(), nullable=True),
        sa.Column("quarantined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_by", sa.String(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewer_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "message_id", name="uq_remediation_records_tenant_message"),
    )
    op.create_index("ix_remediation_records_tenant_id", "remediation_records", ["tenant_id"])
    op.create_index("ix_remediation_records_tenant_state", "remediation_records", ["tenant_id", "state"])

    op.create_table(
        "allowlist_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "entry_type", "value", name="uq_allowlist_entries_value"),
    )
    op.create_index("ix_allowlist_entries_tenant_id", "allowlist_entries", ["tenant_id"])

    op.create_table(
        "feedback_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("feedback_type", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_feedback_entries_tenant_id", "feedback_entries", ["tenant_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_feedback_entries_tenant_id", table_name="feedback_entries")
    op.drop_table("feedback_entries")
    op.drop_index("ix_allowlist_entries_tenant_id", table_name="allowlist_entries")
    op.drop_table("allowlist_entries")
    op.drop_index("ix_remediation_records_tenant_state", table_name="remediation_records")
    op.drop_index("ix_remediation_records_tenant_id", table_name="remediation_records")
    op.drop_table("remediation_records")
    op.drop_index("ix_email_verdicts_tenant_id", table_name="email_verdicts")
    op.drop_table("email_verdicts")
    op.drop_index("ix_domain_users_subscription", table_name="domain_users")
    op.drop_index("ix_domain_users_tenant_id", table_name="domain_users")
    op.drop_index("ix_domain_users_domain_config_id", table_name="domain_users")
    op.drop_table("domain_users")
    op.drop_index("ix_domain_wide_configs_tenant_id", table_name="domain_wide_configs")
    op.drop_table("domain_wide_configs")
    op.drop_index("ix_integration_connections_subscription", table_name="integration_connections")
    op.drop_index("ix_integration_connections_provider_email", table_name="integration_connections")
    op.drop_index("ix_integration_connections_tenant_id", table_name="integration_connections")
    op.drop_table("integration_connections")
