from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import AuditEvent
from mailshield.domain.types import utc_now


logger = logging.getLogger(__name__)

ActorType = Literal["system", "user"]

REDACTED = "[REDACTED]"
# Provider error strings can echo request bodies; keep enough to diagnose.
MAX_VALUE_CHARS = 500

# Key fragments: OAuth material and service-account keys, then message content.
_CREDENTIAL_FRAGMENTS = ("token", "secret", "password", "authorization", "key_json")
_CONTENT_FRAGMENTS = ("body", "html", "raw")


def _redacted(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _CREDENTIAL_FRAGMENTS + _CONTENT_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Drop credentials and message content from audit metadata, at any depth."""
    if isinstance(value, dict):
        return {str(key): REDACTED if _redacted(str(key)) else sanitize_metadata(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > MAX_VALUE_CHARS:
        return value[:MAX_VALUE_CHARS] + "..."
    return value


async def record_event(
    *,
    session: AsyncSession,
    tenant_id: str | None,
    actor_type: ActorType,
    actor_id: str | None,
    event_type: str,
    outcome: Literal["success", "failure"],
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
) -> None:
    """Stage an audit row in the caller's transaction.

    Sync and remediation rows normally commit together with the state change
    they describe. `commit=True` is for failure paths that already rolled the
    business change back; there a failed audit write is logged, never raised.
    """
    session.add(
        AuditEvent(
            occurred_at=occurred_at or utc_now(),
            tenant_id=tenant_id,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata_json=sanitize_metadata(metadata or {}),
            error_code=error_code,
        )
    )
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed tenant_id=%s event_type=%s resource_id=%s",
            tenant_id,
            event_type,
            resource_id,
            exc_info=exc,
        )
