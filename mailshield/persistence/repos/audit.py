from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import AuditEvent
from mailshield.persistence.guards import tenant_predicate


def _filter_event_type(stmt: Select, event_type: str) -> Select:
    # "remediation." selects the whole family; anything else is an exact match.
    if event_type.endswith("."):
        return stmt.where(AuditEvent.event_type.startswith(event_type, autoescape=True))
    return stmt.where(AuditEvent.event_type == event_type)


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    resource_id: str | None = None,
    since: datetime | None = None,
    limit: int = 50,
) -> list[AuditEvent]:
    """Newest-first audit rows for one tenant.

    `resource_id` is the provider message ref for sync and remediation rows.
    """
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id))
    if event_type:
        stmt = _filter_event_type(stmt, event_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if since is not None:
        stmt = stmt.where(AuditEvent.occurred_at >= since)
    result = await session.execute(
        stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
