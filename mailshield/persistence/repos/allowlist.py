from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import AllowlistEntry, FeedbackEntry
from mailshield.persistence.db import dialect_insert
from mailshield.persistence.guards import tenant_predicate


async def add_entry(
    session: AsyncSession,
    *,
    tenant_id: str,
    entry_type: str,
    value: str,
    reason: str | None = None,
    created_by: str | None = None,
) -> bool:
    # Re-adding an existing sender is a no-op.
    stmt = (
        dialect_insert(session, AllowlistEntry)
        .values(
            tenant_id=tenant_id,
            entry_type=entry_type,
            value=value.lower(),
            reason=reason,
            created_by=created_by,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "entry_type", "value"])
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def is_allowlisted(session: AsyncSession, *, tenant_id: str, address: str) -> bool:
    address = address.lower()
    _, _, domain = address.rpartition("@")
    result = await session.execute(
        select(AllowlistEntry.id).where(
            tenant_predicate(AllowlistEntry, tenant_id),
            (
                ((AllowlistEntry.entry_type == "email") & (AllowlistEntry.value == address))
                | ((AllowlistEntry.entry_type == "domain") & (AllowlistEntry.value == domain))
            ),
        )
    )
    return result.first() is not None


async def add_feedback(
    session: AsyncSession,
    *,
    tenant_id: str,
    message_id: str,
    feedback_type: str,
    notes: str | None,
    created_by: str | None,
) -> None:
    session.add(
        FeedbackEntry(
            tenant_id=tenant_id,
            message_id=message_id,
            feedback_type=feedback_type,
            notes=notes,
            created_by=created_by,
        )
    )
    await session.flush()
