from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import RemediationRecord
from mailshield.domain.types import utc_now
from mailshield.persistence.db import dialect_insert
from mailshield.persistence.guards import tenant_predicate


async def get_record(session: AsyncSession, *, tenant_id: str, message_id: str) -> RemediationRecord | None:
    result = await session.execute(
        select(RemediationRecord).where(
            tenant_predicate(RemediationRecord, tenant_id),
            RemediationRecord.message_id == message_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    message_id: str,
    integration_id: str,
    provider: str,
    provider_message_ref: str,
    mailbox: str | None = None,
    verdict_class: str | None = None,
    score: float | None = None,
    sender_address: str | None = None,
) -> RemediationRecord:
    # Create the record in the active state unless one already exists.
    stmt = (
        dialect_insert(session, RemediationRecord)
        .values(
            id=str(uuid4()),
            tenant_id=tenant_id,
            message_id=message_id,
            integration_id=integration_id,
            provider=provider,
            provider_message_ref=provider_message_ref,
            mailbox=mailbox,
            state="active",
            verdict_class=verdict_class,
            score=score,
            sender_address=sender_address,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "message_id"])
    )
    await session.execute(stmt)
    record = await get_record(session, tenant_id=tenant_id, message_id=message_id)
    if record is None:
        raise RuntimeError(f"remediation record missing after upsert message_id={message_id}")
    return record


async def transition_state(
    session: AsyncSession,
    *,
    tenant_id: str,
    message_id: str,
    from_state: str,
    to_state: str,
    values: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> bool:
    # Conditional UPDATE guarded by the prior state; False means another caller moved it first.
    stmt = (
        update(RemediationRecord)
        .where(
            tenant_predicate(RemediationRecord, tenant_id),
            RemediationRecord.message_id == message_id,
            RemediationRecord.state == from_state,
        )
        .values(state=to_state, updated_at=now or utc_now(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)
