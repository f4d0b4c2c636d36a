from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import EmailVerdict
from mailshield.domain.types import Verdict
from mailshield.persistence.db import dialect_insert
from mailshield.persistence.guards import tenant_predicate


async def verdict_exists(session: AsyncSession, *, tenant_id: str, message_id: str) -> bool:
    # Point lookup on the (tenant_id, message_id) unique key; never a scan.
    result = await session.execute(
        select(EmailVerdict.id).where(
            tenant_predicate(EmailVerdict, tenant_id),
            EmailVerdict.message_id == message_id,
        )
    )
    return result.first() is not None


async def get_verdict(session: AsyncSession, *, tenant_id: str, message_id: str) -> EmailVerdict | None:
    result = await session.execute(
        select(EmailVerdict).where(
            tenant_predicate(EmailVerdict, tenant_id),
            EmailVerdict.message_id == message_id,
        )
    )
    return result.scalar_one_or_none()


async def insert_verdict(
    session: AsyncSession,
    verdict: Verdict,
    *,
    integration_id: str | None = None,
    provider: str | None = None,
    provider_message_ref: str | None = None,
    mailbox: str | None = None,
    subject: str | None = None,
    from_address: str | None = None,
) -> bool:
    # Conflicting writes are no-ops; return whether this call created the row.
    stmt = (
        dialect_insert(session, EmailVerdict)
        .values(
            id=str(uuid4()),
            tenant_id=verdict.tenant_id,
            message_id=verdict.message_id,
            integration_id=integration_id,
            provider=provider,
            provider_message_ref=provider_message_ref,
            mailbox=mailbox,
            verdict_class=verdict.verdict_class,
            overall_score=verdict.overall_score,
            confidence=verdict.confidence,
            signals=[signal.model_dump() for signal in verdict.signals],
            explanation=verdict.explanation,
            processing_time_ms=verdict.processing_time_ms,
            subject=subject,
            from_address=from_address,
            created_at=verdict.created_at,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "message_id"])
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)
