from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.types import ParsedEmail, Verdict
from mailshield.persistence.repos import verdicts as verdicts_repo
from mailshield.services.detection.pipeline import AnalyzeOptions, DetectionPipeline
from mailshield.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerdictOutcome:
    # None when an earlier delivery already verdicted this message.
    verdict: Verdict | None
    created: bool


async def verdict_and_store(
    session: AsyncSession,
    pipeline: DetectionPipeline,
    parsed_email: ParsedEmail,
    *,
    tenant_id: str,
    integration_id: str | None = None,
    provider: str | None = None,
    mailbox: str | None = None,
    options: AnalyzeOptions | None = None,
) -> VerdictOutcome:
    """Verdict a message at most once per (tenant, message id).

    The existence check runs before the pipeline so redeliveries skip scoring;
    the conflict-as-no-op insert covers two workers racing past that check.
    """
    if await verdicts_repo.verdict_exists(session, tenant_id=tenant_id, message_id=parsed_email.message_id):
        increment_counter("verdicts_deduplicated_total")
        return VerdictOutcome(verdict=None, created=False)
    verdict = await pipeline.analyze(parsed_email, tenant_id, options)
    created = await verdicts_repo.insert_verdict(
        session,
        verdict,
        integration_id=integration_id,
        provider=provider,
        provider_message_ref=parsed_email.provider_message_ref,
        mailbox=mailbox,
        subject=parsed_email.subject[:500],
        from_address=parsed_email.from_.address,
    )
    if created:
        increment_counter("verdicts_stored_total")
        logger.info(
            "verdict_stored tenant_id=%s message_id=%s verdict=%s score=%.1f",
            tenant_id,
            parsed_email.message_id,
            verdict.verdict_class,
            verdict.overall_score,
        )
    else:
        increment_counter("verdicts_deduplicated_total")
    return VerdictOutcome(verdict=verdict if created else None, created=created)
