from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailshield.core.config import MAX_ADMIN_BATCH_LIMIT, Settings, get_settings
from mailshield.core.errors import (
    ErrorCode,
    IntegrationNotConnectedError,
    RemediationError,
    WorkIncompleteError,
    classify_error,
    is_retryable,
)
from mailshield.domain.types import ParsedEmail, WorkItem
from mailshield.persistence.repos import remediation as remediation_repo
from mailshield.persistence.repos import verdicts as verdicts_repo
from mailshield.providers.mailbox.base import MailboxProvider
from mailshield.providers.mailbox.factory import provider_for
from mailshield.services.audit import record_event
from mailshield.services.detection.pipeline import AnalyzeOptions, DetectionPipeline
from mailshield.services.detection.verdict_store import verdict_and_store
from mailshield.services.ingest.credentials import call_with_refresh
from mailshield.services.ingest.gateway import IngestionGateway, MailboxTarget
from mailshield.services.notifications.sink import NotificationSink, emit_best_effort
from mailshield.services.queue.work_queue import WorkQueue
from mailshield.services.remediation.engine import RemediationEngine, RemediationResult


logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class WorkerSummary:
    fetched: int = 0
    processed_messages: int = 0
    threats_found: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_payload(self) -> dict[str, Any]:
        # camelCase keys for the HTTP trigger response.
        return {_camel(key): value for key, value in self.__dict__.items()}


@dataclass
class _MessageOutcome:
    processed: bool = False
    threat: bool = False


class QueueWorker:
    """Drains the work queue within a wall-clock budget.

    Each invocation pops at most one batch. Messages inside an item run one at
    a time and the budget is checked before each one starts; in-flight
    provider calls are never cancelled. An item's sync cursor only moves when
    every one of its messages succeeded, so a requeued window is re-read from
    the old cursor and dedup skips whatever already has a verdict.
    """

    def __init__(
        self,
        *,
        queue: WorkQueue,
        gateways: Mapping[str, IngestionGateway],
        providers: dict[str, MailboxProvider],
        pipeline: DetectionPipeline,
        remediation: RemediationEngine,
        sink: NotificationSink,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._gateways = gateways
        self._providers = providers
        self._pipeline = pipeline
        self._remediation = remediation
        self._sink = sink
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock

    def batch_limit(self, requested: int | None = None) -> int:
        limit = requested if requested is not None else self._settings.worker_batch_limit
        return max(1, min(int(limit), MAX_ADMIN_BATCH_LIMIT))

    async def run(self, *, limit: int | None = None) -> WorkerSummary:
        summary = WorkerSummary()
        started = self._clock()
        deadline = started + self._settings.worker_time_budget_ms / 1000.0
        items = await self._queue.pop_batch(self.batch_limit(limit))
        summary.fetched = len(items)
        for index, item in enumerate(items):
            if self._clock() >= deadline:
                # Untouched items go back as they were; running out of time is not their failure.
                for remaining in items[index:]:
                    await self._queue.requeue(remaining)
                    summary.requeued += 1
                logger.info("worker_budget_exhausted requeued=%s", len(items) - index)
                break
            await self._process_item(item, deadline, summary)
        summary.duration_ms = int((self._clock() - started) * 1000)
        logger.info(
            "worker_run_complete fetched=%s processed=%s threats=%s requeued=%s dead_lettered=%s duration_ms=%s",
            summary.fetched,
            summary.processed_messages,
            summary.threats_found,
            summary.requeued,
            summary.dead_lettered,
            summary.duration_ms,
        )
        return summary

    async def _process_item(self, item: WorkItem, deadline: float, summary: WorkerSummary) -> None:
        async with self._session_factory() as session:
            try:
                failure = await self._run_item(session, item, deadline, summary)
            except Exception as exc:  # noqa: BLE001 - any item failure is classified, never raised
                await session.rollback()
                failure = exc
                summary.errors.append(f"{item.id}: {exc}")
            if failure is not None:
                await self._reschedule(item, failure, summary)

    async def _run_item(
        self, session: AsyncSession, item: WorkItem, deadline: float, summary: WorkerSummary
    ) -> BaseException | None:
        gateway = self._gateways.get(item.provider)
        if gateway is None:
            raise IntegrationNotConnectedError(f"no ingestion gateway for provider {item.provider}")
        target = await gateway.load_target(
            session,
            integration_id=item.integration_id,
            mailbox=item.mailbox,
            domain_user_id=item.domain_user_id,
        )
        provider = provider_for(self._providers, item.provider)
        errors: list[BaseException] = []
        incomplete: WorkIncompleteError | None = None
        handled = scanned = threats = 0
        for ref in item.provider_message_refs:
            if self._clock() >= deadline:
                incomplete = WorkIncompleteError("time budget exhausted")
                break
            if handled >= self._settings.worker_max_messages_per_job:
                incomplete = WorkIncompleteError("per-job message cap reached")
                break
            try:
                outcome = await self._process_message(session, gateway, provider, target, ref, deadline)
            except Exception as exc:  # noqa: BLE001 - collected and classified per message
                await session.rollback()
                errors.append(exc)
                summary.errors.append(f"{item.id}:{ref}: {exc}")
                logger.warning(
                    "worker_message_failed item_id=%s tenant_id=%s ref=%s code=%s",
                    item.id,
                    item.tenant_id,
                    ref,
                    classify_error(exc).value,
                    exc_info=exc,
                )
                handled += 1
                continue
            if outcome.processed:
                handled += 1
                scanned += 1
                summary.processed_messages += 1
            if outcome.threat:
                threats += 1
                summary.threats_found += 1

        await gateway.record_processed(session, target, scanned=scanned, threats=threats)
        await session.commit()
        if errors:
            # One terminal message makes the whole window terminal.
            return next((exc for exc in errors if not is_retryable(exc)), errors[0])
        if incomplete is not None:
            summary.errors.append(f"{item.id}: {incomplete}")
            return incomplete

        advanced = False
        if item.next_sync_cursor:
            advanced = await gateway.advance_cursor(session, target, item.next_sync_cursor)
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="email.sync",
            outcome="success",
            resource_type="integration",
            resource_id=item.integration_id,
            metadata={
                "provider": item.provider,
                "mailbox": item.mailbox,
                "messages": len(item.provider_message_refs),
                "scanned": scanned,
                "threats": threats,
                "cursor_advanced": advanced,
            },
        )
        await session.commit()
        await emit_best_effort(
            self._sink,
            tenant_id=item.tenant_id,
            event_type="sync_completed",
            payload={
                "integration_id": item.integration_id,
                "provider": item.provider,
                "mailbox": item.mailbox,
                "scanned": scanned,
                "threats": threats,
            },
        )
        return None

    async def _process_message(
        self,
        session: AsyncSession,
        gateway: IngestionGateway,
        provider: MailboxProvider,
        target: MailboxTarget,
        ref: str,
        deadline: float,
    ) -> _MessageOutcome:
        if await verdicts_repo.verdict_exists(session, tenant_id=target.tenant_id, message_id=ref):
            await self._resume_remediation(session, target, ref)
            return _MessageOutcome()

        async def _token(rejected: str | None) -> str:
            return await gateway.refresh_credential(session, target, rejected=rejected)

        try:
            parsed: ParsedEmail = await call_with_refresh(
                _token, lambda token: provider.fetch_message(token, ref, mailbox=target.mailbox)
            )
        except Exception as exc:
            if classify_error(exc) == ErrorCode.NOT_FOUND:
                # Deleted or moved before we got to it; nothing left to scan.
                logger.info("worker_message_gone tenant_id=%s ref=%s", target.tenant_id, ref)
                return _MessageOutcome()
            raise
        skip_secondary = deadline - self._clock() < self._settings.worker_degrade_threshold_ms / 1000.0
        if skip_secondary:
            logger.info("worker_secondary_analysis_skipped tenant_id=%s ref=%s", target.tenant_id, ref)
        outcome = await verdict_and_store(
            session,
            self._pipeline,
            parsed,
            tenant_id=target.tenant_id,
            integration_id=target.integration_id,
            provider=target.provider,
            mailbox=target.mailbox,
            options=AnalyzeOptions(skip_secondary=skip_secondary),
        )
        if outcome.verdict is None or not outcome.verdict.is_threat:
            await session.commit()
            return _MessageOutcome(processed=outcome.created)
        result = await self._remediation.apply_verdict(
            session, target=target, verdict=outcome.verdict, parsed_email=parsed
        )
        self._raise_for_result(result, ref)
        return _MessageOutcome(processed=True, threat=True)

    async def _resume_remediation(self, session: AsyncSession, target: MailboxTarget, ref: str) -> None:
        # A threat verdict whose quarantine failed earlier is retried on redelivery.
        record = await remediation_repo.get_record(session, tenant_id=target.tenant_id, message_id=ref)
        if record is None or record.state != "active":
            return
        result = await self._remediation.transition(
            session,
            tenant_id=target.tenant_id,
            message_id=ref,
            action="quarantine",
            actor_type="system",
            actor_id=None,
        )
        self._raise_for_result(result, ref)

    def _raise_for_result(self, result: RemediationResult, ref: str) -> None:
        if result.success:
            return
        code = ErrorCode(result.error_code) if result.error_code else None
        if code == ErrorCode.NOT_FOUND:
            # The user moved or deleted the message before we could.
            logger.info("worker_quarantine_target_gone ref=%s", ref)
            return
        raise RemediationError(f"quarantine failed for {ref}: {result.reason}", code=code)

    async def _reschedule(self, item: WorkItem, failure: BaseException, summary: WorkerSummary) -> None:
        retried = item.model_copy(update={"attempts": item.attempts + 1, "last_error": str(failure)[:500]})
        if not is_retryable(failure) or retried.attempts > self._settings.worker_max_attempts:
            await self._queue.dead_letter(retried, reason=f"{classify_error(failure).value}: {failure}")
            summary.dead_lettered += 1
            return
        await self._queue.requeue(retried)
        summary.requeued += 1
        logger.info(
            "work_item_requeued item_id=%s tenant_id=%s attempts=%s reason=%s",
            retried.id,
            retried.tenant_id,
            retried.attempts,
            failure,
        )
