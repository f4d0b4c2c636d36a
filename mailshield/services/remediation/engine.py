from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Literal, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.core.errors import ErrorCode, classify_error
from mailshield.domain.models import RemediationRecord
from mailshield.domain.types import ParsedEmail, Verdict, utc_now
from mailshield.persistence.repos import allowlist as allowlist_repo
from mailshield.persistence.repos import remediation as remediation_repo
from mailshield.persistence.repos import verdicts as verdicts_repo
from mailshield.providers.mailbox.base import MailboxProvider
from mailshield.providers.mailbox.factory import provider_for
from mailshield.services.audit import record_event
from mailshield.services.ingest.credentials import call_with_refresh
from mailshield.services.ingest.gateway import IngestionGateway, MailboxTarget
from mailshield.services.notifications.sink import NotificationSink, emit_best_effort
from mailshield.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Action = Literal["quarantine", "release", "false_positive", "delete"]
AllowlistScope = Literal["sender", "domain"]

# Target state and the single state each action may start from.
_TRANSITIONS: dict[str, tuple[str, str]] = {
    "quarantine": ("active", "quarantined"),
    "release": ("quarantined", "released"),
    "false_positive": ("quarantined", "false_positive"),
    "delete": ("quarantined", "deleted"),
}


@dataclass(frozen=True)
class RemediationResult:
    success: bool
    state: str | None
    reason: str | None = None
    # False for idempotent no-ops.
    changed: bool = False
    error_code: str | None = None


class RemediationEngine:
    """Moves messages between mailbox locations and tracks their lifecycle.

    Every transition is idempotent: asking for the state a record is already
    in, or releasing a message that was never quarantined, succeeds without
    touching the mailbox. The record only advances after the provider confirms
    the move, through a conditional UPDATE keyed on the prior state, so a
    provider failure or a lost race leaves it where it was. Failures come back
    as a `RemediationResult`, never as exceptions.
    """

    def __init__(
        self,
        *,
        gateways: Mapping[str, IngestionGateway],
        providers: dict[str, MailboxProvider],
        sink: NotificationSink,
    ) -> None:
        self._gateways = gateways
        self._providers = providers
        self._sink = sink

    async def apply_verdict(
        self,
        session: AsyncSession,
        *,
        target: MailboxTarget,
        verdict: Verdict,
        parsed_email: ParsedEmail,
    ) -> RemediationResult:
        """Quarantine a message whose verdict is quarantine or block."""
        if not verdict.is_threat:
            return RemediationResult(success=True, state=None)
        await remediation_repo.ensure_record(
            session,
            tenant_id=target.tenant_id,
            message_id=parsed_email.message_id,
            integration_id=target.integration_id,
            provider=target.provider,
            provider_message_ref=parsed_email.provider_message_ref,
            mailbox=target.mailbox,
            verdict_class=verdict.verdict_class,
            score=verdict.overall_score,
            sender_address=parsed_email.from_.address,
        )
        await session.commit()
        return await self.transition(
            session,
            tenant_id=target.tenant_id,
            message_id=parsed_email.message_id,
            action="quarantine",
            actor_type="system",
            actor_id=None,
            extra={"verdict": verdict.verdict_class, "score": verdict.overall_score},
        )

    async def quarantine(self, session: AsyncSession, *, tenant_id: str, message_id: str, actor_id: str | None) -> RemediationResult:
        record = await remediation_repo.get_record(session, tenant_id=tenant_id, message_id=message_id)
        if record is None:
            # Operators may quarantine any verdicted message, not only automatic threats.
            stored = await verdicts_repo.get_verdict(session, tenant_id=tenant_id, message_id=message_id)
            if stored is None or not stored.integration_id or not stored.provider_message_ref:
                return RemediationResult(
                    success=False, state=None, reason="message not found", error_code=ErrorCode.NOT_FOUND.value
                )
            await remediation_repo.ensure_record(
                session,
                tenant_id=tenant_id,
                message_id=message_id,
                integration_id=stored.integration_id,
                provider=stored.provider or "",
                provider_message_ref=stored.provider_message_ref,
                mailbox=stored.mailbox,
                verdict_class=stored.verdict_class,
                score=stored.overall_score,
                sender_address=stored.from_address,
            )
            await session.commit()
        return await self.transition(
            session, tenant_id=tenant_id, message_id=message_id, action="quarantine", actor_type="user", actor_id=actor_id
        )

    async def release(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message_id: str,
        actor_id: str | None,
        allowlist: AllowlistScope | None = None,
    ) -> RemediationResult:
        return await self.transition(
            session,
            tenant_id=tenant_id,
            message_id=message_id,
            action="release",
            actor_type="user",
            actor_id=actor_id,
            allowlist=allowlist,
        )

    async def mark_false_positive(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message_id: str,
        actor_id: str | None,
        reason: str | None = None,
        allowlist: AllowlistScope | None = None,
    ) -> RemediationResult:
        return await self.transition(
            session,
            tenant_id=tenant_id,
            message_id=message_id,
            action="false_positive",
            actor_type="user",
            actor_id=actor_id,
            reviewer_reason=reason,
            allowlist=allowlist,
        )

    async def delete(self, session: AsyncSession, *, tenant_id: str, message_id: str, actor_id: str | None) -> RemediationResult:
        return await self.transition(
            session, tenant_id=tenant_id, message_id=message_id, action="delete", actor_type="user", actor_id=actor_id
        )

    async def transition(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message_id: str,
        action: Action,
        actor_type: str,
        actor_id: str | None,
        reviewer_reason: str | None = None,
        allowlist: AllowlistScope | None = None,
        extra: dict[str, Any] | None = None,
    ) -> RemediationResult:
        from_state, to_state = _TRANSITIONS[action]
        record = await remediation_repo.get_record(session, tenant_id=tenant_id, message_id=message_id)
        if record is None:
            return RemediationResult(
                success=False, state=None, reason="message not found", error_code=ErrorCode.NOT_FOUND.value
            )
        noop = self._noop(record.state, action, to_state)
        if noop is not None:
            return noop
        if record.state != from_state:
            return RemediationResult(
                success=False,
                state=record.state,
                reason=f"cannot {action} a message in state {record.state}",
                error_code=ErrorCode.INVALID_TRANSITION.value,
            )

        try:
            new_ref = await self._provider_operation(session, record, action)
        except Exception as exc:  # noqa: BLE001 - provider failures become a result, state untouched
            code = classify_error(exc)
            logger.warning(
                "remediation_provider_failed tenant_id=%s message_id=%s action=%s code=%s",
                tenant_id,
                message_id,
                action,
                code.value,
                exc_info=exc,
            )
            await session.rollback()
            await record_event(
                session=session,
                tenant_id=tenant_id,
                actor_type=actor_type,
                actor_id=actor_id,
                event_type=f"remediation.{action}",
                outcome="failure",
                resource_type="message",
                resource_id=message_id,
                metadata={"reason": str(exc)},
                error_code=code.value,
                commit=True,
            )
            return RemediationResult(success=False, state=from_state, reason=str(exc), error_code=code.value)

        now = utc_now()
        values = self._transition_values(action, now, actor_id=actor_id, reviewer_reason=reviewer_reason)
        if new_ref and new_ref != record.provider_message_ref:
            values["provider_message_ref"] = new_ref
        moved = await remediation_repo.transition_state(
            session,
            tenant_id=tenant_id,
            message_id=message_id,
            from_state=from_state,
            to_state=to_state,
            values=values,
            now=now,
        )
        if not moved:
            # Another caller applied a transition between our read and write.
            await session.rollback()
            current = await remediation_repo.get_record(session, tenant_id=tenant_id, message_id=message_id)
            current_state = current.state if current else None
            if current_state == to_state:
                return RemediationResult(success=True, state=to_state)
            return RemediationResult(
                success=False,
                state=current_state,
                reason="concurrent transition",
                error_code=ErrorCode.INVALID_TRANSITION.value,
            )

        if allowlist and record.sender_address:
            entry_type = "email" if allowlist == "sender" else "domain"
            value = record.sender_address if allowlist == "sender" else record.sender_address.rpartition("@")[2]
            await allowlist_repo.add_entry(
                session,
                tenant_id=tenant_id,
                entry_type=entry_type,
                value=value,
                reason=f"released message {message_id}",
                created_by=actor_id,
            )
        if action == "false_positive":
            await allowlist_repo.add_feedback(
                session,
                tenant_id=tenant_id,
                message_id=message_id,
                feedback_type="false_positive",
                notes=reviewer_reason,
                created_by=actor_id,
            )
        metadata = {"from_state": from_state, "to_state": to_state, "provider": record.provider, **(extra or {})}
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=f"remediation.{action}",
            outcome="success",
            resource_type="message",
            resource_id=message_id,
            metadata=metadata,
        )
        await session.commit()
        increment_counter(f"remediation_transition_total.{to_state}")
        logger.info(
            "remediation_transition tenant_id=%s message_id=%s from=%s to=%s",
            tenant_id,
            message_id,
            from_state,
            to_state,
        )
        await emit_best_effort(
            self._sink,
            tenant_id=tenant_id,
            event_type=f"message_{to_state}",
            payload={
                "message_id": message_id,
                "verdict_class": record.verdict_class,
                "score": record.score,
                "sender": record.sender_address,
                "actor_id": actor_id,
            },
        )
        return RemediationResult(success=True, state=to_state, changed=True)

    def _noop(self, current: str, action: str, to_state: str) -> RemediationResult | None:
        if current == to_state:
            return RemediationResult(success=True, state=current)
        # Releasing, clearing, or deleting a message that was never quarantined changes nothing.
        if current == "active" and action != "quarantine":
            return RemediationResult(success=True, state=current)
        return None

    def _transition_values(
        self, action: str, now, *, actor_id: str | None, reviewer_reason: str | None
    ) -> dict[str, Any]:
        if action == "quarantine":
            return {"quarantined_at": now}
        if action == "delete":
            return {"deleted_at": now}
        values: dict[str, Any] = {"released_at": now, "released_by": actor_id}
        if action == "false_positive":
            values["reviewer_reason"] = reviewer_reason
        return values

    async def _provider_operation(self, session: AsyncSession, record: RemediationRecord, action: str) -> str | None:
        gateway = self._gateways[record.provider]
        target = await gateway.load_target(
            session, integration_id=record.integration_id, mailbox=record.mailbox
        )
        provider = provider_for(self._providers, record.provider)
        ref = record.provider_message_ref
        operations: dict[str, Callable[[str], Awaitable[str | None]]] = {
            "quarantine": lambda token: provider.quarantine(token, ref, mailbox=target.mailbox),
            "release": lambda token: provider.release(token, ref, mailbox=target.mailbox),
            "false_positive": lambda token: provider.release(token, ref, mailbox=target.mailbox),
            "delete": lambda token: provider.delete(token, ref, mailbox=target.mailbox),
        }

        async def _token(rejected: str | None) -> str:
            return await gateway.refresh_credential(session, target, rejected=rejected)

        return await call_with_refresh(_token, operations[action])
