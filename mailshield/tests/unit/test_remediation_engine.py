from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailshield.core.errors import ErrorCode, ProviderError
from mailshield.domain.models import AllowlistEntry, AuditEvent, FeedbackEntry
from mailshield.domain.types import Verdict
from mailshield.persistence.repos import remediation as remediation_repo
from mailshield.providers.mailbox.fake import FakeMailboxProvider
from mailshield.services.detection.pipeline import HeuristicPipeline, ReputationLookup
from mailshield.services.detection.verdict_store import verdict_and_store
from mailshield.services.runtime import Runtime, build_runtime
from mailshield.services.telemetry import counters_snapshot
from mailshield.tests.utils.seed import seed_connection, seed_domain_user


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = fail

    async def notify(self, *, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.events.append((tenant_id, event_type, payload))

    async def aclose(self) -> None:
        return None


class MovingProvider(FakeMailboxProvider):
    """Graph-style provider: moving a message hands back a new id."""

    async def quarantine(self, access_token: str, message_ref: str, *, mailbox: str | None = None) -> str:
        await super().quarantine(access_token, message_ref, mailbox=mailbox)
        return f"{message_ref}-moved"


def _runtime(fake_redis, session_factory, providers, sink=None) -> Runtime:
    return build_runtime(
        redis=fake_redis,
        session_factory=session_factory,
        providers=providers,
        sink=sink or RecordingSink(),
    )


def _verdict(message_id: str, verdict_class: str = "quarantine", score: float = 70.0) -> Verdict:
    return Verdict(
        tenant_id="t1",
        message_id=message_id,
        verdict_class=verdict_class,
        overall_score=score,
        confidence=0.8,
    )


async def _apply(runtime: Runtime, session: AsyncSession, *, provider: str = "gmail", ref: str = "m1", sender: str = "mallory@bad.example"):
    connection = await seed_connection(session, provider=provider)
    runtime.providers[provider].add_message(ref, sender=sender)
    target = await runtime.gateways[provider].load_target(session, integration_id=connection.id)
    parsed = await runtime.providers[provider].fetch_message("access-0", ref)
    result = await runtime.remediation.apply_verdict(
        session, target=target, verdict=_verdict(ref), parsed_email=parsed
    )
    return connection, result


async def _events(session: AsyncSession, event_type: str) -> list[AuditEvent]:
    result = await session.execute(select(AuditEvent).where(AuditEvent.event_type == event_type))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_apply_verdict_quarantines_threat(
    session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], fake_redis, providers
) -> None:
    sink = RecordingSink()
    runtime = _runtime(fake_redis, session_factory, providers, sink)

    _, result = await _apply(runtime, session)

    assert result.success and result.changed
    assert result.state == "quarantined"
    assert providers["gmail"].folders["m1"] == "quarantine"
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.state == "quarantined"
    assert record.quarantined_at is not None
    assert record.verdict_class == "quarantine"
    assert record.sender_address == "mallory@bad.example"
    [event] = await _events(session, "remediation.quarantine")
    assert event.outcome == "success"
    assert event.metadata_json["to_state"] == "quarantined"
    assert counters_snapshot()["remediation_transition_total.quarantined"] == 1
    assert [event_type for _, event_type, _ in sink.events] == ["message_quarantined"]


@pytest.mark.asyncio
async def test_non_threat_verdict_is_left_alone(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    connection = await seed_connection(session)
    providers["gmail"].add_message("m1")
    target = await runtime.gateways["gmail"].load_target(session, integration_id=connection.id)
    parsed = await providers["gmail"].fetch_message("access-0", "m1")

    result = await runtime.remediation.apply_verdict(
        session, target=target, verdict=_verdict("m1", "suspicious", 40), parsed_email=parsed
    )

    assert result.success and not result.changed
    assert await remediation_repo.get_record(session, tenant_id="t1", message_id="m1") is None


@pytest.mark.asyncio
async def test_transitions_are_idempotent(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    await _apply(runtime, session)

    again = await runtime.remediation.quarantine(session, tenant_id="t1", message_id="m1", actor_id="op-1")
    assert again.success and not again.changed
    assert again.state == "quarantined"

    released = await runtime.remediation.release(session, tenant_id="t1", message_id="m1", actor_id="op-1")
    released_again = await runtime.remediation.release(session, tenant_id="t1", message_id="m1", actor_id="op-1")
    assert released.changed and released.state == "released"
    assert released_again.success and not released_again.changed
    assert providers["gmail"].folders["m1"] == "inbox"
    ops = [op for op, _ in providers["gmail"].calls if op in {"quarantine", "release"}]
    assert ops == ["quarantine", "release"]


@pytest.mark.asyncio
async def test_release_of_active_message_is_noop(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    connection = await seed_connection(session)
    await remediation_repo.ensure_record(
        session,
        tenant_id="t1",
        message_id="m1",
        integration_id=connection.id,
        provider="gmail",
        provider_message_ref="m1",
    )
    await session.commit()

    result = await runtime.remediation.release(session, tenant_id="t1", message_id="m1", actor_id="op-1")
    assert result.success and not result.changed
    assert result.state == "active"
    assert providers["gmail"].calls == []


@pytest.mark.asyncio
async def test_invalid_transition_is_reported(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    await _apply(runtime, session)
    await runtime.remediation.release(session, tenant_id="t1", message_id="m1", actor_id="op-1")

    result = await runtime.remediation.delete(session, tenant_id="t1", message_id="m1", actor_id="op-1")

    assert not result.success
    assert result.state == "released"
    assert result.error_code == ErrorCode.INVALID_TRANSITION.value
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.state == "released"


@pytest.mark.asyncio
async def test_delete_removes_quarantined_message(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    await _apply(runtime, session)

    result = await runtime.remediation.delete(session, tenant_id="t1", message_id="m1", actor_id="op-1")

    assert result.success and result.state == "deleted"
    assert "m1" not in providers["gmail"].folders
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.deleted_at is not None


@pytest.mark.asyncio
async def test_provider_failure_leaves_state_untouched(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    providers["gmail"].fail_next("quarantine", ProviderError("unavailable", status_code=503, provider="gmail"))

    _, result = await _apply(runtime, session)

    assert not result.success
    assert result.state == "active"
    assert result.error_code == ErrorCode.TRANSIENT.value
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.state == "active"
    [event] = await _events(session, "remediation.quarantine")
    assert event.outcome == "failure"
    assert event.error_code == "transient"
    assert "remediation_transition_total.quarantined" not in counters_snapshot()


@pytest.mark.asyncio
async def test_rejected_token_is_refreshed_once(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    providers["gmail"].fail_next("quarantine", ProviderError("unauthorized", status_code=401, provider="gmail"))

    _, result = await _apply(runtime, session)

    assert result.success and result.state == "quarantined"
    assert providers["gmail"].refresh_calls == 1


@pytest.mark.asyncio
async def test_false_positive_records_feedback_and_allowlists_sender(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    sink = RecordingSink()
    runtime = _runtime(fake_redis, session_factory, providers, sink)
    await _apply(runtime, session, sender="Partner@Friendly.example")

    result = await runtime.remediation.mark_false_positive(
        session,
        tenant_id="t1",
        message_id="m1",
        actor_id="op-1",
        reason="known vendor",
        allowlist="sender",
    )

    assert result.success and result.state == "false_positive"
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.reviewer_reason == "known vendor"
    assert record.released_by == "op-1"
    feedback = (await session.execute(select(FeedbackEntry))).scalars().all()
    assert [(entry.message_id, entry.feedback_type, entry.notes) for entry in feedback] == [
        ("m1", "false_positive", "known vendor")
    ]
    entries = (await session.execute(select(AllowlistEntry))).scalars().all()
    assert [(entry.entry_type, entry.value) for entry in entries] == [("email", "partner@friendly.example")]
    assert sink.events[-1][1] == "message_false_positive"


@pytest.mark.asyncio
async def test_release_can_allowlist_sender_domain(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    await _apply(runtime, session, sender="news@friendly.example")

    await runtime.remediation.release(
        session, tenant_id="t1", message_id="m1", actor_id="op-1", allowlist="domain"
    )

    entries = (await session.execute(select(AllowlistEntry))).scalars().all()
    assert [(entry.entry_type, entry.value) for entry in entries] == [("domain", "friendly.example")]


@pytest.mark.asyncio
async def test_moved_message_ref_is_stored(session: AsyncSession, session_factory, fake_redis) -> None:
    providers = {"gmail": FakeMailboxProvider("gmail"), "o365": MovingProvider("o365")}
    runtime = _runtime(fake_redis, session_factory, providers)

    _, result = await _apply(runtime, session, provider="o365", ref="AAA")

    assert result.success
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="AAA")
    assert record.provider_message_ref == "AAA-moved"
    assert record.provider == "o365"


@pytest.mark.asyncio
async def test_domain_wide_record_uses_impersonated_mailbox(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    config, user = await seed_domain_user(session)
    providers["gmail"].add_message("m1")
    target = await runtime.gateways["google_workspace"].load_target(
        session, integration_id=config.id, domain_user_id=user.id
    )
    parsed = await providers["gmail"].fetch_message("token", "m1")

    result = await runtime.remediation.apply_verdict(
        session, target=target, verdict=_verdict("m1"), parsed_email=parsed
    )

    assert result.success and result.state == "quarantined"
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.mailbox == "alice@corp.example"
    assert record.provider == "google_workspace"
    assert ("domain_token", "alice@corp.example") in providers["gmail"].calls


@pytest.mark.asyncio
async def test_unknown_message_is_not_found(session: AsyncSession, session_factory, fake_redis, providers) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)

    for action in ("quarantine", "release", "delete"):
        result = await getattr(runtime.remediation, action)(
            session, tenant_id="t1", message_id="missing", actor_id="op-1"
        )
        assert not result.success
        assert result.state is None
        assert result.error_code == ErrorCode.NOT_FOUND.value


@pytest.mark.asyncio
async def test_operator_can_quarantine_passed_message(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers)
    connection = await seed_connection(session)
    providers["gmail"].add_message("m1")
    parsed = await providers["gmail"].fetch_message("access-0", "m1")
    pipeline = HeuristicPipeline(ReputationLookup(runtime.cache))
    await verdict_and_store(
        session, pipeline, parsed, tenant_id="t1", integration_id=connection.id, provider="gmail"
    )
    await session.commit()

    result = await runtime.remediation.quarantine(session, tenant_id="t1", message_id="m1", actor_id="op-1")

    assert result.success and result.state == "quarantined"
    record = await remediation_repo.get_record(session, tenant_id="t1", message_id="m1")
    assert record.verdict_class == "pass"
    [event] = await _events(session, "remediation.quarantine")
    assert event.actor_type == "user"
    assert event.actor_id == "op-1"


@pytest.mark.asyncio
async def test_sink_failure_does_not_fail_transition(
    session: AsyncSession, session_factory, fake_redis, providers
) -> None:
    runtime = _runtime(fake_redis, session_factory, providers, RecordingSink(fail=True))

    _, result = await _apply(runtime, session)

    assert result.success and result.state == "quarantined"
