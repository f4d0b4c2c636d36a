from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailshield.core.config import Settings, get_settings
from mailshield.core.errors import IntegrationNotConnectedError, classify_error
from mailshield.domain.types import utc_now
from mailshield.persistence.repos import domain_users as domain_repo
from mailshield.persistence.repos import integrations as integrations_repo
from mailshield.services.audit import record_event
from mailshield.services.ingest.gateway import IngestionGateway, MailboxTarget


logger = logging.getLogger(__name__)


@dataclass
class RenewalSummary:
    renewed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {"renewed": self.renewed, "failed": self.failed, "errors": self.errors}


@dataclass
class PollSummary:
    polled: int = 0
    enqueued: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {"polled": self.polled, "enqueued": self.enqueued, "failed": self.failed, "errors": self.errors}


class MailboxMaintenance:
    """Scheduled upkeep that keeps push ingestion alive.

    Gmail watches lapse after seven days and Graph mail subscriptions after
    about three, so both are renewed ahead of expiry. Polling re-diffs quiet
    mailboxes from their stored cursor to pick up notifications the provider
    dropped. Each mailbox runs in its own session; one failure never stops the
    rest of the run.
    """

    def __init__(
        self,
        *,
        gateways: Mapping[str, IngestionGateway],
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._gateways = gateways
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def renew_expiring(self) -> RenewalSummary:
        summary = RenewalSummary()
        before = utc_now() + timedelta(seconds=self._settings.subscription_renew_window_s)
        async with self._session_factory() as session:
            connections = await integrations_repo.list_expiring_subscriptions(session, before=before)
            domain_users = await domain_repo.list_expiring_subscriptions(session, before=before)
            jobs = [(c.provider, c.id, None, c.subscription_id) for c in connections]
            jobs += [(config.provider, config.id, user.id, user.subscription_id) for config, user in domain_users]

        for provider, integration_id, domain_user_id, subscription_id in jobs:
            async with self._session_factory() as session:
                try:
                    gateway, target = await self._resolve(
                        session, provider, integration_id=integration_id, domain_user_id=domain_user_id
                    )
                    grant = await gateway.renew_subscription(session, target, subscription_id=subscription_id)
                except Exception as exc:  # noqa: BLE001 - collected per mailbox, the run continues
                    await session.rollback()
                    summary.failed += 1
                    summary.errors.append(f"{domain_user_id or integration_id}: {exc}")
                    logger.warning(
                        "subscription_renew_failed provider=%s integration_id=%s domain_user_id=%s code=%s",
                        provider,
                        integration_id,
                        domain_user_id,
                        classify_error(exc).value,
                        exc_info=exc,
                    )
                    continue
                await record_event(
                    session=session,
                    tenant_id=target.tenant_id,
                    actor_type="system",
                    actor_id=None,
                    event_type="integration.subscription_renewed",
                    outcome="success",
                    resource_type="integration",
                    resource_id=integration_id,
                    metadata={
                        "provider": provider,
                        "mailbox": target.mailbox,
                        "expires_at": grant.expires_at.isoformat(),
                    },
                )
                await session.commit()
                summary.renewed += 1
        logger.info("subscription_renew_complete renewed=%s failed=%s", summary.renewed, summary.failed)
        return summary

    async def poll_stale(self) -> PollSummary:
        summary = PollSummary()
        synced_before = utc_now() - timedelta(seconds=self._settings.poll_interval_s)
        async with self._session_factory() as session:
            due = await integrations_repo.list_due_for_poll(
                session, synced_before=synced_before, limit=self._settings.poll_batch_limit
            )
            jobs = [(connection.provider, connection.id) for connection in due]

        for provider, integration_id in jobs:
            summary.polled += 1
            async with self._session_factory() as session:
                try:
                    gateway, target = await self._resolve(session, provider, integration_id=integration_id)
                    item = await gateway.poll(session, target)
                except Exception as exc:  # noqa: BLE001 - recorded on the connection, the run continues
                    await session.rollback()
                    summary.failed += 1
                    summary.errors.append(f"{integration_id}: {exc}")
                    logger.warning(
                        "mailbox_poll_failed provider=%s integration_id=%s code=%s",
                        provider,
                        integration_id,
                        classify_error(exc).value,
                        exc_info=exc,
                    )
                    await integrations_repo.mark_polled(session, integration_id, error_message=str(exc)[:500])
                    await session.commit()
                    continue
                await integrations_repo.mark_polled(session, integration_id)
                await session.commit()
                if item is not None:
                    summary.enqueued += 1
        logger.info(
            "mailbox_poll_complete polled=%s enqueued=%s failed=%s", summary.polled, summary.enqueued, summary.failed
        )
        return summary

    async def _resolve(
        self,
        session: AsyncSession,
        provider: str,
        *,
        integration_id: str,
        domain_user_id: str | None = None,
    ) -> tuple[IngestionGateway, MailboxTarget]:
        gateway = self._gateways.get(provider)
        if gateway is None:
            raise IntegrationNotConnectedError(f"no ingestion gateway for provider {provider}")
        target = await gateway.load_target(session, integration_id=integration_id, domain_user_id=domain_user_id)
        return gateway, target
