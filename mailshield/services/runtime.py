from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailshield.core.config import Settings, get_settings
from mailshield.persistence.repos import allowlist as allowlist_repo
from mailshield.providers.mailbox.base import MailboxProvider
from mailshield.providers.mailbox.factory import build_mailbox_providers
from mailshield.services.detection.pipeline import DetectionPipeline, HeuristicPipeline, ReputationLookup, ReputationSource
from mailshield.services.ingest.credentials import CredentialManager
from mailshield.services.ingest.gateway import IngestionGateway, build_gateways
from mailshield.services.ingest.maintenance import MailboxMaintenance
from mailshield.services.ingest.push_auth import PubSubTokenVerifier
from mailshield.services.notifications.sink import NotificationSink, build_notification_sink
from mailshield.services.queue.work_queue import WorkQueue
from mailshield.services.queue.worker import QueueWorker
from mailshield.services.remediation.engine import RemediationEngine
from mailshield.services.threat_intel.cache import ThreatIntelCache


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-wide collaborators shared by the API app and the worker.

    The threat-intel cache and credential locks live here, so there is exactly
    one of each per process.
    """

    settings: Settings
    cache: ThreatIntelCache
    providers: dict[str, MailboxProvider]
    credentials: CredentialManager
    queue: WorkQueue
    gateways: dict[str, IngestionGateway]
    pipeline: DetectionPipeline
    sink: NotificationSink
    remediation: RemediationEngine
    worker: QueueWorker
    maintenance: MailboxMaintenance
    push_verifier: PubSubTokenVerifier
    session_factory: async_sessionmaker[AsyncSession]

    async def aclose(self) -> None:
        for provider in self.providers.values():
            await provider.aclose()
        await self.sink.aclose()


def build_runtime(
    *,
    redis: Redis,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    providers: dict[str, MailboxProvider] | None = None,
    sink: NotificationSink | None = None,
    pipeline: DetectionPipeline | None = None,
    reputation_source: ReputationSource | None = None,
    cache: ThreatIntelCache | None = None,
    push_verifier: PubSubTokenVerifier | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> Runtime:
    settings = settings or get_settings()
    cache = cache or ThreatIntelCache.from_settings(settings)
    providers = providers if providers is not None else build_mailbox_providers(settings, redis=redis)
    credentials = CredentialManager(providers, settings=settings)
    queue = WorkQueue(redis)
    gateways = build_gateways(providers=providers, credentials=credentials, queue=queue, settings=settings)
    sink = sink or build_notification_sink(settings)

    async def _allowlisted(tenant_id: str, address: str) -> bool:
        async with session_factory() as session:
            return await allowlist_repo.is_allowlisted(session, tenant_id=tenant_id, address=address)

    pipeline = pipeline or HeuristicPipeline(ReputationLookup(cache, reputation_source), allowlist=_allowlisted)
    remediation = RemediationEngine(gateways=gateways, providers=providers, sink=sink)
    worker = QueueWorker(
        queue=queue,
        gateways=gateways,
        providers=providers,
        pipeline=pipeline,
        remediation=remediation,
        sink=sink,
        session_factory=session_factory,
        settings=settings,
        clock=clock,
    )
    maintenance = MailboxMaintenance(gateways=gateways, session_factory=session_factory, settings=settings)
    logger.info(
        "runtime_built provider_mode=%s gateways=%s", settings.mailbox_provider_mode, ",".join(sorted(gateways))
    )
    return Runtime(
        settings=settings,
        cache=cache,
        providers=providers,
        credentials=credentials,
        queue=queue,
        gateways=gateways,
        pipeline=pipeline,
        sink=sink,
        remediation=remediation,
        worker=worker,
        maintenance=maintenance,
        push_verifier=push_verifier or PubSubTokenVerifier(settings=settings),
        session_factory=session_factory,
    )
