from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from mailshield.core.config import get_settings
from mailshield.core.logging import configure_logging
from mailshield.persistence.db import SessionLocal
from mailshield.services.queue.work_queue import get_redis_pool
from mailshield.services.runtime import build_runtime
from mailshield.services.telemetry import set_gauge


logger = logging.getLogger(__name__)


def _cron_seconds(raw: str) -> set[int]:
    # "0,30" -> {0, 30}; out-of-range entries are ignored.
    seconds = {int(part) for part in raw.split(",") if part.strip().isdigit()}
    return {second for second in seconds if 0 <= second < 60} or {0, 30}


async def drain_work_queue(ctx: dict[str, Any], limit: int | None = None) -> dict[str, Any]:
    # One bounded drain per tick; anything left over waits for the next tick.
    runtime = ctx["runtime"]
    summary = await runtime.worker.run(limit=limit)
    depth = await runtime.queue.depth()
    set_gauge("work_queue_depth", depth["queued"])
    set_gauge("dead_letter_depth", depth["dead_lettered"])
    return summary.to_payload()


async def sweep_threat_intel_cache(ctx: dict[str, Any]) -> dict[str, int]:
    removed = ctx["runtime"].cache.clean_expired()
    if any(removed.values()):
        logger.info("threat_intel_cache_swept removed=%s", removed)
    return removed


async def renew_subscriptions(ctx: dict[str, Any]) -> dict[str, Any]:
    summary = await ctx["runtime"].maintenance.renew_expiring()
    return summary.to_payload()


async def poll_mailboxes(ctx: dict[str, Any]) -> dict[str, Any]:
    summary = await ctx["runtime"].maintenance.poll_stale()
    return summary.to_payload()


async def _startup(ctx: dict[str, Any]) -> None:
    # The cache and credential locks are per process, so the worker builds its own runtime.
    configure_logging()
    ctx["runtime"] = build_runtime(redis=await get_redis_pool(), session_factory=SessionLocal)


async def _shutdown(ctx: dict[str, Any]) -> None:
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.aclose()


class WorkerSettings:
    # Class attributes keep the settings importable by the arq CLI.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [drain_work_queue, sweep_threat_intel_cache, renew_subscriptions, poll_mailboxes]
    cron_jobs = [
        cron(drain_work_queue, second=_cron_seconds(settings.worker_cron_seconds), unique=True),
        cron(sweep_threat_intel_cache, minute=set(range(0, 60, 5)), second=15, unique=True),
        cron(poll_mailboxes, minute=set(range(0, 60, 5)), second=45, unique=True),
        # Hourly against a 24h renewal window leaves many attempts before anything lapses.
        cron(renew_subscriptions, minute=7, second=0, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
    # Drains are budgeted well below this; the margin covers a slow final provider call.
    job_timeout = max(60, settings.worker_time_budget_ms // 1000 * 2)
