from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis

from mailshield.core.config import get_settings
from mailshield.domain.types import WorkItem, utc_now
from mailshield.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis_pool() -> Redis:
    # Cache the Redis client per event loop to avoid reconnecting on every call.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            _redis_pool_loop = current_loop
    return _redis_pool


class WorkQueue:
    """FIFO work queue on a Redis list with a companion dead-letter list.

    Producers RPUSH to the tail and workers LPOP from the head with a count,
    which Redis executes atomically, so one pop never hands the same item to
    two concurrent workers. Dead letters are stored as
    `{item, reason, dead_lettered_at}` envelopes for operator inspection.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        queue_key: str | None = None,
        dead_letter_key: str | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self.queue_key = queue_key or settings.work_queue_key
        self.dead_letter_key = dead_letter_key or settings.dead_letter_queue_key

    async def enqueue(self, item: WorkItem) -> None:
        await self._redis.rpush(self.queue_key, item.model_dump_json())
        logger.info(
            "work_item_enqueued item_id=%s tenant_id=%s provider=%s refs=%s",
            item.id,
            item.tenant_id,
            item.provider,
            len(item.provider_message_refs),
        )

    async def pop_batch(self, count: int) -> list[WorkItem]:
        if count <= 0:
            return []
        raw = await self._redis.lpop(self.queue_key, count)
        if not raw:
            return []
        if isinstance(raw, str):
            raw = [raw]
        items: list[WorkItem] = []
        for payload in raw:
            try:
                items.append(WorkItem.model_validate_json(payload))
            except ValidationError as exc:
                # Undecodable payloads can never succeed; park them verbatim.
                logger.error("work_item_undecodable payload_len=%s", len(payload), exc_info=exc)
                await self._push_dead_letter({"item": payload, "reason": "undecodable work item"})
        return items

    async def requeue(self, item: WorkItem) -> None:
        await self._redis.rpush(self.queue_key, item.model_dump_json())
        increment_counter("queue_items_requeued_total")

    async def dead_letter(self, item: WorkItem, reason: str) -> None:
        await self._push_dead_letter({"item": item.model_dump(mode="json"), "reason": reason})
        increment_counter("queue_items_dead_lettered_total")
        logger.warning(
            "work_item_dead_lettered item_id=%s tenant_id=%s attempts=%s reason=%s",
            item.id,
            item.tenant_id,
            item.attempts,
            reason,
        )

    async def _push_dead_letter(self, envelope: dict[str, Any]) -> None:
        envelope["dead_lettered_at"] = utc_now().isoformat()
        await self._redis.rpush(self.dead_letter_key, json.dumps(envelope))

    async def depth(self) -> dict[str, int]:
        return {
            "queued": int(await self._redis.llen(self.queue_key)),
            "dead_lettered": int(await self._redis.llen(self.dead_letter_key)),
        }

    async def dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        raw = await self._redis.lrange(self.dead_letter_key, 0, max(limit, 1) - 1)
        return [json.loads(entry) for entry in raw]

    async def replay_dead_letter(self, item_id: str) -> WorkItem | None:
        """Move one dead-lettered item back to the main queue with attempts reset."""
        for entry in await self._redis.lrange(self.dead_letter_key, 0, -1):
            envelope = json.loads(entry)
            payload = envelope.get("item")
            if not isinstance(payload, dict) or payload.get("id") != item_id:
                continue
            # LREM succeeds for exactly one concurrent replayer.
            removed = await self._redis.lrem(self.dead_letter_key, 1, entry)
            if not removed:
                return None
            item = WorkItem.model_validate(payload).model_copy(update={"attempts": 0, "last_error": None})
            await self._redis.rpush(self.queue_key, item.model_dump_json())
            logger.info("work_item_replayed item_id=%s tenant_id=%s", item.id, item.tenant_id)
            return item
        return None
