from __future__ import annotations

import json

import pytest

from mailshield.domain.types import WorkItem
from mailshield.services.queue.work_queue import WorkQueue
from mailshield.services.telemetry import counters_snapshot
from mailshield.tests.utils.fake_redis import FakeRedis


def _item(ref: str, **overrides) -> WorkItem:
    fields = {
        "tenant_id": "t1",
        "integration_id": "conn-1",
        "provider": "gmail",
        "provider_message_refs": [ref],
        "next_sync_cursor": "200",
    }
    fields.update(overrides)
    return WorkItem(**fields)


@pytest.mark.asyncio
async def test_pop_batch_is_fifo_and_bounded(work_queue: WorkQueue) -> None:
    for ref in ("m1", "m2", "m3"):
        await work_queue.enqueue(_item(ref))

    first = await work_queue.pop_batch(2)
    assert [item.provider_message_refs for item in first] == [["m1"], ["m2"]]
    rest = await work_queue.pop_batch(10)
    assert [item.provider_message_refs for item in rest] == [["m3"]]
    assert await work_queue.pop_batch(10) == []
    assert await work_queue.pop_batch(0) == []


@pytest.mark.asyncio
async def test_requeue_appends_to_tail(work_queue: WorkQueue) -> None:
    await work_queue.enqueue(_item("m1"))
    await work_queue.enqueue(_item("m2"))
    [popped] = await work_queue.pop_batch(1)
    await work_queue.requeue(popped.model_copy(update={"attempts": 1}))

    items = await work_queue.pop_batch(10)
    assert [item.provider_message_refs[0] for item in items] == ["m2", "m1"]
    assert items[1].attempts == 1
    assert counters_snapshot()["queue_items_requeued_total"] == 1


@pytest.mark.asyncio
async def test_dead_letter_stores_envelope(work_queue: WorkQueue) -> None:
    item = _item("m1", attempts=6, last_error="boom")
    await work_queue.dead_letter(item, reason="terminal: boom")

    [envelope] = await work_queue.dead_letters()
    assert envelope["reason"] == "terminal: boom"
    assert envelope["item"]["id"] == item.id
    assert envelope["item"]["attempts"] == 6
    assert envelope["dead_lettered_at"]
    assert await work_queue.depth() == {"queued": 0, "dead_lettered": 1}


@pytest.mark.asyncio
async def test_undecodable_payload_is_dead_lettered(fake_redis: FakeRedis, work_queue: WorkQueue) -> None:
    await fake_redis.rpush(work_queue.queue_key, "{not json")
    await work_queue.enqueue(_item("m1"))

    items = await work_queue.pop_batch(10)
    assert [item.provider_message_refs for item in items] == [["m1"]]
    [envelope] = await work_queue.dead_letters()
    assert envelope["item"] == "{not json"
    assert envelope["reason"] == "undecodable work item"


@pytest.mark.asyncio
async def test_replay_resets_attempts_and_removes_dead_letter(work_queue: WorkQueue) -> None:
    item = _item("m1", attempts=6, last_error="boom")
    await work_queue.dead_letter(item, reason="transient: boom")

    replayed = await work_queue.replay_dead_letter(item.id)
    assert replayed is not None
    assert replayed.attempts == 0
    assert replayed.last_error is None
    assert await work_queue.depth() == {"queued": 1, "dead_lettered": 0}
    # A second replay of the same id finds nothing.
    assert await work_queue.replay_dead_letter(item.id) is None


@pytest.mark.asyncio
async def test_replay_unknown_id_returns_none(work_queue: WorkQueue) -> None:
    await work_queue.dead_letter(_item("m1"), reason="terminal")
    assert await work_queue.replay_dead_letter("missing") is None
    assert (await work_queue.depth())["dead_lettered"] == 1


@pytest.mark.asyncio
async def test_enqueued_payload_is_plain_json(fake_redis: FakeRedis, work_queue: WorkQueue) -> None:
    await work_queue.enqueue(_item("m1"))
    [raw] = fake_redis.lists[work_queue.queue_key]
    payload = json.loads(raw)
    assert payload["provider_message_refs"] == ["m1"]
    assert payload["next_sync_cursor"] == "200"
