"""Tests for the Redis leased task queue (fakeredis with Lua)."""

import pytest

from core.errors import LeaseLostError
from core.task_queue import TaskQueue


@pytest.mark.asyncio
async def test_enqueue_receive_complete(queue) -> None:
    mid = await queue.enqueue("jobs", b"payload")
    lease = await queue.receive("jobs", wait=0)
    assert lease is not None
    assert (lease.message_id, lease.body, lease.delivery_count) == (mid, b"payload", 1)
    await queue.complete(lease)
    assert await queue.receive("jobs", wait=0) is None
    assert await queue.depth("jobs") == {"ready": 0, "delayed": 0, "inflight": 0, "dead": 0}


@pytest.mark.asyncio
async def test_delayed_message_is_invisible_until_due(queue, clock) -> None:
    await queue.enqueue("jobs", b"later", delay=300)
    assert await queue.receive("jobs", wait=0) is None
    clock.advance(299)
    assert await queue.receive("jobs", wait=0) is None
    clock.advance(2)
    lease = await queue.receive("jobs", wait=0)
    assert lease is not None and lease.body == b"later"


@pytest.mark.asyncio
async def test_abandon_redelivers_with_incremented_count(queue) -> None:
    await queue.enqueue("jobs", b"x")
    first = await queue.receive("jobs", wait=0)
    await queue.abandon(first)
    second = await queue.receive("jobs", wait=0)
    assert second.message_id == first.message_id
    assert second.delivery_count == 2


@pytest.mark.asyncio
async def test_expired_lease_is_redelivered_and_old_holder_loses_it(queue, clock) -> None:
    await queue.enqueue("jobs", b"x")
    stale = await queue.receive("jobs", wait=0)
    clock.advance(61)
    fresh = await queue.receive("jobs", wait=0)
    assert fresh.message_id == stale.message_id
    assert fresh.delivery_count == 2
    with pytest.raises(LeaseLostError):
        await queue.complete(stale)
    await queue.complete(fresh)


@pytest.mark.asyncio
async def test_dead_letter_keeps_body_and_reason(queue) -> None:
    await queue.enqueue("jobs", b"poison")
    lease = await queue.receive("jobs", wait=0)
    await queue.dead_letter(lease, "MaxDeliveryCountExceeded", "boom")
    assert await queue.receive("jobs", wait=0) is None
    [dead] = await queue.dead_letters("jobs")
    assert (dead.body, dead.reason, dead.delivery_count) == (b"poison", "MaxDeliveryCountExceeded", 1)


@pytest.mark.asyncio
async def test_crashed_consumers_hit_the_delivery_ceiling(redis_client, clock) -> None:
    q = TaskQueue(redis_client, key_prefix="ceiling", lease_seconds=10, max_delivery_count=2, clock=clock)
    await q.enqueue("jobs", b"x")
    for _ in range(2):
        assert await q.receive("jobs", wait=0) is not None
        clock.advance(11)  # lease lapses unsettled
    assert await q.receive("jobs", wait=0) is None
    [dead] = await q.dead_letters("jobs")
    assert dead.reason == "MaxDeliveryCountExceeded"
    assert dead.delivery_count == 3


@pytest.mark.asyncio
async def test_queues_are_independent(queue) -> None:
    await queue.enqueue("a", b"1")
    assert await queue.receive("b", wait=0) is None
    assert (await queue.receive("a", wait=0)).body == b"1"
