"""Tests for QueueWorker settlement policy."""

import asyncio

import pytest

from core.worker import DEAD_LETTER_REASON, QueueWorker


class FlakyWorker(QueueWorker):
    name = "flaky"

    def __init__(self, *args, failures: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.calls = 0

    async def handle(self, lease) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")


@pytest.mark.asyncio
async def test_six_consecutive_failures_dead_letter(queue) -> None:
    worker = FlakyWorker(queue, "jobs", failures=100, dead_letter_after=5)
    await queue.enqueue("jobs", b"x")
    outcomes = [await worker.run_once(wait=0) for _ in range(7)]
    assert outcomes == ["abandoned"] * 5 + ["dead_lettered", None]
    [dead] = await queue.dead_letters("jobs")
    assert dead.reason == DEAD_LETTER_REASON
    assert dead.delivery_count == 6


@pytest.mark.asyncio
async def test_redelivery_after_abandon_completes(queue) -> None:
    worker = FlakyWorker(queue, "jobs", failures=2)
    await queue.enqueue("jobs", b"x")
    outcomes = [await worker.run_once(wait=0) for _ in range(3)]
    assert outcomes == ["abandoned", "abandoned", "completed"]
    assert await queue.dead_letters("jobs") == []


@pytest.mark.asyncio
async def test_run_drains_until_stopped(queue) -> None:
    worker = FlakyWorker(queue, "jobs", failures=0, concurrency=3, receive_wait=0.05)
    for i in range(5):
        await queue.enqueue("jobs", str(i).encode())
    stop = asyncio.Event()
    task = asyncio.create_task(worker.run(stop))
    for _ in range(100):
        if worker.calls == 5:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=2)
    assert worker.calls == 5
    assert (await queue.depth("jobs"))["inflight"] == 0


class OutlivesLease(QueueWorker):
    name = "slow"

    def __init__(self, *args, clock, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.clock = clock
        self.stolen = None

    async def handle(self, lease) -> None:
        self.clock.advance(61)
        self.stolen = await self.queue.receive(self.queue_name, wait=0)


@pytest.mark.asyncio
async def test_completing_an_expired_lease_reports_lease_lost(queue, clock) -> None:
    worker = OutlivesLease(queue, "jobs", clock=clock)
    await queue.enqueue("jobs", b"x")
    assert await worker.run_once(wait=0) == "lease_lost"
    assert worker.stolen.delivery_count == 2
    assert (await queue.depth("jobs"))["inflight"] == 1
