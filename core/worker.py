"""
Base class for task-queue workers.

A `QueueWorker` runs `concurrency` asyncio tasks, each draining the same queue.
Subclasses implement `handle(lease)`; the base class owns settlement:

- success              -> complete
- failure, deliveries <= dead_letter_after -> abandon (redelivered later)
- failure, deliveries >  dead_letter_after -> dead-letter with the error text

A message that fails on six consecutive deliveries is therefore dead-lettered,
never abandoned a seventh time. Externally rate-limited calls are gated by a
separate semaphore (`slots`), so effective parallelism is min(concurrency, slots).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, List, Optional

from core.errors import LeaseLostError
from core.logging.logger import message_context
from core.metrics import mark_settled, processing_seconds
from core.task_queue import TRANSIENT_REDIS_ERRORS, Lease, TaskQueue

log = logging.getLogger("postwatch.core.worker")

DEAD_LETTER_REASON = "MaxDeliveryCountExceeded"


class QueueWorker:
    """Pool of receive loops over one queue with per-message settlement."""

    name = "worker"

    def __init__(
        self,
        queue: TaskQueue,
        queue_name: str,
        concurrency: int = 5,
        slots: int = 1,
        dead_letter_after: int = 5,
        receive_wait: float = 5.0,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.concurrency = concurrency
        self.dead_letter_after = dead_letter_after
        self.receive_wait = receive_wait
        self.slots = asyncio.Semaphore(slots)

    async def handle(self, lease: Lease) -> None:
        """Process one message; raise to have it abandoned or dead-lettered."""
        raise NotImplementedError

    async def process(self, lease: Lease) -> str:
        """
        Handle and settle a single lease.

        Returns:
            The settlement outcome: ``completed``, ``abandoned``, ``dead_lettered``,
            ``lease_lost`` or ``unsettled`` (Redis unreachable; the lease will expire).
        """
        with message_context(queue=self.queue_name, message_id=lease.message_id, delivery=lease.delivery_count):
            started = time.perf_counter()
            try:
                await self.handle(lease)
            except Exception as e:
                if lease.delivery_count > self.dead_letter_after:
                    log.error("giving up after %d deliveries: %s", lease.delivery_count, e, exc_info=True)
                    outcome = await self._settle(self.queue.dead_letter(lease, DEAD_LETTER_REASON, str(e)), "dead_lettered")
                else:
                    log.warning("delivery %d failed, abandoning: %s", lease.delivery_count, e, exc_info=True)
                    outcome = await self._settle(self.queue.abandon(lease), "abandoned")
            else:
                outcome = await self._settle(self.queue.complete(lease), "completed")
            finally:
                processing_seconds.labels(worker=self.name).observe(time.perf_counter() - started)
            return outcome

    async def _settle(self, op: Awaitable[None], outcome: str) -> str:
        try:
            await op
        except LeaseLostError as e:
            log.warning("%s", e)
            outcome = "lease_lost"
        except TRANSIENT_REDIS_ERRORS as e:
            log.error("could not settle message (%s); it will be redelivered when the lease expires", e)
            outcome = "unsettled"
        mark_settled(self.queue_name, outcome)
        return outcome

    async def _drain(self, stop: asyncio.Event, idx: int) -> None:
        backoff = 0.5
        while not stop.is_set():
            try:
                lease = await self.queue.receive(self.queue_name, wait=self.receive_wait)
            except TRANSIENT_REDIS_ERRORS as e:
                log.warning("receive loop %d: %s; backing off %.1fs", idx, e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)
                continue
            backoff = 0.5
            if lease is not None:
                await self.process(lease)

    async def run(self, stop: asyncio.Event) -> None:
        """
        Receive until `stop` is set, then let in-flight messages finish.

        Raises:
            redis connection errors if the queue is unreachable at startup.
        """
        await self.queue.ping()
        log.info("%s draining %s with %d receivers", self.name, self.queue_name, self.concurrency)
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._drain(stop, i), name=f"{self.name}-{i}") for i in range(self.concurrency)
        ]
        await asyncio.gather(*tasks)
        log.info("%s stopped", self.name)

    async def run_once(self, wait: Optional[float] = None) -> Optional[str]:
        """Receive and process at most one message (used by tests and tooling)."""
        lease = await self.queue.receive(self.queue_name, wait=self.receive_wait if wait is None else wait)
        if lease is None:
            return None
        return await self.process(lease)
