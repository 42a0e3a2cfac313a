"""Resize worker: normalizes uploaded images to a fixed width.

For each `ResizeJob`: locate the blob (unvalidated, then validated), download,
resize, honor the minimum processing latency, re-locate (the moderation worker
may have moved it meanwhile) and overwrite it in place, then append
``Processed(Image)``.
"""

from __future__ import annotations

import asyncio
import logging
import time

from core.kafka_producer import EventBusProducer
from core.logging.logger import message_context
from core.task_queue import Lease, TaskQueue
from core.worker import QueueWorker
from packages.common.storage import BlobStore
from packages.schemas.events import Event, EventAction, MediaType, ResizeJob
from services.resizer.imaging import resize_to_width

log = logging.getLogger("postwatch.services.resizer")


class ResizeWorker(QueueWorker):
    """Drains the resize queue and emits Processed events."""

    name = "resizer"

    def __init__(
        self,
        queue: TaskQueue,
        queue_name: str,
        blobs: BlobStore,
        bus: EventBusProducer,
        *,
        concurrency: int = 5,
        slots: int = 5,
        dead_letter_after: int = 5,
        receive_wait: float = 5.0,
        width: int = 500,
        min_latency: float = 0.0,
    ) -> None:
        super().__init__(
            queue,
            queue_name,
            concurrency=concurrency,
            slots=slots,
            dead_letter_after=dead_letter_after,
            receive_wait=receive_wait,
        )
        self.blobs = blobs
        self.bus = bus
        self.width = width
        self.min_latency = min_latency

    async def handle(self, lease: Lease) -> None:
        job = ResizeJob.from_json(lease.body)
        key = str(job.image_id)
        with message_context(post_id=job.post_id, image_id=key):
            async with self.slots:
                started = time.monotonic()
                _, data = await self.blobs.fetch(key)
                resized = await asyncio.to_thread(resize_to_width, data, self.width)
                remaining = self.min_latency - (time.monotonic() - started)
                if remaining > 0:
                    await asyncio.sleep(remaining)
                container = await self.blobs.locate(key)
                await self.blobs.upload(container, key, resized)
            log.info("resized %s to width %d (%d -> %d bytes) in %s", key, self.width, len(data), len(resized), container)

            await self.bus.append(
                Event(media_type=MediaType.IMAGE, action=EventAction.PROCESSED, post_id=job.post_id, data=key)
            )
