"""Producer entry points used by the web tier.

A submission never touches the read store directly: it enqueues the work the
workers need and appends the Submitted/Deleted event the projector turns into
read-model rows.

- `submit_image_post`: Submitted(Image), then resize job + delayed image validation job
- `submit_comment`: Submitted(Text), then text validation job
- `request_revalidation`: another delayed image validation (e.g. after reactions)
- `delete_post` / `delete_comment`: Deleted events
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from core.config.config import RedisCfg, WorkerCfg
from core.kafka_producer import EventBusProducer
from core.task_queue import TaskQueue
from packages.schemas.events import ContentType, Event, EventAction, MediaType, ResizeJob, ValidationJob

log = logging.getLogger("postwatch.packages.submission")


class SubmissionGateway:
    """Enqueues jobs and appends events on behalf of the web tier."""

    def __init__(
        self,
        queue: TaskQueue,
        bus: EventBusProducer,
        resize_queue: str = "imageresizemessage",
        validation_queue: str = "contentsafetymessage",
        image_validation_delay: float = 300.0,
    ) -> None:
        """
        Args:
            queue: Task queue shared with the workers.
            bus: Event-bus producer.
            resize_queue: Queue drained by the resize worker.
            validation_queue: Queue drained by the moderation worker.
            image_validation_delay: Seconds image validation waits so resizing runs first.
        """
        self.queue = queue
        self.bus = bus
        self.resize_queue = resize_queue
        self.validation_queue = validation_queue
        self.image_validation_delay = image_validation_delay

    @classmethod
    def from_config(cls, queue: TaskQueue, bus: EventBusProducer, redis_cfg: RedisCfg, worker_cfg: WorkerCfg) -> "SubmissionGateway":
        return cls(
            queue,
            bus,
            resize_queue=redis_cfg.resize_queue,
            validation_queue=redis_cfg.validation_queue,
            image_validation_delay=worker_cfg.image_validation_delay,
        )

    async def _enqueue_image_validation(self, post_id: UUID, image_id: UUID) -> str:
        job = ValidationJob(content_type=ContentType.IMAGE, content=str(image_id), post_id=post_id)
        return await self.queue.enqueue(self.validation_queue, job.to_json(), delay=self.image_validation_delay)

    async def submit_image_post(self, post_id: UUID, image_id: UUID) -> Optional[int]:
        """Announce an uploaded image (already stored in the unvalidated container).

        The Submitted event is appended before any job is enqueued: both share the
        post's partition, so the create always precedes the verdict on the bus.

        Returns:
            Bus offset of the Submitted event, or None if it was dropped.
        """
        offset = await self.bus.append(Event.image_submitted(post_id, image_id))
        await self.queue.enqueue(self.resize_queue, ResizeJob(image_id=image_id, post_id=post_id).to_json())
        await self._enqueue_image_validation(post_id, image_id)
        log.info("image post %s submitted (image %s)", post_id, image_id)
        return offset

    async def submit_comment(self, post_id: UUID, comment_id: UUID, text: str) -> Optional[int]:
        """Announce a comment, then queue it for validation."""
        offset = await self.bus.append(Event.comment_submitted(post_id, comment_id, text))
        job = ValidationJob(content_type=ContentType.TEXT, content=text, comment_id=comment_id, post_id=post_id)
        await self.queue.enqueue(self.validation_queue, job.to_json())
        log.info("comment %s on post %s submitted", comment_id, post_id)
        return offset

    async def request_revalidation(self, post_id: UUID, image_id: UUID) -> str:
        """Schedule another safety pass over an image; returns the queue message id."""
        return await self._enqueue_image_validation(post_id, image_id)

    async def delete_post(self, post_id: UUID, image_id: UUID) -> Optional[int]:
        return await self.bus.append(
            Event(media_type=MediaType.IMAGE, action=EventAction.DELETED, post_id=post_id, data=str(image_id))
        )

    async def delete_comment(self, post_id: UUID, comment_id: UUID) -> Optional[int]:
        return await self.bus.append(
            Event(media_type=MediaType.TEXT, action=EventAction.DELETED, post_id=post_id, comment_id=comment_id)
        )
