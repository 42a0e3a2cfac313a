"""Moderation worker: safety analysis of comments and images.

For each `ValidationJob`:
1. Text: analyze the comment; approved iff every severity is 0.
2. Image: locate the blob (unvalidated first, validated on redelivery), analyze
   the bytes; approved iff every severity is below the threshold. Approved images
   move to the validated container; refused images stay where they are.
3. Optionally write the verdict straight into the read store.
4. Append a Validated/Refused event for the projector.
"""

from __future__ import annotations

import logging
from typing import Optional

from core.kafka_producer import EventBusProducer
from core.logging.logger import message_context
from core.metrics import mark_verdict
from core.task_queue import Lease, TaskQueue
from core.worker import QueueWorker
from packages.common.storage import UNVALIDATED, VALIDATED, BlobStore
from packages.schemas.events import ContentType, Event, ValidationJob
from services.moderation.safety import SafetyAnalyzer, image_is_safe, text_is_safe
from storage.read_store import CommentPatch, PostPatch, ReadStore, retry_not_found

log = logging.getLogger("postwatch.services.moderation")


class ModerationWorker(QueueWorker):
    """Drains the validation queue and emits verdict events."""

    name = "moderation"

    def __init__(
        self,
        queue: TaskQueue,
        queue_name: str,
        analyzer: SafetyAnalyzer,
        blobs: BlobStore,
        bus: EventBusProducer,
        read_store: Optional[ReadStore] = None,
        *,
        concurrency: int = 5,
        slots: int = 1,
        dead_letter_after: int = 5,
        receive_wait: float = 5.0,
        image_threshold: int = 2,
        not_found_retries: int = 10,
        not_found_delay: float = 3.0,
    ) -> None:
        """
        Args:
            analyzer: Safety-analysis client.
            blobs: Image containers.
            bus: Producer for verdict events.
            read_store: When given, verdicts are also written directly (not-found retried).
            slots: Concurrent safety-analysis calls allowed.
            image_threshold: Lowest severity that refuses an image.
        """
        super().__init__(
            queue,
            queue_name,
            concurrency=concurrency,
            slots=slots,
            dead_letter_after=dead_letter_after,
            receive_wait=receive_wait,
        )
        self.analyzer = analyzer
        self.blobs = blobs
        self.bus = bus
        self.read_store = read_store
        self.image_threshold = image_threshold
        self.not_found_retries = not_found_retries
        self.not_found_delay = not_found_delay

    async def handle(self, lease: Lease) -> None:
        job = ValidationJob.from_json(lease.body)
        with message_context(post_id=job.post_id, comment_id=job.comment_id):
            if job.content_type is ContentType.TEXT:
                approved = await self.moderate_text(job)
            else:
                approved = await self.moderate_image(job)
            mark_verdict(job.content_type.value, approved)
            log.info("%s verdict: %s", job.content_type.value, "validated" if approved else "refused")

            if self.read_store is not None:
                await self.write_verdict(job, approved)

            await self.bus.append(Event.verdict(job.post_id, job.comment_id, job.content, approved))

    async def moderate_text(self, job: ValidationJob) -> bool:
        async with self.slots:
            analysis = await self.analyzer.analyze_text(job.content)
        return text_is_safe(analysis)

    async def moderate_image(self, job: ValidationJob) -> bool:
        """Analyze the image and move it to the validated container when approved.

        Raises:
            BlobNotFoundError: the image is in neither container.
        """
        container, data = await self.blobs.fetch(job.image_id)
        async with self.slots:
            analysis = await self.analyzer.analyze_image(data)
        approved = image_is_safe(analysis, self.image_threshold)
        if approved and container == UNVALIDATED:
            await self.blobs.move(job.image_id)
        return approved

    async def write_verdict(self, job: ValidationJob, approved: bool) -> None:
        """Patch the read model directly; convergent with the projector's write."""
        store = self.read_store
        if job.comment_id is not None:
            patch = CommentPatch(is_approved=approved, content=job.content)

            async def _apply() -> None:
                await store.patch_comment(job.post_id, job.comment_id, patch)
        else:
            url = self.blobs.public_url(VALIDATED, job.image_id) if approved else None
            post_patch = PostPatch(is_approved=approved, url=url)

            async def _apply() -> None:
                await store.patch_post(job.post_id, post_patch)

        await retry_not_found(_apply, self.not_found_retries, self.not_found_delay)
