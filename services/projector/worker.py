"""Projector: folds bus events into the read store.

State machine keyed by ``(postId, commentId?)``:

    Submitted/Image        create post if absent (pending, url -> unvalidated)
    Submitted/Text         create comment if absent (pending)
    Validated/Image        approve post, url -> validated
    Refused/Image          refuse post
    Validated|Refused/Text set comment approval
    Deleted/*              soft-delete
    Resized, Processed     audit log only

Every transition is idempotent, so redelivered events converge. Records of one
partition are applied strictly in order; partitions run concurrently.

Failure routing per record:
- undecodable            -> DLT (``decode_error``), checkpoint
- target still missing   -> retried with a fixed delay, then DLT (``target_not_found``), checkpoint
- anything else          -> no checkpoint; the partition is rewound and retried with backoff
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from core.errors import DocumentNotFoundError, PoisonMessageError
from core.kafka_consumer import BusRecord, EventBusConsumer
from core.kafka_producer import EventBusProducer
from core.logging.logger import message_context
from core.metrics import mark_projection, processing_seconds
from core.retry import RetryConfig
from packages.common.storage import UNVALIDATED, VALIDATED, public_url
from packages.schemas.events import Event, EventAction, MediaType
from storage.read_store import CommentPatch, PostPatch, ReadStore, retry_not_found

log = logging.getLogger("postwatch.services.projector")

DECODE_ERROR = "decode_error"
TARGET_NOT_FOUND = "target_not_found"


class Projector:
    """Consumes the events topic and keeps the read store in step."""

    name = "projector"

    def __init__(
        self,
        consumer: EventBusConsumer,
        store: ReadStore,
        bus: EventBusProducer,
        *,
        concurrency: int = 4,
        not_found_retries: int = 10,
        not_found_delay: float = 3.0,
        public_base_url: Optional[str] = None,
        poll_timeout: float = 1.0,
        backoff: Optional[RetryConfig] = None,
    ) -> None:
        """
        Args:
            consumer: Manual-commit consumer of the events topic.
            store: Read store receiving the projections.
            bus: Producer used for dead-lettering records.
            concurrency: Partitions applied in parallel.
            not_found_retries: Attempts for a patch/delete whose target is missing.
            not_found_delay: Fixed delay between those attempts.
            public_base_url: Prefix for post image links.
            poll_timeout: Seconds to wait for new records per poll.
            backoff: Delays between retries of a partition after an infrastructure error.
        """
        self.consumer = consumer
        self.store = store
        self.bus = bus
        self.not_found_retries = not_found_retries
        self.not_found_delay = not_found_delay
        self.public_base_url = public_base_url
        self.poll_timeout = poll_timeout
        self.backoff = backoff or RetryConfig(attempts=8, base_delay=0.5, max_delay=30.0)
        self._partitions = asyncio.Semaphore(concurrency)
        self._failures: Dict[int, int] = {}

    # ---------------- state machine ----------------

    async def apply(self, event: Event) -> None:
        """Apply one event to the read store.

        Raises:
            DocumentNotFoundError: a patch/delete addressed a row that does not exist yet.
        """
        action, media = event.action, event.media_type
        if action is EventAction.SUBMITTED:
            if media is MediaType.IMAGE:
                created = await self.store.create_post_if_absent(
                    event.post_id, event.data, public_url(UNVALIDATED, event.data, self.public_base_url)
                )
            else:
                created = await self.store.create_comment_if_absent(event.post_id, event.comment_id, event.data)
            if not created:
                log.info("%s already projected; skipping create", media.value)
        elif action in (EventAction.VALIDATED, EventAction.REFUSED):
            approved = action is EventAction.VALIDATED
            if media is MediaType.IMAGE:
                url = public_url(VALIDATED, event.data, self.public_base_url) if approved else None
                await self.store.patch_post(event.post_id, PostPatch(is_approved=approved, url=url))
            else:
                await self.store.patch_comment(event.post_id, event.comment_id, CommentPatch(is_approved=approved))
        elif action is EventAction.DELETED:
            if media is MediaType.IMAGE:
                await self.store.delete_post(event.post_id)
            else:
                await self.store.delete_comment(event.post_id, event.comment_id)
        else:
            log.info("%s/%s for %s noted; no read-model change", action.value, media.value, event.data)
            return
        mark_projection(action.value, media.value)

    # ---------------- record handling ----------------

    async def project(self, record: BusRecord) -> None:
        """Decode, apply and checkpoint a single record (dead-lettering what cannot be applied)."""
        cp = record.checkpoint
        with message_context(partition=cp.partition, offset=cp.offset):
            try:
                event = Event.from_json(record.value)
            except PoisonMessageError as e:
                log.error("undecodable event: %s", e)
                await self.bus.dead_letter(record.value, DECODE_ERROR, source_topic=cp.topic)
            else:
                with message_context(post_id=event.post_id, comment_id=event.comment_id):
                    try:
                        await retry_not_found(lambda: self.apply(event), self.not_found_retries, self.not_found_delay)
                    except DocumentNotFoundError as e:
                        log.error("giving up on %s/%s: %s", event.action.value, event.media_type.value, e)
                        await self.bus.dead_letter(
                            record.value, TARGET_NOT_FOUND, source_topic=cp.topic, key=event.partition_key
                        )
            await self.consumer.checkpoint(cp)

    async def drain_partition(self, partition: int, records: List[BusRecord]) -> None:
        """Apply `records` in order; on failure rewind to the failed record and back off."""
        async with self._partitions:
            for record in records:
                try:
                    with processing_seconds.labels(worker=self.name).time():
                        await self.project(record)
                except Exception as e:
                    n = self._failures.get(partition, 0)
                    self._failures[partition] = n + 1
                    delay = min(self.backoff.max_delay, self.backoff.base_delay * (self.backoff.multiplier ** n))
                    log.exception(
                        "partition %d stalled at offset %d (%s); retrying in %.1fs",
                        partition, record.checkpoint.offset, e, delay,
                    )
                    self.consumer.rewind(record.checkpoint)
                    await asyncio.sleep(delay)
                    return
                self._failures.pop(partition, None)

    async def run_once(self) -> int:
        """Poll once and apply everything fetched; returns the number of records seen."""
        batches = await self.consumer.poll(self.poll_timeout)
        await asyncio.gather(*(self.drain_partition(p, recs) for p, recs in batches.items()))
        return sum(len(recs) for recs in batches.values())

    async def run(self, stop: asyncio.Event) -> None:
        """Project until `stop` is set; the batch in flight is finished first."""
        log.info("projector consuming %s as %s", self.consumer.topic, self.consumer.group_id)
        while not stop.is_set():
            await self.run_once()
        log.info("projector stopped")
