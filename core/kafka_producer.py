"""
Event-bus producer for POSTWATCH.

Provides:
- `EventBusProducer`: aiokafka producer that appends `Event`s to the events topic,
  partitioned by a stable hash of `postId`, through size-bounded batches.
- `partition_for`: the key -> partition mapping, shared with tests and tooling.

Delivery:
- An event whose serialized size exceeds `max_event_bytes` is logged and dropped
  (never retried); `append` returns None for it.
- Connection/timeout errors are retried with capped exponential backoff, then raised.
- Poison records and projection give-ups are published raw to ``<topic>.DLT``
  with a ``dlt_reason`` header.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Dict, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaTimeoutError, RequestTimedOutError

from core.config.config import KafkaCfg
from core.errors import EventTooLargeError
from core.metrics import mark_appended, mark_dead_lettered, mark_dropped
from core.retry import RetryConfig, retry_async
from packages.schemas.events import Event

log = logging.getLogger("postwatch.core.kafka_producer")

TRANSIENT_KAFKA_ERRORS = (KafkaConnectionError, KafkaTimeoutError, RequestTimedOutError)


def _hash_key(key: str) -> bytes:
    """
    Deterministic SHA-256 digest of a partition key.

    Args:
        key: Partition key (the post id as a string).

    Returns:
        The 32-byte digest; identical keys always map to the same partition.
    """
    return hashlib.sha256(key.encode("utf-8")).digest()


def partition_for(key: str, partitions: int) -> int:
    """Map a partition key onto one of `partitions` partitions."""
    if partitions <= 0:
        raise ValueError("topic has no partitions")
    return int.from_bytes(_hash_key(key)[:8], "big") % partitions


class EventBusProducer:
    """
    Append-only producer for the events topic.

    Features:
        - acks=all and idempotent delivery
        - consistent partitioning by postId using `_hash_key`
        - explicit per-event size bound (oversized events are dropped)
        - bounded retries on connection errors
        - dead-letter publishing to ``<topic><dlt_suffix>``
    """

    def __init__(
        self,
        bootstrap: str,
        topic: str = "post_events",
        client_id: str = "postwatch",
        max_event_bytes: int = 1_048_576,
        dlt_suffix: str = ".DLT",
        send_retry: Optional[RetryConfig] = None,
        producer: Optional[AIOKafkaProducer] = None,
    ) -> None:
        """
        Create the producer; call `start()` (or use ``async with``) before appending.

        Args:
            bootstrap: Kafka bootstrap servers string.
            topic: Events topic.
            client_id: Kafka client.id.
            max_event_bytes: Largest serialized event accepted.
            dlt_suffix: Suffix of the dead-letter topic.
            send_retry: Retry policy for transient broker errors.
            producer: Pre-built aiokafka producer (tests inject a fake).
        """
        self.bootstrap = bootstrap
        self.topic = topic
        self.max_event_bytes = max_event_bytes
        self.dlt_suffix = dlt_suffix
        self._send_retry = send_retry or RetryConfig(attempts=5, base_delay=5.0, max_delay=50.0)
        self._p = producer or AIOKafkaProducer(
            bootstrap_servers=bootstrap,
            client_id=client_id,
            acks="all",
            enable_idempotence=True,
            max_batch_size=max_event_bytes,
            max_request_size=max_event_bytes + 1024,
        )
        self._partitions: Dict[str, int] = {}

    @classmethod
    def from_config(cls, cfg: KafkaCfg) -> "EventBusProducer":
        """Build a producer from `KAFKA_*` settings."""
        return cls(
            cfg.bootstrap,
            topic=cfg.topic_events,
            client_id=cfg.client_id,
            max_event_bytes=cfg.max_event_bytes,
            dlt_suffix=cfg.dlt_suffix,
            send_retry=RetryConfig(
                attempts=cfg.send_retries, base_delay=cfg.send_retry_delay, max_delay=cfg.send_retry_max_delay
            ),
        )

    async def start(self) -> None:
        """Connect to the cluster; raises if the brokers are unreachable."""
        await self._p.start()
        log.info("event bus producer connected to %s (topic=%s)", self.bootstrap, self.topic)

    async def stop(self) -> None:
        """Flush pending batches and release network resources."""
        await self._p.stop()

    async def __aenter__(self) -> "EventBusProducer":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    async def _partition(self, topic: str, key: str) -> int:
        n = self._partitions.get(topic)
        if n is None:
            parts = await self._p.partitions_for(topic)
            n = len(parts or ())
            self._partitions[topic] = n
        return partition_for(key, n)

    async def _send_one(
        self,
        topic: str,
        key: Optional[str],
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        """Send a single record in its own batch and return its offset."""
        partition = await self._partition(topic, key or "")
        batch = self._p.create_batch()
        hdrs = [(k, v.encode("utf-8")) for k, v in (headers or {}).items()]
        if batch.append(
            key=key.encode("utf-8") if key else None,
            value=value,
            timestamp=None,
            headers=hdrs,
        ) is None:
            raise EventTooLargeError(len(value), self.max_event_bytes)
        batch.close()
        fut = await self._p.send_batch(batch, topic, partition=partition)
        meta = await fut
        return meta.offset

    async def append(self, event: Event) -> Optional[int]:
        """
        Append an event to the bus.

        Args:
            event: The event to publish.

        Returns:
            The record offset within its partition, or None if the event was dropped
            for exceeding the size bound.

        Raises:
            aiokafka connection/timeout errors once the retry budget is exhausted.
        """
        value = event.to_json()
        key = event.partition_key
        try:
            if len(value) > self.max_event_bytes:
                raise EventTooLargeError(len(value), self.max_event_bytes)

            def _on_retry(attempt: int, err: BaseException, pause: float) -> None:
                log.warning("append to %s failed (attempt %d: %s); retrying in %.1fs", self.topic, attempt, err, pause)

            offset = await retry_async(
                lambda: self._send_one(self.topic, key, value),
                self._send_retry,
                retry_on=TRANSIENT_KAFKA_ERRORS,
                on_retry=_on_retry,
            )
        except EventTooLargeError as e:
            mark_dropped("too_large")
            log.warning(
                "dropping %s/%s event for post %s: %s",
                event.action.value, event.media_type.value, event.post_id, e,
            )
            return None
        mark_appended(event.action.value, event.media_type.value)
        log.debug("appended %s/%s for post %s at offset %s", event.action.value, event.media_type.value, key, offset)
        return offset

    async def dead_letter(
        self,
        raw: bytes,
        reason: str,
        source_topic: Optional[str] = None,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Publish raw bytes to the source topic's Dead Letter Topic (DLT).

        Args:
            raw: Raw record value, stored as-is for forensics.
            reason: Short machine-readable reason (``decode_error``, ``target_not_found``).
            source_topic: Base topic; defaults to the events topic.
            key: Optional partition key to keep DLT records grouped by post.
            headers: Extra headers to forward.
        """
        dlt_topic = (source_topic or self.topic) + self.dlt_suffix
        hdrs = {"dlt_reason": reason, **(headers or {})}
        await retry_async(
            lambda: self._send_one(dlt_topic, key, raw, hdrs),
            self._send_retry,
            retry_on=TRANSIENT_KAFKA_ERRORS,
        )
        mark_dead_lettered(reason)
        log.warning("published record to %s (reason=%s)", dlt_topic, reason)
