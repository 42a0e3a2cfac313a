"""POSTWATCH: event-bus consumer with manual checkpoints.

This module provides:
- `EventBusConsumer` (aiokafka): consumer-group member that resumes from the last
  committed checkpoint, hands out records grouped by partition, and commits only
  when told to.
- `BusRecord` / `Checkpoint`: a raw record and the token used to commit or rewind it.

Ordering is guaranteed only within a partition. Committing a checkpoint commits
``offset + 1`` for its partition, which implicitly covers every earlier record of
that partition, so callers must checkpoint in order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType
from typing import Dict, List, Optional

from aiokafka import AIOKafkaConsumer, TopicPartition

log = logging.getLogger("postwatch.core.kafka_consumer")


@dataclass(frozen=True)
class Checkpoint:
    """Position of one record: commit it once its effect is durable."""
    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class BusRecord:
    """Raw record as read from the bus (value left undecoded)."""
    key: Optional[bytes]
    value: bytes
    checkpoint: Checkpoint


class EventBusConsumer:
    """
    Manual-commit consumer for the events topic.

    - auto commit disabled; `checkpoint()` commits explicitly
    - new groups start from the earliest retained record
    - `rewind()` seeks back so a failed record is redelivered in this session
    """

    def __init__(
        self,
        bootstrap: str,
        topic: str,
        group_id: str,
        client_id: str = "postwatch-projector",
        consumer: Optional[AIOKafkaConsumer] = None,
    ) -> None:
        """Initialize the consumer; `start()` (or ``async with``) joins the group.

        Args:
            bootstrap: Kafka bootstrap servers string (host:port,...).
            topic: Topic to subscribe to.
            group_id: Consumer group id; checkpoints are stored per group.
            client_id: Client identifier for Kafka.
            consumer: Pre-built aiokafka consumer (tests inject a fake).
        """
        self.bootstrap = bootstrap
        self.topic = topic
        self.group_id = group_id
        self._c = consumer or AIOKafkaConsumer(
            bootstrap_servers=bootstrap,
            group_id=group_id,
            client_id=client_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            isolation_level="read_committed",
        )

    async def start(self) -> None:
        """Connect, then subscribe to the topic."""
        await self._c.start()
        self.subscribe()
        log.info("event bus consumer joined group %s on %s", self.group_id, self.topic)

    def subscribe(self) -> None:
        """Subscribe to the configured topic; consumption resumes at the group's checkpoint."""
        self._c.subscribe([self.topic])

    async def stop(self) -> None:
        """Leave the group and close network resources."""
        await self._c.stop()

    async def __aenter__(self) -> "EventBusConsumer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        """Stop the consumer on context exit (does not suppress exceptions)."""
        await self.stop()

    async def poll(self, timeout: float = 1.0, max_records: Optional[int] = None) -> Dict[int, List[BusRecord]]:
        """Fetch the next records, grouped by partition and in offset order.

        Args:
            timeout: Seconds to wait when nothing is buffered.
            max_records: Optional cap on records returned.

        Returns:
            Mapping partition -> records; empty when the wait timed out.
        """
        fetched = await self._c.getmany(timeout_ms=int(timeout * 1000), max_records=max_records)
        out: Dict[int, List[BusRecord]] = {}
        for tp, msgs in fetched.items():
            out[tp.partition] = [
                BusRecord(
                    key=m.key,
                    value=m.value,
                    checkpoint=Checkpoint(topic=tp.topic, partition=tp.partition, offset=m.offset),
                )
                for m in msgs
            ]
        return out

    async def checkpoint(self, cp: Checkpoint) -> None:
        """Commit past `cp` for its partition (the next record read will be ``offset + 1``)."""
        await self._c.commit({TopicPartition(cp.topic, cp.partition): cp.offset + 1})

    def rewind(self, cp: Checkpoint) -> None:
        """Seek the partition back to `cp` so it is fetched again."""
        self._c.seek(TopicPartition(cp.topic, cp.partition), cp.offset)
        log.info("rewound %s[%d] to offset %d", cp.topic, cp.partition, cp.offset)
