"""Tests for the projector state machine and failure routing."""

import uuid
from typing import Dict, List, Optional

import pytest

from core.errors import DocumentNotFoundError
from core.kafka_consumer import BusRecord, Checkpoint
from core.retry import RetryConfig
from packages.common.submission import SubmissionGateway
from packages.schemas.events import Event, EventAction, MediaType
from services.moderation.safety import CategorySeverity
from services.moderation.worker import ModerationWorker
from services.projector.worker import DECODE_ERROR, TARGET_NOT_FOUND, Projector

POST = uuid.UUID("11111111-1111-1111-1111-111111111111")
COMMENT = uuid.UUID("22222222-2222-2222-2222-222222222222")
IMAGE = uuid.UUID("33333333-3333-3333-3333-333333333333")


class FakeConsumer:
    topic = "post_events"
    group_id = "test"

    def __init__(self) -> None:
        self.batches: List[Dict[int, List[BusRecord]]] = []
        self.committed: List[Checkpoint] = []
        self.rewound: List[Checkpoint] = []
        self._next = 0

    def feed(self, *values: bytes, partition: int = 0, start: Optional[int] = None) -> None:
        start = self._next if start is None else start
        self._next = start + len(values)
        self.batches.append(
            {
                partition: [
                    BusRecord(key=None, value=v, checkpoint=Checkpoint(self.topic, partition, start + i))
                    for i, v in enumerate(values)
                ]
            }
        )

    async def poll(self, timeout: float = 1.0):
        return self.batches.pop(0) if self.batches else {}

    async def checkpoint(self, cp: Checkpoint) -> None:
        self.committed.append(cp)

    def rewind(self, cp: Checkpoint) -> None:
        self.rewound.append(cp)


@pytest.fixture
def consumer() -> FakeConsumer:
    return FakeConsumer()


@pytest.fixture
def projector(consumer, read_store, bus) -> Projector:
    return Projector(
        consumer,
        read_store,
        bus,
        not_found_retries=3,
        not_found_delay=0,
        backoff=RetryConfig(base_delay=0, max_delay=0),
    )


def _validated_image() -> Event:
    return Event.verdict(POST, None, str(IMAGE), approved=True)


@pytest.mark.asyncio
async def test_image_lifecycle(projector, consumer, read_store) -> None:
    consumer.feed(
        Event.image_submitted(POST, IMAGE).to_json(),
        Event(media_type=MediaType.IMAGE, action=EventAction.PROCESSED, post_id=POST, data=str(IMAGE)).to_json(),
        _validated_image().to_json(),
    )
    assert await projector.run_once() == 3
    post = await read_store.get_post(POST)
    assert (post.is_approved, post.url, post.blob_image) == (True, f"validated/{IMAGE}", str(IMAGE))
    assert [cp.offset for cp in consumer.committed] == [0, 1, 2]


@pytest.mark.asyncio
async def test_pending_post_points_at_unvalidated(projector, read_store) -> None:
    await projector.apply(Event.image_submitted(POST, IMAGE))
    post = await read_store.get_post(POST)
    assert post.is_approved is None
    assert post.url == f"unvalidated/{IMAGE}"


@pytest.mark.asyncio
async def test_applying_twice_equals_once(projector, read_store) -> None:
    for _ in range(2):
        await projector.apply(Event.comment_submitted(POST, COMMENT, "hello"))
        await projector.apply(Event.verdict(POST, COMMENT, "hello", approved=False))
    comment = await read_store.get_comment(POST, COMMENT)
    assert (comment.is_approved, comment.content, comment.is_deleted) == (False, "hello", False)


@pytest.mark.asyncio
async def test_submitted_after_verdict_does_not_reset(projector, read_store) -> None:
    await projector.apply(Event.image_submitted(POST, IMAGE))
    await projector.apply(Event.verdict(POST, None, str(IMAGE), approved=False))
    await projector.apply(Event.image_submitted(POST, IMAGE))
    assert (await read_store.get_post(POST)).is_approved is False


@pytest.mark.asyncio
async def test_deleted_marks_rows(projector, read_store) -> None:
    await projector.apply(Event.comment_submitted(POST, COMMENT, "bye"))
    await projector.apply(
        Event(media_type=MediaType.TEXT, action=EventAction.DELETED, post_id=POST, comment_id=COMMENT)
    )
    assert (await read_store.get_comment(POST, COMMENT)).is_deleted is True


@pytest.mark.asyncio
async def test_verdict_for_missing_target_goes_to_dlt(projector, consumer, bus, read_store) -> None:
    consumer.feed(_validated_image().to_json())
    await projector.run_once()
    assert bus.dead == [(_validated_image().to_json(), TARGET_NOT_FOUND)]
    assert len(consumer.committed) == 1
    assert await read_store.get_post(POST) is None


@pytest.mark.asyncio
async def test_undecodable_record_goes_to_dlt(projector, consumer, bus) -> None:
    consumer.feed(b"{broken", Event.image_submitted(POST, IMAGE).to_json())
    await projector.run_once()
    assert bus.dead == [(b"{broken", DECODE_ERROR)]
    assert [cp.offset for cp in consumer.committed] == [0, 1]


class FailingOnce:
    """Wraps a read store; the first create raises like a dropped connection."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.failed = False

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def create_post_if_absent(self, *args):
        if not self.failed:
            self.failed = True
            raise ConnectionError("database went away")
        return await self.inner.create_post_if_absent(*args)


@pytest.mark.asyncio
async def test_infrastructure_error_rewinds_without_checkpoint(consumer, read_store, bus) -> None:
    projector = Projector(
        consumer, FailingOnce(read_store), bus, backoff=RetryConfig(base_delay=0, max_delay=0)
    )
    first = Event.image_submitted(POST, IMAGE).to_json()
    second = _validated_image().to_json()
    consumer.feed(first, second)
    await projector.run_once()
    assert consumer.committed == []
    assert [cp.offset for cp in consumer.rewound] == [0]

    consumer.feed(first, second, start=0)  # redelivered from the rewound offset
    await projector.run_once()
    assert [cp.offset for cp in consumer.committed] == [0, 1]
    assert (await read_store.get_post(POST)).is_approved is True


class AppearsDuringRetry:
    """Wraps a read store; `method` misses once, and the missing row is created right after."""

    def __init__(self, inner, method: str, create) -> None:
        self.inner = inner
        self.method = method
        self.create = create
        self.misses = 0

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name != self.method:
            return attr

        async def call(*args):
            try:
                return await attr(*args)
            except DocumentNotFoundError:
                self.misses += 1
                await self.create()
                raise

        return call


@pytest.mark.asyncio
async def test_verdict_applied_once_comment_appears(consumer, read_store, bus) -> None:
    store = AppearsDuringRetry(
        read_store, "patch_comment", lambda: read_store.create_comment_if_absent(POST, COMMENT, "late")
    )
    projector = Projector(consumer, store, bus, not_found_retries=3, not_found_delay=0)
    consumer.feed(Event.verdict(POST, COMMENT, "late", approved=True).to_json())
    await projector.run_once()

    assert store.misses == 1
    assert bus.dead == []
    assert [cp.offset for cp in consumer.committed] == [0]
    assert (await read_store.get_comment(POST, COMMENT)).is_approved is True


@pytest.mark.asyncio
async def test_delete_applied_once_post_appears(consumer, read_store, bus) -> None:
    store = AppearsDuringRetry(
        read_store, "delete_post", lambda: read_store.create_post_if_absent(POST, str(IMAGE), "unvalidated/x")
    )
    projector = Projector(consumer, store, bus, not_found_retries=3, not_found_delay=0)
    consumer.feed(
        Event(media_type=MediaType.IMAGE, action=EventAction.DELETED, post_id=POST, data=str(IMAGE)).to_json()
    )
    await projector.run_once()

    assert store.misses == 1
    assert bus.dead == []
    assert (await read_store.get_post(POST)).is_deleted is True


class CleanAnalyzer:
    async def analyze_text(self, text: str):
        return [CategorySeverity("Hate", 0)]

    async def analyze_image(self, data: bytes):
        return [CategorySeverity("Hate", 0)]


@pytest.mark.asyncio
async def test_verdict_during_slow_submit_still_projects(projector, consumer, queue, blobs, bus, read_store) -> None:
    moderation = ModerationWorker(queue, "validation", CleanAnalyzer(), blobs, bus, not_found_delay=0)
    gateway = SubmissionGateway(queue, bus, resize_queue="resize", validation_queue="validation")
    append = bus.append

    async def slow_append(event):
        # moderation gets a turn while the Submitted append is still in flight
        await moderation.run_once(wait=0)
        return await append(event)

    bus.append = slow_append
    await gateway.submit_comment(POST, COMMENT, "hello")
    bus.append = append
    assert await moderation.run_once(wait=0) == "completed"

    assert [(e.action, e.media_type) for e in bus.events] == [
        (EventAction.SUBMITTED, MediaType.TEXT),
        (EventAction.VALIDATED, MediaType.TEXT),
    ]
    consumer.feed(*(e.to_json() for e in bus.events))
    await projector.run_once()
    assert bus.dead == []
    assert (await read_store.get_comment(POST, COMMENT)).is_approved is True
