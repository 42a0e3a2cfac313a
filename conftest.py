"""Shared fixtures: fake Redis, in-memory read store, fake event bus and blob containers."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from core.errors import BlobNotFoundError
from core.retry import RetryConfig
from core.task_queue import TaskQueue
from packages.common.storage import UNVALIDATED, VALIDATED, public_url
from packages.schemas.events import Event
from storage.read_store import ReadStore


class Clock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBus:
    """Records appended events and dead-lettered records instead of talking to Kafka."""

    topic = "post_events"

    def __init__(self) -> None:
        self.events: List[Event] = []
        self.dead: List[Tuple[bytes, str]] = []

    async def append(self, event: Event) -> Optional[int]:
        self.events.append(event)
        return len(self.events) - 1

    async def dead_letter(self, raw: bytes, reason: str, source_topic: Optional[str] = None,
                          key: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.dead.append((raw, reason))


class InMemoryBlobs:
    """Same surface as `BlobStore`, backed by dicts."""

    def __init__(self) -> None:
        self.containers: Dict[str, Dict[str, bytes]] = {UNVALIDATED: {}, VALIDATED: {}}

    async def exists(self, container: str, key: str) -> bool:
        return key in self.containers[container]

    async def download(self, container: str, key: str) -> bytes:
        try:
            return self.containers[container][key]
        except KeyError:
            raise BlobNotFoundError(key, (container,)) from None

    async def upload(self, container: str, key: str, data: bytes, content_type: str = "image/png") -> str:
        self.containers[container][key] = data
        return f"{container}/{key}"

    async def delete(self, container: str, key: str) -> None:
        self.containers[container].pop(key, None)

    async def locate(self, key: str) -> str:
        for container in (UNVALIDATED, VALIDATED):
            if key in self.containers[container]:
                return container
        raise BlobNotFoundError(key, (UNVALIDATED, VALIDATED))

    async def fetch(self, key: str) -> Tuple[str, bytes]:
        container = await self.locate(key)
        return container, self.containers[container][key]

    async def move(self, key: str, src: str = UNVALIDATED, dst: str = VALIDATED) -> None:
        data = await self.download(src, key)
        await self.upload(dst, key, data)
        await self.delete(src, key)

    def public_url(self, container: str, key: str) -> str:
        return public_url(container, key)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client, clock) -> TaskQueue:
    return TaskQueue(
        redis_client,
        key_prefix="test",
        lease_seconds=60,
        max_delivery_count=10,
        send_retry=RetryConfig(attempts=1),
        poll_interval=0.01,
        clock=clock,
    )


@pytest_asyncio.fixture
async def read_store():
    engine = create_async_engine(
        "sqlite+aiosqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    store = ReadStore(engine)
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def blobs() -> InMemoryBlobs:
    return InMemoryBlobs()
