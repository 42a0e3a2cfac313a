"""Exception hierarchy for the POSTWATCH pipeline.

Every per-message failure raised by the workers derives from `PipelineError`
so callers can tell pipeline faults from programming errors:

- `TransientError`: infrastructure hiccups that are worth retrying.
- `DocumentNotFoundError`: read-store target missing (create not yet applied).
- `BlobNotFoundError`: image absent from both blob containers.
- `EventTooLargeError`: serialized event exceeds the bus batch limit.
- `LeaseLostError`: a queue lease expired before it was settled.
- `PoisonMessageError`: payload cannot be decoded into a known shape.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class TransientError(PipelineError):
    """Retryable infrastructure failure (connection loss, throttling, 5xx)."""


class PoisonMessageError(PipelineError):
    """Payload could not be decoded; retrying will not help."""

    def __init__(self, message: str, raw: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.raw = raw


class DocumentNotFoundError(PipelineError):
    """A read-store document was addressed before it exists."""

    def __init__(self, collection: str, doc_id: str, partition_key: str) -> None:
        super().__init__(f"{collection}/{doc_id} (partition {partition_key}) not found")
        self.collection = collection
        self.doc_id = doc_id
        self.partition_key = partition_key


class BlobNotFoundError(PipelineError):
    """The referenced image is in none of the searched containers."""

    def __init__(self, key: str, containers: tuple[str, ...]) -> None:
        super().__init__(f"blob {key} not found in {', '.join(containers)}")
        self.key = key
        self.containers = containers


class EventTooLargeError(PipelineError):
    """Serialized event does not fit in a single bus batch."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"event of {size} bytes exceeds batch limit of {limit} bytes")
        self.size = size
        self.limit = limit


class LeaseLostError(PipelineError):
    """Settling a lease failed because it expired and was handed out again."""


class SafetyServiceError(TransientError):
    """Safety-analysis endpoint returned an error status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"safety analysis failed with HTTP {status}: {body[:200]}")
        self.status = status
