"""Event and job schemas exchanged between the submission tier and the workers.

- `Event`: immutable fact appended to the event bus (camelCase JSON on the wire).
- `ResizeJob`: resize work item, serialized as an ``[imageId, postId]`` pair.
- `ValidationJob`: safety-analysis work item for a comment text or an image.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from core.errors import PoisonMessageError

NIL_UUID = UUID(int=0)

RawPayload = Union[bytes, bytearray, str]


class MediaType(str, Enum):
    """Kind of content an event or job refers to."""
    IMAGE = "Image"
    TEXT = "Text"


class EventAction(str, Enum):
    """Lifecycle transition recorded by an event."""
    SUBMITTED = "Submitted"
    RESIZED = "Resized"
    PROCESSED = "Processed"
    VALIDATED = "Validated"
    REFUSED = "Refused"
    DELETED = "Deleted"


ContentType = MediaType


def _nil_to_none(v: Any) -> Any:
    """Older producers send the nil UUID instead of null for 'no comment'."""
    if v in (None, "", NIL_UUID, str(NIL_UUID)):
        return None
    return v


OptionalCommentId = Annotated[Optional[UUID], BeforeValidator(_nil_to_none)]


def _as_text(raw: RawPayload) -> str:
    return raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw


class Event(BaseModel):
    """Something that happened to a post (Image) or a comment (Text).

    Events never change after construction; use `transform` to derive a new
    event for the same subject.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    media_type: MediaType
    action: EventAction
    post_id: UUID
    comment_id: OptionalCommentId = None
    data: str = ""

    @model_validator(mode="after")
    def _comment_iff_text(self) -> "Event":
        if self.comment_id is not None and self.media_type is not MediaType.TEXT:
            raise ValueError("commentId is only valid on Text events")
        if self.media_type is MediaType.TEXT and self.comment_id is None:
            raise ValueError("Text events must carry a commentId")
        return self

    # ---- constructors ----

    @classmethod
    def image_submitted(cls, post_id: UUID, image_id: UUID) -> "Event":
        return cls(media_type=MediaType.IMAGE, action=EventAction.SUBMITTED, post_id=post_id, data=str(image_id))

    @classmethod
    def comment_submitted(cls, post_id: UUID, comment_id: UUID, text: str) -> "Event":
        return cls(
            media_type=MediaType.TEXT,
            action=EventAction.SUBMITTED,
            post_id=post_id,
            comment_id=comment_id,
            data=text,
        )

    @classmethod
    def verdict(cls, post_id: UUID, comment_id: Optional[UUID], data: str, approved: bool) -> "Event":
        """Validated/Refused event; the media type follows from whether a comment is targeted."""
        return cls(
            media_type=MediaType.TEXT if comment_id is not None else MediaType.IMAGE,
            action=EventAction.VALIDATED if approved else EventAction.REFUSED,
            post_id=post_id,
            comment_id=comment_id,
            data=data,
        )

    def transform(self, media_type: MediaType, action: EventAction) -> "Event":
        """Return a new event about the same subject with a different type/action."""
        return Event(
            media_type=media_type,
            action=action,
            post_id=self.post_id,
            comment_id=self.comment_id,
            data=self.data,
        )

    # ---- wire format ----

    @property
    def partition_key(self) -> str:
        """Events about one post share a partition so they stay ordered."""
        return str(self.post_id)

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: RawPayload) -> "Event":
        try:
            return cls.model_validate_json(_as_text(raw))
        except (ValidationError, UnicodeDecodeError) as e:
            raise PoisonMessageError(f"undecodable event: {e}", raw=bytes(raw, "utf-8") if isinstance(raw, str) else bytes(raw)) from e


class ResizeJob(BaseModel):
    """Resize request for one uploaded image."""

    model_config = ConfigDict(frozen=True)

    image_id: UUID
    post_id: UUID

    def to_json(self) -> bytes:
        return json.dumps([str(self.image_id), str(self.post_id)]).encode("utf-8")

    @classmethod
    def from_json(cls, raw: RawPayload) -> "ResizeJob":
        """Decode ``[imageId, postId]``; the ``{"Item1", "Item2"}`` tuple form is accepted too."""
        try:
            data = json.loads(_as_text(raw))
            if isinstance(data, dict):
                data = [data.get("Item1"), data.get("Item2")]
            if not isinstance(data, list) or len(data) != 2:
                raise ValueError("resize job must be a 2-element array")
            return cls(image_id=data[0], post_id=data[1])
        except (ValueError, ValidationError, UnicodeDecodeError) as e:
            raise PoisonMessageError(f"undecodable resize job: {e}") from e


class ValidationJob(BaseModel):
    """Safety-analysis request: comment text, or an image referenced by id."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    content_type: ContentType
    content: str
    comment_id: OptionalCommentId = None
    post_id: UUID

    @model_validator(mode="after")
    def _comment_matches_type(self) -> "ValidationJob":
        if self.content_type is ContentType.TEXT and self.comment_id is None:
            raise ValueError("Text validation jobs must carry a commentId")
        if self.content_type is ContentType.IMAGE and self.comment_id is not None:
            raise ValueError("Image validation jobs must not carry a commentId")
        return self

    @property
    def image_id(self) -> str:
        return self.content

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: RawPayload) -> "ValidationJob":
        try:
            return cls.model_validate_json(_as_text(raw))
        except (ValidationError, UnicodeDecodeError) as e:
            raise PoisonMessageError(f"undecodable validation job: {e}") from e
