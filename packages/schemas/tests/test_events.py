"""Tests for event and job schemas."""

import json
import uuid

import pytest
from pydantic import ValidationError

from core.errors import PoisonMessageError
from packages.schemas.events import (
    NIL_UUID,
    ContentType,
    Event,
    EventAction,
    MediaType,
    ResizeJob,
    ValidationJob,
)

POST = uuid.UUID("11111111-1111-1111-1111-111111111111")
COMMENT = uuid.UUID("22222222-2222-2222-2222-222222222222")
IMAGE = uuid.UUID("33333333-3333-3333-3333-333333333333")


def test_comment_id_only_on_text_events() -> None:
    with pytest.raises(ValidationError):
        Event(media_type=MediaType.IMAGE, action=EventAction.SUBMITTED, post_id=POST, comment_id=COMMENT)
    with pytest.raises(ValidationError):
        Event(media_type=MediaType.TEXT, action=EventAction.SUBMITTED, post_id=POST, data="hi")


def test_verdict_media_type_follows_comment_id() -> None:
    text = Event.verdict(POST, COMMENT, "nice", approved=True)
    image = Event.verdict(POST, None, str(IMAGE), approved=False)
    assert (text.media_type, text.action) == (MediaType.TEXT, EventAction.VALIDATED)
    assert (image.media_type, image.action) == (MediaType.IMAGE, EventAction.REFUSED)


def test_events_are_immutable_and_transform_copies() -> None:
    e = Event.image_submitted(POST, IMAGE)
    with pytest.raises(ValidationError):
        e.data = "other"
    t = e.transform(MediaType.IMAGE, EventAction.PROCESSED)
    assert t is not e
    assert (t.post_id, t.comment_id, t.data) == (e.post_id, e.comment_id, e.data)
    assert t.action is EventAction.PROCESSED
    assert e.action is EventAction.SUBMITTED


def test_event_wire_format_is_camel_case() -> None:
    e = Event.comment_submitted(POST, COMMENT, "hello")
    wire = json.loads(e.to_json())
    assert wire == {
        "mediaType": "Text",
        "action": "Submitted",
        "postId": str(POST),
        "commentId": str(COMMENT),
        "data": "hello",
    }
    assert Event.from_json(e.to_json()) == e
    assert e.partition_key == str(POST)


def test_nil_comment_id_reads_as_absent() -> None:
    raw = json.dumps(
        {"mediaType": "Image", "action": "Validated", "postId": str(POST), "commentId": str(NIL_UUID), "data": "x"}
    )
    assert Event.from_json(raw).comment_id is None


@pytest.mark.parametrize("raw", [b"not json", b'{"mediaType": "Video"}', b"\xff\xfe"])
def test_undecodable_event_is_poison(raw: bytes) -> None:
    with pytest.raises(PoisonMessageError):
        Event.from_json(raw)


def test_resize_job_accepts_array_and_tuple_forms() -> None:
    job = ResizeJob(image_id=IMAGE, post_id=POST)
    assert json.loads(job.to_json()) == [str(IMAGE), str(POST)]
    legacy = json.dumps({"Item1": str(IMAGE), "Item2": str(POST)})
    assert ResizeJob.from_json(legacy) == job
    with pytest.raises(PoisonMessageError):
        ResizeJob.from_json(b'["only-one"]')


def test_validation_job_comment_rules() -> None:
    ValidationJob(content_type=ContentType.IMAGE, content=str(IMAGE), post_id=POST)
    with pytest.raises(ValidationError):
        ValidationJob(content_type=ContentType.TEXT, content="hi", post_id=POST)
    with pytest.raises(ValidationError):
        ValidationJob(content_type=ContentType.IMAGE, content=str(IMAGE), comment_id=COMMENT, post_id=POST)


def test_image_validation_job_with_nil_comment_round_trips() -> None:
    raw = json.dumps(
        {"contentType": "Image", "content": str(IMAGE), "commentId": str(NIL_UUID), "postId": str(POST)}
    )
    job = ValidationJob.from_json(raw)
    assert job.comment_id is None
    assert job.image_id == str(IMAGE)
    with pytest.raises(PoisonMessageError):
        ValidationJob.from_json(b"{}")
