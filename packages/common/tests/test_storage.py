"""Tests for BlobStore against a stubbed boto3 client."""

import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from core.errors import BlobNotFoundError
from packages.common.storage import UNVALIDATED, VALIDATED, BlobStore


@pytest.fixture
def s3():
    client = boto3.client("s3", region_name="us-east-1", aws_access_key_id="test", aws_secret_access_key="test")
    with Stubber(client) as stubber:
        yield client, stubber


def _missing(stubber: Stubber, op: str, bucket: str, key: str) -> None:
    stubber.add_client_error(
        op, service_error_code="404", http_status_code=404, expected_params={"Bucket": bucket, "Key": key}
    )


@pytest.mark.asyncio
async def test_locate_falls_back_to_validated(s3) -> None:
    client, stubber = s3
    _missing(stubber, "head_object", "unv-bucket", "img")
    stubber.add_response("head_object", {}, {"Bucket": "val-bucket", "Key": "img"})
    store = BlobStore(client, "unv-bucket", "val-bucket")
    assert await store.locate("img") == VALIDATED
    stubber.assert_no_pending_responses()


@pytest.mark.asyncio
async def test_locate_missing_everywhere(s3) -> None:
    client, stubber = s3
    _missing(stubber, "head_object", "unvalidated", "img")
    _missing(stubber, "head_object", "validated", "img")
    with pytest.raises(BlobNotFoundError):
        await BlobStore(client).locate("img")


@pytest.mark.asyncio
async def test_download_reads_body(s3) -> None:
    client, stubber = s3
    stubber.add_response(
        "get_object",
        {"Body": StreamingBody(io.BytesIO(b"png-bytes"), len(b"png-bytes"))},
        {"Bucket": "unvalidated", "Key": "img"},
    )
    assert await BlobStore(client).download(UNVALIDATED, "img") == b"png-bytes"


@pytest.mark.asyncio
async def test_move_copies_server_side_then_deletes(s3) -> None:
    client, stubber = s3
    stubber.add_response("copy_object", {})
    stubber.add_response("delete_object", {}, {"Bucket": "unv-bucket", "Key": "img"})
    await BlobStore(client, "unv-bucket", "val-bucket").move("img")
    stubber.assert_no_pending_responses()


@pytest.mark.asyncio
async def test_move_of_vanished_blob(s3) -> None:
    client, stubber = s3
    stubber.add_client_error("copy_object", service_error_code="NoSuchKey", http_status_code=404)
    with pytest.raises(BlobNotFoundError):
        await BlobStore(client).move("img")


def test_public_url() -> None:
    store = BlobStore(client=None, public_base_url="https://cdn.example.com/")
    assert store.public_url(VALIDATED, "img") == "https://cdn.example.com/validated/img"
    assert BlobStore(client=None).public_url(UNVALIDATED, "img") == "unvalidated/img"
