"""S3-compatible blob storage for POSTWATCH images.

Images live in one of two buckets keyed by image id:
- ``unvalidated``: freshly uploaded, not yet approved by safety analysis
- ``validated``: approved images (moved here with copy-then-delete)

boto3 is synchronous; every call is pushed to a worker thread with
`asyncio.to_thread` so the event loop keeps serving other messages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError

from core.config.config import S3Cfg
from core.errors import BlobNotFoundError

log = logging.getLogger("postwatch.packages.storage")

UNVALIDATED = "unvalidated"
VALIDATED = "validated"

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_missing(err: ClientError) -> bool:
    return str(err.response.get("Error", {}).get("Code")) in _MISSING_CODES


def public_url(container: str, key: str, base_url: Optional[str] = None) -> str:
    """Link stored on posts: ``{base_url}/{container}/{key}`` or ``{container}/{key}``."""
    path = f"{container}/{key}"
    return f"{base_url.rstrip('/')}/{path}" if base_url else path


class BlobStore:
    """Thin client around boto3 S3 for the two image containers."""

    def __init__(
        self,
        client,
        unvalidated_bucket: str = UNVALIDATED,
        validated_bucket: str = VALIDATED,
        public_base_url: Optional[str] = None,
    ) -> None:
        """Bind the store to an S3 client and bucket names.

        Args:
            client: A boto3 S3 client.
            unvalidated_bucket: Bucket holding images awaiting validation.
            validated_bucket: Bucket holding approved images.
            public_base_url: Base for public links; when unset, links are container-relative.
        """
        self._client = client
        self._buckets = {UNVALIDATED: unvalidated_bucket, VALIDATED: validated_bucket}
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @classmethod
    def from_config(cls, cfg: S3Cfg, public_base_url: Optional[str] = None) -> "BlobStore":
        """Build the boto3 client from settings."""
        client = boto3.client(
            "s3",
            endpoint_url=cfg.endpoint,
            aws_access_key_id=cfg.access_key,
            aws_secret_access_key=cfg.secret_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name=cfg.region or "us-east-1",
        )
        return cls(client, cfg.unvalidated_bucket, cfg.validated_bucket, public_base_url)

    def bucket(self, container: str) -> str:
        return self._buckets[container]

    async def exists(self, container: str, key: str) -> bool:
        """Return True if `key` is present in `container`."""
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket(container), Key=key)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise
        return True

    async def download(self, container: str, key: str) -> bytes:
        """Read the whole object.

        Raises:
            BlobNotFoundError: if the object does not exist.
        """
        try:
            resp = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket(container), Key=key)
        except ClientError as e:
            if _is_missing(e):
                raise BlobNotFoundError(key, (container,)) from e
            raise
        return await asyncio.to_thread(resp["Body"].read)

    async def upload(self, container: str, key: str, data: bytes, content_type: str = "image/png") -> str:
        """Upload bytes, overwriting any existing object.

        Returns:
            A locator string in the form "{container}/{key}".
        """
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket(container),
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return f"{container}/{key}"

    async def delete(self, container: str, key: str) -> None:
        """Delete an object; deleting a missing object is not an error."""
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket(container), Key=key)

    async def locate(self, key: str) -> str:
        """Find which container currently holds `key` (unvalidated first).

        Raises:
            BlobNotFoundError: if neither container has it.
        """
        for container in (UNVALIDATED, VALIDATED):
            if await self.exists(container, key):
                return container
        raise BlobNotFoundError(key, (UNVALIDATED, VALIDATED))

    async def fetch(self, key: str) -> Tuple[str, bytes]:
        """Locate and download `key`; returns (container, bytes)."""
        container = await self.locate(key)
        return container, await self.download(container, key)

    async def move(self, key: str, src: str = UNVALIDATED, dst: str = VALIDATED) -> None:
        """Copy `key` server-side from `src` to `dst`, then delete it from `src`.

        The copy takes whatever `src` holds at that moment, so a concurrent
        overwrite (e.g. a resize) is carried over. A crash in between leaves a
        copy, never a loss.

        Raises:
            BlobNotFoundError: `src` no longer has the object.
        """
        try:
            await asyncio.to_thread(
                self._client.copy_object,
                Bucket=self.bucket(dst),
                Key=key,
                CopySource={"Bucket": self.bucket(src), "Key": key},
            )
        except ClientError as e:
            if _is_missing(e):
                raise BlobNotFoundError(key, (src,)) from e
            raise
        await self.delete(src, key)
        log.info("moved blob %s from %s to %s", key, src, dst)

    def public_url(self, container: str, key: str) -> str:
        return public_url(container, key, self.public_base_url)

