"""Blob storage for message attachments.

The store is an opaque collaborator: ``put`` returns a stable storage key,
``get``/``delete`` take that key. S3 calls are bounded by connect/read
timeouts; timing out raises ExternalTimeoutError.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import ClientError, ConnectTimeoutError, ReadTimeoutError

from chatline.core.config import settings
from chatline.core.errors import ExternalTimeoutError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobMetadata:
    owner_id: UUID
    filename: str
    content_type: str


class BlobStore(Protocol):
    def put(self, data: bytes, metadata: BlobMetadata) -> str: ...

    def get(self, storage_key: str) -> bytes: ...

    def delete(self, storage_key: str) -> None: ...


def make_storage_key(metadata: BlobMetadata) -> str:
    ext = metadata.filename.rsplit(".", 1)[-1].lower() if "." in metadata.filename else "bin"
    return f"attachments/{metadata.owner_id}/{uuid.uuid4()}.{ext}"


# =============================================================================
# S3
# =============================================================================


def get_s3_client(timeout: float | None = None) -> BaseClient:
    """S3 client (supports S3-compatible endpoints) with bounded calls."""
    timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    endpoint_url = settings.S3_ENDPOINT_URL.rstrip("/") or None
    return boto3.client(
        "s3",
        region_name=settings.S3_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=endpoint_url,
        config=Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    )


class S3BlobStore:
    def __init__(self, client: BaseClient | None = None, bucket: str | None = None):
        self.client = client or get_s3_client()
        self.bucket = bucket or settings.S3_BUCKET

    def put(self, data: bytes, metadata: BlobMetadata) -> str:
        storage_key = make_storage_key(metadata)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=storage_key,
                Body=data,
                ContentType=metadata.content_type,
                Metadata={"owner-id": str(metadata.owner_id)},
            )
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise ExternalTimeoutError("Blob store upload timed out") from exc
        return storage_key

    def get(self, storage_key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=storage_key)
            return response["Body"].read()
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise ExternalTimeoutError("Blob store download timed out") from exc
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                raise NotFoundError(f"Blob {storage_key} not found") from exc
            raise

    def delete(self, storage_key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=storage_key)
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise ExternalTimeoutError("Blob store delete timed out") from exc


# =============================================================================
# In-memory (local development and tests)
# =============================================================================


class InMemoryBlobStore:
    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, metadata: BlobMetadata) -> str:
        storage_key = make_storage_key(metadata)
        with self._lock:
            self._blobs[storage_key] = bytes(data)
        return storage_key

    def get(self, storage_key: str) -> bytes:
        with self._lock:
            if storage_key not in self._blobs:
                raise NotFoundError(f"Blob {storage_key} not found")
            return self._blobs[storage_key]

    def delete(self, storage_key: str) -> None:
        with self._lock:
            self._blobs.pop(storage_key, None)

    def __contains__(self, storage_key: str) -> bool:
        return storage_key in self._blobs


def build_blob_store() -> BlobStore:
    """S3 when a bucket endpoint/credentials are configured, memory in dev."""
    if settings.ENV == "dev" and not settings.AWS_ACCESS_KEY_ID:
        logger.info("Using in-memory blob store (dev, no S3 credentials)")
        return InMemoryBlobStore()
    return S3BlobStore()
