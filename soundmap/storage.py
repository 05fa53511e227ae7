"""Soundmap transcode pipeline - Object store client.

S3-compatible client for the single sounds bucket. Path-style addressing is
forced so self-hosted backends (Garage, MinIO) work as well as AWS.

Errors:
- ObjectNotFoundError: key absent (get only)
- StorageUnavailableError: connectivity, auth or any other backend failure
"""

from __future__ import annotations

import logging
from typing import BinaryIO

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from soundmap import config
from soundmap.errors import ObjectNotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

# botocore error codes meaning "key does not exist"
_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def create_s3_client(
    endpoint_url: str = config.S3_ENDPOINT,
    region: str = config.S3_REGION,
    access_key: str = config.S3_ACCESS_KEY,
    secret_key: str = config.S3_SECRET_KEY,
) -> BaseClient:
    """Create a boto3 S3 client with path-style addressing."""
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        region_name=region,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        config=Config(
            s3={"addressing_style": "path"},
            retries={"max_attempts": 3, "mode": "standard"},
            connect_timeout=10,
            read_timeout=60,
        ),
    )


class ObjectStore:
    """Fetch, publish and delete blobs in one bucket.

    The underlying boto3 client is thread-safe; a single instance is shared by
    all worker slots.
    """

    def __init__(
        self,
        client: BaseClient,
        bucket: str = config.S3_BUCKET,
        public_endpoint: str = config.PUBLIC_S3_ENDPOINT,
    ):
        self._client = client
        self.bucket = bucket
        self.public_endpoint = public_endpoint.rstrip("/")

    @classmethod
    def from_config(cls) -> ObjectStore:
        return cls(create_s3_client())

    def public_url(self, key: str) -> str:
        """URL the uploaded object is served from (path-style)."""
        return f"{self.public_endpoint}/{self.bucket}/{key}"

    def get(self, key: str) -> _GuardedBody:
        """Return a readable byte stream for ``key`` (use as a context manager).

        Raises:
            ObjectNotFoundError: If the key does not exist.
            StorageUnavailableError: On any other backend failure.
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise _translate_client_error("get", key, e) from e
        except BotoCoreError as e:
            raise StorageUnavailableError("get", key, str(e)) from e

        body = response.get("Body")
        if body is None:
            raise StorageUnavailableError("get", key, "empty body")
        return _GuardedBody(key, body)

    def put(self, key: str, data: BinaryIO | bytes, content_type: str) -> str:
        """Publish ``data`` under ``key`` and return its public URL.

        Raises:
            StorageUnavailableError: On any backend failure.
        """
        extra_args = {"ContentType": content_type, "ACL": "public-read"}
        try:
            if isinstance(data, bytes):
                self._client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra_args)
            else:
                # Multipart for large bodies, same as the managed uploader
                self._client.upload_fileobj(
                    data,
                    self.bucket,
                    key,
                    ExtraArgs=extra_args,
                    Config=TransferConfig(use_threads=False),
                )
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError("put", key, str(e)) from e
        return self.public_url(key)

    def delete(self, key: str) -> None:
        """Delete ``key``.

        Raises:
            StorageUnavailableError: On any backend failure.
        """
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError("delete", key, str(e)) from e


def _translate_client_error(operation: str, key: str, error: ClientError) -> Exception:
    code = str(error.response.get("Error", {}).get("Code", ""))
    if code in _NOT_FOUND_CODES:
        return ObjectNotFoundError(key)
    return StorageUnavailableError(operation, key, code or str(error))


class _GuardedBody:
    """Streaming body whose read errors surface as StorageUnavailableError."""

    def __init__(self, key: str, body):
        self._key = key
        self._body = body

    def read(self, amt: int | None = None) -> bytes:
        try:
            return self._body.read(amt)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError("get", self._key, str(e)) from e

    def close(self) -> None:
        self._body.close()

    def __enter__(self) -> _GuardedBody:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
