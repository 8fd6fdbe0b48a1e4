"""S3-compatible object store client for encrypted document blobs.

The client is bound to a single bucket. Every upload records the SHA-256 of
the stored bytes in object metadata and downloads verify it, so corruption in
the object store is detected before decryption is attempted. Encryption is
the caller's job (see docintake.services.encrypted_store).

The methods are synchronous (boto3); async callers run them in a worker
thread with asyncio.to_thread.

Example:
    client = ObjectStoreClient.from_settings(settings.s3)
    client.ensure_bucket()
    result = client.upload("documents/u1/doc.pdf.enc", ciphertext)
    data, metadata = client.download("documents/u1/doc.pdf.enc")
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from docintake.core.config import S3Settings

logger = logging.getLogger(__name__)

DIGEST_METADATA_KEY = "sha256-digest"


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload operation.

    Attributes:
        key: The object key in the bucket.
        sha256_digest: SHA-256 hex digest of the uploaded bytes.
        size_bytes: Size of the uploaded bytes.
        etag: S3 ETag.
    """

    key: str
    sha256_digest: str
    size_bytes: int
    etag: str


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata of a stored object."""

    key: str
    size_bytes: int
    content_type: str
    sha256_digest: str | None
    etag: str
    last_modified: str
    custom_metadata: dict[str, str] = field(default_factory=dict)


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when the bucket does not exist."""


class IntegrityError(StorageError):
    """Raised when stored bytes do not match their recorded digest."""


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def sha256_hex(data: bytes) -> str:
    """Lowercase SHA-256 hex digest."""
    return hashlib.sha256(data).hexdigest()


class ObjectStoreClient:
    """S3-compatible storage client bound to one bucket."""

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (None for AWS).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            bucket: Bucket holding the documents.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._endpoint_url = endpoint_url
        self._region = region
        self.bucket = bucket

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        """Create client from S3Settings configuration."""
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            bucket=settings.bucket,
            region=settings.region,
        )

    def ensure_bucket(self) -> bool:
        """Create the bucket if it is missing.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the check or creation fails.
        """
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return False
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}",
                    bucket=self.bucket,
                    operation="head_bucket",
                ) from e

        try:
            # us-east-1 rejects an explicit LocationConstraint
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=self.bucket)
            else:
                self._client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise StorageError(
                f"Failed to create bucket: {e}",
                bucket=self.bucket,
                operation="create_bucket",
            ) from e

        logger.info("Created bucket: %s", self.bucket)
        return True

    def upload(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """Upload bytes and record their digest in object metadata.

        Raises:
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If the upload fails.
        """
        digest = sha256_hex(data)
        upload_metadata = {**(metadata or {}), DIGEST_METADATA_KEY: digest}

        try:
            response = self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=upload_metadata,
            )
        except ClientError as e:
            if _error_code(e) == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {self.bucket}",
                    bucket=self.bucket,
                    key=key,
                    operation="upload",
                ) from e
            raise StorageError(
                f"Upload failed: {e}", bucket=self.bucket, key=key, operation="upload"
            ) from e

        logger.debug("Uploaded %s/%s (%d bytes, sha256=%s...)", self.bucket, key, len(data), digest[:16])
        return UploadResult(
            key=key,
            sha256_digest=digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
        )

    def download(self, key: str, *, verify_integrity: bool = True) -> tuple[bytes, ObjectMetadata]:
        """Download bytes and verify them against the recorded digest.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            IntegrityError: If digest verification fails.
            StorageError: If the download fails.
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            code = _error_code(e)
            if code in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(
                    f"Object does not exist: {self.bucket}/{key}",
                    bucket=self.bucket,
                    key=key,
                    operation="download",
                ) from e
            if code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {self.bucket}",
                    bucket=self.bucket,
                    key=key,
                    operation="download",
                ) from e
            raise StorageError(
                f"Download failed: {e}", bucket=self.bucket, key=key, operation="download"
            ) from e

        custom = response.get("Metadata", {})
        stored_digest = custom.get(DIGEST_METADATA_KEY)
        last_modified = response.get("LastModified")
        metadata = ObjectMetadata(
            key=key,
            size_bytes=len(data),
            content_type=response.get("ContentType", "application/octet-stream"),
            sha256_digest=stored_digest,
            etag=response.get("ETag", ""),
            last_modified=last_modified.isoformat() if last_modified else "",
            custom_metadata=custom,
        )

        if verify_integrity and stored_digest:
            computed = sha256_hex(data)
            if computed != stored_digest:
                raise IntegrityError(
                    f"Content integrity check failed: expected {stored_digest[:16]}..., "
                    f"got {computed[:16]}...",
                    bucket=self.bucket,
                    key=key,
                    operation="download",
                )

        return data, metadata

    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing object is not an error.

        Raises:
            StorageError: If the delete fails.
        """
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(
                f"Delete failed: {e}", bucket=self.bucket, key=key, operation="delete"
            ) from e
        logger.debug("Deleted %s/%s", self.bucket, key)

    def copy(self, source_key: str, dest_key: str) -> None:
        """Copy an object within the bucket, metadata included.

        Raises:
            ObjectNotFoundError: If the source object does not exist.
            StorageError: If the copy fails.
        """
        try:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                MetadataDirective="COPY",
            )
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(
                    f"Source object does not exist: {self.bucket}/{source_key}",
                    bucket=self.bucket,
                    key=source_key,
                    operation="copy",
                ) from e
            raise StorageError(
                f"Copy failed: {e}", bucket=self.bucket, key=dest_key, operation="copy"
            ) from e
        logger.debug("Copied %s to %s", source_key, dest_key)

    def health_check(self) -> dict[str, Any]:
        """Check that the bucket is reachable.

        Raises:
            StorageError: If the bucket cannot be reached.
        """
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            raise StorageError(
                f"Health check failed: {e}", bucket=self.bucket, operation="health_check"
            ) from e
        return {"healthy": True, "endpoint": self._endpoint_url, "bucket": self.bucket}
