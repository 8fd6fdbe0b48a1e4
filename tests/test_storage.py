"""Tests for object storage integration.

Tests cover:
- Bucket creation
- Upload and download with integrity verification
- Error handling (not found, missing bucket, integrity failures)
- Copy, delete and health checks

Uses moto for S3 mocking to enable fast unit tests without Docker.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from docintake.services.storage import (
    DIGEST_METADATA_KEY,
    BucketNotFoundError,
    IntegrityError,
    ObjectNotFoundError,
    StorageError,
    sha256_hex,
)


def client_error(code: str, operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestEnsureBucket:
    """Tests for bucket management."""

    def test_existing_bucket(self, object_store):
        """An existing bucket is not recreated."""
        assert object_store.ensure_bucket() is False

    def test_creates_missing_bucket(self, object_store):
        """A missing bucket is created."""
        object_store.bucket = "docintake-fresh"
        assert object_store.ensure_bucket() is True
        assert object_store.health_check()["bucket"] == "docintake-fresh"

    def test_head_failure(self, object_store):
        """Errors other than not found are surfaced."""
        object_store._client = MagicMock()
        object_store._client.head_bucket.side_effect = client_error("403", "HeadBucket")
        with pytest.raises(StorageError) as exc_info:
            object_store.ensure_bucket()
        assert exc_info.value.operation == "head_bucket"


class TestUploadDownload:
    """Tests for uploads and verified downloads."""

    def test_upload_records_digest(self, object_store):
        """The stored metadata carries the SHA-256 of the bytes."""
        result = object_store.upload("documents/a.enc", b"ciphertext", metadata={"key-id": "k1"})

        assert result.sha256_digest == sha256_hex(b"ciphertext")
        assert result.size_bytes == len(b"ciphertext")
        _, metadata = object_store.download("documents/a.enc")
        assert metadata.sha256_digest == result.sha256_digest
        assert metadata.custom_metadata["key-id"] == "k1"

    def test_download(self, object_store):
        """Downloaded bytes match and metadata is returned."""
        object_store.upload("documents/a.enc", b"ciphertext", metadata={"key-id": "k1"})

        data, metadata = object_store.download("documents/a.enc")

        assert data == b"ciphertext"
        assert metadata.size_bytes == len(b"ciphertext")
        assert metadata.custom_metadata["key-id"] == "k1"

    def test_download_missing(self, object_store):
        """A missing key raises ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError) as exc_info:
            object_store.download("documents/missing.enc")
        assert exc_info.value.key == "documents/missing.enc"

    def test_digest_mismatch(self, object_store):
        """Bytes that do not match the recorded digest are refused."""
        object_store._client.put_object(
            Bucket=object_store.bucket,
            Key="documents/bad.enc",
            Body=b"tampered",
            Metadata={DIGEST_METADATA_KEY: sha256_hex(b"original")},
        )
        with pytest.raises(IntegrityError):
            object_store.download("documents/bad.enc")

    def test_digest_check_can_be_skipped(self, object_store):
        """verify_integrity=False returns the bytes as stored."""
        object_store._client.put_object(
            Bucket=object_store.bucket,
            Key="documents/bad.enc",
            Body=b"tampered",
            Metadata={DIGEST_METADATA_KEY: sha256_hex(b"original")},
        )
        data, _ = object_store.download("documents/bad.enc", verify_integrity=False)
        assert data == b"tampered"

    def test_upload_missing_bucket(self, object_store):
        """Uploading into a missing bucket raises BucketNotFoundError."""
        object_store.bucket = "docintake-missing"
        with pytest.raises(BucketNotFoundError):
            object_store.upload("documents/a.enc", b"x")

    def test_upload_failure(self, object_store):
        """Other client errors become StorageError."""
        object_store._client = MagicMock()
        object_store._client.put_object.side_effect = client_error("InternalError")
        with pytest.raises(StorageError, match="Upload failed"):
            object_store.upload("documents/a.enc", b"x")


class TestObjectOperations:
    """Tests for delete, copy and health checks."""

    def test_delete(self, object_store):
        """Deleted objects no longer exist."""
        object_store.upload("documents/a.enc", b"x")
        object_store.delete("documents/a.enc")
        with pytest.raises(ObjectNotFoundError):
            object_store.download("documents/a.enc")

    def test_delete_missing_is_noop(self, object_store):
        """Deleting a missing object does not raise."""
        object_store.delete("documents/never-existed.enc")

    def test_copy_keeps_metadata(self, object_store):
        """Copies carry the source metadata."""
        object_store.upload("documents/a.enc", b"x", metadata={"key-id": "k1"})

        object_store.copy("documents/a.enc", "backups/2026-01-01/a.enc")

        _, metadata = object_store.download("backups/2026-01-01/a.enc")
        assert metadata.custom_metadata["key-id"] == "k1"
        assert metadata.sha256_digest == sha256_hex(b"x")

    def test_copy_missing_source(self, object_store):
        """Copying a missing object raises ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            object_store.copy("documents/missing.enc", "backups/missing.enc")

    def test_health_check(self, object_store):
        """A reachable bucket reports healthy."""
        assert object_store.health_check()["healthy"] is True
