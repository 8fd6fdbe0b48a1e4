"""Encrypted persistence of document bytes.

Combines the envelope encryption service with the object store. Plaintext
never reaches the object store: store() encrypts under a fresh per-document
key id and uploads the ciphertext with its encryption metadata; retrieve()
downloads, verifies the stored digest and decrypts.

After every primary upload a backup copy is written under
backups/{YYYY-MM-DD}/. Backups are best-effort and retained when the
primary object is deleted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from docintake.services.encryption import (
    DecryptionError,
    EncryptedContent,
    new_key_id,
)
from docintake.services.storage import StorageError

if TYPE_CHECKING:
    from docintake.services.encryption import EncryptionService
    from docintake.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

DOCUMENTS_PREFIX = "documents"
BACKUPS_PREFIX = "backups"


@dataclass(frozen=True, slots=True)
class StoredObject:
    """Where and how a document was stored.

    Attributes:
        location: Object key of the primary ciphertext.
        key_id: Per-document encryption key id.
        content_hash: SHA-256 of the plaintext.
        size_bytes: Plaintext size.
        backup_location: Object key of the backup copy, None if the copy failed.
    """

    location: str
    key_id: str
    content_hash: str
    size_bytes: int
    backup_location: str | None = None


def document_location(owner_id: str, category_id: str, extension: str) -> str:
    """Build a unique object key for a new document."""
    suffix = f".{extension.lstrip('.')}" if extension else ""
    return f"{DOCUMENTS_PREFIX}/{owner_id}/{category_id}/{uuid.uuid4()}{suffix}.enc"


def backup_location(location: str, now: datetime | None = None) -> str:
    """Build the backup object key for a primary location."""
    now = now or datetime.now(UTC)
    return f"{BACKUPS_PREFIX}/{now:%Y-%m-%d}/{now:%Y%m%dT%H%M%S%f}_{location}"


class EncryptedStore:
    """Encrypt-then-upload store for document bytes.

    Example:
        store = EncryptedStore(encryption, object_store)
        stored = await store.store(data, owner_id="u1", category_id="vat_certificate",
                                   extension="pdf")
        data = await store.retrieve(stored.location, stored.key_id)
    """

    def __init__(
        self,
        encryption: EncryptionService,
        object_store: ObjectStoreClient,
        *,
        backups_enabled: bool = True,
    ) -> None:
        self._encryption = encryption
        self._object_store = object_store
        self._backups_enabled = backups_enabled

    async def store(
        self,
        data: bytes,
        *,
        owner_id: str,
        category_id: str,
        extension: str,
    ) -> StoredObject:
        """Encrypt and upload document bytes.

        Raises:
            EncryptionError: If encryption fails.
            StorageError: If the primary upload fails.
        """
        key_id = new_key_id()
        encrypted = await self._encryption.encrypt(data, key_id=key_id)
        location = document_location(owner_id, category_id, extension)

        await asyncio.to_thread(
            self._object_store.upload,
            location,
            encrypted.ciphertext,
            metadata=encrypted.to_metadata_dict(),
        )

        backup = await self._backup(location) if self._backups_enabled else None

        logger.info(
            "Stored encrypted document: location=%s, key_id=%s, size=%d",
            location,
            key_id,
            len(data),
        )
        return StoredObject(
            location=location,
            key_id=key_id,
            content_hash=encrypted.content_hash,
            size_bytes=len(data),
            backup_location=backup,
        )

    async def retrieve(self, location: str, key_id: str) -> bytes:
        """Download and decrypt document bytes.

        Raises:
            ObjectNotFoundError: If the object is gone.
            IntegrityError: If the stored ciphertext digest does not match.
            DecryptionError: On key id mismatch or tampered ciphertext.
        """
        ciphertext, metadata = await asyncio.to_thread(self._object_store.download, location)
        encrypted = EncryptedContent.from_metadata_dict(metadata.custom_metadata, ciphertext)
        if encrypted.key_id != key_id:
            logger.error(
                "Encryption key mismatch for %s: registry=%s, object=%s",
                location,
                key_id,
                encrypted.key_id,
            )
            raise DecryptionError(f"Encryption key id mismatch for {location}")
        return await self._encryption.decrypt(encrypted, key_id=key_id)

    async def delete(self, location: str) -> None:
        """Delete the primary ciphertext. Backups are kept.

        Raises:
            StorageError: If the delete fails.
        """
        await asyncio.to_thread(self._object_store.delete, location)
        logger.info("Deleted stored document: %s", location)

    async def _backup(self, location: str) -> str | None:
        target = backup_location(location)
        try:
            await asyncio.to_thread(self._object_store.copy, location, target)
        except StorageError as e:
            logger.warning("Backup copy of %s failed: %s", location, e.message)
            return None
        return target
