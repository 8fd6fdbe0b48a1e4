"""Envelope encryption for documents at rest.

Each document gets its own data encryption key (DEK, AES-256-GCM). The DEK is
wrapped by the key encryption key (KEK) and stored next to the ciphertext as
object metadata. The document's encryption key id is bound into the AEAD
associated data, so ciphertext moved under another key id fails to decrypt.

The KEK lives in a file under the configured key directory. When a password
is configured the KEK file is itself encrypted with a PBKDF2-derived key.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# AES-256 requires 32-byte key
DEK_SIZE_BYTES = 32
# GCM nonce should be 12 bytes per NIST recommendations
GCM_NONCE_SIZE_BYTES = 12
KEK_SALT_SIZE_BYTES = 16
PBKDF2_ITERATIONS = 600000

ALGORITHM = "aes_256_gcm"


class EncryptionError(Exception):
    """Base exception for encryption operations."""


class DecryptionError(EncryptionError):
    """Raised when ciphertext cannot be authenticated or decrypted."""


class KeyWrapError(EncryptionError):
    """Raised when key wrapping/unwrapping fails."""


def new_key_id() -> str:
    """Generate a per-document encryption key identifier."""
    return f"dek-{uuid.uuid4()}"


@dataclass(frozen=True, slots=True)
class EncryptedContent:
    """Result of document encryption.

    Attributes:
        ciphertext: Encrypted bytes (GCM tag appended).
        nonce: GCM nonce used for encryption.
        wrapped_dek: DEK encrypted with the KEK (base64).
        key_id: Per-document encryption key id, bound as associated data.
        kek_id: Identifier of the KEK that wrapped the DEK.
        content_hash: SHA-256 of the plaintext.
        encrypted_at: When the encryption was performed.
    """

    ciphertext: bytes
    nonce: bytes
    wrapped_dek: str
    key_id: str
    kek_id: str
    content_hash: str
    encrypted_at: datetime
    algorithm: str = ALGORITHM
    metadata_version: str = "1"

    def to_metadata_dict(self) -> dict[str, str]:
        """Encryption metadata stored alongside the ciphertext."""
        return {
            "version": self.metadata_version,
            "algorithm": self.algorithm,
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "wrapped-dek": self.wrapped_dek,
            "key-id": self.key_id,
            "kek-id": self.kek_id,
            "content-hash": self.content_hash,
            "encrypted-at": self.encrypted_at.isoformat(),
        }

    @classmethod
    def from_metadata_dict(cls, metadata: dict[str, Any], ciphertext: bytes) -> EncryptedContent:
        """Reconstruct from stored metadata.

        Raises:
            DecryptionError: If required metadata is missing or malformed.
        """
        try:
            return cls(
                ciphertext=ciphertext,
                nonce=base64.b64decode(metadata["nonce"]),
                wrapped_dek=metadata["wrapped-dek"],
                key_id=metadata["key-id"],
                kek_id=metadata["kek-id"],
                content_hash=metadata["content-hash"],
                encrypted_at=datetime.fromisoformat(metadata["encrypted-at"]),
                algorithm=metadata.get("algorithm", ALGORITHM),
                metadata_version=metadata.get("version", "1"),
            )
        except (KeyError, ValueError) as e:
            raise DecryptionError(f"Invalid encryption metadata: {e}") from e


@dataclass
class EncryptionServiceConfig:
    """Configuration for the encryption service.

    Attributes:
        kek_storage_path: Directory holding kek.enc and kek.json.
        kek_password: Password protecting the KEK file at rest.
    """

    kek_storage_path: str = "/keys/documents"
    kek_password: bytes | None = None


class EncryptionService:
    """Envelope encryption with a file-backed KEK.

    Example:
        service = EncryptionService(EncryptionServiceConfig(kek_storage_path="/tmp/keys"))
        await service.initialize()
        encrypted = await service.encrypt(data, key_id=new_key_id())
        plaintext = await service.decrypt(encrypted, key_id=encrypted.key_id)
    """

    def __init__(self, config: EncryptionServiceConfig | None = None) -> None:
        self._config = config or EncryptionServiceConfig()
        self._kek: bytes | None = None
        self._kek_id: str | None = None

    @property
    def kek_id(self) -> str | None:
        """Identifier of the loaded KEK."""
        return self._kek_id

    async def initialize(self) -> None:
        """Load the KEK, generating it on first start."""
        kek_dir = Path(self._config.kek_storage_path)
        kek_file = kek_dir / "kek.enc"
        kek_meta_file = kek_dir / "kek.json"

        if kek_file.exists() and kek_meta_file.exists():
            self._load_kek(kek_file, kek_meta_file)
        else:
            self._generate_kek(kek_dir, kek_file, kek_meta_file)

    async def encrypt(self, plaintext: bytes, *, key_id: str) -> EncryptedContent:
        """Encrypt a document under a fresh DEK.

        Raises:
            EncryptionError: If encryption fails.
        """
        kek, kek_id = self._require_kek()
        try:
            dek = AESGCM.generate_key(bit_length=DEK_SIZE_BYTES * 8)
            nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
            ciphertext = AESGCM(dek).encrypt(nonce, plaintext, key_id.encode())
            wrapped = self._wrap_dek(kek, dek)
        except KeyWrapError:
            raise
        except Exception as e:
            logger.error("Encryption failed: %s", e)
            raise EncryptionError(f"Content encryption failed: {e}") from e

        return EncryptedContent(
            ciphertext=ciphertext,
            nonce=nonce,
            wrapped_dek=wrapped,
            key_id=key_id,
            kek_id=kek_id,
            content_hash=hashlib.sha256(plaintext).hexdigest(),
            encrypted_at=datetime.now(UTC),
        )

    async def decrypt(self, encrypted: EncryptedContent, *, key_id: str) -> bytes:
        """Decrypt and verify a document.

        Args:
            encrypted: Ciphertext and its metadata.
            key_id: Key id recorded for the document in the registry.

        Raises:
            DecryptionError: On key id mismatch, tampering or hash mismatch.
            KeyWrapError: If the DEK cannot be unwrapped.
        """
        if encrypted.key_id != key_id:
            raise DecryptionError(
                f"Encryption key id mismatch: expected {key_id}, got {encrypted.key_id}"
            )

        kek, _ = self._require_kek()
        dek = self._unwrap_dek(kek, encrypted.wrapped_dek)

        try:
            plaintext = AESGCM(dek).decrypt(encrypted.nonce, encrypted.ciphertext, key_id.encode())
        except InvalidTag as e:
            raise DecryptionError("Ciphertext authentication failed") from e

        computed_hash = hashlib.sha256(plaintext).hexdigest()
        if computed_hash != encrypted.content_hash:
            raise DecryptionError(
                f"Content hash mismatch: expected {encrypted.content_hash[:16]}..., "
                f"got {computed_hash[:16]}..."
            )
        return plaintext

    def _require_kek(self) -> tuple[bytes, str]:
        if self._kek is None or self._kek_id is None:
            msg = "Encryption service not initialized. Call initialize() first."
            raise EncryptionError(msg)
        return self._kek, self._kek_id

    def _load_kek(self, kek_file: Path, kek_meta_file: Path) -> None:
        try:
            meta = json.loads(kek_meta_file.read_text())
            stored = kek_file.read_bytes()
            self._kek = self._decrypt_kek_at_rest(stored) if self._config.kek_password else stored
            self._kek_id = meta["kek_id"]
        except Exception as e:
            logger.error("Failed to load KEK: %s", e)
            raise EncryptionError(f"Failed to load KEK: {e}") from e

        logger.info("Loaded existing KEK: %s", self._kek_id)

    def _generate_kek(self, kek_dir: Path, kek_file: Path, kek_meta_file: Path) -> None:
        try:
            kek_dir.mkdir(parents=True, exist_ok=True)
            kek = AESGCM.generate_key(bit_length=DEK_SIZE_BYTES * 8)
            kek_id = f"kek-{uuid.uuid4()}"

            meta = {
                "kek_id": kek_id,
                "created_at": datetime.now(UTC).isoformat(),
                "algorithm": "AES-256-GCM-KEYWRAP",
                "password_protected": bool(self._config.kek_password),
            }
            kek_meta_file.write_text(json.dumps(meta, indent=2))

            stored = self._encrypt_kek_at_rest(kek) if self._config.kek_password else kek
            kek_file.write_bytes(stored)
            kek_file.chmod(0o600)
        except Exception as e:
            logger.error("Failed to generate KEK: %s", e)
            raise EncryptionError(f"Failed to generate KEK: {e}") from e

        self._kek = kek
        self._kek_id = kek_id
        logger.info("Generated new KEK: %s (saved to %s)", kek_id, kek_file)

    def _wrap_dek(self, kek: bytes, dek: bytes) -> str:
        try:
            nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
            wrapped = AESGCM(kek).encrypt(nonce, dek, None)
        except Exception as e:
            raise KeyWrapError(f"Failed to wrap DEK: {e}") from e
        return base64.b64encode(nonce + wrapped).decode("ascii")

    def _unwrap_dek(self, kek: bytes, wrapped_dek: str) -> bytes:
        try:
            raw = base64.b64decode(wrapped_dek)
            return AESGCM(kek).decrypt(raw[:GCM_NONCE_SIZE_BYTES], raw[GCM_NONCE_SIZE_BYTES:], None)
        except Exception as e:
            raise KeyWrapError(f"Failed to unwrap DEK: {e}") from e

    def _derive_at_rest_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._config.kek_password or b"")

    def _encrypt_kek_at_rest(self, kek: bytes) -> bytes:
        # Format: salt (16) + nonce (12) + ciphertext
        salt = os.urandom(KEK_SALT_SIZE_BYTES)
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        encrypted = AESGCM(self._derive_at_rest_key(salt)).encrypt(nonce, kek, None)
        return salt + nonce + encrypted

    def _decrypt_kek_at_rest(self, stored: bytes) -> bytes:
        salt = stored[:KEK_SALT_SIZE_BYTES]
        nonce = stored[KEK_SALT_SIZE_BYTES : KEK_SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES]
        ciphertext = stored[KEK_SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES :]
        return AESGCM(self._derive_at_rest_key(salt)).decrypt(nonce, ciphertext, None)


async def create_encryption_service(
    kek_storage_path: str,
    kek_password: bytes | None = None,
) -> EncryptionService:
    """Create and initialize an encryption service."""
    service = EncryptionService(
        EncryptionServiceConfig(kek_storage_path=kek_storage_path, kek_password=kek_password)
    )
    await service.initialize()
    return service
