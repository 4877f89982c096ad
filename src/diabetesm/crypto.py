"""
AES-256-GCM encryption for local state.

Every blob uses a fresh random salt and IV. The working key is derived from
the master key with PBKDF2-HMAC-SHA512.

## Blob Format

base64 of:
- Salt: 64 bytes (random, for PBKDF2)
- IV: 16 bytes (random, for AES-GCM)
- Tag: 16 bytes (GCM authentication tag)
- Ciphertext: variable
"""

import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import SecurityConfig
from .models import EncryptedBlob, format_timestamp, utc_now
from .types import ENCRYPTION_VERSION, DecryptionFailedError


class EncryptionService:
    """
    Authenticated encryption of strings under a master key.

    Example usage:
        ```python
        service = EncryptionService()
        master_key = service.generate_master_key()

        blob = service.encrypt("secret", master_key)
        assert service.decrypt(blob, master_key) == "secret"
        ```
    """

    def __init__(self, config: Optional[SecurityConfig] = None) -> None:
        self._config = config or SecurityConfig()

    @property
    def config(self) -> SecurityConfig:
        return self._config

    def encrypt(self, plaintext: str, master_key: bytes) -> EncryptedBlob:
        """
        Encrypt text under the master key.

        Args:
            plaintext: Text to encrypt.
            master_key: 32-byte master key.

        Returns:
            EncryptedBlob with base64 salt || iv || tag || ciphertext.
        """
        salt = os.urandom(self._config.salt_size)
        iv = os.urandom(self._config.iv_size)
        key = self._derive_key(master_key, salt)

        # AESGCM appends the tag to the ciphertext; the blob stores it first
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[: -self._config.tag_size], sealed[-self._config.tag_size :]

        combined = salt + iv + tag + ciphertext
        return EncryptedBlob(
            data=base64.b64encode(combined).decode("ascii"),
            version=ENCRYPTION_VERSION,
            timestamp=format_timestamp(utc_now()),
        )

    def decrypt(self, blob: EncryptedBlob, master_key: bytes) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            DecryptionFailedError: On version mismatch, truncation, bad encoding,
                tag mismatch or a wrong key.
        """
        if blob.version != ENCRYPTION_VERSION:
            raise DecryptionFailedError(f"Unsupported encryption version: {blob.version}")

        try:
            combined = base64.b64decode(blob.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailedError("Encrypted data is not valid base64") from e

        header = self._config.header_size
        if len(combined) < header:
            raise DecryptionFailedError("Encrypted data is truncated")

        salt_end = self._config.salt_size
        iv_end = salt_end + self._config.iv_size
        salt = combined[:salt_end]
        iv = combined[salt_end:iv_end]
        tag = combined[iv_end:header]
        ciphertext = combined[header:]

        key = self._derive_key(master_key, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError, ValueError) as e:
            raise DecryptionFailedError() from e

    def generate_master_key(self) -> bytes:
        """Return a fresh random master key."""
        return os.urandom(self._config.key_size)

    def hash_for_audit(self, value: str) -> str:
        """Truncated SHA-256 hex, for correlating log entries without the value."""
        return hash_for_audit(value)

    def _derive_key(self, master_key: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=self._config.key_size,
            salt=salt,
            iterations=self._config.pbkdf2_iterations,
        )
        return kdf.derive(master_key)


def hash_for_audit(value: str) -> str:
    """First 16 hex characters of SHA-256(value)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
