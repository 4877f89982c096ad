"""
Master key storage.

The master key lives in the OS keyring when one is usable (macOS Keychain,
Windows Credential Vault, Secret Service on Linux) and otherwise in a
machine-bound encrypted file in the config directory.

## Fallback File Format

- IV: 16 bytes (random, for AES-GCM)
- Tag: 16 bytes (authentication tag)
- Ciphertext: 32 bytes (encrypted master key)

The file key is scrypt(home + platform + arch) with a fixed salt, so the file
can only be opened on the machine (and account) that wrote it.
"""

import asyncio
import base64
import binascii
import hashlib
import logging
import os
import platform
import sys
from pathlib import Path
from typing import Callable, Optional

import keyring
from keyring.backend import KeyringBackend
from keyring.backends import fail, null
from keyring.errors import PasswordDeleteError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..config import ClientConfig
from ..crypto import EncryptionService
from ..types import (
    DecryptionFailedError,
    FALLBACK_KEY_FILE_NAME,
    FALLBACK_KEY_SALT_SEED,
    IV_SIZE,
    KEY_SIZE,
    KEYRING_MASTER_KEY_ACCOUNT,
    KEYRING_SERVICE_NAME,
    SCRYPT_N,
    SCRYPT_P,
    SCRYPT_R,
    SecretStoreError,
    TAG_SIZE,
)
from .files import ensure_private_directory, remove_file, write_private_file
from .secret_store import SecretStore

logger = logging.getLogger("diabetesm.keyring")


def machine_identity() -> str:
    """Machine-specific material for the fallback key."""
    return f"{Path.home()}-{sys.platform}-{platform.machine()}"


def derive_machine_key(identity: Optional[str] = None) -> bytes:
    """Derive the 32-byte fallback file key with scrypt."""
    salt = hashlib.sha256(FALLBACK_KEY_SALT_SEED).digest()
    kdf = Scrypt(salt=salt, length=32, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive((identity or machine_identity()).encode("utf-8"))


class NativeSecretStore(SecretStore):
    """SecretStore backed by the OS keyring via the keyring library."""

    def __init__(
        self,
        service: str = KEYRING_SERVICE_NAME,
        account: str = KEYRING_MASTER_KEY_ACCOUNT,
        backend: Optional[KeyringBackend] = None,
    ) -> None:
        self._service = service
        self._account = account
        self._backend = backend

    @property
    def location(self) -> str:
        return "keyring"

    def _keyring(self) -> KeyringBackend:
        return self._backend if self._backend is not None else keyring.get_keyring()

    async def is_available(self) -> bool:
        """A keyring is usable unless only the fail/null backends are installed."""
        try:
            backend = self._keyring()
        except Exception as e:
            logger.debug("Keyring backend could not be loaded: %s", e)
            return False
        return not isinstance(backend, (fail.Keyring, null.Keyring))

    async def get(self) -> Optional[bytes]:
        try:
            stored = self._keyring().get_password(self._service, self._account)
        except Exception as e:
            raise SecretStoreError(f"Keyring read failed: {type(e).__name__}") from e
        if not stored:
            return None
        try:
            master_key = base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SecretStoreError("Keyring entry is not a valid master key") from e
        if len(master_key) != KEY_SIZE:
            raise SecretStoreError(f"Keyring entry has {len(master_key)} bytes, expected {KEY_SIZE}")
        return master_key

    async def set(self, master_key: bytes) -> None:
        encoded = base64.b64encode(master_key).decode("ascii")
        try:
            self._keyring().set_password(self._service, self._account, encoded)
        except Exception as e:
            raise SecretStoreError(f"Keyring write failed: {type(e).__name__}") from e

    async def delete(self) -> bool:
        try:
            self._keyring().delete_password(self._service, self._account)
            return True
        except PasswordDeleteError:
            return False
        except Exception as e:
            raise SecretStoreError(f"Keyring delete failed: {type(e).__name__}") from e


class FileSecretStore(SecretStore):
    """
    Machine-bound encrypted key file (fallback when no keyring is usable).

    A file that fails to decrypt is corrupt or from another machine. It is
    reported as DecryptionFailedError and never overwritten.
    """

    def __init__(
        self,
        directory: Path,
        file_name: str = FALLBACK_KEY_FILE_NAME,
        key_deriver: Callable[[], bytes] = derive_machine_key,
    ) -> None:
        self._directory = Path(directory)
        self._path = self._directory / file_name
        self._key_deriver = key_deriver
        self._file_key: Optional[bytes] = None

    @property
    def location(self) -> str:
        return "file"

    @property
    def path(self) -> Path:
        return self._path

    async def is_available(self) -> bool:
        return True

    async def get(self) -> Optional[bytes]:
        if not self._path.exists():
            return None

        file_data = self._path.read_bytes()
        if len(file_data) < IV_SIZE + TAG_SIZE:
            raise DecryptionFailedError("Failed to decrypt master key from file")

        iv = file_data[:IV_SIZE]
        tag = file_data[IV_SIZE : IV_SIZE + TAG_SIZE]
        ciphertext = file_data[IV_SIZE + TAG_SIZE :]

        try:
            return AESGCM(self._machine_key()).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionFailedError("Failed to decrypt master key from file") from e

    async def set(self, master_key: bytes) -> None:
        ensure_private_directory(self._directory)
        iv = os.urandom(IV_SIZE)
        sealed = AESGCM(self._machine_key()).encrypt(iv, master_key, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        write_private_file(self._path, iv + tag + ciphertext)

    async def delete(self) -> bool:
        return remove_file(self._path)

    def _machine_key(self) -> bytes:
        if self._file_key is None:
            self._file_key = self._key_deriver()
        return self._file_key


class KeyringManager:
    """
    Sources the master key from the native keyring, falling back to a file.

    Example usage:
        ```python
        manager = create_keyring_manager(ClientConfig())
        master_key = await manager.get_master_key()
        ```
    """

    def __init__(
        self,
        native: Optional[SecretStore],
        fallback: SecretStore,
        encryption: Optional[EncryptionService] = None,
    ) -> None:
        """
        Args:
            native: Preferred store, or None when the platform has none.
            fallback: Store used when the native one is absent or failing.
            encryption: Used to generate new master keys.
        """
        self._native = native
        self._fallback = fallback
        self._encryption = encryption or EncryptionService()
        self._native_available: Optional[bool] = None
        self._master_key: Optional[bytes] = None
        self._lock = asyncio.Lock()

    async def is_available(self) -> bool:
        """Whether the native keyring path is active (probed once)."""
        if self._native_available is None:
            self._native_available = self._native is not None and await self._native.is_available()
            if not self._native_available:
                logger.info("Native keyring not available, using file-based fallback")
        return self._native_available

    async def storage_location(self) -> str:
        """Returns "keyring" or "file"."""
        if await self.is_available():
            return self._native.location
        return self._fallback.location

    async def get_master_key(self) -> bytes:
        """
        Return the master key, generating and storing one on first use.

        The key is resolved once and reused for the life of this manager. If
        the keyring fails, the file store is used until the key is deleted.

        Raises:
            DecryptionFailedError: If the fallback key file cannot be decrypted.
        """
        async with self._lock:
            if self._master_key is None:
                self._master_key = await self._resolve_master_key()
            return self._master_key

    async def _resolve_master_key(self) -> bytes:
        if await self.is_available():
            try:
                stored = await self._native.get()
                if stored is not None:
                    return stored

                new_key = self._encryption.generate_master_key()
                await self._native.set(new_key)
                logger.info("Generated new master key in system keyring")
                return new_key
            except SecretStoreError as e:
                logger.warning("Keyring error, falling back to file: %s", e)
                self._native_available = False

        return await self._get_from_fallback()

    async def delete_master_key(self) -> bool:
        """Best-effort removal from both stores. Returns whether anything was deleted."""
        self._master_key = None
        deleted = False

        if await self.is_available():
            try:
                deleted = await self._native.delete()
            except SecretStoreError as e:
                logger.warning("Could not delete master key from keyring: %s", e)

        if await self._fallback.delete():
            deleted = True

        return deleted

    async def _get_from_fallback(self) -> bytes:
        stored = await self._fallback.get()
        if stored is not None:
            return stored

        new_key = self._encryption.generate_master_key()
        await self._fallback.set(new_key)
        logger.info("Generated new master key in %s store", self._fallback.location)
        return new_key


def create_keyring_manager(
    config: ClientConfig,
    encryption: Optional[EncryptionService] = None,
    native: Optional[SecretStore] = None,
) -> KeyringManager:
    """Build the KeyringManager for a configuration (native keyring + key file)."""
    return KeyringManager(
        native=native if native is not None else NativeSecretStore(),
        fallback=FileSecretStore(config.config_dir),
        encryption=encryption,
    )
