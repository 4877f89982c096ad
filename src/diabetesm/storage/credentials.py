"""
Encrypted storage of login credentials and session tokens.

Both documents are JSON files of EncryptedBlob fields, written with 600
permissions into the config directory. They are encrypted independently
and expire independently.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config import ClientConfig
from ..crypto import EncryptionService
from ..models import (
    Credentials,
    EncryptedBlob,
    SessionTokens,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from ..types import CREDENTIALS_FILE_NAME, DecryptionFailedError, TOKENS_FILE_NAME
from .files import ensure_private_directory, remove_file, write_private_file
from .master_key import KeyringManager

logger = logging.getLogger("diabetesm.credentials")

# Errors that mean "the stored document is unusable"
_READ_ERRORS = (OSError, ValueError, KeyError, TypeError, DecryptionFailedError)


class CredentialsManager:
    """
    Reads and writes encrypted credentials and session tokens.

    Example usage:
        ```python
        manager = CredentialsManager(config, keyring_manager)
        await manager.store_credentials("me@example.com", "hunter2")

        creds = await manager.get_credentials()
        if creds is None:
            ...  # needs setup
        ```
    """

    def __init__(
        self,
        config: ClientConfig,
        keyring_manager: KeyringManager,
        encryption: Optional[EncryptionService] = None,
    ) -> None:
        self._config = config
        self._keyring = keyring_manager
        self._encryption = encryption or EncryptionService(config.security)
        self._master_key: Optional[bytes] = None

    @property
    def config_dir(self) -> Path:
        return Path(self._config.config_dir)

    @property
    def credentials_path(self) -> Path:
        return self.config_dir / CREDENTIALS_FILE_NAME

    @property
    def tokens_path(self) -> Path:
        return self.config_dir / TOKENS_FILE_NAME

    # MARK: - Credentials

    async def store_credentials(self, email: str, password: str) -> None:
        """Encrypt and store credentials, replacing any previous ones."""
        ensure_private_directory(self.config_dir)
        master_key = await self._ensure_master_key()

        now = format_timestamp(utc_now())
        created_at = self._existing_created_at() or now
        document = {
            "email": self._encryption.encrypt(email, master_key).to_dict(),
            "password": self._encryption.encrypt(password, master_key).to_dict(),
            "createdAt": created_at,
            "updatedAt": now,
        }
        write_private_file(self.credentials_path, _dump(document))

    async def get_credentials(self) -> Optional[Credentials]:
        """
        Retrieve stored credentials.

        Returns:
            Decrypted credentials, or None if missing or unreadable.
        """
        if not self.credentials_path.exists():
            return None

        try:
            master_key = await self._ensure_master_key()
            document = json.loads(self.credentials_path.read_text(encoding="utf-8"))
            return Credentials(
                email=self._decrypt_field(document["email"], master_key),
                password=self._decrypt_field(document["password"], master_key),
            )
        except _READ_ERRORS as e:
            logger.error("Failed to read credentials: %s", type(e).__name__)
            return None

    def has_credentials(self) -> bool:
        """Check if a credentials document exists."""
        return self.credentials_path.exists()

    async def delete_credentials(self) -> None:
        """Delete stored credentials."""
        remove_file(self.credentials_path)

    # MARK: - Session tokens

    async def store_tokens(
        self,
        access_token: str,
        session_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        cookies: Optional[list[str]] = None,
    ) -> None:
        """
        Encrypt and store session tokens.

        Args:
            access_token: Bearer token.
            session_id: Optional session identifier.
            expires_at: Expiry (default: now + session_ttl).
            cookies: Optional name=value cookie pairs captured at login.
        """
        ensure_private_directory(self.config_dir)
        master_key = await self._ensure_master_key()

        now = utc_now()
        expiry = expires_at or now + self._config.security.session_ttl
        document = {
            "accessToken": self._encryption.encrypt(access_token, master_key).to_dict(),
            "expiresAt": format_timestamp(expiry),
            "createdAt": format_timestamp(now),
        }
        if session_id:
            document["sessionId"] = self._encryption.encrypt(session_id, master_key).to_dict()
        if cookies:
            document["cookies"] = self._encryption.encrypt(json.dumps(cookies), master_key).to_dict()

        write_private_file(self.tokens_path, _dump(document))

    async def get_tokens(self) -> Optional[SessionTokens]:
        """
        Retrieve stored tokens if they have not expired.

        Expired or unreadable sessions are deleted and reported as None.
        """
        if not self.tokens_path.exists():
            return None

        try:
            document = json.loads(self.tokens_path.read_text(encoding="utf-8"))
            expires_at = parse_timestamp(document["expiresAt"])
        except _READ_ERRORS as e:
            logger.error("Failed to read tokens: %s", type(e).__name__)
            await self.delete_tokens()
            return None

        if expires_at <= utc_now():
            logger.info("Tokens expired, deleting")
            await self.delete_tokens()
            return None

        try:
            master_key = await self._ensure_master_key()
            session_id = None
            if document.get("sessionId"):
                session_id = self._decrypt_field(document["sessionId"], master_key)
            cookies: list[str] = []
            if document.get("cookies"):
                cookies = json.loads(self._decrypt_field(document["cookies"], master_key))
            return SessionTokens(
                access_token=self._decrypt_field(document["accessToken"], master_key),
                session_id=session_id,
                cookies=[str(c) for c in cookies],
                expires_at=expires_at,
            )
        except _READ_ERRORS as e:
            logger.error("Failed to read tokens: %s", type(e).__name__)
            await self.delete_tokens()
            return None

    async def has_valid_tokens(self) -> bool:
        """Check if unexpired tokens are stored."""
        return await self.get_tokens() is not None

    async def delete_tokens(self) -> None:
        """Delete stored tokens."""
        remove_file(self.tokens_path)

    # MARK: - Maintenance

    async def clear_all(self) -> None:
        """Delete credentials and tokens. Safe to call repeatedly."""
        await self.delete_credentials()
        await self.delete_tokens()

    def storage_info(self) -> dict:
        """What is stored, without revealing any of it."""
        return {
            "has_credentials": self.credentials_path.exists(),
            "has_tokens": self.tokens_path.exists(),
            "config_dir": str(self.config_dir),
        }

    def forget_master_key(self) -> None:
        """Drop the in-memory master key; the next operation fetches it again."""
        self._master_key = None

    async def _ensure_master_key(self) -> bytes:
        if self._master_key is None:
            self._master_key = await self._keyring.get_master_key()
        return self._master_key

    def _decrypt_field(self, raw: object, master_key: bytes) -> str:
        return self._encryption.decrypt(EncryptedBlob.from_dict(raw), master_key)

    def _existing_created_at(self) -> Optional[str]:
        if not self.credentials_path.exists():
            return None
        try:
            document = json.loads(self.credentials_path.read_text(encoding="utf-8"))
            created_at = document.get("createdAt")
            return created_at if isinstance(created_at, str) else None
        except (OSError, ValueError, AttributeError):
            return None


def _dump(document: dict) -> bytes:
    return json.dumps(document, indent=2).encode("utf-8")
