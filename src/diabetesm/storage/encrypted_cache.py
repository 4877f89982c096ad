"""In-memory TTL cache with optional encryption of payloads."""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from ..crypto import EncryptionService
from ..types import DecryptionFailedError
from ..models import EncryptedBlob
from .master_key import KeyringManager

logger = logging.getLogger("diabetesm.cache")


# Public reference data (e.g. food database results)
PUBLIC_TTL = timedelta(hours=24)

# Personal health data: short exposure window, always encrypted
PERSONAL_TTL = timedelta(minutes=5)


@dataclass
class CacheEntry:
    """Entry in the cache with expiration."""
    payload: Any
    encrypted: bool
    created_at: float
    expires_at: float


class EncryptedCache:
    """
    TTL cache keyed by the SHA-256 of a semantic key.

    Encrypted entries are JSON-serialized and sealed under the master key,
    which is fetched on first use. An entry that no longer decrypts is
    evicted and reported as a miss.
    """

    def __init__(
        self,
        keyring_manager: KeyringManager,
        encryption: Optional[EncryptionService] = None,
        default_ttl: timedelta = PERSONAL_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._keyring = keyring_manager
        self._encryption = encryption or EncryptionService()
        self._default_ttl = default_ttl
        self._clock = clock
        self._cache: dict[str, CacheEntry] = {}
        self._master_key: Optional[bytes] = None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[timedelta] = None,
        encrypt: bool = True,
    ) -> None:
        """
        Store a value.

        Args:
            key: Semantic cache key (never stored as-is).
            value: JSON-serializable value.
            ttl: Time to live (default: 5 minutes).
            encrypt: Whether to encrypt the value at rest in memory.
        """
        ttl = ttl if ttl is not None else self._default_ttl
        now = self._clock()

        payload: Any = value
        if encrypt:
            master_key = await self._ensure_master_key()
            payload = self._encryption.encrypt(json.dumps(value), master_key)

        self._cache[_hash_key(key)] = CacheEntry(
            payload=payload,
            encrypted=encrypt,
            created_at=now,
            expires_at=now + ttl.total_seconds(),
        )

    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value (returns None if missing, expired or undecryptable)."""
        hashed = _hash_key(key)
        entry = self._cache.get(hashed)
        if entry is None:
            return None

        if entry.expires_at <= self._clock():
            del self._cache[hashed]
            return None

        if not entry.encrypted:
            return entry.payload

        try:
            master_key = await self._ensure_master_key()
            blob: EncryptedBlob = entry.payload
            return json.loads(self._encryption.decrypt(blob, master_key))
        except (DecryptionFailedError, ValueError) as e:
            logger.warning("Evicting unreadable cache entry %s: %s", hashed[:16], type(e).__name__)
            self._cache.pop(hashed, None)
            return None

    def has(self, key: str) -> bool:
        """Check if a live entry exists for key."""
        hashed = _hash_key(key)
        entry = self._cache.get(hashed)
        if entry is None:
            return False
        if entry.expires_at <= self._clock():
            del self._cache[hashed]
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns whether it existed."""
        return self._cache.pop(_hash_key(key), None) is not None

    def clear(self, forget_key: bool = False) -> None:
        """Clear all entries, optionally dropping the in-memory master key too."""
        self._cache.clear()
        if forget_key:
            self._master_key = None

    def cleanup(self) -> int:
        """Remove all expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, entry in self._cache.items() if entry.expires_at <= now]
        for k in expired:
            del self._cache[k]
        return len(expired)

    def stats(self) -> dict:
        """Entry count and creation time range."""
        if not self._cache:
            return {"size": 0}
        created = [entry.created_at for entry in self._cache.values()]
        return {"size": len(self._cache), "oldest_entry": min(created), "newest_entry": max(created)}

    async def _ensure_master_key(self) -> bytes:
        if self._master_key is None:
            self._master_key = await self._keyring.get_master_key()
        return self._master_key


def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
