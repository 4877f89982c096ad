"""Master key secret store interface and the in-memory implementation."""

from abc import ABC, abstractmethod
from typing import Optional


class SecretStore(ABC):
    """Interface for a single-entry store holding the master key."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Short name of where the key lives ("keyring", "file", ...)."""
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Check whether this store can be used on this machine."""
        ...

    @abstractmethod
    async def get(self) -> Optional[bytes]:
        """Retrieve the master key, or None if nothing is stored."""
        ...

    @abstractmethod
    async def set(self, master_key: bytes) -> None:
        """Store the master key, replacing any previous one."""
        ...

    @abstractmethod
    async def delete(self) -> bool:
        """Delete the master key. Returns whether anything was deleted."""
        ...


class InMemorySecretStore(SecretStore):
    """
    In-memory implementation of SecretStore (for testing).

    WARNING: This is NOT secure for production use. The key is lost when
    the process exits, along with access to everything encrypted under it.
    """

    def __init__(self, master_key: Optional[bytes] = None, available: bool = True) -> None:
        self._key = bytes(master_key) if master_key is not None else None
        self._available = available
        self.get_calls = 0

    @property
    def location(self) -> str:
        return "memory"

    async def is_available(self) -> bool:
        return self._available

    async def get(self) -> Optional[bytes]:
        self.get_calls += 1
        return bytes(self._key) if self._key is not None else None

    async def set(self, master_key: bytes) -> None:
        self._key = bytes(master_key)

    async def delete(self) -> bool:
        existed = self._key is not None
        self._key = None
        return existed
