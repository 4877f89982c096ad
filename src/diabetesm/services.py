"""Composition root: builds every service once for the life of the process."""

from dataclasses import dataclass
from typing import Optional

from .auth import AuthManager
from .client import RateLimitedClient
from .config import ClientConfig
from .crypto import EncryptionService
from .storage.audit import AuditLogger
from .storage.credentials import CredentialsManager
from .storage.encrypted_cache import EncryptedCache
from .storage.master_key import KeyringManager, create_keyring_manager
from .storage.secret_store import SecretStore
from .transport import AiohttpTransport, Transport


@dataclass
class Services:
    """The wired-up access layer."""
    config: ClientConfig
    encryption: EncryptionService
    keyring: KeyringManager
    credentials: CredentialsManager
    audit: AuditLogger
    cache: EncryptedCache
    transport: Transport
    auth: AuthManager
    client: RateLimitedClient

    async def close(self) -> None:
        """Release network resources."""
        await self.transport.close()

    async def __aenter__(self) -> "Services":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def create_services(
    config: Optional[ClientConfig] = None,
    transport: Optional[Transport] = None,
    keyring_manager: Optional[KeyringManager] = None,
    native_store: Optional[SecretStore] = None,
) -> Services:
    """
    Build all services.

    Args:
        config: Configuration (default: from environment).
        transport: HTTP transport (default: aiohttp).
        keyring_manager: Master key source (default: OS keyring with file fallback).
        native_store: Replacement for the OS keyring store.
    """
    config = config or ClientConfig.from_env()
    encryption = EncryptionService(config.security)
    keyring_manager = keyring_manager or create_keyring_manager(config, encryption, native=native_store)
    transport = transport or AiohttpTransport()

    credentials = CredentialsManager(config, keyring_manager, encryption)
    audit = AuditLogger(config.config_dir)
    cache = EncryptedCache(keyring_manager, encryption)
    auth = AuthManager(config, transport, credentials, audit)
    client = RateLimitedClient(config, auth, transport, cache=cache, audit=audit)

    return Services(
        config=config,
        encryption=encryption,
        keyring=keyring_manager,
        credentials=credentials,
        audit=audit,
        cache=cache,
        transport=transport,
        auth=auth,
        client=client,
    )
