"""Diabetes:M local storage module."""

from .secret_store import SecretStore, InMemorySecretStore
from .master_key import (
    NativeSecretStore,
    FileSecretStore,
    KeyringManager,
    create_keyring_manager,
    derive_machine_key,
)
from .credentials import CredentialsManager
from .encrypted_cache import EncryptedCache, CacheEntry, PUBLIC_TTL, PERSONAL_TTL
from .audit import AuditLogger, AuditEntry

__all__ = [
    "SecretStore",
    "InMemorySecretStore",
    "NativeSecretStore",
    "FileSecretStore",
    "KeyringManager",
    "create_keyring_manager",
    "derive_machine_key",
    "CredentialsManager",
    "EncryptedCache",
    "CacheEntry",
    "PUBLIC_TTL",
    "PERSONAL_TTL",
    "AuditLogger",
    "AuditEntry",
]
