"""Shared fixtures: isolated config directory, in-memory master key and scripted transport."""

import pytest

from diabetesm.config import ClientConfig, RateLimitConfig, RetryConfig, SecurityConfig
from diabetesm.crypto import EncryptionService
from diabetesm.storage import AuditLogger, CredentialsManager, InMemorySecretStore, KeyringManager

from fakes import BASE_URL, TEST_MASTER_KEY, FakeTransport, ManualClock


@pytest.fixture
def config(tmp_path) -> ClientConfig:
    """Config rooted in a temp dir, with cheap key derivation."""
    return ClientConfig(
        base_url=BASE_URL,
        config_dir=tmp_path / "config",
        request_timeout=5.0,
        security=SecurityConfig(pbkdf2_iterations=1000),
        rate_limit=RateLimitConfig(burst=5, interval=1.0),
        retry=RetryConfig(max_retries=3, initial_delay=1.0, backoff_factor=2.0, max_delay=10.0),
    )


@pytest.fixture
def encryption(config) -> EncryptionService:
    return EncryptionService(config.security)


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore(TEST_MASTER_KEY)


@pytest.fixture
def keyring_manager(secret_store, encryption) -> KeyringManager:
    return KeyringManager(native=secret_store, fallback=InMemorySecretStore(), encryption=encryption)


@pytest.fixture
def credentials(config, keyring_manager, encryption) -> CredentialsManager:
    return CredentialsManager(config, keyring_manager, encryption)


@pytest.fixture
def audit(config) -> AuditLogger:
    return AuditLogger(config.config_dir)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
