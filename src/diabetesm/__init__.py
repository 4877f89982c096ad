"""
diabetesm - Secure access to the Diabetes:M analytics API

Python implementation of an authenticated, rate-limited API client with
encrypted local storage of credentials, sessions and cached data.
"""

from .types import (
    ErrorCode,
    DiabetesMError,
    AuthenticationFailedError,
    AuthenticationRequiredError,
    SessionExpiredError,
    RateLimitedError,
    NetworkError,
    RequestTimeoutError,
    InvalidResponseError,
    DecryptionFailedError,
    ValidationError,
    SecretStoreError,
    ENCRYPTION_VERSION,
)
from .config import (
    ClientConfig,
    SecurityConfig,
    RateLimitConfig,
    RetryConfig,
    get_config_dir,
)
from .models import (
    EncryptedBlob,
    Credentials,
    SessionTokens,
    AuthStatus,
    AuthState,
    LoginResult,
    ApiError,
    ApiResult,
)
from .crypto import EncryptionService, hash_for_audit
from .storage import (
    SecretStore,
    InMemorySecretStore,
    NativeSecretStore,
    FileSecretStore,
    KeyringManager,
    create_keyring_manager,
    CredentialsManager,
    EncryptedCache,
    PUBLIC_TTL,
    PERSONAL_TTL,
    AuditLogger,
)
from .transport import HttpResponse, Transport, AiohttpTransport
from .auth import AuthManager
from .client import TokenBucket, RateLimitedClient
from .services import Services, create_services
from .onboarding import (
    SetupResult,
    CredentialsStatus,
    setup_credentials,
    check_credentials,
    reset_credentials,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ErrorCode",
    "DiabetesMError",
    "AuthenticationFailedError",
    "AuthenticationRequiredError",
    "SessionExpiredError",
    "RateLimitedError",
    "NetworkError",
    "RequestTimeoutError",
    "InvalidResponseError",
    "DecryptionFailedError",
    "ValidationError",
    "SecretStoreError",
    # Constants
    "ENCRYPTION_VERSION",
    # Config
    "ClientConfig",
    "SecurityConfig",
    "RateLimitConfig",
    "RetryConfig",
    "get_config_dir",
    # Models
    "EncryptedBlob",
    "Credentials",
    "SessionTokens",
    "AuthStatus",
    "AuthState",
    "LoginResult",
    "ApiError",
    "ApiResult",
    # Crypto
    "EncryptionService",
    "hash_for_audit",
    # Storage
    "SecretStore",
    "InMemorySecretStore",
    "NativeSecretStore",
    "FileSecretStore",
    "KeyringManager",
    "create_keyring_manager",
    "CredentialsManager",
    "EncryptedCache",
    "PUBLIC_TTL",
    "PERSONAL_TTL",
    "AuditLogger",
    # Transport
    "HttpResponse",
    "Transport",
    "AiohttpTransport",
    # Auth & client
    "AuthManager",
    "TokenBucket",
    "RateLimitedClient",
    # Composition
    "Services",
    "create_services",
    # Onboarding
    "SetupResult",
    "CredentialsStatus",
    "setup_credentials",
    "check_credentials",
    "reset_credentials",
]
