"""Type definitions and error taxonomy for the Diabetes:M access layer."""

from enum import Enum


# Encryption constants
ENCRYPTION_VERSION = 1
KEY_SIZE = 32
IV_SIZE = 16
SALT_SIZE = 64
TAG_SIZE = 16
HEADER_SIZE = SALT_SIZE + IV_SIZE + TAG_SIZE  # 96 bytes
PBKDF2_ITERATIONS = 100_000

# Fallback (machine-bound) key derivation constants
FALLBACK_KEY_SALT_SEED = b"diabetesm-salt-v1"
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

# Keyring entry
KEYRING_SERVICE_NAME = "diabetes-m-mcp"
KEYRING_MASTER_KEY_ACCOUNT = "master-key"

# Local files
APP_DIR_NAME = "diabetes-m-mcp"
CREDENTIALS_FILE_NAME = "diabetesm-credentials.enc"
TOKENS_FILE_NAME = "diabetesm-tokens.enc"
AUDIT_LOG_FILE_NAME = "diabetesm-audit.log"
FALLBACK_KEY_FILE_NAME = "master.key.enc"


class ErrorCode(str, Enum):
    """Error codes carried by failed API results."""
    AUTHENTICATION_FAILED = "AUTH_FAILED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Exception types
class DiabetesMError(Exception):
    """Base exception for the Diabetes:M access layer."""
    code = ErrorCode.UNKNOWN_ERROR


class AuthenticationFailedError(DiabetesMError):
    """Credentials are missing or were rejected by the server."""
    code = ErrorCode.AUTHENTICATION_FAILED


class AuthenticationRequiredError(DiabetesMError):
    """An authenticated session could not be established."""
    code = ErrorCode.AUTHENTICATION_FAILED

    def __init__(self, message: str = "Authentication required. Please configure credentials first.") -> None:
        super().__init__(message)


class SessionExpiredError(DiabetesMError):
    """The server rejected the session and reauthentication failed."""
    code = ErrorCode.SESSION_EXPIRED


class RateLimitedError(DiabetesMError):
    """The server kept rate limiting after all retries."""
    code = ErrorCode.RATE_LIMITED


class NetworkError(DiabetesMError):
    """The request could not be delivered."""
    code = ErrorCode.NETWORK_ERROR


class RequestTimeoutError(NetworkError):
    """The request exceeded its hard timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Request timed out after {timeout:g}s")
        self.timeout = timeout


class InvalidResponseError(DiabetesMError):
    """The server answered with something we cannot use."""
    code = ErrorCode.INVALID_RESPONSE


class DecryptionFailedError(DiabetesMError):
    """Ciphertext is corrupted, truncated, of an unknown version or under another key."""
    code = ErrorCode.DECRYPTION_FAILED

    def __init__(self, message: str = "Decryption failed: data may be corrupted or key is incorrect") -> None:
        super().__init__(message)


class ValidationError(DiabetesMError):
    """Caller supplied invalid input."""
    code = ErrorCode.VALIDATION_ERROR


class SecretStoreError(DiabetesMError):
    """The platform secret store failed."""
    pass


_ERRORS_BY_CODE = {
    ErrorCode.AUTHENTICATION_FAILED: AuthenticationFailedError,
    ErrorCode.SESSION_EXPIRED: SessionExpiredError,
    ErrorCode.RATE_LIMITED: RateLimitedError,
    ErrorCode.NETWORK_ERROR: NetworkError,
    ErrorCode.INVALID_RESPONSE: InvalidResponseError,
    ErrorCode.DECRYPTION_FAILED: DecryptionFailedError,
    ErrorCode.VALIDATION_ERROR: ValidationError,
}


def error_for_code(code: ErrorCode) -> type:
    """Exception class matching an error code."""
    return _ERRORS_BY_CODE.get(code, DiabetesMError)
