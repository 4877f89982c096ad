"""Models for encrypted state, sessions and API results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .types import ENCRYPTION_VERSION, DiabetesMError, ErrorCode, error_for_code


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with a trailing Z."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parses timestamps written by format_timestamp (naive values are UTC)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class EncryptedBlob:
    """Versioned container: base64(salt || iv || tag || ciphertext)."""
    data: str
    version: int = ENCRYPTION_VERSION
    timestamp: str = ""

    def to_dict(self) -> dict:
        return {"data": self.data, "version": self.version, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: Any) -> "EncryptedBlob":
        """Builds a blob from its JSON form; raises ValueError on malformed input."""
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), str):
            raise ValueError("Malformed encrypted blob")
        version = raw.get("version")
        if not isinstance(version, int):
            raise ValueError("Malformed encrypted blob version")
        return cls(data=raw["data"], version=version, timestamp=str(raw.get("timestamp", "")))


@dataclass
class Credentials:
    """Decrypted login credentials."""
    email: str
    password: str = field(repr=False)


@dataclass
class SessionTokens:
    """Decrypted session tokens."""
    access_token: str = field(repr=False)
    session_id: Optional[str] = field(default=None, repr=False)
    cookies: list[str] = field(default_factory=list, repr=False)
    expires_at: Optional[datetime] = None


class AuthStatus(Enum):
    """States of the authentication state machine."""
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SESSION_EXPIRED = "session_expired"


@dataclass
class AuthState:
    """In-memory authentication state, owned by AuthManager."""
    access_token: Optional[str] = field(default=None, repr=False)
    session_id: Optional[str] = field(default=None, repr=False)
    cookies: list[str] = field(default_factory=list, repr=False)
    is_authenticated: bool = False
    last_auth: Optional[datetime] = None
    status: AuthStatus = AuthStatus.LOGGED_OUT


@dataclass
class LoginResult:
    """Outcome of a remote login request."""
    success: bool
    token: Optional[str] = field(default=None, repr=False)
    session_id: Optional[str] = field(default=None, repr=False)
    user_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ApiError:
    """Error details of a failed API result."""
    code: ErrorCode
    message: str
    details: dict = field(default_factory=dict)


@dataclass
class ApiResult:
    """Discriminated result of every client request."""
    success: bool
    data: Any = None
    error: Optional[ApiError] = None
    timestamp: str = field(default_factory=lambda: format_timestamp(utc_now()))

    @classmethod
    def ok(cls, data: Any) -> "ApiResult":
        """Creates a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, **details: Any) -> "ApiResult":
        """Creates a failed result."""
        return cls(success=False, error=ApiError(code=code, message=message, details=details))

    @property
    def error_code(self) -> Optional[ErrorCode]:
        """The error code, if this result failed."""
        return self.error.code if self.error else None

    def unwrap(self) -> Any:
        """Return the data, or raise the typed error matching the failure."""
        if self.success:
            return self.data
        if self.error is None:
            raise DiabetesMError("Request failed")
        raise error_for_code(self.error.code)(self.error.message)
