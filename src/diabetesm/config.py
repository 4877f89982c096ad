"""Configuration for the Diabetes:M access layer."""

import os
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .types import (
    APP_DIR_NAME,
    IV_SIZE,
    KEY_SIZE,
    PBKDF2_ITERATIONS,
    SALT_SIZE,
    TAG_SIZE,
)


API_BASE_URL = "https://analytics.diabetes-m.com"

# Retryable HTTP statuses (429 has its own Retry-After handling)
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def get_config_dir() -> Path:
    """
    Return the per-OS configuration directory.

    - Windows: %LOCALAPPDATA%\\diabetes-m-mcp
    - macOS: ~/Library/Application Support/diabetes-m-mcp
    - Others: $XDG_CONFIG_HOME/diabetes-m-mcp (default ~/.config)

    DIABETESM_CONFIG_DIR overrides all of the above.
    """
    override = os.environ.get("DIABETESM_CONFIG_DIR")
    if override:
        return Path(override).expanduser()

    home = Path.home()
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or str(home / "AppData" / "Local")
        return Path(base) / APP_DIR_NAME
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME
    base = os.environ.get("XDG_CONFIG_HOME") or str(home / ".config")
    return Path(base) / APP_DIR_NAME


@dataclass
class SecurityConfig:
    """Parameters for at-rest encryption."""

    key_size: int = KEY_SIZE
    """Derived key size in bytes."""

    iv_size: int = IV_SIZE
    """AES-GCM IV size in bytes."""

    salt_size: int = SALT_SIZE
    """PBKDF2 salt size in bytes."""

    tag_size: int = TAG_SIZE
    """AES-GCM authentication tag size in bytes."""

    pbkdf2_iterations: int = PBKDF2_ITERATIONS
    """PBKDF2-HMAC-SHA512 iteration count."""

    session_ttl: timedelta = field(default_factory=lambda: timedelta(hours=24))
    """Validity window of a freshly stored session."""

    audit_retention_days: int = 90
    """Days of audit log kept by cleanup."""

    @property
    def header_size(self) -> int:
        """Fixed salt + iv + tag prefix size."""
        return self.salt_size + self.iv_size + self.tag_size


@dataclass
class RateLimitConfig:
    """Token bucket parameters."""

    burst: int = 5
    """Bucket capacity."""

    interval: float = 1.0
    """Seconds per refilled token."""


@dataclass
class RetryConfig:
    """Retry parameters for the request dispatcher."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    default_retry_after: float = 60.0
    retryable_status_codes: frozenset = RETRYABLE_STATUS_CODES

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.initial_delay * self.backoff_factor ** attempt, self.max_delay)


@dataclass
class ClientConfig:
    """Top-level configuration for all services."""

    base_url: str = API_BASE_URL
    """API base URL."""

    config_dir: Optional[Path] = None
    """Directory for encrypted local state (default: per-OS config dir)."""

    request_timeout: float = 30.0
    """Hard timeout for every outbound call, in seconds."""

    security: SecurityConfig = field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        if self.config_dir is None:
            self.config_dir = get_config_dir()
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Create a configuration from DIABETESM_* environment variables."""
        timeout = os.environ.get("DIABETESM_REQUEST_TIMEOUT")
        return cls(
            base_url=os.environ.get("DIABETESM_API_BASE_URL", API_BASE_URL),
            config_dir=get_config_dir(),
            request_timeout=float(timeout) if timeout else 30.0,
        )

    def with_config_dir(self, path: Path) -> "ClientConfig":
        """Returns a copy rooted at another config directory."""
        return ClientConfig(
            base_url=self.base_url,
            config_dir=Path(path),
            request_timeout=self.request_timeout,
            security=self.security,
            rate_limit=self.rate_limit,
            retry=self.retry,
        )
