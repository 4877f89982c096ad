"""Credential setup, status and reset flows for the host application."""

import logging
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .services import Services
from .types import ValidationError

logger = logging.getLogger("diabetesm.onboarding")

ENCRYPTION_METHOD = "AES-256-GCM with PBKDF2 key derivation"


class SetupCredentialsInput(BaseModel):
    """Validated setup input."""

    email: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)

    @field_validator("email")
    @classmethod
    def strip_email(cls, v: str) -> str:
        """Emails are compared and stored without surrounding whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("Email is required")
        return v


@dataclass
class SetupResult:
    """Outcome of setup_credentials."""
    success: bool
    message: str
    storage_location: str
    key_storage: str
    encryption_method: str = ENCRYPTION_METHOD


@dataclass
class CredentialsStatus:
    """Outcome of check_credentials. Never contains secrets."""
    configured: bool
    authenticated: bool
    has_tokens: bool
    config_dir: str
    keyring_available: bool
    message: str


async def setup_credentials(services: Services, email: str, password: str) -> SetupResult:
    """
    Store credentials and verify them against the server.

    Raises:
        ValidationError: If email or password is empty.
    """
    try:
        data = SetupCredentialsInput(email=email, password=password)
    except PydanticValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors())
        raise ValidationError(f"Invalid input: {fields}") from e

    timer = services.audit.start_timer()
    authenticated = await services.client.authenticate(data.email, data.password)
    key_storage = await services.keyring.storage_location()
    config_dir = services.credentials.storage_info()["config_dir"]

    if not authenticated:
        services.audit.log_operation("setup_credentials", False, timer(), error_code="AUTH_FAILED")
        return SetupResult(
            success=False,
            message=(
                "Credentials saved but authentication failed. Please verify your "
                "email and password are correct for analytics.diabetes-m.com"
            ),
            storage_location=config_dir,
            key_storage=key_storage,
        )

    services.audit.log_operation("setup_credentials", True, timer())
    return SetupResult(
        success=True,
        message="Credentials configured and verified successfully.",
        storage_location=config_dir,
        key_storage=key_storage,
    )


async def check_credentials(services: Services) -> CredentialsStatus:
    """Report whether credentials are configured, without revealing them."""
    info = services.credentials.storage_info()
    keyring_available = await services.keyring.is_available()
    authenticated = services.auth.is_authenticated

    if not info["has_credentials"]:
        message = "No credentials configured. Run setup first."
    elif authenticated:
        message = "Credentials configured and session active."
    else:
        message = "Credentials configured. A session will be established on the next request."

    return CredentialsStatus(
        configured=info["has_credentials"],
        authenticated=authenticated,
        has_tokens=info["has_tokens"],
        config_dir=info["config_dir"],
        keyring_available=keyring_available,
        message=message,
    )


async def reset_credentials(services: Services, delete_master_key: bool = False) -> bool:
    """
    Log out and remove all stored credentials, tokens and cached data.

    Args:
        delete_master_key: Also delete the master key. Anything still
            encrypted under it becomes unrecoverable.

    Returns:
        Whether a master key was deleted.
    """
    await services.client.logout()
    await services.credentials.clear_all()
    services.cache.clear()

    deleted = False
    if delete_master_key:
        deleted = await services.keyring.delete_master_key()
        services.credentials.forget_master_key()
        services.cache.clear(forget_key=True)
        logger.info("Master key deleted: %s", deleted)

    services.audit.log_operation("reset_credentials", True, 0.0)
    return deleted
