"""Tests for the credential setup flow and service wiring."""

import pytest
import pytest_asyncio
from diabetesm import endpoints
from diabetesm.onboarding import check_credentials, reset_credentials, setup_credentials
from diabetesm.services import create_services
from diabetesm.types import ValidationError

from fakes import json_response


def login_handler(call):
    """Accepts only the password "right"."""
    if call.json_body["password"] == "right":
        return json_response(200, {"token": "tok-1", "user_id": 7}, set_cookies=["sid=abc; Path=/"])
    return json_response(401, {"error": "Invalid credentials"})


@pytest_asyncio.fixture
async def services(config, transport, keyring_manager):
    transport.on("POST", endpoints.LOGIN, login_handler)
    transport.on("POST", endpoints.LOGOUT, json_response(200))
    async with create_services(config, transport=transport, keyring_manager=keyring_manager) as services:
        yield services


class TestSetupCredentials:
    """Test first-run setup."""

    @pytest.mark.asyncio
    async def test_successful_setup(self, services) -> None:
        result = await setup_credentials(services, "me@example.com", "right")

        assert result.success
        assert result.message == "Credentials configured and verified successfully."
        assert result.key_storage == "memory"
        assert result.storage_location == str(services.config.config_dir)
        assert result.encryption_method.startswith("AES-256-GCM")

    @pytest.mark.asyncio
    async def test_wrong_then_corrected_password(self, services, transport) -> None:
        """A rejected password is kept for correction; re-running setup fixes it."""
        first = await setup_credentials(services, "me@example.com", "wrong")
        assert not first.success
        assert first.message.startswith("Credentials saved but authentication failed")
        assert services.credentials.has_credentials()

        second = await setup_credentials(services, "me@example.com", "right")
        assert second.success
        assert (await services.credentials.get_credentials()).password == "right"

        transport.on("GET", endpoints.PROFILE, json_response(200, {"name": "Ada"}))
        result = await services.client.fetch_profile()
        assert result.data == {"name": "Ada"}
        assert transport.count("POST", endpoints.LOGIN) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [("", "pw"), ("   ", "pw"), ("me@example.com", "")])
    async def test_invalid_input(self, services, transport, email, password) -> None:
        with pytest.raises(ValidationError):
            await setup_credentials(services, email, password)
        assert transport.calls == []
        assert not services.credentials.has_credentials()

    @pytest.mark.asyncio
    async def test_email_is_stripped(self, services) -> None:
        await setup_credentials(services, "  me@example.com ", "right")
        assert (await services.credentials.get_credentials()).email == "me@example.com"

    @pytest.mark.asyncio
    async def test_setup_is_audited(self, services) -> None:
        await setup_credentials(services, "me@example.com", "wrong")

        entry = services.audit.recent_entries()[-1]
        assert entry["operation"] == "setup_credentials"
        assert entry["errorCode"] == "AUTH_FAILED"
        assert "wrong" not in services.audit.path.read_text()


class TestCheckAndReset:
    """Test status reporting and reset."""

    @pytest.mark.asyncio
    async def test_status_before_setup(self, services) -> None:
        status = await check_credentials(services)

        assert not status.configured
        assert not status.authenticated
        assert status.keyring_available
        assert status.message == "No credentials configured. Run setup first."

    @pytest.mark.asyncio
    async def test_status_after_setup(self, services) -> None:
        await setup_credentials(services, "me@example.com", "right")

        status = await check_credentials(services)
        assert status.configured
        assert status.authenticated
        assert status.has_tokens
        assert "me@example.com" not in repr(status)

    @pytest.mark.asyncio
    async def test_reset(self, services, secret_store) -> None:
        await setup_credentials(services, "me@example.com", "right")

        assert await reset_credentials(services) is False

        assert not services.auth.is_authenticated
        assert services.credentials.storage_info()["has_credentials"] is False
        assert services.credentials.storage_info()["has_tokens"] is False
        assert await secret_store.get() is not None

    @pytest.mark.asyncio
    async def test_reset_with_master_key(self, services, secret_store) -> None:
        await setup_credentials(services, "me@example.com", "right")
        old_key = await secret_store.get()

        assert await reset_credentials(services, delete_master_key=True) is True

        await setup_credentials(services, "me@example.com", "right")
        new_key = await secret_store.get()
        assert new_key is not None and new_key != old_key
        assert (await services.credentials.get_credentials()).password == "right"


class TestServices:

    @pytest.mark.asyncio
    async def test_close_closes_transport(self, config, transport, keyring_manager) -> None:
        services = create_services(config, transport=transport, keyring_manager=keyring_manager)
        await services.close()
        assert transport.closed

    def test_wiring(self, config, transport, keyring_manager) -> None:
        services = create_services(config, transport=transport, keyring_manager=keyring_manager)

        assert services.keyring is keyring_manager
        assert services.audit.path.parent == config.config_dir
        assert services.credentials.config_dir == config.config_dir
