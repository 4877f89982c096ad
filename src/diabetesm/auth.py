"""
Authentication for the Diabetes:M API.

AuthManager owns the session state machine:

    LOGGED_OUT -> AUTHENTICATING -> AUTHENTICATED -> {SESSION_EXPIRED, LOGGED_OUT}

A stored, unexpired session is verified and reused before any fresh login.
The API rejects authenticated calls that lack the cookie set at login, so the
cookie jar travels with the bearer token everywhere.
"""

import asyncio
import logging
from typing import Any, Optional

from . import endpoints
from .config import ClientConfig
from .models import AuthState, AuthStatus, Credentials, LoginResult, utc_now
from .storage.audit import AuditLogger
from .storage.credentials import CredentialsManager
from .transport import Transport
from .types import (
    AuthenticationFailedError,
    AuthenticationRequiredError,
    ErrorCode,
    NetworkError,
    RequestTimeoutError,
)

logger = logging.getLogger("diabetesm.auth")


def parse_set_cookies(set_cookies: list[str]) -> list[str]:
    """Reduce Set-Cookie values to their name=value pairs."""
    pairs = []
    for cookie in set_cookies:
        pair = cookie.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return pairs


def parse_login_body(data: Any) -> LoginResult:
    """
    Interpret a login response body.

    Two shapes are in use by the server:
    - bare:    {"token": "...", "user_id": 1234}
    - wrapped: {"success": true, "data": {"token": "...", "sessionId": "...", "userId": 1234}}
    """
    if not isinstance(data, dict):
        return LoginResult(success=False, error="Unexpected login response")

    token = data.get("token")
    if isinstance(token, str) and token:
        user_id = data.get("user_id", data.get("userId"))
        return LoginResult(
            success=True,
            token=token,
            user_id=user_id if isinstance(user_id, int) else None,
        )

    inner = data.get("data")
    if data.get("success") and isinstance(inner, dict):
        token = inner.get("token")
        if isinstance(token, str) and token:
            session_id = inner.get("sessionId")
            user_id = inner.get("userId")
            return LoginResult(
                success=True,
                token=token,
                session_id=str(session_id) if session_id else None,
                user_id=user_id if isinstance(user_id, int) else None,
            )

    error = data.get("error")
    return LoginResult(success=False, error=error if isinstance(error, str) else "Login failed")


class AuthManager:
    """
    Session lifecycle: login, restore, reauthentication and logout.

    Example usage:
        ```python
        auth = AuthManager(config, transport, credentials, audit)
        await auth.ensure_authenticated()
        headers = auth.get_auth_headers()
        ```
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Transport,
        credentials: CredentialsManager,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._credentials = credentials
        self._audit = audit
        self._state = AuthState()
        self._pending_login: Optional[asyncio.Future] = None
        self._login_lock = asyncio.Lock()

    @property
    def status(self) -> AuthStatus:
        return self._state.status

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def access_token(self) -> Optional[str]:
        return self._state.access_token

    # MARK: - Login

    async def login(self, email: Optional[str] = None, password: Optional[str] = None) -> bool:
        """
        Log in with explicit or stored credentials.

        Logins are serialized; an automatic login waiting behind this one
        reuses its session.

        Args:
            email: Account email; stored (encrypted) together with password.
            password: Account password.

        Returns:
            True once authenticated, False if the server rejected the login.

        Raises:
            AuthenticationFailedError: If no credentials are available.
        """
        async with self._login_lock:
            return await self._login(email, password)

    async def _login(self, email: Optional[str], password: Optional[str]) -> bool:
        timer = AuditLogger.start_timer()
        self._state.status = AuthStatus.AUTHENTICATING

        try:
            creds = await self._resolve_credentials(email, password)
        except AuthenticationFailedError:
            self._reset_state()
            self._record("login", False, timer(), error_code=ErrorCode.AUTHENTICATION_FAILED)
            raise

        if await self._restore_session():
            self._record("login", True, timer(), input_data="restored_session")
            return True

        result = await self._perform_login(creds)
        if not result.success:
            logger.warning("Login failed: %s", result.error)
            self._reset_state()
            self._record("login", False, timer(), error_code=ErrorCode.AUTHENTICATION_FAILED)
            return False

        self._state.access_token = result.token
        self._state.session_id = result.session_id
        self._mark_authenticated()

        await self._credentials.store_tokens(
            result.token,
            result.session_id,
            utc_now() + self._config.security.session_ttl,
            cookies=self._state.cookies,
        )

        logger.info("Logged in")
        self._record("login", True, timer())
        return True

    async def ensure_authenticated(self) -> None:
        """
        Authenticate unless already authenticated.

        Concurrent callers share one in-flight login attempt.

        Raises:
            AuthenticationRequiredError: If no session could be established.
        """
        if self._state.is_authenticated:
            return
        if not await self._shared_login():
            raise AuthenticationRequiredError()

    async def handle_auth_error(self) -> bool:
        """
        React to a 401: drop the session and try one fresh login.

        Returns:
            Whether reauthentication succeeded. Retrying is up to the caller.
        """
        logger.info("Session rejected by server, reauthenticating")
        self._reset_state()
        self._state.status = AuthStatus.SESSION_EXPIRED
        await self._credentials.delete_tokens()
        return await self._shared_login()

    def get_auth_headers(self) -> dict[str, str]:
        """
        Headers for an authenticated request.

        Raises:
            RuntimeError: If called before a successful login.
        """
        if not self._state.is_authenticated or not self._state.access_token:
            raise RuntimeError("get_auth_headers() called before a successful login")
        return self._build_headers(self._state.access_token, self._state.session_id, self._state.cookies)

    async def logout(self) -> None:
        """Log out remotely (best effort) and clear all local session state."""
        timer = AuditLogger.start_timer()

        if self._state.is_authenticated and self._state.access_token:
            try:
                await self._transport.request(
                    "POST",
                    self._url(endpoints.LOGOUT),
                    headers=self.get_auth_headers(),
                    timeout=self._config.request_timeout,
                )
            except NetworkError as e:
                logger.debug("Remote logout failed: %s", e)

        self._reset_state()
        await self._credentials.delete_tokens()
        self._record("logout", True, timer())

    # MARK: - Internals

    async def _shared_login(self) -> bool:
        if self._pending_login is None or self._pending_login.done():
            self._pending_login = asyncio.ensure_future(self._login_quietly())
        return await asyncio.shield(self._pending_login)

    async def _login_quietly(self) -> bool:
        try:
            async with self._login_lock:
                # An explicit login may have finished while we waited
                if self._state.is_authenticated:
                    return True
                return await self._login(None, None)
        except AuthenticationFailedError as e:
            logger.warning("Cannot authenticate: %s", e)
            return False

    async def _resolve_credentials(self, email: Optional[str], password: Optional[str]) -> Credentials:
        if email and password:
            previous = await self._credentials.get_credentials() if self._credentials.has_credentials() else None
            await self._credentials.store_credentials(email, password)
            if previous is not None and previous.email != email:
                # A stored session belongs to the previous account
                await self._credentials.delete_tokens()
            return Credentials(email=email, password=password)

        creds = await self._credentials.get_credentials()
        if creds is None:
            raise AuthenticationFailedError("No credentials available. Please provide email and password.")
        return creds

    async def _restore_session(self) -> bool:
        tokens = await self._credentials.get_tokens()
        if tokens is None:
            return False

        headers = self._build_headers(tokens.access_token, tokens.session_id, tokens.cookies)
        try:
            response = await self._transport.request(
                "GET",
                self._url(endpoints.VERIFY_SESSION),
                headers=headers,
                timeout=self._config.request_timeout,
            )
        except NetworkError as e:
            logger.debug("Session verification failed: %s", e)
            return False

        if not response.ok:
            logger.info("Stored session rejected (status %d)", response.status)
            return False

        self._state.access_token = tokens.access_token
        self._state.session_id = tokens.session_id
        self._state.cookies = list(tokens.cookies)
        self._mark_authenticated()
        logger.info("Restored stored session")
        return True

    async def _perform_login(self, creds: Credentials) -> LoginResult:
        payload = {
            "username": creds.email,
            "password": creds.password,
            "device": endpoints.LOGIN_DEVICE,
            "client": endpoints.LOGIN_CLIENT,
        }
        try:
            response = await self._transport.request(
                "POST",
                self._url(endpoints.LOGIN),
                headers=endpoints.browser_headers(self._config.base_url),
                json_body=payload,
                timeout=self._config.request_timeout,
            )
        except RequestTimeoutError:
            return LoginResult(success=False, error="Login request timed out")
        except NetworkError as e:
            return LoginResult(success=False, error=str(e))

        self._state.cookies = parse_set_cookies(response.set_cookies)

        if not response.ok:
            if response.status == 401:
                return LoginResult(success=False, error="Invalid email or password")
            if response.status == 429:
                return LoginResult(success=False, error="Too many login attempts. Please try again later.")
            return LoginResult(success=False, error=f"Login failed with status {response.status}")

        try:
            data = response.json()
        except ValueError:
            return LoginResult(success=False, error="Login response was not valid JSON")

        return parse_login_body(data)

    def _build_headers(self, token: str, session_id: Optional[str], cookies: list[str]) -> dict[str, str]:
        headers = endpoints.browser_headers(self._config.base_url)
        headers["Authorization"] = f"Bearer {token}"
        if session_id:
            headers["X-Session-Id"] = session_id
        if cookies:
            headers["Cookie"] = "; ".join(cookies)
        return headers

    def _mark_authenticated(self) -> None:
        self._state.is_authenticated = True
        self._state.last_auth = utc_now()
        self._state.status = AuthStatus.AUTHENTICATED

    def _reset_state(self) -> None:
        self._state = AuthState()

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}{path}"

    def _record(self, operation: str, success: bool, duration_ms: float, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit.log_operation(operation, success, duration_ms, **kwargs)
