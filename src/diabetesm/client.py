"""
Rate-limited, retrying client for the Diabetes:M API.

The RateLimitedClient provides a high-level API for authenticated requests.
Every outcome, including network and auth failures, comes back as an
ApiResult; expected failures never raise.
"""

import asyncio
import logging
import time
from datetime import timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

from . import endpoints
from .auth import AuthManager
from .config import ClientConfig, RateLimitConfig
from .models import ApiResult, utc_now
from .storage.audit import AuditLogger
from .storage.encrypted_cache import EncryptedCache, PERSONAL_TTL, PUBLIC_TTL
from .transport import HttpResponse, Transport
from .types import (
    AuthenticationFailedError,
    AuthenticationRequiredError,
    ErrorCode,
    NetworkError,
    RequestTimeoutError,
)

logger = logging.getLogger("diabetesm.client")

Sleep = Callable[[float], Awaitable[None]]

# Longest body excerpt carried in an INVALID_RESPONSE result
BODY_EXCERPT_LENGTH = 500


class TokenBucket:
    """
    Token bucket: up to `burst` immediate acquisitions, then one per `interval`.

    An empty bucket computes the exact time until the next token and sleeps
    for it.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self._config.burst)
        self._last_refill = clock()
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        return self._tokens

    @property
    def last_request(self) -> Optional[float]:
        return self._last_request

    async def acquire(self) -> float:
        """Take one token, waiting if necessary. Returns seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    self._last_request = self._clock()
                    return waited

                wait = self._config.interval - (self._clock() - self._last_refill)
                wait = max(wait, 0.0)
                waited += wait
                await self._sleep(wait)

    def _refill(self) -> None:
        now = self._clock()
        added = int((now - self._last_refill) // self._config.interval)
        if added <= 0:
            return
        if self._tokens + added >= self._config.burst:
            self._tokens = float(self._config.burst)
            self._last_refill = now
        else:
            self._tokens += added
            self._last_refill += added * self._config.interval


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(float(int(value)), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when is None:
        return default
    return max((when - utc_now()).total_seconds(), 0.0)


class RateLimitedClient:
    """
    Authenticated request dispatcher with rate limiting and retries.

    Example usage:
        ```python
        client = RateLimitedClient(config, auth, transport, cache)

        result = await client.get(endpoints.PROFILE)
        if result.success:
            print(result.data)
        else:
            print(result.error.code, result.error.message)
        ```
    """

    def __init__(
        self,
        config: ClientConfig,
        auth: AuthManager,
        transport: Transport,
        cache: Optional[EncryptedCache] = None,
        audit: Optional[AuditLogger] = None,
        limiter: Optional[TokenBucket] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._auth = auth
        self._transport = transport
        self._cache = cache
        self._audit = audit
        self._sleep = sleep
        self._limiter = limiter or TokenBucket(config.rate_limit, sleep=sleep)

    @property
    def limiter(self) -> TokenBucket:
        return self._limiter

    # MARK: - Requests

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> ApiResult:
        """
        Send an authenticated request.

        Args:
            method: HTTP method.
            path: Endpoint path (see diabetesm.endpoints).
            body: Optional JSON body.
            params: Optional query parameters.

        Returns:
            ApiResult with the parsed JSON payload or an error.
        """
        retry = self._config.retry
        url = self._url(path, params)
        attempt = 0
        reauthenticated = False
        total_delay = 0.0

        while True:
            await self._limiter.acquire()

            try:
                await self._auth.ensure_authenticated()
            except AuthenticationRequiredError as e:
                return ApiResult.fail(ErrorCode.AUTHENTICATION_FAILED, str(e))

            try:
                response = await self._transport.request(
                    method,
                    url,
                    headers=self._auth.get_auth_headers(),
                    json_body=body,
                    timeout=self._config.request_timeout,
                )
            except NetworkError as e:
                if attempt < retry.max_retries:
                    delay = retry.backoff(attempt)
                    logger.info("%s %s: %s, retrying in %.1fs", method, path, type(e).__name__, delay)
                    attempt += 1
                    total_delay += delay
                    await self._sleep(delay)
                    continue
                message = "Request timed out" if isinstance(e, RequestTimeoutError) else str(e)
                return ApiResult.fail(ErrorCode.NETWORK_ERROR, message, attempts=attempt + 1, total_delay=total_delay)

            if response.status == 401:
                if not reauthenticated and await self._auth.handle_auth_error():
                    reauthenticated = True
                    continue
                return ApiResult.fail(ErrorCode.SESSION_EXPIRED, "Session expired")

            if response.status == 429:
                if attempt < retry.max_retries:
                    delay = parse_retry_after(response.header("Retry-After"), retry.default_retry_after)
                    logger.info("%s %s rate limited, retrying in %.1fs", method, path, delay)
                    attempt += 1
                    total_delay += delay
                    await self._sleep(delay)
                    continue
                return ApiResult.fail(ErrorCode.RATE_LIMITED, "Rate limited", attempts=attempt + 1, total_delay=total_delay)

            if response.status in retry.retryable_status_codes and attempt < retry.max_retries:
                delay = retry.backoff(attempt)
                logger.info("%s %s returned %d, retrying in %.1fs", method, path, response.status, delay)
                attempt += 1
                total_delay += delay
                await self._sleep(delay)
                continue

            return self._classify(response, attempts=attempt + 1)

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> ApiResult:
        """GET request helper."""
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None) -> ApiResult:
        """POST request helper."""
        return await self.request("POST", path, body=body)

    # MARK: - Endpoints

    async def fetch_diary_entries(self, from_ms: int, to_ms: int) -> ApiResult:
        """Raw diary entries between two millisecond timestamps (cached encrypted)."""
        body = {
            "fromDate": from_ms,
            "toDate": to_ms,
            "includeGlucose": True,
            "includeBolus": True,
            "includeBasal": True,
            "includeCarbs": True,
            "includeSensor": True,
            "includeWeight": True,
            "includePressure": True,
            "includeHbA1c": True,
            "isDescOrder": True,
            "all": True,
        }
        return await self._cached(
            "get_diary_entries",
            f"diary:{from_ms}:{to_ms}",
            lambda: self.post(endpoints.DIARY_ENTRIES, body),
            PERSONAL_TTL,
            encrypt=True,
        )

    async def fetch_diary_range(self, date_range: str) -> ApiResult:
        """Raw diary entries for a named range ("today", "7days", "30", ...)."""
        from_ms, to_ms = endpoints.date_range_bounds(date_range)
        return await self.fetch_diary_entries(from_ms, to_ms)

    async def fetch_statistics(self) -> ApiResult:
        """Raw glucose/insulin statistics (cached encrypted)."""
        return await self._cached(
            "get_statistics",
            "statistics",
            lambda: self.get(endpoints.STATISTICS),
            PERSONAL_TTL,
            encrypt=True,
        )

    async def fetch_profile(self) -> ApiResult:
        """Raw user profile and personal metrics (cached encrypted)."""
        return await self._cached(
            "get_profile",
            "profile",
            lambda: self.get(endpoints.PROFILE),
            PERSONAL_TTL,
            encrypt=True,
        )

    async def search_foods(self, query: str) -> ApiResult:
        """Food database search (public data, cached unencrypted)."""
        return await self._cached(
            "search_foods",
            f"foods:{query.strip().lower()}",
            lambda: self.get(endpoints.FOODS_SEARCH, {"query": query}),
            PUBLIC_TTL,
            encrypt=False,
        )

    async def list_reports(self) -> ApiResult:
        """Generated reports (not cached)."""
        return await self._audited("list_reports", None, lambda: self.get(endpoints.REPORTS_LIST))

    # MARK: - Session

    async def authenticate(self, email: str, password: str) -> bool:
        """Log in with explicit credentials (stored on success or failure)."""
        try:
            return await self._auth.login(email, password)
        except AuthenticationFailedError:
            return False

    async def logout(self) -> None:
        """Log out and clear cached personal data."""
        await self._auth.logout()
        if self._cache is not None:
            self._cache.clear()

    # MARK: - Internals

    async def _cached(
        self,
        operation: str,
        cache_key: str,
        fetch: Callable[[], Awaitable[ApiResult]],
        ttl: timedelta,
        encrypt: bool,
    ) -> ApiResult:
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                self._record(operation, True, 0.0, cache_key, None)
                return ApiResult.ok(cached)

        result = await self._audited(operation, cache_key, fetch)
        if result.success and self._cache is not None and result.data is not None:
            await self._cache.set(cache_key, result.data, ttl, encrypt=encrypt)
        return result

    async def _audited(
        self,
        operation: str,
        input_data: Optional[str],
        fetch: Callable[[], Awaitable[ApiResult]],
    ) -> ApiResult:
        timer = AuditLogger.start_timer()
        result = await fetch()
        self._record(operation, result.success, timer(), input_data, result.error_code)
        return result

    def _record(
        self,
        operation: str,
        success: bool,
        duration_ms: float,
        input_data: Optional[str],
        error_code: Optional[ErrorCode],
    ) -> None:
        if self._audit is not None:
            self._audit.log_operation(
                operation,
                success,
                duration_ms,
                input_data=input_data,
                error_code=error_code,
                tool_name=operation,
            )

    def _classify(self, response: HttpResponse, attempts: int) -> ApiResult:
        if not response.ok:
            return ApiResult.fail(
                ErrorCode.INVALID_RESPONSE,
                f"Request failed: {response.status}",
                status=response.status,
                body=response.text()[:BODY_EXCERPT_LENGTH],
                attempts=attempts,
            )
        try:
            return ApiResult.ok(response.json())
        except ValueError:
            return ApiResult.fail(
                ErrorCode.INVALID_RESPONSE,
                "Response was not valid JSON",
                status=response.status,
                body=response.text()[:BODY_EXCERPT_LENGTH],
            )

    def _url(self, path: str, params: Optional[dict[str, Any]]) -> str:
        url = f"{self._config.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url
