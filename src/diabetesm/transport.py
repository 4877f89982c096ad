"""
HTTP transport for the Diabetes:M API.

This module provides an abstract base class for sending HTTP requests and an
aiohttp implementation. The client and auth layers only talk to Transport,
so tests can substitute a scripted one.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import aiohttp

from .types import NetworkError, RequestTimeoutError

logger = logging.getLogger("diabetesm.transport")


@dataclass
class HttpResponse:
    """A fully read HTTP response."""

    status: int
    """HTTP status code."""

    headers: dict[str, str] = field(default_factory=dict)
    """Response headers with lower-cased names."""

    body: bytes = b""
    """Raw response body."""

    set_cookies: list[str] = field(default_factory=list)
    """Every Set-Cookie header value, in order."""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON; raises ValueError if it is not."""
        return json.loads(self.body.decode("utf-8"))


class Transport(ABC):
    """Abstract base class for sending HTTP requests."""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        json_body: Any = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        """
        Send a request and read the whole response.

        Raises:
            RequestTimeoutError: If the call exceeds `timeout` seconds.
            NetworkError: If the request could not be delivered.
        """
        pass

    async def close(self) -> None:
        """Release any pooled connections."""
        pass


class AiohttpTransport(Transport):
    """
    Transport backed by a lazily created aiohttp.ClientSession.

    Cookies are not kept by the session; the auth layer manages the cookie
    jar explicitly and sends it as a header.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        json_body: Any = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        session = self._get_session()
        data = json.dumps(json_body) if json_body is not None else None
        try:
            async with session.request(
                method,
                url,
                headers=dict(headers or {}),
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                body = await response.read()
                return HttpResponse(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=body,
                    set_cookies=list(response.headers.getall("Set-Cookie", [])),
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(timeout) from e
        except aiohttp.ClientError as e:
            logger.debug("%s %s failed: %s", method, url, type(e).__name__)
            raise NetworkError(f"{type(e).__name__}: {e}") from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
