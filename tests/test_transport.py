"""Tests for the aiohttp transport against a local server."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as LocalServer

from diabetesm.transport import AiohttpTransport, HttpResponse
from diabetesm.types import NetworkError, RequestTimeoutError


async def echo(request: web.Request) -> web.Response:
    body = await request.json()
    return web.json_response({"body": body, "auth": request.headers.get("Authorization")})


async def login(request: web.Request) -> web.Response:
    response = web.json_response({"token": "t"})
    response.set_cookie("sid", "abc", httponly=True)
    response.set_cookie("lang", "en")
    return response


async def slow(request: web.Request) -> web.Response:
    await asyncio.sleep(1)
    return web.Response(text="late")


async def limited(request: web.Request) -> web.Response:
    return web.Response(status=429, headers={"Retry-After": "7"}, text="slow down")


@pytest.fixture
def app() -> web.Application:
    app = web.Application()
    app.router.add_post("/echo", echo)
    app.router.add_post("/login", login)
    app.router.add_get("/slow", slow)
    app.router.add_get("/limited", limited)
    return app


class TestAiohttpTransport:

    @pytest.mark.asyncio
    async def test_json_round_trip(self, app) -> None:
        async with LocalServer(app) as server, AiohttpTransport() as transport:
            response = await transport.request(
                "POST",
                str(server.make_url("/echo")),
                headers={"Authorization": "Bearer x", "Content-Type": "application/json"},
                json_body={"a": 1},
            )

        assert response.ok
        assert response.json() == {"body": {"a": 1}, "auth": "Bearer x"}

    @pytest.mark.asyncio
    async def test_collects_every_set_cookie(self, app) -> None:
        async with LocalServer(app) as server, AiohttpTransport() as transport:
            response = await transport.request("POST", str(server.make_url("/login")), json_body={})

        pairs = [c.split(";", 1)[0] for c in response.set_cookies]
        assert sorted(pairs) == ["lang=en", "sid=abc"]

    @pytest.mark.asyncio
    async def test_headers_are_case_insensitive(self, app) -> None:
        async with LocalServer(app) as server, AiohttpTransport() as transport:
            response = await transport.request("GET", str(server.make_url("/limited")))

        assert response.status == 429
        assert response.header("Retry-After") == "7"
        assert response.text() == "slow down"

    @pytest.mark.asyncio
    async def test_timeout(self, app) -> None:
        async with LocalServer(app) as server, AiohttpTransport() as transport:
            with pytest.raises(RequestTimeoutError):
                await transport.request("GET", str(server.make_url("/slow")), timeout=0.1)

    @pytest.mark.asyncio
    async def test_connection_refused(self, app) -> None:
        server = LocalServer(app)
        await server.start_server()
        url = str(server.make_url("/echo"))
        await server.close()

        async with AiohttpTransport() as transport:
            with pytest.raises(NetworkError):
                await transport.request("POST", url, json_body={})

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        transport = AiohttpTransport()
        await transport.close()
        await transport.close()


class TestHttpResponse:

    def test_ok_range(self) -> None:
        assert HttpResponse(status=204).ok
        assert not HttpResponse(status=301).ok

    def test_invalid_json(self) -> None:
        with pytest.raises(ValueError):
            HttpResponse(status=200, body=b"nope").json()
