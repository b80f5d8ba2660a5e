"""Unit tests for client ICE server providers."""

import pytest
from aiohttp import test_utils, web

from src.client.ice import (
    DEFAULT_STUN_URL,
    HttpIceServerProvider,
    IceServer,
    StaticIceServerProvider,
)
from src.signaling.config import IceConfig, IceServerConfig
from src.signaling.health import setup_health_routes
from src.signaling.metrics import MetricsCollector


def test_single_url_coerced() -> None:
    """Test a bare URL string becomes a one-element list."""
    server = IceServer.model_validate({"urls": "stun:stun.example.com:3478"})

    assert server.urls == ["stun:stun.example.com:3478"]


@pytest.mark.asyncio
async def test_static_default() -> None:
    """Test the static provider defaults to public STUN."""
    servers = await StaticIceServerProvider().get_ice_servers()

    assert [s.urls for s in servers] == [[DEFAULT_STUN_URL]]


@pytest.mark.asyncio
async def test_static_returns_copy() -> None:
    """Test callers cannot mutate the provider's list."""
    provider = StaticIceServerProvider([IceServer(urls=["stun:a.example.com"])])

    (await provider.get_ice_servers()).clear()

    assert len(await provider.get_ice_servers()) == 1


class TestHttpIceServerProvider:
    """Test fetching ICE servers over HTTP."""

    @pytest.mark.asyncio
    async def test_fetch_from_server_endpoint(self) -> None:
        """Test the list published by the signaling server is used."""
        app = web.Application()
        setup_health_routes(
            app,
            ice_config=IceConfig(
                servers=[
                    IceServerConfig(
                        urls=["turn:turn.example.com:3478"], username="u", credential="c"
                    )
                ]
            ),
            metrics_collector=MetricsCollector(),
        )

        async with test_utils.TestServer(app) as server:
            provider = HttpIceServerProvider(str(server.make_url("/ice-servers")))
            servers = await provider.get_ice_servers()

        assert len(servers) == 1
        assert servers[0].urls == ["turn:turn.example.com:3478"]
        assert servers[0].username == "u"
        assert servers[0].credential == "c"

    @pytest.mark.asyncio
    async def test_invalid_body_uses_fallback(self) -> None:
        """Test an unexpected body falls back."""

        async def bad(request: web.Request) -> web.Response:
            return web.json_response({"servers": []})

        app = web.Application()
        app.router.add_get("/ice-servers", bad)
        fallback = [IceServer(urls=["stun:fallback.example.com"])]

        async with test_utils.TestServer(app) as server:
            provider = HttpIceServerProvider(str(server.make_url("/ice-servers")), fallback=fallback)
            servers = await provider.get_ice_servers()

        assert servers == fallback

    @pytest.mark.asyncio
    async def test_http_error_uses_fallback(self) -> None:
        """Test a 404 falls back."""
        app = web.Application()

        async with test_utils.TestServer(app) as server:
            provider = HttpIceServerProvider(str(server.make_url("/ice-servers")))
            servers = await provider.get_ice_servers()

        assert [s.urls for s in servers] == [[DEFAULT_STUN_URL]]

    @pytest.mark.asyncio
    async def test_unreachable_uses_fallback(self) -> None:
        """Test a refused connection falls back."""
        provider = HttpIceServerProvider("http://127.0.0.1:1/ice-servers", timeout_s=1.0)

        servers = await provider.get_ice_servers()

        assert [s.urls for s in servers] == [[DEFAULT_STUN_URL]]
