# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for server options, the handler-collecting strategy, and the live listener."""

from __future__ import annotations

import asyncio
import socket
from typing import Any

import pytest

from rpcbridge.http import ConnectClient
from rpcbridge.rpc import CallDescriptor, ConfigurationError, ServiceRegistry, StreamingKind
from rpcbridge.server import ConnectServer, ServerOptions, ServerProtocol, ServerStrategy

from .conftest import GREET_DESCRIPTOR, make_greet_controller

SERVICE = GREET_DESCRIPTOR.type_name


def _noop(request: Any, ctx: Any) -> Any:
    return request


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestServerOptions:
    """Listener configuration."""

    def test_defaults(self) -> None:
        """Plain HTTP on localhost by default."""
        options = ServerOptions()
        assert options.protocol is ServerProtocol.HTTP
        assert options.host == "127.0.0.1"
        assert options.port == 8080

    def test_protocol_from_string(self) -> None:
        """Protocol names are case-insensitive."""
        assert ServerOptions(protocol="HTTP").protocol is ServerProtocol.HTTP  # type: ignore[arg-type]

    @pytest.mark.parametrize("protocol", ["http2", "http2_insecure", "h2c"])
    def test_http2_is_rejected(self, protocol: str) -> None:
        """HTTP/2 variants fail with a configuration error."""
        with pytest.raises(ConfigurationError, match="not supported"):
            ServerOptions(protocol=protocol)  # type: ignore[arg-type]

    def test_unknown_protocol(self) -> None:
        """An unknown protocol name is rejected."""
        with pytest.raises(ConfigurationError, match="Invalid protocol"):
            ServerProtocol.parse("gopher")

    def test_https_requires_certificate(self) -> None:
        """HTTPS without a certificate and key is rejected."""
        with pytest.raises(ConfigurationError, match="ssl_certfile"):
            ServerOptions(protocol=ServerProtocol.HTTPS, ssl_certfile="cert.pem")

    @pytest.mark.parametrize("port", [-1, 65536])
    def test_port_range(self, port: int) -> None:
        """Ports outside 0..65535 are rejected."""
        with pytest.raises(ConfigurationError, match="port"):
            ServerOptions(port=port)

    def test_from_env(self) -> None:
        """Options are read from prefixed environment variables."""
        options = ServerOptions.from_env(
            environ={"RPCBRIDGE_HOST": "0.0.0.0", "RPCBRIDGE_PORT": "9090", "RPCBRIDGE_LOG_LEVEL": "INFO"}
        )
        assert options.host == "0.0.0.0"
        assert options.port == 9090
        assert options.log_level == "info"

    def test_from_env_overrides(self) -> None:
        """Keyword overrides win over the environment."""
        options = ServerOptions.from_env(prefix="APP_", environ={"APP_PORT": "9090"}, port=0)
        assert options.port == 0

    def test_from_env_bad_port(self) -> None:
        """A non-numeric port is a configuration error."""
        with pytest.raises(ConfigurationError, match="RPCBRIDGE_PORT"):
            ServerOptions.from_env(environ={"RPCBRIDGE_PORT": "eighty"})


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class TestServerStrategy:
    """Handler collection and routing."""

    def test_add_handler_serializes_patterns(self, registry: ServiceRegistry) -> None:
        """Object patterns become compact JSON keys."""
        strategy = ServerStrategy(registry=registry)
        route = strategy.add_handler({"service": "Greeter", "rpc": "greet", "streaming": "no_stream"}, _noop)
        assert route == CallDescriptor("Greeter", "greet", StreamingKind.UNARY).key
        assert strategy.get_handlers() == {route: _noop}

    def test_register_controller(self, registry: ServiceRegistry) -> None:
        """Every decorated method becomes a handler."""
        strategy = ServerStrategy(registry=registry)
        assert strategy.register_controller(make_greet_controller(registry)) == len(GREET_DESCRIPTOR.methods)

    def test_event_handlers_are_not_routed(self, registry: ServiceRegistry) -> None:
        """Event handlers are recorded but never mounted."""
        strategy = ServerStrategy(registry=registry)
        strategy.register_controller(make_greet_controller(registry))
        event = strategy.add_handler("user.created", _noop, is_event_handler=True)
        assert strategy.is_event_handler(event)
        router = strategy.create_router()
        assert len(router.paths) == len(GREET_DESCRIPTOR.methods)
        assert strategy.binder is not None
        assert strategy.binder.skipped_services == 0

    def test_prefix_is_applied(self, registry: ServiceRegistry) -> None:
        """The router uses the configured prefix."""
        strategy = ServerStrategy(ServerOptions(prefix="/api"), registry=registry)
        strategy.register_controller(make_greet_controller(registry))
        assert f"/api/{SERVICE}/Greet" in strategy.create_router().paths

    def test_malformed_pattern_reaches_callback(self, registry: ServiceRegistry) -> None:
        """With a callback, startup errors are delivered instead of raised."""
        strategy = ServerStrategy(ServerOptions(port=0), registry=registry)
        strategy.add_handler("not a json key", _noop)
        received: list[BaseException | None] = []
        asyncio.run(strategy.listen(received.append))
        (error,) = received
        assert isinstance(error, ConfigurationError)
        assert strategy.unwrap() is None

    def test_malformed_pattern_raises_without_callback(self, registry: ServiceRegistry) -> None:
        """Without a callback, startup errors propagate."""
        strategy = ServerStrategy(ServerOptions(port=0), registry=registry)
        strategy.add_handler('{"service":"S","rpc":"m","streaming":"sideways"}', _noop)
        with pytest.raises(ConfigurationError):
            asyncio.run(strategy.listen())

    def test_close_without_listen(self, registry: ServiceRegistry) -> None:
        """Closing a strategy that never listened is a no-op."""
        asyncio.run(ServerStrategy(registry=registry).close())


# ---------------------------------------------------------------------------
# Live listener
# ---------------------------------------------------------------------------


class TestListener:
    """A real uvicorn server on an ephemeral port."""

    def test_listen_and_call(self, registry: ServiceRegistry) -> None:
        """Calls succeed over a real socket, and close stops the server."""
        bound: list[str] = []
        strategy = ServerStrategy(ServerOptions(port=0, callback=lambda: bound.append("bound")), registry=registry)
        strategy.register_controller(make_greet_controller(registry))

        async def run() -> tuple[Any, list[Any], BaseException | None]:
            received: list[BaseException | None] = []
            await strategy.listen(received.append)
            server = strategy.unwrap()
            assert server is not None and server.started
            try:
                async with ConnectClient(server.url) as client:
                    greeting = await client.unary(SERVICE, "Greet", {"name": "Ada"})
                    countdown = [item async for item in client.server_stream(SERVICE, "Countdown", {"start": 2})]
            finally:
                await strategy.close()
                await strategy.close()
            return greeting, countdown, received[0]

        greeting, countdown, error = asyncio.run(run())
        assert greeting == {"greeting": "Hello, Ada!"}
        assert countdown == [{"n": 2}, {"n": 1}]
        assert error is None
        assert bound == ["bound"]
        assert strategy.unwrap() is None

    def test_port_in_use(self, registry: ServiceRegistry) -> None:
        """Failing to bind is reported, not fatal to the process."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]
            strategy = ServerStrategy(ServerOptions(port=port), registry=registry)
            received: list[BaseException | None] = []
            asyncio.run(strategy.listen(received.append))
        (error,) = received
        assert isinstance(error, OSError)

    def test_port_requires_running_server(self) -> None:
        """The bound port is only available while serving."""
        from rpcbridge.http import HttpRouter

        server = ConnectServer(ServerOptions(port=0), HttpRouter())
        with pytest.raises(RuntimeError):
            _ = server.port
