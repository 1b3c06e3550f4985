# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server options, the listener lifecycle, and the handler-collecting strategy.

Usage::

    strategy = ServerStrategy(ServerOptions(port=8080))
    strategy.register_controller(GreetService())
    await strategy.listen()
    ...
    await strategy.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import uvicorn

from rpcbridge.http import HttpRouter, make_asgi_app
from rpcbridge.rpc import (
    CallDispatcher,
    ConfigurationError,
    Handler,
    ServiceBinder,
    ServiceRegistry,
    collect_handlers,
    default_registry,
)

if TYPE_CHECKING:
    from rpcbridge.otel import OtelConfig

_logger = logging.getLogger("rpcbridge.server")

_UNSUPPORTED_PROTOCOLS = frozenset({"http2", "http2_insecure", "h2", "h2c"})

type ListenCallback = Callable[[BaseException | None], None]


class ServerProtocol(Enum):
    """Transport protocols the listener supports."""

    HTTP = "http"
    HTTPS = "https"

    @classmethod
    def parse(cls, value: ServerProtocol | str) -> ServerProtocol:
        """Coerce *value* to a ``ServerProtocol``.

        Raises:
            ConfigurationError: For HTTP/2 variants or unknown names.

        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name in _UNSUPPORTED_PROTOCOLS:
            raise ConfigurationError(f"Protocol {value!r} is not supported: the ASGI server speaks HTTP/1.1 only")
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(f"Invalid protocol option: {value!r}") from None


@dataclass(frozen=True)
class ServerOptions:
    """Listener configuration.

    Attributes:
        protocol: ``HTTP`` or ``HTTPS`` (strings are accepted).
        host: Interface to bind.
        port: TCP port; ``0`` binds an ephemeral port.
        ssl_certfile: PEM certificate; required for HTTPS.
        ssl_keyfile: PEM private key; required for HTTPS.
        prefix: URL prefix for every route.
        log_level: Log level passed to uvicorn.
        callback: Called with no arguments once the socket is bound.

    """

    protocol: ServerProtocol = ServerProtocol.HTTP
    host: str = "127.0.0.1"
    port: int = 8080
    ssl_certfile: str | None = None
    ssl_keyfile: str | None = None
    prefix: str = ""
    log_level: str = "warning"
    callback: Callable[[], None] | None = None

    def __post_init__(self) -> None:
        """Validate and normalize the options."""
        object.__setattr__(self, "protocol", ServerProtocol.parse(self.protocol))
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"port must be between 0 and 65535, got {self.port}")
        if self.protocol is ServerProtocol.HTTPS and not (self.ssl_certfile and self.ssl_keyfile):
            raise ConfigurationError("HTTPS requires both ssl_certfile and ssl_keyfile")
        object.__setattr__(self, "log_level", self.log_level.lower())

    @classmethod
    def from_env(
        cls, prefix: str = "RPCBRIDGE_", environ: Mapping[str, str] | None = None, **overrides: Any
    ) -> ServerOptions:
        """Build options from environment variables.

        Reads ``{prefix}HOST``, ``PORT``, ``PROTOCOL``, ``LOG_LEVEL``,
        ``SSL_CERTFILE``, ``SSL_KEYFILE`` and ``PREFIX``.  Keyword *overrides*
        win over the environment.

        Raises:
            ConfigurationError: If a variable holds an invalid value.

        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name in ("host", "protocol", "log_level", "ssl_certfile", "ssl_keyfile", "prefix"):
            raw = env.get(f"{prefix}{field_name.upper()}")
            if raw:
                values[field_name] = raw
        raw_port = env.get(f"{prefix}PORT")
        if raw_port:
            try:
                values["port"] = int(raw_port)
            except ValueError:
                raise ConfigurationError(f"{prefix}PORT must be an integer, got {raw_port!r}") from None
        values.update(overrides)
        return cls(**values)


class ConnectServer:
    """Owns a ``uvicorn.Server`` serving one router."""

    __slots__ = ("_router", "_server", "_task", "options")

    def __init__(self, options: ServerOptions, router: HttpRouter) -> None:
        """Initialize; nothing is bound until :meth:`start`."""
        self.options = options
        self._router = router
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def started(self) -> bool:
        """Whether the socket is bound and serving."""
        return self._server is not None and self._server.started

    @property
    def port(self) -> int:
        """The bound port (useful with ``port=0``).

        Raises:
            RuntimeError: If the server is not running.

        """
        if self._server is None or not self._server.servers:
            raise RuntimeError("ConnectServer is not running")
        sockets = self._server.servers[0].sockets
        return int(sockets[0].getsockname()[1])

    @property
    def url(self) -> str:
        """Base URL of the running server."""
        return f"{self.options.protocol.value}://{self.options.host}:{self.port}"

    async def start(self) -> None:
        """Bind the socket and start serving; resolves once bound.

        Raises:
            RuntimeError: If the listener exits before binding.

        """
        if self._task is not None:
            raise RuntimeError("ConnectServer already started")
        config = uvicorn.Config(
            make_asgi_app(self._router),
            host=self.options.host,
            port=self.options.port,
            log_level=self.options.log_level,
            ssl_certfile=self.options.ssl_certfile,
            ssl_keyfile=self.options.ssl_keyfile,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        self._server = server
        self._task = asyncio.create_task(self._serve(server))
        while not server.started:
            if self._task.done():
                task, self._task, self._server = self._task, None, None
                exc = task.exception()
                if exc is not None:
                    raise exc
                raise RuntimeError(f"Server failed to bind {self.options.host}:{self.options.port}")
            await asyncio.sleep(0.01)
        _logger.info(
            "Listening on %s",
            self.url,
            extra={"host": self.options.host, "port": self.port, "protocol": self.options.protocol.value},
        )
        if self.options.callback is not None:
            self.options.callback()

    async def _serve(self, server: uvicorn.Server) -> None:
        # uvicorn exits the process when it cannot bind.
        try:
            await server.serve()
        except SystemExit as exc:
            raise OSError(f"Server failed to bind {self.options.host}:{self.options.port}") from exc

    async def close(self) -> None:
        """Stop serving and wait for shutdown; a no-op if never started."""
        task, server = self._task, self._server
        if task is None or server is None:
            return
        self._task = None
        self._server = None
        server.should_exit = True
        await task
        _logger.info("Server on %s:%s stopped", self.options.host, self.options.port)


class ServerStrategy:
    """Collects handlers, binds them to an HTTP router, and runs the listener.

    Handlers are keyed by pattern: a string, or any JSON-serializable
    object (serialized compactly).  Event handlers are recorded but never
    routed.
    """

    __slots__ = ("_binder", "_dispatcher", "_event_patterns", "_handlers", "_registry", "_server", "options")

    def __init__(
        self,
        options: ServerOptions | None = None,
        *,
        registry: ServiceRegistry | None = None,
        dispatcher: CallDispatcher | None = None,
        otel_config: OtelConfig | None = None,
    ) -> None:
        """Initialize.

        Args:
            options: Listener options; defaults to ``ServerOptions()``.
            registry: Descriptor registry; defaults to the process-wide one.
            dispatcher: Dispatcher building the adapters.
            otel_config: When given, the dispatcher is instrumented with
                OpenTelemetry (requires ``rpcbridge[otel]``).

        """
        self.options = options if options is not None else ServerOptions()
        self._registry = registry if registry is not None else default_registry()
        self._dispatcher = dispatcher if dispatcher is not None else CallDispatcher()
        self._handlers: dict[str, Handler] = {}
        self._event_patterns: set[str] = set()
        self._server: ConnectServer | None = None
        self._binder: ServiceBinder | None = None
        if otel_config is not None:
            from rpcbridge.otel import instrument_dispatcher

            instrument_dispatcher(self._dispatcher, otel_config)

    @property
    def dispatcher(self) -> CallDispatcher:
        """The dispatcher building invocation adapters."""
        return self._dispatcher

    @property
    def binder(self) -> ServiceBinder | None:
        """The binder used by the last :meth:`create_router` call."""
        return self._binder

    def add_handler(self, pattern: object, handler: Handler, is_event_handler: bool = False) -> str:
        """Register *handler* under *pattern*.

        Returns:
            The string route key.

        """
        route = pattern if isinstance(pattern, str) else json.dumps(pattern, separators=(",", ":"))
        if route in self._handlers:
            _logger.warning("Replacing handler for %s", route, extra={"route": route})
        self._handlers[route] = handler
        if is_event_handler:
            self._event_patterns.add(route)
        else:
            self._event_patterns.discard(route)
        return route

    def get_handlers(self) -> dict[str, Handler]:
        """All registered handlers, keyed by route."""
        return dict(self._handlers)

    def is_event_handler(self, route: str) -> bool:
        """Whether *route* was registered as an event handler."""
        return route in self._event_patterns

    def register_controller(self, controller: object) -> int:
        """Register every decorated method of *controller*.

        Returns:
            The number of handlers registered.

        """
        count = 0
        for key, handler in collect_handlers(controller):
            self.add_handler(key, handler)
            count += 1
        _logger.debug(
            "Registered %d handler(s) from %s",
            count,
            type(controller).__name__,
            extra={"controller": type(controller).__name__, "handler_count": count},
        )
        return count

    def create_router(self) -> HttpRouter:
        """Bind all request handlers onto a fresh router."""
        router = HttpRouter(prefix=self.options.prefix)
        binder = ServiceBinder(self._registry, dispatcher=self._dispatcher)
        pairs = [(route, handler) for route, handler in self._handlers.items() if route not in self._event_patterns]
        skipped_events = len(self._handlers) - len(pairs)
        if skipped_events:
            _logger.debug("Skipping %d event handler(s)", skipped_events)
        binder.bind(router, pairs)
        self._binder = binder
        return router

    async def listen(self, callback: ListenCallback | None = None) -> None:
        """Build the router and start the listener.

        With a *callback*, startup failures are delivered to it instead of
        raised; it is called with ``None`` on success.
        """
        try:
            router = self.create_router()
            binder = self._binder
            if binder is not None and binder.skipped_services:
                _logger.warning(
                    "%d service(s) have handlers but no descriptor: %s",
                    binder.skipped_services,
                    ", ".join(binder.skipped_service_names),
                )
            server = ConnectServer(self.options, router)
            await server.start()
            self._server = server
        except Exception as exc:
            if callback is None:
                raise
            _logger.error("Server failed to start: %s", exc, exc_info=True)
            callback(exc)
            return
        if callback is not None:
            callback(None)

    async def close(self) -> None:
        """Stop the listener; idempotent."""
        server, self._server = self._server, None
        if server is not None:
            await server.close()

    def unwrap(self) -> ConnectServer | None:
        """The running ``ConnectServer``, or ``None``."""
        return self._server
