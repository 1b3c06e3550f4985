"""HTTP server example: a decorated controller served by uvicorn.

Start the server (port from ``RPCBRIDGE_PORT`` or the first argument)::

    python examples/greet_server.py 8234

Then run the client in another terminal::

    python examples/greet_client.py http://127.0.0.1:8234
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any

from rpcbridge import (
    CallContext,
    PushSource,
    ServerOptions,
    ServerStrategy,
    ServiceDescriptor,
    connect_bidi_streaming,
    connect_client_streaming,
    connect_method,
    connect_server_streaming,
    connect_service,
)
from rpcbridge.logging_utils import configure_json_logging

GREET = ServiceDescriptor("greet.v1.GreetService", methods=("Greet", "Countdown", "Fibonacci", "Sum", "Shout"))


# ---------------------------------------------------------------------------
# Service implementation
# ---------------------------------------------------------------------------


@connect_service(GREET)
class GreetService:
    """One handler per call shape."""

    @connect_method(method="Greet")
    async def greet(self, request: dict[str, Any], ctx: CallContext) -> dict[str, Any]:
        """Unary: return a greeting."""
        ctx.logger.info("Greeting %s", request["name"])
        return {"greeting": f"Hello, {request['name']}!"}

    @connect_server_streaming(method="Countdown")
    async def countdown(self, request: dict[str, Any], ctx: CallContext) -> AsyncIterator[dict[str, Any]]:
        """Server stream, pull style: an ``async def`` generator."""
        for n in range(request["start"], 0, -1):
            yield {"n": n}

    @connect_server_streaming(method="Fibonacci")
    def fibonacci(self, request: dict[str, Any], ctx: CallContext) -> PushSource[dict[str, Any]]:
        """Server stream, push style: values pushed by a producer."""

        def produce(subscriber: Any) -> None:
            a, b = 0, 1
            while a <= request["limit"] and not subscriber.closed:
                subscriber.on_value({"fib": a})
                a, b = b, a + b
            subscriber.on_complete()

        return PushSource(produce)

    @connect_client_streaming(method="Sum")
    async def sum(self, requests: AsyncIterator[dict[str, Any]], ctx: CallContext) -> dict[str, Any]:
        """Client stream: fold every request into one response."""
        total = 0
        async for item in requests:
            total += item["value"]
        return {"total": total}

    @connect_bidi_streaming(method="Shout")
    async def shout(self, requests: AsyncIterator[dict[str, Any]], ctx: CallContext) -> AsyncIterator[dict[str, Any]]:
        """Bidi stream: one response per request."""
        async for item in requests:
            yield {"text": item["text"].upper() + "!"}


def build_strategy(options: ServerOptions) -> ServerStrategy:
    """Create a strategy with the greet controller registered."""
    strategy = ServerStrategy(options)
    strategy.register_controller(GreetService())
    return strategy


async def serve(options: ServerOptions) -> None:
    """Listen until interrupted."""
    strategy = build_strategy(options)
    await strategy.listen()
    server = strategy.unwrap()
    assert server is not None
    print(f"Serving GreetService on {server.url}", flush=True)
    try:
        await asyncio.Event().wait()
    finally:
        await strategy.close()


def main() -> None:
    """Run the server."""
    configure_json_logging(logging.INFO)
    overrides: dict[str, Any] = {"port": int(sys.argv[1])} if len(sys.argv) > 1 else {}
    options = ServerOptions.from_env(**overrides)
    try:
        asyncio.run(serve(options))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
