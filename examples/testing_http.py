"""Testing the HTTP transport without a running server.

``httpx.ASGITransport`` feeds requests straight into the Starlette app, so
the full stack (routing, envelopes, error mapping, dispatch) runs
in-process with zero network I/O.

Run::

    python examples/testing_http.py
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import httpx
from starlette.applications import Starlette

from rpcbridge import (
    ConnectClient,
    RpcError,
    ServiceBinder,
    ServiceDescriptor,
    ServiceRegistry,
    collect_handlers,
    connect_method,
    connect_server_streaming,
    connect_service,
    make_asgi_app,
)
from rpcbridge.http import HttpRouter

REGISTRY = ServiceRegistry()
DEMO = ServiceDescriptor("demo.v1.DemoService", methods=("Greet", "Countdown"))


@connect_service(DEMO, registry=REGISTRY)
class DemoService:
    """Service used for HTTP testing examples."""

    @connect_method(method="Greet")
    def greet(self, request: dict[str, Any], ctx: Any) -> dict[str, Any]:
        """Greet by name."""
        if not request.get("name"):
            raise ValueError("name is required")
        return {"greeting": f"Hello, {request['name']}!"}

    @connect_server_streaming(method="Countdown")
    async def countdown(self, request: dict[str, Any], ctx: Any) -> AsyncIterator[dict[str, Any]]:
        """Count down from *n* to 1."""
        for n in range(request["n"], 0, -1):
            yield {"n": n}


def build_app() -> Starlette:
    """Bind the demo controller to a router and wrap it as an ASGI app."""
    router = HttpRouter()
    ServiceBinder(REGISTRY).bind(router, collect_handlers(DemoService()))
    return make_asgi_app(router)


async def demo() -> None:
    """Call the in-process app through ``ConnectClient``."""
    transport = httpx.ASGITransport(app=build_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        client = ConnectClient(client=http)
        reply = await client.unary(DEMO.type_name, "Greet", {"name": "Test"})
        print(reply["greeting"])
        countdown = [item["n"] async for item in client.server_stream(DEMO.type_name, "Countdown", {"n": 3})]
        print(f"countdown={countdown}")
        try:
            await client.unary(DEMO.type_name, "Greet", {})
        except RpcError as exc:
            print(f"error code={exc.code} message={exc.message}")


def main() -> None:
    """Run the example."""
    asyncio.run(demo())


if __name__ == "__main__":
    main()
