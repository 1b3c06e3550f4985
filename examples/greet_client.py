"""HTTP client example: call every method of ``greet_server.py``.

Run (after starting the server)::

    python examples/greet_client.py http://127.0.0.1:8234
"""

from __future__ import annotations

import asyncio
import sys

from rpcbridge import ConnectClient, RpcError

SERVICE = "greet.v1.GreetService"


async def run(client: ConnectClient) -> None:
    """Exercise each call shape and print the results."""
    reply = await client.unary(SERVICE, "Greet", {"name": "World"})
    print(reply["greeting"])

    countdown = [item["n"] async for item in client.server_stream(SERVICE, "Countdown", {"start": 3})]
    print(f"countdown={countdown}")

    fibs = [item["fib"] async for item in client.server_stream(SERVICE, "Fibonacci", {"limit": 10})]
    print(f"fibonacci={fibs}")

    total = await client.client_stream(SERVICE, "Sum", [{"value": v} for v in (1, 2, 3, 4)])
    print(f"sum={total['total']}")

    async for item in client.bidi_stream(SERVICE, "Shout", [{"text": "hello"}, {"text": "bye"}]):
        print(item["text"])

    try:
        await client.unary(SERVICE, "Missing", {})
    except RpcError as exc:
        print(f"error code={exc.code}")


async def _main(url: str) -> None:
    async with ConnectClient(url) as client:
        await run(client)


def main() -> None:
    """Run the client."""
    url = sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8234"
    asyncio.run(_main(url))


if __name__ == "__main__":
    main()
