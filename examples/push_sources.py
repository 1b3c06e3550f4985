"""Push sources and the push-to-pull bridge, without any transport.

A ``PushSource`` delivers values whenever its producer decides to; the
bridge lets ordinary ``async for`` code consume them in order, and tears
the producer down however the loop ends.

Run::

    python examples/push_sources.py
"""

from __future__ import annotations

import asyncio
from typing import Any

from rpcbridge import PushSource, StreamingKind
from rpcbridge.rpc import CallDispatcher, PushPullBridge, Subscriber


def ticker(interval: float, count: int) -> PushSource[int]:
    """Push *count* ticks from event-loop timers."""

    def produce(subscriber: Subscriber[int]) -> Any:
        loop = asyncio.get_running_loop()
        handles: list[asyncio.TimerHandle] = []

        def tick(n: int) -> None:
            subscriber.on_value(n)
            if n + 1 == count:
                subscriber.on_complete()

        for n in range(count):
            handles.append(loop.call_later(interval * (n + 1), tick, n))

        def teardown() -> None:
            for handle in handles:
                handle.cancel()
            print("ticker stopped")

        return teardown

    return PushSource(produce)


async def demo() -> None:
    """Consume push sources with ``async for`` and through a dispatcher."""
    ticks = [n async for n in ticker(0.001, 5)]
    print(f"ticks={ticks}")

    async with PushPullBridge(ticker(0.001, 100)) as bridge:
        async for n in bridge:
            if n == 2:
                break
    print(f"stopped early at {n}")

    dispatcher = CallDispatcher(server_id="demo")
    latest = dispatcher.build_adapter(StreamingKind.UNARY, lambda request, ctx: PushSource.of("a", "b", "c"))
    print(f"unary takes the last value: {await latest(None)}")

    feed = dispatcher.build_adapter(StreamingKind.SERVER_STREAM, lambda request, ctx: ticker(0.001, request))
    print(f"server stream: {[n async for n in feed(3)]}")


def main() -> None:
    """Run the example."""
    asyncio.run(demo())


if __name__ == "__main__":
    main()
