# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for rpcbridge tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from rpcbridge.rpc import (
    PushSource,
    ServiceDescriptor,
    ServiceRegistry,
    Subscriber,
    connect_bidi_streaming,
    connect_client_streaming,
    connect_method,
    connect_server_streaming,
    connect_service,
)

# ---------------------------------------------------------------------------
# Push-source helpers
# ---------------------------------------------------------------------------


class ManualSource:
    """A push source driven by the test: records its subscriber and teardowns."""

    def __init__(self) -> None:
        self.subscriber: Subscriber[Any] | None = None
        self.subscribe_count = 0
        self.teardown_count = 0
        self.source: PushSource[Any] = PushSource(self._produce)

    def _produce(self, subscriber: Subscriber[Any]) -> Any:
        self.subscriber = subscriber
        self.subscribe_count += 1

        def teardown() -> None:
            self.teardown_count += 1

        return teardown

    def push(self, *values: Any) -> None:
        assert self.subscriber is not None
        for value in values:
            self.subscriber.on_value(value)

    def complete(self) -> None:
        assert self.subscriber is not None
        self.subscriber.on_complete()

    def fail(self, error: BaseException) -> None:
        assert self.subscriber is not None
        self.subscriber.on_error(error)


@pytest.fixture()
def manual_source() -> ManualSource:
    """A fresh manually-driven push source."""
    return ManualSource()


async def async_values(*values: Any) -> AsyncIterator[Any]:
    """Async generator yielding *values* with a suspension before each."""
    for value in values:
        yield value


# ---------------------------------------------------------------------------
# Registry + controller fixtures
# ---------------------------------------------------------------------------

GREET_DESCRIPTOR = ServiceDescriptor(
    "greet.v1.GreetService",
    methods=("Greet", "Countdown", "Sum", "Echo", "Fail", "Empty", "Boom", "Whoami", "Ticks"),
)


@pytest.fixture()
def registry() -> ServiceRegistry:
    """An isolated descriptor registry."""
    return ServiceRegistry()


def make_greet_controller(registry: ServiceRegistry) -> object:
    """Define and register a controller exercising every call shape."""

    @connect_service(GREET_DESCRIPTOR, registry=registry)
    class GreetService:
        @connect_method(method="Greet")
        async def greet(self, request: dict[str, Any], ctx: Any) -> dict[str, Any]:
            return {"greeting": f"Hello, {request['name']}!"}

        @connect_server_streaming(method="Countdown")
        async def countdown(self, request: dict[str, Any], ctx: Any) -> AsyncIterator[dict[str, Any]]:
            for n in range(request["start"], 0, -1):
                yield {"n": n}

        @connect_server_streaming(method="Ticks")
        def ticks(self, request: dict[str, Any], ctx: Any) -> PushSource[dict[str, Any]]:
            return PushSource.from_iterable({"tick": i} for i in range(request["count"]))

        @connect_client_streaming(method="Sum")
        async def sum(self, requests: AsyncIterator[dict[str, Any]], ctx: Any) -> dict[str, Any]:
            total = 0
            async for item in requests:
                total += item["value"]
            return {"total": total}

        @connect_bidi_streaming(method="Echo")
        async def echo(self, requests: AsyncIterator[dict[str, Any]], ctx: Any) -> AsyncIterator[dict[str, Any]]:
            async for item in requests:
                yield {"echo": item["text"].upper()}

        @connect_method(method="Fail")
        async def fail(self, request: dict[str, Any], ctx: Any) -> dict[str, Any]:
            raise ValueError("name must not be empty")

        @connect_method(method="Empty")
        def empty(self, request: dict[str, Any], ctx: Any) -> PushSource[Any]:
            return PushSource.empty()

        @connect_server_streaming(method="Boom")
        def boom(self, request: dict[str, Any], ctx: Any) -> PushSource[Any]:
            def produce(subscriber: Subscriber[Any]) -> None:
                subscriber.on_value({"n": 1})
                subscriber.on_error(RuntimeError("boom"))

            return PushSource(produce)

        @connect_method(method="Whoami")
        def whoami(self, request: dict[str, Any], ctx: Any) -> dict[str, Any]:
            return {
                "request_id": ctx.request_id,
                "user_agent": ctx.transport_metadata.get("user_agent", ""),
                "service": ctx.service,
                "method": ctx.method,
            }

    return GreetService()
