# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Result normalization: every handler result becomes a ``PushSource``."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterable, AsyncIterator, Generator
from typing import Any

from rpcbridge.rpc._bridge import PushPullBridge
from rpcbridge.rpc._common import CallDescriptor, EmptyResultError, UnsupportedShapeError, _logger
from rpcbridge.rpc._push import PushSource


def normalize(result: object) -> PushSource[Any]:
    """Convert a handler result into a push source.

    * a ``PushSource`` is returned unchanged;
    * an awaitable emits its settled value then completes, or errors
      without emitting;
    * an async iterable is pumped in a task;
    * any other object is an immediate value: emitted once, then completed.

    Raises:
        UnsupportedShapeError: For synchronous generators, which are
            ambiguous between a value and a stream.

    """
    if isinstance(result, PushSource):
        return result
    if inspect.isawaitable(result):
        return PushSource.from_awaitable(result)
    if isinstance(result, Generator):
        raise UnsupportedShapeError(result)
    if isinstance(result, AsyncIterable):
        return PushSource.from_async_iterable(result)
    return PushSource.of(result)


def to_pull_sequence(result: object) -> AsyncIterator[Any]:
    """Return a pull-style view of a handler result.

    Async iterables (``async def`` generators, pull-style handlers) pass
    through; everything else is normalized and bridged.
    """
    if isinstance(result, PushSource):
        return PushPullBridge(result)
    if isinstance(result, AsyncIterable):
        return aiter(result)
    return PushPullBridge(normalize(result))


class _LastValueObserver:
    """Remembers the most recent value and settles a future on termination."""

    __slots__ = ("count", "future", "value")

    def __init__(self, future: asyncio.Future[Any]) -> None:
        self.future = future
        self.value: Any = None
        self.count = 0

    def on_value(self, value: Any) -> None:
        self.value = value
        self.count += 1

    def on_complete(self) -> None:
        if not self.future.done():
            self.future.set_result(self.value)

    def on_error(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


def _settle_last(count: int, descriptor: CallDescriptor | None) -> None:
    if count == 0:
        if descriptor is None:
            raise EmptyResultError()
        raise EmptyResultError(descriptor.service, descriptor.method)
    if count > 1:
        _logger.debug(
            "Discarded %d earlier value(s); returning the last of %d",
            count - 1,
            count,
            extra={"method": descriptor.method if descriptor else "", "values_out": count},
        )


async def last_value(source: PushSource[Any], descriptor: CallDescriptor | None = None) -> Any:
    """Await *source* and return the last value emitted before completion.

    Raises:
        EmptyResultError: If the source completes without emitting.

    The source's own error propagates unchanged.  Cancelling the awaiting
    task cancels the subscription.
    """
    future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
    observer = _LastValueObserver(future)
    subscription = source.subscribe(observer)
    try:
        value = await future
    finally:
        subscription.cancel()
    _settle_last(observer.count, descriptor)
    return value


async def drain_last(values: AsyncIterable[Any], descriptor: CallDescriptor | None = None) -> Any:
    """Drain an async iterable and return its last item (same rule as :func:`last_value`)."""
    count = 0
    last: Any = None
    iterator = aiter(values)
    try:
        async for last in iterator:  # noqa: B007
            count += 1
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
    _settle_last(count, descriptor)
    return last
