# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Push-style streams: observers, subscriptions, and the ``PushSource`` type.

A :class:`PushSource` wraps a *producer* function.  Each call to
:meth:`PushSource.subscribe` runs the producer with a fresh
:class:`Subscriber`, which forwards ``on_value`` / ``on_complete`` /
``on_error`` events to the observer while enforcing the push contract:
zero or more values, then at most one terminal event.  Events that
arrive after the terminal event (or after cancellation) are dropped.

The producer may return a teardown callable; it runs exactly once, when
the subscription is cancelled or the stream terminates, whichever comes
first.

Example::

    def ticker(subscriber):
        handle = loop.call_later(1.0, subscriber.on_value, "tick")
        return handle.cancel

    source = PushSource(ticker)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Protocol

from rpcbridge.rpc._common import _DEBUG_BRIDGE, _logger

if TYPE_CHECKING:
    from rpcbridge.rpc._bridge import PushPullBridge

type Teardown = Callable[[], None]


class Observer[T](Protocol):
    """Receives the events of a push source."""

    def on_value(self, value: T) -> None:
        """Receive the next value."""
        ...

    def on_complete(self) -> None:
        """Receive successful completion."""
        ...

    def on_error(self, error: BaseException) -> None:
        """Receive a terminal failure."""
        ...


class Subscription:
    """Live link between an observer and a push source.

    ``cancel()`` is idempotent: teardowns run exactly once no matter how many
    times it is called.
    """

    __slots__ = ("_closed", "_teardowns")

    def __init__(self, teardown: Teardown | None = None) -> None:
        """Initialize, optionally with a first teardown callable."""
        self._closed = False
        self._teardowns: list[Teardown] = [teardown] if teardown is not None else []

    @property
    def closed(self) -> bool:
        """Whether the subscription has been cancelled."""
        return self._closed

    def add(self, teardown: Teardown) -> None:
        """Register a teardown; runs immediately if already cancelled."""
        if self._closed:
            teardown()
            return
        self._teardowns.append(teardown)

    def cancel(self) -> None:
        """Release the subscription and run all teardowns (once)."""
        if self._closed:
            return
        self._closed = True
        teardowns, self._teardowns = self._teardowns, []
        for teardown in teardowns:
            try:
                teardown()
            except Exception:
                _logger.warning("Subscription teardown %r failed", teardown, exc_info=True)


class Subscriber[T]:
    """The producer-facing side of one subscription.

    Forwards events to the observer until the first terminal event or until
    the subscription is cancelled; later events are no-ops.
    """

    __slots__ = ("_observer", "_stopped", "_subscription")

    def __init__(self, observer: Observer[T], subscription: Subscription) -> None:
        """Bind *observer* to *subscription*."""
        self._observer = observer
        self._subscription = subscription
        self._stopped = False

    @property
    def closed(self) -> bool:
        """Whether further events will be dropped."""
        return self._stopped or self._subscription.closed

    def on_value(self, value: T) -> None:
        """Emit a value."""
        if self.closed:
            if _DEBUG_BRIDGE:
                _logger.debug("Dropping value pushed after termination: %r", value)
            return
        self._observer.on_value(value)

    def on_complete(self) -> None:
        """Complete the stream."""
        if self.closed:
            return
        self._stopped = True
        try:
            self._observer.on_complete()
        finally:
            self._subscription.cancel()

    def on_error(self, error: BaseException) -> None:
        """Fail the stream with *error*."""
        if self.closed:
            _logger.debug("Dropping error pushed after termination: %r", error)
            return
        self._stopped = True
        try:
            self._observer.on_error(error)
        finally:
            self._subscription.cancel()


type Producer[T] = Callable[[Subscriber[T]], Teardown | None]


class PushSource[T]:
    """A producer that proactively delivers values to its subscribers.

    Cold: the producer runs once per subscription.  Iterating a
    ``PushSource`` with ``async for`` goes through a
    :class:`~rpcbridge.rpc.PushPullBridge`.
    """

    __slots__ = ("_producer",)

    def __init__(self, producer: Producer[T]) -> None:
        """Wrap *producer*, called with a :class:`Subscriber` on each subscription."""
        self._producer = producer

    def subscribe(self, observer: Observer[T]) -> Subscription:
        """Start the producer, routing its events to *observer*.

        A producer that raises synchronously is treated as an ``on_error``
        event.

        Returns:
            The subscription; call ``cancel()`` to release it.

        """
        subscription = Subscription()
        subscriber = Subscriber(observer, subscription)
        try:
            teardown = self._producer(subscriber)
        except Exception as exc:
            subscriber.on_error(exc)
        else:
            if teardown is not None:
                subscription.add(teardown)
        return subscription

    def __aiter__(self) -> PushPullBridge[T]:
        """Return a pull-style view of this source."""
        from rpcbridge.rpc._bridge import PushPullBridge

        return PushPullBridge(self)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        name = getattr(self._producer, "__qualname__", type(self._producer).__name__)
        return f"PushSource({name})"

    # -----------------------------------------------------------------------
    # Factories
    # -----------------------------------------------------------------------

    @classmethod
    def of(cls, *values: T) -> PushSource[T]:
        """Emit *values* synchronously on subscribe, then complete."""
        return cls.from_iterable(values)

    @classmethod
    def empty(cls) -> PushSource[T]:
        """Complete immediately without emitting."""
        return cls.from_iterable(())

    @classmethod
    def failed(cls, error: BaseException) -> PushSource[T]:
        """Fail immediately with *error*."""

        def produce(subscriber: Subscriber[T]) -> None:
            subscriber.on_error(error)

        return cls(produce)

    @classmethod
    def from_iterable(cls, values: Iterable[T]) -> PushSource[T]:
        """Emit every item of *values* synchronously on subscribe, then complete.

        Stops early if the subscriber is cancelled while emitting.
        """

        def produce(subscriber: Subscriber[T]) -> None:
            for value in values:
                if subscriber.closed:
                    return
                subscriber.on_value(value)
            subscriber.on_complete()

        return cls(produce)

    @classmethod
    def from_awaitable(cls, awaitable: Awaitable[T]) -> PushSource[T]:
        """Emit the settled value of *awaitable*, then complete.

        If the awaitable fails, the stream errors without emitting.  A
        coroutine is scheduled as a task on the running loop; cancelling the
        subscription before it settles cancels that task.  Futures passed in
        by the caller are observed but never cancelled.
        """

        def produce(subscriber: Subscriber[T]) -> Teardown:
            owned = not asyncio.isfuture(awaitable)
            future: asyncio.Future[T] = asyncio.ensure_future(awaitable)

            def settle(done: asyncio.Future[T]) -> None:
                if done.cancelled():
                    subscriber.on_error(asyncio.CancelledError())
                    return
                exc = done.exception()
                if exc is not None:
                    subscriber.on_error(exc)
                    return
                subscriber.on_value(done.result())
                subscriber.on_complete()

            future.add_done_callback(settle)

            def teardown() -> None:
                future.remove_done_callback(settle)
                if owned and not future.done():
                    future.cancel()

            return teardown

        return cls(produce)

    @classmethod
    def from_async_iterable(cls, values: AsyncIterable[T]) -> PushSource[T]:
        """Drive *values* in a task, pushing each item as it arrives.

        Cancelling the subscription cancels the pumping task.
        """

        def produce(subscriber: Subscriber[T]) -> Teardown:
            async def pump() -> None:
                try:
                    async for value in values:
                        if subscriber.closed:
                            return
                        subscriber.on_value(value)
                except Exception as exc:
                    subscriber.on_error(exc)
                else:
                    subscriber.on_complete()

            task = asyncio.ensure_future(pump())

            def teardown() -> None:
                if asyncio.current_task() is not task:
                    task.cancel()

            return teardown

        return cls(produce)
