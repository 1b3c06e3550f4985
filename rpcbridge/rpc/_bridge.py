# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Push-to-pull bridge: consume a :class:`PushSource` with ``async for``.

The bridge subscribes lazily on the first pull.  Producer events are
buffered in an unbounded FIFO queue; the pull loop yields buffered values
one per step and suspends on a single-slot wake future only when the queue
is empty and the source is still active.

Delivery is order-preserving and drain-before-error: values emitted before
a failure are all yielded before the failure is raised.  The subscription
is cancelled exactly once on every exit path: exhaustion, error,
``aclose()``, task cancellation at the suspension point, or garbage
collection of an abandoned bridge.
"""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Self

from rpcbridge.rpc._common import _DEBUG_BRIDGE, _logger

if TYPE_CHECKING:
    from rpcbridge.rpc._push import PushSource, Subscription


class Termination(Enum):
    """How (and whether) the push source has finished."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"


class PushPullBridge[T]:
    """Pull-style async iterator over a push source.

    One bridge per call; never share an instance across consumers.  Use it
    as an async context manager (or ``contextlib.aclosing``) when the
    consumer may stop early.
    """

    __slots__ = ("_error", "_queue", "_released", "_source", "_state", "_subscription", "_wake")

    def __init__(self, source: PushSource[T]) -> None:
        """Wrap *source*; nothing is subscribed until the first pull."""
        self._source = source
        self._queue: deque[T] = deque()
        self._state = Termination.ACTIVE
        self._error: BaseException | None = None
        self._wake: asyncio.Future[None] | None = None
        self._subscription: Subscription | None = None
        self._released = False

    # -----------------------------------------------------------------------
    # Producer side (Observer protocol)
    # -----------------------------------------------------------------------

    def on_value(self, value: T) -> None:
        """Buffer a value and wake the pull loop."""
        if self._state is not Termination.ACTIVE or self._released:
            _logger.debug("Bridge ignoring value pushed after termination")
            return
        self._queue.append(value)
        if _DEBUG_BRIDGE:
            _logger.debug("Bridge buffered value (queued=%d)", len(self._queue))
        self._notify()

    def on_complete(self) -> None:
        """Record completion and wake the pull loop."""
        if self._state is not Termination.ACTIVE:
            return
        self._state = Termination.COMPLETED
        if _DEBUG_BRIDGE:
            _logger.debug("Bridge source completed (queued=%d)", len(self._queue))
        self._notify()

    def on_error(self, error: BaseException) -> None:
        """Record the failure and wake the pull loop."""
        if self._state is not Termination.ACTIVE:
            _logger.debug("Bridge ignoring error pushed after termination: %r", error)
            return
        self._state = Termination.ERRORED
        self._error = error
        if _DEBUG_BRIDGE:
            _logger.debug("Bridge source errored: %r (queued=%d)", error, len(self._queue))
        self._notify()

    def _notify(self) -> None:
        wake = self._wake
        if wake is not None and not wake.done():
            wake.set_result(None)

    # -----------------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------------

    @property
    def state(self) -> Termination:
        """Current termination signal of the source."""
        return self._state

    @property
    def released(self) -> bool:
        """Whether the subscription has been released."""
        return self._released

    def __aiter__(self) -> Self:
        """Return self."""
        return self

    async def __anext__(self) -> T:
        """Return the next value, raise the source's error, or stop."""
        if self._subscription is None and not self._released:
            self._subscription = self._source.subscribe(self)
        while True:
            if self._queue:
                return self._queue.popleft()
            if self._released:
                raise StopAsyncIteration
            if self._state is Termination.ERRORED:
                error = self._error
                self._release()
                assert error is not None
                raise error
            if self._state is Termination.COMPLETED:
                self._release()
                raise StopAsyncIteration
            wake: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._wake = wake
            try:
                await wake
            except asyncio.CancelledError:
                self._release()
                raise
            finally:
                self._wake = None

    async def aclose(self) -> None:
        """Abandon the sequence, releasing the subscription."""
        self._release()

    async def __aenter__(self) -> Self:
        """Enter the context; the bridge is released on exit."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release the subscription."""
        self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._queue.clear()
        subscription = self._subscription
        if subscription is not None:
            if _DEBUG_BRIDGE:
                _logger.debug("Bridge releasing subscription (state=%s)", self._state.value)
            subscription.cancel()

    def __del__(self) -> None:
        """Release a subscription left open by an abandoned bridge."""
        if not self._released and self._subscription is not None:
            self._release()

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return (
            f"PushPullBridge({self._source!r}, state={self._state.value}, "
            f"queued={len(self._queue)}, released={self._released})"
        )
