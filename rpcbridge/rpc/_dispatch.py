# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Call-shape dispatch: wrap raw handlers as transport invocation adapters."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping
from typing import Any, assert_never

from rpcbridge.rpc._common import (
    _EMPTY_TRANSPORT_METADATA,
    CallContext,
    CallDescriptor,
    CallStatistics,
    CallStatus,
    DispatchHook,
    HookToken,
    StreamingKind,
    _access_logger,
    _current_request_id,
    _logger,
    _register_dispatch_hook,
)
from rpcbridge.rpc._normalize import drain_last, last_value, normalize, to_pull_sequence

type Handler = Callable[[Any, Any], Any]

# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def _request_id_for(context: object) -> str:
    if isinstance(context, CallContext) and context.request_id:
        return context.request_id
    return _current_request_id.get()


def _transport_metadata_for(context: object) -> Mapping[str, Any]:
    if isinstance(context, CallContext):
        return context.transport_metadata
    return _EMPTY_TRANSPORT_METADATA


def _log_method_error(descriptor: CallDescriptor, server_id: str, context: object, exc: BaseException) -> str:
    """Log a handler failure and return the exception class name.

    Returns:
        The exception class name (for use as ``error_type``).

    """
    error_type = type(exc).__name__
    extra: dict[str, object] = {
        "server_id": server_id,
        "service": descriptor.service,
        "method": descriptor.method,
        "error_type": error_type,
    }
    request_id = _request_id_for(context)
    if request_id:
        extra["request_id"] = request_id
    _logger.error(
        "Error in %s.%s: %s",
        descriptor.service,
        descriptor.method,
        exc,
        exc_info=True,
        extra=extra,
    )
    return error_type


def _emit_access_log(
    descriptor: CallDescriptor,
    server_id: str,
    context: object,
    duration_ms: float,
    status: CallStatus,
    error_type: str = "",
    stats: CallStatistics | None = None,
) -> None:
    """Emit a structured access log record for a completed call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    try:
        extra: dict[str, object] = {
            "server_id": server_id,
            "service": descriptor.service,
            "method": descriptor.method,
            "streaming": descriptor.streaming.value,
            "remote_addr": _transport_metadata_for(context).get("remote_addr", ""),
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "error_type": error_type,
        }
        request_id = _request_id_for(context)
        if request_id:
            extra["request_id"] = request_id
        if stats is not None:
            extra["values_in"] = stats.values_in
            extra["values_out"] = stats.values_out
        _access_logger.info(
            "%s.%s %s",
            descriptor.service,
            descriptor.method,
            status,
            extra=extra,
        )
    except Exception:
        _logger.debug("Access log emission failed", exc_info=True)


# ---------------------------------------------------------------------------
# Per-call bookkeeping
# ---------------------------------------------------------------------------


class _CallRecord:
    """Timing, statistics and hook token for one in-flight call."""

    __slots__ = ("context", "descriptor", "hook", "server_id", "start", "stats", "token")

    def __init__(
        self,
        descriptor: CallDescriptor,
        server_id: str,
        hook: DispatchHook | None,
        context: object,
    ) -> None:
        self.descriptor = descriptor
        self.server_id = server_id
        self.context = context
        self.stats = CallStatistics()
        self.start = time.monotonic()
        self.token: HookToken = None
        self.hook = hook
        if hook is not None:
            try:
                self.token = hook.on_dispatch_start(descriptor, context)
            except Exception:
                _logger.debug("Dispatch hook start failed", exc_info=True)
                self.hook = None

    def fail(self, exc: BaseException) -> str:
        return _log_method_error(self.descriptor, self.server_id, self.context, exc)

    def finish(self, status: CallStatus, error: BaseException | None, error_type: str = "") -> None:
        duration_ms = (time.monotonic() - self.start) * 1000
        _emit_access_log(
            self.descriptor,
            self.server_id,
            self.context,
            duration_ms,
            status,
            error_type,
            stats=self.stats,
        )
        if self.hook is not None:
            try:
                self.hook.on_dispatch_end(self.token, self.descriptor, error, stats=self.stats)
            except Exception:
                _logger.debug("Dispatch hook end failed", exc_info=True)


class _CountingRequests:
    """Pull sequence of requests that counts what the handler consumes."""

    __slots__ = ("_requests", "_stats")

    def __init__(self, requests: AsyncIterable[Any], stats: CallStatistics) -> None:
        self._requests = aiter(requests)
        self._stats = stats

    def __aiter__(self) -> _CountingRequests:
        return self

    async def __anext__(self) -> Any:
        value = await anext(self._requests)
        self._stats.values_in += 1
        return value

    async def aclose(self) -> None:
        aclose = getattr(self._requests, "aclose", None)
        if aclose is not None:
            await aclose()


async def _close_requests(request: Any) -> None:
    """Release a request sequence the adapter wrapped, consumed or not."""
    if isinstance(request, _CountingRequests):
        await request.aclose()


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class InvocationAdapter:
    """A handler wrapped for one call shape.

    Calling the adapter with ``(request, context)`` returns a coroutine
    resolving to the response value (unary and client-stream) or an async
    iterator of responses (server-stream and bidi).  For client-stream and
    bidi calls, ``request`` is an async iterable of request values.
    """

    __slots__ = ("_dispatcher", "_invoke", "descriptor", "handler")

    def __init__(self, dispatcher: CallDispatcher, descriptor: CallDescriptor, handler: Handler) -> None:
        """Bind *handler* to *descriptor*; called by :meth:`CallDispatcher.build_adapter`."""
        self._dispatcher = dispatcher
        self.descriptor = descriptor
        self.handler = handler
        self._invoke: Callable[[Any, Any], Any]
        match descriptor.streaming:
            case StreamingKind.UNARY | StreamingKind.CLIENT_STREAM:
                self._invoke = self._call_single
            case StreamingKind.SERVER_STREAM | StreamingKind.BIDI_STREAM:
                self._invoke = self._call_stream
            case _:
                assert_never(descriptor.streaming)

    @property
    def streaming(self) -> StreamingKind:
        """The call shape this adapter serves."""
        return self.descriptor.streaming

    def __call__(self, request: Any, context: Any = None) -> Any:
        """Invoke the handler for one call."""
        return self._invoke(request, context)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        name = getattr(self.handler, "__qualname__", type(self.handler).__name__)
        return f"InvocationAdapter({self.descriptor}, {self.streaming.name}, handler={name})"

    def _begin(self, request: Any, context: Any) -> tuple[_CallRecord, Any]:
        record = _CallRecord(self.descriptor, self._dispatcher.server_id, self._dispatcher.dispatch_hook, context)
        if self.streaming.client_streams:
            request = _CountingRequests(request, record.stats)
        else:
            record.stats.values_in = 1
        return record, request

    async def _resolve(self, request: Any, context: Any) -> Any:
        result = self.handler(request, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _call_single(self, request: Any, context: Any) -> Any:
        record, request = self._begin(request, context)
        status: CallStatus = "ok"
        error: BaseException | None = None
        error_type = ""
        try:
            result = await self._resolve(request, context)
            if isinstance(result, AsyncIterable):
                value = await drain_last(result, self.descriptor)
            else:
                value = await last_value(normalize(result), self.descriptor)
            record.stats.values_out = 1
            return value
        except asyncio.CancelledError as exc:
            status, error = "cancelled", exc
            raise
        except Exception as exc:
            status, error = "error", exc
            error_type = record.fail(exc)
            raise
        finally:
            try:
                await _close_requests(request)
            finally:
                record.finish(status, error, error_type)

    async def _call_stream(self, request: Any, context: Any) -> AsyncIterator[Any]:
        record, request = self._begin(request, context)
        status: CallStatus = "ok"
        error: BaseException | None = None
        error_type = ""
        try:
            sequence = to_pull_sequence(await self._resolve(request, context))
            try:
                async for value in sequence:
                    record.stats.values_out += 1
                    yield value
            finally:
                aclose = getattr(sequence, "aclose", None)
                if aclose is not None:
                    await aclose()
        except (GeneratorExit, asyncio.CancelledError) as exc:
            status, error = "cancelled", exc
            raise
        except Exception as exc:
            status, error = "error", exc
            error_type = record.fail(exc)
            raise
        finally:
            try:
                await _close_requests(request)
            finally:
                record.finish(status, error, error_type)


class CallDispatcher:
    """Builds invocation adapters and carries the hooks and identity they share."""

    __slots__ = ("_dispatch_hook", "_server_id")

    def __init__(self, *, server_id: str | None = None) -> None:
        """Initialize.

        Args:
            server_id: Identifier included in log records; auto-generated
                if ``None``.

        """
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._dispatch_hook: DispatchHook | None = None

    @property
    def server_id(self) -> str:
        """Identifier included in access and error log records."""
        return self._server_id

    @property
    def dispatch_hook(self) -> DispatchHook | None:
        """The installed dispatch hook, if any."""
        return self._dispatch_hook

    def add_dispatch_hook(self, hook: DispatchHook) -> None:
        """Install *hook*; several hooks run in installation order."""
        self._dispatch_hook = _register_dispatch_hook(self._dispatch_hook, hook)

    def build_adapter(
        self,
        descriptor: CallDescriptor | StreamingKind | str,
        handler: Handler,
    ) -> InvocationAdapter:
        """Wrap *handler* for the call shape named by *descriptor*.

        Args:
            descriptor: A full descriptor, or just a streaming kind (member,
                value or name), in which case the handler's name is used as
                the method name.
            handler: ``handler(request, context)``; may return a value, an
                awaitable, a ``PushSource``, or an async iterable.

        Raises:
            ConfigurationError: If the streaming kind is unknown.

        """
        if not isinstance(descriptor, CallDescriptor):
            kind = StreamingKind.parse(descriptor)
            name = getattr(handler, "__name__", type(handler).__name__)
            descriptor = CallDescriptor(service="", method=name, streaming=kind)
        return InvocationAdapter(self, descriptor, handler)
