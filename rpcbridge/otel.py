# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry instrumentation for the call dispatcher.

Provides ``OtelConfig`` and ``instrument_dispatcher()`` for adding
distributed tracing (spans) and metrics (counters, histograms) around every
adapter invocation.

Requires ``pip install rpcbridge[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from rpcbridge.otel import OtelConfig, instrument_dispatcher

    dispatcher = CallDispatcher()
    instrument_dispatcher(dispatcher)  # uses global TracerProvider / MeterProvider

When the HTTP transport received W3C ``traceparent`` / ``tracestate``
headers, the server span is parented to the remote span.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from opentelemetry import propagate, trace
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from rpcbridge.rpc._common import (
    TRACE_HEADERS_KEY,
    CallContext,
    CallDescriptor,
    CallStatistics,
    HookToken,
)
from rpcbridge.rpc._dispatch import CallDispatcher

_logger = logging.getLogger("rpcbridge.otel")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every dispatch.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_dispatcher(dispatcher: CallDispatcher, config: OtelConfig | None = None) -> CallDispatcher:
    """Attach OpenTelemetry tracing and metrics to a dispatcher.

    Call before serving; adapters read the installed hook on every call.

    Args:
        dispatcher: The ``CallDispatcher`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *dispatcher* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    dispatcher.add_dispatch_hook(_OtelDispatchHook(config, dispatcher.server_id))
    _logger.debug("Dispatcher %s instrumented with OpenTelemetry", dispatcher.server_id)
    return dispatcher


# ---------------------------------------------------------------------------
# Internal dispatch hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for on_dispatch_end."""

    span: trace.Span | None
    start_time: float
    service: str
    method: str
    streaming: str


class _OtelDispatchHook:
    """Implements ``DispatchHook`` with OpenTelemetry spans and metrics.

    The span is not made current: server-stream adapters are async
    generators whose steps may run in different contexts, so attaching and
    detaching a context token across a ``yield`` is not safe.
    """

    __slots__ = (
        "_config",
        "_counter",
        "_histogram",
        "_meter",
        "_server_id",
        "_tracer",
    )

    def __init__(self, config: OtelConfig, server_id: str) -> None:
        self._config = config
        self._server_id = server_id

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer("rpcbridge", "0.1.0")

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter("rpcbridge", "0.1.0")
        self._counter: Counter = self._meter.create_counter(
            "rpc.server.requests",
            unit="{request}",
            description="Number of RPC requests handled",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "rpc.server.duration",
            unit="s",
            description="Duration of RPC requests",
        )

    def on_dispatch_start(self, descriptor: CallDescriptor, context: object) -> HookToken:
        """Start a span and record the start time."""
        start_time = time.monotonic()
        span: trace.Span | None = None

        if self._config.enable_tracing:
            attrs: dict[str, str] = {
                "rpc.system": "connect_rpc",
                "rpc.service": descriptor.service,
                "rpc.method": descriptor.method,
                "rpc.rpcbridge.streaming": descriptor.streaming.value,
                "rpc.rpcbridge.server_id": self._server_id,
            }
            trace_headers: Mapping[str, str] | None = None
            if isinstance(context, CallContext):
                if context.request_id:
                    attrs["rpc.rpcbridge.request_id"] = context.request_id
                remote_addr = context.transport_metadata.get("remote_addr")
                if remote_addr:
                    attrs["net.peer.ip"] = str(remote_addr)
                user_agent = context.transport_metadata.get("user_agent")
                if user_agent:
                    attrs["user_agent.original"] = str(user_agent)
                trace_headers = context.transport_metadata.get(TRACE_HEADERS_KEY)
            attrs.update(self._config.custom_attributes)

            span = self._tracer.start_span(
                f"rpcbridge/{descriptor.service}/{descriptor.method}",
                kind=SpanKind.SERVER,
                attributes=attrs,
                context=propagate.extract(trace_headers) if trace_headers else None,
            )

        return _OtelHookToken(
            span=span,
            start_time=start_time,
            service=descriptor.service,
            method=descriptor.method,
            streaming=descriptor.streaming.value,
        )

    def on_dispatch_end(
        self,
        token: HookToken,
        descriptor: CallDescriptor,
        error: BaseException | None,
        *,
        stats: CallStatistics | None = None,
    ) -> None:
        """End the span and record metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        status = "error" if error is not None else "ok"

        if token.span is not None:
            if error is not None:
                token.span.set_status(StatusCode.ERROR, str(error) or type(error).__name__)
                token.span.set_attribute("rpc.rpcbridge.error_type", type(error).__name__)
                if self._config.record_exceptions:
                    token.span.record_exception(error)
            else:
                token.span.set_status(StatusCode.OK)
            if stats is not None:
                token.span.set_attribute("rpc.rpcbridge.values_in", stats.values_in)
                token.span.set_attribute("rpc.rpcbridge.values_out", stats.values_out)
            token.span.end()

        if self._config.enable_metrics:
            metric_attrs: dict[str, str] = {
                "rpc.system": "connect_rpc",
                "rpc.service": token.service,
                "rpc.method": token.method,
                "rpc.rpcbridge.streaming": token.streaming,
                "status": status,
            }
            self._counter.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)
