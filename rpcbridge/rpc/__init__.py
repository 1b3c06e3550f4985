# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport-agnostic streaming bridge and call-dispatch engine.

One handler function, written either as a *push* producer or as a *pull*
consumer, is exposed uniformly across four call shapes.

Call Shapes
-----------
- **Unary** (``no_stream``): one request, one response
- **Server stream** (``rx_stream``): one request, many responses
- **Client stream** (``pt_stream``): many requests, one response
- **Bidi stream** (``duplex_stream``): many requests, many responses

Handlers are called as ``handler(request, ctx)``; for client and bidi
streams ``request`` is an async iterator of request values.  A handler may
return:

- an immediate value,
- an awaitable (``async def`` methods, futures, tasks),
- a :class:`PushSource` (push style), or
- an async iterable (``async def`` generators, pull style).

Single-response shapes resolve to the **last** value emitted before
completion; earlier values are discarded (logged at DEBUG).  A stream that
completes without emitting fails with :class:`EmptyResultError`.

Push-to-Pull Bridge
-------------------
A :class:`PushSource` is consumed through a :class:`PushPullBridge`: an
unbounded FIFO buffer plus a single wake future.  Values arrive in emission
order; an error surfaces only after every earlier value has been yielded;
the subscription is cancelled exactly once on every exit path.

Registration
------------
Handler keys are compact JSON ``{"service", "rpc", "streaming"}``.
:class:`ServiceBinder` groups handlers by service into a read-only handler
table and attaches each sub-table to a routing surface under the
:class:`ServiceDescriptor` found in an explicit :class:`ServiceRegistry`.
Services with no registered descriptor are skipped, counted, and logged at
WARNING.

"""

from __future__ import annotations

from rpcbridge.rpc._bridge import PushPullBridge, Termination
from rpcbridge.rpc._common import (
    _EMPTY_TRANSPORT_METADATA,
    TRACE_HEADERS_KEY,
    CallContext,
    CallDescriptor,
    CallStatistics,
    CallStatus,
    ConfigurationError,
    DispatchHook,
    EmptyResultError,
    HookToken,
    RpcBridgeError,
    RpcError,
    StreamingKind,
    UnsupportedShapeError,
    _access_logger,
    _ContextLoggerAdapter,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from rpcbridge.rpc._decorators import (
    collect_handlers,
    connect_bidi_streaming,
    connect_client_streaming,
    connect_method,
    connect_server_streaming,
    connect_service,
    method_descriptors,
)
from rpcbridge.rpc._dispatch import (
    CallDispatcher,
    Handler,
    InvocationAdapter,
    _emit_access_log,
    _log_method_error,
)
from rpcbridge.rpc._normalize import drain_last, last_value, normalize, to_pull_sequence
from rpcbridge.rpc._push import Observer, Producer, PushSource, Subscriber, Subscription, Teardown
from rpcbridge.rpc._registry import (
    HandlerTable,
    RoutingSurface,
    ServiceBinder,
    ServiceDescriptor,
    ServiceHandlers,
    ServiceRegistry,
    add_services_to_router,
    create_service_handlers,
    default_registry,
)

__all__ = [
    # Push / pull
    "Observer",
    "Producer",
    "PushPullBridge",
    "PushSource",
    "Subscriber",
    "Subscription",
    "Teardown",
    "Termination",
    # Normalization
    "drain_last",
    "last_value",
    "normalize",
    "to_pull_sequence",
    # Dispatch
    "CallDescriptor",
    "CallDispatcher",
    "Handler",
    "InvocationAdapter",
    "StreamingKind",
    # Registry
    "HandlerTable",
    "RoutingSurface",
    "ServiceBinder",
    "ServiceDescriptor",
    "ServiceHandlers",
    "ServiceRegistry",
    "add_services_to_router",
    "create_service_handlers",
    "default_registry",
    # Decorators
    "collect_handlers",
    "connect_bidi_streaming",
    "connect_client_streaming",
    "connect_method",
    "connect_server_streaming",
    "connect_service",
    "method_descriptors",
    # Context & hooks
    "CallContext",
    "CallStatistics",
    "CallStatus",
    "DispatchHook",
    "HookToken",
    # Errors
    "ConfigurationError",
    "EmptyResultError",
    "RpcBridgeError",
    "RpcError",
    "UnsupportedShapeError",
    # Transport metadata
    "TRACE_HEADERS_KEY",
    # Internal: used by rpcbridge.http and rpcbridge.otel
    "_ContextLoggerAdapter",
    "_EMPTY_TRANSPORT_METADATA",
    "_access_logger",
    "_current_request_id",
    "_emit_access_log",
    "_generate_request_id",
    "_log_method_error",
    "_logger",
]
