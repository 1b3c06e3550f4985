# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Streaming bridge and call-dispatch engine for Connect-style RPC services."""

import contextlib
import logging

from rpcbridge.rpc import (
    CallContext,
    CallDescriptor,
    CallDispatcher,
    CallStatistics,
    ConfigurationError,
    DispatchHook,
    EmptyResultError,
    InvocationAdapter,
    Observer,
    PushPullBridge,
    PushSource,
    RoutingSurface,
    RpcBridgeError,
    RpcError,
    ServiceBinder,
    ServiceDescriptor,
    ServiceRegistry,
    StreamingKind,
    Subscriber,
    Subscription,
    UnsupportedShapeError,
    add_services_to_router,
    collect_handlers,
    connect_bidi_streaming,
    connect_client_streaming,
    connect_method,
    connect_server_streaming,
    connect_service,
    create_service_handlers,
    default_registry,
    normalize,
    to_pull_sequence,
)

# HTTP (optional, requires `pip install rpcbridge[http]`)
with contextlib.suppress(ImportError):
    from rpcbridge.http import ConnectClient, HttpRouter, make_asgi_app
    from rpcbridge.server import ConnectServer, ServerOptions, ServerProtocol, ServerStrategy

# OpenTelemetry instrumentation (optional, requires `pip install rpcbridge[otel]`)
with contextlib.suppress(ImportError):
    from rpcbridge.otel import OtelConfig, instrument_dispatcher

__all__ = [
    # Push / pull
    "Observer",
    "PushPullBridge",
    "PushSource",
    "Subscriber",
    "Subscription",
    "normalize",
    "to_pull_sequence",
    # Dispatch
    "CallDescriptor",
    "CallDispatcher",
    "InvocationAdapter",
    "StreamingKind",
    # Registry & registration
    "RoutingSurface",
    "ServiceBinder",
    "ServiceDescriptor",
    "ServiceRegistry",
    "add_services_to_router",
    "collect_handlers",
    "connect_bidi_streaming",
    "connect_client_streaming",
    "connect_method",
    "connect_server_streaming",
    "connect_service",
    "create_service_handlers",
    "default_registry",
    # Context & hooks
    "CallContext",
    "CallStatistics",
    "DispatchHook",
    # Errors
    "ConfigurationError",
    "EmptyResultError",
    "RpcBridgeError",
    "RpcError",
    "UnsupportedShapeError",
]

# Conditionally include optional names only when actually imported
if "HttpRouter" in dir():
    __all__ += [
        "ConnectClient",
        "ConnectServer",
        "HttpRouter",
        "ServerOptions",
        "ServerProtocol",
        "ServerStrategy",
        "make_asgi_app",
    ]
if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_dispatcher"]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("rpcbridge").addHandler(logging.NullHandler())
