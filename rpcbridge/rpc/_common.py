# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, call descriptors, and call context for the dispatch engine."""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Mapping, MutableMapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Final, Literal, Protocol

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_logger = logging.getLogger("rpcbridge.rpc")
_access_logger = logging.getLogger("rpcbridge.access")

_DEBUG_BRIDGE = os.environ.get("RPCBRIDGE_DEBUG_BRIDGE", "").lower() in ("1", "true", "yes")

_EMPTY_TRANSPORT_METADATA: Final[Mapping[str, Any]] = MappingProxyType({})

TRACE_HEADERS_KEY: Final = "trace_headers"
"""Transport-metadata key holding W3C trace propagation headers (``traceparent``, ``tracestate``)."""

CallStatus = Literal["ok", "error", "cancelled"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RpcBridgeError(Exception):
    """Base class for errors raised by the dispatch engine itself.

    Failures raised by user handlers or push sources are never wrapped;
    they propagate to the caller verbatim.
    """


class EmptyResultError(RpcBridgeError):
    """A unary or client-stream call whose result stream completed without a value."""

    def __init__(self, service: str = "", method: str = "") -> None:
        """Initialize with the call's service and method names (when known)."""
        self.service = service
        self.method = method
        where = f" for {service}.{method}" if service or method else ""
        super().__init__(f"Handler result completed without emitting a value{where}")


class ConfigurationError(RpcBridgeError, ValueError):
    """Registration-time misconfiguration (unknown streaming kind, malformed key)."""


class UnsupportedShapeError(RpcBridgeError, TypeError):
    """A handler result that is not a value, an awaitable, or a stream."""

    def __init__(self, result: object) -> None:
        """Initialize with the offending handler result."""
        self.result_type = type(result).__name__
        super().__init__(
            f"Unsupported handler result of type {self.result_type!r}: expected a value, an awaitable, "
            "a PushSource, or an async iterable"
        )


class RpcError(Exception):
    """An RPC failure carrying a Connect status code.

    Raised by :class:`~rpcbridge.http.ConnectClient` when the server reports
    an error.  Handlers may also raise it to choose the code reported to the
    caller.
    """

    def __init__(self, code: str, message: str, *, request_id: str = "") -> None:
        """Initialize with the status code and message."""
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(f"[{code}] {message}")


# ---------------------------------------------------------------------------
# Streaming kind + call descriptor
# ---------------------------------------------------------------------------


class StreamingKind(Enum):
    """The four RPC call shapes, by request/response cardinality.

    Values match the keys emitted by the registration decorators.
    """

    UNARY = "no_stream"
    SERVER_STREAM = "rx_stream"
    CLIENT_STREAM = "pt_stream"
    BIDI_STREAM = "duplex_stream"

    @classmethod
    def parse(cls, value: StreamingKind | str) -> StreamingKind:
        """Coerce *value* to a ``StreamingKind``.

        Accepts a member, its value (``"rx_stream"``), or its name
        (``"SERVER_STREAM"``, case-insensitive).

        Raises:
            ConfigurationError: If *value* names no known kind.

        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                member = cls.__members__.get(value.upper())
                if member is not None:
                    return member
        known = ", ".join(repr(k.value) for k in cls)
        raise ConfigurationError(f"Invalid streaming type: {value!r} (expected one of {known})")

    @property
    def client_streams(self) -> bool:
        """Whether the handler receives a pull sequence of requests."""
        return self in (StreamingKind.CLIENT_STREAM, StreamingKind.BIDI_STREAM)

    @property
    def server_streams(self) -> bool:
        """Whether the caller receives a pull sequence of responses."""
        return self in (StreamingKind.SERVER_STREAM, StreamingKind.BIDI_STREAM)


@dataclass(frozen=True)
class CallDescriptor:
    """Identifies one RPC method: owning service, method name, and call shape.

    Attributes:
        service: Service name; by default the declaring class name.
        method: Method name as exposed on the routing surface.
        streaming: The call shape.

    """

    service: str
    method: str
    streaming: StreamingKind = StreamingKind.UNARY

    @property
    def key(self) -> str:
        """Serialized form used as the handler-map key."""
        return json.dumps(
            {"service": self.service, "rpc": self.method, "streaming": self.streaming.value},
            separators=(",", ":"),
        )

    @classmethod
    def parse(cls, key: str | Mapping[str, Any]) -> CallDescriptor:
        """Parse a serialized key (or an already-decoded mapping) back into a descriptor.

        Raises:
            ConfigurationError: If the key is not a JSON object, lacks the
                ``service`` or ``rpc`` fields, or names an unknown streaming kind.

        """
        if isinstance(key, str):
            try:
                data = json.loads(key)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Handler key is not valid JSON: {key!r}") from exc
        else:
            data = key
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Handler key must be a JSON object, got {type(data).__name__}: {key!r}")
        service = data.get("service")
        method = data.get("rpc", data.get("method"))
        if not isinstance(service, str) or not service:
            raise ConfigurationError(f"Handler key is missing a service name: {key!r}")
        if not isinstance(method, str) or not method:
            raise ConfigurationError(f"Handler key is missing a method name: {key!r}")
        streaming = StreamingKind.parse(data.get("streaming", StreamingKind.UNARY))
        return cls(service=service, method=method, streaming=streaming)

    def __str__(self) -> str:
        """Return ``Service.method``."""
        return f"{self.service}.{self.method}"


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("rpcbridge_request_id", default="")


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that keeps framework-bound extra fields.

    User-supplied ``extra`` in individual log calls is merged, but
    framework fields take precedence on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with framework extra, framework wins on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class CallContext:
    """Request-scoped context handed to handlers as their second argument.

    The dispatch engine treats the context as opaque; transports construct
    one per call.  The HTTP transport always supplies a ``CallContext``.
    """

    __slots__ = ("_logger", "_request_id", "descriptor", "transport_metadata")

    def __init__(
        self,
        descriptor: CallDescriptor,
        transport_metadata: Mapping[str, Any] | None = None,
        *,
        request_id: str | None = None,
    ) -> None:
        """Initialize with the call descriptor and optional transport metadata."""
        self.descriptor = descriptor
        self.transport_metadata: Mapping[str, Any] = transport_metadata or _EMPTY_TRANSPORT_METADATA
        self._request_id = request_id if request_id is not None else _current_request_id.get()
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def service(self) -> str:
        """Service name of the call."""
        return self.descriptor.service

    @property
    def method(self) -> str:
        """Method name of the call."""
        return self.descriptor.method

    @property
    def streaming(self) -> StreamingKind:
        """Call shape."""
        return self.descriptor.streaming

    @property
    def request_id(self) -> str:
        """Per-request correlation ID (empty string if not set)."""
        return self._request_id

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger with request context pre-bound.

        Returns:
            A ``LoggerAdapter`` named ``rpcbridge.service.<Service>``.  Always
            includes ``service`` and ``method``; includes ``request_id`` and
            ``remote_addr`` when available.

        """
        if self._logger is None:
            base = logging.getLogger(f"rpcbridge.service.{self.descriptor.service}")
            extra: dict[str, object] = {"service": self.descriptor.service, "method": self.descriptor.method}
            if self._request_id:
                extra["request_id"] = self._request_id
            remote = self.transport_metadata.get("remote_addr")
            if remote:
                extra["remote_addr"] = remote
            self._logger = _ContextLoggerAdapter(base, extra)
        return self._logger

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"CallContext({self.descriptor}, request_id={self._request_id!r})"


# ---------------------------------------------------------------------------
# Per-call statistics
# ---------------------------------------------------------------------------


@dataclass
class CallStatistics:
    """Mutable per-call counters, surfaced through the access log and dispatch hooks.

    Attributes:
        values_in: Request values pulled by the handler (1 for single-request shapes).
        values_out: Response values delivered to the caller.

    """

    values_in: int = 0
    values_out: int = 0


# ---------------------------------------------------------------------------
# Dispatch hook protocol
# ---------------------------------------------------------------------------

type HookToken = object
"""Opaque token returned by ``DispatchHook.on_dispatch_start``."""


class DispatchHook(Protocol):
    """Observability hook called around every adapter invocation."""

    def on_dispatch_start(self, descriptor: CallDescriptor, context: object) -> HookToken:
        """Start observability for a call and return an opaque token."""
        ...

    def on_dispatch_end(
        self,
        token: HookToken,
        descriptor: CallDescriptor,
        error: BaseException | None,
        *,
        stats: CallStatistics | None = None,
    ) -> None:
        """Finalize observability after the call (success or failure)."""
        ...


@dataclass
class _CompositeDispatchHook:
    """Fans a dispatch out to several hooks, in registration order."""

    hooks: list[DispatchHook] = field(default_factory=list)

    def on_dispatch_start(self, descriptor: CallDescriptor, context: object) -> HookToken:
        """Start every hook and collect their tokens."""
        return [hook.on_dispatch_start(descriptor, context) for hook in self.hooks]

    def on_dispatch_end(
        self,
        token: HookToken,
        descriptor: CallDescriptor,
        error: BaseException | None,
        *,
        stats: CallStatistics | None = None,
    ) -> None:
        """End every hook in reverse order."""
        assert isinstance(token, list)
        for hook, sub_token in reversed(list(zip(self.hooks, token, strict=True))):
            try:
                hook.on_dispatch_end(sub_token, descriptor, error, stats=stats)
            except Exception:
                _logger.debug("Dispatch hook on_dispatch_end failed", exc_info=True)


def _register_dispatch_hook(existing: DispatchHook | None, new: DispatchHook) -> DispatchHook:
    """Combine *new* with an already-installed hook."""
    if existing is None:
        return new
    if isinstance(existing, _CompositeDispatchHook):
        existing.hooks.append(new)
        return existing
    return _CompositeDispatchHook([existing, new])
