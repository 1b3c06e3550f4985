# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Declarative registration: ``@connect_service`` and the ``@connect_*`` method decorators.

Example::

    @connect_service(ServiceDescriptor("greet.v1.GreetService"))
    class GreetService:
        @connect_method()
        async def greet(self, request, ctx):
            return {"greeting": f"Hello, {request['name']}!"}

        @connect_server_streaming()
        async def count(self, request, ctx):
            for i in range(request["n"]):
                yield {"i": i}

    pairs = list(collect_handlers(GreetService()))
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from rpcbridge.rpc._common import CallDescriptor, StreamingKind
from rpcbridge.rpc._registry import ServiceDescriptor, ServiceRegistry, default_registry

_PATTERNS_ATTR = "__rpc_patterns__"


@dataclass(frozen=True)
class _MethodPattern:
    """A method registration awaiting its owning class name."""

    service: str | None
    method: str
    streaming: StreamingKind

    def resolve(self, owner: type) -> CallDescriptor:
        return CallDescriptor(service=self.service or owner.__name__, method=self.method, streaming=self.streaming)


def connect_service[C: type](
    descriptor: ServiceDescriptor, *, registry: ServiceRegistry | None = None
) -> Callable[[C], C]:
    """Class decorator registering *descriptor* under the class name."""

    def decorate(cls: C) -> C:
        (registry if registry is not None else default_registry()).register(cls.__name__, descriptor)
        return cls

    return decorate


def connect_method[F: Callable[..., Any]](
    *,
    service: str | None = None,
    method: str | None = None,
    streaming: StreamingKind | str = StreamingKind.UNARY,
) -> Callable[[F], F]:
    """Method decorator marking a handler for one call shape.

    Args:
        service: Service name; defaults to the declaring class name.
        method: Exposed method name; defaults to the function name.
        streaming: The call shape (member, value, or name).

    Raises:
        ConfigurationError: If *streaming* is unknown.

    """
    kind = StreamingKind.parse(streaming)

    def decorate(func: F) -> F:
        patterns: list[_MethodPattern] = list(getattr(func, _PATTERNS_ATTR, ()))
        patterns.append(_MethodPattern(service, method or func.__name__, kind))
        setattr(func, _PATTERNS_ATTR, tuple(patterns))
        return func

    return decorate


def connect_server_streaming[F: Callable[..., Any]](
    *, service: str | None = None, method: str | None = None
) -> Callable[[F], F]:
    """Shorthand for ``connect_method(streaming=StreamingKind.SERVER_STREAM)``."""
    return connect_method(service=service, method=method, streaming=StreamingKind.SERVER_STREAM)


def connect_client_streaming[F: Callable[..., Any]](
    *, service: str | None = None, method: str | None = None
) -> Callable[[F], F]:
    """Shorthand for ``connect_method(streaming=StreamingKind.CLIENT_STREAM)``."""
    return connect_method(service=service, method=method, streaming=StreamingKind.CLIENT_STREAM)


def connect_bidi_streaming[F: Callable[..., Any]](
    *, service: str | None = None, method: str | None = None
) -> Callable[[F], F]:
    """Shorthand for ``connect_method(streaming=StreamingKind.BIDI_STREAM)``."""
    return connect_method(service=service, method=method, streaming=StreamingKind.BIDI_STREAM)


def method_descriptors(cls: type) -> list[tuple[CallDescriptor, str]]:
    """Return ``(descriptor, attribute_name)`` for every decorated method of *cls*.

    The most-derived definition of an attribute wins; its owner class
    supplies the default service name.
    """
    seen: set[str] = set()
    found: list[tuple[CallDescriptor, str]] = []
    for owner in cls.__mro__:
        for attr, value in vars(owner).items():
            if attr in seen:
                continue
            seen.add(attr)
            for pattern in getattr(value, _PATTERNS_ATTR, ()):
                found.append((pattern.resolve(owner), attr))
    return found


def collect_handlers(controller: object) -> Iterator[tuple[str, Callable[..., Any]]]:
    """Yield ``(key, bound_method)`` for every decorated method of *controller*."""
    for descriptor, attr in method_descriptors(type(controller)):
        yield descriptor.key, getattr(controller, attr)
