# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Service descriptors, the descriptor registry, and the handler-table binder."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol

from rpcbridge.rpc._common import CallDescriptor, ConfigurationError
from rpcbridge.rpc._dispatch import CallDispatcher, Handler, InvocationAdapter

_logger = logging.getLogger("rpcbridge.registry")

type ServiceHandlers = Mapping[str, InvocationAdapter]
type HandlerTable = Mapping[str, ServiceHandlers]


@dataclass(frozen=True)
class ServiceDescriptor:
    """Describes one RPC service exposed on a routing surface.

    Attributes:
        type_name: Fully-qualified service name used in routes
            (e.g. ``"greet.v1.GreetService"``).
        methods: Method names the service declares.  Empty means "accept
            whatever the handler table provides".

    """

    type_name: str
    methods: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        """Validate the descriptor."""
        if not self.type_name:
            raise ConfigurationError("ServiceDescriptor.type_name must not be empty")
        object.__setattr__(self, "methods", tuple(self.methods))

    @property
    def name(self) -> str:
        """Short service name (last dotted component)."""
        return self.type_name.rsplit(".", 1)[-1]

    def full_name(self, method: str) -> str:
        """Return the route path segment ``<type_name>/<method>``."""
        return f"{self.type_name}/{method}"


class ServiceRegistry:
    """Service descriptors keyed by the declaring type's name.

    Pass an instance explicitly to the binder; :func:`default_registry`
    returns the process-wide instance used by the registration decorators.
    """

    __slots__ = ("_descriptors",)

    def __init__(self, descriptors: Mapping[str, ServiceDescriptor] | None = None) -> None:
        """Initialize, optionally pre-populated."""
        self._descriptors: dict[str, ServiceDescriptor] = dict(descriptors or {})

    def register(self, name: str, descriptor: ServiceDescriptor) -> None:
        """Record *descriptor* under *name*, replacing any earlier entry."""
        previous = self._descriptors.get(name)
        if previous is not None and previous != descriptor:
            _logger.debug("Replacing service descriptor for %s", name, extra={"service": name})
        self._descriptors[name] = descriptor

    def get(self, name: str) -> ServiceDescriptor | None:
        """Return the descriptor registered under *name*, or ``None``."""
        return self._descriptors.get(name)

    def names(self) -> list[str]:
        """Registered names, in registration order."""
        return list(self._descriptors)

    def clear(self) -> None:
        """Forget all descriptors."""
        self._descriptors.clear()

    def __contains__(self, name: object) -> bool:
        """Whether *name* is registered."""
        return name in self._descriptors

    def __len__(self) -> int:
        """Number of registered descriptors."""
        return len(self._descriptors)

    def __iter__(self) -> Iterator[str]:
        """Iterate registered names."""
        return iter(self._descriptors)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"ServiceRegistry({self.names()!r})"


_DEFAULT_REGISTRY = ServiceRegistry()


def default_registry() -> ServiceRegistry:
    """Return the process-wide registry used by ``@connect_service``."""
    return _DEFAULT_REGISTRY


class RoutingSurface(Protocol):
    """Anything that can mount a service's handler sub-table."""

    def service(self, descriptor: ServiceDescriptor, handlers: ServiceHandlers) -> Any:
        """Attach *handlers* under *descriptor*."""
        ...


def create_service_handlers(
    handlers: Iterable[tuple[str | Mapping[str, Any], Handler | None]],
    dispatcher: CallDispatcher | None = None,
) -> HandlerTable:
    """Build the two-level handler table from ``(key, handler)`` pairs.

    Pairs whose handler is ``None`` are skipped without creating a
    sub-table.  The returned table and its sub-tables are read-only.

    Raises:
        ConfigurationError: For a malformed key or an unknown streaming kind.

    """
    dispatcher = dispatcher if dispatcher is not None else CallDispatcher()
    table: dict[str, dict[str, InvocationAdapter]] = {}
    for key, handler in handlers:
        if handler is None:
            continue
        descriptor = CallDescriptor.parse(key)
        methods = table.setdefault(descriptor.service, {})
        if descriptor.method in methods:
            _logger.warning(
                "Duplicate handler for %s; the later one wins",
                descriptor,
                extra={"service": descriptor.service, "method": descriptor.method},
            )
        methods[descriptor.method] = dispatcher.build_adapter(descriptor, handler)
    return MappingProxyType({name: MappingProxyType(methods) for name, methods in table.items()})


def add_services_to_router(router: RoutingSurface, table: HandlerTable, registry: ServiceRegistry) -> list[str]:
    """Attach each service sub-table whose descriptor is registered.

    Services missing from *registry* are skipped and logged at WARNING.

    Returns:
        The names of the skipped services.

    """
    skipped: list[str] = []
    for name, methods in table.items():
        descriptor = registry.get(name)
        if descriptor is None:
            skipped.append(name)
            _logger.warning(
                "No service descriptor registered for %s; its %d handler(s) are not routed",
                name,
                len(methods),
                extra={"service": name, "method_count": len(methods)},
            )
            continue
        router.service(descriptor, methods)
        _logger.debug(
            "Attached service %s (%d methods)",
            descriptor.type_name,
            len(methods),
            extra={"service": name, "method_count": len(methods)},
        )
    return skipped


class ServiceBinder:
    """Builds a handler table and binds it to a routing surface.

    Example::

        binder = ServiceBinder(registry)
        binder.bind(router, collect_handlers(GreetController()))
        assert binder.skipped_services == 0

    """

    __slots__ = ("_dispatcher", "_registry", "_skipped", "_table")

    def __init__(self, registry: ServiceRegistry, *, dispatcher: CallDispatcher | None = None) -> None:
        """Initialize with the registry that resolves service descriptors."""
        self._registry = registry
        self._dispatcher = dispatcher if dispatcher is not None else CallDispatcher()
        self._table: HandlerTable = MappingProxyType({})
        self._skipped: list[str] = []

    @property
    def registry(self) -> ServiceRegistry:
        """The descriptor registry."""
        return self._registry

    @property
    def dispatcher(self) -> CallDispatcher:
        """The dispatcher that builds adapters."""
        return self._dispatcher

    @property
    def table(self) -> HandlerTable:
        """The most recently built handler table."""
        return self._table

    @property
    def skipped_services(self) -> int:
        """How many services the last attach skipped for lack of a descriptor."""
        return len(self._skipped)

    @property
    def skipped_service_names(self) -> tuple[str, ...]:
        """Names of the services the last attach skipped."""
        return tuple(self._skipped)

    def build(self, handlers: Iterable[tuple[str | Mapping[str, Any], Handler | None]]) -> HandlerTable:
        """Build (and remember) the handler table."""
        self._table = create_service_handlers(handlers, self._dispatcher)
        return self._table

    def attach(self, router: RoutingSurface, table: HandlerTable | None = None) -> None:
        """Attach *table* (default: the last built) to *router*."""
        self._skipped = add_services_to_router(router, self._table if table is None else table, self._registry)

    def bind(
        self,
        router: RoutingSurface,
        handlers: Iterable[tuple[str | Mapping[str, Any], Handler | None]],
    ) -> HandlerTable:
        """Build the table from *handlers* and attach it to *router*."""
        table = self.build(handlers)
        self.attach(router, table)
        return table
