# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP routing surface using Starlette/ASGI.

Provides :class:`HttpRouter`, which implements ``RoutingSurface`` by
mounting each service method at ``POST {prefix}/{type_name}/{method}``,
and ``make_asgi_app`` to expose a router as a Starlette application.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any, assert_never

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.routing import Route

from rpcbridge.rpc import (
    TRACE_HEADERS_KEY,
    CallContext,
    InvocationAdapter,
    PushSource,
    ServiceDescriptor,
    ServiceHandlers,
    StreamingKind,
    _current_request_id,
    _generate_request_id,
)

from ._common import (
    _CONNECT_JSON_CONTENT_TYPE,
    _JSON_CONTENT_TYPE,
    _REQUEST_ID_HEADER,
    EnvelopeDecoder,
    content_type_for,
    decode_json,
    encode_end_stream,
    encode_json,
    encode_message,
    error_payload,
    http_status_for,
    is_end_stream,
)

_logger = logging.getLogger("rpcbridge.http")

_TRACE_HEADERS = ("traceparent", "tracestate")


class _RpcHttpError(Exception):
    """Internal exception for request-level failures detected before dispatch."""

    __slots__ = ("code", "message", "status_code")

    def __init__(self, code: str, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def _error_response(code: str, message: str, status_code: int, request_id: str) -> Response:
    return Response(
        encode_json({"code": code, "message": message}),
        status_code=status_code,
        media_type=_JSON_CONTENT_TYPE,
        headers={_REQUEST_ID_HEADER: request_id},
    )


def _check_content_type(request: Request, streaming: StreamingKind) -> None:
    """Raise ``_RpcHttpError`` if Content-Type does not match the call shape."""
    expected = content_type_for(streaming)
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type != expected:
        raise _RpcHttpError(
            "invalid_argument",
            f"Expected Content-Type: {expected!r} for {streaming.name} calls, got {content_type!r}",
            status_code=HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
        )


def _decode_messages(body: bytes) -> list[Any]:
    """Split an enveloped request body into decoded messages."""
    decoder = EnvelopeDecoder()
    try:
        envelopes = decoder.feed(body)
        decoder.close()
        return [decode_json(payload) for flags, payload in envelopes if not is_end_stream(flags)]
    except ValueError as exc:
        raise _RpcHttpError("invalid_argument", str(exc), status_code=HTTPStatus.BAD_REQUEST) from exc


def _transport_metadata(request: Request) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if request.client is not None:
        metadata["remote_addr"] = request.client.host
    user_agent = request.headers.get("user-agent")
    if user_agent:
        metadata["user_agent"] = user_agent
    trace_headers = {name: request.headers[name] for name in _TRACE_HEADERS if name in request.headers}
    if trace_headers:
        metadata[TRACE_HEADERS_KEY] = trace_headers
    return metadata


class HttpRouter:
    """Routing surface that serves handler sub-tables over Connect-style HTTP.

    Unary calls take and return plain JSON (``application/json``).  Streaming
    calls exchange enveloped JSON messages (``application/connect+json``)
    terminated by an end-of-stream envelope that carries any error.
    """

    __slots__ = ("_prefix", "_routes")

    def __init__(self, *, prefix: str = "") -> None:
        """Initialize.

        Args:
            prefix: URL prefix for all RPC endpoints (default: none).

        """
        self._prefix = prefix.rstrip("/")
        self._routes: dict[tuple[str, str], InvocationAdapter] = {}

    @property
    def prefix(self) -> str:
        """URL prefix shared by every route."""
        return self._prefix

    @property
    def paths(self) -> list[str]:
        """Every mounted route path."""
        return list(self.route_table())

    def route_table(self) -> dict[str, StreamingKind]:
        """Map every mounted path to its call shape."""
        return {
            f"{self._prefix}/{service}/{method}": adapter.streaming
            for (service, method), adapter in self._routes.items()
        }

    def service(self, descriptor: ServiceDescriptor, handlers: ServiceHandlers) -> list[str]:
        """Mount every adapter in *handlers* under *descriptor*.

        Returns:
            The mounted paths.

        """
        mounted: list[str] = []
        for method, adapter in handlers.items():
            if descriptor.methods and method not in descriptor.methods:
                _logger.warning(
                    "Method %s is not declared by %s; mounting it anyway",
                    method,
                    descriptor.type_name,
                    extra={"service": descriptor.type_name, "method": method},
                )
            self._routes[(descriptor.type_name, method)] = adapter
            mounted.append(f"{self._prefix}/{descriptor.full_name(method)}")
        _logger.debug(
            "Mounted %s (%d routes)",
            descriptor.type_name,
            len(mounted),
            extra={"service": descriptor.type_name, "method_count": len(mounted)},
        )
        return mounted

    def lookup(self, service: str, method: str) -> InvocationAdapter | None:
        """Return the adapter mounted at ``service/method``, if any."""
        return self._routes.get((service, method))

    async def handle(self, request: Request) -> Response:
        """Starlette endpoint for ``POST {prefix}/{service}/{method}``."""
        request_id = request.headers.get(_REQUEST_ID_HEADER) or _generate_request_id()
        service = request.path_params["service"]
        method = request.path_params["method"]
        adapter = self.lookup(service, method)
        if adapter is None:
            return _error_response(
                "unimplemented", f"Unknown method {service}/{method}", HTTPStatus.NOT_FOUND, request_id
            )
        token = _current_request_id.set(request_id)
        try:
            _check_content_type(request, adapter.streaming)
            body = await request.body()
            context = CallContext(adapter.descriptor, _transport_metadata(request), request_id=request_id)
            match adapter.streaming:
                case StreamingKind.UNARY:
                    return await self._unary(adapter, body, context)
                case StreamingKind.CLIENT_STREAM:
                    return await self._client_stream(adapter, body, context)
                case StreamingKind.SERVER_STREAM | StreamingKind.BIDI_STREAM:
                    return self._stream(adapter, body, context)
                case _:
                    assert_never(adapter.streaming)
        except _RpcHttpError as exc:
            _logger.warning(
                "Rejected %s/%s: %s",
                service,
                method,
                exc.message,
                extra={"service": service, "method": method, "request_id": request_id, "code": exc.code},
            )
            return _error_response(exc.code, exc.message, exc.status_code, request_id)
        finally:
            _current_request_id.reset(token)

    async def _unary(self, adapter: InvocationAdapter, body: bytes, context: CallContext) -> Response:
        try:
            request_value = decode_json(body) if body else {}
        except ValueError as exc:
            raise _RpcHttpError("invalid_argument", str(exc), status_code=HTTPStatus.BAD_REQUEST) from exc
        try:
            result = await adapter(request_value, context)
        except Exception as exc:
            payload = error_payload(exc)
            return _error_response(
                payload["code"], payload["message"], http_status_for(payload["code"]), context.request_id
            )
        return Response(
            encode_json(result),
            media_type=_JSON_CONTENT_TYPE,
            headers={_REQUEST_ID_HEADER: context.request_id},
        )

    async def _client_stream(self, adapter: InvocationAdapter, body: bytes, context: CallContext) -> Response:
        requests = PushSource.from_iterable(_decode_messages(body))
        try:
            result = await adapter(requests, context)
        except Exception as exc:
            content = encode_end_stream(exc)
        else:
            content = encode_message(result) + encode_end_stream()
        return Response(
            content,
            media_type=_CONNECT_JSON_CONTENT_TYPE,
            headers={_REQUEST_ID_HEADER: context.request_id},
        )

    def _stream(self, adapter: InvocationAdapter, body: bytes, context: CallContext) -> Response:
        messages = _decode_messages(body)
        if adapter.streaming is StreamingKind.SERVER_STREAM:
            if len(messages) != 1:
                raise _RpcHttpError(
                    "invalid_argument",
                    f"Server-stream call expects exactly one request message, got {len(messages)}",
                    status_code=HTTPStatus.BAD_REQUEST,
                )
            request_value: Any = messages[0]
        else:
            request_value = PushSource.from_iterable(messages)
        return StreamingResponse(
            _stream_body(adapter, request_value, context),
            media_type=_CONNECT_JSON_CONTENT_TYPE,
            headers={_REQUEST_ID_HEADER: context.request_id},
        )


async def _stream_body(adapter: InvocationAdapter, request_value: Any, context: CallContext) -> AsyncIterator[bytes]:
    """Enveloped response body; errors travel in the end-of-stream envelope."""
    # Visible to handler code that logs through RequestIdFilter.
    token = _current_request_id.set(context.request_id)
    try:
        async with contextlib.aclosing(adapter(request_value, context)) as responses:
            async for value in responses:
                yield encode_message(value)
    except Exception as exc:
        yield encode_end_stream(exc)
    else:
        yield encode_end_stream()
    finally:
        _current_request_id.reset(token)


def make_asgi_app(router: HttpRouter, *, debug: bool = False) -> Starlette:
    """Create a Starlette ASGI app serving *router*.

    Args:
        router: The router whose mounted services to serve.
        debug: Passed to Starlette (tracebacks in 500 responses).

    Returns:
        A Starlette application with one ``POST`` route per call.

    """
    app = Starlette(
        debug=debug,
        routes=[Route(f"{router.prefix}/{{service}}/{{method}}", router.handle, methods=["POST"])],
    )
    _logger.info(
        "ASGI app created (prefix=%r, routes=%d)",
        router.prefix,
        len(router.paths),
        extra={"prefix": router.prefix, "route_count": len(router.paths)},
    )
    return app

