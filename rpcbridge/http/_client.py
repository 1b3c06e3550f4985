# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP client for Connect-style JSON services using httpx."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from types import TracebackType
from typing import Any, Self

import httpx

from rpcbridge.rpc import RpcError

from ._common import (
    _CONNECT_JSON_CONTENT_TYPE,
    _JSON_CONTENT_TYPE,
    _REQUEST_ID_HEADER,
    EnvelopeDecoder,
    code_for_http_status,
    decode_json,
    encode_json,
    encode_message,
    is_end_stream,
    rpc_error_from_payload,
)

_logger = logging.getLogger("rpcbridge.http.client")


async def _encode_requests(requests: Iterable[Any] | AsyncIterable[Any]) -> AsyncIterator[bytes]:
    if isinstance(requests, AsyncIterable):
        async for value in requests:
            yield encode_message(value)
    else:
        for value in requests:
            yield encode_message(value)


class ConnectClient:
    """Async client for services served by :func:`~rpcbridge.http.make_asgi_app`.

    Example::

        async with ConnectClient("http://127.0.0.1:8080") as client:
            reply = await client.unary("greet.v1.GreetService", "Greet", {"name": "Ada"})
            async for item in client.server_stream("greet.v1.GreetService", "Count", {"n": 3}):
                print(item)

    Errors reported by the server are raised as :class:`~rpcbridge.RpcError`.
    """

    __slots__ = ("_client", "_headers", "_owns_client", "_prefix")

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        prefix: str = "",
        headers: Mapping[str, str] | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        """Initialize.

        Args:
            base_url: Server URL; required unless *client* is given.
            client: An existing ``httpx.AsyncClient`` (e.g. one using
                ``httpx.ASGITransport`` in tests).  It is not closed by
                :meth:`aclose`.
            prefix: URL prefix the server was created with.
            headers: Extra headers sent with every call.
            timeout: Request timeout in seconds for an owned client.

        """
        if client is None:
            if base_url is None:
                raise ValueError("ConnectClient requires a base_url or an httpx.AsyncClient")
            client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client
        self._prefix = prefix.rstrip("/")
        self._headers = dict(headers or {})

    def _url(self, service: str, method: str) -> str:
        return f"{self._prefix}/{service}/{method}"

    def _request_headers(self, content_type: str) -> dict[str, str]:
        return {**self._headers, "Content-Type": content_type}

    async def unary(self, service: str, method: str, request: Any) -> Any:
        """Call a unary method and return the decoded response."""
        response = await self._client.post(
            self._url(service, method),
            content=encode_json(request),
            headers=self._request_headers(_JSON_CONTENT_TYPE),
        )
        request_id = response.headers.get(_REQUEST_ID_HEADER, "")
        if response.status_code != httpx.codes.OK:
            fallback = code_for_http_status(response.status_code)
            try:
                payload = decode_json(response.content)
            except ValueError:
                payload = {"code": fallback, "message": response.text or response.reason_phrase}
            raise rpc_error_from_payload(payload, request_id=request_id, fallback_code=fallback)
        return decode_json(response.content)

    async def server_stream(self, service: str, method: str, request: Any) -> AsyncIterator[Any]:
        """Call a server-stream method; iterate the responses as they arrive."""
        async for value in self._streaming_call(service, method, [request]):
            yield value

    async def client_stream(self, service: str, method: str, requests: Iterable[Any] | AsyncIterable[Any]) -> Any:
        """Send every item of *requests*; return the single response."""
        responses = [value async for value in self._streaming_call(service, method, requests)]
        if len(responses) != 1:
            raise RpcError("internal", f"Client-stream call returned {len(responses)} messages, expected 1")
        return responses[0]

    async def bidi_stream(
        self, service: str, method: str, requests: Iterable[Any] | AsyncIterable[Any]
    ) -> AsyncIterator[Any]:
        """Send every item of *requests*; iterate the responses.

        Requests are sent in full before responses are read (HTTP/1.1
        half-duplex).
        """
        async for value in self._streaming_call(service, method, requests):
            yield value

    async def _streaming_call(
        self, service: str, method: str, requests: Iterable[Any] | AsyncIterable[Any]
    ) -> AsyncIterator[Any]:
        body = b"".join([chunk async for chunk in _encode_requests(requests)])
        async with self._client.stream(
            "POST",
            self._url(service, method),
            content=body,
            headers=self._request_headers(_CONNECT_JSON_CONTENT_TYPE),
        ) as response:
            request_id = response.headers.get(_REQUEST_ID_HEADER, "")
            if response.status_code != httpx.codes.OK:
                content = await response.aread()
                fallback = code_for_http_status(response.status_code)
                try:
                    payload = decode_json(content)
                except ValueError:
                    payload = {"code": fallback, "message": content.decode(errors="replace")}
                raise rpc_error_from_payload(payload, request_id=request_id, fallback_code=fallback)
            decoder = EnvelopeDecoder()
            async for chunk in response.aiter_bytes():
                for flags, payload in decoder.feed(chunk):
                    if is_end_stream(flags):
                        end = decode_json(payload)
                        if isinstance(end, dict) and end.get("error"):
                            raise rpc_error_from_payload(end["error"], request_id=request_id)
                        return
                    yield decode_json(payload)
            _logger.debug("Stream from %s/%s ended without end-of-stream envelope", service, method)
            raise RpcError("internal", "Stream ended without an end-of-stream message", request_id=request_id)

    async def aclose(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        """Enter the context."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the client."""
        await self.aclose()
