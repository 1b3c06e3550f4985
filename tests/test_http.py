# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the Connect-style HTTP transport (router, ASGI app, and client)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from rpcbridge.http import (
    ConnectClient,
    EnvelopeDecoder,
    HttpRouter,
    decode_json,
    encode_end_stream,
    encode_envelope,
    encode_message,
    error_code_for,
    http_status_for,
    make_asgi_app,
)
from rpcbridge.http._server import _stream_body
from rpcbridge.rpc import (
    CallContext,
    CallDescriptor,
    CallDispatcher,
    EmptyResultError,
    PushSource,
    RpcError,
    ServiceBinder,
    ServiceDescriptor,
    ServiceRegistry,
    StreamingKind,
    _current_request_id,
    collect_handlers,
)

from .conftest import GREET_DESCRIPTOR, make_greet_controller

SERVICE = GREET_DESCRIPTOR.type_name
UNARY_HEADERS = {"Content-Type": "application/json"}
STREAM_HEADERS = {"Content-Type": "application/connect+json"}


def _make_router(registry: ServiceRegistry, *, prefix: str = "") -> HttpRouter:
    router = HttpRouter(prefix=prefix)
    ServiceBinder(registry).bind(router, collect_handlers(make_greet_controller(registry)))
    return router


def _run[T](
    registry: ServiceRegistry,
    body: Callable[[ConnectClient, httpx.AsyncClient], Awaitable[T]],
    *,
    prefix: str = "",
) -> T:
    """Run *body* against an in-process app serving the greet controller."""
    app = make_asgi_app(_make_router(registry, prefix=prefix))

    async def main() -> T:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            return await body(ConnectClient(client=http, prefix=prefix), http)

    return asyncio.run(main())


def _decode_stream(content: bytes) -> tuple[list[Any], dict[str, Any]]:
    """Split a streaming response body into messages and the end-of-stream object."""
    decoder = EnvelopeDecoder()
    messages: list[Any] = []
    end: dict[str, Any] = {}
    for flags, payload in decoder.feed(content):
        if flags & 0x02:
            end = decode_json(payload)
        else:
            messages.append(decode_json(payload))
    decoder.close()
    return messages, end


# ---------------------------------------------------------------------------
# Call shapes through the client
# ---------------------------------------------------------------------------


class TestCallShapes:
    """Every call shape end to end."""

    def test_unary(self, registry: ServiceRegistry) -> None:
        """A unary call returns the handler's value."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> Any:
            return await client.unary(SERVICE, "Greet", {"name": "Ada"})

        assert _run(registry, body) == {"greeting": "Hello, Ada!"}

    def test_server_stream(self, registry: ServiceRegistry) -> None:
        """An ``async def`` generator streams every value."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> list[Any]:
            return [item async for item in client.server_stream(SERVICE, "Countdown", {"start": 3})]

        assert _run(registry, body) == [{"n": 3}, {"n": 2}, {"n": 1}]

    def test_server_stream_from_push_source(self, registry: ServiceRegistry) -> None:
        """A push-source handler is bridged onto the response stream."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> list[Any]:
            return [item async for item in client.server_stream(SERVICE, "Ticks", {"count": 3})]

        assert _run(registry, body) == [{"tick": 0}, {"tick": 1}, {"tick": 2}]

    def test_client_stream(self, registry: ServiceRegistry) -> None:
        """All request messages reach the handler; one response comes back."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> Any:
            return await client.client_stream(SERVICE, "Sum", [{"value": 1}, {"value": 2}, {"value": 39}])

        assert _run(registry, body) == {"total": 42}

    def test_bidi_stream(self, registry: ServiceRegistry) -> None:
        """Each request produces one response, in order."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> list[Any]:
            requests = [{"text": "hi"}, {"text": "there"}]
            return [item async for item in client.bidi_stream(SERVICE, "Echo", requests)]

        assert _run(registry, body) == [{"echo": "HI"}, {"echo": "THERE"}]

    def test_prefix(self, registry: ServiceRegistry) -> None:
        """Routes live under the configured prefix."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> Any:
            return await client.unary(SERVICE, "Greet", {"name": "Bob"})

        assert _run(registry, body, prefix="/rpc") == {"greeting": "Hello, Bob!"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    """Error statuses, codes and end-of-stream errors."""

    def test_unary_handler_error(self, registry: ServiceRegistry) -> None:
        """A ``ValueError`` becomes ``invalid_argument`` / HTTP 400."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            with pytest.raises(RpcError) as excinfo:
                await client.unary(SERVICE, "Fail", {"name": ""})
            assert excinfo.value.code == "invalid_argument"
            assert excinfo.value.message == "name must not be empty"
            assert excinfo.value.request_id
            return await http.post(f"/{SERVICE}/Fail", json={}, headers=UNARY_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 400
        assert response.json() == {"code": "invalid_argument", "message": "name must not be empty"}

    def test_empty_result_is_internal(self, registry: ServiceRegistry) -> None:
        """A unary handler whose stream completes empty fails with ``internal``."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Empty", json={}, headers=UNARY_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 500
        assert response.json()["code"] == "internal"

    def test_stream_error_after_values(self, registry: ServiceRegistry) -> None:
        """Values sent before a failure arrive before the error."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> list[Any]:
            received: list[Any] = []
            with pytest.raises(RpcError) as excinfo:
                async for item in client.server_stream(SERVICE, "Boom", {}):
                    received.append(item)
            assert excinfo.value.code == "unknown"
            assert excinfo.value.message == "boom"
            return received

        assert _run(registry, body) == [{"n": 1}]

    def test_stream_error_wire_format(self, registry: ServiceRegistry) -> None:
        """Stream errors travel in the end-of-stream envelope with HTTP 200."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Boom", content=encode_message({}), headers=STREAM_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/connect+json")
        messages, end = _decode_stream(response.content)
        assert messages == [{"n": 1}]
        assert end == {"error": {"code": "unknown", "message": "boom"}}

    def test_unknown_method(self, registry: ServiceRegistry) -> None:
        """Unrouted methods are ``unimplemented`` / HTTP 404."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            with pytest.raises(RpcError) as excinfo:
                await client.unary(SERVICE, "Nope", {})
            assert excinfo.value.code == "unimplemented"
            return await http.post("/other.v1.Missing/Call", json={}, headers=UNARY_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 404
        assert response.json()["code"] == "unimplemented"

    def test_wrong_content_type(self, registry: ServiceRegistry) -> None:
        """A unary call with a streaming content type is rejected with 415."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Greet", content=b"{}", headers=STREAM_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 415
        assert response.json()["code"] == "invalid_argument"

    def test_malformed_json(self, registry: ServiceRegistry) -> None:
        """An unparseable unary body is a 400."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Greet", content=b"{not json", headers=UNARY_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_argument"

    def test_server_stream_needs_one_message(self, registry: ServiceRegistry) -> None:
        """A server-stream call with two request messages is a 400."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            content = encode_message({"start": 1}) + encode_message({"start": 2})
            return await http.post(f"/{SERVICE}/Countdown", content=content, headers=STREAM_HEADERS)

        response = _run(registry, body)
        assert response.status_code == 400
        assert "exactly one" in response.json()["message"]

    def test_truncated_envelope(self, registry: ServiceRegistry) -> None:
        """A request body ending mid-envelope is a 400."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Sum", content=encode_message({"value": 1})[:-2], headers=STREAM_HEADERS)

        assert _run(registry, body).status_code == 400


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class TestMetadata:
    """Request IDs and transport metadata."""

    def test_request_id_is_echoed(self, registry: ServiceRegistry) -> None:
        """A caller-supplied ``X-Request-ID`` reaches the handler and the response."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(
                f"/{SERVICE}/Whoami", json={}, headers={**UNARY_HEADERS, "X-Request-ID": "req-0042"}
            )

        response = _run(registry, body)
        assert response.headers["X-Request-ID"] == "req-0042"
        assert response.json()["request_id"] == "req-0042"

    def test_request_id_is_generated(self, registry: ServiceRegistry) -> None:
        """Without a caller ID the server generates one."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> httpx.Response:
            return await http.post(f"/{SERVICE}/Whoami", json={}, headers=UNARY_HEADERS)

        response = _run(registry, body)
        generated = response.headers["X-Request-ID"]
        assert len(generated) == 16
        assert response.json()["request_id"] == generated

    def test_context_metadata(self, registry: ServiceRegistry) -> None:
        """Handlers see the user agent and their own call identity."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> Any:
            return await client.unary(SERVICE, "Whoami", {})

        result = _run(registry, body)
        assert result["user_agent"].startswith("python-httpx/")
        assert result["service"] == "GreetService"
        assert result["method"] == "Whoami"

    def test_default_client_headers(self, registry: ServiceRegistry) -> None:
        """Headers given to the client are sent on every call."""

        async def body(client: ConnectClient, http: httpx.AsyncClient) -> Any:
            tagged = ConnectClient(client=http, headers={"User-Agent": "greeter-cli/1.0"})
            return await tagged.unary(SERVICE, "Whoami", {})

        assert _run(registry, body)["user_agent"] == "greeter-cli/1.0"

    def test_stream_body_restores_request_id(self) -> None:
        """The request ID bound for a streamed body does not outlive it."""
        descriptor = CallDescriptor("Feed", "ticks", StreamingKind.SERVER_STREAM)
        adapter = CallDispatcher().build_adapter(descriptor, lambda req, ctx: PushSource.of(1, 2))
        context = CallContext(descriptor, request_id="req-stream-7")

        async def main() -> tuple[list[str], str]:
            seen: list[str] = []
            async for _chunk in _stream_body(adapter, None, context):
                seen.append(_current_request_id.get())
            return seen, _current_request_id.get()

        seen, after = asyncio.run(main())
        assert seen == ["req-stream-7"] * 3
        assert after == ""


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TestHttpRouter:
    """Route mounting."""

    def test_route_table(self, registry: ServiceRegistry) -> None:
        """Every method is mounted at ``prefix/type_name/method``."""
        router = _make_router(registry, prefix="/rpc/")
        table = router.route_table()
        assert table[f"/rpc/{SERVICE}/Greet"] is StreamingKind.UNARY
        assert table[f"/rpc/{SERVICE}/Echo"] is StreamingKind.BIDI_STREAM
        assert len(router.paths) == len(GREET_DESCRIPTOR.methods)
        assert router.lookup(SERVICE, "Sum") is not None
        assert router.lookup("GreetService", "Sum") is None

    def test_undeclared_method_is_mounted_with_warning(
        self, registry: ServiceRegistry, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Methods missing from the descriptor are still served."""
        router = HttpRouter()
        descriptor = ServiceDescriptor("greet.v1.GreetService", methods=("Greet",))
        table = ServiceBinder(registry).build(collect_handlers(make_greet_controller(registry)))
        with caplog.at_level(logging.WARNING, logger="rpcbridge.http"):
            mounted = router.service(descriptor, table["GreetService"])
        assert "/greet.v1.GreetService/Countdown" in mounted
        assert any("not declared" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------


class TestEnvelopes:
    """Envelope framing."""

    def test_decoder_handles_split_chunks(self) -> None:
        """Envelopes split across arbitrary chunk boundaries are reassembled."""
        data = encode_message({"a": 1}) + encode_message([2]) + encode_end_stream()
        decoder = EnvelopeDecoder()
        envelopes = []
        for i in range(0, len(data), 3):
            envelopes.extend(decoder.feed(data[i : i + 3]))
        decoder.close()
        assert [decode_json(p) for _, p in envelopes] == [{"a": 1}, [2], {}]
        assert [flags for flags, _ in envelopes] == [0, 0, 0x02]

    def test_header_layout(self) -> None:
        """The header is one flag byte and a big-endian 32-bit length."""
        assert encode_envelope(b"{}", flags=0x02) == b"\x02\x00\x00\x00\x02{}"

    def test_compressed_envelope_rejected(self) -> None:
        """Compression is never negotiated."""
        with pytest.raises(ValueError, match="Compressed"):
            EnvelopeDecoder().feed(encode_envelope(b"{}", flags=0x01))

    def test_trailing_bytes(self) -> None:
        """A partial envelope left at close is an error."""
        decoder = EnvelopeDecoder()
        decoder.feed(b"\x00\x00\x00")
        assert decoder.pending == 3
        with pytest.raises(ValueError, match="trailing"):
            decoder.close()

    def test_end_stream_error_payload(self) -> None:
        """The end-of-stream envelope carries the error code and message."""
        ((flags, payload),) = EnvelopeDecoder().feed(encode_end_stream(PermissionError("no entry")))
        assert flags == 0x02
        assert decode_json(payload) == {"error": {"code": "permission_denied", "message": "no entry"}}


class TestErrorMapping:
    """Exception to status code mapping."""

    @pytest.mark.parametrize(
        ("exc", "code"),
        [
            (RpcError("already_exists", "dup"), "already_exists"),
            (EmptyResultError(), "internal"),
            (NotImplementedError(), "unimplemented"),
            (PermissionError(), "permission_denied"),
            (TimeoutError(), "deadline_exceeded"),
            (KeyError("k"), "not_found"),
            (ValueError(), "invalid_argument"),
            (RuntimeError(), "unknown"),
        ],
    )
    def test_error_code_for(self, exc: BaseException, code: str) -> None:
        """Exceptions map to Connect codes."""
        assert error_code_for(exc) == code

    def test_http_status_for(self) -> None:
        """Codes map to HTTP statuses; unknown codes are 500."""
        assert http_status_for("not_found") == 404
        assert http_status_for("canceled") == 499
        assert http_status_for("made_up") == 500
