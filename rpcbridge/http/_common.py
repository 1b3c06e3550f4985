# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared constants, envelope framing, JSON codec, and error mapping for the HTTP transport."""

from __future__ import annotations

import dataclasses
import json
import struct
from http import HTTPStatus
from typing import Any, Final

from rpcbridge.rpc import EmptyResultError, RpcBridgeError, RpcError, StreamingKind

_JSON_CONTENT_TYPE: Final = "application/json"
_CONNECT_JSON_CONTENT_TYPE: Final = "application/connect+json"
_REQUEST_ID_HEADER: Final = "X-Request-ID"

_FLAG_END_STREAM: Final = 0x02
_FLAG_COMPRESSED: Final = 0x01
_ENVELOPE_HEADER = struct.Struct(">BI")

# Connect status code -> HTTP status for unary error responses.
_CODE_TO_HTTP_STATUS: Final[dict[str, int]] = {
    "canceled": 499,
    "unknown": HTTPStatus.INTERNAL_SERVER_ERROR,
    "invalid_argument": HTTPStatus.BAD_REQUEST,
    "deadline_exceeded": HTTPStatus.GATEWAY_TIMEOUT,
    "not_found": HTTPStatus.NOT_FOUND,
    "already_exists": HTTPStatus.CONFLICT,
    "permission_denied": HTTPStatus.FORBIDDEN,
    "resource_exhausted": HTTPStatus.TOO_MANY_REQUESTS,
    "failed_precondition": HTTPStatus.BAD_REQUEST,
    "aborted": HTTPStatus.CONFLICT,
    "out_of_range": HTTPStatus.BAD_REQUEST,
    "unimplemented": HTTPStatus.NOT_IMPLEMENTED,
    "internal": HTTPStatus.INTERNAL_SERVER_ERROR,
    "unavailable": HTTPStatus.SERVICE_UNAVAILABLE,
    "data_loss": HTTPStatus.INTERNAL_SERVER_ERROR,
    "unauthenticated": HTTPStatus.UNAUTHORIZED,
}

# HTTP status -> Connect code, for responses that carry no error body.
_HTTP_STATUS_TO_CODE: Final[dict[int, str]] = {
    400: "internal",
    401: "unauthenticated",
    403: "permission_denied",
    404: "unimplemented",
    429: "unavailable",
    502: "unavailable",
    503: "unavailable",
    504: "unavailable",
}


def content_type_for(streaming: StreamingKind) -> str:
    """Request/response content type for a call shape."""
    return _JSON_CONTENT_TYPE if streaming is StreamingKind.UNARY else _CONNECT_JSON_CONTENT_TYPE


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def error_code_for(exc: BaseException) -> str:
    """Map an exception raised during a call to a Connect status code."""
    if isinstance(exc, RpcError):
        return exc.code
    if isinstance(exc, (EmptyResultError, RpcBridgeError)):
        return "internal"
    if isinstance(exc, NotImplementedError):
        return "unimplemented"
    if isinstance(exc, PermissionError):
        return "permission_denied"
    if isinstance(exc, TimeoutError):
        return "deadline_exceeded"
    if isinstance(exc, LookupError):
        return "not_found"
    if isinstance(exc, (ValueError, TypeError)):
        return "invalid_argument"
    return "unknown"


def http_status_for(code: str) -> int:
    """HTTP status used for a unary error response with *code*."""
    return _CODE_TO_HTTP_STATUS.get(code, HTTPStatus.INTERNAL_SERVER_ERROR)


def code_for_http_status(status: int) -> str:
    """Connect code implied by an HTTP status lacking an error body."""
    return _HTTP_STATUS_TO_CODE.get(status, "unknown")


def error_payload(exc: BaseException) -> dict[str, str]:
    """JSON error object ``{"code", "message"}`` for *exc*."""
    message = exc.message if isinstance(exc, RpcError) else str(exc)
    return {"code": error_code_for(exc), "message": message or type(exc).__name__}


def rpc_error_from_payload(payload: Any, *, request_id: str = "", fallback_code: str = "unknown") -> RpcError:
    """Build an ``RpcError`` from a decoded error object."""
    if isinstance(payload, dict):
        code = payload.get("code")
        message = payload.get("message")
        return RpcError(
            code if isinstance(code, str) and code else fallback_code,
            message if isinstance(message, str) else "",
            request_id=request_id,
        )
    return RpcError(fallback_code, str(payload), request_id=request_id)


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------


def _json_default(obj: object) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def encode_json(value: Any) -> bytes:
    """Serialize a message to compact UTF-8 JSON; dataclasses become objects."""
    return json.dumps(value, separators=(",", ":"), default=_json_default).encode()


def decode_json(data: bytes) -> Any:
    """Deserialize a message.

    Raises:
        ValueError: If *data* is not valid UTF-8 JSON.

    """
    try:
        return json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Malformed JSON message: {exc}") from exc


# ---------------------------------------------------------------------------
# Envelope framing
# ---------------------------------------------------------------------------


def encode_envelope(payload: bytes, *, flags: int = 0) -> bytes:
    """Frame *payload* as one envelope: flag byte, big-endian length, payload."""
    return _ENVELOPE_HEADER.pack(flags, len(payload)) + payload


def encode_message(value: Any) -> bytes:
    """One data envelope carrying *value* as JSON."""
    return encode_envelope(encode_json(value))


def encode_end_stream(error: BaseException | None = None) -> bytes:
    """The end-of-stream envelope, carrying *error* if given."""
    body: dict[str, Any] = {} if error is None else {"error": error_payload(error)}
    return encode_envelope(encode_json(body), flags=_FLAG_END_STREAM)


class EnvelopeDecoder:
    """Incremental envelope parser.

    Feed arbitrary byte chunks; complete envelopes come out as
    ``(flags, payload)`` pairs in arrival order.
    """

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        """Initialize with an empty buffer."""
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[tuple[int, bytes]]:
        """Append *chunk* and return every envelope it completes.

        Raises:
            ValueError: For a compressed envelope (compression is not negotiated).

        """
        self._buffer.extend(chunk)
        header_size = _ENVELOPE_HEADER.size
        envelopes: list[tuple[int, bytes]] = []
        while len(self._buffer) >= header_size:
            flags, length = _ENVELOPE_HEADER.unpack_from(self._buffer)
            if len(self._buffer) < header_size + length:
                break
            if flags & _FLAG_COMPRESSED:
                raise ValueError("Compressed envelopes are not supported")
            payload = bytes(self._buffer[header_size : header_size + length])
            del self._buffer[: header_size + length]
            envelopes.append((flags, payload))
        return envelopes

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet forming a complete envelope."""
        return len(self._buffer)

    def close(self) -> None:
        """Assert that no partial envelope remains.

        Raises:
            ValueError: If the stream ended mid-envelope.

        """
        if self._buffer:
            raise ValueError(f"Stream ended inside an envelope ({len(self._buffer)} trailing bytes)")


def is_end_stream(flags: int) -> bool:
    """Whether *flags* mark the end-of-stream envelope."""
    return bool(flags & _FLAG_END_STREAM)
