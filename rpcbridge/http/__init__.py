# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP transport for rpcbridge using Starlette (server) and httpx (client).

Provides :class:`HttpRouter`, a routing surface for
:class:`~rpcbridge.ServiceBinder`, ``make_asgi_app`` to serve it as an ASGI
application, and :class:`ConnectClient` to call it from Python.

HTTP Wire Protocol
------------------
Every call is ``POST {prefix}/{service type name}/{method}``.

- **Unary**: ``Content-Type: application/json``; the body is the request
  message, the response body is the reply.  Errors use a non-200 status
  and a ``{"code", "message"}`` body.
- **Streams** (server, client, bidi): ``Content-Type:
  application/connect+json``; bodies are sequences of envelopes (1 flag
  byte, 4-byte big-endian length, JSON payload).  The final envelope has
  flag ``0x02`` and carries ``{}`` or ``{"error": {"code", "message"}}``.

Every response carries ``X-Request-ID`` (echoed from the request or
generated).

Optional dependencies: ``pip install rpcbridge[http]``
"""

from rpcbridge.http._client import ConnectClient
from rpcbridge.http._common import (
    _CONNECT_JSON_CONTENT_TYPE,
    _JSON_CONTENT_TYPE,
    _REQUEST_ID_HEADER,
    EnvelopeDecoder,
    decode_json,
    encode_end_stream,
    encode_envelope,
    encode_json,
    encode_message,
    error_code_for,
    http_status_for,
)
from rpcbridge.http._server import HttpRouter, make_asgi_app

__all__ = [
    "ConnectClient",
    "EnvelopeDecoder",
    "HttpRouter",
    "decode_json",
    "encode_end_stream",
    "encode_envelope",
    "encode_json",
    "encode_message",
    "error_code_for",
    "http_status_for",
    "make_asgi_app",
    "_CONNECT_JSON_CONTENT_TYPE",
    "_JSON_CONTENT_TYPE",
    "_REQUEST_ID_HEADER",
]
