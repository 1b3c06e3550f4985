# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Structured logging helpers.

Provides :class:`RpcBridgeJsonFormatter`, a :class:`logging.Formatter`
subclass that serializes log records as single-line JSON objects,
:class:`RequestIdFilter`, which stamps the current request ID onto records
that do not already carry one, and :func:`configure_json_logging` to wire
both onto a handler.

This module is **not** auto-imported by ``rpcbridge``; import it explicitly::

    from rpcbridge.logging_utils import configure_json_logging

    configure_json_logging(level=logging.INFO)
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TextIO

from rpcbridge.rpc._common import _current_request_id

__all__ = ["RequestIdFilter", "RpcBridgeJsonFormatter", "configure_json_logging"]

# Attribute names every LogRecord has by default; anything else came from ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})


class RpcBridgeJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``) are
    always present and cannot be overwritten by extra fields with the same
    name.  Every other non-default attribute on the ``LogRecord`` (the
    access log's ``service``, ``method``, ``duration_ms`` and so on) is
    emitted as an additional key.

    Exception information is included under the ``"exception"`` key when
    present.  Non-serializable values are coerced to strings.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


class RequestIdFilter(logging.Filter):
    """Adds ``request_id`` from the active request to records lacking one."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Annotate *record*; never drops it."""
        if not getattr(record, "request_id", ""):
            request_id = _current_request_id.get()
            if request_id:
                record.request_id = request_id
        return True


def configure_json_logging(
    level: int | str = logging.INFO,
    *,
    logger_name: str = "rpcbridge",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach a JSON-formatting stream handler to the *logger_name* logger.

    Returns:
        The installed handler, so callers can remove it again.

    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(RpcBridgeJsonFormatter())
    handler.addFilter(RequestIdFilter())
    logger = logging.getLogger(logger_name)
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler
