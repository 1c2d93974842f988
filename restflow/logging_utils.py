# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Single-line JSON log output for restflow records.

restflow's lifecycle records carry ``task_id``, ``retry_count`` and ``url``
as ``extra`` fields (see :meth:`restflow.request.Request.log_fields`).
:class:`RestJsonFormatter` groups those under a ``"request"`` object and
emits any other ``extra`` fields at the top level.

Not imported by ``restflow`` itself::

    handler = logging.StreamHandler()
    handler.setFormatter(RestJsonFormatter())
    logging.getLogger("restflow").addHandler(handler)
"""

from __future__ import annotations

import json
import logging
from enum import Enum

import httpx

__all__ = ["REQUEST_FIELDS", "RestJsonFormatter"]

REQUEST_FIELDS: tuple[str, ...] = ("task_id", "retry_count", "url")
"""``extra`` fields nested under ``"request"``."""

_STANDARD_KEYS = ("timestamp", "level", "logger", "message")

# Attributes every LogRecord has; the rest came from ``extra``.
_BUILTIN_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _redacted_url(value: object) -> object:
    if value is None:
        return None
    try:
        url = httpx.URL(str(value))
    except (httpx.InvalidURL, TypeError):
        return str(value)
    if not url.userinfo:
        return str(url)
    return str(url).replace(url.userinfo.decode("ascii") + "@", "", 1)


def _render(value: object) -> object:
    """``json.dumps`` fallback for values that are not JSON-native."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


class RestJsonFormatter(logging.Formatter):
    """Format records as one JSON object per line.

    ``timestamp``, ``level``, ``logger`` and ``message`` always come from the
    record itself; an ``extra`` field of the same name is dropped.  Request
    identity fields are nested under ``"request"`` with any credentials
    stripped from the URL.  Tracebacks go under ``"exception"`` and stack
    info under ``"stack_info"``.  Enum members are emitted by value, byte
    strings by size, exceptions as ``"Type: message"`` and anything else
    through ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Return *record* as a single-line JSON string."""
        extras = {k: v for k, v in vars(record).items() if k not in _BUILTIN_ATTRS and k not in _STANDARD_KEYS}
        request = {name: extras.pop(name) for name in REQUEST_FIELDS if name in extras}
        if "url" in request:
            request["url"] = _redacted_url(request["url"])

        out: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request:
            out["request"] = request
        out.update((k, v) for k, v in extras.items() if k not in ("request", "exception", "stack_info"))
        if record.exc_info and record.exc_info[1] is not None:
            out["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            out["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(out, default=_render)
