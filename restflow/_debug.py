# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Debug logging infrastructure for wire-level diagnostics.

Provides logger instances under the ``restflow.wire.*`` hierarchy and
formatting helpers for httpx requests and responses.  Enabling
``logging.getLogger("restflow.wire").setLevel(logging.DEBUG)`` (or setting
``RESTFLOW_WIRE_DEBUG=1`` before import) shows every hop, chunk and
completion the transport substrate handles.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging
import os

import httpx

# ---------------------------------------------------------------------------
# Logger hierarchy: restflow.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("restflow.wire.request")
"""Outgoing requests and redirect hops."""

wire_response_logger = logging.getLogger("restflow.wire.response")
"""Response heads and body chunks."""

wire_task_logger = logging.getLogger("restflow.wire.task")
"""Task state transitions (resume / suspend / cancel / complete)."""

if os.environ.get("RESTFLOW_WIRE_DEBUG", "").lower() in ("1", "true", "yes"):
    logging.getLogger("restflow.wire").setLevel(logging.DEBUG)

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum length for individual header values in fmt_headers."""

_REDACTED_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "set-cookie"})


def _truncate(value: str) -> str:
    if len(value) <= _MAX_VALUE_LEN:
        return value
    return value[: _MAX_VALUE_LEN - 3] + "..."


def fmt_headers(headers: httpx.Headers) -> str:
    """Format headers compactly, redacting credentials.

    Returns:
        ``"{Accept: application/json, Authorization: <redacted>}"`` or ``"{}"``.

    """
    parts = []
    for name, value in headers.items():
        shown = "<redacted>" if name.lower() in _REDACTED_HEADERS else _truncate(value)
        parts.append(f"{name}: {shown}")
    return "{" + ", ".join(parts) + "}"


def fmt_request(request: httpx.Request | None) -> str:
    """Format a request as ``"GET https://host/path headers={...}"``."""
    if request is None:
        return "(no request)"
    return f"{request.method} {request.url} headers={fmt_headers(request.headers)}"


def fmt_response(response: httpx.Response | None) -> str:
    """Format a response head as ``"200 application/json len=17"``."""
    if response is None:
        return "(no response)"
    content_type = response.headers.get("content-type", "-")
    length = response.headers.get("content-length", "?")
    return f"{response.status_code} {content_type} len={length}"
