# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Response serializers: turn a finished exchange into a ``Result``.

A serializer is a callable ``(request, response, data, error) -> Result[V]``.
The request's own error always wins; otherwise the body is converted.
Responses with status 204 (No Content) or 205 (Reset Content) serialize to
an empty value instead of failing on the missing body.

Download requests reuse the same serializers through
:func:`download_serializer`, which reads the body back from the file the
download produced.
"""

from __future__ import annotations

import json
import plistlib
from collections.abc import Callable
from pathlib import Path
from typing import Any
from xml.parsers.expat import ExpatError

import httpx

from restflow.errors import ResponseSerializationError, SerializationFailureReason
from restflow.response import Result

__all__ = [
    "EMPTY_DATA_STATUS_CODES",
    "ResponseSerializer",
    "data_serializer",
    "download_serializer",
    "json_serializer",
    "property_list_serializer",
    "serialize_data",
    "serialize_json",
    "serialize_property_list",
    "serialize_string",
    "string_serializer",
]

EMPTY_DATA_STATUS_CODES: frozenset[int] = frozenset({204, 205})

type ResponseSerializer[V] = Callable[
    [httpx.Request | None, httpx.Response | None, bytes | None, BaseException | None], Result[V]
]


def _is_empty_status(response: httpx.Response | None) -> bool:
    return response is not None and response.status_code in EMPTY_DATA_STATUS_CODES


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def serialize_data(response: httpx.Response | None, data: bytes | None, error: BaseException | None) -> Result[bytes]:
    """Return the raw body."""
    if error is not None:
        return Result.failure(error)
    if _is_empty_status(response):
        return Result.success(b"")
    if data is None:
        return Result.failure(ResponseSerializationError(SerializationFailureReason.INPUT_DATA_NIL))
    return Result.success(data)


def serialize_string(
    encoding: str | None,
    response: httpx.Response | None,
    data: bytes | None,
    error: BaseException | None,
) -> Result[str]:
    """Decode the body as text.

    Args:
        encoding: Codec to use.  When ``None`` the response's charset is
            used, falling back to ISO-8859-1.
        response: The response, consulted for status and charset.
        data: The body.
        error: The request's error, if any.

    """
    if error is not None:
        return Result.failure(error)
    if _is_empty_status(response):
        return Result.success("")
    if data is None:
        return Result.failure(ResponseSerializationError(SerializationFailureReason.INPUT_DATA_NIL))
    codec = encoding
    if codec is None and response is not None:
        codec = response.charset_encoding
    codec = codec or "iso-8859-1"
    try:
        return Result.success(data.decode(codec))
    except (LookupError, UnicodeDecodeError):
        return Result.failure(
            ResponseSerializationError(SerializationFailureReason.STRING_SERIALIZATION_FAILED, encoding=codec)
        )


def serialize_json(response: httpx.Response | None, data: bytes | None, error: BaseException | None) -> Result[Any]:
    """Parse the body as JSON; 204/205 yield ``None``."""
    if error is not None:
        return Result.failure(error)
    if _is_empty_status(response):
        return Result.success(None)
    if not data:
        return Result.failure(ResponseSerializationError(SerializationFailureReason.INPUT_DATA_NIL_OR_ZERO_LENGTH))
    try:
        return Result.success(json.loads(data))
    except ValueError as exc:
        return Result.failure(
            ResponseSerializationError(SerializationFailureReason.JSON_SERIALIZATION_FAILED, underlying_error=exc)
        )


def serialize_property_list(
    response: httpx.Response | None, data: bytes | None, error: BaseException | None
) -> Result[Any]:
    """Parse the body as an XML or binary property list; 204/205 yield ``None``."""
    if error is not None:
        return Result.failure(error)
    if _is_empty_status(response):
        return Result.success(None)
    if not data:
        return Result.failure(ResponseSerializationError(SerializationFailureReason.INPUT_DATA_NIL_OR_ZERO_LENGTH))
    try:
        return Result.success(plistlib.loads(data))
    except (ValueError, ExpatError) as exc:
        return Result.failure(
            ResponseSerializationError(
                SerializationFailureReason.PROPERTY_LIST_SERIALIZATION_FAILED, underlying_error=exc
            )
        )


# ---------------------------------------------------------------------------
# Serializer factories
# ---------------------------------------------------------------------------


def data_serializer() -> ResponseSerializer[bytes]:
    """Serializer returning the raw body."""
    return lambda _request, response, data, error: serialize_data(response, data, error)


def string_serializer(encoding: str | None = None) -> ResponseSerializer[str]:
    """Serializer decoding the body with *encoding* (or the response charset)."""
    return lambda _request, response, data, error: serialize_string(encoding, response, data, error)


def json_serializer() -> ResponseSerializer[Any]:
    """Serializer parsing the body as JSON."""
    return lambda _request, response, data, error: serialize_json(response, data, error)


def property_list_serializer() -> ResponseSerializer[Any]:
    """Serializer parsing the body as a property list."""
    return lambda _request, response, data, error: serialize_property_list(response, data, error)


def download_serializer[V](
    serializer: ResponseSerializer[V],
) -> Callable[[httpx.Request | None, httpx.Response | None, Path | None, BaseException | None], Result[V]]:
    """Adapt a data serializer to downloads by reading the body from the downloaded file.

    The request's error is still passed through first, so a failed download
    never reports a file problem instead of its real cause.
    """

    def serialize(
        request: httpx.Request | None,
        response: httpx.Response | None,
        file_path: Path | None,
        error: BaseException | None,
    ) -> Result[V]:
        if error is not None:
            return Result.failure(error)
        if file_path is None:
            return Result.failure(ResponseSerializationError(SerializationFailureReason.INPUT_FILE_NIL))
        try:
            data = file_path.read_bytes()
        except OSError as exc:
            return Result.failure(
                ResponseSerializationError(
                    SerializationFailureReason.INPUT_FILE_READ_FAILED, underlying_error=exc, path=file_path
                )
            )
        return serializer(request, response, data, None)

    return serialize
