# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Parameter encodings: apply a parameter mapping to an ``httpx.Request``.

Every encoding returns a *new* request; the input is never mutated.  An
empty or ``None`` parameter mapping returns the request unchanged.

URL encoding follows the common form conventions:

- keys are sorted at every nesting level;
- nested mappings become ``key[sub]=value``;
- sequences become ``key[]=value`` (repeated);
- booleans become ``1`` / ``0``.

Example::

    request = client.build_request("GET", "https://api.example.com/items")
    request = URL_ENCODING.encode(request, {"page": 2, "tags": ["a", "b"]})
    # https://api.example.com/items?page=2&tags%5B%5D=a&tags%5B%5D=b
"""

from __future__ import annotations

import json
import plistlib
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from http import HTTPMethod
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from restflow.errors import ParameterEncodingError, ParameterEncodingFailureReason

__all__ = [
    "HTTPMethod",
    "JSONEncoding",
    "JSON_ENCODING",
    "ParameterEncoding",
    "Parameters",
    "PROPERTY_LIST_ENCODING",
    "PropertyListEncoding",
    "URLDestination",
    "URLEncoding",
    "URL_ENCODING",
    "escape",
    "query_components",
]

Parameters = Mapping[str, Any]

# RFC 3986 section 3.4: only "?" and "/" stay literal in a query component.
_QUERY_SAFE = "/?"

_QUERY_METHODS = frozenset({HTTPMethod.GET.value, HTTPMethod.HEAD.value, HTTPMethod.DELETE.value})


class ParameterEncoding(Protocol):
    """Anything that can apply parameters to a request."""

    def encode(self, request: httpx.Request | None, parameters: Parameters | None) -> httpx.Request:
        """Return a copy of *request* carrying *parameters*.

        Raises:
            ParameterEncodingError: If the parameters cannot be encoded.

        """
        ...


def escape(value: str) -> str:
    """Percent-escape *value* for use as a query key or value."""
    return quote(value, safe=_QUERY_SAFE)


def query_components(key: str, value: Any) -> list[tuple[str, str]]:
    """Flatten one parameter into escaped ``(key, value)`` pairs."""
    components: list[tuple[str, str]] = []
    if isinstance(value, Mapping):
        for nested_key in sorted(value):
            components.extend(query_components(f"{key}[{nested_key}]", value[nested_key]))
    elif isinstance(value, list | tuple):
        for item in value:
            components.extend(query_components(f"{key}[]", item))
    elif isinstance(value, bool):
        components.append((escape(key), "1" if value else "0"))
    else:
        components.append((escape(key), escape(str(value))))
    return components


def _query(parameters: Parameters) -> str:
    components: list[tuple[str, str]] = []
    for key in sorted(parameters):
        components.extend(query_components(key, parameters[key]))
    return "&".join(f"{k}={v}" for k, v in components)


def _with_body(request: httpx.Request, body: bytes, content_type: str) -> httpx.Request:
    headers = request.headers.copy()
    headers.pop("content-length", None)
    headers.pop("transfer-encoding", None)
    if "content-type" not in headers:
        headers["Content-Type"] = content_type
    return httpx.Request(request.method, request.url, headers=headers, content=body, extensions=request.extensions)


class URLDestination(Enum):
    """Where ``URLEncoding`` puts the encoded parameters."""

    METHOD_DEPENDENT = "method_dependent"
    QUERY_STRING = "query_string"
    HTTP_BODY = "http_body"


@dataclass(frozen=True)
class URLEncoding:
    """Form/query-string encoding.

    With ``METHOD_DEPENDENT`` (the default) GET, HEAD and DELETE requests
    get a query string; all others get an
    ``application/x-www-form-urlencoded`` body.

    Attributes:
        destination: Where to put the parameters.

    """

    destination: URLDestination = URLDestination.METHOD_DEPENDENT

    def _encodes_in_url(self, method: str) -> bool:
        match self.destination:
            case URLDestination.QUERY_STRING:
                return True
            case URLDestination.HTTP_BODY:
                return False
            case _:
                return method.upper() in _QUERY_METHODS

    def encode(self, request: httpx.Request | None, parameters: Parameters | None) -> httpx.Request:
        """Apply *parameters* as a query string or form body."""
        if request is None:
            raise ParameterEncodingError(ParameterEncodingFailureReason.MISSING_URL)
        if not parameters:
            return request
        query = _query(parameters)
        if not self._encodes_in_url(request.method):
            return _with_body(request, query.encode(), "application/x-www-form-urlencoded; charset=utf-8")
        if not request.url.host:
            raise ParameterEncodingError(ParameterEncodingFailureReason.MISSING_URL)
        existing = request.url.query.decode("ascii")
        merged = f"{existing}&{query}" if existing else query
        return httpx.Request(
            request.method,
            request.url.copy_with(query=merged.encode("ascii")),
            headers=request.headers,
            stream=request.stream,
            extensions=request.extensions,
        )


@dataclass(frozen=True)
class JSONEncoding:
    """JSON body encoding (``application/json``).

    Attributes:
        pretty: Indent the document.

    """

    pretty: bool = False

    def encode(self, request: httpx.Request | None, parameters: Parameters | None) -> httpx.Request:
        """Serialize *parameters* as the JSON body."""
        if request is None:
            raise ParameterEncodingError(ParameterEncodingFailureReason.MISSING_URL)
        if parameters is None:
            return request
        return self.encode_object(request, dict(parameters))

    def encode_object(self, request: httpx.Request, obj: Any) -> httpx.Request:
        """Serialize any JSON-compatible *obj* (e.g. a top-level list) as the body."""
        try:
            body = json.dumps(obj, indent=2 if self.pretty else None).encode()
        except (TypeError, ValueError) as exc:
            raise ParameterEncodingError(ParameterEncodingFailureReason.JSON_ENCODING_FAILED, exc) from exc
        return _with_body(request, body, "application/json")


@dataclass(frozen=True)
class PropertyListEncoding:
    """Property list body encoding (``application/x-plist``).

    Attributes:
        fmt: ``plistlib.FMT_XML`` or ``plistlib.FMT_BINARY``.

    """

    fmt: plistlib.PlistFormat = plistlib.FMT_XML

    def encode(self, request: httpx.Request | None, parameters: Parameters | None) -> httpx.Request:
        """Serialize *parameters* as the property list body."""
        if request is None:
            raise ParameterEncodingError(ParameterEncodingFailureReason.MISSING_URL)
        if parameters is None:
            return request
        try:
            body = plistlib.dumps(dict(parameters), fmt=self.fmt)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ParameterEncodingError(ParameterEncodingFailureReason.PROPERTY_LIST_ENCODING_FAILED, exc) from exc
        return _with_body(request, body, "application/x-plist")


URL_ENCODING = URLEncoding()
JSON_ENCODING = JSONEncoding()
PROPERTY_LIST_ENCODING = PropertyListEncoding()
