# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Asynchronous HTTP request lifecycle management built on httpx."""

import logging
import threading
from collections.abc import Mapping
from http import HTTPMethod

import httpx

from restflow.encoding import (
    JSON_ENCODING,
    PROPERTY_LIST_ENCODING,
    URL_ENCODING,
    JSONEncoding,
    ParameterEncoding,
    Parameters,
    PropertyListEncoding,
    URLDestination,
    URLEncoding,
)
from restflow.errors import (
    InvalidURLError,
    MultipartEncodingError,
    MultipartFailureReason,
    ParameterEncodingError,
    ParameterEncodingFailureReason,
    ResponseSerializationError,
    ResponseValidationError,
    RestError,
    SerializationFailureReason,
    ValidationFailureReason,
)
from restflow.multipart import MultipartFormData, MultipartFormDataEncodingResult
from restflow.notifications import NotificationCenter, ObserverToken, TaskEvent, TaskNotification, default_center
from restflow.request import (
    DataRequest,
    DownloadOptions,
    DownloadRequest,
    Progress,
    Request,
    RequestAdapter,
    StreamRequest,
    UploadRequest,
    suggested_download_destination,
)
from restflow.response import (
    DataResponse,
    DefaultDataResponse,
    DefaultDownloadResponse,
    DownloadResponse,
    Result,
    Timeline,
)
from restflow.retry import RequestRetrier, RetryDecision, RetryPolicy
from restflow.session_delegate import UNCLAIMED, DelegateEvent, SessionDelegate
from restflow.session_manager import SessionConfig, SessionManager, default_http_headers
from restflow.transport import BodyStreamConsumedError, SessionInvalidatedError, TaskCancelledError
from restflow.validation import ACCEPTABLE_STATUS_CODES, MIMEType, ValidationResult

_default_lock = threading.Lock()
_default: SessionManager | None = None


def default_manager() -> SessionManager:
    """Return the process-wide manager, creating it on first use."""
    global _default
    with _default_lock:
        if _default is None or _default.is_closed:
            _default = SessionManager()
        return _default


def request(
    url: str | httpx.URL,
    method: HTTPMethod | str = HTTPMethod.GET,
    *,
    parameters: Parameters | None = None,
    encoding: ParameterEncoding = URL_ENCODING,
    headers: Mapping[str, str] | None = None,
) -> DataRequest:
    """Create a data request on the process-wide manager.

    Example::

        restflow.request("https://api.example.com/items").validate().response_json(print)

    """
    return default_manager().request(url, method, parameters=parameters, encoding=encoding, headers=headers)


__all__ = [
    # Manager
    "SessionManager",
    "SessionConfig",
    "default_http_headers",
    "default_manager",
    "request",
    # Requests
    "Request",
    "DataRequest",
    "DownloadRequest",
    "UploadRequest",
    "StreamRequest",
    "RequestAdapter",
    "Progress",
    "DownloadOptions",
    "suggested_download_destination",
    # Responses
    "Result",
    "Timeline",
    "DefaultDataResponse",
    "DataResponse",
    "DefaultDownloadResponse",
    "DownloadResponse",
    # Encoding
    "HTTPMethod",
    "Parameters",
    "ParameterEncoding",
    "URLEncoding",
    "URLDestination",
    "JSONEncoding",
    "PropertyListEncoding",
    "URL_ENCODING",
    "JSON_ENCODING",
    "PROPERTY_LIST_ENCODING",
    "MultipartFormData",
    "MultipartFormDataEncodingResult",
    # Validation
    "ACCEPTABLE_STATUS_CODES",
    "MIMEType",
    "ValidationResult",
    # Retry
    "RequestRetrier",
    "RetryDecision",
    "RetryPolicy",
    # Delegate & events
    "SessionDelegate",
    "DelegateEvent",
    "UNCLAIMED",
    "NotificationCenter",
    "ObserverToken",
    "TaskEvent",
    "TaskNotification",
    "default_center",
    # Errors
    "RestError",
    "InvalidURLError",
    "ParameterEncodingError",
    "ParameterEncodingFailureReason",
    "MultipartEncodingError",
    "MultipartFailureReason",
    "ResponseValidationError",
    "ValidationFailureReason",
    "ResponseSerializationError",
    "SerializationFailureReason",
    "SessionInvalidatedError",
    "TaskCancelledError",
    "BodyStreamConsumedError",
]

# Attach NullHandler to the root logger so library users don't get
# "No handler found" warnings.  Must come after all imports so the
# logger hierarchy is fully populated.
logging.getLogger("restflow").addHandler(logging.NullHandler())
