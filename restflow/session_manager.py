# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Session manager: the factory for every kind of request.

Every operation follows the same steps: build an ``httpx.Request``, apply
the parameter encoding, describe the task, apply the adapter and create the
transport task, wrap it in a request, register it, and start it unless
``start_immediately`` is off.

A request is *always* returned.  When a step fails the request carries the
error and has no task; chaining (``validate()``, ``response_json()``, ...)
works the same and handlers see the error once the request is resumed::

    with SessionManager() as manager:
        manager.request("https://api.example.com/items").validate().response_json(print)

If a retrier is configured, a request whose *adapter* failed is offered to
it before being released.

Logger: ``restflow.session``.
"""

from __future__ import annotations

import contextlib
import locale
import logging
import os
import platform
import shutil
import tempfile
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from http import HTTPMethod
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Self

import httpx

from restflow.encoding import URL_ENCODING, ParameterEncoding, Parameters
from restflow.errors import AdaptError, InvalidURLError, underlying_adapt_error
from restflow.multipart import MultipartFormData, MultipartFormDataEncodingResult
from restflow.notifications import NotificationCenter, default_center
from restflow.request import (
    DataRequest,
    DownloadDestination,
    DownloadFromRequest,
    DownloadFromResumeData,
    DownloadRequest,
    Request,
    RequestAdapter,
    Requestable,
    StreamRequest,
    StreamToHost,
    TaskDescriptor,
    UploadData,
    UploadFile,
    UploadRequest,
    UploadStream,
    make_task,
)
from restflow.retry import RequestRetrier
from restflow.session_delegate import SessionDelegate
from restflow.transport import BodyStream, TransportSession, TransportTask

__all__ = [
    "SessionConfig",
    "SessionManager",
    "as_url",
    "default_http_headers",
]

_logger = logging.getLogger("restflow.session")

try:
    _VERSION = version("restflow")
except PackageNotFoundError:
    _VERSION = "0.0.0"

UploadBody = bytes | bytearray | os.PathLike[str] | BodyStream
"""Upload source: in-memory bytes, a file path, or a binary stream / chunk iterable."""


def default_http_headers() -> dict[str, str]:
    """Headers sent with every request unless overridden.

    ``Accept-Encoding`` lists the codings httpx decodes, ``Accept-Language``
    follows the process locale and ``User-Agent`` names this library.
    """
    try:
        language = locale.getlocale()[0]
    except ValueError:
        language = None
    languages: list[str] = []
    if language and language not in ("C", "POSIX"):
        tag = language.replace("_", "-")
        languages.append(tag)
        primary = tag.split("-", 1)[0]
        if primary != tag:
            languages.append(primary)
    if not languages:
        languages = ["en"]
    accept_language = ", ".join(f"{tag};q={1.0 - index * 0.1:.1f}" for index, tag in enumerate(languages))
    return {
        "Accept-Encoding": "gzip;q=1.0, deflate;q=0.5",
        "Accept-Language": accept_language,
        "User-Agent": f"restflow/{_VERSION} (python/{platform.python_version()}; httpx/{httpx.__version__})",
    }


def as_url(value: str | httpx.URL) -> httpx.URL:
    """Convert *value* to an absolute ``http``/``https`` URL.

    Raises:
        InvalidURLError: If *value* is not a string or URL, does not parse,
            or lacks an HTTP scheme or host.

    """
    try:
        url = value if isinstance(value, httpx.URL) else httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as exc:
        raise InvalidURLError(value) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidURLError(value)
    return url


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for a ``SessionManager``.

    Attributes:
        default_headers: Headers added to every request built by the manager.
        start_immediately: Resume requests as soon as they are created.
        adapter: Rewrites each request before its task is created.
        retrier: Decides whether failed requests are retried.
        memory_threshold_bytes: Multipart bodies at least this large are
            written to a temporary file instead of being held in memory.
        timeout: Timeout in seconds for an internally built client and for
            stream connections.
        max_workers: Number of transport callback threads.
        max_redirects: Redirect hops followed per task.
        notification_center: Where lifecycle events are posted; the
            module-level ``default_center`` when ``None``.

    Raises:
        ValueError: If *memory_threshold_bytes* < 0, *timeout* <= 0,
            *max_workers* < 1 or *max_redirects* < 0.

    """

    default_headers: Mapping[str, str] = field(default_factory=default_http_headers)
    start_immediately: bool = True
    adapter: RequestAdapter | None = None
    retrier: RequestRetrier | None = None
    memory_threshold_bytes: int = 10_000_000
    timeout: float = 60.0
    max_workers: int = 8
    max_redirects: int = 20
    notification_center: NotificationCenter | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.memory_threshold_bytes < 0:
            raise ValueError(f"memory_threshold_bytes must be >= 0, got {self.memory_threshold_bytes}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must be >= 0, got {self.max_redirects}")


class SessionManager:
    """Creates, tracks and retries requests over one transport session.

    ``adapter``, ``retrier`` and ``start_requests_immediately`` start from
    the configuration and may be reassigned, but not while requests are in
    flight.

    The manager's lifetime must exceed any scheduled retry: retry timers
    hold the manager weakly and drop the retry if it is gone.  Use
    ``close()`` (or the context manager) for an orderly shutdown; it
    cancels live tasks, and retries firing afterwards fail with
    ``SessionInvalidatedError``.

    Args:
        config: Manager configuration.
        client: Pre-built ``httpx.Client`` to send through (e.g. with a mock
            or WSGI transport).  It is not closed by the manager.

    """

    def __init__(self, config: SessionConfig | None = None, *, client: httpx.Client | None = None) -> None:
        """Initialize the transport session and delegate."""
        self.config = config if config is not None else SessionConfig()
        self.adapter: RequestAdapter | None = self.config.adapter
        self.retrier: RequestRetrier | None = self.config.retrier
        self.start_requests_immediately = self.config.start_immediately
        self.notifications = (
            self.config.notification_center if self.config.notification_center is not None else default_center
        )
        self.delegate = SessionDelegate(self.notifications)
        self.session = TransportSession(
            delegate=self.delegate,
            client=client,
            timeout=self.config.timeout,
            max_workers=self.config.max_workers,
            max_redirects=self.config.max_redirects,
        )
        self.delegate.bind(self)
        self._close_lock = threading.Lock()
        self._closed = False

    def __repr__(self) -> str:
        """Return ``<SessionManager live=2 closed=False>``."""
        return f"<SessionManager live={len(self.delegate.registry)} closed={self._closed}>"

    # -----------------------------------------------------------------------
    # Building blocks
    # -----------------------------------------------------------------------

    def _build_request(
        self, url: str | httpx.URL, method: HTTPMethod | str, headers: Mapping[str, str] | None
    ) -> httpx.Request:
        merged = httpx.Headers(self.config.default_headers)
        if headers:
            merged.update(headers)
        return self.session.client.build_request(str(method).upper(), as_url(url), headers=merged)

    def _builder[R: Request](
        self, cls: type[R], descriptor: TaskDescriptor | None, **extra: Any
    ) -> Callable[[TransportTask | None, BaseException | None], R]:
        def build(task: TransportTask | None, error: BaseException | None) -> R:
            return cls(
                session=self.session,
                descriptor=descriptor,
                task=task,
                notifications=self.notifications,
                error=error,
                **extra,
            )

        return build

    def _launch[R: Request](
        self, descriptor: TaskDescriptor, build: Callable[[TransportTask | None, BaseException | None], R]
    ) -> R:
        try:
            task = make_task(descriptor, self.session, self.adapter)
        except Exception as exc:
            return self._failed(build, exc)
        request = build(task, None)
        self.delegate.registry.set(task.task_id, request)
        if self.start_requests_immediately:
            request.resume()
        return request

    def _failed[R: Request](
        self, build: Callable[[TransportTask | None, BaseException | None], R], error: BaseException
    ) -> R:
        underlying = underlying_adapt_error(error)
        _logger.debug("Request could not be created: %s: %s", type(underlying).__name__, underlying)
        request = build(None, underlying)
        retrier = self.retrier
        if retrier is not None and isinstance(error, AdaptError):
            start = self.start_requests_immediately

            def release() -> None:
                if start:
                    request.resume()

            self.delegate.retry_coordinator.offer(self, retrier, request, underlying, on_decline=release)
        elif self.start_requests_immediately:
            request.resume()
        return request

    # -----------------------------------------------------------------------
    # Data requests
    # -----------------------------------------------------------------------

    def request(
        self,
        url: str | httpx.URL,
        method: HTTPMethod | str = HTTPMethod.GET,
        *,
        parameters: Parameters | None = None,
        encoding: ParameterEncoding = URL_ENCODING,
        headers: Mapping[str, str] | None = None,
    ) -> DataRequest:
        """Create a data request for *url*.

        Args:
            url: Absolute ``http``/``https`` URL.
            method: HTTP method.
            parameters: Parameters applied by *encoding*.
            encoding: How *parameters* are applied.
            headers: Headers added on top of the default headers.

        """
        original: httpx.Request | None = None
        try:
            original = self._build_request(url, method, headers)
            encoded = encoding.encode(original, parameters)
        except Exception as exc:
            descriptor = Requestable(original) if original is not None else None
            return self._failed(self._builder(DataRequest, descriptor), exc)
        return self.send(encoded)

    def send(self, request: httpx.Request) -> DataRequest:
        """Create a data request for a pre-built ``httpx.Request``."""
        descriptor = Requestable(request)
        return self._launch(descriptor, self._builder(DataRequest, descriptor))

    # -----------------------------------------------------------------------
    # Downloads
    # -----------------------------------------------------------------------

    def download(
        self,
        url: str | httpx.URL,
        method: HTTPMethod | str = HTTPMethod.GET,
        *,
        parameters: Parameters | None = None,
        encoding: ParameterEncoding = URL_ENCODING,
        headers: Mapping[str, str] | None = None,
        destination: DownloadDestination | None = None,
    ) -> DownloadRequest:
        """Create a download of *url*, moved to *destination* when finished.

        Without a destination the body stays in the temporary file reported
        by ``DownloadRequest.temporary_path``.
        """
        original: httpx.Request | None = None
        try:
            original = self._build_request(url, method, headers)
            encoded = encoding.encode(original, parameters)
        except Exception as exc:
            descriptor = DownloadFromRequest(original) if original is not None else None
            return self._failed(self._builder(DownloadRequest, descriptor, destination=destination), exc)
        return self.download_request(encoded, destination=destination)

    def download_request(
        self, request: httpx.Request, *, destination: DownloadDestination | None = None
    ) -> DownloadRequest:
        """Create a download of a pre-built ``httpx.Request``."""
        descriptor = DownloadFromRequest(request)
        return self._launch(descriptor, self._builder(DownloadRequest, descriptor, destination=destination))

    def download_resuming(
        self, resume_data: bytes, *, destination: DownloadDestination | None = None
    ) -> DownloadRequest:
        """Continue a cancelled download from its ``resume_data``."""
        descriptor = DownloadFromResumeData(resume_data)
        return self._launch(descriptor, self._builder(DownloadRequest, descriptor, destination=destination))

    # -----------------------------------------------------------------------
    # Uploads
    # -----------------------------------------------------------------------

    def upload(
        self,
        body: UploadBody,
        url: str | httpx.URL,
        method: HTTPMethod | str = HTTPMethod.POST,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> UploadRequest:
        """Upload *body* to *url*; see ``upload_request`` for accepted bodies."""
        try:
            request = self._build_request(url, method, headers)
        except Exception as exc:
            return self._failed(self._builder(UploadRequest, None), exc)
        return self.upload_request(body, request)

    def upload_request(self, body: UploadBody, request: httpx.Request) -> UploadRequest:
        """Upload *body* with a pre-built ``httpx.Request``.

        ``bytes`` are sent from memory, an ``os.PathLike`` is sent from the
        file, and anything else is treated as a binary stream or an
        iterable of byte chunks.  ``str`` bodies are rejected.
        """
        descriptor: TaskDescriptor
        match body:
            case bytes() | bytearray():
                descriptor = UploadData(request, bytes(body))
            case os.PathLike():
                descriptor = UploadFile(request, Path(body))
            case str():
                error = TypeError("str upload bodies are ambiguous; pass bytes or a Path")
                return self._failed(self._builder(UploadRequest, None), error)
            case _:
                descriptor = UploadStream(request, body)
        return self._launch(descriptor, self._builder(UploadRequest, descriptor))

    def upload_multipart(
        self,
        build: Callable[[MultipartFormData], None],
        url: str | httpx.URL,
        method: HTTPMethod | str = HTTPMethod.POST,
        *,
        headers: Mapping[str, str] | None = None,
        memory_threshold_bytes: int | None = None,
        encoding_completion: Callable[[MultipartFormDataEncodingResult], None] | None = None,
    ) -> None:
        """Encode a multipart form in the background, then upload it.

        *build* fills in the form.  Forms smaller than the memory threshold
        are encoded in memory; larger ones are written to a temporary file
        that is removed when the upload finishes.  *encoding_completion*
        receives the upload, or the error that prevented it.
        """
        threshold = memory_threshold_bytes if memory_threshold_bytes is not None else self.config.memory_threshold_bytes

        def encode() -> None:
            result = self._encode_multipart(build, url, method, headers, threshold)
            if encoding_completion is not None:
                encoding_completion(result)

        threading.Thread(target=encode, daemon=True, name="restflow.multipart").start()

    def _encode_multipart(
        self,
        build: Callable[[MultipartFormData], None],
        url: str | httpx.URL,
        method: HTTPMethod | str,
        headers: Mapping[str, str] | None,
        threshold: int,
    ) -> MultipartFormDataEncodingResult:
        form = MultipartFormData()
        directory: Path | None = None
        try:
            build(form)
            merged = dict(headers or {})
            merged["Content-Type"] = form.content_type
            request = self._build_request(url, method, merged)
            if form.content_length < threshold:
                upload = self.upload_request(form.encode(), request)
                return MultipartFormDataEncodingResult(request=upload)
            directory = Path(tempfile.mkdtemp(prefix="restflow-multipart-"))
            path = directory / f"{uuid.uuid4().hex}.form"
            form.write_encoded_data(path)
            upload = self.upload_request(path, request)
            upload.delegate.queue.add(lambda: _remove_directory(path.parent))
            return MultipartFormDataEncodingResult(request=upload, streaming_from_disk=True, streaming_file_path=path)
        except Exception as exc:
            _logger.debug("Multipart encoding failed: %s", exc)
            if directory is not None:
                _remove_directory(directory)
            return MultipartFormDataEncodingResult(request=None, error=exc)

    # -----------------------------------------------------------------------
    # Streams
    # -----------------------------------------------------------------------

    def stream(self, host: str, port: int) -> StreamRequest:
        """Open a bidirectional TCP stream to *host*:*port*."""
        descriptor = StreamToHost(host, port)
        return self._launch(descriptor, self._builder(StreamRequest, descriptor))

    # -----------------------------------------------------------------------
    # Retry
    # -----------------------------------------------------------------------

    def retry(self, request: Request) -> bool:
        """Recreate *request*'s task from its descriptor and start it.

        The old task id is unregistered before the new one is registered,
        so the request is never reachable under both.  On failure the
        request's error becomes the recreation error and ``False`` is
        returned.
        """
        descriptor = request.descriptor
        if descriptor is None:
            return False
        try:
            request.delegate.check_recreatable()
            task = make_task(descriptor, self.session, self.adapter)
        except Exception as exc:
            request.delegate.error = underlying_adapt_error(exc)
            return False
        old = request.task
        if old is not None:
            self.delegate.registry.pop(old.task_id)
        request.delegate.task = task
        request.retry_count += 1
        request.start_time = time.monotonic()
        request.end_time = None
        self.delegate.registry.set(task.task_id, request)
        _logger.debug(
            "Retry %d of %s as task %d",
            request.retry_count,
            request,
            task.task_id,
            extra=request.log_fields(),
        )
        task.resume()
        return True

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        """Whether ``close()`` has been called."""
        with self._close_lock:
            return self._closed

    def close(self, *, wait: bool = False) -> None:
        """Cancel live tasks and release the transport session.  Idempotent.

        Args:
            wait: Block until every running task has completed.  Must not
                be used from a response handler.

        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        _logger.debug("Closing session manager (%d live tasks)", len(self.delegate.registry))
        self.session.invalidate_and_cancel(wait=wait)

    def __enter__(self) -> Self:
        """Enter the context manager."""
        return self

    def __exit__(self, *exc: object) -> None:
        """Close the manager."""
        self.close()


def _remove_directory(directory: Path) -> None:
    with contextlib.suppress(OSError):
        shutil.rmtree(directory)
