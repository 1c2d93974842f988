# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request wrappers: one logical HTTP exchange each, across retries.

A :class:`Request` owns the current transport task, the per-task
:class:`TaskDelegate` (response state, error, credential, held response
handlers), the validation pipeline, and retry bookkeeping (``retry_count``,
``start_time``, ``end_time``).  It also remembers the *task descriptor* it
was created from, so the session manager can recreate the task verbatim
when a retrier asks for another attempt.

Per-kind state is a tagged union (:class:`DataState`,
:class:`DownloadState`, :class:`UploadState`, :class:`StreamState`)
dispatched with ``match``; the public subclasses only add kind-specific
fluent methods.

Response handlers added with ``response()`` and friends are held until the
request finishes for good (after any retries), then run in order on the
thread that finished it.  Handlers added afterwards run immediately.
"""

from __future__ import annotations

import base64
import email.message
import logging
import shlex
import shutil
import threading
import time
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from enum import Flag, auto
from pathlib import Path
from typing import IO, Any, Protocol, Self

import httpx

from restflow.errors import AdaptError
from restflow.notifications import NotificationCenter, TaskEvent
from restflow.response import (
    DataResponse,
    DefaultDataResponse,
    DefaultDownloadResponse,
    DownloadResponse,
    Result,
    Timeline,
)
from restflow.serialization import (
    ResponseSerializer,
    data_serializer,
    download_serializer,
    json_serializer,
    property_list_serializer,
    string_serializer,
)
from restflow.transport import (
    AuthChallenge,
    BodyStream,
    BodyStreamConsumedError,
    ChallengeDisposition,
    Credential,
    ResponseDisposition,
    TaskMetrics,
    TransportSession,
    TransportTask,
)
from restflow.validation import (
    ACCEPTABLE_STATUS_CODES,
    DownloadValidation,
    Validation,
    ValidationPipeline,
    ValidationResult,
    acceptable_content_types,
    validate_content_type,
    validate_download_content_type,
    validate_status_code,
)

__all__ = [
    "DataRequest",
    "DataState",
    "DownloadDestination",
    "DownloadFromRequest",
    "DownloadFromResumeData",
    "DownloadOptions",
    "DownloadRequest",
    "DownloadState",
    "HandlerQueue",
    "Progress",
    "Request",
    "RequestAdapter",
    "Requestable",
    "StreamRequest",
    "StreamState",
    "StreamToHost",
    "TaskDelegate",
    "TaskDescriptor",
    "UploadData",
    "UploadFile",
    "UploadRequest",
    "UploadState",
    "UploadStream",
    "make_task",
    "suggested_download_destination",
]

_logger = logging.getLogger("restflow.request")


class RequestAdapter(Protocol):
    """Hook that rewrites every outgoing request before its task is created."""

    def adapt(self, request: httpx.Request) -> httpx.Request:
        """Return the request to send (e.g. with an ``Authorization`` header added)."""
        ...


# ---------------------------------------------------------------------------
# Task descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Requestable:
    """Descriptor of a data task."""

    request: httpx.Request


@dataclass(frozen=True)
class DownloadFromRequest:
    """Descriptor of a download task fetching a request."""

    request: httpx.Request


@dataclass(frozen=True)
class DownloadFromResumeData:
    """Descriptor of a download task continuing from resume data."""

    resume_data: bytes


@dataclass(frozen=True)
class UploadData:
    """Descriptor of an upload task sending in-memory bytes."""

    request: httpx.Request
    data: bytes


@dataclass(frozen=True)
class UploadFile:
    """Descriptor of an upload task sending a file's contents."""

    request: httpx.Request
    path: Path


@dataclass(frozen=True)
class UploadStream:
    """Descriptor of an upload task sending a body stream."""

    request: httpx.Request
    stream: BodyStream


@dataclass(frozen=True)
class StreamToHost:
    """Descriptor of a bidirectional TCP stream task."""

    host: str
    port: int


type TaskDescriptor = (
    Requestable | DownloadFromRequest | DownloadFromResumeData | UploadData | UploadFile | UploadStream | StreamToHost
)


def _adapt(adapter: RequestAdapter | None, request: httpx.Request) -> httpx.Request:
    if adapter is None:
        return request
    try:
        return adapter.adapt(request)
    except Exception as exc:
        raise AdaptError(exc) from exc


def make_task(descriptor: TaskDescriptor, session: TransportSession, adapter: RequestAdapter | None) -> TransportTask:
    """Create a suspended transport task from *descriptor*, applying *adapter* first.

    Raises:
        AdaptError: If the adapter raised; the adapter's exception is attached.
        SessionInvalidatedError: If the session no longer accepts tasks.
        ValueError: If resume data is malformed.

    """
    match descriptor:
        case Requestable(request=request):
            return session.data_task(_adapt(adapter, request))
        case DownloadFromRequest(request=request):
            return session.download_task(_adapt(adapter, request))
        case DownloadFromResumeData(resume_data=resume_data):
            return session.download_task_with_resume_data(resume_data)
        case UploadData(request=request, data=data):
            return session.upload_task(_adapt(adapter, request), data=data)
        case UploadFile(request=request, path=path):
            return session.upload_task(_adapt(adapter, request), file=path)
        case UploadStream(request=request):
            return session.upload_task(_adapt(adapter, request), streamed=True)
        case StreamToHost(host=host, port=port):
            return session.stream_task(host, port)
        case _:
            raise TypeError(f"Unknown task descriptor: {descriptor!r}")


def _descriptor_request(descriptor: TaskDescriptor | None) -> httpx.Request | None:
    match descriptor:
        case (
            Requestable(request=request)
            | DownloadFromRequest(request=request)
            | UploadData(request=request)
            | UploadFile(request=request)
            | UploadStream(request=request)
        ):
            return request
        case _:
            return None


# ---------------------------------------------------------------------------
# Progress and download destinations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Progress:
    """Snapshot of a transfer's progress.

    Attributes:
        total_unit_count: Expected bytes, or ``-1`` when unknown.
        completed_unit_count: Bytes transferred so far.

    """

    total_unit_count: int = -1
    completed_unit_count: int = 0

    @property
    def fraction_completed(self) -> float:
        """Completed fraction in ``[0, 1]``; ``0.0`` while the total is unknown."""
        if self.total_unit_count <= 0:
            return 0.0
        return min(self.completed_unit_count / self.total_unit_count, 1.0)


ProgressHandler = Callable[[Progress], None]


class DownloadOptions(Flag):
    """How a finished download is moved to its destination."""

    NONE = 0
    CREATE_INTERMEDIATE_DIRECTORIES = auto()
    REMOVE_PREVIOUS_FILE = auto()


DownloadDestination = Callable[[Path, httpx.Response | None], tuple[Path, DownloadOptions]]
"""``(temporary_path, response) -> (destination_path, options)``."""


def _suggested_filename(response: httpx.Response | None) -> str:
    if response is None:
        return "download"
    disposition = response.headers.get("content-disposition")
    if disposition:
        message = email.message.Message()
        message["content-disposition"] = disposition
        filename = message.get_filename()
        if filename:
            return Path(filename).name
    name = Path(response.request.url.path).name
    return name or "download"


def suggested_download_destination(
    directory: Path | None = None,
    options: DownloadOptions = DownloadOptions.NONE,
) -> DownloadDestination:
    """Destination placing the file in *directory* under the server-suggested name.

    The name comes from ``Content-Disposition`` when present, else the last
    URL path segment.  *directory* defaults to the current directory.
    """

    def destination(_temporary: Path, response: httpx.Response | None) -> tuple[Path, DownloadOptions]:
        base = directory if directory is not None else Path.cwd()
        return base / _suggested_filename(response), options

    return destination


# ---------------------------------------------------------------------------
# Per-kind task state
# ---------------------------------------------------------------------------


@dataclass
class DataState:
    """State of a data task (and of an upload's response body)."""

    buffer: bytearray = field(default_factory=bytearray)
    progress: Progress = field(default_factory=Progress)
    progress_handler: ProgressHandler | None = None
    stream_handler: Callable[[bytes], None] | None = None

    @property
    def data(self) -> bytes | None:
        """Accumulated body; ``None`` when chunks go to a stream handler instead."""
        return None if self.stream_handler is not None else bytes(self.buffer)

    def reset(self) -> None:
        """Forget everything received by a previous task."""
        self.buffer = bytearray()
        self.progress = Progress()


@dataclass
class DownloadState:
    """State of a download task."""

    destination: DownloadDestination | None = None
    temporary_path: Path | None = None
    destination_path: Path | None = None
    resume_data: bytes | None = None
    progress: Progress = field(default_factory=Progress)
    progress_handler: ProgressHandler | None = None

    @property
    def file_path(self) -> Path | None:
        """Where the body ended up: the destination, else the temporary file."""
        return self.destination_path or self.temporary_path

    def reset(self) -> None:
        """Forget everything produced by a previous task."""
        self.temporary_path = None
        self.destination_path = None
        self.resume_data = None
        self.progress = Progress()


@dataclass
class UploadState:
    """State of an upload task: what was sent plus the response body."""

    body_stream: BodyStream | None = None
    body_stream_taken: bool = False
    received: DataState = field(default_factory=DataState)
    upload_progress: Progress = field(default_factory=Progress)
    upload_progress_handler: ProgressHandler | None = None

    def reset(self) -> None:
        """Forget everything sent and received by a previous task.

        ``body_stream_taken`` survives: a stream handed to one task is spent.
        """
        self.received.reset()
        self.upload_progress = Progress()


@dataclass
class StreamState:
    """State of a stream task."""

    reader: IO[bytes] | None = None
    writer: IO[bytes] | None = None
    open_handler: Callable[[IO[bytes], IO[bytes]], None] | None = None

    def reset(self) -> None:
        """Forget the previous connection's streams."""
        self.reader = None
        self.writer = None


type KindState = DataState | DownloadState | UploadState | StreamState


def _call_handler(handler: Callable[..., object], *args: Any) -> None:
    try:
        handler(*args)
    except Exception:
        _logger.exception("Handler %r raised", handler)


# ---------------------------------------------------------------------------
# Held handler queue
# ---------------------------------------------------------------------------


class HandlerQueue:
    """Callables held until ``release()``; after that, added callables run at once.

    Release drains in FIFO order on the releasing thread.  A handler that
    raises is logged and does not stop the others.
    """

    __slots__ = ("_handlers", "_lock", "_released")

    def __init__(self) -> None:
        """Initialize a held, empty queue."""
        self._lock = threading.Lock()
        self._handlers: list[Callable[[], None]] = []
        self._released = False

    @property
    def is_released(self) -> bool:
        """Whether the queue has been released."""
        with self._lock:
            return self._released

    def add(self, handler: Callable[[], None]) -> None:
        """Queue *handler*, or run it now if the queue is released."""
        with self._lock:
            if not self._released:
                self._handlers.append(handler)
                return
        _call_handler(handler)

    def release(self) -> None:
        """Run queued handlers in order; idempotent."""
        while True:
            with self._lock:
                if not self._handlers:
                    self._released = True
                    return
                handler = self._handlers.pop(0)
            _call_handler(handler)


# ---------------------------------------------------------------------------
# Task delegate
# ---------------------------------------------------------------------------


class TaskDelegate:
    """Per-request receiver of transport callbacks for the current task.

    Swapping ``task`` (on retry) resets everything the previous task
    produced: error, timings, metrics and the kind state's buffers.
    Handlers registered on the kind state survive the swap.

    Attributes:
        state: Kind-specific state.
        error: The request's own error (validation, adapter, destination, ...).
        credential: Answer to authentication challenges.
        metrics: Metrics of the last finished task.
        initial_response_time: When the first response head arrived.
        queue: Response handlers held until the request finishes.

    """

    __slots__ = ("_task", "credential", "error", "initial_response_time", "metrics", "queue", "state")

    def __init__(self, task: TransportTask | None, state: KindState) -> None:
        """Initialize for *task* (``None`` when task creation failed)."""
        self._task = task
        self.state = state
        self.error: BaseException | None = None
        self.credential: Credential | None = None
        self.metrics: TaskMetrics | None = None
        self.initial_response_time: float | None = None
        self.queue = HandlerQueue()

    @property
    def task(self) -> TransportTask | None:
        """The current transport task."""
        return self._task

    @task.setter
    def task(self, task: TransportTask | None) -> None:
        self._task = task
        self.reset()

    def reset(self) -> None:
        """Clear per-task results."""
        self.error = None
        self.metrics = None
        self.initial_response_time = None
        self.state.reset()

    @property
    def data(self) -> bytes | None:
        """Response body received in memory, if this kind keeps one."""
        match self.state:
            case (DataState() as received) | UploadState(received=received):
                return received.data
            case _:
                return None

    # -- callbacks routed by the session delegate -----------------------------

    def did_receive_response(self, task: TransportTask, response: httpx.Response) -> ResponseDisposition:
        """Record the first response time; always allow the body."""
        if self.initial_response_time is None:
            self.initial_response_time = time.monotonic()
        return ResponseDisposition.ALLOW

    def did_receive_data(self, task: TransportTask, data: bytes) -> None:
        """Accumulate (or stream out) a body chunk and report progress."""
        if self.initial_response_time is None:
            self.initial_response_time = time.monotonic()
        match self.state:
            case (DataState() as received) | UploadState(received=received):
                if received.stream_handler is not None:
                    _call_handler(received.stream_handler, data)
                else:
                    received.buffer.extend(data)
                received.progress = Progress(task.bytes_expected_to_receive, task.bytes_received)
                if received.progress_handler is not None:
                    _call_handler(received.progress_handler, received.progress)

    def did_send_body_data(self, task: TransportTask, bytes_sent: int, total_sent: int, total_expected: int) -> None:
        """Report upload progress."""
        match self.state:
            case UploadState() as upload:
                upload.upload_progress = Progress(total_expected, total_sent)
                if upload.upload_progress_handler is not None:
                    _call_handler(upload.upload_progress_handler, upload.upload_progress)

    def did_write_data(self, task: TransportTask, bytes_written: int, total_written: int, total_expected: int) -> None:
        """Report download progress."""
        if self.initial_response_time is None:
            self.initial_response_time = time.monotonic()
        match self.state:
            case DownloadState() as download:
                download.progress = Progress(total_expected, total_written)
                if download.progress_handler is not None:
                    _call_handler(download.progress_handler, download.progress)

    def did_resume_at_offset(self, task: TransportTask, offset: int, total_expected: int) -> None:
        """Start download progress at the resumed offset."""
        match self.state:
            case DownloadState() as download:
                download.progress = Progress(total_expected, offset)

    def did_finish_downloading(self, task: TransportTask, location: Path) -> None:
        """Move the downloaded file to its destination, if one was given."""
        match self.state:
            case DownloadState() as download:
                download.temporary_path = location
                if download.destination is None:
                    return
                try:
                    destination, options = download.destination(location, task.response)
                    if DownloadOptions.CREATE_INTERMEDIATE_DIRECTORIES in options:
                        destination.parent.mkdir(parents=True, exist_ok=True)
                    if DownloadOptions.REMOVE_PREVIOUS_FILE in options and destination.exists():
                        destination.unlink()
                    shutil.move(location, destination)
                except OSError as exc:
                    _logger.debug("Moving download of task %d failed: %s", task.task_id, exc)
                    self.error = exc
                    return
                download.destination_path = destination

    def did_open_streams(self, task: TransportTask, reader: IO[bytes], writer: IO[bytes]) -> None:
        """Hand the connected streams to the open handler."""
        match self.state:
            case StreamState() as stream:
                stream.reader = reader
                stream.writer = writer
                if stream.open_handler is not None:
                    _call_handler(stream.open_handler, reader, writer)

    def did_receive_challenge(
        self, task: TransportTask, challenge: AuthChallenge
    ) -> tuple[ChallengeDisposition, Credential | None]:
        """Answer with the attached credential once; reject after a failure."""
        if challenge.previous_failure_count > 0:
            return ChallengeDisposition.REJECT_PROTECTION_SPACE, None
        if self.credential is not None:
            return ChallengeDisposition.USE_CREDENTIAL, self.credential
        return ChallengeDisposition.PERFORM_DEFAULT_HANDLING, None

    def need_new_body_stream(self, task: TransportTask) -> BodyStream | None:
        """Hand the body stream of a streamed upload to its first sender.

        Raises:
            BodyStreamConsumedError: If the stream was already handed out.

        """
        match self.state:
            case UploadState(body_stream=None):
                return None
            case UploadState() as upload:
                self.check_recreatable()
                upload.body_stream_taken = True
                return upload.body_stream
            case _:
                return None

    def check_recreatable(self) -> None:
        """Raise ``BodyStreamConsumedError`` if the body could not be sent again."""
        match self.state:
            case UploadState(body_stream_taken=True):
                raise BodyStreamConsumedError("The upload body stream was already sent and cannot be replayed")

    def did_finish_collecting_metrics(self, task: TransportTask, metrics: TaskMetrics) -> None:
        """Keep the finished task's metrics."""
        self.metrics = metrics

    def did_complete(self, task: TransportTask | None, error: BaseException | None) -> None:
        """Record the final error (the request's own error wins) and release held handlers."""
        if error is not None and self.error is None:
            self.error = error
        self.queue.release()


# ---------------------------------------------------------------------------
# Request wrappers
# ---------------------------------------------------------------------------


class Request:
    """One logical HTTP exchange, possibly spanning several transport tasks.

    Created by ``SessionManager``; always returned even when the task could
    not be created, in which case ``task`` is ``None`` and ``error`` says
    why.

    Attributes:
        descriptor: How to (re)create the task; ``None`` if the request
            could not even be described (e.g. an invalid URL).
        delegate: Per-task state and held response handlers.
        retry_count: Number of retries performed so far.
        start_time: ``time.monotonic()`` when first resumed (reset per retry).
        end_time: ``time.monotonic()`` when finally completed, else ``None``.
        validations: Checks run when a task completes.

    """

    __slots__ = (
        "_notifications",
        "_session",
        "delegate",
        "descriptor",
        "end_time",
        "retry_count",
        "start_time",
        "validations",
    )

    def __init__(
        self,
        *,
        session: TransportSession,
        descriptor: TaskDescriptor | None,
        task: TransportTask | None,
        state: KindState,
        notifications: NotificationCenter,
        error: BaseException | None = None,
    ) -> None:
        """Initialize around *task*, or around *error* when task creation failed."""
        self._session = session
        self._notifications = notifications
        self.descriptor = descriptor
        self.delegate = TaskDelegate(task, state)
        self.delegate.error = error
        self.retry_count = 0
        self.start_time: float | None = None
        self.end_time: float | None = None
        self.validations = ValidationPipeline()
        self.delegate.queue.add(self._mark_end_time)

    def _mark_end_time(self) -> None:
        self.end_time = time.monotonic()

    # -----------------------------------------------------------------------
    # Views
    # -----------------------------------------------------------------------

    @property
    def session(self) -> TransportSession:
        """The transport session the request's tasks belong to."""
        return self._session

    @property
    def task(self) -> TransportTask | None:
        """The current transport task."""
        return self.delegate.task

    @property
    def request(self) -> httpx.Request | None:
        """The request as sent (after adaptation), else as described."""
        task = self.task
        if task is not None and task.original_request is not None:
            return task.original_request
        return _descriptor_request(self.descriptor)

    @property
    def http_response(self) -> httpx.Response | None:
        """The final response head, once received."""
        task = self.task
        return task.response if task is not None else None

    @property
    def error(self) -> BaseException | None:
        """The request's error, if any."""
        return self.delegate.error

    @property
    def timeline(self) -> Timeline:
        """Timings so far; unset points default to now."""
        now = time.monotonic()
        completed = self.end_time if self.end_time is not None else now
        initial = self.delegate.initial_response_time if self.delegate.initial_response_time is not None else completed
        return Timeline(
            request_start_time=self.start_time if self.start_time is not None else now,
            initial_response_time=initial,
            request_completed_time=completed,
            serialization_completed_time=now,
        )

    def log_fields(self) -> dict[str, object]:
        """``extra`` fields identifying this request in log records."""
        task = self.task
        request = self.request
        return {
            "task_id": task.task_id if task is not None else None,
            "retry_count": self.retry_count,
            "url": str(request.url) if request is not None else None,
        }

    def __str__(self) -> str:
        """Return ``METHOD URL (status)``."""
        request = self.request
        if request is None:
            match self.descriptor:
                case StreamToHost(host=host, port=port):
                    return f"STREAM {host}:{port}"
                case _:
                    return "No request"
        text = f"{request.method} {request.url}"
        response = self.http_response
        if response is not None:
            text += f" ({response.status_code})"
        return text

    def __repr__(self) -> str:
        """Return ``<DataRequest GET https://... (200) retries=0>``."""
        return f"<{type(self).__name__} {self} retries={self.retry_count}>"

    # -----------------------------------------------------------------------
    # State transitions
    # -----------------------------------------------------------------------

    def resume(self) -> Self:
        """Start or continue the task; without a task, release the held handlers."""
        task = self.task
        if task is None:
            self.delegate.queue.release()
            return self
        if self.start_time is None:
            self.start_time = time.monotonic()
        if task.resume():
            self._notifications.post(TaskEvent.DID_RESUME, self, task)
        return self

    def suspend(self) -> Self:
        """Pause the task.  No-op without a task or when not running."""
        task = self.task
        if task is not None and task.suspend():
            self._notifications.post(TaskEvent.DID_SUSPEND, self, task)
        return self

    def cancel(self) -> Self:
        """Abort the task; downloads first capture resume data.  No-op without a task."""
        task = self.task
        if task is None:
            return self
        match self.delegate.state:
            case DownloadState() as download:

                def keep(resume_data: bytes | None) -> None:
                    download.resume_data = resume_data

                cancelled = task.cancel_by_producing_resume_data(keep)
            case _:
                cancelled = task.cancel()
        if cancelled:
            self._notifications.post(TaskEvent.DID_CANCEL, self, task)
        return self

    # -----------------------------------------------------------------------
    # Authentication
    # -----------------------------------------------------------------------

    def authenticate(
        self,
        user: str | None = None,
        password: str | None = None,
        *,
        credential: Credential | None = None,
    ) -> Self:
        """Attach the credential used to answer an authentication challenge.

        Raises:
            TypeError: If neither *credential* nor both *user* and *password*
                are given.

        """
        if credential is None:
            if user is None or password is None:
                raise TypeError("authenticate() needs user and password, or credential=")
            credential = Credential(user, password)
        self.delegate.credential = credential
        return self

    @staticmethod
    def authorization_header(user: str, password: str) -> tuple[str, str]:
        """Return the ``Authorization`` header for HTTP Basic authentication."""
        token = base64.b64encode(f"{user}:{password}".encode()).decode("ascii")
        return "Authorization", f"Basic {token}"

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------

    def _add_check(self, check: Callable[[httpx.Response], ValidationResult]) -> None:
        def run() -> ValidationResult:
            response = self.http_response
            if response is None:
                return ValidationResult.success()
            return check(response)

        self.validations.add(run)

    def validate(self, validation: Validation | DownloadValidation | None = None) -> Self:
        """Add a validation; without one, add the default status and content-type checks.

        Data and upload requests call ``validation(request, response, data)``;
        downloads call ``validation(request, response, temporary_path,
        destination_path)``.
        """
        if validation is None:
            return self.validate_status().validate_content_type()

        def check(response: httpx.Response) -> ValidationResult:
            match self.delegate.state:
                case DownloadState(temporary_path=temporary, destination_path=destination):
                    return validation(self.request, response, temporary, destination)  # type: ignore[call-arg]
                case _:
                    return validation(self.request, response, self.delegate.data)  # type: ignore[call-arg]

        self._add_check(check)
        return self

    def validate_status(self, acceptable: Iterable[int] = ACCEPTABLE_STATUS_CODES) -> Self:
        """Fail unless the status code is in *acceptable* (default 200-299)."""
        codes = acceptable if isinstance(acceptable, Collection) else frozenset(acceptable)
        self._add_check(lambda response: validate_status_code(codes, response))
        return self

    def validate_content_type(self, acceptable: Iterable[str] | None = None) -> Self:
        """Fail unless ``Content-Type`` matches *acceptable* (default: the ``Accept`` header)."""
        accepted = list(acceptable) if acceptable is not None else None

        def check(response: httpx.Response) -> ValidationResult:
            types = accepted if accepted is not None else acceptable_content_types(self.request)
            match self.delegate.state:
                case DownloadState() as download:
                    return validate_download_content_type(types, response, download.file_path)
                case _:
                    return validate_content_type(types, response, self.delegate.data)

        self._add_check(check)
        return self

    # -----------------------------------------------------------------------
    # Progress
    # -----------------------------------------------------------------------

    def download_progress(self, handler: ProgressHandler) -> Self:
        """Call *handler* with a ``Progress`` snapshot as the response body arrives."""
        match self.delegate.state:
            case (DataState() as received) | UploadState(received=received):
                received.progress_handler = handler
            case DownloadState() as download:
                download.progress_handler = handler
            case _:
                raise TypeError(f"{type(self).__name__} does not report download progress")
        return self

    # -----------------------------------------------------------------------
    # Response handlers
    # -----------------------------------------------------------------------

    def _default_response(self) -> DefaultDataResponse | DefaultDownloadResponse:
        match self.delegate.state:
            case DownloadState() as download:
                return DefaultDownloadResponse(
                    request=self.request,
                    response=self.http_response,
                    temporary_path=download.temporary_path,
                    destination_path=download.destination_path,
                    resume_data=download.resume_data,
                    error=self.error,
                    timeline=self.timeline,
                    metrics=self.delegate.metrics,
                )
            case _:
                return DefaultDataResponse(
                    request=self.request,
                    response=self.http_response,
                    data=self.delegate.data,
                    error=self.error,
                    timeline=self.timeline,
                    metrics=self.delegate.metrics,
                )

    def response(self, handler: Callable[[Any], None]) -> Self:
        """Call *handler* with the unserialized response once the request finishes."""
        self.delegate.queue.add(lambda: handler(self._default_response()))
        return self

    def response_serialized[V](self, serializer: ResponseSerializer[V], handler: Callable[[Any], None]) -> Self:
        """Call *handler* with a ``DataResponse``/``DownloadResponse`` produced by *serializer*."""

        def run() -> None:
            result: Result[V]
            match self.delegate.state:
                case DownloadState() as download:
                    serialize = download_serializer(serializer)
                    result = serialize(self.request, self.http_response, download.file_path, self.error)
                    handler(
                        DownloadResponse(
                            request=self.request,
                            response=self.http_response,
                            temporary_path=download.temporary_path,
                            destination_path=download.destination_path,
                            resume_data=download.resume_data,
                            result=result,
                            timeline=self.timeline,
                            metrics=self.delegate.metrics,
                        )
                    )
                case _:
                    data = self.delegate.data
                    result = serializer(self.request, self.http_response, data, self.error)
                    handler(
                        DataResponse(
                            request=self.request,
                            response=self.http_response,
                            data=data,
                            result=result,
                            timeline=self.timeline,
                            metrics=self.delegate.metrics,
                        )
                    )

        self.delegate.queue.add(run)
        return self

    def response_data(self, handler: Callable[[Any], None]) -> Self:
        """Call *handler* with the raw body as the result value."""
        return self.response_serialized(data_serializer(), handler)

    def response_string(self, handler: Callable[[Any], None], encoding: str | None = None) -> Self:
        """Call *handler* with the body decoded as text."""
        return self.response_serialized(string_serializer(encoding), handler)

    def response_json(self, handler: Callable[[Any], None]) -> Self:
        """Call *handler* with the body parsed as JSON."""
        return self.response_serialized(json_serializer(), handler)

    def response_property_list(self, handler: Callable[[Any], None]) -> Self:
        """Call *handler* with the body parsed as a property list."""
        return self.response_serialized(property_list_serializer(), handler)

    # -----------------------------------------------------------------------
    # Debugging
    # -----------------------------------------------------------------------

    def curl_representation(self) -> str:
        """Render the request as an equivalent ``curl`` command line."""
        request = self.request
        if request is None:
            return "$ curl command could not be created"
        parts = ["$ curl -v"]
        if request.method != "GET":
            parts.append(f"-X {request.method}")
        credential = self.delegate.credential
        if credential is not None:
            parts.append(f"-u {shlex.quote(f'{credential.user}:{credential.password}')}")
        headers = httpx.Headers(self._session.headers)
        headers.update(request.headers)
        for name, value in headers.multi_items():
            if name == "cookie":
                continue
            parts.append(f"-H {shlex.quote(f'{name}: {value}')}")
        body = self._body_for_display(request)
        if body:
            parts.append(f"-d {shlex.quote(body.decode('utf-8', errors='replace'))}")
        parts.append(shlex.quote(str(request.url)))
        return " \\\n\t".join(parts)

    def _body_for_display(self, request: httpx.Request) -> bytes:
        match self.descriptor:
            case UploadData(data=data):
                return data
        try:
            return request.content
        except httpx.RequestNotRead:
            return b""


class DataRequest(Request):
    """A request whose response body is collected in memory."""

    __slots__ = ()

    def __init__(
        self,
        *,
        session: TransportSession,
        descriptor: TaskDescriptor | None,
        task: TransportTask | None,
        notifications: NotificationCenter,
        error: BaseException | None = None,
    ) -> None:
        """Initialize with fresh data state."""
        super().__init__(
            session=session,
            descriptor=descriptor,
            task=task,
            state=DataState(),
            notifications=notifications,
            error=error,
        )

    def stream(self, handler: Callable[[bytes], None]) -> Self:
        """Hand each body chunk to *handler* instead of accumulating the body."""
        match self.delegate.state:
            case DataState() as received:
                received.stream_handler = handler
        return self


class DownloadRequest(Request):
    """A request whose response body is written to a file."""

    __slots__ = ()

    def __init__(
        self,
        *,
        session: TransportSession,
        descriptor: TaskDescriptor | None,
        task: TransportTask | None,
        notifications: NotificationCenter,
        destination: DownloadDestination | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Initialize with fresh download state moving the file to *destination*."""
        super().__init__(
            session=session,
            descriptor=descriptor,
            task=task,
            state=DownloadState(destination=destination),
            notifications=notifications,
            error=error,
        )

    @property
    def resume_data(self) -> bytes | None:
        """Resume data captured by ``cancel()``, if any bytes had arrived."""
        match self.delegate.state:
            case DownloadState(resume_data=resume_data):
                return resume_data
            case _:
                return None

    @property
    def temporary_path(self) -> Path | None:
        """Where the transport wrote the body."""
        match self.delegate.state:
            case DownloadState(temporary_path=path):
                return path
            case _:
                return None

    @property
    def destination_path(self) -> Path | None:
        """Where the body was moved, when a destination was given."""
        match self.delegate.state:
            case DownloadState(destination_path=path):
                return path
            case _:
                return None

    suggested_download_destination = staticmethod(suggested_download_destination)


class UploadRequest(Request):
    """A request sending a body from memory, a file or a stream."""

    __slots__ = ()

    def __init__(
        self,
        *,
        session: TransportSession,
        descriptor: TaskDescriptor | None,
        task: TransportTask | None,
        notifications: NotificationCenter,
        error: BaseException | None = None,
    ) -> None:
        """Initialize with fresh upload state; streamed uploads keep their stream."""
        body_stream = descriptor.stream if isinstance(descriptor, UploadStream) else None
        super().__init__(
            session=session,
            descriptor=descriptor,
            task=task,
            state=UploadState(body_stream=body_stream),
            notifications=notifications,
            error=error,
        )

    def upload_progress(self, handler: ProgressHandler) -> Self:
        """Call *handler* with a ``Progress`` snapshot as the body is sent."""
        match self.delegate.state:
            case UploadState() as upload:
                upload.upload_progress_handler = handler
        return self


class StreamRequest(Request):
    """A bidirectional TCP stream."""

    __slots__ = ()

    def __init__(
        self,
        *,
        session: TransportSession,
        descriptor: TaskDescriptor | None,
        task: TransportTask | None,
        notifications: NotificationCenter,
        error: BaseException | None = None,
    ) -> None:
        """Initialize with fresh stream state."""
        super().__init__(
            session=session,
            descriptor=descriptor,
            task=task,
            state=StreamState(),
            notifications=notifications,
            error=error,
        )

    def streams(self, handler: Callable[[IO[bytes], IO[bytes]], None]) -> Self:
        """Call *handler* with ``(reader, writer)`` once connected."""
        match self.delegate.state:
            case StreamState() as stream:
                stream.open_handler = handler
        return self

    def close(self) -> Self:
        """Close the connection; the request completes without error."""
        task = self.task
        if task is not None:
            task.close_stream()
        return self
