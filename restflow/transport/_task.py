# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport tasks: one in-flight network operation each."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from restflow._debug import wire_task_logger
from restflow.transport._common import TaskCancelledError, TaskKind, TaskState

if TYPE_CHECKING:
    from restflow.transport._session import TransportSession

ResumeDataCallback = Callable[[bytes | None], None]


class TransportTask:
    """Handle for a single network operation owned by a ``TransportSession``.

    Tasks are created suspended.  ``resume()`` starts (or un-pauses) the
    transfer on one of the session's callback threads; ``suspend()`` pauses
    it between body chunks; ``cancel()`` aborts it.  Exactly one
    ``did_complete`` callback is delivered per task, including for tasks
    cancelled before they ever started.
    """

    __slots__ = (
        "_auth",
        "_bytes_expected",
        "_bytes_received",
        "_bytes_sent",
        "_cancel_event",
        "_closed_gracefully",
        "_completed",
        "_current_request",
        "_download_path",
        "_error",
        "_lock",
        "_response",
        "_resume_data_callback",
        "_resume_offset",
        "_running",
        "_session",
        "_started",
        "_state",
        "host",
        "kind",
        "original_request",
        "port",
        "task_id",
        "upload_source",
    )

    def __init__(
        self,
        session: TransportSession,
        task_id: int,
        kind: TaskKind,
        request: httpx.Request | None,
        *,
        upload_source: bytes | Path | None = None,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        """Initialize a suspended task; use the session's factories instead of calling this."""
        self._session = session
        self.task_id = task_id
        self.kind = kind
        self.original_request = request
        self.upload_source = upload_source
        self.host = host
        self.port = port
        self._current_request = request
        self._response: httpx.Response | None = None
        self._error: BaseException | None = None
        self._auth: httpx.Auth | None = None
        self._lock = threading.Lock()
        self._state = TaskState.SUSPENDED
        self._started = False
        self._completed = False
        self._closed_gracefully = False
        self._running = threading.Event()
        self._cancel_event = threading.Event()
        self._resume_data_callback: ResumeDataCallback | None = None
        self._download_path: Path | None = None
        self._resume_offset = 0
        self._bytes_received = 0
        self._bytes_expected = -1
        self._bytes_sent = 0

    def __repr__(self) -> str:
        """Return ``<TransportTask 3 data running GET https://...>``."""
        target = (
            f"{self._current_request.method} {self._current_request.url}"
            if self._current_request is not None
            else f"{self.host}:{self.port}"
        )
        return f"<TransportTask {self.task_id} {self.kind.value} {self._state.value} {target}>"

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def state(self) -> TaskState:
        """Current lifecycle state."""
        with self._lock:
            return self._state

    @property
    def current_request(self) -> httpx.Request | None:
        """The request most recently sent (differs from the original after redirects)."""
        return self._current_request

    @property
    def response(self) -> httpx.Response | None:
        """The final response head, once received."""
        return self._response

    @property
    def error(self) -> BaseException | None:
        """The error the task completed with, if any."""
        return self._error

    @property
    def bytes_received(self) -> int:
        """Body bytes received so far (downloads include the resumed offset)."""
        return self._bytes_received

    @property
    def bytes_expected_to_receive(self) -> int:
        """Expected body size, or ``-1`` when unknown."""
        return self._bytes_expected

    @property
    def bytes_sent(self) -> int:
        """Upload body bytes sent so far."""
        return self._bytes_sent

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def resume(self) -> bool:
        """Start the task, or continue it after ``suspend()``.

        Returns:
            ``True`` if the task transitioned to running, ``False`` if it
            was already running, cancelled or completed.

        """
        with self._lock:
            if self._state is not TaskState.SUSPENDED:
                return False
            self._state = TaskState.RUNNING
            self._running.set()
            submit = not self._started
            self._started = True
        if wire_task_logger.isEnabledFor(logging.DEBUG):
            wire_task_logger.debug("Task %d resumed (start=%s)", self.task_id, submit)
        if submit:
            self._session._submit(self)
        return True

    def suspend(self) -> bool:
        """Pause the transfer at the next chunk boundary; return whether it was running."""
        with self._lock:
            if self._state is not TaskState.RUNNING:
                return False
            self._state = TaskState.SUSPENDED
            self._running.clear()
        if wire_task_logger.isEnabledFor(logging.DEBUG):
            wire_task_logger.debug("Task %d suspended", self.task_id)
        return True

    def cancel(self) -> bool:
        """Abort the task; it completes with ``TaskCancelledError``.  Fire-and-forget.

        Returns:
            ``False`` if the task was already cancelled or completed.

        """
        return self._request_stop(graceful=False)

    def cancel_by_producing_resume_data(self, callback: ResumeDataCallback) -> bool:
        """Cancel a download, handing *callback* resume data (or ``None``) before completion."""
        if self.kind is not TaskKind.DOWNLOAD:
            raise TypeError(f"Task {self.task_id} is a {self.kind.value} task, not a download")
        with self._lock:
            if self._state not in (TaskState.CANCELING, TaskState.COMPLETED):
                self._resume_data_callback = callback
        return self._request_stop(graceful=False)

    def close_stream(self) -> bool:
        """Close a stream task's connection; it completes without error."""
        if self.kind is not TaskKind.STREAM:
            raise TypeError(f"Task {self.task_id} is a {self.kind.value} task, not a stream")
        return self._request_stop(graceful=True)

    def _request_stop(self, *, graceful: bool) -> bool:
        with self._lock:
            if self._state in (TaskState.CANCELING, TaskState.COMPLETED):
                return False
            self._state = TaskState.CANCELING
            self._closed_gracefully = graceful
            self._cancel_event.set()
            # Wake a paused runner so it observes the stop.
            self._running.set()
            submit = not self._started
            self._started = True
        if wire_task_logger.isEnabledFor(logging.DEBUG):
            wire_task_logger.debug("Task %d stop requested (graceful=%s)", self.task_id, graceful)
        if submit:
            self._session._submit(self)
        return True

    # -----------------------------------------------------------------------
    # Runner-side helpers (called on the callback thread)
    # -----------------------------------------------------------------------

    def _checkpoint(self) -> None:
        """Block while suspended; raise ``TaskCancelledError`` once stopped."""
        self._running.wait()
        if self._cancel_event.is_set() and not self._closed_gracefully:
            raise TaskCancelledError(self.task_id)

    def _mark_completed(self, error: BaseException | None) -> bool:
        """Record completion; return ``False`` if it was already recorded."""
        with self._lock:
            if self._completed:
                return False
            self._completed = True
            self._state = TaskState.COMPLETED
            self._error = error
            self._running.set()
        return True

    def _produce_resume_data(self) -> bytes | None:
        """Serialize what a later ``download_task_with_resume_data`` needs, if anything was received."""
        path = self._download_path
        request = self._current_request
        if request is None or path is None or self._bytes_received <= 0 or not path.exists():
            return None
        validators = {}
        if self._response is not None:
            for header in ("etag", "last-modified"):
                if header in self._response.headers:
                    validators[header] = self._response.headers[header]
        document = {
            "url": str(request.url),
            "method": request.method,
            "headers": [[k, v] for k, v in request.headers.multi_items() if k.lower() != "range"],
            "path": str(path),
            "offset": self._bytes_received,
            "validators": validators,
        }
        return json.dumps(document).encode()
