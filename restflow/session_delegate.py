# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Session delegate: task registry, callback routing and completion dispatch.

The transport session reports every task event here.  Each event is routed
through a small priority table: handlers added with
:meth:`SessionDelegate.add_handler` run first, in registration order, and
the first one returning anything other than :data:`UNCLAIMED` answers the
event.  Otherwise the event goes to the delegate of the request registered
for the task, and failing that to a fixed default.

``TASK_COMPLETED`` and ``SESSION_INVALIDATED`` handlers are observers: all
of them run, and their return values are ignored.

Completion (:meth:`SessionDelegate.did_complete`) is where a task's outcome
is decided:

1. look up the request registered for the task id (unregistered tasks are
   finalized at once with the transport error);
2. run the request's validations;
3. the effective error is the request's own error if set, else the
   transport error;
4. without an error, or without a retrier, finalize;
5. otherwise offer the request to the retrier.

Finalizing runs the ``TASK_COMPLETED`` observers, completes the request's
delegate (releasing its held response handlers), posts
``TaskEvent.DID_COMPLETE`` and removes the task id from the registry.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

import httpx

from restflow.notifications import NotificationCenter, TaskEvent
from restflow.retry import RetryCoordinator
from restflow.transport import (
    AuthChallenge,
    BodyStream,
    ChallengeDisposition,
    Credential,
    ResponseDisposition,
    TaskMetrics,
    TransportSession,
    TransportTask,
)

if TYPE_CHECKING:
    from restflow.request import Request, TaskDelegate
    from restflow.session_manager import SessionManager

__all__ = [
    "DelegateEvent",
    "SessionDelegate",
    "TaskRegistry",
    "UNCLAIMED",
]

_logger = logging.getLogger("restflow.delegate")


class _Unclaimed(Enum):
    UNCLAIMED = "unclaimed"


UNCLAIMED = _Unclaimed.UNCLAIMED
"""Returned by a handler to pass an event on to the next one."""


class DelegateEvent(Enum):
    """Transport events that handlers can claim or observe."""

    RESPONSE = "response"
    DATA = "data"
    BODY_SENT = "body_sent"
    REDIRECT = "redirect"
    CHALLENGE = "challenge"
    NEED_BODY_STREAM = "need_body_stream"
    DOWNLOAD_WROTE = "download_wrote"
    DOWNLOAD_RESUMED = "download_resumed"
    DOWNLOAD_FINISHED = "download_finished"
    STREAMS_OPENED = "streams_opened"
    METRICS = "metrics"
    TASK_COMPLETED = "task_completed"
    SESSION_INVALIDATED = "session_invalidated"


# ---------------------------------------------------------------------------
# Task registry
# ---------------------------------------------------------------------------


class TaskRegistry:
    """Thread-safe map from task id to the request owning that task.

    Every access holds one non-reentrant lock for the duration of a single
    read or write.
    """

    __slots__ = ("_lock", "_requests")

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._lock = threading.Lock()
        self._requests: dict[int, Request] = {}

    def get(self, task_id: int) -> Request | None:
        """Return the request registered for *task_id*, if any."""
        with self._lock:
            return self._requests.get(task_id)

    def set(self, task_id: int, request: Request | None) -> None:
        """Register *request* for *task_id*; ``None`` removes the entry."""
        with self._lock:
            if request is None:
                self._requests.pop(task_id, None)
            else:
                self._requests[task_id] = request

    def pop(self, task_id: int) -> Request | None:
        """Remove and return the entry for *task_id*."""
        with self._lock:
            return self._requests.pop(task_id, None)

    def __contains__(self, task_id: object) -> bool:
        """Whether *task_id* is registered."""
        with self._lock:
            return task_id in self._requests

    def __len__(self) -> int:
        """Number of registered tasks."""
        with self._lock:
            return len(self._requests)

    def task_ids(self) -> list[int]:
        """Snapshot of the registered task ids."""
        with self._lock:
            return list(self._requests)


# ---------------------------------------------------------------------------
# Session delegate
# ---------------------------------------------------------------------------


class SessionDelegate:
    """Receives transport callbacks and routes them to requests.

    Attributes:
        registry: Task id to request map.
        retry_coordinator: Runs the retry protocol for failed requests.

    """

    def __init__(self, notifications: NotificationCenter) -> None:
        """Initialize with the notification center lifecycle events are posted to."""
        self.registry = TaskRegistry()
        self.retry_coordinator = RetryCoordinator()
        self._notifications = notifications
        self._handlers: dict[DelegateEvent, list[Callable[..., Any]]] = {event: [] for event in DelegateEvent}
        self._manager_ref: weakref.ref[SessionManager] | None = None

    def bind(self, manager: SessionManager) -> None:
        """Attach the owning manager, held weakly."""
        self._manager_ref = weakref.ref(manager)

    @property
    def manager(self) -> SessionManager | None:
        """The owning manager, or ``None`` once it has been collected."""
        return self._manager_ref() if self._manager_ref is not None else None

    @property
    def pending_retry_count(self) -> int:
        """Failed requests offered to the retrier whose retry has not yet run."""
        return self.retry_coordinator.pending_count

    # -----------------------------------------------------------------------
    # Handler table
    # -----------------------------------------------------------------------

    def add_handler(self, event: DelegateEvent, handler: Callable[..., Any]) -> None:
        """Add *handler* for *event*, after handlers already added.

        The handler receives the task followed by the event's arguments,
        e.g. ``handler(task, response)`` for ``RESPONSE``.
        """
        self._handlers[event].append(handler)

    def remove_handler(self, event: DelegateEvent, handler: Callable[..., Any]) -> None:
        """Remove a handler added with ``add_handler``.

        Raises:
            ValueError: If *handler* is not registered for *event*.

        """
        self._handlers[event].remove(handler)

    def _dispatch[T](
        self,
        event: DelegateEvent,
        task: TransportTask,
        args: tuple[Any, ...],
        per_request: Callable[[TaskDelegate], T] | None,
        default: T,
    ) -> T:
        for handler in list(self._handlers[event]):
            result = handler(task, *args)
            if result is not UNCLAIMED:
                return result  # type: ignore[no-any-return]
        if per_request is not None:
            request = self.registry.get(task.task_id)
            if request is not None:
                return per_request(request.delegate)
        return default

    def _observe(self, event: DelegateEvent, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception:
                _logger.exception("%s observer %r raised", event.value, handler)

    # -----------------------------------------------------------------------
    # Transport callbacks
    # -----------------------------------------------------------------------

    def did_receive_response(self, task: TransportTask, response: httpx.Response) -> ResponseDisposition:
        """Route a response head."""
        return self._dispatch(
            DelegateEvent.RESPONSE,
            task,
            (response,),
            lambda delegate: delegate.did_receive_response(task, response),
            ResponseDisposition.ALLOW,
        )

    def did_receive_data(self, task: TransportTask, data: bytes) -> None:
        """Route a body chunk."""
        self._dispatch(DelegateEvent.DATA, task, (data,), lambda delegate: delegate.did_receive_data(task, data), None)

    def did_send_body_data(self, task: TransportTask, bytes_sent: int, total_sent: int, total_expected: int) -> None:
        """Route upload progress."""
        self._dispatch(
            DelegateEvent.BODY_SENT,
            task,
            (bytes_sent, total_sent, total_expected),
            lambda delegate: delegate.did_send_body_data(task, bytes_sent, total_sent, total_expected),
            None,
        )

    def will_perform_redirection(
        self, task: TransportTask, response: httpx.Response, new_request: httpx.Request
    ) -> httpx.Request | None:
        """Follow redirects unchanged unless a handler rewrites or refuses them."""
        return self._dispatch(DelegateEvent.REDIRECT, task, (response, new_request), None, new_request)

    def did_receive_challenge(
        self, task: TransportTask, challenge: AuthChallenge
    ) -> tuple[ChallengeDisposition, Credential | None]:
        """Route an authentication challenge."""
        return self._dispatch(
            DelegateEvent.CHALLENGE,
            task,
            (challenge,),
            lambda delegate: delegate.did_receive_challenge(task, challenge),
            (ChallengeDisposition.PERFORM_DEFAULT_HANDLING, None),
        )

    def need_new_body_stream(self, task: TransportTask) -> BodyStream | None:
        """Route a request for an upload body stream."""
        return self._dispatch(
            DelegateEvent.NEED_BODY_STREAM, task, (), lambda delegate: delegate.need_new_body_stream(task), None
        )

    def did_write_data(self, task: TransportTask, bytes_written: int, total_written: int, total_expected: int) -> None:
        """Route download progress."""
        self._dispatch(
            DelegateEvent.DOWNLOAD_WROTE,
            task,
            (bytes_written, total_written, total_expected),
            lambda delegate: delegate.did_write_data(task, bytes_written, total_written, total_expected),
            None,
        )

    def did_resume_at_offset(self, task: TransportTask, offset: int, total_expected: int) -> None:
        """Route a resumed download's starting offset."""
        self._dispatch(
            DelegateEvent.DOWNLOAD_RESUMED,
            task,
            (offset, total_expected),
            lambda delegate: delegate.did_resume_at_offset(task, offset, total_expected),
            None,
        )

    def did_finish_downloading(self, task: TransportTask, location: Path) -> None:
        """Route a finished download file."""
        self._dispatch(
            DelegateEvent.DOWNLOAD_FINISHED,
            task,
            (location,),
            lambda delegate: delegate.did_finish_downloading(task, location),
            None,
        )

    def did_open_streams(self, task: TransportTask, reader: IO[bytes], writer: IO[bytes]) -> None:
        """Route a connected stream task's streams."""
        self._dispatch(
            DelegateEvent.STREAMS_OPENED,
            task,
            (reader, writer),
            lambda delegate: delegate.did_open_streams(task, reader, writer),
            None,
        )

    def did_finish_collecting_metrics(self, task: TransportTask, metrics: TaskMetrics) -> None:
        """Route task metrics."""
        self._dispatch(
            DelegateEvent.METRICS,
            task,
            (metrics,),
            lambda delegate: delegate.did_finish_collecting_metrics(task, metrics),
            None,
        )

    def did_become_invalid(self, session: TransportSession, error: BaseException | None) -> None:
        """Notify ``SESSION_INVALIDATED`` observers."""
        _logger.debug("Transport session invalidated")
        self._observe(DelegateEvent.SESSION_INVALIDATED, session, error)

    # -----------------------------------------------------------------------
    # Completion dispatch
    # -----------------------------------------------------------------------

    def did_complete(self, task: TransportTask, error: BaseException | None) -> None:
        """Validate, then finalize or offer the request to the retrier."""
        request = self.registry.get(task.task_id)
        manager = self.manager
        if request is None or manager is None:
            self._finalize(task, error)
            return

        validation_error = request.validations.run()
        if validation_error is not None and request.delegate.error is None:
            request.delegate.error = validation_error
        effective = request.delegate.error if request.delegate.error is not None else error

        retrier = manager.retrier
        if effective is None or retrier is None:
            self._finalize(task, effective)
            return

        _logger.debug(
            "Task %d of %s failed with %s; consulting retrier", task.task_id, request, type(effective).__name__
        )
        self.retry_coordinator.offer(
            manager,
            retrier,
            request,
            effective,
            on_decline=lambda: self._finalize(task, effective),
        )

    def _finalize(self, task: TransportTask, error: BaseException | None) -> None:
        self._observe(DelegateEvent.TASK_COMPLETED, task, error)
        request = self.registry.get(task.task_id)
        if request is not None:
            request.delegate.did_complete(task, error)
        self._notifications.post(TaskEvent.DID_COMPLETE, request if request is not None else self, task)
        self.registry.pop(task.task_id)
        _logger.debug(
            "Task %d finalized (error=%s)",
            task.task_id,
            type(error).__name__ if error else None,
            extra=request.log_fields() if request is not None else {"task_id": task.task_id},
        )
