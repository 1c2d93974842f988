# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Task lifecycle events.

Request wrappers post ``DID_RESUME``, ``DID_SUSPEND`` and ``DID_CANCEL``;
the completion dispatcher posts ``DID_COMPLETE``.  Each notification carries
the transport task it concerns, so observers (logging, metrics) can key by
``notification.task.task_id``.

Observers run synchronously on the posting thread, which for
``DID_COMPLETE`` is a transport-callback thread.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from restflow.transport import TransportTask

__all__ = [
    "NotificationCenter",
    "ObserverToken",
    "TaskEvent",
    "TaskNotification",
    "default_center",
]

_logger = logging.getLogger("restflow.notifications")


class TaskEvent(Enum):
    """Names of the lifecycle events posted for transport tasks."""

    DID_RESUME = "restflow.task.did_resume"
    DID_SUSPEND = "restflow.task.did_suspend"
    DID_CANCEL = "restflow.task.did_cancel"
    DID_COMPLETE = "restflow.task.did_complete"


@dataclass(frozen=True)
class TaskNotification:
    """A posted lifecycle event.

    Attributes:
        event: Which lifecycle event occurred.
        sender: The request wrapper concerned, or the session delegate when
            a completed task was not registered to a request.
        task: The transport task concerned, or ``None`` when a download was
            cancelled before its task existed.

    """

    event: TaskEvent
    sender: object
    task: TransportTask | None

    @property
    def task_id(self) -> int | None:
        """Identifier of the task concerned, if any."""
        return self.task.task_id if self.task is not None else None


Observer = Callable[[TaskNotification], None]


@dataclass(frozen=True)
class ObserverToken:
    """Handle returned by ``add_observer``; pass it to ``remove_observer``."""

    event: TaskEvent | None
    serial: int


class NotificationCenter:
    """Thread-safe registry of lifecycle observers.

    Observers registered for ``event=None`` receive every event.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._lock = threading.Lock()
        self._serial = itertools.count(1)
        self._observers: dict[ObserverToken, Observer] = {}

    def add_observer(self, event: TaskEvent | None, callback: Observer) -> ObserverToken:
        """Register *callback* for *event* (or all events when ``None``)."""
        with self._lock:
            token = ObserverToken(event, next(self._serial))
            self._observers[token] = callback
        return token

    def remove_observer(self, token: ObserverToken) -> None:
        """Unregister the observer behind *token*.  Unknown tokens are ignored."""
        with self._lock:
            self._observers.pop(token, None)

    def post(self, event: TaskEvent, sender: object, task: TransportTask | None) -> None:
        """Deliver a notification to every matching observer, in registration order.

        An observer that raises is logged and does not prevent delivery to
        the remaining observers.
        """
        with self._lock:
            targets = [cb for tok, cb in self._observers.items() if tok.event is None or tok.event is event]
        if not targets:
            return
        notification = TaskNotification(event, sender, task)
        for callback in targets:
            try:
                callback(notification)
            except Exception:
                _logger.warning(
                    "Observer %r failed handling %s (task_id=%s)",
                    callback,
                    event.value,
                    notification.task_id,
                    exc_info=True,
                )


default_center = NotificationCenter()
"""Process-wide center used when a manager is not given its own."""
