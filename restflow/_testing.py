# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-process helpers for testing code built on restflow.

``make_mock_manager`` and ``make_wsgi_manager`` build a ``SessionManager``
whose client never touches the network: requests are answered by an
``httpx.MockTransport`` handler or by a WSGI application (e.g. a
``falcon.App``) through ``httpx.WSGITransport``.

Not imported by ``restflow/__init__.py``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

import httpx

from restflow.request import Request
from restflow.retry import RetryCompletion, RetryDecision
from restflow.session_manager import SessionConfig, SessionManager

__all__ = [
    "ScriptedRetrier",
    "make_mock_manager",
    "make_wsgi_manager",
    "wait_for_response",
    "wait_until_finalized",
]


def _manager(transport: httpx.BaseTransport, config: dict[str, Any]) -> SessionManager:
    client = httpx.Client(transport=transport, timeout=config.get("timeout", 60.0))
    return SessionManager(SessionConfig(**config), client=client)


def make_mock_manager(handler: Callable[[httpx.Request], httpx.Response], **config: Any) -> SessionManager:
    """Create a manager whose requests are answered by *handler*.

    Args:
        handler: Called with each outgoing ``httpx.Request``; returns the response.
        **config: ``SessionConfig`` fields.

    """
    return _manager(httpx.MockTransport(handler), config)


def make_wsgi_manager(app: Callable[..., Any], **config: Any) -> SessionManager:
    """Create a manager whose requests are served by the WSGI *app*.

    Args:
        app: WSGI application, e.g. a ``falcon.App``.
        **config: ``SessionConfig`` fields.

    """
    return _manager(httpx.WSGITransport(app=app), config)


class ScriptedRetrier:
    """Retrier answering with a fixed script of decisions.

    Each call consumes the next decision; once the script is exhausted every
    answer is ``RetryDecision(False)``.  Calls are recorded as
    ``(request, error)`` pairs.
    """

    __slots__ = ("_decisions", "_lock", "calls")

    def __init__(self, decisions: Iterable[RetryDecision | bool] = ()) -> None:
        """Initialize with the decisions to give, in order."""
        self._decisions = [d if isinstance(d, RetryDecision) else RetryDecision(d) for d in decisions]
        self._lock = threading.Lock()
        self.calls: list[tuple[Request, BaseException]] = []

    def should(
        self,
        manager: SessionManager,
        request: Request,
        error: BaseException,
        completion: RetryCompletion,
    ) -> None:
        """Record the call and answer with the next scripted decision."""
        with self._lock:
            self.calls.append((request, error))
            decision = self._decisions.pop(0) if self._decisions else RetryDecision(False)
        completion(decision)


def wait_for_response(request: Request, timeout: float = 5.0) -> Any:
    """Block until *request* finishes and return its unserialized response.

    Raises:
        TimeoutError: If the request does not finish within *timeout* seconds.

    """
    done = threading.Event()
    box: list[Any] = []

    def handler(response: Any) -> None:
        box.append(response)
        done.set()

    request.response(handler)
    if not done.wait(timeout):
        raise TimeoutError(f"{request!r} did not finish within {timeout}s")
    return box[0]


def wait_until_finalized(manager: SessionManager, request: Request, timeout: float = 5.0) -> None:
    """Block until *request*'s task id has left the manager's registry.

    Response handlers run before the registry entry is removed; tests that
    inspect the registry after completion wait here first.

    Raises:
        TimeoutError: If the entry is still present after *timeout* seconds.

    """
    task = request.task
    if task is None:
        return
    deadline = time.monotonic() + timeout
    while task.task_id in manager.delegate.registry:
        if time.monotonic() >= deadline:
            raise TimeoutError(f"task {task.task_id} still registered after {timeout}s")
        time.sleep(0.01)
