"""Shared test fixtures for restflow tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import pytest

from restflow._testing import make_mock_manager
from restflow.notifications import NotificationCenter
from restflow.session_manager import SessionManager

ManagerFactory = Callable[..., SessionManager]
"""Type alias for the ``make_manager`` fixture return type."""


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll *predicate* until it is true or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            raise TimeoutError(f"condition not met within {timeout}s")
        time.sleep(0.01)


class Recorder:
    """Collects values handed to a callback and signals when one arrives."""

    def __init__(self) -> None:
        self.values: list[Any] = []
        self._event = threading.Event()

    def __call__(self, value: Any) -> None:
        self.values.append(value)
        self._event.set()

    def wait(self, timeout: float = 5.0) -> Any:
        """Return the first value, waiting up to *timeout* seconds for it."""
        if not self._event.wait(timeout):
            raise TimeoutError(f"no value recorded within {timeout}s")
        return self.values[0]


@pytest.fixture
def notifications() -> NotificationCenter:
    """A fresh notification center, isolated from ``default_center``."""
    return NotificationCenter()


@pytest.fixture
def make_manager(notifications: NotificationCenter) -> Iterator[ManagerFactory]:
    """Factory for mock-transport managers; every manager is closed at teardown."""
    managers: list[SessionManager] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response] | None = None, **config: Any) -> SessionManager:
        config.setdefault("notification_center", notifications)
        manager = make_mock_manager(handler or (lambda request: httpx.Response(200, text="ok")), **config)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.close(wait=True)


@pytest.fixture
def recorder() -> Recorder:
    """A fresh ``Recorder``."""
    return Recorder()


@pytest.fixture
def make_recorder() -> Callable[[], Recorder]:
    """Factory for additional ``Recorder`` instances."""
    return Recorder


@pytest.fixture
def poll() -> Callable[..., None]:
    """The ``wait_until`` polling helper."""
    return wait_until
