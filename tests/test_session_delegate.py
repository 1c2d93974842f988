"""Tests for the task registry, handler routing and completion dispatch."""

from __future__ import annotations

import logging
import threading
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from restflow.notifications import NotificationCenter, TaskEvent, TaskNotification
from restflow.session_delegate import UNCLAIMED, DelegateEvent, SessionDelegate, TaskRegistry
from restflow.transport import AuthChallenge, ChallengeDisposition, Credential, ResponseDisposition


def _task(task_id: int = 1) -> Any:
    """Stand-in for a transport task; routing only reads ``task_id``."""
    return SimpleNamespace(task_id=task_id)


def _request(**delegate_methods: Any) -> Any:
    """Stand-in for a registered request exposing ``delegate``."""
    return SimpleNamespace(delegate=SimpleNamespace(**delegate_methods))


# ---------------------------------------------------------------------------
# TaskRegistry
# ---------------------------------------------------------------------------


class TestTaskRegistry:
    """Tests for the id -> request map."""

    def test_set_and_get(self) -> None:
        """A registered request is returned for its id."""
        registry = TaskRegistry()
        request = object()
        registry.set(7, request)  # type: ignore[arg-type]
        assert registry.get(7) is request
        assert 7 in registry
        assert len(registry) == 1

    def test_get_unknown_returns_none(self) -> None:
        """Unknown ids map to None."""
        assert TaskRegistry().get(42) is None

    def test_set_none_removes(self) -> None:
        """Setting None deletes the entry."""
        registry = TaskRegistry()
        registry.set(1, object())  # type: ignore[arg-type]
        registry.set(1, None)
        assert 1 not in registry
        assert len(registry) == 0

    def test_set_none_for_unknown_id_is_noop(self) -> None:
        """Removing an absent id does not raise."""
        registry = TaskRegistry()
        registry.set(99, None)
        assert len(registry) == 0

    def test_pop(self) -> None:
        """pop returns and removes the entry."""
        registry = TaskRegistry()
        request = object()
        registry.set(3, request)  # type: ignore[arg-type]
        assert registry.pop(3) is request
        assert registry.pop(3) is None

    def test_task_ids_snapshot(self) -> None:
        """task_ids lists registered ids at the time of the call."""
        registry = TaskRegistry()
        for task_id in (1, 2, 3):
            registry.set(task_id, object())  # type: ignore[arg-type]
        ids = registry.task_ids()
        registry.set(4, object())  # type: ignore[arg-type]
        assert sorted(ids) == [1, 2, 3]

    def test_concurrent_writers(self) -> None:
        """Concurrent writes from many threads are all recorded."""
        registry = TaskRegistry()

        def writer(base: int) -> None:
            for offset in range(100):
                registry.set(base + offset, object())  # type: ignore[arg-type]

        threads = [threading.Thread(target=writer, args=(n * 1000,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(registry) == 800


# ---------------------------------------------------------------------------
# Handler routing
# ---------------------------------------------------------------------------


class TestHandlerRouting:
    """Tests for the prioritized handler table."""

    def test_default_when_nothing_claims(self) -> None:
        """Without handlers or a registered request, the fixed default answers."""
        delegate = SessionDelegate(NotificationCenter())
        response = httpx.Response(200)
        assert delegate.did_receive_response(_task(), response) is ResponseDisposition.ALLOW

    def test_handler_overrides_default(self) -> None:
        """A handler's answer wins over the default."""
        delegate = SessionDelegate(NotificationCenter())
        delegate.add_handler(DelegateEvent.RESPONSE, lambda task, response: ResponseDisposition.CANCEL)
        assert delegate.did_receive_response(_task(), httpx.Response(200)) is ResponseDisposition.CANCEL

    def test_unclaimed_passes_to_next_handler(self) -> None:
        """Returning UNCLAIMED hands the event to the next handler in order."""
        delegate = SessionDelegate(NotificationCenter())
        seen: list[str] = []

        def first(task: Any, response: httpx.Response) -> object:
            seen.append("first")
            return UNCLAIMED

        def second(task: Any, response: httpx.Response) -> object:
            seen.append("second")
            return ResponseDisposition.CANCEL

        delegate.add_handler(DelegateEvent.RESPONSE, first)
        delegate.add_handler(DelegateEvent.RESPONSE, second)
        assert delegate.did_receive_response(_task(), httpx.Response(200)) is ResponseDisposition.CANCEL
        assert seen == ["first", "second"]

    def test_handler_wins_over_registered_request(self) -> None:
        """Handlers run before the registered request's delegate."""
        delegate = SessionDelegate(NotificationCenter())
        called: list[str] = []
        delegate.registry.set(
            1,
            _request(did_receive_response=lambda task, response: called.append("request")),
        )
        delegate.add_handler(DelegateEvent.RESPONSE, lambda task, response: ResponseDisposition.ALLOW)
        delegate.did_receive_response(_task(1), httpx.Response(200))
        assert called == []

    def test_registered_request_receives_event(self) -> None:
        """Unclaimed events go to the request registered for the task."""
        delegate = SessionDelegate(NotificationCenter())
        credential = Credential("user", "secret")
        delegate.registry.set(
            5,
            _request(did_receive_challenge=lambda task, challenge: (ChallengeDisposition.USE_CREDENTIAL, credential)),
        )
        challenge = AuthChallenge("example.com", "Basic", "api", 0, httpx.Response(401))
        assert delegate.did_receive_challenge(_task(5), challenge) == (ChallengeDisposition.USE_CREDENTIAL, credential)

    def test_challenge_default(self) -> None:
        """Unregistered tasks get default challenge handling."""
        delegate = SessionDelegate(NotificationCenter())
        challenge = AuthChallenge("example.com", "Basic", None, 0, httpx.Response(401))
        assert delegate.did_receive_challenge(_task(), challenge) == (
            ChallengeDisposition.PERFORM_DEFAULT_HANDLING,
            None,
        )

    def test_redirect_followed_unchanged_by_default(self) -> None:
        """The proposed redirect request is returned as-is."""
        delegate = SessionDelegate(NotificationCenter())
        new_request = httpx.Request("GET", "https://example.com/next")
        assert delegate.will_perform_redirection(_task(), httpx.Response(302), new_request) is new_request

    def test_redirect_refused_by_handler(self) -> None:
        """A handler returning None refuses the redirect."""
        delegate = SessionDelegate(NotificationCenter())
        delegate.add_handler(DelegateEvent.REDIRECT, lambda task, response, new_request: None)
        new_request = httpx.Request("GET", "https://example.com/next")
        assert delegate.will_perform_redirection(_task(), httpx.Response(302), new_request) is None

    def test_remove_handler(self) -> None:
        """A removed handler no longer answers."""
        delegate = SessionDelegate(NotificationCenter())

        def handler(task: Any, response: httpx.Response) -> ResponseDisposition:
            return ResponseDisposition.CANCEL

        delegate.add_handler(DelegateEvent.RESPONSE, handler)
        delegate.remove_handler(DelegateEvent.RESPONSE, handler)
        assert delegate.did_receive_response(_task(), httpx.Response(200)) is ResponseDisposition.ALLOW

    def test_remove_unknown_handler_raises(self) -> None:
        """Removing a handler that was never added raises ValueError."""
        delegate = SessionDelegate(NotificationCenter())
        with pytest.raises(ValueError):
            delegate.remove_handler(DelegateEvent.DATA, lambda task, data: None)


# ---------------------------------------------------------------------------
# Observers and completion of unregistered tasks
# ---------------------------------------------------------------------------


class TestObservers:
    """Tests for TASK_COMPLETED / SESSION_INVALIDATED observers."""

    def test_all_completion_observers_run(self) -> None:
        """Every TASK_COMPLETED observer runs, even after one raises."""
        delegate = SessionDelegate(NotificationCenter())
        seen: list[str] = []

        def broken(task: Any, error: BaseException | None) -> None:
            raise RuntimeError("observer failure")

        delegate.add_handler(DelegateEvent.TASK_COMPLETED, lambda task, error: seen.append("a"))
        delegate.add_handler(DelegateEvent.TASK_COMPLETED, broken)
        delegate.add_handler(DelegateEvent.TASK_COMPLETED, lambda task, error: seen.append("b"))
        delegate.did_complete(_task(), None)
        assert seen == ["a", "b"]

    def test_raising_observer_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """An observer exception is logged with its traceback."""
        delegate = SessionDelegate(NotificationCenter())

        def broken(task: Any, error: BaseException | None) -> None:
            raise RuntimeError("observer failure")

        delegate.add_handler(DelegateEvent.TASK_COMPLETED, broken)
        with caplog.at_level(logging.ERROR, logger="restflow.delegate"):
            delegate.did_complete(_task(), None)
        assert any(record.exc_info is not None for record in caplog.records)

    def test_unregistered_completion_posts_did_complete(self) -> None:
        """Completing an unknown task still posts DID_COMPLETE, sent by the delegate."""
        center = NotificationCenter()
        delegate = SessionDelegate(center)
        posted: list[TaskNotification] = []
        center.add_observer(TaskEvent.DID_COMPLETE, posted.append)
        task = _task(11)
        error = RuntimeError("boom")
        delegate.did_complete(task, error)
        assert len(posted) == 1
        assert posted[0].sender is delegate
        assert posted[0].task is task

    def test_session_invalidated_observers(self) -> None:
        """did_become_invalid notifies SESSION_INVALIDATED observers with the session and error."""
        delegate = SessionDelegate(NotificationCenter())
        seen: list[tuple[object, BaseException | None]] = []
        delegate.add_handler(DelegateEvent.SESSION_INVALIDATED, lambda session, error: seen.append((session, error)))
        session = object()
        delegate.did_become_invalid(session, None)  # type: ignore[arg-type]
        assert seen == [(session, None)]

    def test_manager_is_weak(self) -> None:
        """The delegate does not keep its manager alive."""
        delegate = SessionDelegate(NotificationCenter())
        assert delegate.manager is None
        assert delegate.pending_retry_count == 0
