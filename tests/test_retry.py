"""Tests for retry decisions, the ready-made policy and the retry coordinator.

Coordinator tests use a stand-in manager so timing and weak-reference
behaviour can be observed without a transport.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from restflow.errors import ResponseValidationError, ValidationFailureReason
from restflow.retry import (
    RetryCompletion,
    RetryCoordinator,
    RetryDecision,
    RetryPolicy,
    _compute_delay,
    _get_retry_after,
    _parse_retry_after,
)


def _request(retry_count: int = 0, response: httpx.Response | None = None) -> Any:
    return SimpleNamespace(
        retry_count=retry_count,
        http_response=response,
        error=None,
        log_fields=lambda: {"retry_count": retry_count},
    )


def _status_error(code: int) -> ResponseValidationError:
    return ResponseValidationError(ValidationFailureReason.UNACCEPTABLE_STATUS_CODE, response_code=code)


def _decide(policy: RetryPolicy, request: Any, error: BaseException) -> RetryDecision:
    decisions: list[RetryDecision] = []
    policy.should(None, request, error, decisions.append)  # type: ignore[arg-type]
    assert len(decisions) == 1
    return decisions[0]


class _FakeManager:
    """Records retry() calls; answers with ``succeed``."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.retried: list[Any] = []
        self.called = threading.Event()

    def retry(self, request: Any) -> bool:
        self.retried.append(request)
        self.called.set()
        return self.succeed


class _FixedRetrier:
    """Answers every request with one decision."""

    def __init__(self, decision: RetryDecision) -> None:
        self.decision = decision

    def should(self, manager: Any, request: Any, error: BaseException, completion: RetryCompletion) -> None:
        completion(self.decision)


# ---------------------------------------------------------------------------
# RetryPolicy configuration
# ---------------------------------------------------------------------------


class TestRetryPolicyConfig:
    """Tests for RetryPolicy construction."""

    def test_defaults(self) -> None:
        """Default policy has sensible values."""
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.backoff_base == 0.5
        assert policy.backoff_max == 30.0
        assert policy.retryable_status_codes == frozenset({429, 502, 503, 504})
        assert policy.retry_on_connection_error is True
        assert policy.respect_retry_after is True

    def test_frozen(self) -> None:
        """Policy is immutable."""
        policy = RetryPolicy()
        with pytest.raises(AttributeError):
            policy.max_retries = 5  # type: ignore[misc]

    def test_negative_max_retries_rejected(self) -> None:
        """max_retries < 0 raises ValueError at construction."""
        with pytest.raises(ValueError, match="max_retries must be >= 0"):
            RetryPolicy(max_retries=-1)

    def test_negative_backoff_base_rejected(self) -> None:
        """backoff_base < 0 raises ValueError at construction."""
        with pytest.raises(ValueError, match="backoff_base must be >= 0"):
            RetryPolicy(backoff_base=-0.5)

    def test_negative_backoff_max_rejected(self) -> None:
        """backoff_max < 0 raises ValueError at construction."""
        with pytest.raises(ValueError, match="backoff_max must be >= 0"):
            RetryPolicy(backoff_max=-1.0)


# ---------------------------------------------------------------------------
# RetryPolicy decisions
# ---------------------------------------------------------------------------


class TestRetryPolicyDecisions:
    """Tests for RetryPolicy.should."""

    def test_retryable_status(self) -> None:
        """A retryable status is retried."""
        assert _decide(RetryPolicy(), _request(), _status_error(503)).should_retry

    def test_non_retryable_status(self) -> None:
        """A non-retryable status is not retried."""
        assert not _decide(RetryPolicy(), _request(), _status_error(404)).should_retry

    def test_status_from_response(self) -> None:
        """Without a code on the error, the request's response status is used."""
        error = ResponseValidationError(ValidationFailureReason.UNACCEPTABLE_CONTENT_TYPE)
        assert _decide(RetryPolicy(), _request(response=httpx.Response(502)), error).should_retry

    def test_max_retries_reached(self) -> None:
        """No retry once retry_count reaches max_retries."""
        assert not _decide(RetryPolicy(max_retries=2), _request(retry_count=2), _status_error(503)).should_retry

    def test_connection_error(self) -> None:
        """Connection errors and timeouts are retried."""
        assert _decide(RetryPolicy(), _request(), httpx.ConnectError("refused")).should_retry
        assert _decide(RetryPolicy(), _request(), httpx.ReadTimeout("slow")).should_retry

    def test_connection_error_disabled(self) -> None:
        """retry_on_connection_error=False declines connection errors."""
        policy = RetryPolicy(retry_on_connection_error=False)
        assert not _decide(policy, _request(), httpx.ConnectError("refused")).should_retry

    def test_other_errors_declined(self) -> None:
        """Unrelated errors are not retried."""
        assert not _decide(RetryPolicy(), _request(), ValueError("nope")).should_retry

    def test_retry_after_honoured(self) -> None:
        """Retry-After raises the delay above the jittered backoff."""
        response = httpx.Response(429, headers={"Retry-After": "2"})
        decision = _decide(RetryPolicy(backoff_base=0.001), _request(response=response), _status_error(429))
        assert decision.should_retry
        assert decision.delay == pytest.approx(2.0)

    def test_decision_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Retry decisions are logged at DEBUG."""
        with caplog.at_level(logging.DEBUG, logger="restflow.retry"):
            _decide(RetryPolicy(), _request(), _status_error(503))
        assert any("HTTP 503" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# Backoff helpers
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    def test_delta_seconds(self) -> None:
        """Integer and float seconds parse."""
        assert _parse_retry_after("5") == 5.0
        assert _parse_retry_after("1.5") == 1.5

    def test_negative_clamped(self) -> None:
        """Negative seconds clamp to zero."""
        assert _parse_retry_after("-3") == 0.0

    def test_http_date(self) -> None:
        """An HTTP-date in the future yields a positive delay."""
        future = datetime.now(tz=UTC) + timedelta(seconds=30)
        delay = _parse_retry_after(format_datetime(future, usegmt=True))
        assert delay is not None
        assert 20.0 < delay <= 30.0

    def test_http_date_in_past(self) -> None:
        """An HTTP-date in the past yields zero."""
        assert _parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_unparseable(self) -> None:
        """Garbage yields None."""
        assert _parse_retry_after("soon") is None

    def test_header_lookup_case_insensitive(self) -> None:
        """The header is found regardless of case."""
        assert _get_retry_after(httpx.Headers({"RETRY-AFTER": "4"})) == 4.0
        assert _get_retry_after(httpx.Headers()) is None


class TestComputeDelay:
    """Tests for exponential backoff with full jitter."""

    def test_bounded_by_exponential(self) -> None:
        """Delay never exceeds base * 2^attempt."""
        policy = RetryPolicy(backoff_base=1.0, backoff_max=100.0)
        for attempt in range(5):
            for _ in range(20):
                assert 0.0 <= _compute_delay(attempt, policy, None) <= 2**attempt

    def test_clamped_to_max(self) -> None:
        """Delay never exceeds backoff_max."""
        policy = RetryPolicy(backoff_base=10.0, backoff_max=0.5)
        assert _compute_delay(6, policy, None) <= 0.5

    def test_retry_after_clamped(self) -> None:
        """Retry-After is clamped to backoff_max too."""
        policy = RetryPolicy(backoff_base=0.0, backoff_max=3.0)
        assert _compute_delay(0, policy, 60.0) == 3.0

    def test_retry_after_ignored_when_disabled(self) -> None:
        """respect_retry_after=False ignores the server's delay."""
        policy = RetryPolicy(backoff_base=0.0, respect_retry_after=False)
        assert _compute_delay(0, policy, 10.0) == 0.0


# ---------------------------------------------------------------------------
# RetryCoordinator
# ---------------------------------------------------------------------------


class TestRetryCoordinator:
    """Tests for carrying out retry decisions."""

    def test_decline_calls_on_decline(self) -> None:
        """A negative decision calls on_decline at once and settles."""
        coordinator = RetryCoordinator()
        manager = _FakeManager()
        declined: list[bool] = []
        coordinator.offer(
            manager,  # type: ignore[arg-type]
            _FixedRetrier(RetryDecision(False)),
            _request(),  # type: ignore[arg-type]
            RuntimeError("x"),
            on_decline=lambda: declined.append(True),
        )
        assert declined == [True]
        assert manager.retried == []
        assert coordinator.pending_count == 0

    def test_accept_retries_after_delay(self) -> None:
        """A positive decision calls manager.retry on a timer thread."""
        coordinator = RetryCoordinator()
        manager = _FakeManager()
        request = _request()
        coordinator.offer(
            manager,  # type: ignore[arg-type]
            _FixedRetrier(RetryDecision(True, 0.05)),
            request,
            RuntimeError("x"),
            on_decline=lambda: pytest.fail("should not decline"),
        )
        assert manager.called.wait(5.0)
        assert manager.retried == [request]

    def test_pending_count_tracks_scheduled_retry(self) -> None:
        """pending_count is non-zero while a retry is scheduled."""
        coordinator = RetryCoordinator()
        manager = _FakeManager()
        coordinator.offer(
            manager,  # type: ignore[arg-type]
            _FixedRetrier(RetryDecision(True, 0.3)),
            _request(),
            RuntimeError("x"),
            on_decline=lambda: None,
        )
        assert coordinator.pending_count == 1
        assert manager.called.wait(5.0)

    def test_failed_recreation_declines(self) -> None:
        """If manager.retry returns False, on_decline runs."""
        coordinator = RetryCoordinator()
        manager = _FakeManager(succeed=False)
        declined = threading.Event()
        coordinator.offer(
            manager,  # type: ignore[arg-type]
            _FixedRetrier(RetryDecision(True)),
            _request(),
            RuntimeError("x"),
            on_decline=declined.set,
        )
        assert declined.wait(5.0)

    def test_second_completion_ignored(self, caplog: pytest.LogCaptureFixture) -> None:
        """Calling the completion twice acts once and logs a WARNING."""

        class _TwiceRetrier:
            def should(self, manager: Any, request: Any, error: BaseException, completion: RetryCompletion) -> None:
                completion(RetryDecision(False))
                completion(RetryDecision(False))

        coordinator = RetryCoordinator()
        declined: list[bool] = []
        with caplog.at_level(logging.WARNING, logger="restflow.retry"):
            coordinator.offer(
                _FakeManager(),  # type: ignore[arg-type]
                _TwiceRetrier(),
                _request(),
                RuntimeError("x"),
                on_decline=lambda: declined.append(True),
            )
        assert declined == [True]
        assert any("more than once" in r.getMessage() for r in caplog.records)

    def test_raising_retrier_declines(self, caplog: pytest.LogCaptureFixture) -> None:
        """A retrier that raises counts as declining."""

        class _BrokenRetrier:
            def should(self, manager: Any, request: Any, error: BaseException, completion: RetryCompletion) -> None:
                raise RuntimeError("retrier bug")

        coordinator = RetryCoordinator()
        declined: list[bool] = []
        with caplog.at_level(logging.WARNING, logger="restflow.retry"):
            coordinator.offer(
                _FakeManager(),  # type: ignore[arg-type]
                _BrokenRetrier(),
                _request(),
                RuntimeError("x"),
                on_decline=lambda: declined.append(True),
            )
        assert declined == [True]
        assert coordinator.pending_count == 0

    def test_collected_manager_drops_retry(self, caplog: pytest.LogCaptureFixture) -> None:
        """A manager collected before the delay elapses drops the retry silently."""
        coordinator = RetryCoordinator()
        manager = _FakeManager()
        declined: list[bool] = []
        with caplog.at_level(logging.DEBUG, logger="restflow.retry"):
            coordinator.offer(
                manager,  # type: ignore[arg-type]
                _FixedRetrier(RetryDecision(True, 0.2)),
                _request(),
                RuntimeError("x"),
                on_decline=lambda: declined.append(True),
            )
            del manager
            gc.collect()
            for _ in range(100):
                if any("dropping" in r.getMessage() for r in caplog.records):
                    break
                time.sleep(0.05)
        assert any("dropping" in r.getMessage() for r in caplog.records)
        assert declined == []
