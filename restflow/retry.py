# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Retry coordination for failed requests.

A *retrier* decides whether a failed request should be sent again and
after how long.  It answers asynchronously through a completion callback
that must be invoked exactly once::

    class RetryUnauthorized:
        def should(self, manager, request, error, completion):
            refresh_token_in_background(lambda: completion(RetryDecision(True)))

:class:`RetryPolicy` is a ready-made retrier for transient failures
(429/502/503/504 and connection errors) using exponential backoff with full
jitter.

:class:`RetryCoordinator` runs the protocol: it asks the retrier, waits the
requested delay on a timer thread (never blocking a transport thread), then
asks the manager to recreate the task.  It holds the manager only weakly;
if the manager is collected before the delay elapses the retry is dropped
silently and nothing else happens to the request.  ``pending_count`` lets
callers detect requests stranded that way.

Logger: ``restflow.retry``.  Retry decisions and dropped retries are logged
at DEBUG; a completion invoked twice is logged at WARNING.
"""

from __future__ import annotations

import logging
import random
import threading
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Protocol

import httpx

from restflow.errors import ResponseValidationError

if TYPE_CHECKING:
    from restflow.request import Request
    from restflow.session_manager import SessionManager

__all__ = [
    "RequestRetrier",
    "RetryCompletion",
    "RetryCoordinator",
    "RetryDecision",
    "RetryPolicy",
]

_logger = logging.getLogger("restflow.retry")

# Default status codes produced by reverse proxies (nginx, ALB, etc.)
# that indicate transient failures safe to retry.
_DEFAULT_RETRYABLE: frozenset[int] = frozenset({429, 502, 503, 504})


@dataclass(frozen=True)
class RetryDecision:
    """A retrier's answer.

    Attributes:
        should_retry: Whether to send the request again.
        delay: Seconds to wait before the new attempt.

    """

    should_retry: bool
    delay: float = 0.0


RetryCompletion = Callable[[RetryDecision], None]


class RequestRetrier(Protocol):
    """Decides whether a failed request is retried."""

    def should(
        self,
        manager: SessionManager,
        request: Request,
        error: BaseException,
        completion: RetryCompletion,
    ) -> None:
        """Call *completion* exactly once, now or later, with the decision."""
        ...


# ---------------------------------------------------------------------------
# Ready-made policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Retrier for transient HTTP failures.

    Attributes:
        max_retries: Number of retry attempts (total attempts = max_retries + 1).
        backoff_base: Exponential backoff base in seconds
            (delay = base * 2^attempt).
        backoff_max: Maximum backoff delay in seconds.
        retryable_status_codes: HTTP status codes eligible for retry.
        retry_on_connection_error: Whether to retry on ``httpx.ConnectError``
            and ``httpx.TimeoutException``.
        respect_retry_after: Whether to honor the ``Retry-After`` header.

    Raises:
        ValueError: If *max_retries* < 0, *backoff_base* < 0, or
            *backoff_max* < 0.

    """

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    retryable_status_codes: frozenset[int] = field(default_factory=lambda: _DEFAULT_RETRYABLE)
    retry_on_connection_error: bool = True
    respect_retry_after: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff_base < 0:
            raise ValueError(f"backoff_base must be >= 0, got {self.backoff_base}")
        if self.backoff_max < 0:
            raise ValueError(f"backoff_max must be >= 0, got {self.backoff_max}")

    def should(
        self,
        manager: SessionManager,
        request: Request,
        error: BaseException,
        completion: RetryCompletion,
    ) -> None:
        """Retry retryable statuses and connection errors until ``max_retries`` is reached."""
        attempt = request.retry_count
        if attempt >= self.max_retries:
            completion(RetryDecision(False))
            return

        status = _failed_status_code(request, error)
        if status is not None:
            if status not in self.retryable_status_codes:
                completion(RetryDecision(False))
                return
            response = request.http_response
            retry_after = _get_retry_after(response.headers) if response is not None else None
            delay = _compute_delay(attempt, self, retry_after)
            _logger.debug(
                "HTTP %d on %s (attempt %d/%d), retrying in %.2fs",
                status,
                request,
                attempt + 1,
                self.max_retries + 1,
                delay,
            )
        elif self.retry_on_connection_error and isinstance(error, httpx.ConnectError | httpx.TimeoutException):
            delay = _compute_delay(attempt, self, None)
            _logger.debug(
                "Connection error on %s (attempt %d/%d), retrying in %.2fs",
                request,
                attempt + 1,
                self.max_retries + 1,
                delay,
            )
        else:
            completion(RetryDecision(False))
            return
        completion(RetryDecision(True, delay))


def _failed_status_code(request: Request, error: BaseException) -> int | None:
    """Status code a validation rejected, if the failure was a rejected response."""
    if not isinstance(error, ResponseValidationError):
        return None
    if error.response_code is not None:
        return error.response_code
    response = request.http_response
    return response.status_code if response is not None else None


def _parse_retry_after(header_value: str) -> float | None:
    """Parse a ``Retry-After`` header value (delta-seconds or HTTP-date).

    Args:
        header_value: Raw header value.

    Returns:
        Delay in seconds, or ``None`` if unparseable.

    """
    # Try delta-seconds first (most common)
    try:
        return max(0.0, float(header_value))
    except ValueError:
        pass

    # Try HTTP-date (RFC 9110 section 10.2.3)
    try:
        dt = parsedate_to_datetime(header_value)
        delay = (dt - datetime.now(tz=UTC)).total_seconds()
        return max(0.0, delay)
    except (ValueError, TypeError):
        return None


def _compute_delay(attempt: int, policy: RetryPolicy, retry_after: float | None) -> float:
    """Compute the backoff delay for a retry attempt.

    Uses exponential backoff with full jitter, clamped to ``backoff_max``.
    If ``retry_after`` is set and ``respect_retry_after`` is enabled, uses
    the larger of the computed delay and the server-requested delay.

    Args:
        attempt: Zero-based retry attempt number.
        policy: Retry policy.
        retry_after: Parsed Retry-After value, or ``None``.

    Returns:
        Delay in seconds before the next attempt.

    """
    exp_delay = policy.backoff_base * (2**attempt)
    jittered = random.uniform(0, exp_delay)
    delay = min(jittered, policy.backoff_max)

    if policy.respect_retry_after and retry_after is not None:
        delay = max(delay, min(retry_after, policy.backoff_max))

    return delay


def _get_retry_after(headers: httpx.Headers) -> float | None:
    """Extract and parse ``Retry-After`` from response headers."""
    raw = headers.get("retry-after")
    if raw is None:
        return None
    return _parse_retry_after(raw)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class _Continuation:
    """The completion handed to a retrier; acts on the first decision only."""

    __slots__ = ("_called", "_coordinator", "_lock", "_manager_ref", "_on_decline", "_request")

    def __init__(
        self,
        coordinator: RetryCoordinator,
        manager_ref: weakref.ref[SessionManager],
        request: Request,
        on_decline: Callable[[], None],
    ) -> None:
        self._coordinator = coordinator
        self._manager_ref = manager_ref
        self._request = request
        self._on_decline = on_decline
        self._lock = threading.Lock()
        self._called = False

    def __call__(self, decision: RetryDecision) -> None:
        with self._lock:
            if self._called:
                _logger.warning("Retry completion for %s invoked more than once; ignoring %s", self._request, decision)
                return
            self._called = True
        if not decision.should_retry:
            _logger.debug("Not retrying %s", self._request, extra=self._request.log_fields())
            self._coordinator._settle()
            self._on_decline()
            return
        timer = threading.Timer(max(decision.delay, 0.0), self._fire)
        timer.daemon = True
        timer.name = "restflow.retry"
        timer.start()

    def _fire(self) -> None:
        try:
            manager = self._manager_ref()
            if manager is None:
                _logger.debug(
                    "Session manager gone before retry of %s; dropping it",
                    self._request,
                    extra=self._request.log_fields(),
                )
                return
            if not manager.retry(self._request):
                _logger.debug("Recreating the task of %s failed: %s", self._request, self._request.error)
                self._on_decline()
        finally:
            self._coordinator._settle()


class RetryCoordinator:
    """Offers failed requests to a retrier and carries out its decisions."""

    __slots__ = ("_lock", "_pending")

    def __init__(self) -> None:
        """Initialize with no pending retries."""
        self._lock = threading.Lock()
        self._pending = 0

    @property
    def pending_count(self) -> int:
        """Requests offered to a retrier whose retry has not yet been decided and carried out."""
        with self._lock:
            return self._pending

    def _settle(self) -> None:
        with self._lock:
            self._pending -= 1

    def offer(
        self,
        manager: SessionManager,
        retrier: RequestRetrier,
        request: Request,
        error: BaseException,
        *,
        on_decline: Callable[[], None],
    ) -> None:
        """Ask *retrier* about *request*; call *on_decline* if it declines or recreation fails.

        On a positive decision the manager's ``retry()`` runs after the
        delay on a timer thread.  A retrier that raises is treated as
        declining.
        """
        with self._lock:
            self._pending += 1
        continuation = _Continuation(self, weakref.ref(manager), request, on_decline)
        try:
            retrier.should(manager, request, error, continuation)
        except Exception:
            _logger.warning("Retrier %r raised for %s; not retrying", retrier, request, exc_info=True)
            continuation(RetryDecision(False))
