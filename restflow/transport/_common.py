# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared enums, value types, exceptions and the delegate protocol for the transport substrate."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from restflow.transport._session import TransportSession
    from restflow.transport._task import TransportTask

BodyStream = Iterable[bytes] | IO[bytes]
"""A request body supplied incrementally: a binary file object or an iterable of byte chunks."""


class TaskKind(Enum):
    """Which factory created a task."""

    DATA = "data"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    STREAM = "stream"


class TaskState(Enum):
    """Lifecycle state of a transport task."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    CANCELING = "canceling"
    COMPLETED = "completed"


class ResponseDisposition(Enum):
    """Answer to a response-received callback."""

    ALLOW = "allow"
    CANCEL = "cancel"


class ChallengeDisposition(Enum):
    """Answer to an authentication challenge."""

    USE_CREDENTIAL = "use_credential"
    PERFORM_DEFAULT_HANDLING = "perform_default_handling"
    CANCEL_CHALLENGE = "cancel_challenge"
    REJECT_PROTECTION_SPACE = "reject_protection_space"


class TaskCancelledError(Exception):
    """A task completed because it was cancelled (by the caller or a delegate answer)."""

    def __init__(self, task_id: int, detail: str = "cancelled") -> None:
        """Initialize with the cancelled task's identifier."""
        self.task_id = task_id
        super().__init__(f"Task {task_id} {detail}")


class SessionInvalidatedError(Exception):
    """A task was requested from a session that has been invalidated."""


class BodyStreamConsumedError(Exception):
    """A streamed upload body was needed again after an earlier attempt read it.

    Streams are one-shot: a retry or an authentication resend cannot replay
    them, so the attempt fails instead of sending a truncated body.
    """


@dataclass(frozen=True)
class Credential:
    """A user/password pair answered to an HTTP authentication challenge."""

    user: str
    password: str = field(repr=False)

    def as_auth(self) -> httpx.BasicAuth:
        """Return the httpx auth object that applies this credential."""
        return httpx.BasicAuth(self.user, self.password)


_REALM_RE = re.compile(r'realm="([^"]*)"', re.IGNORECASE)


@dataclass(frozen=True)
class AuthChallenge:
    """An HTTP ``401`` authentication challenge raised for a task.

    Attributes:
        host: Host that issued the challenge.
        scheme: Authentication scheme from ``WWW-Authenticate`` (e.g. ``Basic``).
        realm: Realm parameter, if present.
        previous_failure_count: How many credentials have already been rejected.
        response: The ``401`` response.

    """

    host: str
    scheme: str
    realm: str | None
    previous_failure_count: int
    response: httpx.Response = field(repr=False)

    @classmethod
    def from_response(cls, response: httpx.Response, previous_failure_count: int) -> AuthChallenge:
        """Build a challenge from a ``401`` response."""
        header = response.headers.get("www-authenticate", "")
        scheme = header.split(" ", 1)[0] if header else ""
        match = _REALM_RE.search(header)
        return cls(
            host=response.request.url.host,
            scheme=scheme,
            realm=match.group(1) if match else None,
            previous_failure_count=previous_failure_count,
            response=response,
        )


@dataclass
class TaskMetrics:
    """Timing and volume counters collected for one task execution.

    Times are ``time.monotonic()`` readings.
    """

    task_id: int
    fetch_start: float
    response_start: float | None = None
    response_end: float | None = None
    redirect_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0

    @property
    def duration(self) -> float | None:
        """Seconds from fetch start to the end of the response, if finished."""
        if self.response_end is None:
            return None
        return self.response_end - self.fetch_start


class TransportDelegate(Protocol):
    """Callbacks the substrate delivers on its callback threads.

    Every method receives the task concerned.  Methods returning a value
    answer a question the substrate asks while the task runs.
    """

    def did_receive_response(self, task: TransportTask, response: httpx.Response) -> ResponseDisposition:
        """Response head received; return whether to continue with the body."""
        ...

    def did_receive_data(self, task: TransportTask, data: bytes) -> None:
        """A chunk of a data or upload task's response body arrived."""
        ...

    def did_send_body_data(self, task: TransportTask, bytes_sent: int, total_sent: int, total_expected: int) -> None:
        """A chunk of an upload body was handed to the connection."""
        ...

    def will_perform_redirection(
        self, task: TransportTask, response: httpx.Response, new_request: httpx.Request
    ) -> httpx.Request | None:
        """A redirect is about to be followed; return the request to send, or ``None`` to stop."""
        ...

    def did_receive_challenge(
        self, task: TransportTask, challenge: AuthChallenge
    ) -> tuple[ChallengeDisposition, Credential | None]:
        """An authentication challenge arrived; return how to answer it."""
        ...

    def need_new_body_stream(self, task: TransportTask) -> BodyStream | None:
        """A streamed upload needs a (fresh) body stream."""
        ...

    def did_write_data(self, task: TransportTask, bytes_written: int, total_written: int, total_expected: int) -> None:
        """A download wrote a chunk to its temporary file."""
        ...

    def did_resume_at_offset(self, task: TransportTask, offset: int, total_expected: int) -> None:
        """A download created from resume data continued at *offset*."""
        ...

    def did_finish_downloading(self, task: TransportTask, location: Path) -> None:
        """A download's body is complete at the temporary *location*."""
        ...

    def did_open_streams(self, task: TransportTask, reader: IO[bytes], writer: IO[bytes]) -> None:
        """A stream task connected; *reader* and *writer* are the socket's streams."""
        ...

    def did_finish_collecting_metrics(self, task: TransportTask, metrics: TaskMetrics) -> None:
        """Metrics for the task's execution are final."""
        ...

    def did_complete(self, task: TransportTask, error: BaseException | None) -> None:
        """The task finished, successfully when *error* is ``None``."""
        ...

    def did_become_invalid(self, session: TransportSession, error: BaseException | None) -> None:
        """The session finished invalidating."""
        ...
