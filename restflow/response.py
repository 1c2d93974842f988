# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Response values handed to completion handlers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

import httpx

from restflow.transport import TaskMetrics

__all__ = [
    "DataResponse",
    "DefaultDataResponse",
    "DefaultDownloadResponse",
    "DownloadResponse",
    "Result",
    "Timeline",
]


@dataclass(frozen=True)
class Result[V]:
    """Outcome of serializing a response: a value or an error, never both."""

    value: V | None = None
    error: BaseException | None = None

    @classmethod
    def success(cls, value: V) -> Result[V]:
        """Wrap a successfully produced value."""
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> Result[V]:
        """Wrap an error."""
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        """Whether a value was produced."""
        return self.error is None

    @property
    def is_failure(self) -> bool:
        """Whether an error was produced."""
        return self.error is not None

    def unwrap(self) -> V:
        """Return the value or raise the error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def map[T](self, transform: Callable[[V], T]) -> Result[T]:
        """Transform a success value; failures pass through."""
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=transform(self.value))  # type: ignore[arg-type]

    def flat_map[T](self, transform: Callable[[V], T]) -> Result[T]:
        """Like ``map`` but an exception raised by *transform* becomes the failure."""
        if self.error is not None:
            return Result(error=self.error)
        try:
            return Result(value=transform(self.value))  # type: ignore[arg-type]
        except Exception as exc:
            return Result(error=exc)

    def __str__(self) -> str:
        """Return ``SUCCESS`` or ``FAILURE``."""
        return "SUCCESS" if self.is_success else "FAILURE"


@dataclass(frozen=True)
class Timeline:
    """Timing of a request's lifecycle, as ``time.monotonic()`` readings.

    Attributes:
        request_start_time: When the request was first resumed.
        initial_response_time: When the first response head arrived.
        request_completed_time: When the final completion was handled.
        serialization_completed_time: When the handler's serializer finished.

    """

    request_start_time: float = 0.0
    initial_response_time: float = 0.0
    request_completed_time: float = 0.0
    serialization_completed_time: float = 0.0

    @property
    def latency(self) -> float:
        """Seconds from start to the first response head."""
        return max(self.initial_response_time - self.request_start_time, 0.0)

    @property
    def request_duration(self) -> float:
        """Seconds from start to completion."""
        return max(self.request_completed_time - self.request_start_time, 0.0)

    @property
    def serialization_duration(self) -> float:
        """Seconds spent serializing after completion."""
        return max(self.serialization_completed_time - self.request_completed_time, 0.0)

    @property
    def total_duration(self) -> float:
        """Seconds from start to the end of serialization."""
        return max(self.serialization_completed_time - self.request_start_time, 0.0)

    def __str__(self) -> str:
        """Render durations with four decimals."""
        return (
            f"Timeline: {{ Latency: {self.latency:.4f} secs, Request Duration: {self.request_duration:.4f} secs, "
            f"Serialization Duration: {self.serialization_duration:.4f} secs, "
            f"Total Duration: {self.total_duration:.4f} secs }}"
        )


@dataclass(frozen=True)
class DefaultDataResponse:
    """Unserialized outcome of a data or upload request."""

    request: httpx.Request | None
    response: httpx.Response | None
    data: bytes | None
    error: BaseException | None
    timeline: Timeline = field(default_factory=Timeline)
    metrics: TaskMetrics | None = None


@dataclass(frozen=True)
class DataResponse[V]:
    """Serialized outcome of a data or upload request."""

    request: httpx.Request | None
    response: httpx.Response | None
    data: bytes | None
    result: Result[V]
    timeline: Timeline = field(default_factory=Timeline)
    metrics: TaskMetrics | None = None

    @property
    def value(self) -> V | None:
        """The serialized value, if any."""
        return self.result.value

    @property
    def error(self) -> BaseException | None:
        """The request or serialization error, if any."""
        return self.result.error

    def map[T](self, transform: Callable[[V], T]) -> DataResponse[T]:
        """Return a copy with the result's value transformed."""
        return replace(self, result=self.result.map(transform))  # type: ignore[return-value, arg-type]

    def flat_map[T](self, transform: Callable[[V], T]) -> DataResponse[T]:
        """Return a copy with the result's value transformed, capturing exceptions."""
        return replace(self, result=self.result.flat_map(transform))  # type: ignore[return-value, arg-type]

    def debug_description(self) -> str:
        """Multi-line summary of request, response, body size, result and timeline."""
        request = f"{self.request.method} {self.request.url}" if self.request is not None else "nil"
        response = f"{self.response.status_code}" if self.response is not None else "nil"
        return "\n".join(
            [
                f"[Request]: {request}",
                f"[Response]: {response}",
                f"[Data]: {len(self.data) if self.data else 0} bytes",
                f"[Result]: {self.result}",
                f"[Timeline]: {self.timeline}",
            ]
        )


@dataclass(frozen=True)
class DefaultDownloadResponse:
    """Unserialized outcome of a download request."""

    request: httpx.Request | None
    response: httpx.Response | None
    temporary_path: Path | None
    destination_path: Path | None
    resume_data: bytes | None
    error: BaseException | None
    timeline: Timeline = field(default_factory=Timeline)
    metrics: TaskMetrics | None = None


@dataclass(frozen=True)
class DownloadResponse[V]:
    """Serialized outcome of a download request."""

    request: httpx.Request | None
    response: httpx.Response | None
    temporary_path: Path | None
    destination_path: Path | None
    resume_data: bytes | None
    result: Result[V]
    timeline: Timeline = field(default_factory=Timeline)
    metrics: TaskMetrics | None = None

    @property
    def value(self) -> V | None:
        """The serialized value, if any."""
        return self.result.value

    @property
    def error(self) -> BaseException | None:
        """The request or serialization error, if any."""
        return self.result.error
