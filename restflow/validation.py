# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Response validation: deferred checks run when a request's task completes.

A validation is a callable returning a :class:`ValidationResult`.  Request
wrappers bind validations to their own request/response/body and append
them to a :class:`ValidationPipeline`; the completion dispatcher runs the
pipeline once per completion event, before deciding the final error.

Content-type checks use MIME wildcard matching; for each acceptable entry
the rules are tried in order: exact ``type/subtype``, ``type/*``,
``*/subtype``, ``*/*``.  Parameters (``; charset=utf-8``) are ignored and
comparison is case-insensitive.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

import httpx

from restflow.errors import ResponseValidationError, ValidationFailureReason

__all__ = [
    "ACCEPTABLE_STATUS_CODES",
    "DownloadValidation",
    "MIMEType",
    "Validation",
    "ValidationPipeline",
    "ValidationResult",
    "acceptable_content_types",
    "validate_content_type",
    "validate_download_content_type",
    "validate_status_code",
]

_logger = logging.getLogger("restflow.validation")

ACCEPTABLE_STATUS_CODES: range = range(200, 300)
"""Status codes accepted by the default validation."""


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of one validation: success, or failure carrying an error."""

    error: BaseException | None = None

    SUCCESS: ClassVar[ValidationResult]

    @property
    def is_success(self) -> bool:
        """Whether the validation passed."""
        return self.error is None

    @classmethod
    def success(cls) -> ValidationResult:
        """Return the shared success verdict."""
        return cls.SUCCESS

    @classmethod
    def failure(cls, error: BaseException) -> ValidationResult:
        """Return a failure verdict carrying *error*."""
        return cls(error)


ValidationResult.SUCCESS = ValidationResult()

Validation = Callable[[httpx.Request | None, httpx.Response, bytes | None], ValidationResult]
"""Signature of a data/upload validation: (request, response, body)."""

DownloadValidation = Callable[[httpx.Request | None, httpx.Response, Path | None, Path | None], ValidationResult]
"""Signature of a download validation: (request, response, temporary path, destination path)."""


# ---------------------------------------------------------------------------
# MIME matching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MIMEType:
    """A ``type/subtype`` pair, lower-cased, parameters dropped."""

    type: str
    subtype: str

    @classmethod
    def parse(cls, value: str) -> MIMEType | None:
        """Parse ``"text/html; charset=utf-8"``; return ``None`` if it is not ``type/subtype``."""
        essence = value.split(";", 1)[0].strip().lower()
        parts = essence.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return cls(parts[0].strip(), parts[1].strip())

    @property
    def is_wildcard(self) -> bool:
        """Whether this is ``*/*``."""
        return self.type == "*" and self.subtype == "*"

    def matches(self, mime: MIMEType) -> bool:
        """Whether this (acceptable) type admits the concrete *mime* type."""
        if (self.type, self.subtype) == (mime.type, mime.subtype):
            return True
        if self.type == mime.type and self.subtype == "*":
            return True
        if self.type == "*" and self.subtype == mime.subtype:
            return True
        return self.is_wildcard

    def __str__(self) -> str:
        """Return ``type/subtype``."""
        return f"{self.type}/{self.subtype}"


def acceptable_content_types(request: httpx.Request | None) -> list[str]:
    """Content types the request's ``Accept`` header admits, or ``["*/*"]`` without one."""
    if request is not None:
        accept = request.headers.get("accept")
        if accept:
            return [part.strip() for part in accept.split(",") if part.strip()]
    return ["*/*"]


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------


def validate_status_code(acceptable: Iterable[int], response: httpx.Response) -> ValidationResult:
    """Pass when the response status is one of *acceptable*."""
    if response.status_code in acceptable:
        return ValidationResult.success()
    return ValidationResult.failure(
        ResponseValidationError(ValidationFailureReason.UNACCEPTABLE_STATUS_CODE, response_code=response.status_code)
    )


def validate_content_type(acceptable: Iterable[str], response: httpx.Response, data: bytes | None) -> ValidationResult:
    """Pass when the response ``Content-Type`` matches one of *acceptable*.

    Empty bodies always pass.  A missing or unparsable ``Content-Type``
    passes only if ``*/*`` is acceptable.
    """
    if not data:
        return ValidationResult.success()
    acceptable = list(acceptable)
    raw = response.headers.get("content-type")
    response_mime = MIMEType.parse(raw) if raw else None
    if response_mime is None:
        for content_type in acceptable:
            mime = MIMEType.parse(content_type)
            if mime is not None and mime.is_wildcard:
                return ValidationResult.success()
        return ValidationResult.failure(
            ResponseValidationError(
                ValidationFailureReason.MISSING_CONTENT_TYPE,
                acceptable_content_types=acceptable,
            )
        )
    for content_type in acceptable:
        mime = MIMEType.parse(content_type)
        if mime is not None and mime.matches(response_mime):
            return ValidationResult.success()
    return ValidationResult.failure(
        ResponseValidationError(
            ValidationFailureReason.UNACCEPTABLE_CONTENT_TYPE,
            acceptable_content_types=acceptable,
            response_content_type=str(response_mime),
        )
    )


def validate_download_content_type(
    acceptable: Iterable[str], response: httpx.Response, file_path: Path | None
) -> ValidationResult:
    """Content-type check for downloads, reading the body back from *file_path*."""
    if file_path is None:
        return ValidationResult.failure(ResponseValidationError(ValidationFailureReason.DATA_FILE_NIL))
    try:
        data = file_path.read_bytes()
    except OSError:
        return ValidationResult.failure(
            ResponseValidationError(ValidationFailureReason.DATA_FILE_READ_FAILED, path=file_path)
        )
    return validate_content_type(acceptable, response, data)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ValidationPipeline:
    """Ordered list of deferred checks.

    ``run()`` executes every check in registration order, even after one
    fails, and returns the first failure's error.  A check that raises
    counts as a failure carrying the raised exception.
    """

    __slots__ = ("_checks",)

    def __init__(self) -> None:
        """Initialize an empty pipeline."""
        self._checks: list[Callable[[], ValidationResult]] = []

    def add(self, check: Callable[[], ValidationResult]) -> None:
        """Append a deferred check."""
        self._checks.append(check)

    def __len__(self) -> int:
        """Number of registered checks."""
        return len(self._checks)

    def __iter__(self) -> Iterator[Callable[[], ValidationResult]]:
        """Iterate over the checks in registration order."""
        return iter(list(self._checks))

    def run(self) -> BaseException | None:
        """Run all checks; return the first failure's error, or ``None``."""
        first: BaseException | None = None
        for check in list(self._checks):
            try:
                result = check()
            except Exception as exc:
                _logger.debug("Validation %r raised %s", check, type(exc).__name__, exc_info=True)
                result = ValidationResult.failure(exc)
            if first is None and not result.is_success:
                first = result.error
        return first
