"""Tests for response validation: status codes, content types and the pipeline."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from restflow.errors import ResponseValidationError, ValidationFailureReason
from restflow.validation import (
    ACCEPTABLE_STATUS_CODES,
    MIMEType,
    ValidationPipeline,
    ValidationResult,
    acceptable_content_types,
    validate_content_type,
    validate_download_content_type,
    validate_status_code,
)


def _response(status: int = 200, content_type: str | None = "application/json") -> httpx.Response:
    headers = {"Content-Type": content_type} if content_type is not None else {}
    return httpx.Response(status, headers=headers)


# ---------------------------------------------------------------------------
# MIMEType
# ---------------------------------------------------------------------------


class TestMIMEType:
    """Tests for MIME parsing and matching."""

    def test_parse_drops_parameters(self) -> None:
        """Parameters and case are normalized away."""
        assert MIMEType.parse("Text/HTML; charset=utf-8") == MIMEType("text", "html")

    @pytest.mark.parametrize("value", ["", "text", "/json", "text/", "a/b/c"])
    def test_parse_rejects_malformed(self, value: str) -> None:
        """Anything that is not type/subtype parses to None."""
        assert MIMEType.parse(value) is None

    def test_exact_match(self) -> None:
        """Identical types match."""
        assert MIMEType("application", "json").matches(MIMEType("application", "json"))

    def test_subtype_wildcard(self) -> None:
        """type/* admits any subtype of that type."""
        assert MIMEType("text", "*").matches(MIMEType("text", "plain"))
        assert not MIMEType("text", "*").matches(MIMEType("image", "png"))

    def test_full_wildcard(self) -> None:
        """*/* admits everything."""
        assert MIMEType("*", "*").matches(MIMEType("image", "png"))
        assert MIMEType("*", "*").is_wildcard

    def test_str(self) -> None:
        """str renders type/subtype."""
        assert str(MIMEType("application", "xml")) == "application/xml"


# ---------------------------------------------------------------------------
# Acceptable types
# ---------------------------------------------------------------------------


class TestAcceptableContentTypes:
    """Tests for deriving acceptable types from the Accept header."""

    def test_from_accept_header(self) -> None:
        """The Accept header is split on commas."""
        request = httpx.Request("GET", "https://example.com", headers={"Accept": "application/json, text/*"})
        assert acceptable_content_types(request) == ["application/json", "text/*"]

    def test_no_header_is_wildcard(self) -> None:
        """Without Accept everything is acceptable."""
        assert acceptable_content_types(httpx.Request("GET", "https://example.com")) == ["*/*"]

    def test_no_request_is_wildcard(self) -> None:
        """A missing request also yields */*."""
        assert acceptable_content_types(None) == ["*/*"]


# ---------------------------------------------------------------------------
# Status codes
# ---------------------------------------------------------------------------


class TestValidateStatusCode:
    """Tests for status code validation."""

    def test_default_range(self) -> None:
        """The default acceptable range is 200-299."""
        assert 200 in ACCEPTABLE_STATUS_CODES
        assert 299 in ACCEPTABLE_STATUS_CODES
        assert 300 not in ACCEPTABLE_STATUS_CODES

    def test_accepted(self) -> None:
        """An acceptable status passes."""
        assert validate_status_code(ACCEPTABLE_STATUS_CODES, _response(204)).is_success

    def test_rejected_carries_code(self) -> None:
        """A rejected status fails with UNACCEPTABLE_STATUS_CODE and the received code."""
        result = validate_status_code(ACCEPTABLE_STATUS_CODES, _response(404))
        assert not result.is_success
        assert isinstance(result.error, ResponseValidationError)
        assert result.error.reason is ValidationFailureReason.UNACCEPTABLE_STATUS_CODE
        assert result.error.response_code == 404
        assert "404" in str(result.error)

    def test_custom_set(self) -> None:
        """Any collection of codes can be used."""
        assert validate_status_code({404}, _response(404)).is_success


# ---------------------------------------------------------------------------
# Content types
# ---------------------------------------------------------------------------


class TestValidateContentType:
    """Tests for content type validation."""

    def test_empty_body_always_passes(self) -> None:
        """No body means nothing to check."""
        assert validate_content_type(["image/png"], _response(content_type="text/html"), b"").is_success
        assert validate_content_type(["image/png"], _response(content_type="text/html"), None).is_success

    def test_matching_type(self) -> None:
        """A matching response type passes."""
        assert validate_content_type(["application/json"], _response(), b"{}").is_success

    def test_unacceptable_type(self) -> None:
        """A mismatch fails with the acceptable list and the received type."""
        result = validate_content_type(["image/png", "image/jpeg"], _response(content_type="text/html"), b"<p>")
        assert isinstance(result.error, ResponseValidationError)
        assert result.error.reason is ValidationFailureReason.UNACCEPTABLE_CONTENT_TYPE
        assert result.error.acceptable_content_types == ["image/png", "image/jpeg"]
        assert result.error.response_content_type == "text/html"

    def test_missing_type_with_wildcard(self) -> None:
        """A missing Content-Type passes when */* is acceptable."""
        assert validate_content_type(["*/*"], _response(content_type=None), b"data").is_success

    def test_missing_type_without_wildcard(self) -> None:
        """A missing Content-Type fails when only specific types are acceptable."""
        result = validate_content_type(["application/json"], _response(content_type=None), b"data")
        assert isinstance(result.error, ResponseValidationError)
        assert result.error.reason is ValidationFailureReason.MISSING_CONTENT_TYPE

    def test_download_without_file(self) -> None:
        """A download with no file fails with DATA_FILE_NIL."""
        result = validate_download_content_type(["*/*"], _response(), None)
        assert isinstance(result.error, ResponseValidationError)
        assert result.error.reason is ValidationFailureReason.DATA_FILE_NIL

    def test_download_unreadable_file(self, tmp_path: Path) -> None:
        """An unreadable download file fails with DATA_FILE_READ_FAILED and its path."""
        missing = tmp_path / "gone.bin"
        result = validate_download_content_type(["*/*"], _response(), missing)
        assert isinstance(result.error, ResponseValidationError)
        assert result.error.reason is ValidationFailureReason.DATA_FILE_READ_FAILED
        assert result.error.path == missing

    def test_download_reads_file(self, tmp_path: Path) -> None:
        """A download's content type is checked against the file's bytes."""
        body = tmp_path / "body.json"
        body.write_bytes(b"{}")
        assert validate_download_content_type(["application/json"], _response(), body).is_success
        result = validate_download_content_type(["image/png"], _response(), body)
        assert not result.is_success


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestValidationPipeline:
    """Tests for running registered checks."""

    def test_empty_pipeline_passes(self) -> None:
        """No checks means no error."""
        assert ValidationPipeline().run() is None

    def test_first_failure_wins_and_all_run(self) -> None:
        """Every check runs; the first failure's error is returned."""
        first = RuntimeError("first")
        second = RuntimeError("second")
        ran: list[int] = []
        pipeline = ValidationPipeline()
        pipeline.add(lambda: (ran.append(1), ValidationResult.success())[1])
        pipeline.add(lambda: (ran.append(2), ValidationResult.failure(first))[1])
        pipeline.add(lambda: (ran.append(3), ValidationResult.failure(second))[1])
        assert pipeline.run() is first
        assert ran == [1, 2, 3]
        assert len(pipeline) == 3

    def test_raising_check_is_a_failure(self) -> None:
        """A check that raises fails with the raised exception."""
        error = ValueError("bad check")

        def check() -> ValidationResult:
            raise error

        pipeline = ValidationPipeline()
        pipeline.add(check)
        assert pipeline.run() is error

    def test_success_is_shared(self) -> None:
        """success() returns one shared verdict."""
        assert ValidationResult.success() is ValidationResult.success()
        assert ValidationResult.success().is_success
