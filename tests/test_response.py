"""Tests for Result, Timeline and response containers."""

from __future__ import annotations

import httpx
import pytest

from restflow.response import DataResponse, Result, Timeline


class TestResult:
    """Tests for Result."""

    def test_success(self) -> None:
        """success() carries a value."""
        result = Result.success(3)
        assert result.is_success
        assert not result.is_failure
        assert result.unwrap() == 3
        assert str(result) == "SUCCESS"

    def test_failure_unwrap_raises(self) -> None:
        """unwrap() raises the carried error."""
        result: Result[int] = Result.failure(KeyError("k"))
        assert result.is_failure
        assert str(result) == "FAILURE"
        with pytest.raises(KeyError):
            result.unwrap()

    def test_map(self) -> None:
        """map transforms values and passes failures through."""
        assert Result.success(2).map(lambda v: v * 10).unwrap() == 20
        error = RuntimeError("x")
        assert Result.failure(error).map(lambda v: v).error is error

    def test_flat_map_captures_exceptions(self) -> None:
        """flat_map turns a raising transform into a failure."""
        result = Result.success("x").flat_map(int)
        assert isinstance(result.error, ValueError)

    def test_none_is_a_valid_value(self) -> None:
        """A None value is still a success."""
        assert Result.success(None).is_success


class TestTimeline:
    """Tests for Timeline arithmetic."""

    def test_durations(self) -> None:
        """Derived durations are differences of the recorded points."""
        timeline = Timeline(
            request_start_time=10.0,
            initial_response_time=10.5,
            request_completed_time=12.0,
            serialization_completed_time=12.25,
        )
        assert timeline.latency == pytest.approx(0.5)
        assert timeline.request_duration == pytest.approx(2.0)
        assert timeline.serialization_duration == pytest.approx(0.25)
        assert timeline.total_duration == pytest.approx(2.25)

    def test_never_negative(self) -> None:
        """Out-of-order points clamp to zero."""
        timeline = Timeline(request_start_time=5.0, initial_response_time=4.0)
        assert timeline.latency == 0.0

    def test_str(self) -> None:
        """str renders four decimals."""
        assert "Latency: 0.5000 secs" in str(Timeline(0.0, 0.5, 1.0, 1.0))


class TestDataResponse:
    """Tests for DataResponse."""

    def _response(self, result: Result[int]) -> DataResponse[int]:
        return DataResponse(
            request=httpx.Request("GET", "https://example.com/x"),
            response=httpx.Response(200),
            data=b"12",
            result=result,
        )

    def test_value_and_error(self) -> None:
        """value and error mirror the result."""
        response = self._response(Result.success(12))
        assert response.value == 12
        assert response.error is None

    def test_map(self) -> None:
        """map transforms the result and keeps everything else."""
        mapped = self._response(Result.success(12)).map(str)
        assert mapped.value == "12"
        assert mapped.data == b"12"

    def test_debug_description(self) -> None:
        """The debug description names request, status, size and result."""
        text = self._response(Result.success(12)).debug_description()
        assert "[Request]: GET https://example.com/x" in text
        assert "[Response]: 200" in text
        assert "[Data]: 2 bytes" in text
        assert "[Result]: SUCCESS" in text
