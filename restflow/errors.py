# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for restflow.

Every failure a caller can observe through a request wrapper is either a
transport error passed through unchanged (``httpx.HTTPError`` subclasses,
``TaskCancelledError``) or one of the ``RestError`` subclasses below.  Each
subclass carries a ``reason`` enum plus structured payload fields so callers
can branch on ``isinstance`` + ``reason`` instead of matching message text::

    err = request.error
    if isinstance(err, ResponseValidationError) and err.reason is ValidationFailureReason.UNACCEPTABLE_STATUS_CODE:
        print(err.response_code)
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from pathlib import Path

__all__ = [
    "AdaptError",
    "InvalidURLError",
    "MultipartEncodingError",
    "MultipartFailureReason",
    "ParameterEncodingError",
    "ParameterEncodingFailureReason",
    "ResponseSerializationError",
    "ResponseValidationError",
    "RestError",
    "SerializationFailureReason",
    "ValidationFailureReason",
    "underlying_adapt_error",
]


# ---------------------------------------------------------------------------
# Reasons
# ---------------------------------------------------------------------------


class ParameterEncodingFailureReason(Enum):
    """Why a parameter encoding collaborator failed."""

    MISSING_URL = "missing_url"
    JSON_ENCODING_FAILED = "json_encoding_failed"
    PROPERTY_LIST_ENCODING_FAILED = "property_list_encoding_failed"


class MultipartFailureReason(Enum):
    """Why multipart form data could not be assembled or written."""

    BODY_PART_URL_INVALID = "body_part_url_invalid"
    BODY_PART_FILENAME_INVALID = "body_part_filename_invalid"
    BODY_PART_FILE_NOT_REACHABLE = "body_part_file_not_reachable"
    BODY_PART_FILE_NOT_REACHABLE_WITH_ERROR = "body_part_file_not_reachable_with_error"
    BODY_PART_FILE_IS_DIRECTORY = "body_part_file_is_directory"
    BODY_PART_FILE_SIZE_NOT_AVAILABLE = "body_part_file_size_not_available"
    BODY_PART_FILE_SIZE_QUERY_FAILED_WITH_ERROR = "body_part_file_size_query_failed_with_error"
    BODY_PART_INPUT_STREAM_CREATION_FAILED = "body_part_input_stream_creation_failed"
    OUTPUT_STREAM_CREATION_FAILED = "output_stream_creation_failed"
    OUTPUT_STREAM_FILE_ALREADY_EXISTS = "output_stream_file_already_exists"
    OUTPUT_STREAM_URL_INVALID = "output_stream_url_invalid"
    OUTPUT_STREAM_WRITE_FAILED = "output_stream_write_failed"
    INPUT_STREAM_READ_FAILED = "input_stream_read_failed"


class ValidationFailureReason(Enum):
    """Why a response validation rejected a completed response."""

    DATA_FILE_NIL = "data_file_nil"
    DATA_FILE_READ_FAILED = "data_file_read_failed"
    MISSING_CONTENT_TYPE = "missing_content_type"
    UNACCEPTABLE_CONTENT_TYPE = "unacceptable_content_type"
    UNACCEPTABLE_STATUS_CODE = "unacceptable_status_code"


class SerializationFailureReason(Enum):
    """Why a response serializer could not produce a value."""

    INPUT_DATA_NIL = "input_data_nil"
    INPUT_DATA_NIL_OR_ZERO_LENGTH = "input_data_nil_or_zero_length"
    INPUT_FILE_NIL = "input_file_nil"
    INPUT_FILE_READ_FAILED = "input_file_read_failed"
    STRING_SERIALIZATION_FAILED = "string_serialization_failed"
    JSON_SERIALIZATION_FAILED = "json_serialization_failed"
    PROPERTY_LIST_SERIALIZATION_FAILED = "property_list_serialization_failed"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RestError(Exception):
    """Base class for all structured restflow errors."""

    @property
    def underlying_error(self) -> BaseException | None:
        """The lower-level exception that caused this one, if any."""
        return None

    @property
    def is_invalid_url_error(self) -> bool:
        """Whether this is an ``InvalidURLError``."""
        return isinstance(self, InvalidURLError)

    @property
    def is_parameter_encoding_error(self) -> bool:
        """Whether this is a ``ParameterEncodingError``."""
        return isinstance(self, ParameterEncodingError)

    @property
    def is_multipart_encoding_error(self) -> bool:
        """Whether this is a ``MultipartEncodingError``."""
        return isinstance(self, MultipartEncodingError)

    @property
    def is_response_validation_error(self) -> bool:
        """Whether this is a ``ResponseValidationError``."""
        return isinstance(self, ResponseValidationError)

    @property
    def is_response_serialization_error(self) -> bool:
        """Whether this is a ``ResponseSerializationError``."""
        return isinstance(self, ResponseSerializationError)


class InvalidURLError(RestError):
    """A value could not be converted into an absolute HTTP URL.

    Attributes:
        url: The offending value, exactly as supplied by the caller.

    """

    def __init__(self, url: object) -> None:
        """Initialize with the value that failed conversion."""
        self.url = url
        super().__init__(f"URL is not valid: {url!r}")


class ParameterEncodingError(RestError):
    """Parameters could not be encoded into a request.

    Attributes:
        reason: Which encoding step failed.

    """

    def __init__(self, reason: ParameterEncodingFailureReason, underlying_error: BaseException | None = None) -> None:
        """Initialize with a reason and the encoder's exception, if any."""
        self.reason = reason
        self._underlying = underlying_error
        if reason is ParameterEncodingFailureReason.MISSING_URL:
            message = "URL request to encode was missing a URL"
        elif reason is ParameterEncodingFailureReason.JSON_ENCODING_FAILED:
            message = f"JSON could not be encoded because of error: {underlying_error}"
        else:
            message = f"PropertyList could not be encoded because of error: {underlying_error}"
        super().__init__(message)

    @property
    def underlying_error(self) -> BaseException | None:
        """The encoder's exception, if any."""
        return self._underlying


class MultipartEncodingError(RestError):
    """Multipart form data could not be assembled, read or written.

    Attributes:
        reason: Which body-part or stream operation failed.
        path: The file location involved, when the failure has one.

    """

    def __init__(
        self,
        reason: MultipartFailureReason,
        path: Path | str | None = None,
        underlying_error: BaseException | None = None,
    ) -> None:
        """Initialize with a reason, the offending location and the I/O error, if any."""
        self.reason = reason
        self.path = Path(path) if path is not None else None
        self._underlying = underlying_error
        detail = f" at {self.path}" if self.path is not None else ""
        cause = f": {underlying_error}" if underlying_error is not None else ""
        super().__init__(f"Multipart encoding failed ({reason.value}){detail}{cause}")

    @property
    def underlying_error(self) -> BaseException | None:
        """The I/O error, if any."""
        return self._underlying


class ResponseValidationError(RestError):
    """A completed response was rejected by a validation.

    Attributes:
        reason: Which check failed.
        acceptable_content_types: For content-type failures, the accepted list.
        response_content_type: For ``UNACCEPTABLE_CONTENT_TYPE``, the received type.
        response_code: For ``UNACCEPTABLE_STATUS_CODE``, the received status.
        path: For ``DATA_FILE_READ_FAILED``, the unreadable download file.

    """

    def __init__(
        self,
        reason: ValidationFailureReason,
        *,
        acceptable_content_types: Sequence[str] | None = None,
        response_content_type: str | None = None,
        response_code: int | None = None,
        path: Path | str | None = None,
    ) -> None:
        """Initialize with a reason and its structured payload."""
        self.reason = reason
        self.acceptable_content_types = list(acceptable_content_types) if acceptable_content_types is not None else None
        self.response_content_type = response_content_type
        self.response_code = response_code
        self.path = Path(path) if path is not None else None
        super().__init__(self._describe())

    def _describe(self) -> str:
        match self.reason:
            case ValidationFailureReason.DATA_FILE_NIL:
                return "Response could not be validated, data file was nil."
            case ValidationFailureReason.DATA_FILE_READ_FAILED:
                return f"Response could not be validated, data file could not be read: {self.path}."
            case ValidationFailureReason.MISSING_CONTENT_TYPE:
                types = ",".join(self.acceptable_content_types or [])
                return f"Response Content-Type was missing and acceptable content types ({types}) do not match '*/*'."
            case ValidationFailureReason.UNACCEPTABLE_CONTENT_TYPE:
                types = ",".join(self.acceptable_content_types or [])
                return (
                    f"Response Content-Type '{self.response_content_type}' "
                    f"does not match any acceptable types: {types}."
                )
            case ValidationFailureReason.UNACCEPTABLE_STATUS_CODE:
                return f"Response status code was unacceptable: {self.response_code}."


class ResponseSerializationError(RestError):
    """A response body could not be turned into a value.

    Attributes:
        reason: Which serialization step failed.
        encoding: For ``STRING_SERIALIZATION_FAILED``, the codec that failed.
        path: For ``INPUT_FILE_READ_FAILED``, the unreadable file.

    """

    def __init__(
        self,
        reason: SerializationFailureReason,
        *,
        encoding: str | None = None,
        underlying_error: BaseException | None = None,
        path: Path | str | None = None,
    ) -> None:
        """Initialize with a reason and its structured payload."""
        self.reason = reason
        self.encoding = encoding
        self.path = Path(path) if path is not None else None
        self._underlying = underlying_error
        match reason:
            case SerializationFailureReason.INPUT_DATA_NIL:
                message = "Response could not be serialized, input data was nil."
            case SerializationFailureReason.INPUT_DATA_NIL_OR_ZERO_LENGTH:
                message = "Response could not be serialized, input data was nil or zero length."
            case SerializationFailureReason.INPUT_FILE_NIL:
                message = "Response could not be serialized, input file was nil."
            case SerializationFailureReason.INPUT_FILE_READ_FAILED:
                message = f"Response could not be serialized, input file could not be read: {self.path}."
            case SerializationFailureReason.STRING_SERIALIZATION_FAILED:
                message = f"String could not be serialized with encoding: {encoding}."
            case SerializationFailureReason.JSON_SERIALIZATION_FAILED:
                message = f"JSON could not be serialized because of error: {underlying_error}"
            case _:
                message = f"PropertyList could not be serialized because of error: {underlying_error}"
        super().__init__(message)

    @property
    def underlying_error(self) -> BaseException | None:
        """The decoder's exception, if any."""
        return self._underlying


# ---------------------------------------------------------------------------
# Adapter failures
# ---------------------------------------------------------------------------


class AdaptError(Exception):
    """Internal wrapper marking an exception raised by a ``RequestAdapter``.

    Construction paths use it to decide whether the retrier gets a say
    before the wrapper is released; it is always unwrapped before a caller
    sees the error.
    """

    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        """Wrap *error* raised while adapting a request."""
        self.error = error
        super().__init__(str(error))


def underlying_adapt_error(error: BaseException) -> BaseException:
    """Return the adapter's own exception when *error* is an ``AdaptError``, else *error*."""
    return error.error if isinstance(error, AdaptError) else error
