# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""``multipart/form-data`` bodies.

Body parts are collected with the ``append*`` methods and encoded either
into memory (:meth:`MultipartFormData.encode`) or straight to a file
(:meth:`MultipartFormData.write_encoded_data`).  Files and streams are
read lazily, one chunk at a time, while encoding.

Each failure raises :class:`~restflow.errors.MultipartEncodingError`
carrying a :class:`~restflow.errors.MultipartFailureReason` and the
location involved.
"""

from __future__ import annotations

import mimetypes
import os
import secrets
import stat
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING

from restflow.errors import MultipartEncodingError, MultipartFailureReason

if TYPE_CHECKING:
    from restflow.request import UploadRequest

__all__ = [
    "BodyPart",
    "MultipartFormData",
    "MultipartFormDataEncodingResult",
]

_CRLF = b"\r\n"
_CHUNK_SIZE = 64 * 1024


def _file_path(value: str | os.PathLike[str], reason: MultipartFailureReason) -> Path:
    """Convert a path or ``file://`` URL to a ``Path``; other URL schemes are rejected with *reason*."""
    text = os.fspath(value)
    if "://" in text:
        scheme, _, rest = text.partition("://")
        if scheme.lower() != "file":
            raise MultipartEncodingError(reason, path=text)
        text = rest
    return Path(text)


@dataclass
class BodyPart:
    """One part of a form: its headers and where its body comes from.

    Attributes:
        headers: Part headers, in emission order.
        source: In-memory bytes, a file to read, or a binary stream.
        length: Body length in bytes.

    """

    headers: dict[str, str]
    source: bytes | Path | IO[bytes]
    length: int

    def encoded_headers(self) -> bytes:
        """Header block including the terminating blank line."""
        lines = "".join(f"{name}: {value}\r\n" for name, value in self.headers.items())
        return f"{lines}\r\n".encode()

    def iter_body(self) -> Iterator[bytes]:
        """Yield the part's body in chunks."""
        match self.source:
            case bytes():
                yield self.source
            case Path():
                yield from self._iter_file(self.source)
            case _:
                yield from self._iter_stream(self.source)

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        try:
            fh = open(path, "rb")  # noqa: SIM115
        except OSError as exc:
            raise MultipartEncodingError(
                MultipartFailureReason.BODY_PART_INPUT_STREAM_CREATION_FAILED, path=path, underlying_error=exc
            ) from exc
        with fh:
            while True:
                try:
                    chunk = fh.read(_CHUNK_SIZE)
                except OSError as exc:
                    raise MultipartEncodingError(
                        MultipartFailureReason.INPUT_STREAM_READ_FAILED, path=path, underlying_error=exc
                    ) from exc
                if not chunk:
                    return
                yield chunk

    @staticmethod
    def _iter_stream(stream: IO[bytes]) -> Iterator[bytes]:
        while True:
            try:
                chunk = stream.read(_CHUNK_SIZE)
            except OSError as exc:
                raise MultipartEncodingError(
                    MultipartFailureReason.INPUT_STREAM_READ_FAILED, underlying_error=exc
                ) from exc
            if not chunk:
                return
            yield chunk


@dataclass
class MultipartFormData:
    """Builder for a ``multipart/form-data`` body.

    Example::

        form = MultipartFormData()
        form.append(b"42", name="id")
        form.append_file(Path("avatar.png"), name="avatar")
        body = form.encode()
        headers = {"Content-Type": form.content_type}

    Attributes:
        boundary: The part separator; random unless given.

    """

    boundary: str = field(default_factory=lambda: f"restflow.boundary.{secrets.token_hex(8)}")
    _parts: list[BodyPart] = field(default_factory=list, init=False, repr=False)

    @property
    def content_type(self) -> str:
        """``Content-Type`` header value for the encoded body."""
        return f"multipart/form-data; boundary={self.boundary}"

    @property
    def parts(self) -> list[BodyPart]:
        """The parts appended so far."""
        return list(self._parts)

    @property
    def content_length(self) -> int:
        """Size of the encoded body in bytes."""
        total = len(self._final_boundary())
        for index, part in enumerate(self._parts):
            total += len(self._boundary_before(index)) + len(part.encoded_headers()) + part.length
        return total

    # -----------------------------------------------------------------------
    # Appending
    # -----------------------------------------------------------------------

    def append(
        self,
        data: bytes,
        name: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> None:
        """Append an in-memory part."""
        self._parts.append(BodyPart(_content_headers(name, filename, mime_type), bytes(data), len(data)))

    def append_file(
        self,
        path: str | os.PathLike[str],
        name: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> None:
        """Append the contents of a file.

        *filename* defaults to the file's name and *mime_type* is guessed
        from its extension (``application/octet-stream`` when unknown).

        Raises:
            MultipartEncodingError: If the location is not a reachable
                regular file with a usable name.

        """
        file_path = _file_path(path, MultipartFailureReason.BODY_PART_URL_INVALID)
        if filename is None:
            filename = file_path.name
        if not filename:
            raise MultipartEncodingError(MultipartFailureReason.BODY_PART_FILENAME_INVALID, path=file_path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            reachable = file_path.exists()
        except OSError as exc:
            raise MultipartEncodingError(
                MultipartFailureReason.BODY_PART_FILE_NOT_REACHABLE_WITH_ERROR, path=file_path, underlying_error=exc
            ) from exc
        if not reachable:
            raise MultipartEncodingError(MultipartFailureReason.BODY_PART_FILE_NOT_REACHABLE, path=file_path)
        if file_path.is_dir():
            raise MultipartEncodingError(MultipartFailureReason.BODY_PART_FILE_IS_DIRECTORY, path=file_path)
        try:
            info = file_path.stat()
        except OSError as exc:
            raise MultipartEncodingError(
                MultipartFailureReason.BODY_PART_FILE_SIZE_QUERY_FAILED_WITH_ERROR,
                path=file_path,
                underlying_error=exc,
            ) from exc
        if not stat.S_ISREG(info.st_mode):
            raise MultipartEncodingError(MultipartFailureReason.BODY_PART_FILE_SIZE_NOT_AVAILABLE, path=file_path)

        self._parts.append(BodyPart(_content_headers(name, filename, mime_type), file_path, info.st_size))

    def append_stream(
        self,
        stream: IO[bytes],
        length: int,
        name: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> None:
        """Append a part read from a binary stream of known *length*."""
        if length < 0:
            raise ValueError(f"length must be >= 0, got {length}")
        self._parts.append(BodyPart(_content_headers(name, filename, mime_type), stream, length))

    def append_part(self, source: bytes | Path | IO[bytes], length: int, headers: dict[str, str]) -> None:
        """Append a part with caller-supplied headers."""
        self._parts.append(BodyPart(dict(headers), source, length))

    # -----------------------------------------------------------------------
    # Encoding
    # -----------------------------------------------------------------------

    def _boundary_before(self, index: int) -> bytes:
        if index == 0:
            return b"--" + self.boundary.encode() + _CRLF
        return _CRLF + b"--" + self.boundary.encode() + _CRLF

    def _final_boundary(self) -> bytes:
        return _CRLF + b"--" + self.boundary.encode() + b"--" + _CRLF

    def iter_encoded(self) -> Iterator[bytes]:
        """Yield the encoded body in chunks, reading files and streams lazily."""
        for index, part in enumerate(self._parts):
            yield self._boundary_before(index)
            yield part.encoded_headers()
            yield from part.iter_body()
        yield self._final_boundary()

    def encode(self) -> bytes:
        """Return the whole encoded body.

        Raises:
            MultipartEncodingError: If a file or stream part cannot be read.

        """
        return b"".join(self.iter_encoded())

    def write_encoded_data(self, path: str | os.PathLike[str]) -> None:
        """Write the encoded body to a new file at *path*.

        Raises:
            MultipartEncodingError: If *path* already exists or is not a
                file location, or if creating or writing the file fails.

        """
        file_path = _file_path(path, MultipartFailureReason.OUTPUT_STREAM_URL_INVALID)
        if file_path.exists():
            raise MultipartEncodingError(MultipartFailureReason.OUTPUT_STREAM_FILE_ALREADY_EXISTS, path=file_path)
        try:
            fh = open(file_path, "xb")  # noqa: SIM115
        except OSError as exc:
            raise MultipartEncodingError(
                MultipartFailureReason.OUTPUT_STREAM_CREATION_FAILED, path=file_path, underlying_error=exc
            ) from exc
        with fh:
            for chunk in self.iter_encoded():
                try:
                    fh.write(chunk)
                except OSError as exc:
                    raise MultipartEncodingError(
                        MultipartFailureReason.OUTPUT_STREAM_WRITE_FAILED, path=file_path, underlying_error=exc
                    ) from exc


def _content_headers(name: str, filename: str | None, mime_type: str | None) -> dict[str, str]:
    disposition = f'form-data; name="{name}"'
    if filename is not None:
        disposition += f'; filename="{filename}"'
    headers = {"Content-Disposition": disposition}
    if mime_type is not None:
        headers["Content-Type"] = mime_type
    return headers


@dataclass(frozen=True)
class MultipartFormDataEncodingResult:
    """Outcome of ``SessionManager.upload_multipart``.

    On success ``request`` is the started upload and ``error`` is ``None``;
    on failure ``request`` is ``None``.

    Attributes:
        request: The upload carrying the encoded form.
        streaming_from_disk: Whether the form was written to a temporary file
            because it exceeded the memory threshold.
        streaming_file_path: That temporary file, removed when the upload finishes.
        error: Why the form could not be encoded.

    """

    request: UploadRequest | None
    streaming_from_disk: bool = False
    streaming_file_path: Path | None = None
    error: BaseException | None = None

    @property
    def is_success(self) -> bool:
        """Whether an upload was created."""
        return self.error is None
