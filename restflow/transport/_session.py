# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport session: task factories and the runner that executes tasks with httpx."""

from __future__ import annotations

import contextlib
import itertools
import json
import logging
import os
import socket
import tempfile
import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import httpx

from restflow._debug import fmt_request, fmt_response, wire_request_logger, wire_response_logger
from restflow.transport._common import (
    AuthChallenge,
    BodyStreamConsumedError,
    ChallengeDisposition,
    ResponseDisposition,
    SessionInvalidatedError,
    TaskCancelledError,
    TaskKind,
    TaskMetrics,
    TransportDelegate,
)
from restflow.transport._task import TransportTask

__all__ = ["TransportSession"]

_logger = logging.getLogger("restflow.transport")

_CHUNK_SIZE = 64 * 1024


class TransportSession:
    """Creates transport tasks and runs them on a pool of callback threads.

    The session owns an ``httpx.Client`` (unless one is supplied) and a
    ``ThreadPoolExecutor``; every delegate callback for a task is delivered
    on the pool thread executing that task.  Redirects are followed by the
    session itself so the delegate can rewrite or refuse each hop.

    Args:
        delegate: Receives all task callbacks.
        client: Pre-built client (e.g. with a mock or WSGI transport).  A
            supplied client is not closed by the session.
        headers: Headers sent with every request of an internally built client.
        timeout: Timeout (seconds) for an internally built client and for
            stream task connections.
        max_workers: Number of callback threads.
        max_redirects: Maximum redirect hops followed per task.

    """

    def __init__(
        self,
        *,
        delegate: TransportDelegate,
        client: httpx.Client | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 60.0,
        max_workers: int = 8,
        max_redirects: int = 20,
    ) -> None:
        """Initialize the session and its callback thread pool."""
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.delegate = delegate
        self._own_client = client is None
        self._client = client if client is not None else httpx.Client(headers=headers, timeout=timeout)
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="restflow.transport")
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._live: dict[int, TransportTask] = {}
        self._invalidated = False

    @property
    def client(self) -> httpx.Client:
        """The underlying httpx client."""
        return self._client

    @property
    def headers(self) -> httpx.Headers:
        """Headers the client adds to every request."""
        return self._client.headers

    @property
    def is_invalidated(self) -> bool:
        """Whether ``invalidate_and_cancel`` has been called."""
        with self._lock:
            return self._invalidated

    # -----------------------------------------------------------------------
    # Factories
    # -----------------------------------------------------------------------

    def data_task(self, request: httpx.Request) -> TransportTask:
        """Create a suspended task that fetches *request*'s response into memory."""
        return self._register(TaskKind.DATA, request)

    def download_task(self, request: httpx.Request) -> TransportTask:
        """Create a suspended task that streams *request*'s response to a temporary file."""
        return self._register(TaskKind.DOWNLOAD, request)

    def download_task_with_resume_data(self, resume_data: bytes) -> TransportTask:
        """Create a suspended download continuing where a cancelled one stopped.

        Raises:
            ValueError: If *resume_data* was not produced by
                ``cancel_by_producing_resume_data``.

        """
        try:
            document = json.loads(resume_data)
            url = document["url"]
            method = document["method"]
            headers = httpx.Headers([(k, v) for k, v in document["headers"]])
            path = Path(document["path"])
            offset = int(document["offset"])
            validators: dict[str, str] = document.get("validators", {})
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed resume data: {exc}") from exc
        headers["Range"] = f"bytes={offset}-"
        validator = validators.get("etag") or validators.get("last-modified")
        if validator:
            headers["If-Range"] = validator
        task = self._register(TaskKind.DOWNLOAD, self._client.build_request(method, url, headers=headers))
        task._download_path = path
        task._resume_offset = offset
        return task

    def upload_task(
        self,
        request: httpx.Request,
        *,
        data: bytes | None = None,
        file: Path | None = None,
        streamed: bool = False,
    ) -> TransportTask:
        """Create a suspended upload of *data*, *file*, or a stream obtained from the delegate.

        Exactly one of *data*, *file* or ``streamed=True`` must be given.
        Streamed bodies are requested through ``need_new_body_stream`` each
        time the request is (re)sent.
        """
        if sum((data is not None, file is not None, streamed)) != 1:
            raise ValueError("upload_task requires exactly one of data, file or streamed=True")
        source: bytes | Path | None = data if data is not None else file
        return self._register(TaskKind.UPLOAD, request, upload_source=source)

    def stream_task(self, host: str, port: int) -> TransportTask:
        """Create a suspended bidirectional TCP stream task to *host*:*port*."""
        return self._register(TaskKind.STREAM, None, host=host, port=port)

    def _register(self, kind: TaskKind, request: httpx.Request | None, **kwargs: Any) -> TransportTask:
        with self._lock:
            if self._invalidated:
                raise SessionInvalidatedError("Session has been invalidated; no new tasks can be created")
            task = TransportTask(self, next(self._ids), kind, request, **kwargs)
            self._live[task.task_id] = task
        _logger.debug("Created %s task %d", kind.value, task.task_id)
        return task

    # -----------------------------------------------------------------------
    # Invalidation
    # -----------------------------------------------------------------------

    def invalidate_and_cancel(self, *, wait: bool = False) -> None:
        """Cancel every live task and refuse new ones.

        Cancelled tasks still deliver their completion.  An owned client is
        closed once all runners have finished; with ``wait=False`` that
        happens on a background thread.  Idempotent.
        """
        with self._lock:
            if self._invalidated:
                return
            self._invalidated = True
            live = list(self._live.values())
        for task in live:
            task.cancel()
        _logger.debug("Session invalidated: cancelled %d live tasks", len(live))
        if wait:
            self._finish_invalidation()
        else:
            threading.Thread(
                target=self._finish_invalidation, daemon=True, name="restflow.transport.invalidate"
            ).start()

    def _finish_invalidation(self) -> None:
        self._executor.shutdown(wait=True)
        if self._own_client:
            self._client.close()
        self.delegate.did_become_invalid(self, None)

    # -----------------------------------------------------------------------
    # Runner
    # -----------------------------------------------------------------------

    def _submit(self, task: TransportTask) -> None:
        try:
            self._executor.submit(self._run, task)
        except RuntimeError:
            # Executor already shut down: complete on a fresh thread so the
            # completion contract still holds.
            threading.Thread(target=self._run, args=(task,), daemon=True).start()

    def _run(self, task: TransportTask) -> None:
        metrics = TaskMetrics(task_id=task.task_id, fetch_start=time.monotonic())
        error: BaseException | None = None
        try:
            task._checkpoint()
            if task.kind is TaskKind.STREAM:
                self._perform_stream(task)
            else:
                self._perform_http(task, metrics)
        except TaskCancelledError as exc:
            error = exc
            self._handle_cancelled_download(task)
        except (httpx.HTTPError, httpx.StreamError, OSError, BodyStreamConsumedError) as exc:
            error = exc
            _logger.debug("Task %d failed: %s: %s", task.task_id, type(exc).__name__, exc)
            self._discard_partial_download(task)
        except Exception as exc:
            error = exc
            _logger.warning("Task %d aborted by a callback error", task.task_id, exc_info=True)
            self._discard_partial_download(task)
        metrics.response_end = time.monotonic()
        metrics.bytes_received = task._bytes_received
        metrics.bytes_sent = task._bytes_sent
        self._complete(task, error, metrics)

    def _complete(self, task: TransportTask, error: BaseException | None, metrics: TaskMetrics) -> None:
        if not task._mark_completed(error):
            return
        with self._lock:
            self._live.pop(task.task_id, None)
        try:
            self.delegate.did_finish_collecting_metrics(task, metrics)
            self.delegate.did_complete(task, error)
        except Exception:
            _logger.exception("Completion delegate failed for task %d", task.task_id)

    # -- HTTP ---------------------------------------------------------------

    def _perform_http(self, task: TransportTask, metrics: TaskMetrics) -> None:
        request = task._current_request
        if request is None:
            raise RuntimeError(f"Task {task.task_id} has no request to send")
        credential_attempts = 0
        while True:
            task._checkpoint()
            outgoing = self._with_body(task, request)
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("Task %d send: %s", task.task_id, fmt_request(outgoing))
            send_kwargs: dict[str, Any] = {"auth": task._auth} if task._auth is not None else {}
            response = self._client.send(outgoing, stream=True, follow_redirects=False, **send_kwargs)
            try:
                task._response = response
                if metrics.response_start is None:
                    metrics.response_start = time.monotonic()
                if wire_response_logger.isEnabledFor(logging.DEBUG):
                    wire_response_logger.debug("Task %d response: %s", task.task_id, fmt_response(response))

                if response.next_request is not None and metrics.redirect_count < self._max_redirects:
                    redirected = self.delegate.will_perform_redirection(task, response, response.next_request)
                    if redirected is not None:
                        metrics.redirect_count += 1
                        request = redirected
                        task._current_request = redirected
                        continue

                if response.status_code == httpx.codes.UNAUTHORIZED and "www-authenticate" in response.headers:
                    challenge = AuthChallenge.from_response(response, credential_attempts)
                    disposition, credential = self.delegate.did_receive_challenge(task, challenge)
                    if disposition is ChallengeDisposition.CANCEL_CHALLENGE:
                        raise TaskCancelledError(task.task_id, "cancelled by authentication challenge")
                    if (
                        disposition is ChallengeDisposition.USE_CREDENTIAL
                        and credential is not None
                        and credential_attempts == 0
                    ):
                        credential_attempts += 1
                        task._auth = credential.as_auth()
                        continue

                if self.delegate.did_receive_response(task, response) is ResponseDisposition.CANCEL:
                    raise TaskCancelledError(task.task_id, "cancelled by response disposition")

                length = response.headers.get("content-length")
                task._bytes_expected = int(length) if length and length.isdigit() else -1
                if task.kind is TaskKind.DOWNLOAD:
                    self._receive_download(task, response)
                else:
                    self._receive_data(task, response)
                return
            finally:
                response.close()

    def _receive_data(self, task: TransportTask, response: httpx.Response) -> None:
        for chunk in response.iter_bytes():
            task._checkpoint()
            task._bytes_received += len(chunk)
            self.delegate.did_receive_data(task, chunk)

    def _receive_download(self, task: TransportTask, response: httpx.Response) -> None:
        resuming = task._download_path is not None and response.status_code == httpx.codes.PARTIAL_CONTENT
        if task._download_path is None:
            fd, name = tempfile.mkstemp(prefix="restflow-download-", suffix=".tmp")
            os.close(fd)
            task._download_path = Path(name)
        path = task._download_path
        offset = task._resume_offset if resuming else 0
        total_expected = offset + task._bytes_expected if task._bytes_expected >= 0 else -1
        task._bytes_received = offset
        if resuming:
            self.delegate.did_resume_at_offset(task, offset, total_expected)
        with open(path, "ab" if resuming else "wb") as fh:
            for chunk in response.iter_bytes(_CHUNK_SIZE):
                task._checkpoint()
                fh.write(chunk)
                task._bytes_received += len(chunk)
                self.delegate.did_write_data(task, len(chunk), task._bytes_received, total_expected)
        self.delegate.did_finish_downloading(task, path)

    def _handle_cancelled_download(self, task: TransportTask) -> None:
        callback = task._resume_data_callback
        if task.kind is not TaskKind.DOWNLOAD:
            return
        if callback is None:
            self._discard_partial_download(task)
            return
        task._resume_data_callback = None
        callback(task._produce_resume_data())

    def _discard_partial_download(self, task: TransportTask) -> None:
        if task.kind is TaskKind.DOWNLOAD and task._download_path is not None:
            with contextlib.suppress(FileNotFoundError):
                task._download_path.unlink()

    # -- Upload bodies --------------------------------------------------------

    def _with_body(self, task: TransportTask, request: httpx.Request) -> httpx.Request:
        """Attach a fresh, progress-reporting body to an upload request for this attempt."""
        if task.kind is not TaskKind.UPLOAD:
            return request
        headers = request.headers.copy()
        source = task.upload_source
        if isinstance(source, bytes):
            total = len(source)
            chunks: Iterator[bytes] = (source[i : i + _CHUNK_SIZE] for i in range(0, total, _CHUNK_SIZE))
        elif isinstance(source, Path):
            total = source.stat().st_size
            chunks = _iter_file(source)
        else:
            stream = self.delegate.need_new_body_stream(task)
            if stream is None:
                raise TaskCancelledError(task.task_id, "has no body stream")
            total = -1
            chunks = _iter_stream(stream)
            headers.pop("content-length", None)
        if total >= 0:
            headers["Content-Length"] = str(total)
        task._bytes_sent = 0
        return httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=self._reporting(task, chunks, total),
            extensions=request.extensions,
        )

    def _reporting(self, task: TransportTask, chunks: Iterator[bytes], total: int) -> Iterator[bytes]:
        for chunk in chunks:
            task._checkpoint()
            task._bytes_sent += len(chunk)
            self.delegate.did_send_body_data(task, len(chunk), task._bytes_sent, total)
            yield chunk

    # -- Streams --------------------------------------------------------------

    def _perform_stream(self, task: TransportTask) -> None:
        if task.host is None or task.port is None:
            raise RuntimeError(f"Task {task.task_id} has no host to connect to")
        if task._cancel_event.is_set():
            return
        with socket.create_connection((task.host, task.port), timeout=self._timeout) as sock:
            reader = sock.makefile("rb")
            writer = sock.makefile("wb")
            try:
                self.delegate.did_open_streams(task, reader, writer)
                task._cancel_event.wait()
                task._checkpoint()
            finally:
                reader.close()
                writer.close()


def _iter_file(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as fh:
        while chunk := fh.read(_CHUNK_SIZE):
            yield chunk


def _iter_stream(stream: Any) -> Iterator[bytes]:
    read = getattr(stream, "read", None)
    if read is None:
        yield from stream
        return
    while chunk := read(_CHUNK_SIZE):
        yield chunk
