# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Networking substrate for restflow, built on httpx and a callback thread pool.

The substrate exposes the capabilities the request lifecycle relies on and
nothing more: task creation (data, download, upload, stream), task control
(resume, suspend, cancel) and asynchronous delegate callbacks (response,
data, body progress, redirect, challenge, download progress, streams,
metrics, completion).  Wire parsing, TLS and DNS are httpx's business.
"""

from restflow.transport._common import (
    AuthChallenge,
    BodyStream,
    BodyStreamConsumedError,
    ChallengeDisposition,
    Credential,
    ResponseDisposition,
    SessionInvalidatedError,
    TaskCancelledError,
    TaskKind,
    TaskMetrics,
    TaskState,
    TransportDelegate,
)
from restflow.transport._session import TransportSession
from restflow.transport._task import TransportTask

__all__ = [
    "AuthChallenge",
    "BodyStream",
    "BodyStreamConsumedError",
    "ChallengeDisposition",
    "Credential",
    "ResponseDisposition",
    "SessionInvalidatedError",
    "TaskCancelledError",
    "TaskKind",
    "TaskMetrics",
    "TaskState",
    "TransportDelegate",
    "TransportSession",
    "TransportTask",
]
