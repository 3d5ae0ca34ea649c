"""Typed data models for job records, stream scopes, and stream events."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

JobRecord = Mapping[str, Any]
ServiceDescriptor = Mapping[str, Any]
TitleMetadata = Mapping[str, Any]
TrackMetadata = Mapping[str, Any]

AUTH_REJECTED_CLOSE_CODE = 4001
JOB_NOT_FOUND_CLOSE_CODE = 4004
NORMAL_CLOSURE_CODE = 1000
ABNORMAL_CLOSURE_CODE = 1006


@dataclass(frozen=True, slots=True)
class GlobalScope:
    """Scope of the service-wide event feed."""

    def __str__(self) -> str:
        return "global"


@dataclass(frozen=True, slots=True)
class JobScope:
    """Scope of the event feed for a single job."""

    job_id: str

    def __str__(self) -> str:
        return f"job:{self.job_id}"


ConnectionScope = GlobalScope | JobScope

GLOBAL_SCOPE = GlobalScope()


class ConnectionState(str, Enum):
    """Lifecycle of a persistent event stream."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class StreamEventKind(str, Enum):
    """Kinds of notifications delivered for an event stream."""

    OPEN = "open"
    MESSAGE = "message"
    CLOSE = "close"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """Single notification emitted by the connection manager.

    ``payload`` carries the decoded frame for ``MESSAGE`` events, ``close_code`` and
    ``reason`` describe ``CLOSE`` events, and ``error`` is set for ``ERROR`` events.
    """

    kind: StreamEventKind
    scope: ConnectionScope
    payload: object | None = None
    close_code: int | None = None
    reason: str | None = None
    error: BaseException | None = None

    @property
    def terminal(self) -> bool:
        """Return True for notifications after which no reconnect will happen."""
        return self.kind in (StreamEventKind.AUTH_ERROR, StreamEventKind.NOT_FOUND)
