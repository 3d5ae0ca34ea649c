"""Telemetry hook interfaces for structured logging and metrics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol


@dataclass(frozen=True, slots=True)
class TelemetrySignal:
    """Base class for telemetry signals."""

    emitted_at: datetime = field(init=False)

    def __post_init__(self) -> None:
        """Stamp the signal with the UTC time it was emitted."""
        object.__setattr__(self, "emitted_at", datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TelemetryEvent(TelemetrySignal):
    """Represents a discrete telemetry event."""


@dataclass(frozen=True, slots=True)
class TelemetryMetric(TelemetrySignal):
    """Represents a telemetry metric sample."""


@dataclass(frozen=True, slots=True)
class RequestLatencyMetric(TelemetryMetric):
    """Metric emitted after a request/response call completes successfully."""

    method: str
    path: str
    status_code: int
    elapsed_ms: float


@dataclass(frozen=True, slots=True)
class RequestFailedEvent(TelemetryEvent):
    """Event emitted when a request/response call fails."""

    method: str
    path: str
    error_kind: str
    status_code: int | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class RetryScheduledEvent(TelemetryEvent):
    """Event emitted before a retry of a transient request failure."""

    attempt: int
    delay_seconds: float
    error_kind: str
    message: str | None = None


@dataclass(frozen=True, slots=True)
class StreamClosedEvent(TelemetryEvent):
    """Event emitted whenever an event stream closes."""

    scope: str
    close_code: int
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ReconnectScheduledEvent(TelemetryEvent):
    """Event emitted when a stream reconnect is scheduled after a transient close."""

    scope: str
    attempt: int
    delay_seconds: float


class TelemetrySink(Protocol):
    """Protocol for emitting structured telemetry signals."""

    def record_event(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol
        """Record a structured event for diagnostics."""
        ...

    def record_metric(self, metric: TelemetryMetric) -> None:  # pragma: no cover - protocol
        """Record a metric sample."""
        ...


class NullTelemetrySink(TelemetrySink):
    """Telemetry sink that drops all signals."""

    def record_event(self, event: TelemetryEvent) -> None:
        """Drop the event without side effects."""

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Drop the metric without side effects."""
