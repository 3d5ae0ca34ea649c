"""Bounded exponential-backoff retries for idempotent operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from secrets import SystemRandom
from typing import TypeVar

import httpx

from .classifier import classify_exception, is_retryable
from .config import RetryConfig
from .errors import ClientError
from .telemetry import NullTelemetrySink, RetryScheduledEvent, TelemetrySink

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and delay schedule.

    The delay before retry ``n`` (0-indexed) is ``initial_delay * 2**n``. A non-zero
    ``jitter_ratio`` spreads each delay by up to that fraction in either direction;
    leave it at zero when the exact sequence matters.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    jitter_ratio: float = 0.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        """Build a policy from a validated :class:`RetryConfig`."""
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            jitter_ratio=config.jitter_ratio,
        )

    def delay_for(self, attempt: int) -> float:
        """Return the delay in seconds before retry *attempt*."""
        delay = self.initial_delay * (2**attempt)
        if self.jitter_ratio <= 0:
            return delay
        span = delay * self.jitter_ratio
        return max(0.0, delay + _JITTER_RANDOM.uniform(-span, span))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    policy: RetryPolicy | None = None,
    sleep: SleepFn = asyncio.sleep,
    telemetry: TelemetrySink | None = None,
) -> T:
    """Await *operation*, retrying network and server failures with backoff.

    Only :class:`~unshackle_client.errors.NetworkError` and
    :class:`~unshackle_client.errors.ServerError` are retried; every other failure
    propagates on first occurrence. After the budget is spent the last classified
    error is raised unchanged.
    """
    policy = policy or RetryPolicy(max_retries=max_retries, initial_delay=initial_delay)
    sink = telemetry or NullTelemetrySink()
    attempt = 0
    while True:
        try:
            return await operation()
        except (ClientError, httpx.HTTPError, OSError) as exc:
            error = classify_exception(exc)
            if attempt >= policy.max_retries or not is_retryable(error):
                if error is exc:
                    raise
                raise error from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying after %s failure in %.2fs (retry %d of %d): %s",
                error.kind.value,
                delay,
                attempt + 1,
                policy.max_retries,
                error.message,
            )
            sink.record_event(
                RetryScheduledEvent(
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error_kind=error.kind.value,
                    message=error.message,
                )
            )
            await sleep(delay)
            attempt += 1


_JITTER_RANDOM = SystemRandom()
