"""Failure types shared by every subsystem, and the asyncio primitives the
reasoning path and the healing loop are built on.

Reasoning calls fail in three transient ways (rate limited, timed out,
service unavailable). ``reasoning_retrying`` retries exactly those, waiting
out a server-supplied ``retry_after`` when there is one.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()


class FrameworkError(Exception):
    """Base exception for all autoforge errors."""


class ConfigurationError(FrameworkError, ValueError):
    """Configuration is missing or inconsistent. Fatal at startup."""


class OperationInProgressError(FrameworkError):
    """Another operation of the same kind is already running for the application."""

    def __init__(self, operation: str, app_id: str) -> None:
        super().__init__(f"A {operation} operation is already in progress for {app_id}")
        self.operation = operation
        self.app_id = app_id


class ReasoningError(FrameworkError):
    """The reasoning service call failed."""


class ReasoningUnavailableError(ReasoningError):
    """The service could not be reached or answered with a server error."""


class ReasoningTimeoutError(ReasoningError):
    """The service did not answer within the configured timeout."""


class RateLimitError(ReasoningError):
    """The service rejected the request for exceeding its rate limit.

    Attributes:
        retry_after: Seconds the service asked us to wait, if it said.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


TRANSIENT_REASONING_ERRORS: tuple[type[ReasoningError], ...] = (
    RateLimitError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
)


class _WaitRetryAfter:
    """Exponential backoff, overridden by a rate limit's ``retry_after`` (capped)."""

    def __init__(self, min_wait: float, max_wait: float) -> None:
        self._max_wait = max_wait
        self._backoff = wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait)

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return float(min(error.retry_after, self._max_wait))
        return float(self._backoff(retry_state))


def _log_retry(retry_state: RetryCallState) -> None:
    if retry_state.outcome is None:
        return
    error = retry_state.outcome.exception()
    log.warning(
        "reasoning_retry",
        attempt=retry_state.attempt_number,
        error_type=type(error).__name__,
        error=str(error),
        wait=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def reasoning_retrying(
    max_attempts: int,
    *,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
) -> AsyncRetrying:
    """Retry controller for one reasoning request.

    Example:
        async for attempt in reasoning_retrying(3):
            with attempt:
                text = await self._request(prompt, system)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_WaitRetryAfter(min_wait, max_wait),
        retry=retry_if_exception_type(TRANSIENT_REASONING_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )


class RateLimiter:
    """Spaces reasoning requests at least ``1 / rate`` seconds apart.

    Each caller reserves the next free slot under a lock and then sleeps
    until it comes round, so concurrent healing passes share one budget.

    Example:
        limiter = RateLimiter(config.reasoning.requests_per_second)
        async with limiter:
            await provider.complete(prompt)
    """

    def __init__(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self._interval = 1.0 / rate
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        return self._interval

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            delay = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self._interval
        if delay > 0:
            log.debug("reasoning_request_throttled", delay=round(delay, 3))
            await asyncio.sleep(delay)

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class CancellationToken:
    """Stop signal for a background loop.

    ``sleep`` doubles as the loop's interval wait and returns early once
    the token is cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until cancelled.

        Returns:
            True if cancellation was requested while sleeping.
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
