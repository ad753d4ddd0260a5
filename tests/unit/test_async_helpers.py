"""Tests for the shared failure types and asyncio primitives."""

from __future__ import annotations

import asyncio
import time

import pytest

from autoforge.utils.async_helpers import (
    CancellationToken,
    ConfigurationError,
    FrameworkError,
    OperationInProgressError,
    RateLimiter,
    RateLimitError,
    ReasoningError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
    reasoning_retrying,
)


async def run_with_retries(outcomes: list[Exception | str], **kwargs) -> tuple[str, int]:
    """Drive ``reasoning_retrying`` over a scripted sequence of failures and results."""
    calls = 0

    async def request() -> str:
        nonlocal calls
        outcome = outcomes[calls]
        calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async for attempt in reasoning_retrying(**kwargs):
        with attempt:
            result = await request()
    return result, calls


class TestFailureTypes:
    """Test the exception hierarchy."""

    def test_hierarchy(self) -> None:
        """Test reasoning failures share one base and everything derives from FrameworkError."""
        assert issubclass(ConfigurationError, FrameworkError)
        assert issubclass(ConfigurationError, ValueError)
        for error_type in (RateLimitError, ReasoningTimeoutError, ReasoningUnavailableError):
            assert issubclass(error_type, ReasoningError)
        assert issubclass(ReasoningError, FrameworkError)

    def test_rate_limit_retry_after(self) -> None:
        """Test retry_after is kept and optional."""
        assert RateLimitError("Rate limited", retry_after=60).retry_after == 60
        assert RateLimitError("Rate limited").retry_after is None

    def test_operation_in_progress(self) -> None:
        """Test the message names the operation and application."""
        error = OperationInProgressError("deployment", "app-1")
        assert error.operation == "deployment"
        assert error.app_id == "app-1"
        assert str(error) == "A deployment operation is already in progress for app-1"


class TestReasoningRetrying:
    """Test the retry policy for reasoning requests."""

    async def test_first_attempt_succeeds(self) -> None:
        """Test a successful request is made once."""
        assert await run_with_retries(["ok"], max_attempts=3, min_wait=0.01) == ("ok", 1)

    async def test_retries_transient_failures(self) -> None:
        """Test timeouts and unavailability are retried."""
        outcomes: list[Exception | str] = [
            ReasoningTimeoutError("slow"),
            ReasoningUnavailableError("502"),
            "ok",
        ]
        assert await run_with_retries(outcomes, max_attempts=3, min_wait=0.01) == ("ok", 3)

    async def test_gives_up_after_max_attempts(self) -> None:
        """Test the last transient failure is reraised."""
        outcomes: list[Exception | str] = [ReasoningUnavailableError("down")] * 2
        with pytest.raises(ReasoningUnavailableError, match="down"):
            await run_with_retries(outcomes, max_attempts=2, min_wait=0.01)

    async def test_does_not_retry_permanent_failures(self) -> None:
        """Test a plain ReasoningError fails immediately."""
        outcomes: list[Exception | str] = [ReasoningError("bad request"), "ok"]
        with pytest.raises(ReasoningError, match="bad request"):
            await run_with_retries(outcomes, max_attempts=3, min_wait=0.01)

    async def test_honours_retry_after(self) -> None:
        """Test the wait follows the server's retry-after, capped at max_wait."""
        outcomes: list[Exception | str] = [RateLimitError("slow down", retry_after=3600), "ok"]

        start = time.monotonic()
        result = await run_with_retries(outcomes, max_attempts=2, min_wait=0.01, max_wait=0.05)

        assert result == ("ok", 2)
        assert 0.04 <= time.monotonic() - start < 1.0


class TestRateLimiter:
    """Test request spacing."""

    def test_rejects_non_positive_rate(self) -> None:
        """Test a zero rate is a programming error."""
        with pytest.raises(ValueError, match="positive"):
            RateLimiter(0)

    async def test_first_request_is_immediate(self) -> None:
        """Test an idle limiter does not delay."""
        limiter = RateLimiter(rate=1)
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start < 0.05

    async def test_spaces_requests(self) -> None:
        """Test consecutive requests wait one interval each."""
        limiter = RateLimiter(rate=20)
        assert limiter.interval == pytest.approx(0.05)

        start = time.monotonic()
        for _ in range(3):
            async with limiter:
                pass

        assert time.monotonic() - start >= 0.09

    async def test_concurrent_callers_get_distinct_slots(self) -> None:
        """Test concurrent callers are released one interval apart."""
        limiter = RateLimiter(rate=20)
        released: list[float] = []

        async def caller() -> None:
            await limiter.acquire()
            released.append(time.monotonic())

        await asyncio.gather(*(caller() for _ in range(3)))

        released.sort()
        assert released[2] - released[0] >= 0.09


class TestCancellationToken:
    """Test the loop stop signal."""

    def test_cancel(self) -> None:
        """Test cancel flips the flag."""
        token = CancellationToken()
        assert token.is_cancelled is False
        token.cancel()
        assert token.is_cancelled is True

    async def test_sleep_runs_out(self) -> None:
        """Test sleep returns False when not cancelled."""
        assert await CancellationToken().sleep(0.01) is False

    async def test_sleep_interrupted(self) -> None:
        """Test sleep returns True as soon as the token is cancelled."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        start = time.monotonic()
        assert await token.sleep(5) is True
        assert time.monotonic() - start < 1.0
