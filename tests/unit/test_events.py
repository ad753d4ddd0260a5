"""Tests for typed event channels."""

from __future__ import annotations

from unittest.mock import AsyncMock

from autoforge.core.events import EventChannel


class TestEventChannel:
    """Test subscribe/publish semantics."""

    async def test_publish_in_order(self) -> None:
        """Test subscribers run in subscription order."""
        seen: list[str] = []

        async def first(event: str) -> None:
            seen.append(f"first:{event}")

        async def second(event: str) -> None:
            seen.append(f"second:{event}")

        channel: EventChannel[str] = EventChannel("test")
        channel.subscribe(first)
        channel.subscribe(second)
        await channel.publish("x")

        assert seen == ["first:x", "second:x"]

    async def test_unsubscribe(self) -> None:
        """Test an unsubscribed callback is not called."""
        callback = AsyncMock()
        channel: EventChannel[str] = EventChannel("test")
        unsubscribe = channel.subscribe(callback)
        unsubscribe()
        unsubscribe()

        await channel.publish("x")

        callback.assert_not_awaited()
        assert channel.subscriber_count == 0

    async def test_failing_subscriber_isolated(self) -> None:
        """Test a raising subscriber does not reach the publisher or others."""
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        channel: EventChannel[str] = EventChannel("test")
        channel.subscribe(failing)
        channel.subscribe(healthy)

        await channel.publish("x")

        healthy.assert_awaited_once_with("x")
