from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from worker.src.alerts.sinks import AlertSinkRegistry, LoggingAlertSink
from worker.src.contracts.models import AlertEvent, AlertPayload, AlertType


@pytest.fixture
def event() -> AlertEvent:
    return AlertEvent(
        watcher_id="w-1",
        type=AlertType.BACK_IN_STOCK,
        user_id="u-1",
        payload=AlertPayload(
            product_name="Alpine Jacket",
            product_url="https://shop.test/p/alpine-jacket",
            previous_value=False,
            current_value=True,
            message="Product is back in stock!",
        ),
    )


class TestAlertSinkRegistry:
    @pytest.mark.asyncio
    async def test_dispatches_to_all_sinks(self, event: AlertEvent) -> None:
        first, second = AsyncMock(), AsyncMock()
        registry = AlertSinkRegistry({"first": first, "second": second})

        results = await registry.dispatch(event)

        assert results == {"first": True, "second": True}
        first.emit.assert_awaited_once_with(event)
        second.emit.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_failing_sink_isolated(self, event: AlertEvent) -> None:
        broken, healthy = AsyncMock(), AsyncMock()
        broken.emit.side_effect = ConnectionError("webhook down")
        registry = AlertSinkRegistry({"broken": broken, "healthy": healthy})

        results = await registry.dispatch(event)

        assert results == {"broken": False, "healthy": True}
        healthy.emit.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_emit_never_raises(self, event: AlertEvent) -> None:
        broken = AsyncMock()
        broken.emit.side_effect = RuntimeError("boom")
        registry = AlertSinkRegistry({"broken": broken})

        await registry.emit(event)

    @pytest.mark.asyncio
    async def test_no_sinks(self, event: AlertEvent) -> None:
        assert await AlertSinkRegistry().dispatch(event) == {}

    def test_register(self) -> None:
        registry = AlertSinkRegistry()
        registry.register("log", LoggingAlertSink())
        assert registry.names == ["log"]


class TestLoggingAlertSink:
    @pytest.mark.asyncio
    async def test_emit_completes(self, event: AlertEvent) -> None:
        await LoggingAlertSink().emit(event)
