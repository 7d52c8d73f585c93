from __future__ import annotations

import asyncio

import structlog

from worker.src.contracts.interfaces import AlertSink
from worker.src.contracts.models import AlertEvent

logger = structlog.get_logger(__name__)


class LoggingAlertSink:
    """Writes every alert to the structured log."""

    async def emit(self, event: AlertEvent) -> None:
        logger.info(
            "alert_raised",
            watcher_id=event.watcher_id,
            user_id=event.user_id,
            alert_type=event.type.value,
            product=event.payload.product_name,
            url=event.payload.product_url,
            previous_value=event.payload.previous_value,
            current_value=event.payload.current_value,
            message=event.payload.message,
        )


class AlertSinkRegistry:
    """Fans each alert out to every registered sink.

    A failing sink is logged and reported as ``False``; it never prevents the
    other sinks from receiving the alert.
    """

    def __init__(self, sinks: dict[str, AlertSink] | None = None) -> None:
        self._sinks: dict[str, AlertSink] = dict(sinks or {})

    def register(self, name: str, sink: AlertSink) -> None:
        self._sinks[name] = sink

    @property
    def names(self) -> list[str]:
        return list(self._sinks)

    async def emit(self, event: AlertEvent) -> None:
        await self.dispatch(event)

    async def dispatch(self, event: AlertEvent) -> dict[str, bool]:
        """Send ``event`` to all sinks concurrently; return per-sink success."""
        log = logger.bind(watcher_id=event.watcher_id, alert_type=event.type.value)

        tasks: dict[str, asyncio.Task[None]] = {
            name: asyncio.create_task(sink.emit(event)) for name, sink in self._sinks.items()
        }

        results: dict[str, bool] = {}
        for name, task in tasks.items():
            try:
                await task
                results[name] = True
            except Exception as exc:  # noqa: BLE001
                log.error("alert_sink_error", sink=name, error=str(exc))
                results[name] = False

        log.debug("alert_dispatched", results=results)
        return results
