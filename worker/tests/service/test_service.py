from __future__ import annotations

import pytest

from worker.src.adapters.demo import DemoAdapter
from worker.src.alerts.sinks import AlertSinkRegistry, LoggingAlertSink
from worker.src.config import Settings
from worker.src.contracts.models import CheckStatus, FetchResult, FetchStatus, Job, RuleSet, Watcher
from worker.src.main import WatchService, configure_logging
from worker.src.repository.memory import InMemoryWatcherRepository


class _RecordingSink:
    def __init__(self) -> None:
        self.events: list[object] = []

    async def emit(self, event: object) -> None:
        self.events.append(event)


class TestWatchService:
    def test_wiring(self) -> None:
        service = WatchService(
            InMemoryWatcherRepository(), AlertSinkRegistry({"log": LoggingAlertSink()}), Settings()
        )
        assert isinstance(service.registry.resolve("shop.example.com"), DemoAdapter)
        assert service.pool.running is False
        assert service.scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        service = WatchService(InMemoryWatcherRepository(), _RecordingSink(), Settings())

        service.start()
        assert service.pool.running is True
        assert service.scheduler.running is True

        await service.stop()
        assert service.pool.running is False
        assert service.scheduler.running is False

    @pytest.mark.asyncio
    async def test_demo_watcher_checked_end_to_end(self) -> None:
        watcher = Watcher(
            id="demo-1",
            url="https://example.com/products/demo-jacket",
            rules=RuleSet(sizes=["M", "L", "S"]),
        )
        repository = InMemoryWatcherRepository([watcher])
        sink = _RecordingSink()
        service = WatchService(repository, sink, Settings(throttle_base_delay_seconds=0.0))

        async def _demo_page(url: str, validator: object = None) -> FetchResult:
            return FetchResult(status=FetchStatus.FETCHED, body="<html></html>", status_code=200)

        service.fetcher.fetch = _demo_page  # type: ignore[method-assign]

        result = await service.processor.process_job(Job.for_watcher(watcher))

        assert result.status == CheckStatus.CHECKED
        assert result.snapshot is not None
        assert result.snapshot.title == "Demo Winter Jacket"
        stored = await repository.get("demo-1")
        assert stored is not None
        assert stored.last_snapshot == result.snapshot
        assert len(sink.events) == len(result.alerts)


def test_configure_logging_accepts_level_names() -> None:
    configure_logging("debug")
    configure_logging("WARNING")
