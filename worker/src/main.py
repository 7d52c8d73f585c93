from __future__ import annotations

import asyncio
import logging
import signal

import structlog

from worker.src.adapters.registry import AdapterRegistry
from worker.src.alerts.sinks import AlertSinkRegistry, LoggingAlertSink
from worker.src.config import Settings, settings
from worker.src.contracts.interfaces import AlertSink, WatcherRepository
from worker.src.evaluator.evaluator import RuleEvaluator
from worker.src.fetcher.fetcher import ConditionalFetcher
from worker.src.jobs.pool import JobPool
from worker.src.processor.processor import WatcherProcessor
from worker.src.repository.memory import InMemoryWatcherRepository
from worker.src.scheduler.scheduler import WatchScheduler
from worker.src.throttle.throttle import ThrottleCoordinator


def configure_logging(level: str = settings.log_level) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper()),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


class WatchService:
    """Composition root: wires the pipeline and owns its lifecycle."""

    def __init__(
        self,
        repository: WatcherRepository,
        alert_sink: AlertSink,
        config: Settings = settings,
        *,
        registry: AdapterRegistry | None = None,
    ) -> None:
        self.throttle = ThrottleCoordinator(config)
        self.fetcher = ConditionalFetcher(config)
        self.registry = registry if registry is not None else AdapterRegistry.with_defaults()
        self.processor = WatcherProcessor(
            repository=repository,
            throttle=self.throttle,
            fetcher=self.fetcher,
            registry=self.registry,
            evaluator=RuleEvaluator(),
            alert_sink=alert_sink,
            config=config,
        )
        self.pool = JobPool(self.processor.process_job, config)
        self.scheduler = WatchScheduler(repository, self.pool, config)

    def start(self) -> None:
        self.pool.start()
        self.scheduler.start()
        logger.info("watch_service_started")

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.pool.stop()
        logger.info("watch_service_stopped")


async def run(config: Settings = settings) -> None:
    if config.watchers_file:
        repository = InMemoryWatcherRepository.load_json(
            config.watchers_file, min_recheck_seconds=config.min_recheck_seconds
        )
    else:
        repository = InMemoryWatcherRepository(min_recheck_seconds=config.min_recheck_seconds)
        logger.warning("no_watchers_file_configured")

    sinks = AlertSinkRegistry({"log": LoggingAlertSink()})
    service = WatchService(repository, sinks, config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    service.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("shutting_down")
        await service.stop()


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
