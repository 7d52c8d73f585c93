from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from worker.src.config import Settings
from worker.src.config import settings as default_settings
from worker.src.contracts.interfaces import JobQueue, WatcherRepository
from worker.src.contracts.models import Job, Watcher, utcnow

logger = structlog.get_logger(__name__)

PRIORITY_BASE: int = 10
PRIORITY_MIN: int = 1
PRIORITY_MAX: int = 20


def calculate_priority(watcher: Watcher, now: datetime) -> int:
    """Dispatch priority for a watcher; lower runs sooner.

    Short intervals and long-unchecked watchers move up, every consecutive
    error moves a watcher down. The result is clamped to
    ``[PRIORITY_MIN, PRIORITY_MAX]``.
    """
    priority = PRIORITY_BASE

    if watcher.interval_seconds <= 60:
        priority -= 3
    elif watcher.interval_seconds <= 300:
        priority -= 1

    priority += watcher.error_count

    if watcher.last_check_at is None:
        priority -= 5
    else:
        since_check = (now - watcher.last_check_at).total_seconds()
        if since_check > watcher.interval_seconds * 4:
            priority -= 3
        elif since_check > watcher.interval_seconds * 2:
            priority -= 2

    return max(PRIORITY_MIN, min(priority, PRIORITY_MAX))


class WatchScheduler:
    """Polls the repository for due watchers and submits check jobs."""

    def __init__(
        self,
        repository: WatcherRepository,
        queue: JobQueue,
        config: Settings = default_settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._poll_interval = config.poll_interval_seconds
        self._batch_limit = config.due_batch_limit
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            logger.warning("scheduler_already_running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self._poll_interval),
            id="watcher_poll",
            name="Dispatch due watchers",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=self._clock(),  # first poll right away
        )
        self._scheduler.start()
        logger.info("scheduler_configured", poll_interval_seconds=self._poll_interval)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_shutdown")

    async def poll(self) -> int:
        """Run one dispatch pass. Returns the number of jobs enqueued."""
        try:
            due = await self._repository.find_due(self._batch_limit)
        except Exception:  # noqa: BLE001
            logger.error("scheduler_poll_error", exc_info=True)
            return 0

        if not due:
            logger.debug("no_due_watchers")
            return 0

        now = self._clock()
        enqueued = 0
        for watcher in due:
            try:
                added = await self._queue.enqueue_unique(
                    watcher.id,
                    Job.for_watcher(watcher),
                    calculate_priority(watcher, now),
                )
            except Exception:  # noqa: BLE001
                logger.error("scheduler_enqueue_error", watcher_id=watcher.id, exc_info=True)
                continue

            if added:
                enqueued += 1
            else:
                logger.debug("watcher_already_queued", watcher_id=watcher.id)

        logger.info("due_watchers_dispatched", due=len(due), enqueued=enqueued)
        return enqueued
