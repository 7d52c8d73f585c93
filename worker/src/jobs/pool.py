from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable

import structlog

from worker.src.config import Settings
from worker.src.config import settings as default_settings
from worker.src.contracts.models import Job, ProcessResult

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[ProcessResult]]


class JobPool:
    """In-process job queue drained by a fixed number of worker tasks.

    Jobs are keyed by watcher id: while a job for a watcher is queued or
    running, further submissions for it are ignored. Lower priority values
    run first; equal priorities run in submission order.
    """

    def __init__(self, handler: JobHandler, config: Settings = default_settings) -> None:
        self._handler = handler
        self._concurrency = config.worker_concurrency
        # The handler enforces job_timeout_seconds itself and then records the
        # failure; this outer limit only catches handlers that never return.
        self._job_timeout = config.job_timeout_seconds + config.repository_timeout_seconds
        self._queue: asyncio.PriorityQueue[tuple[int, int, Job]] = asyncio.PriorityQueue()
        self._pending: set[str] = set()
        self._active: set[str] = set()
        self._sequence = itertools.count()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queued_count(self) -> int:
        return self._queue.qsize()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_pending(self, watcher_id: str) -> bool:
        """True while a job for ``watcher_id`` is queued or in flight."""
        return watcher_id in self._pending

    async def enqueue_unique(self, watcher_id: str, payload: Job, priority: int) -> bool:
        if watcher_id in self._pending:
            logger.debug("job_already_pending", watcher_id=watcher_id)
            return False

        self._pending.add(watcher_id)
        await self._queue.put((priority, next(self._sequence), payload))
        return True

    def start(self) -> None:
        if self._workers:
            logger.warning("job_pool_already_running")
            return

        self._workers = [
            asyncio.create_task(self._run(index), name=f"watch-worker-{index}")
            for index in range(self._concurrency)
        ]
        logger.info("job_pool_started", concurrency=self._concurrency)

    async def stop(self) -> None:
        if not self._workers:
            return

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("job_pool_stopped", dropped_jobs=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _run(self, index: int) -> None:
        while True:
            priority, _, job = await self._queue.get()
            self._active.add(job.watcher_id)
            log = logger.bind(worker=index, watcher_id=job.watcher_id, priority=priority)
            try:
                result = await asyncio.wait_for(self._handler(job), timeout=self._job_timeout)
                log.debug("job_completed", status=result.status.value)
            except asyncio.TimeoutError:
                log.error("job_timeout", timeout_seconds=self._job_timeout)
            except Exception:  # noqa: BLE001
                log.error("job_failed", exc_info=True)
            finally:
                self._active.discard(job.watcher_id)
                self._pending.discard(job.watcher_id)
                self._queue.task_done()
