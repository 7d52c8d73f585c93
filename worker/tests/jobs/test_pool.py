from __future__ import annotations

import asyncio

import pytest

from worker.src.config import Settings
from worker.src.contracts.models import CheckStatus, Job, ProcessResult
from worker.src.jobs.pool import JobPool


def _job(watcher_id: str) -> Job:
    return Job(watcher_id=watcher_id, url=f"https://shop.test/{watcher_id}", domain="shop.test")


def _ok(job: Job) -> ProcessResult:
    return ProcessResult(watcher_id=job.watcher_id, status=CheckStatus.CHECKED)


# ── Deduplication ────────────────────────────────────────────────────────────


class TestEnqueueUnique:
    @pytest.mark.asyncio
    async def test_second_submission_ignored(self) -> None:
        async def handler(job: Job) -> ProcessResult:
            return _ok(job)

        pool = JobPool(handler, Settings())

        assert await pool.enqueue_unique("w-1", _job("w-1"), 10) is True
        assert await pool.enqueue_unique("w-1", _job("w-1"), 1) is False
        assert pool.queued_count == 1
        assert pool.is_pending("w-1")

    @pytest.mark.asyncio
    async def test_running_job_blocks_resubmission(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(job: Job) -> ProcessResult:
            started.set()
            await release.wait()
            return _ok(job)

        pool = JobPool(handler, Settings(worker_concurrency=1))
        pool.start()
        try:
            await pool.enqueue_unique("w-1", _job("w-1"), 10)
            await started.wait()

            assert pool.active_count == 1
            assert await pool.enqueue_unique("w-1", _job("w-1"), 10) is False

            release.set()
            await pool.join()
            assert pool.is_pending("w-1") is False
            assert await pool.enqueue_unique("w-1", _job("w-1"), 10) is True
        finally:
            await pool.stop()


# ── Execution ────────────────────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio
    async def test_lower_priority_value_runs_first(self) -> None:
        order: list[str] = []

        async def handler(job: Job) -> ProcessResult:
            order.append(job.watcher_id)
            return _ok(job)

        pool = JobPool(handler, Settings(worker_concurrency=1))
        await pool.enqueue_unique("late", _job("late"), 15)
        await pool.enqueue_unique("urgent", _job("urgent"), 2)
        await pool.enqueue_unique("normal-a", _job("normal-a"), 10)
        await pool.enqueue_unique("normal-b", _job("normal-b"), 10)

        pool.start()
        try:
            await pool.join()
        finally:
            await pool.stop()

        assert order == ["urgent", "normal-a", "normal-b", "late"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self) -> None:
        running = 0
        peak = 0

        async def handler(job: Job) -> ProcessResult:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return _ok(job)

        pool = JobPool(handler, Settings(worker_concurrency=2))
        for index in range(6):
            await pool.enqueue_unique(f"w-{index}", _job(f"w-{index}"), 10)

        pool.start()
        try:
            await pool.join()
        finally:
            await pool.stop()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_timeout_releases_watcher(self) -> None:
        async def handler(job: Job) -> ProcessResult:
            await asyncio.sleep(10)
            return _ok(job)

        pool = JobPool(
            handler,
            Settings(
                worker_concurrency=1,
                job_timeout_seconds=0.05,
                repository_timeout_seconds=0.05,
                throttle_base_delay_seconds=0,
                throttle_max_delay_seconds=0,
                fetch_timeout_seconds=0.01,
            ),
        )
        await pool.enqueue_unique("slow", _job("slow"), 10)

        pool.start()
        try:
            await asyncio.wait_for(pool.join(), timeout=2)
        finally:
            await pool.stop()

        assert pool.is_pending("slow") is False
        assert pool.active_count == 0

    @pytest.mark.asyncio
    async def test_handler_error_does_not_kill_worker(self) -> None:
        handled: list[str] = []

        async def handler(job: Job) -> ProcessResult:
            if job.watcher_id == "bad":
                raise RuntimeError("handler crashed")
            handled.append(job.watcher_id)
            return _ok(job)

        pool = JobPool(handler, Settings(worker_concurrency=1))
        await pool.enqueue_unique("bad", _job("bad"), 1)
        await pool.enqueue_unique("good", _job("good"), 2)

        pool.start()
        try:
            await pool.join()
        finally:
            await pool.stop()

        assert handled == ["good"]
        assert pool.is_pending("bad") is False


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self) -> None:
        async def handler(job: Job) -> ProcessResult:
            return _ok(job)

        pool = JobPool(handler, Settings(worker_concurrency=3))
        assert pool.running is False

        pool.start()
        assert pool.running is True

        await pool.stop()
        assert pool.running is False
