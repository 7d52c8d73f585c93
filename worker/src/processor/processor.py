from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from worker.src.adapters.registry import AdapterRegistry
from worker.src.config import Settings
from worker.src.config import settings as default_settings
from worker.src.contracts.errors import ConfigurationError, WatchError
from worker.src.contracts.interfaces import AlertSink, WatcherRepository
from worker.src.contracts.models import (
    AlertEvent,
    CheckOutcome,
    CheckStatus,
    FetchFailure,
    FetchStatus,
    Job,
    ProcessResult,
    Watcher,
    WatcherStatus,
)
from worker.src.evaluator.evaluator import RuleEvaluator
from worker.src.fetcher.fetcher import ConditionalFetcher
from worker.src.throttle.throttle import ThrottleCoordinator

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class WatcherProcessor:
    """Runs one end-to-end check for a single watcher.

    throttle wait -> conditional fetch -> parse -> evaluate rules -> write the
    outcome back -> emit alerts. Every branch ends in exactly one repository
    write (except for inactive watchers, which are rejected untouched).
    """

    def __init__(
        self,
        repository: WatcherRepository,
        throttle: ThrottleCoordinator,
        fetcher: ConditionalFetcher,
        registry: AdapterRegistry,
        evaluator: RuleEvaluator,
        alert_sink: AlertSink,
        config: Settings = default_settings,
    ) -> None:
        self._repository = repository
        self._throttle = throttle
        self._fetcher = fetcher
        self._registry = registry
        self._evaluator = evaluator
        self._alert_sink = alert_sink
        self._max_errors = config.max_watcher_errors
        self._repository_timeout = config.repository_timeout_seconds
        self._check_timeout = config.job_timeout_seconds

    async def process_job(self, job: Job) -> ProcessResult:
        """Load the watcher behind ``job`` and check it."""
        watcher = await self._call_repository(self._repository.get(job.watcher_id))
        if watcher is None:
            logger.warning("watcher_not_found", watcher_id=job.watcher_id)
            return ProcessResult(
                watcher_id=job.watcher_id,
                status=CheckStatus.NOT_FOUND,
                error="Watcher not found",
            )
        return await self.process(watcher)

    async def process(self, watcher: Watcher) -> ProcessResult:
        log = logger.bind(watcher_id=watcher.id, domain=watcher.domain)

        try:
            self._ensure_active(watcher)
        except ConfigurationError as exc:
            log.info("watcher_rejected", status=watcher.status.value)
            return ProcessResult(
                watcher_id=watcher.id, status=CheckStatus.NOT_ACTIVE, error=str(exc)
            )

        try:
            return await asyncio.wait_for(self._check(watcher, log), timeout=self._check_timeout)
        except asyncio.TimeoutError:
            error = f"Check timed out after {self._check_timeout:g}s"
            log.warning("watcher_check_timeout", timeout_seconds=self._check_timeout)
        except Exception as exc:  # noqa: BLE001
            log.error("watcher_check_error", exc_info=True)
            error = f"Unexpected error: {exc}"

        try:
            await self._record_error(watcher, error, log)
        except Exception:  # noqa: BLE001
            log.error("watcher_error_not_recorded", exc_info=True)
        return ProcessResult(watcher_id=watcher.id, status=CheckStatus.FAILED, error=error)

    @staticmethod
    def _ensure_active(watcher: Watcher) -> None:
        if watcher.status != WatcherStatus.ACTIVE:
            raise ConfigurationError(f"Watcher is not active ({watcher.status.value})")

    async def _check(self, watcher: Watcher, log: structlog.stdlib.BoundLogger) -> ProcessResult:
        domain = watcher.domain

        # 1-2. Throttle gate, then the conditional fetch under the same permit
        async with self._throttle.request_slot(domain) as waited:
            if waited:
                log.debug("throttle_waited", waited_seconds=round(waited, 2))
            result = await self._fetcher.fetch(watcher.url)

        if isinstance(result, FetchFailure):
            await self._throttle.record_failure(domain)
            await self._record_error(watcher, result.reason, log)
            return ProcessResult(
                watcher_id=watcher.id, status=CheckStatus.FETCH_FAILED, error=result.reason
            )

        # The origin answered; parse problems are ours and never raise its backoff.
        await self._throttle.record_success(domain)

        if result.status == FetchStatus.UNCHANGED:
            await self._call_repository(
                self._repository.record_outcome(watcher.id, CheckOutcome(success=True))
            )
            log.info("watcher_unchanged")
            return ProcessResult(watcher_id=watcher.id, status=CheckStatus.UNCHANGED)

        # 3. Parse
        adapter = self._registry.resolve(domain)
        snapshot = adapter.parse(result.body or "", watcher.url)
        if not snapshot.success:
            error = snapshot.error or "Parse failed"
            await self._record_error(watcher, error, log)
            return ProcessResult(
                watcher_id=watcher.id,
                status=CheckStatus.PARSE_FAILED,
                snapshot=snapshot,
                error=error,
            )

        # 4. Evaluate
        alerts = self._evaluator.evaluate(
            watcher.rules,
            snapshot,
            watcher.last_snapshot,
            watcher_id=watcher.id,
            user_id=watcher.user_id,
        )

        # 5. Persist before emitting so a restart can miss an alert but never repeat one
        await self._call_repository(
            self._repository.record_outcome(
                watcher.id,
                CheckOutcome(success=True, snapshot=snapshot, alerted=bool(alerts)),
            )
        )

        for alert in alerts:
            await self._emit(alert, log)

        log.info(
            "watcher_checked",
            price=snapshot.price,
            in_stock=snapshot.in_stock,
            alert_count=len(alerts),
        )
        return ProcessResult(
            watcher_id=watcher.id,
            status=CheckStatus.CHECKED,
            alerts=alerts,
            snapshot=snapshot,
        )

    async def _record_error(
        self, watcher: Watcher, error: str, log: structlog.stdlib.BoundLogger
    ) -> None:
        error_count = watcher.error_count + 1
        transition = WatcherStatus.ERROR if error_count >= self._max_errors else None
        await self._call_repository(
            self._repository.record_outcome(
                watcher.id,
                CheckOutcome(success=False, error_increment=1, status_transition=transition),
            )
        )

        if transition is not None:
            log.warning("watcher_disabled", error_count=error_count, error=error)
        else:
            log.info("watcher_check_failed", error_count=error_count, error=error)

    async def _emit(self, alert: AlertEvent, log: structlog.stdlib.BoundLogger) -> None:
        try:
            await self._alert_sink.emit(alert)
        except Exception:  # noqa: BLE001
            log.error("alert_emit_error", alert_type=alert.type.value, exc_info=True)

    async def _call_repository(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._repository_timeout)
        except asyncio.TimeoutError as exc:
            raise WatchError(
                f"Repository call timed out after {self._repository_timeout:g}s"
            ) from exc
