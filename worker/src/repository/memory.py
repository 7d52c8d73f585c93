from __future__ import annotations

import asyncio
import json
import pathlib
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

import structlog
from pydantic import TypeAdapter

from worker.src.contracts.models import CheckOutcome, Watcher, WatcherStatus, utcnow

logger = structlog.get_logger(__name__)

_WATCHER_LIST = TypeAdapter(list[Watcher])


class InMemoryWatcherRepository:
    """Process-local watcher store.

    Each row has its own lock so ``record_outcome`` is atomic per watcher.
    Outcomes overwrite ``last_check_at``, the snapshot and the error count,
    so applying the same outcome twice leaves the row as if applied once
    (apart from the error increment, which the caller issues once per check).
    """

    def __init__(
        self,
        watchers: Iterable[Watcher] = (),
        *,
        min_recheck_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rows: dict[str, Watcher] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._min_recheck = timedelta(seconds=min_recheck_seconds)
        self._clock = clock
        for watcher in watchers:
            self.add(watcher)

    @classmethod
    def load_json(cls, path: str | pathlib.Path, **kwargs: object) -> InMemoryWatcherRepository:
        raw = pathlib.Path(path).read_text(encoding="utf-8")
        watchers = _WATCHER_LIST.validate_python(json.loads(raw))
        logger.info("watchers_loaded", path=str(path), count=len(watchers))
        return cls(watchers, **kwargs)  # type: ignore[arg-type]

    def add(self, watcher: Watcher) -> None:
        self._rows[watcher.id] = watcher.model_copy(deep=True)
        self._locks.setdefault(watcher.id, asyncio.Lock())

    def all(self) -> list[Watcher]:
        return [row.model_copy(deep=True) for row in self._rows.values()]

    async def get(self, watcher_id: str) -> Watcher | None:
        row = self._rows.get(watcher_id)
        return row.model_copy(deep=True) if row is not None else None

    def is_due(self, watcher: Watcher, now: datetime) -> bool:
        if watcher.status != WatcherStatus.ACTIVE:
            return False
        if watcher.last_check_at is None:
            return True
        interval = max(timedelta(seconds=watcher.interval_seconds), self._min_recheck)
        return now - watcher.last_check_at >= interval

    async def find_due(self, limit: int) -> list[Watcher]:
        """Active watchers due for a check: never checked first, then longest unchecked."""
        now = self._clock()
        due = [row for row in self._rows.values() if self.is_due(row, now)]
        due.sort(
            key=lambda w: (
                w.last_check_at is not None,
                w.last_check_at or datetime.min.replace(tzinfo=now.tzinfo),
            )
        )
        return [row.model_copy(deep=True) for row in due[:limit]]

    async def record_outcome(self, watcher_id: str, outcome: CheckOutcome) -> None:
        lock = self._locks.get(watcher_id)
        if lock is None:
            logger.warning("record_outcome_unknown_watcher", watcher_id=watcher_id)
            return

        async with lock:
            row = self._rows.get(watcher_id)
            if row is None:
                return

            update: dict[str, object] = {"last_check_at": outcome.checked_at}
            if outcome.success:
                update["error_count"] = 0
                if outcome.snapshot is not None:
                    update["last_snapshot"] = outcome.snapshot
            else:
                update["error_count"] = row.error_count + outcome.error_increment
            if outcome.alerted:
                update["last_alert_at"] = outcome.checked_at
            if outcome.status_transition is not None:
                update["status"] = outcome.status_transition

            self._rows[watcher_id] = row.model_copy(update=update)

    async def reset(self, watcher_id: str) -> None:
        """Manually re-enable a watcher after it was moved to ``error``."""
        lock = self._locks.get(watcher_id)
        if lock is None:
            return
        async with lock:
            row = self._rows.get(watcher_id)
            if row is not None:
                self._rows[watcher_id] = row.model_copy(
                    update={"status": WatcherStatus.ACTIVE, "error_count": 0}
                )
                logger.info("watcher_reset", watcher_id=watcher_id)
