from __future__ import annotations

from typing import Protocol

from worker.src.contracts.models import (
    AlertEvent,
    CheckOutcome,
    Job,
    ProductSnapshot,
    Watcher,
)


class WatcherRepository(Protocol):
    async def find_due(self, limit: int) -> list[Watcher]: ...

    async def get(self, watcher_id: str) -> Watcher | None: ...

    async def record_outcome(self, watcher_id: str, outcome: CheckOutcome) -> None: ...


class AlertSink(Protocol):
    async def emit(self, event: AlertEvent) -> None: ...


class JobQueue(Protocol):
    async def enqueue_unique(self, watcher_id: str, payload: Job, priority: int) -> bool: ...


class Adapter(Protocol):
    def parse(self, content: str, url: str) -> ProductSnapshot: ...
