from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog

from worker.src.config import Settings
from worker.src.config import settings as default_settings
from worker.src.contracts.models import ThrottleEntry

logger = structlog.get_logger(__name__)

_PRUNE_INTERVAL_SECONDS: float = 60.0


class ThrottleCoordinator:
    """Per-domain request pacing with exponential backoff.

    Every domain keeps the time of its last request and its consecutive error
    count. The delay required before the next request is
    ``base_delay * multiplier ** error_count`` clamped to
    ``[base_delay, max_delay]``.

    Entries are guarded by one ``asyncio.Lock`` per domain, so checking and
    stamping a slot is atomic for a domain while unrelated domains never wait
    on each other. A process-wide semaphore additionally caps the number of
    fetches in flight.
    """

    def __init__(
        self,
        config: Settings = default_settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_delay = config.throttle_base_delay_seconds
        self._max_delay = max(config.throttle_max_delay_seconds, self._base_delay)
        self._multiplier = config.throttle_backoff_multiplier
        self._error_cap = config.throttle_error_cap
        self._entry_ttl = config.throttle_entry_ttl_seconds
        self._max_fetches = config.max_concurrent_fetches
        self._clock = clock
        self._sleep = sleep

        self._entries: dict[str, ThrottleEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._fetch_semaphore = asyncio.Semaphore(self._max_fetches)
        self._in_flight = 0
        self._last_prune = clock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def tracked_domains(self) -> list[str]:
        return sorted(self._entries)

    def calculate_delay(self, error_count: int) -> float:
        """Required spacing for a domain with ``error_count`` consecutive errors."""
        if error_count <= 0:
            return self._base_delay
        capped = min(error_count, self._error_cap)
        delay = self._base_delay * self._multiplier**capped
        return min(max(delay, self._base_delay), self._max_delay)

    def get_entry(self, domain: str) -> ThrottleEntry | None:
        entry = self._live_entry(domain, self._clock())
        return entry.model_copy() if entry is not None else None

    def current_delay(self, domain: str) -> float:
        entry = self._live_entry(domain, self._clock())
        if entry is None:
            return self._base_delay
        return self.calculate_delay(entry.error_count)

    def can_proceed(self, domain: str) -> float:
        """Return how many seconds to wait before ``domain`` may be requested (0 = now)."""
        now = self._clock()
        entry = self._live_entry(domain, now)
        if entry is None:
            return 0.0

        elapsed = now - entry.last_request_at
        required = self.calculate_delay(entry.error_count)
        return max(required - elapsed, 0.0)

    async def wait_for_slot(self, domain: str) -> float:
        """Wait until ``domain`` may be requested and claim the slot.

        The check and the claim happen under the domain lock. The lock is not
        held while sleeping; the wait is recomputed after waking because an
        outcome may have been recorded in the meantime.

        Returns the total number of seconds spent waiting.
        """
        waited = 0.0
        self._prune_expired()
        while True:
            async with self._lock_for(domain):
                wait = self.can_proceed(domain)
                if wait <= 0:
                    self._claim(domain)
                    if waited:
                        logger.debug("throttle_slot_acquired", domain=domain, waited_seconds=round(waited, 2))
                    return waited

            logger.debug("throttle_wait", domain=domain, wait_seconds=round(wait, 2))
            await self._sleep(wait)
            waited += wait

    async def record_success(self, domain: str) -> None:
        async with self._lock_for(domain):
            self._entries[domain] = ThrottleEntry(last_request_at=self._clock(), error_count=0)

    async def record_failure(self, domain: str) -> None:
        async with self._lock_for(domain):
            now = self._clock()
            entry = self._live_entry(domain, now)
            previous = entry.error_count if entry is not None else 0
            error_count = min(previous + 1, self._error_cap)
            self._entries[domain] = ThrottleEntry(last_request_at=now, error_count=error_count)

        logger.info(
            "domain_backoff_increased",
            domain=domain,
            error_count=error_count,
            delay_seconds=self.calculate_delay(error_count),
        )

    async def reset(self, domain: str) -> None:
        async with self._lock_for(domain):
            self._entries.pop(domain, None)

    @asynccontextmanager
    async def request_slot(self, domain: str) -> AsyncIterator[float]:
        """Hold a fetch permit and a claimed slot for ``domain`` around one request.

        The slot is stamped only once the permit is held, so the request starts
        right after its stamp even when permits are scarce. If another request
        took the slot while this one queued for a permit, the permit is given
        back and the spacing wait starts over.

        Yields the total number of seconds spent waiting for spacing.
        """
        waited = 0.0
        self._prune_expired()
        while True:
            wait = self.can_proceed(domain)
            if wait > 0:
                logger.debug("throttle_wait", domain=domain, wait_seconds=round(wait, 2))
                await self._sleep(wait)
                waited += wait
                continue

            async with self.fetch_permit():
                async with self._lock_for(domain):
                    claimed = self.can_proceed(domain) <= 0
                    if claimed:
                        self._claim(domain)
                if claimed:
                    yield waited
                    return

            logger.debug("throttle_slot_taken", domain=domain)

    @asynccontextmanager
    async def fetch_permit(self) -> AsyncIterator[None]:
        """Hold one of the process-wide fetch slots for the duration of the block."""
        async with self._fetch_semaphore:
            self._in_flight += 1
            try:
                yield
            finally:
                self._in_flight -= 1

    def _lock_for(self, domain: str) -> asyncio.Lock:
        lock = self._locks.get(domain)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[domain] = lock
        return lock

    def _claim(self, domain: str) -> None:
        now = self._clock()
        entry = self._entries.get(domain)
        if entry is None:
            self._entries[domain] = ThrottleEntry(last_request_at=now)
        else:
            entry.last_request_at = now

    def _live_entry(self, domain: str, now: float) -> ThrottleEntry | None:
        entry = self._entries.get(domain)
        if entry is not None and now - entry.last_request_at >= self._entry_ttl:
            del self._entries[domain]
            return None
        return entry

    def _prune_expired(self) -> None:
        now = self._clock()
        if now - self._last_prune < _PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now

        expired = [
            domain
            for domain, entry in self._entries.items()
            if now - entry.last_request_at >= self._entry_ttl
        ]
        for domain in expired:
            lock = self._locks.get(domain)
            if lock is not None and lock.locked():
                continue
            self._entries.pop(domain, None)
            self._locks.pop(domain, None)

        if expired:
            logger.debug("throttle_entries_expired", count=len(expired))
