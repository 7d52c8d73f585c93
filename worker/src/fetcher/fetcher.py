from __future__ import annotations

import asyncio

import httpx
import structlog

from worker.src.config import Settings
from worker.src.config import settings as default_settings
from worker.src.contracts.errors import FetchError, PermanentRequestError, TransientFetchError
from worker.src.contracts.models import (
    CacheValidator,
    FailureKind,
    FetchFailure,
    FetchResult,
    FetchStatus,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_ACCEPT: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Rate limiting and request timeouts are worth retrying like server errors.
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429})


class ConditionalFetcher:
    """Single-shot conditional GET with ETag / Last-Modified validators.

    Validators seen in responses are remembered per URL and sent back as
    ``If-None-Match`` (preferred) or ``If-Modified-Since``. The cache lives in
    memory only; losing it just means the next request downloads the body.
    """

    def __init__(self, config: Settings = default_settings) -> None:
        self._timeout = config.fetch_timeout_seconds
        self._user_agent = config.user_agent
        self._accept_language = config.accept_language
        self._validators: dict[str, CacheValidator] = {}

    def cached_validator(self, url: str) -> CacheValidator | None:
        return self._validators.get(url)

    def forget(self, url: str) -> None:
        self._validators.pop(url, None)

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": self._user_agent,
                "Accept": _ACCEPT,
                "Accept-Language": self._accept_language,
            },
            follow_redirects=True,
            timeout=httpx.Timeout(self._timeout),
        )

    @staticmethod
    def _conditional_headers(validator: CacheValidator | None) -> dict[str, str]:
        if validator is None:
            return {}
        if validator.etag:
            return {"If-None-Match": validator.etag}
        if validator.last_modified:
            return {"If-Modified-Since": validator.last_modified}
        return {}

    async def fetch(
        self, url: str, validator: CacheValidator | None = None
    ) -> FetchResult | FetchFailure:
        """Fetch ``url`` once, returning a result or a typed failure. Never raises."""
        log = logger.bind(url=url)
        if validator is None:
            validator = self._validators.get(url)

        try:
            result = await asyncio.wait_for(self._request(url, validator), timeout=self._timeout)
        except asyncio.TimeoutError:
            log.warning("fetch_timeout", timeout_seconds=self._timeout)
            return FetchFailure(
                reason=f"Timed out after {self._timeout:g}s",
                kind=FailureKind.TRANSIENT,
                error_class="TimeoutError",
            )
        except TransientFetchError as exc:
            log.warning("fetch_failed", reason=exc.reason, status_code=exc.status_code)
            return self._failure(exc, FailureKind.TRANSIENT)
        except PermanentRequestError as exc:
            log.error("fetch_rejected", reason=exc.reason, status_code=exc.status_code)
            return self._failure(exc, FailureKind.PERMANENT)

        if result.status == FetchStatus.UNCHANGED:
            log.debug("page_not_modified")
        else:
            if result.validator is not None and not result.validator.is_empty:
                self._validators[url] = result.validator
            log.info("page_fetched", status_code=result.status_code, bytes=len(result.body or ""))
        return result

    async def _request(self, url: str, validator: CacheValidator | None) -> FetchResult:
        try:
            async with self._build_client() as client:
                response = await client.get(url, headers=self._conditional_headers(validator))
        except httpx.TimeoutException as exc:
            raise TransientFetchError(
                f"Timed out: {exc}", error_class=type(exc).__name__
            ) from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise PermanentRequestError(
                f"Invalid URL: {exc}", error_class=type(exc).__name__
            ) from exc
        except httpx.RequestError as exc:
            raise TransientFetchError(
                f"Request failed: {exc}", error_class=type(exc).__name__
            ) from exc

        status = response.status_code
        if status == 304:
            return FetchResult(status=FetchStatus.UNCHANGED, validator=validator, status_code=status)

        if not response.is_success:
            reason = f"HTTP {status}"
            if status >= 500 or status in _TRANSIENT_STATUS_CODES:
                raise TransientFetchError(reason, status_code=status, error_class="HTTPStatusError")
            raise PermanentRequestError(reason, status_code=status, error_class="HTTPStatusError")

        return FetchResult(
            status=FetchStatus.FETCHED,
            body=response.text,
            validator=CacheValidator(
                etag=response.headers.get("etag"),
                last_modified=response.headers.get("last-modified"),
            ),
            status_code=status,
        )

    @staticmethod
    def _failure(exc: FetchError, kind: FailureKind) -> FetchFailure:
        return FetchFailure(
            reason=exc.reason,
            kind=kind,
            status_code=exc.status_code,
            error_class=exc.error_class,
        )
