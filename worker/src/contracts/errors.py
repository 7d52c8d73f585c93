from __future__ import annotations


class WatchError(Exception):
    """Base class for errors local to a single watcher check."""


class FetchError(WatchError):
    def __init__(
        self,
        reason: str,
        status_code: int | None = None,
        error_class: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.error_class = error_class


class TransientFetchError(FetchError):
    """Timeout, connection error, 5xx or rate limiting."""


class PermanentRequestError(FetchError):
    """4xx responses and URLs that can never be requested."""


class ParseError(WatchError):
    """The page was fetched but no product data could be extracted."""


class ConfigurationError(WatchError):
    """The watcher cannot be checked in its current configuration."""
