from __future__ import annotations

import enum
from datetime import datetime, timezone
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def normalize_domain(host: str) -> str:
    """Normalise a host name: lowercase, no port, no trailing dot, no ``www.``."""
    domain = host.strip().lower().rstrip(".")
    if ":" in domain:
        domain = domain.split(":", 1)[0]
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def domain_from_url(url: str) -> str:
    """Extract the normalised domain of a URL, or ``""`` if it has none."""
    return normalize_domain(urlparse(url).hostname or "")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class WatcherStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DISABLED = "disabled"


class PriceRuleType(str, enum.Enum):
    BELOW = "below"
    ABOVE = "above"
    CHANGE = "change"


class AlertType(str, enum.Enum):
    PRICE_CHANGE = "price_change"
    BACK_IN_STOCK = "back_in_stock"
    SIZE_AVAILABLE = "size_available"


class FetchStatus(str, enum.Enum):
    UNCHANGED = "unchanged"
    FETCHED = "fetched"


class FailureKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CheckStatus(str, enum.Enum):
    CHECKED = "checked"
    UNCHANGED = "unchanged"
    NOT_ACTIVE = "not_active"
    NOT_FOUND = "not_found"
    FETCH_FAILED = "fetch_failed"
    PARSE_FAILED = "parse_failed"
    FAILED = "failed"


# ── Rules ──────────────────────────────────────────────────────────────────────


class PriceRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: PriceRuleType
    value: float | None = None
    percentage: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _threshold_required(self) -> PriceRule:
        if self.type in (PriceRuleType.BELOW, PriceRuleType.ABOVE) and self.value is None:
            raise ValueError(f"price rule '{self.type.value}' requires a value")
        return self


class RuleSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: PriceRule | None = None
    back_in_stock: bool = False
    sizes: list[str] = Field(
        default_factory=list,
        description="Size/variant labels to alert on, e.g. ['M', 'EU 42']",
    )


# ── Snapshots & alerts ────────────────────────────────────────────────────────


class ProductSnapshot(BaseModel):
    url: str
    title: str | None = None
    price: float | None = None
    currency: str | None = None
    in_stock: bool | None = None
    sizes: list[str] = Field(default_factory=list)
    image_url: str | None = None
    success: bool = True
    error: str | None = None

    @field_validator("sizes")
    @classmethod
    def _dedupe_sizes(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for label in value:
            label = label.strip()
            if label:
                seen.setdefault(label, None)
        return list(seen)

    @classmethod
    def failed(cls, url: str, error: str) -> ProductSnapshot:
        return cls(url=url, success=False, error=error)


class AlertPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_name: str
    product_url: str
    previous_value: float | str | bool | None = None
    current_value: float | str | bool | None = None
    message: str


class AlertEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    watcher_id: str
    type: AlertType
    payload: AlertPayload
    user_id: str | None = None


# ── Watchers & jobs ───────────────────────────────────────────────────────────


class Watcher(BaseModel):
    id: str
    url: str
    domain: str = ""
    rules: RuleSet = Field(default_factory=RuleSet)
    interval_seconds: int = Field(default=300, ge=60)
    status: WatcherStatus = WatcherStatus.ACTIVE
    last_check_at: datetime | None = None
    last_alert_at: datetime | None = None
    error_count: int = Field(default=0, ge=0)
    last_snapshot: ProductSnapshot | None = None
    user_id: str | None = None

    @field_validator("last_check_at", "last_alert_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _derive_domain(self) -> Watcher:
        self.domain = normalize_domain(self.domain) if self.domain else domain_from_url(self.url)
        return self


class Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    watcher_id: str
    url: str
    domain: str
    user_id: str | None = None

    @classmethod
    def for_watcher(cls, watcher: Watcher) -> Job:
        return cls(
            watcher_id=watcher.id,
            url=watcher.url,
            domain=watcher.domain,
            user_id=watcher.user_id,
        )


class CheckOutcome(BaseModel):
    """The post-check delta written back to the watcher repository."""

    success: bool
    snapshot: ProductSnapshot | None = None
    error_increment: int = Field(default=0, ge=0)
    status_transition: WatcherStatus | None = None
    alerted: bool = False
    checked_at: datetime = Field(default_factory=utcnow)


class ProcessResult(BaseModel):
    watcher_id: str
    status: CheckStatus
    alerts: list[AlertEvent] = Field(default_factory=list)
    snapshot: ProductSnapshot | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (CheckStatus.CHECKED, CheckStatus.UNCHANGED)


# ── Throttling & fetching ─────────────────────────────────────────────────────


class ThrottleEntry(BaseModel):
    last_request_at: float
    error_count: int = 0


class CacheValidator(BaseModel):
    model_config = ConfigDict(frozen=True)

    etag: str | None = None
    last_modified: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.etag is None and self.last_modified is None


class FetchResult(BaseModel):
    status: FetchStatus
    body: str | None = None
    validator: CacheValidator | None = None
    status_code: int


class FetchFailure(BaseModel):
    reason: str
    kind: FailureKind
    status_code: int | None = None
    error_class: str | None = None
