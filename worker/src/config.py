from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Scheduler
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    due_batch_limit: int = Field(default=100, ge=1)
    min_recheck_seconds: int = Field(default=60, ge=1)

    # Worker pool
    worker_concurrency: int = Field(default=5, ge=1)
    job_timeout_seconds: float = Field(default=360.0, gt=0)
    repository_timeout_seconds: float = Field(default=10.0, gt=0)

    # Throttling
    max_concurrent_fetches: int = Field(default=10, ge=1)
    throttle_base_delay_seconds: float = Field(default=5.0, ge=0)
    throttle_max_delay_seconds: float = Field(default=300.0, ge=0)
    throttle_backoff_multiplier: float = Field(default=2.0, ge=1)
    throttle_error_cap: int = Field(default=10, ge=0)
    throttle_entry_ttl_seconds: float = Field(default=3600.0, gt=0)

    # Fetching
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    user_agent: str = "ProductWatch/1.0 (Product Monitoring)"
    accept_language: str = "en-US,en;q=0.9"

    # Watchers
    max_watcher_errors: int = Field(default=5, ge=1)
    watchers_file: str | None = None

    # Logging
    log_level: str = "info"

    @model_validator(mode="after")
    def _job_timeout_covers_check(self) -> "Settings":
        # A check may wait out the longest backoff and then a full fetch.
        longest_check = (
            max(self.throttle_max_delay_seconds, self.throttle_base_delay_seconds)
            + self.fetch_timeout_seconds
        )
        if self.job_timeout_seconds <= longest_check:
            raise ValueError(
                f"job_timeout_seconds ({self.job_timeout_seconds:g}) must exceed the longest "
                f"throttle delay plus fetch_timeout_seconds ({longest_check:g})"
            )
        return self


settings = Settings()
