"""Configuration settings for Ampel sync."""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitConfig(BaseModel):
    """Configuration for per-account rate limit tracking.

    The reserve buffer is the share of an account's quota kept back from
    background work; once remaining requests fall to it the account is
    throttled until its window resets.
    """

    reserve_buffer_pct: float = Field(
        default=5.0,
        ge=0.0,
        le=50.0,
        description="% of the limit held in reserve before throttling",
    )

    # Providers that do not send rate limit headers
    gitlab_default_limit: int = Field(
        default=2000,
        ge=1,
        description="Assumed requests/hour for GitLab when no headers are sent",
    )
    bitbucket_default_limit: int = Field(
        default=1000,
        ge=1,
        description="Assumed requests/hour for Bitbucket when no headers are sent",
    )


class SyncConfig(BaseModel):
    """Configuration for the background sync scheduler.

    Controls poll cadence, retry backoff and the global concurrency cap
    shared with bulk merge execution.
    """

    poll_interval_seconds: int = Field(
        default=300,
        ge=10,
        description="Delay between successful polls of one repository",
    )
    scheduler_tick_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="How often the scheduler loop looks for due jobs",
    )

    # Backoff for ProviderUnavailable / Timeout
    backoff_base_seconds: int = Field(
        default=30,
        ge=1,
        description="Delay after the first retryable failure",
    )
    backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied per further failure",
    )
    backoff_cap_seconds: int = Field(
        default=1800,
        ge=1,
        description="Upper bound for a single backoff delay (30 minutes)",
    )
    max_attempts: int = Field(
        default=8,
        ge=1,
        description="Retryable failures allowed before a job is marked failed",
    )

    # Concurrency & timeouts
    max_concurrent_jobs: int = Field(
        default=8,
        ge=1,
        le=100,
        description="Global cap on in-flight sync jobs and merges",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout applied to every outbound provider call",
    )
    page_size: int = Field(
        default=50,
        ge=1,
        le=100,
        description="Items requested per page from provider list endpoints",
    )

    token_refresh_lead_hours: int = Field(
        default=24,
        ge=0,
        description="Hours before token expiry at which the refresh job runs",
    )

    @property
    def poll_interval(self) -> timedelta:
        """Get the poll interval as a timedelta."""
        return timedelta(seconds=self.poll_interval_seconds)

    @property
    def token_refresh_lead(self) -> timedelta:
        """Get the token refresh lead time as a timedelta."""
        return timedelta(hours=self.token_refresh_lead_hours)


class StatusConfig(BaseModel):
    """Configuration for traffic-light status derivation."""

    required_approvals: int = Field(
        default=1,
        ge=0,
        description="Approvals needed before a PR stops waiting for review",
    )
    require_review_by_default: bool = Field(
        default=True,
        description=(
            "If True, PRs without requested reviewers still need approvals; "
            "if False they can be green with zero reviews"
        ),
    )


class BulkMergeConfig(BaseModel):
    """Configuration for bulk merge operations."""

    max_items: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum pull requests per bulk merge operation",
    )
    default_strategy: Literal["merge", "squash", "rebase"] = Field(
        default="squash",
        description="Merge strategy used when the request does not name one",
    )
    delete_branch_default: bool = Field(
        default=False,
        description="Delete source branches after merge unless told otherwise",
    )
    merge_delay_seconds: float = Field(
        default=0.0,
        ge=0.0,
        le=600.0,
        description="Pause between merges in the same repository",
    )


class LoggingConfig(BaseModel):
    """Optional file sink next to the stderr console output."""

    log_file: str | None = Field(
        default=None,
        description="Write DEBUG logs to this file as well (e.g. ~/.ampel/ampel.log)",
    )
    rotation: str = Field(
        default="10 MB",
        description="loguru rotation rule for the log file",
    )
    retention: str = Field(
        default="7 days",
        description="How long rotated log files are kept",
    )
    serialize: bool = Field(
        default=False,
        description="Write the log file as JSON lines",
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AMPEL_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # --------------------------------------------------------------------------
    # Database
    # --------------------------------------------------------------------------
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ampel.db",
        description="Async database connection string",
    )

    # --------------------------------------------------------------------------
    # Credential encryption
    # --------------------------------------------------------------------------
    encryption_key: str = Field(
        default="",
        description="Base64-encoded 32-byte AES-256-GCM key for stored tokens",
    )

    # --------------------------------------------------------------------------
    # Application
    # --------------------------------------------------------------------------
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Console log level (overridden by --verbose/--quiet)",
    )

    # --------------------------------------------------------------------------
    # Rate Limiting
    # --------------------------------------------------------------------------
    rate_limit: RateLimitConfig = Field(
        default_factory=RateLimitConfig,
        description="Per-account rate limit tracking configuration",
    )

    # --------------------------------------------------------------------------
    # Sync, Status & Bulk Merge
    # --------------------------------------------------------------------------
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Background sync scheduler configuration",
    )
    status: StatusConfig = Field(
        default_factory=StatusConfig,
        description="Traffic-light status configuration",
    )
    bulk_merge: BulkMergeConfig = Field(
        default_factory=BulkMergeConfig,
        description="Bulk merge configuration",
    )

    # --------------------------------------------------------------------------
    # Log file
    # --------------------------------------------------------------------------
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Log file settings",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
