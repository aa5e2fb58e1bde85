"""Pydantic schemas for per-account rate limit data.

Rate limit state is read from response headers:
- GitHub: x-ratelimit-limit / x-ratelimit-remaining / x-ratelimit-reset
- GitLab: ratelimit-limit / ratelimit-remaining / ratelimit-reset
- Bitbucket: x-ratelimit-limit / x-ratelimit-remaining (reset rarely sent)
- Any provider: retry-after on 429
"""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, computed_field


class RateLimitState(StrEnum):
    """Per-account tracking state.

    UNKNOWN -> TRACKED on the first observation; TRACKED -> THROTTLED when
    remaining falls to the reserve buffer while the reset time is in the
    future; THROTTLED -> TRACKED once the reset time has passed.
    """

    UNKNOWN = "unknown"
    TRACKED = "tracked"
    THROTTLED = "throttled"


class AccountRateLimit(BaseModel):
    """Rate limit window observed for one provider account."""

    account_id: int = Field(description="ProviderAccount the budget belongs to")
    limit: int = Field(ge=0, description="Requests allowed per window")
    remaining: int = Field(ge=0, description="Requests remaining in current window")
    reset_at: datetime = Field(description="UTC datetime when the window resets")
    observed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When this observation was recorded",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining_percent(self) -> float:
        """Percentage of the limit remaining (0.0 to 100.0)."""
        if self.limit == 0:
            return 0.0
        return (self.remaining / self.limit) * 100

    def seconds_until_reset(self, now: datetime | None = None) -> float:
        """Seconds until the window resets (0 if already past)."""
        delta = self.reset_at - (now or datetime.now(UTC))
        return max(0.0, delta.total_seconds())


class HeaderObservation(BaseModel):
    """Rate limit values parsed from one HTTP response."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None
    retry_after: float | None = None

    @property
    def has_quota(self) -> bool:
        """Whether both limit and remaining were present."""
        return self.limit is not None and self.remaining is not None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> Self:
        """Parse rate limit headers from any supported provider.

        Args:
            headers: Response headers (any casing)
            now: Reference time for relative values

        Returns:
            HeaderObservation with whatever fields were present
        """
        now = now or datetime.now(UTC)
        lowered = {k.lower(): v for k, v in headers.items()}

        def first(*names: str) -> str | None:
            for name in names:
                if name in lowered:
                    return lowered[name]
            return None

        limit = _to_int(first("x-ratelimit-limit", "ratelimit-limit"))
        remaining = _to_int(first("x-ratelimit-remaining", "ratelimit-remaining"))

        reset_at: datetime | None = None
        reset_raw = _to_int(first("x-ratelimit-reset", "ratelimit-reset"))
        if reset_raw is not None:
            # Epoch seconds; small values are a relative delta
            if reset_raw > 10**9:
                reset_at = datetime.fromtimestamp(reset_raw, tz=UTC)
            else:
                reset_at = now + timedelta(seconds=reset_raw)

        retry_after: float | None = None
        retry_raw = first("retry-after")
        if retry_raw is not None:
            try:
                retry_after = max(0.0, float(retry_raw))
            except ValueError:
                retry_after = None

        return cls(limit=limit, remaining=remaining, reset_at=reset_at, retry_after=retry_after)


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None
