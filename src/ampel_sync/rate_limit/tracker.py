"""Per-account rate limit tracking.

Each provider account has its own budget. The tracker keeps one
observation per account, updated passively from the headers of every
adapter response, and answers whether new background work for that
account should wait.

Key Features:
- Passive tracking from response headers (zero API cost)
- Reserve buffer as a share of each account's limit
- Explicit deferral after a 429
- Injectable clock for deterministic tests
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from ampel_sync.config import RateLimitConfig, get_settings
from ampel_sync.logging import get_logger

from .schemas import AccountRateLimit, HeaderObservation, RateLimitState

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RateLimitTracker:
    """Tracks provider rate limits separately for every account.

    State lives in a dict keyed by account ID; no counter is shared
    between accounts. All methods are synchronous, so updates from
    concurrent coroutines on one event loop never interleave.

    Usage:
        tracker = RateLimitTracker()
        tracker.record(account_id=1, remaining=0, limit=5000, reset_at=reset)

        if tracker.should_throttle(1):
            await asyncio.sleep(tracker.wait_duration(1).total_seconds())
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        """Initialize the tracker.

        Args:
            config: Rate limit configuration (uses settings if not provided)
            clock: Callable returning the current UTC time
        """
        self._config = config or get_settings().rate_limit
        self._clock = clock
        self._accounts: dict[int, AccountRateLimit] = {}

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------
    def record(
        self,
        account_id: int,
        remaining: int,
        limit: int,
        reset_at: datetime,
    ) -> AccountRateLimit:
        """Record a rate limit observation for an account.

        Args:
            account_id: ProviderAccount ID
            remaining: Requests remaining in the window
            limit: Window size
            reset_at: When the window resets

        Returns:
            The stored observation
        """
        previous = self.state(account_id)
        observation = AccountRateLimit(
            account_id=account_id,
            limit=max(0, limit),
            remaining=max(0, remaining),
            reset_at=reset_at,
            observed_at=self._clock(),
        )
        self._accounts[account_id] = observation

        current = self.state(account_id)
        if current is RateLimitState.THROTTLED and previous is not RateLimitState.THROTTLED:
            logger.warning(
                "Account {} throttled: {}/{} remaining until {}",
                account_id,
                observation.remaining,
                observation.limit,
                observation.reset_at.isoformat(),
            )
        return observation

    def record_headers(
        self,
        account_id: int,
        headers: Mapping[str, str],
        default_limit: int | None = None,
    ) -> AccountRateLimit | None:
        """Record an observation from response headers.

        Args:
            account_id: ProviderAccount ID
            headers: HTTP response headers
            default_limit: Limit to assume if the provider sent only "remaining"

        Returns:
            The stored observation, or None if the headers carried no quota
        """
        now = self._clock()
        parsed = HeaderObservation.from_headers(headers, now=now)
        if parsed.remaining is None:
            return None

        limit = parsed.limit if parsed.limit is not None else default_limit
        if limit is None:
            return None

        reset_at = parsed.reset_at or now + timedelta(hours=1)
        return self.record(account_id, parsed.remaining, limit, reset_at)

    def mark_rate_limited(self, account_id: int, until: datetime) -> AccountRateLimit:
        """Force an account into THROTTLED until the given time (after a 429)."""
        existing = self._accounts.get(account_id)
        limit = existing.limit if existing else 0
        return self.record(account_id, remaining=0, limit=limit, reset_at=until)

    def forget(self, account_id: int) -> None:
        """Drop all state for an account (e.g. after it is removed)."""
        self._accounts.pop(account_id, None)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    def get(self, account_id: int) -> AccountRateLimit | None:
        """Get the latest observation for an account."""
        return self._accounts.get(account_id)

    def reserve_for(self, limit: int) -> int:
        """Requests held back from background work for a given limit."""
        return math.floor(limit * self._config.reserve_buffer_pct / 100)

    def state(self, account_id: int) -> RateLimitState:
        """Current tracking state of an account."""
        observation = self._accounts.get(account_id)
        if observation is None:
            return RateLimitState.UNKNOWN

        if observation.reset_at <= self._clock():
            return RateLimitState.TRACKED
        if observation.remaining <= self.reserve_for(observation.limit):
            return RateLimitState.THROTTLED
        return RateLimitState.TRACKED

    def should_throttle(self, account_id: int) -> bool:
        """Whether new work for the account should wait."""
        return self.state(account_id) is RateLimitState.THROTTLED

    def wait_duration(self, account_id: int) -> timedelta:
        """How long new work for the account should wait (zero if not throttled)."""
        if not self.should_throttle(account_id):
            return timedelta(0)
        observation = self._accounts[account_id]
        return timedelta(seconds=observation.seconds_until_reset(self._clock()))

    def to_dict(self) -> dict[str, Any]:
        """Export current state as dictionary (for logging/CLI output)."""
        now = self._clock()
        return {
            str(account_id): {
                "limit": obs.limit,
                "remaining": obs.remaining,
                "remaining_percent": round(obs.remaining_percent, 2),
                "reset_at": obs.reset_at.isoformat(),
                "seconds_until_reset": round(obs.seconds_until_reset(now), 1),
                "state": self.state(account_id).value,
            }
            for account_id, obs in self._accounts.items()
        }
