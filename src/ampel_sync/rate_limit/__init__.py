"""Per-account rate limit tracking for provider APIs."""

from .schemas import AccountRateLimit, HeaderObservation, RateLimitState
from .tracker import RateLimitTracker

__all__ = [
    "AccountRateLimit",
    "HeaderObservation",
    "RateLimitState",
    "RateLimitTracker",
]
