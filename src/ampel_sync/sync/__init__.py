"""Background synchronization of pull request snapshots.

Components:
- RepositoryPoller: Refreshes the open pull requests of one repository
- SyncScheduler: Durable job queue with backoff and rate limit deferral
"""

from .poller import RepositoryPoller
from .results import JobOutcome, PollResult
from .scheduler import SyncScheduler

__all__ = [
    "JobOutcome",
    "PollResult",
    "RepositoryPoller",
    "SyncScheduler",
]
