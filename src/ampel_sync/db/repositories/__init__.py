"""Repository pattern implementation for database access.

This module provides repository classes that encapsulate all database
access logic, providing a clean abstraction over SQLAlchemy models.
"""

from .account import AccountRepository
from .base import BaseRepository
from .bulk_merge import BulkMergeRepository
from .repository import RepositoryRepository
from .snapshot import SnapshotRepository, status_input
from .sync_job import SyncJobRepository, poll_key, token_refresh_key

__all__ = [
    "AccountRepository",
    "BaseRepository",
    "BulkMergeRepository",
    "RepositoryRepository",
    "SnapshotRepository",
    "SyncJobRepository",
    "poll_key",
    "status_input",
    "token_refresh_key",
]
