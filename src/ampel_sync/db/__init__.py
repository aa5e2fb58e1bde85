"""Database module for Ampel sync."""

from ampel_sync.db.engine import (
    SessionProvider,
    create_tables,
    dispose_engine,
    enable_sqlite_foreign_keys,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from ampel_sync.db.models import (
    Base,
    BulkMergeItem,
    BulkMergeItemStatus,
    BulkMergeOperation,
    BulkMergeStatus,
    ProviderAccount,
    PullRequestSnapshot,
    Repository,
    SyncJob,
    SyncJobKind,
    SyncJobStatus,
    ValidationStatus,
)
from ampel_sync.db.repositories import (
    AccountRepository,
    BaseRepository,
    BulkMergeRepository,
    RepositoryRepository,
    SnapshotRepository,
    SyncJobRepository,
)

__all__ = [
    # Models
    "Base",
    "BulkMergeItem",
    "BulkMergeItemStatus",
    "BulkMergeOperation",
    "BulkMergeStatus",
    "ProviderAccount",
    "PullRequestSnapshot",
    "Repository",
    "SyncJob",
    "SyncJobKind",
    "SyncJobStatus",
    "ValidationStatus",
    # Engine
    "SessionProvider",
    "create_tables",
    "dispose_engine",
    "enable_sqlite_foreign_keys",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    # Repositories
    "AccountRepository",
    "BaseRepository",
    "BulkMergeRepository",
    "RepositoryRepository",
    "SnapshotRepository",
    "SyncJobRepository",
]
