"""SQLAlchemy ORM models for Ampel sync."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from ampel_sync.providers.schemas import MergeStrategy, PRStatus, ProviderKind
from ampel_sync.status import AmpelStatus

from .types import UTCDateTime


def utc_now() -> datetime:
    return datetime.now(UTC)


def _enum(enum_class: type[Enum]) -> SAEnum:
    """Store enums by value in a plain VARCHAR column."""
    return SAEnum(
        enum_class,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ValidationStatus(str, Enum):
    """Credential validation state of a provider account (wire-stable)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"  # rejected by the provider; polling suspended
    EXPIRED = "expired"  # past token_expires_at


class SyncJobKind(str, Enum):
    POLL = "poll"
    TOKEN_REFRESH = "token_refresh"


class SyncJobStatus(str, Enum):
    """Lifecycle of a sync job.

    PENDING covers both "due" and "retrying": a retry is a pending job
    whose backoff_until lies in the future.
    """

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)


class BulkMergeStatus(str, Enum):
    """Overall status of a bulk merge operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class BulkMergeItemStatus(str, Enum):
    """Status of one pull request inside a bulk merge."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ------------------------------------------------------------------------------
# ProviderAccount model
# ------------------------------------------------------------------------------
class ProviderAccount(Base):
    """A credential for one provider (instance), owned by a user.

    ``instance_url`` is the empty string for the provider's public cloud
    so that it takes part in unique constraints (NULLs never collide).
    """

    __tablename__ = "provider_accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    provider: Mapped[ProviderKind] = mapped_column(_enum(ProviderKind))
    instance_url: Mapped[str] = mapped_column(String(500), default="")
    label: Mapped[str] = mapped_column(String(100))

    # Identity reported by the provider
    remote_user_id: Mapped[str] = mapped_column(String(100))
    username: Mapped[str] = mapped_column(String(200))

    # Credential material
    encrypted_token: Mapped[bytes] = mapped_column(LargeBinary)
    auth_username: Mapped[str | None] = mapped_column(String(200), nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSON, default=list)
    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Validation
    last_validated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    validation_status: Mapped[ValidationStatus] = mapped_column(
        _enum(ValidationStatus), default=ValidationStatus.PENDING
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    repositories: Mapped[list["Repository"]] = relationship(
        back_populates="account", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "provider", "instance_url", "label", name="uq_account_label"),
        UniqueConstraint(
            "owner_id", "provider", "instance_url", "remote_user_id", name="uq_account_remote_user"
        ),
        # At most one default per (owner, provider, instance)
        Index(
            "uq_account_default",
            "owner_id",
            "provider",
            "instance_url",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    def __repr__(self) -> str:
        return f"<ProviderAccount(id={self.id}, provider='{self.provider}', label='{self.label}')>"

    @property
    def can_sync(self) -> bool:
        """Whether background polling may use this account."""
        return self.is_active and self.validation_status == ValidationStatus.VALID


# ------------------------------------------------------------------------------
# Repository model
# ------------------------------------------------------------------------------
class Repository(Base):
    """Tracked repository, polled through its owning account."""

    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(primary_key=True)
    # Nulled when the account is removed; history is kept
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("provider_accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    provider: Mapped[ProviderKind] = mapped_column(_enum(ProviderKind))
    instance_url: Mapped[str] = mapped_column(String(500), default="")

    owner: Mapped[str] = mapped_column(String(200))  # org, group path or workspace
    name: Mapped[str] = mapped_column(String(200))
    full_name: Mapped[str] = mapped_column(String(400))
    remote_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    default_branch: Mapped[str | None] = mapped_column(String(200), nullable=True)
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    account: Mapped[ProviderAccount | None] = relationship(back_populates="repositories")
    snapshots: Mapped[list["PullRequestSnapshot"]] = relationship(
        back_populates="repository",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "provider", "instance_url", "full_name", name="uq_repository_full_name"
        ),
    )

    def __repr__(self) -> str:
        return f"<Repository(id={self.id}, full_name='{self.full_name}')>"


# ------------------------------------------------------------------------------
# PullRequestSnapshot model
# ------------------------------------------------------------------------------
class PullRequestSnapshot(Base):
    """Cached state of one remote pull request plus its derived status.

    ``ci_checks`` / ``reviews`` are None when the last sync could not
    fetch them ("unknown"), and a list (possibly empty) otherwise.
    """

    __tablename__ = "pull_request_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[int] = mapped_column(ForeignKey("repositories.id", ondelete="CASCADE"))
    number: Mapped[int] = mapped_column()

    title: Mapped[str] = mapped_column(String(500))
    author: Mapped[str] = mapped_column(String(200))
    source_branch: Mapped[str] = mapped_column(String(300))
    target_branch: Mapped[str] = mapped_column(String(300))
    status: Mapped[PRStatus] = mapped_column(_enum(PRStatus), default=PRStatus.OPEN)
    is_draft: Mapped[bool] = mapped_column(Boolean, default=False)
    has_conflicts: Mapped[bool] = mapped_column(Boolean, default=False)
    head_sha: Mapped[str | None] = mapped_column(String(64), nullable=True)
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    requested_reviewers: Mapped[list[str]] = mapped_column(JSON, default=list)
    ci_checks: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)  # [{name, status, url}]
    reviews: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)  # [{reviewer, state, submitted_at}]

    # Derived by the status engine on every write
    ampel_status: Mapped[AmpelStatus] = mapped_column(_enum(AmpelStatus))
    blockers: Mapped[list[str]] = mapped_column(JSON, default=list)

    pr_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    repository: Mapped[Repository] = relationship(back_populates="snapshots")

    __table_args__ = (UniqueConstraint("repository_id", "number", name="uq_snapshot_repo_number"),)

    def __repr__(self) -> str:
        return f"<PullRequestSnapshot(id={self.id}, repo={self.repository_id}, number={self.number})>"

    @property
    def is_open(self) -> bool:
        """Open or draft (drafts are open PRs on every provider)."""
        return self.status in (PRStatus.OPEN, PRStatus.DRAFT)


# ------------------------------------------------------------------------------
# SyncJob model
# ------------------------------------------------------------------------------
class SyncJob(Base):
    """One scheduled unit of background work.

    ``dedup_key`` is unique and only set while the job is pending or
    running, so the database refuses a second non-terminal job for the
    same repository (or account, for token refresh).
    """

    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[SyncJobKind] = mapped_column(_enum(SyncJobKind))
    repository_id: Mapped[int | None] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), nullable=True, index=True
    )
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("provider_accounts.id", ondelete="CASCADE"), nullable=True, index=True
    )
    status: Mapped[SyncJobStatus] = mapped_column(
        _enum(SyncJobStatus), default=SyncJobStatus.PENDING, index=True
    )
    dedup_key: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)

    attempts: Mapped[int] = mapped_column(default=0)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    backoff_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncJob(id={self.id}, kind='{self.kind.value}', status='{self.status.value}')>"

    @property
    def due_at(self) -> datetime:
        """Earliest time the job may run."""
        if self.backoff_until is not None and self.backoff_until > self.scheduled_at:
            return self.backoff_until
        return self.scheduled_at


# ------------------------------------------------------------------------------
# Bulk merge models
# ------------------------------------------------------------------------------
class BulkMergeOperation(Base):
    """A batch of pull requests merged together."""

    __tablename__ = "bulk_merge_operations"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    strategy: Mapped[MergeStrategy] = mapped_column(_enum(MergeStrategy))
    delete_branch: Mapped[bool] = mapped_column(Boolean, default=False)
    force: Mapped[bool] = mapped_column(Boolean, default=False)
    delay_seconds: Mapped[float] = mapped_column(default=0.0)
    status: Mapped[BulkMergeStatus] = mapped_column(
        _enum(BulkMergeStatus), default=BulkMergeStatus.PENDING
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    items: Mapped[list["BulkMergeItem"]] = relationship(
        back_populates="operation",
        cascade="all, delete-orphan",
        order_by="BulkMergeItem.position",
    )

    def __repr__(self) -> str:
        return f"<BulkMergeOperation(id={self.id}, status='{self.status.value}')>"


class BulkMergeItem(Base):
    """One pull request inside a bulk merge operation."""

    __tablename__ = "bulk_merge_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    operation_id: Mapped[int] = mapped_column(
        ForeignKey("bulk_merge_operations.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column()
    snapshot_id: Mapped[int | None] = mapped_column(
        ForeignKey("pull_request_snapshots.id", ondelete="SET NULL"), nullable=True
    )
    repository_id: Mapped[int | None] = mapped_column(
        ForeignKey("repositories.id", ondelete="SET NULL"), nullable=True
    )
    pr_number: Mapped[int] = mapped_column()

    status: Mapped[BulkMergeItemStatus] = mapped_column(
        _enum(BulkMergeItemStatus), default=BulkMergeItemStatus.PENDING
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    merge_sha: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    operation: Mapped[BulkMergeOperation] = relationship(back_populates="items")

    __table_args__ = (UniqueConstraint("operation_id", "position", name="uq_bulk_item_position"),)

    def __repr__(self) -> str:
        return f"<BulkMergeItem(id={self.id}, pr={self.pr_number}, status='{self.status.value}')>"
