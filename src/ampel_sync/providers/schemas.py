"""Normalized provider data shared by all adapters.

Every adapter translates its provider's payloads into these models, so
the scheduler, status engine and bulk merge code never see a
provider-specific shape.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ProviderKind(StrEnum):
    """Supported Git hosting providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"


class PRStatus(StrEnum):
    """Canonical pull request status (wire-stable)."""

    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    DRAFT = "draft"


class DiffFileStatus(StrEnum):
    """Canonical diff file status (wire-stable)."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class CIStatus(StrEnum):
    """Canonical CI check status."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    NEUTRAL = "neutral"

    @property
    def is_pending(self) -> bool:
        """Whether the check has not finished yet."""
        return self in (CIStatus.QUEUED, CIStatus.IN_PROGRESS)


class ReviewState(StrEnum):
    """Canonical review state."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    DISMISSED = "dismissed"
    PENDING = "pending"


class MergeStrategy(StrEnum):
    """How a pull request is merged."""

    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


# ------------------------------------------------------------------------------
# Credentials & pagination
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Credentials:
    """Decrypted credential material for one provider account."""

    token: str = field(repr=False)
    username: str | None = None


@dataclass
class Page(Generic[T]):
    """One page of a provider list endpoint.

    ``next_cursor`` is opaque to callers: a page number for GitHub and
    GitLab, the full ``next`` URL for Bitbucket.
    """

    items: list[T]
    has_more: bool = False
    next_cursor: str | None = None
    unmapped: dict[int, str] = field(default_factory=dict)
    """Items left out because a native value had no mapping, keyed by number."""


# ------------------------------------------------------------------------------
# Normalized payloads
# ------------------------------------------------------------------------------
class ProviderModel(BaseModel):
    """Base for normalized provider payloads."""

    model_config = ConfigDict(frozen=True)


class CredentialValidation(ProviderModel):
    """Outcome of validating a credential against the provider."""

    is_valid: bool
    remote_user_id: str | None = None
    username: str | None = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    error_message: str | None = None


class ProviderUser(ProviderModel):
    """The user a credential authenticates as."""

    remote_id: str
    username: str
    email: str | None = None
    avatar_url: str | None = None


class ProviderRepository(ProviderModel):
    """A repository visible to an account."""

    remote_id: str
    owner: str
    name: str
    full_name: str
    default_branch: str | None = None
    is_private: bool = False
    is_archived: bool = False
    url: str | None = None


class ProviderPullRequest(ProviderModel):
    """A pull/merge request in canonical form."""

    number: int
    title: str
    author: str
    source_branch: str
    target_branch: str
    status: PRStatus
    is_draft: bool = False
    has_conflicts: bool = False
    head_sha: str | None = None
    url: str | None = None
    requested_reviewers: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None


class CICheck(ProviderModel):
    """One CI check, pipeline or commit status."""

    name: str
    status: CIStatus
    url: str | None = None


class Review(ProviderModel):
    """One review (or approval) left on a pull request."""

    reviewer: str
    state: ReviewState
    submitted_at: datetime | None = None


class DiffFile(ProviderModel):
    """A changed file.

    ``patch`` is None when the provider did not return patch text, which
    is always the case for Bitbucket's diffstat endpoint and for binary or
    oversized files elsewhere.
    """

    filename: str
    previous_filename: str | None = None
    status: DiffFileStatus
    additions: int = 0
    deletions: int = 0
    patch: str | None = None


class PullRequestDiff(ProviderModel):
    """All changed files of a pull request with totals."""

    files: list[DiffFile]

    @property
    def total_additions(self) -> int:
        return sum(f.additions for f in self.files)

    @property
    def total_deletions(self) -> int:
        return sum(f.deletions for f in self.files)


class MergeResult(ProviderModel):
    """Provider answer to a merge request."""

    merged: bool
    sha: str | None = None
    message: str = ""


class RateLimitInfo(ProviderModel):
    """Current quota for a credential."""

    limit: int
    remaining: int
    reset_at: datetime
