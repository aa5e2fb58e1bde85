"""Dashboard view: every open pull request of a user with its ampel status."""

from datetime import datetime
from typing import Any

from pydantic import Field

from ampel_sync.db.models import PullRequestSnapshot
from ampel_sync.providers.schemas import PRStatus, ProviderKind
from ampel_sync.status import AmpelStatus

from .base import SchemaBase


class DashboardRow(SchemaBase):
    """One pull request snapshot, flattened with its repository."""

    snapshot_id: int
    repository_id: int
    provider: ProviderKind
    repository: str
    number: int
    title: str
    author: str
    source_branch: str
    target_branch: str
    status: PRStatus
    is_draft: bool
    url: str | None
    ampel_status: AmpelStatus
    blockers: list[str]
    ci_checks: list[dict[str, Any]] | None = Field(description="None when CI is unknown")
    reviews: list[dict[str, Any]] | None = Field(description="None when reviews are unknown")
    pr_updated_at: datetime | None
    synced_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: PullRequestSnapshot) -> "DashboardRow":
        """Build a row; the snapshot's repository must be loaded."""
        repo = snapshot.repository
        return cls(
            snapshot_id=snapshot.id,
            repository_id=repo.id,
            provider=repo.provider,
            repository=repo.full_name,
            number=snapshot.number,
            title=snapshot.title,
            author=snapshot.author,
            source_branch=snapshot.source_branch,
            target_branch=snapshot.target_branch,
            status=snapshot.status,
            is_draft=snapshot.is_draft,
            url=snapshot.url,
            ampel_status=snapshot.ampel_status,
            blockers=list(snapshot.blockers or []),
            ci_checks=snapshot.ci_checks,
            reviews=snapshot.reviews,
            pr_updated_at=snapshot.pr_updated_at,
            synced_at=snapshot.synced_at,
        )


class DashboardSnapshot(SchemaBase):
    """The whole dashboard of one user."""

    owner_id: str
    generated_at: datetime
    pull_requests: list[DashboardRow] = Field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        """Number of pull requests per ampel color."""
        counts = {color.value: 0 for color in AmpelStatus}
        for row in self.pull_requests:
            counts[row.ampel_status.value] += 1
        return counts

    def by_status(self, color: AmpelStatus) -> list[DashboardRow]:
        return [row for row in self.pull_requests if row.ampel_status is color]
