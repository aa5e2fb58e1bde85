"""Repository for PullRequestSnapshot CRUD operations."""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ampel_sync.db.models import PullRequestSnapshot, Repository
from ampel_sync.providers.schemas import CICheck, PRStatus, ProviderPullRequest, Review
from ampel_sync.status import AmpelResult, StatusEngine, StatusInput

from .base import BaseRepository

_OPEN_STATUSES = (PRStatus.OPEN, PRStatus.DRAFT)


def status_input(snapshot: PullRequestSnapshot) -> StatusInput:
    """Rebuild the status engine input from a stored snapshot."""
    return StatusInput(
        is_draft=snapshot.is_draft,
        has_conflicts=snapshot.has_conflicts,
        ci_checks=(
            None
            if snapshot.ci_checks is None
            else [CICheck.model_validate(c) for c in snapshot.ci_checks]
        ),
        reviews=(
            None
            if snapshot.reviews is None
            else [Review.model_validate(r) for r in snapshot.reviews]
        ),
        requested_reviewers=list(snapshot.requested_reviewers or []),
    )


class SnapshotRepository(BaseRepository[PullRequestSnapshot]):
    """Repository for pull request snapshots.

    Every write goes through ``apply_status`` so the cached ampel status
    and blockers always match the stored PR state.
    """

    def __init__(
        self,
        session: AsyncSession,
        engine: StatusEngine | None = None,
    ) -> None:
        super().__init__(session, PullRequestSnapshot)
        self._engine = engine or StatusEngine()

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    async def get_by_number(self, repository_id: int, number: int) -> PullRequestSnapshot | None:
        stmt = select(PullRequestSnapshot).where(
            PullRequestSnapshot.repository_id == repository_id,
            PullRequestSnapshot.number == number,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, snapshot_ids: list[int]) -> dict[int, PullRequestSnapshot]:
        """Snapshots by ID, with their repositories loaded."""
        stmt = (
            select(PullRequestSnapshot)
            .where(PullRequestSnapshot.id.in_(snapshot_ids))
            .options(selectinload(PullRequestSnapshot.repository))
        )
        result = await self._session.execute(stmt)
        return {s.id: s for s in result.scalars().all()}

    async def list_open(self, repository_id: int) -> list[PullRequestSnapshot]:
        stmt = select(PullRequestSnapshot).where(
            PullRequestSnapshot.repository_id == repository_id,
            PullRequestSnapshot.status.in_(_OPEN_STATUSES),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_owner(
        self, owner_id: str, *, include_closed: bool = False
    ) -> list[PullRequestSnapshot]:
        """Dashboard rows: the owner's snapshots with repositories loaded."""
        stmt = (
            select(PullRequestSnapshot)
            .join(Repository)
            .where(Repository.owner_id == owner_id)
            .options(selectinload(PullRequestSnapshot.repository))
            .order_by(Repository.full_name, PullRequestSnapshot.number)
        )
        if not include_closed:
            stmt = stmt.where(PullRequestSnapshot.status.in_(_OPEN_STATUSES))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Write Methods
    # -------------------------------------------------------------------------
    def apply_status(self, snapshot: PullRequestSnapshot) -> AmpelResult:
        """Recompute and store the derived status."""
        result = self._engine.compute(status_input(snapshot))
        snapshot.ampel_status = result.color
        snapshot.blockers = [b.value for b in result.blockers]
        return result

    async def write(
        self,
        repository_id: int,
        pr: ProviderPullRequest,
        ci_checks: list[CICheck] | None,
        reviews: list[Review] | None,
        synced_at: datetime,
    ) -> PullRequestSnapshot:
        """Rewrite a snapshot wholesale from freshly fetched data.

        Args:
            repository_id: Owning repository
            pr: Normalized pull request
            ci_checks: CI checks, or None if they could not be fetched
            reviews: Reviews, or None if they could not be fetched
            synced_at: Time of the sync

        Returns:
            The created or updated snapshot
        """
        snapshot = await self.get_by_number(repository_id, pr.number)
        if snapshot is None:
            snapshot = PullRequestSnapshot(repository_id=repository_id, number=pr.number)
            self.add(snapshot)

        snapshot.title = pr.title
        snapshot.author = pr.author
        snapshot.source_branch = pr.source_branch
        snapshot.target_branch = pr.target_branch
        snapshot.status = pr.status
        snapshot.is_draft = pr.is_draft
        snapshot.has_conflicts = pr.has_conflicts
        snapshot.head_sha = pr.head_sha
        snapshot.url = pr.url
        snapshot.requested_reviewers = list(pr.requested_reviewers)
        snapshot.ci_checks = _dump_all(ci_checks)
        snapshot.reviews = _dump_all(reviews)
        snapshot.pr_updated_at = pr.updated_at
        snapshot.synced_at = synced_at
        self.apply_status(snapshot)

        await self.flush()
        return snapshot

    async def set_pr_status(self, snapshot: PullRequestSnapshot, status: PRStatus) -> None:
        """Record a lifecycle change (e.g. merged by a bulk merge)."""
        snapshot.status = status
        if status is not PRStatus.DRAFT:
            snapshot.is_draft = False
        self.apply_status(snapshot)
        await self.flush()


def _dump_all(items: list[CICheck] | list[Review] | None) -> list[dict[str, Any]] | None:
    if items is None:
        return None
    return [item.model_dump(mode="json") for item in items]
