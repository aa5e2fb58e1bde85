"""Repository for SyncJob queue operations."""

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ampel_sync.db.models import Repository, SyncJob, SyncJobKind, SyncJobStatus

from .base import BaseRepository


def poll_key(repository_id: int) -> str:
    return f"repo:{repository_id}"


def token_refresh_key(account_id: int) -> str:
    return f"account:{account_id}"


class SyncJobRepository(BaseRepository[SyncJob]):
    """Durable job queue on top of the sync_jobs table.

    Manages the job lifecycle:
    - Enqueueing with de-duplication on ``dedup_key``
    - Claiming due jobs
    - Rescheduling (deferral and backoff) and finishing
    - Bulk cancellation and restart recovery
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, SyncJob)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    async def get_active(self, dedup_key: str) -> SyncJob | None:
        """The pending or running job holding a key, if any."""
        return await self._first_where(SyncJob.dedup_key == dedup_key)

    async def list_due(self, now: datetime, limit: int) -> list[SyncJob]:
        """Pending jobs whose scheduled time and backoff have passed."""
        stmt = (
            select(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.PENDING,
                SyncJob.scheduled_at <= now,
                or_(SyncJob.backoff_until.is_(None), SyncJob.backoff_until <= now),
            )
            .order_by(SyncJob.scheduled_at, SyncJob.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(
        self, status: SyncJobStatus | None = None, limit: int = 50
    ) -> list[SyncJob]:
        stmt = select(SyncJob).order_by(SyncJob.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(SyncJob.status == status)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Lifecycle Methods
    # -------------------------------------------------------------------------
    async def enqueue(
        self,
        kind: SyncJobKind,
        dedup_key: str,
        scheduled_at: datetime,
        *,
        repository_id: int | None = None,
        account_id: int | None = None,
    ) -> tuple[SyncJob, bool]:
        """Create a pending job unless one is already active for the key.

        The unique index on ``dedup_key`` is the final arbiter; a lost race
        returns the winner's job.

        Returns:
            Tuple of (job, created)
        """
        existing = await self.get_active(dedup_key)
        if existing is not None:
            return existing, False

        job = SyncJob(
            kind=kind,
            dedup_key=dedup_key,
            scheduled_at=scheduled_at,
            repository_id=repository_id,
            account_id=account_id,
            status=SyncJobStatus.PENDING,
            attempts=0,
        )
        try:
            async with self._session.begin_nested():
                self.add(job)
                await self.flush()
        except IntegrityError:
            winner = await self.get_active(dedup_key)
            if winner is None:
                raise
            return winner, False
        return job, True

    async def claim(self, job_id: int, now: datetime) -> SyncJob | None:
        """Move a pending job to running; None if someone else got it first."""
        result = await self._session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PENDING)
            .values(status=SyncJobStatus.RUNNING, started_at=now)
        )
        if not result.rowcount:
            return None
        job = await self.get_by_id(job_id)
        if job is not None:
            await self._session.refresh(job)
        return job

    async def reschedule(
        self,
        job: SyncJob,
        at: datetime,
        *,
        error: str | None = None,
        consume_attempt: bool,
    ) -> SyncJob:
        """Return a job to pending, due again at ``at``.

        Rate limit deferrals pass ``consume_attempt=False``.
        """
        job.status = SyncJobStatus.PENDING
        job.backoff_until = at
        job.last_error = error
        if consume_attempt:
            job.attempts += 1
        await self.flush()
        return job

    async def finish(
        self,
        job: SyncJob,
        status: SyncJobStatus,
        now: datetime,
        *,
        error: str | None = None,
        consume_attempt: bool = False,
    ) -> SyncJob:
        """Move a job to a terminal state and release its dedup key."""
        job.status = status
        job.dedup_key = None
        job.finished_at = now
        job.last_error = error
        if consume_attempt:
            job.attempts += 1
        await self.flush()
        return job

    async def cancel_for_account(self, account_id: int, now: datetime) -> int:
        """Cancel pending jobs of an account and of its repositories.

        Running jobs are left alone; they finish on their own.

        Returns:
            Number of jobs cancelled
        """
        repo_ids = select(Repository.id).where(Repository.account_id == account_id)
        result = await self._session.execute(
            update(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.PENDING,
                or_(SyncJob.account_id == account_id, SyncJob.repository_id.in_(repo_ids)),
            )
            .values(
                status=SyncJobStatus.CANCELLED,
                dedup_key=None,
                finished_at=now,
                last_error="cancelled: account unavailable",
            )
        )
        return result.rowcount or 0

    async def recover_running(self) -> int:
        """Return jobs stranded in running (by a dead process) to pending."""
        result = await self._session.execute(
            update(SyncJob)
            .where(SyncJob.status == SyncJobStatus.RUNNING)
            .values(status=SyncJobStatus.PENDING, started_at=None)
        )
        return result.rowcount or 0
