"""Tests for SyncJobRepository."""

from datetime import timedelta

from ampel_sync.db.models import SyncJobKind, SyncJobStatus
from ampel_sync.db.repositories import SyncJobRepository, poll_key, token_refresh_key
from tests.factories import NOW, make_account, make_repository


async def _repo(db_session, account=None):
    repo = make_repository(db_session, account)
    await db_session.flush()
    return repo


class TestSyncJobEnqueue:
    """De-duplicated enqueueing."""

    async def test_enqueue_creates_pending_job(self, db_session):
        """A new key creates a pending job with zero attempts."""
        repo = await _repo(db_session)
        jobs = SyncJobRepository(db_session)

        job, created = await jobs.enqueue(SyncJobKind.POLL, poll_key(repo.id), NOW, repository_id=repo.id)

        assert created is True
        assert job.status is SyncJobStatus.PENDING
        assert job.attempts == 0
        assert job.dedup_key == f"repo:{repo.id}"

    async def test_enqueue_deduplicates(self, db_session):
        """A second enqueue for the same key returns the active job."""
        repo = await _repo(db_session)
        jobs = SyncJobRepository(db_session)

        first, _ = await jobs.enqueue(SyncJobKind.POLL, poll_key(repo.id), NOW, repository_id=repo.id)
        second, created = await jobs.enqueue(
            SyncJobKind.POLL, poll_key(repo.id), NOW + timedelta(minutes=1), repository_id=repo.id
        )

        assert created is False
        assert second.id == first.id
        assert await jobs.count() == 1

    async def test_finished_job_releases_key(self, db_session):
        repo = await _repo(db_session)
        jobs = SyncJobRepository(db_session)
        first, _ = await jobs.enqueue(SyncJobKind.POLL, poll_key(repo.id), NOW, repository_id=repo.id)

        await jobs.finish(first, SyncJobStatus.DONE, NOW)
        second, created = await jobs.enqueue(SyncJobKind.POLL, poll_key(repo.id), NOW, repository_id=repo.id)

        assert created is True
        assert second.id != first.id
        assert first.dedup_key is None


class TestSyncJobClaim:
    """Due-job selection and claiming."""

    async def test_list_due_respects_schedule_and_backoff(self, db_session):
        account = make_account(db_session)
        jobs = SyncJobRepository(db_session)
        await db_session.flush()

        due, _ = await jobs.enqueue(SyncJobKind.TOKEN_REFRESH, "account:a", NOW, account_id=account.id)
        await jobs.enqueue(
            SyncJobKind.TOKEN_REFRESH, "account:b", NOW + timedelta(hours=1), account_id=account.id
        )
        backing_off, _ = await jobs.enqueue(
            SyncJobKind.TOKEN_REFRESH, "account:c", NOW, account_id=account.id
        )
        await jobs.reschedule(backing_off, NOW + timedelta(minutes=5), consume_attempt=True)

        assert [j.id for j in await jobs.list_due(NOW, limit=10)] == [due.id]
        later = await jobs.list_due(NOW + timedelta(hours=2), limit=10)
        assert len(later) == 3

    async def test_claim_once(self, db_session):
        """Only one claimer wins a pending job."""
        account = make_account(db_session)
        await db_session.flush()
        jobs = SyncJobRepository(db_session)
        job, _ = await jobs.enqueue(
            SyncJobKind.TOKEN_REFRESH, token_refresh_key(account.id), NOW, account_id=account.id
        )

        claimed = await jobs.claim(job.id, NOW)
        again = await jobs.claim(job.id, NOW)

        assert claimed is not None
        assert claimed.status is SyncJobStatus.RUNNING
        assert claimed.started_at == NOW
        assert again is None

    async def test_reschedule_attempts(self, db_session):
        """Deferrals keep the attempt count; retries consume one."""
        account = make_account(db_session)
        await db_session.flush()
        jobs = SyncJobRepository(db_session)
        job, _ = await jobs.enqueue(SyncJobKind.TOKEN_REFRESH, "k", NOW, account_id=account.id)

        await jobs.reschedule(job, NOW + timedelta(minutes=1), error="rate limited", consume_attempt=False)
        assert job.attempts == 0
        await jobs.reschedule(job, NOW + timedelta(minutes=2), error="503", consume_attempt=True)

        assert job.attempts == 1
        assert job.status is SyncJobStatus.PENDING
        assert job.last_error == "503"
        assert job.due_at == NOW + timedelta(minutes=2)


class TestSyncJobBulkUpdates:
    """Cancellation and recovery."""

    async def test_cancel_for_account(self, db_session):
        """Pending jobs of the account and its repositories are cancelled."""
        account = make_account(db_session)
        other = make_account(db_session, label="other", remote_user_id="2")
        mine = make_repository(db_session, account)
        theirs = make_repository(db_session, other, full_name="octo/other")
        await db_session.flush()
        jobs = SyncJobRepository(db_session)

        refresh, _ = await jobs.enqueue(
            SyncJobKind.TOKEN_REFRESH, token_refresh_key(account.id), NOW, account_id=account.id
        )
        poll, _ = await jobs.enqueue(SyncJobKind.POLL, poll_key(mine.id), NOW, repository_id=mine.id)
        running, _ = await jobs.enqueue(SyncJobKind.POLL, "running", NOW, repository_id=mine.id)
        await jobs.claim(running.id, NOW)
        untouched, _ = await jobs.enqueue(SyncJobKind.POLL, poll_key(theirs.id), NOW, repository_id=theirs.id)

        cancelled = await jobs.cancel_for_account(account.id, NOW)

        assert cancelled == 2
        for job in (refresh, poll, running, untouched):
            await db_session.refresh(job)
        assert refresh.status is SyncJobStatus.CANCELLED
        assert refresh.dedup_key is None
        assert poll.status is SyncJobStatus.CANCELLED
        assert running.status is SyncJobStatus.RUNNING
        assert untouched.status is SyncJobStatus.PENDING

    async def test_recover_running(self, db_session):
        """Jobs stranded in running go back to pending on restart."""
        account = make_account(db_session)
        await db_session.flush()
        jobs = SyncJobRepository(db_session)
        job, _ = await jobs.enqueue(SyncJobKind.TOKEN_REFRESH, "k", NOW, account_id=account.id)
        await jobs.claim(job.id, NOW)

        recovered = await jobs.recover_running()

        await db_session.refresh(job)
        assert recovered == 1
        assert job.status is SyncJobStatus.PENDING
        assert job.started_at is None

    async def test_list_recent_filters(self, db_session):
        account = make_account(db_session)
        await db_session.flush()
        jobs = SyncJobRepository(db_session)
        done, _ = await jobs.enqueue(SyncJobKind.TOKEN_REFRESH, "a", NOW, account_id=account.id)
        await jobs.finish(done, SyncJobStatus.FAILED, NOW, error="boom", consume_attempt=True)
        await jobs.enqueue(SyncJobKind.TOKEN_REFRESH, "b", NOW, account_id=account.id)

        failed = await jobs.list_recent(SyncJobStatus.FAILED)

        assert [j.id for j in failed] == [done.id]
        assert failed[0].attempts == 1
        assert len(await jobs.list_recent()) == 2
