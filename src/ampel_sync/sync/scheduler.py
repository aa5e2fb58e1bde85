"""Durable, rate-limit-aware background sync scheduler.

Jobs live in the ``sync_jobs`` table and move through an explicit state
machine driven by a polling loop:

    pending --claim--> running --+--> done       (poll: next poll scheduled)
       ^                         +--> failed     (terminal error / attempts exhausted)
       |                         +--> cancelled  (account unusable)
       +------- reschedule ------+               (rate limited / retryable error)

A pending job whose ``backoff_until`` lies in the future is "retrying".
Because jobs are rows, a restarted process picks up where it left off.

Error handling per job:
- RateLimitedError: deferred to retry_after / reset_at, attempt not consumed
- ProviderUnavailable / Timeout: exponential backoff, failed after max_attempts
- AuthError: account flipped to Invalid, its pending jobs cancelled
- NotFound / UnmappedStatus / other provider errors: failed immediately
- DecryptionError: job failed, then re-raised to stop the loop
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from ampel_sync.config import SyncConfig, get_settings
from ampel_sync.credentials import CredentialVault
from ampel_sync.db.engine import SessionProvider, get_session
from ampel_sync.db.models import (
    ProviderAccount,
    Repository,
    SyncJob,
    SyncJobKind,
    SyncJobStatus,
    ValidationStatus,
)
from ampel_sync.db.repositories import (
    AccountRepository,
    RepositoryRepository,
    SyncJobRepository,
    poll_key,
    token_refresh_key,
)
from ampel_sync.exceptions import (
    AccountNotFoundError,
    AuthError,
    DecryptionError,
    ProviderError,
    RateLimitedError,
    RetryableProviderError,
)
from ampel_sync.logging import bind_job, get_logger
from ampel_sync.notifications import Event, EventKind, LogNotifier, Notifier
from ampel_sync.providers import ProviderAdapterFactory
from ampel_sync.rate_limit import RateLimitTracker
from ampel_sync.status import StatusEngine

from .poller import RepositoryPoller
from .results import JobOutcome

logger = get_logger(__name__)

# Horizon used to pick up accounts with expiring tokens on start-up
_TOKEN_HORIZON = timedelta(days=366)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SyncScheduler:
    """Runs poll and token-refresh jobs with bounded concurrency.

    Usage:
        scheduler = SyncScheduler(vault, factory, tracker=tracker)
        await scheduler.schedule_poll(repository_id)
        await scheduler.start()
        ...
        await scheduler.shutdown()

    Tests drive the state machine one step at a time with ``run_once``.
    """

    def __init__(
        self,
        vault: CredentialVault,
        adapter_factory: ProviderAdapterFactory,
        *,
        tracker: RateLimitTracker | None = None,
        notifier: Notifier | None = None,
        session: SessionProvider = get_session,
        write_lock: asyncio.Lock | None = None,
        semaphore: asyncio.Semaphore | None = None,
        config: SyncConfig | None = None,
        status_engine: StatusEngine | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            vault: Credential vault (decryption and account invalidation)
            adapter_factory: Builds adapters for accounts
            tracker: Rate limit tracker consulted before dispatch
            notifier: Receives sync_failed / token_expiring events
            session: Session provider (committing context manager)
            write_lock: Lock shared with the vault and bulk merge
            semaphore: Global concurrency cap shared with bulk merge
            config: Sync configuration (uses settings if not provided)
            status_engine: Status engine used when writing snapshots
            clock: Callable returning the current UTC time
        """
        self._config = config or get_settings().sync
        self._vault = vault
        self._factory = adapter_factory
        self._tracker = tracker if tracker is not None else adapter_factory.tracker
        self._notifier = notifier or LogNotifier()
        self._session = session
        self._lock = write_lock or asyncio.Lock()
        self._semaphore = semaphore or asyncio.Semaphore(self._config.max_concurrent_jobs)
        self._status_engine = status_engine
        self._clock = clock

        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._active_tasks: set[asyncio.Task[JobOutcome]] = set()
        self._fatal: BaseException | None = None

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------
    async def schedule_poll(
        self, repository_id: int, not_before: datetime | None = None
    ) -> SyncJob:
        """Enqueue a poll for a repository.

        At most one pending/running job exists per repository; if one is
        already active it is returned unchanged.
        """
        async with self._lock, self._session() as session:
            job, created = await SyncJobRepository(session).enqueue(
                SyncJobKind.POLL,
                poll_key(repository_id),
                not_before or self._clock(),
                repository_id=repository_id,
            )
        if created:
            bind_job(job.id, repository_id).debug("Scheduled poll at {}", job.scheduled_at.isoformat())
        return job

    async def schedule_token_refresh(
        self, account_id: int, not_before: datetime | None = None
    ) -> SyncJob:
        """Enqueue a token-refresh job for an account (de-duplicated)."""
        async with self._lock, self._session() as session:
            job, _ = await SyncJobRepository(session).enqueue(
                SyncJobKind.TOKEN_REFRESH,
                token_refresh_key(account_id),
                not_before or self._clock(),
                account_id=account_id,
            )
        return job

    def token_refresh_time(self, expires_at: datetime) -> datetime:
        """When to run the refresh job for a token expiring at ``expires_at``."""
        return max(expires_at - self._config.token_refresh_lead, self._clock())

    async def cancel_for_account(self, account_id: int) -> int:
        async with self._lock, self._session() as session:
            return await SyncJobRepository(session).cancel_for_account(account_id, self._clock())

    async def recover(self) -> int:
        """Start-up recovery.

        Returns jobs a dead process left running to pending and makes sure
        every account with an expiring token has a refresh job.
        """
        now = self._clock()
        async with self._lock, self._session() as session:
            recovered = await SyncJobRepository(session).recover_running()
            expiring = await AccountRepository(session).list_expiring(now + _TOKEN_HORIZON)

        for account in expiring:
            if account.validation_status == ValidationStatus.VALID and account.token_expires_at:
                await self.schedule_token_refresh(
                    account.id, self.token_refresh_time(account.token_expires_at)
                )

        if recovered:
            logger.warning("Recovered {} jobs left running by a previous process", recovered)
        return recovered

    def backoff_delay(self, attempt: int) -> timedelta:
        """Delay before retry number ``attempt`` (1-based): base * factor^(n-1), capped."""
        cfg = self._config
        seconds = cfg.backoff_base_seconds * cfg.backoff_factor ** max(attempt - 1, 0)
        return timedelta(seconds=min(seconds, cfg.backoff_cap_seconds))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------
    async def _claim_due(self, limit: int) -> list[SyncJob]:
        if limit <= 0:
            return []
        now = self._clock()
        claimed: list[SyncJob] = []
        async with self._lock, self._session() as session:
            jobs = SyncJobRepository(session)
            for job in await jobs.list_due(now, limit):
                running = await jobs.claim(job.id, now)
                if running is not None:
                    claimed.append(running)
        return claimed

    async def run_once(self) -> list[JobOutcome]:
        """Claim every due job (up to the concurrency cap) and run them to the end.

        Raises:
            DecryptionError: If any job hit an undecryptable credential
        """
        jobs = await self._claim_due(self._config.max_concurrent_jobs)
        results = await asyncio.gather(*(self.execute(job) for job in jobs), return_exceptions=True)

        outcomes: list[JobOutcome] = []
        fatal: BaseException | None = None
        for result in results:
            if isinstance(result, JobOutcome):
                outcomes.append(result)
            elif fatal is None:
                fatal = result
        if fatal is not None:
            raise fatal
        return outcomes

    async def start(self) -> None:
        """Recover stranded jobs and start the background loop."""
        if self._running:
            return
        await self.recover()
        self._running = True
        self._fatal = None
        self._loop_task = asyncio.create_task(self._worker_loop())
        logger.info(
            "Sync scheduler started (max_concurrent={}, tick={}s)",
            self._config.max_concurrent_jobs,
            self._config.scheduler_tick_seconds,
        )

    async def shutdown(self, wait: bool = True) -> None:
        """Stop claiming new jobs; in-flight jobs finish unless ``wait`` is False."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if wait and self._active_tasks:
            await asyncio.gather(*self._active_tasks, return_exceptions=True)
        elif not wait:
            for task in self._active_tasks:
                task.cancel()
        logger.info("Sync scheduler stopped")

    async def wait(self) -> None:
        """Block until the loop stops; re-raises a fatal error that stopped it."""
        if self._loop_task is not None:
            await self._loop_task

    @property
    def is_running(self) -> bool:
        return self._running

    async def _worker_loop(self) -> None:
        while self._running:
            if self._fatal is not None:
                self._running = False
                logger.critical("Sync scheduler stopping: {}", self._fatal)
                raise self._fatal

            capacity = self._config.max_concurrent_jobs - len(self._active_tasks)
            for job in await self._claim_due(capacity):
                task = asyncio.create_task(self.execute(job))
                self._active_tasks.add(task)
                task.add_done_callback(self._on_task_done)

            await asyncio.sleep(self._config.scheduler_tick_seconds)

    def _on_task_done(self, task: asyncio.Task[JobOutcome]) -> None:
        self._active_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._fatal = task.exception()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    async def execute(self, job: SyncJob) -> JobOutcome:
        """Run one claimed job and move it to its next state."""
        if job.kind is SyncJobKind.TOKEN_REFRESH:
            return await self._execute_token_refresh(job)
        return await self._execute_poll(job)

    async def _load(
        self, job: SyncJob
    ) -> tuple[Repository | None, ProviderAccount | None]:
        async with self._lock, self._session() as session:
            repo = None
            account_id = job.account_id
            if job.repository_id is not None:
                repo = await RepositoryRepository(session).get_by_id(job.repository_id)
                account_id = repo.account_id if repo is not None else None
            account = (
                await AccountRepository(session).get_by_id(account_id)
                if account_id is not None
                else None
            )
        return repo, account

    async def _execute_poll(self, job: SyncJob) -> JobOutcome:
        log = bind_job(job.id, job.repository_id)
        repo, account = await self._load(job)

        if repo is None:
            return await self._finish(job, SyncJobStatus.FAILED, "repository not found")
        if account is None or not account.can_sync:
            return await self._finish(job, SyncJobStatus.CANCELLED, "account unavailable")

        try:
            credentials = self._vault.credentials_for(account)
        except DecryptionError as e:
            log.critical("Cannot decrypt credentials of account {}: {}", account.id, e)
            await self._finish(job, SyncJobStatus.FAILED, str(e), repository_id=repo.id)
            raise

        now = self._clock()
        if self._tracker is not None and self._tracker.should_throttle(account.id):
            wait = self._tracker.wait_duration(account.id)
            log.info("Account {} throttled, deferring {}s", account.id, int(wait.total_seconds()))
            return await self._reschedule(job, now + wait, "throttled", consume_attempt=False)

        adapter = self._factory.create(
            account.provider, credentials, account.instance_url or None, account_id=account.id
        )
        try:
            async with self._semaphore:
                poll = await RepositoryPoller(
                    adapter, repo, self._session, self._lock, self._status_engine
                ).poll(now)
        except RateLimitedError as e:
            retry_at = e.retry_at(self._clock())
            log.warning("Rate limited, retrying at {}", retry_at.isoformat())
            return await self._reschedule(job, retry_at, str(e), consume_attempt=False)
        except AuthError as e:
            log.error("Credential rejected: {}", e)
            outcome = await self._finish(job, SyncJobStatus.FAILED, str(e), repository_id=repo.id)
            await self._vault.mark_invalid(account.id, str(e))
            await self._notify_failed(job, repo, str(e))
            return outcome
        except RetryableProviderError as e:
            return await self._retry_or_fail(job, repo, e)
        except ProviderError as e:
            log.error("Poll failed permanently: {}", e)
            outcome = await self._finish(job, SyncJobStatus.FAILED, str(e), repository_id=repo.id)
            await self._notify_failed(job, repo, str(e))
            return outcome
        finally:
            await adapter.close()

        finished = self._clock()
        async with self._lock, self._session() as session:
            await SyncJobRepository(session).finish(job, SyncJobStatus.DONE, finished)
            await RepositoryRepository(session).record_sync(repo.id, finished, poll.item_error)
        await self.schedule_poll(repo.id, finished + self._config.poll_interval)
        return JobOutcome(job.id, job.kind, SyncJobStatus.DONE, poll=poll)

    async def _execute_token_refresh(self, job: SyncJob) -> JobOutcome:
        log = bind_job(job.id, None)
        _, account = await self._load(job)
        if account is None or not account.is_active:
            return await self._finish(job, SyncJobStatus.CANCELLED, "account unavailable")

        try:
            async with self._semaphore:
                account = await self._vault.revalidate(account.id)
        except DecryptionError as e:
            log.critical("Cannot decrypt credentials of account {}: {}", job.account_id, e)
            await self._finish(job, SyncJobStatus.FAILED, str(e))
            raise
        except AccountNotFoundError:
            return await self._finish(job, SyncJobStatus.CANCELLED, "account removed")
        except RateLimitedError as e:
            return await self._reschedule(job, e.retry_at(self._clock()), str(e), consume_attempt=False)
        except RetryableProviderError as e:
            return await self._retry_or_fail(job, None, e)
        except ProviderError as e:
            return await self._finish(job, SyncJobStatus.FAILED, str(e))

        now = self._clock()
        expires_at = account.token_expires_at
        outcome = await self._finish(job, SyncJobStatus.DONE, None)

        if expires_at is None or account.validation_status != ValidationStatus.VALID:
            if account.validation_status == ValidationStatus.EXPIRED:
                log.warning("Token of account {} has expired", account.id)
            return outcome

        if expires_at - now <= self._config.token_refresh_lead:
            await self._notifier.notify(
                Event(
                    EventKind.TOKEN_EXPIRING,
                    {
                        "account_id": account.id,
                        "provider": account.provider.value,
                        "label": account.label,
                        "expires_at": expires_at.isoformat(),
                    },
                )
            )
            # Check again at expiry to flip the account to Expired
            await self.schedule_token_refresh(account.id, expires_at)
        else:
            await self.schedule_token_refresh(account.id, self.token_refresh_time(expires_at))
        return outcome

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------
    async def _retry_or_fail(
        self, job: SyncJob, repo: Repository | None, error: RetryableProviderError
    ) -> JobOutcome:
        attempt = job.attempts + 1
        log = bind_job(job.id, job.repository_id)
        if attempt >= self._config.max_attempts:
            log.error("Giving up after {} attempts: {}", attempt, error)
            outcome = await self._finish(
                job,
                SyncJobStatus.FAILED,
                str(error),
                repository_id=repo.id if repo else None,
                consume_attempt=True,
            )
            if repo is not None:
                await self._notify_failed(job, repo, str(error))
            return outcome

        delay = self.backoff_delay(attempt)
        log.warning(
            "Attempt {}/{} failed, retrying in {}s: {}",
            attempt,
            self._config.max_attempts,
            int(delay.total_seconds()),
            error,
        )
        return await self._reschedule(job, self._clock() + delay, str(error), consume_attempt=True)

    async def _reschedule(
        self, job: SyncJob, at: datetime, error: str, *, consume_attempt: bool
    ) -> JobOutcome:
        async with self._lock, self._session() as session:
            jobs = SyncJobRepository(session)
            current = await jobs.get_by_id(job.id)
            if current is not None:
                await jobs.reschedule(current, at, error=error, consume_attempt=consume_attempt)
                job = current
        return JobOutcome(
            job.id, job.kind, SyncJobStatus.PENDING, error=error, consumed_attempt=consume_attempt
        )

    async def _finish(
        self,
        job: SyncJob,
        status: SyncJobStatus,
        error: str | None,
        *,
        repository_id: int | None = None,
        consume_attempt: bool = False,
    ) -> JobOutcome:
        now = self._clock()
        async with self._lock, self._session() as session:
            jobs = SyncJobRepository(session)
            current = await jobs.get_by_id(job.id)
            if current is not None:
                await jobs.finish(current, status, now, error=error, consume_attempt=consume_attempt)
            if repository_id is not None and error is not None:
                await RepositoryRepository(session).record_sync(repository_id, None, error)
        return JobOutcome(
            job.id, job.kind, status, error=error, consumed_attempt=consume_attempt
        )

    async def _notify_failed(self, job: SyncJob, repo: Repository, error: str) -> None:
        await self._notifier.notify(
            Event(
                EventKind.SYNC_FAILED,
                {
                    "job_id": job.id,
                    "repository_id": repo.id,
                    "repository": repo.full_name,
                    "provider": repo.provider.value,
                    "error": error,
                },
            )
        )
