"""Facade exposing the sync engine to the routing/API layer.

Wires the components around one shared write lock, one global
concurrency semaphore and one rate limit tracker, and converts ORM rows
into response schemas.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import pydantic

from ampel_sync.config import Settings, get_settings
from ampel_sync.credentials import CredentialVault, TokenCipher
from ampel_sync.db.engine import SessionProvider, get_session
from ampel_sync.db.models import ValidationStatus
from ampel_sync.db.repositories import AccountRepository, RepositoryRepository, SnapshotRepository
from ampel_sync.exceptions import BulkMergeError, ValidationError
from ampel_sync.logging import bind_account, get_logger
from ampel_sync.merge import BulkMergeOrchestrator
from ampel_sync.notifications import LogNotifier, Notifier
from ampel_sync.providers import ProviderAdapterFactory
from ampel_sync.providers.schemas import MergeStrategy, ProviderKind
from ampel_sync.rate_limit import RateLimitTracker
from ampel_sync.schemas import (
    AccountCreate,
    AccountRead,
    BulkMergeRead,
    DashboardRow,
    DashboardSnapshot,
    RepositoryRead,
)
from ampel_sync.status import StatusEngine
from ampel_sync.sync import SyncScheduler

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AmpelService:
    """Entry point for account management, the dashboard and bulk merges.

    Usage:
        service = AmpelService.from_settings()
        account = await service.add_account("alice", "github", "work", token)
        await service.track_repository(account.id, "octo", "repo")
        await service.start()
        dashboard = await service.get_dashboard_snapshot("alice")
    """

    def __init__(
        self,
        cipher: TokenCipher,
        *,
        settings: Settings | None = None,
        session: SessionProvider = get_session,
        notifier: Notifier | None = None,
        tracker: RateLimitTracker | None = None,
        adapter_factory: ProviderAdapterFactory | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = settings or get_settings()
        self._session = session
        self._clock = clock
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(settings.sync.max_concurrent_jobs)
        self._merge_tasks: dict[int, asyncio.Task[object]] = {}

        notifier = notifier or LogNotifier()
        status_engine = StatusEngine(settings.status)

        self.tracker = tracker or RateLimitTracker(settings.rate_limit, clock)
        self.factory = adapter_factory or ProviderAdapterFactory(
            self.tracker, settings.sync, settings.rate_limit
        )
        self.vault = CredentialVault(cipher, self.factory, session, self._lock, clock)
        self.scheduler = SyncScheduler(
            self.vault,
            self.factory,
            tracker=self.tracker,
            notifier=notifier,
            session=session,
            write_lock=self._lock,
            semaphore=self._semaphore,
            config=settings.sync,
            status_engine=status_engine,
            clock=clock,
        )
        self.bulk_merge = BulkMergeOrchestrator(
            self.vault,
            self.factory,
            notifier=notifier,
            session=session,
            write_lock=self._lock,
            semaphore=self._semaphore,
            config=settings.bulk_merge,
            status_engine=status_engine,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: object) -> AmpelService:
        """Build the service with the configured encryption key.

        Raises:
            ValidationError: If the encryption key is missing or malformed
        """
        settings = settings or get_settings()
        cipher = TokenCipher.from_base64(settings.encryption_key)
        return cls(cipher, settings=settings, **kwargs)  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        await self.scheduler.start()

    async def shutdown(self) -> None:
        """Stop the scheduler and wait for running bulk merges."""
        await self.scheduler.shutdown()
        if self._merge_tasks:
            await asyncio.gather(*self._merge_tasks.values(), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------
    async def list_accounts(self, owner_id: str) -> list[AccountRead]:
        return AccountRead.from_orm_list(await self.vault.list_accounts(owner_id))

    async def add_account(
        self,
        owner_id: str,
        provider: ProviderKind | str,
        label: str,
        token: str,
        *,
        instance_url: str | None = None,
        username: str | None = None,
    ) -> AccountRead:
        """Validate and store a credential.

        Raises:
            ValidationError: Malformed input, rejected before any network call
            InvalidCredentialsError: The provider refused the token
            DuplicateAccountError: Label or remote user already connected
        """
        try:
            request = AccountCreate(
                owner_id=owner_id,
                provider=provider,
                label=label,
                token=token,
                instance_url=instance_url,
                username=username,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(_first_error(e)) from e

        account = await self.vault.add(
            request.owner_id,
            request.provider,
            request.label,
            request.token,
            instance_url=request.instance_url,
            username=request.username,
        )
        if account.token_expires_at is not None:
            await self.scheduler.schedule_token_refresh(
                account.id, self.scheduler.token_refresh_time(account.token_expires_at)
            )
        return AccountRead.from_orm(account)

    async def set_default(self, account_id: int) -> AccountRead:
        return AccountRead.from_orm(await self.vault.set_default(account_id))

    async def revalidate(self, account_id: int) -> AccountRead:
        """Re-check a credential; a credential that became valid resumes polling."""
        before = await self.vault.get_account(account_id)
        account = await self.vault.revalidate(account_id)

        if account.validation_status is ValidationStatus.VALID:
            if before.validation_status is not ValidationStatus.VALID:
                resumed = await self._resume_polling(account_id)
                bind_account(account_id, account.provider.value).info(
                    "Resumed polling for {} repositories", resumed
                )
            if account.token_expires_at is not None:
                await self.scheduler.schedule_token_refresh(
                    account.id, self.scheduler.token_refresh_time(account.token_expires_at)
                )
        return AccountRead.from_orm(account)

    async def remove_account(self, account_id: int) -> None:
        await self.vault.remove(account_id)
        self.tracker.forget(account_id)

    async def _resume_polling(self, account_id: int) -> int:
        async with self._session() as session:
            repos = await RepositoryRepository(session).list_for_account(account_id)
        active = [repo for repo in repos if repo.is_active]
        for repo in active:
            await self.scheduler.schedule_poll(repo.id)
        return len(active)

    # -------------------------------------------------------------------------
    # Repositories & dashboard
    # -------------------------------------------------------------------------
    async def track_repository(self, account_id: int, owner: str, name: str) -> RepositoryRead:
        """Resolve a repository through its provider, store it and schedule its first poll.

        Raises:
            ValidationError: If the account cannot be used for syncing
            NotFoundError: If the provider does not know the repository
        """
        account = await self.vault.get_account(account_id)
        if not account.can_sync:
            raise ValidationError(
                f"Account {account_id} is {account.validation_status.value}; revalidate it first"
            )

        adapter = self.factory.create(
            account.provider,
            self.vault.credentials_for(account),
            account.instance_url or None,
            account_id=account.id,
        )
        try:
            remote = await adapter.get_repository(owner, name)
        finally:
            await adapter.close()

        async with self._lock, self._session() as session:
            current = await AccountRepository(session).get_by_id(account_id)
            if current is None:
                raise ValidationError(f"Account {account_id} was removed")
            repo, created = await RepositoryRepository(session).upsert_from_provider(
                current, remote
            )

        await self.scheduler.schedule_poll(repo.id)
        logger.info("{} repository {}", "Tracking" if created else "Refreshed", repo.full_name)
        return RepositoryRead.from_orm(repo)

    async def list_repositories(self, owner_id: str) -> list[RepositoryRead]:
        async with self._session() as session:
            repos = await RepositoryRepository(session).list_for_owner(owner_id)
        return RepositoryRead.from_orm_list(repos)

    async def get_dashboard_snapshot(
        self, owner_id: str, *, include_closed: bool = False
    ) -> DashboardSnapshot:
        """All pull request snapshots of a user, with their ampel status."""
        async with self._session() as session:
            snapshots = await SnapshotRepository(session).list_for_owner(
                owner_id, include_closed=include_closed
            )
        return DashboardSnapshot(
            owner_id=owner_id,
            generated_at=self._clock(),
            pull_requests=[DashboardRow.from_snapshot(s) for s in snapshots],
        )

    # -------------------------------------------------------------------------
    # Bulk merge
    # -------------------------------------------------------------------------
    async def submit_bulk_merge(
        self,
        snapshot_ids: list[int],
        strategy: MergeStrategy | str | None = None,
        *,
        owner_id: str | None = None,
        delay_seconds: float | None = None,
        force: bool = False,
        delete_branch: bool | None = None,
    ) -> int:
        """Validate and start a bulk merge in the background.

        Returns:
            The operation ID, for ``get_bulk_merge_status``

        Raises:
            ValidationError: If any precondition fails; nothing is merged
        """
        operation = await self.bulk_merge.submit(
            snapshot_ids,
            strategy,
            delay_seconds=delay_seconds,
            force=force,
            delete_branch=delete_branch,
            owner_id=owner_id,
        )
        task = asyncio.create_task(self._run_bulk_merge(operation.id))
        self._merge_tasks[operation.id] = task
        task.add_done_callback(lambda _: self._merge_tasks.pop(operation.id, None))
        return operation.id

    async def _run_bulk_merge(self, operation_id: int) -> None:
        try:
            await self.bulk_merge.execute(operation_id)
        except BulkMergeError as e:
            # Cancelled before it started
            logger.info("Bulk merge {} not executed: {}", operation_id, e)

    async def wait_for_bulk_merge(self, operation_id: int) -> BulkMergeRead:
        """Wait for a background bulk merge to finish and return its result."""
        task = self._merge_tasks.get(operation_id)
        if task is not None:
            await task
        return await self.get_bulk_merge_status(operation_id)

    async def get_bulk_merge_status(self, operation_id: int) -> BulkMergeRead:
        return BulkMergeRead.from_operation(await self.bulk_merge.get_status(operation_id))

    async def cancel_bulk_merge(self, operation_id: int) -> int:
        """Skip the items of an operation that have not been dispatched yet."""
        return await self.bulk_merge.cancel(operation_id)


def _first_error(error: pydantic.ValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail.get("loc", ()))
    message = detail.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
