"""Bulk merge orchestration with per-item failure isolation.

An operation is validated and persisted by ``submit`` before any network
call, then ``execute`` merges its items:

- items of the same repository run one after another (optionally with a
  delay between merges), repositories run concurrently
- every merge call holds the concurrency semaphore shared with the sync
  scheduler
- an item's failure is recorded on that item and never aborts its siblings
- ``cancel`` only affects items that have not been dispatched yet
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ampel_sync.config import BulkMergeConfig, get_settings
from ampel_sync.credentials import CredentialVault
from ampel_sync.db.engine import SessionProvider, get_session
from ampel_sync.db.models import (
    BulkMergeItem,
    BulkMergeItemStatus,
    BulkMergeOperation,
    BulkMergeStatus,
    ProviderAccount,
    PullRequestSnapshot,
    Repository,
)
from ampel_sync.db.repositories import (
    AccountRepository,
    BulkMergeRepository,
    SnapshotRepository,
)
from ampel_sync.exceptions import (
    AuthError,
    BulkMergeError,
    DecryptionError,
    ProviderError,
    ValidationError,
    VaultError,
)
from ampel_sync.logging import get_logger
from ampel_sync.notifications import Event, EventKind, LogNotifier, Notifier
from ampel_sync.providers import ProviderAdapterFactory
from ampel_sync.providers.schemas import MergeStrategy, PRStatus
from ampel_sync.status import AmpelStatus, StatusEngine

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[object]]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def overall_status(statuses: Iterable[BulkMergeItemStatus]) -> BulkMergeStatus:
    """Aggregate item statuses; skipped items count as neither success nor failure."""
    statuses = list(statuses)
    succeeded = statuses.count(BulkMergeItemStatus.SUCCESS)
    failed = statuses.count(BulkMergeItemStatus.FAILED)
    if succeeded and failed:
        return BulkMergeStatus.PARTIAL_FAILURE
    if succeeded:
        return BulkMergeStatus.SUCCESS
    return BulkMergeStatus.FAILED


def item_counts(operation: BulkMergeOperation) -> dict[str, int]:
    counts = {status.value: 0 for status in BulkMergeItemStatus}
    for item in operation.items:
        counts[item.status.value] += 1
    return counts


class BulkMergeOrchestrator:
    """Merges many pull requests as one tracked operation.

    Usage:
        orchestrator = BulkMergeOrchestrator(vault, factory, semaphore=shared)
        operation = await orchestrator.submit([12, 13, 14], "squash")
        operation = await orchestrator.execute(operation.id)
    """

    def __init__(
        self,
        vault: CredentialVault,
        adapter_factory: ProviderAdapterFactory,
        *,
        notifier: Notifier | None = None,
        session: SessionProvider = get_session,
        write_lock: asyncio.Lock | None = None,
        semaphore: asyncio.Semaphore | None = None,
        config: BulkMergeConfig | None = None,
        status_engine: StatusEngine | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._config = config or settings.bulk_merge
        self._vault = vault
        self._factory = adapter_factory
        self._notifier = notifier or LogNotifier()
        self._session = session
        self._lock = write_lock or asyncio.Lock()
        self._semaphore = semaphore or asyncio.Semaphore(settings.sync.max_concurrent_jobs)
        self._status_engine = status_engine
        self._clock = clock
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------
    async def submit(
        self,
        snapshot_ids: list[int],
        strategy: MergeStrategy | str | None = None,
        *,
        delay_seconds: float | None = None,
        force: bool = False,
        delete_branch: bool | None = None,
        owner_id: str | None = None,
    ) -> BulkMergeOperation:
        """Validate the request and persist a pending operation.

        Args:
            snapshot_ids: Snapshots to merge, in order
            strategy: Merge strategy (configured default if None)
            delay_seconds: Pause between merges in the same repository
            force: Accept Red pull requests
            delete_branch: Delete source branches (configured default if None)
            owner_id: If given, every snapshot must belong to this user

        Raises:
            ValidationError: If any precondition fails; nothing is stored
        """
        if not snapshot_ids:
            raise ValidationError("A bulk merge needs at least one pull request")
        if len(snapshot_ids) > self._config.max_items:
            raise ValidationError(
                f"A bulk merge accepts at most {self._config.max_items} pull requests"
            )
        if len(set(snapshot_ids)) != len(snapshot_ids):
            raise ValidationError("The same pull request was submitted twice")

        try:
            merge_strategy = MergeStrategy(strategy or self._config.default_strategy)
        except ValueError as e:
            raise ValidationError(f"Unknown merge strategy: {strategy}") from e

        delay = self._config.merge_delay_seconds if delay_seconds is None else delay_seconds
        if delay < 0:
            raise ValidationError("delay_seconds must not be negative")

        async with self._lock, self._session() as session:
            snapshots = await SnapshotRepository(session).get_many(snapshot_ids)

            missing = [
                sid
                for sid in snapshot_ids
                if sid not in snapshots
                or (owner_id is not None and snapshots[sid].repository.owner_id != owner_id)
            ]
            if missing:
                raise ValidationError(f"Unknown pull request snapshots: {missing}")

            red = [
                f"{snapshots[sid].repository.full_name}#{snapshots[sid].number}"
                for sid in snapshot_ids
                if snapshots[sid].ampel_status is AmpelStatus.RED
            ]
            if red and not force:
                raise ValidationError(f"Blocked pull requests need force: {', '.join(red)}")

            operations = BulkMergeRepository(session)
            operation = operations.add(
                BulkMergeOperation(
                    owner_id=owner_id,
                    strategy=merge_strategy,
                    delete_branch=(
                        self._config.delete_branch_default
                        if delete_branch is None
                        else delete_branch
                    ),
                    force=force,
                    delay_seconds=delay,
                    status=BulkMergeStatus.PENDING,
                    items=[
                        BulkMergeItem(
                            position=position,
                            snapshot_id=sid,
                            repository_id=snapshots[sid].repository_id,
                            pr_number=snapshots[sid].number,
                            status=BulkMergeItemStatus.PENDING,
                        )
                        for position, sid in enumerate(snapshot_ids)
                    ],
                )
            )
            await operations.flush()

        logger.info(
            "Submitted bulk merge {} ({} PRs, strategy={}{})",
            operation.id,
            len(snapshot_ids),
            merge_strategy.value,
            ", forced" if red else "",
        )
        return operation

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    async def execute(self, operation_id: int) -> BulkMergeOperation:
        """Run a pending operation to completion.

        Raises:
            BulkMergeError: If the operation does not exist or already ran
        """
        now = self._clock()
        async with self._lock, self._session() as session:
            operations = BulkMergeRepository(session)
            operation = await operations.get_with_items(operation_id)
            if operation is None:
                raise BulkMergeError(f"Bulk merge {operation_id} not found")
            if operation.status is not BulkMergeStatus.PENDING:
                raise BulkMergeError(
                    f"Bulk merge {operation_id} is already {operation.status.value}"
                )
            await operations.set_status(operation, BulkMergeStatus.RUNNING, now)

        groups: dict[int | None, list[BulkMergeItem]] = {}
        for item in operation.items:
            groups.setdefault(item.repository_id, []).append(item)

        await asyncio.gather(
            *(self._run_repository(operation, items) for items in groups.values())
        )
        return await self._finalize(operation_id)

    async def _run_repository(
        self, operation: BulkMergeOperation, items: list[BulkMergeItem]
    ) -> None:
        dispatched = False
        for item in items:
            if dispatched and operation.delay_seconds > 0:
                await self._sleep(operation.delay_seconds)
            dispatched = await self._run_item(operation, item)

    async def _run_item(self, operation: BulkMergeOperation, item: BulkMergeItem) -> bool:
        """Process one item; returns True if a merge call was made."""
        log = logger.bind(operation_id=operation.id, pr_number=item.pr_number)

        async with self._lock, self._session() as session:
            if not await BulkMergeRepository(session).claim_item(item.id, self._clock()):
                log.debug("Item {} was cancelled before dispatch", item.position)
                return False
            snapshot, repo, account = await self._load_target(session, item)

        if snapshot is None or not snapshot.is_open:
            await self._complete(item, BulkMergeItemStatus.SKIPPED, "pull request is not open")
            return False
        if repo is None or account is None:
            await self._complete(item, BulkMergeItemStatus.FAILED, "repository has no account")
            return False
        if not account.can_sync:
            await self._complete(
                item,
                BulkMergeItemStatus.FAILED,
                f"account is {account.validation_status.value}",
            )
            return False

        try:
            credentials = self._vault.credentials_for(account)
        except DecryptionError as e:
            log.critical("Cannot decrypt credentials of account {}: {}", account.id, e)
            await self._complete(item, BulkMergeItemStatus.FAILED, str(e))
            return False

        adapter = self._factory.create(
            account.provider, credentials, account.instance_url or None, account_id=account.id
        )
        try:
            async with self._semaphore:
                result = await adapter.merge_pull_request(
                    repo.owner,
                    repo.name,
                    snapshot.number,
                    operation.strategy,
                    delete_branch=operation.delete_branch,
                    expected_sha=snapshot.head_sha,
                )
        except AuthError as e:
            log.error("Credential rejected while merging: {}", e)
            await self._complete(item, BulkMergeItemStatus.FAILED, str(e))
            await self._vault.mark_invalid(account.id, str(e))
            return True
        except (ProviderError, VaultError) as e:
            log.warning("Merge of {}#{} failed: {}", repo.full_name, snapshot.number, e)
            await self._complete(item, BulkMergeItemStatus.FAILED, str(e))
            return True
        except Exception as e:
            log.exception("Unexpected error merging {}#{}: {}", repo.full_name, snapshot.number, e)
            await self._complete(item, BulkMergeItemStatus.FAILED, f"unexpected error: {e}")
            return True
        finally:
            await adapter.close()

        if not result.merged:
            log.warning("{}#{} not mergeable: {}", repo.full_name, snapshot.number, result.message)
            await self._complete(
                item, BulkMergeItemStatus.FAILED, result.message or "pull request is not mergeable"
            )
            return True

        await self._complete(item, BulkMergeItemStatus.SUCCESS, None, merge_sha=result.sha)
        log.info("Merged {}#{}", repo.full_name, snapshot.number)
        return True

    async def _load_target(
        self, session: AsyncSession, item: BulkMergeItem
    ) -> tuple[PullRequestSnapshot | None, Repository | None, ProviderAccount | None]:
        if item.snapshot_id is None:
            return None, None, None
        snapshots = await SnapshotRepository(session).get_many([item.snapshot_id])
        snapshot = snapshots.get(item.snapshot_id)
        if snapshot is None:
            return None, None, None
        repo = snapshot.repository
        account = (
            await AccountRepository(session).get_by_id(repo.account_id)
            if repo.account_id is not None
            else None
        )
        return snapshot, repo, account

    async def _complete(
        self,
        item: BulkMergeItem,
        status: BulkMergeItemStatus,
        error: str | None,
        *,
        merge_sha: str | None = None,
    ) -> None:
        async with self._lock, self._session() as session:
            await BulkMergeRepository(session).complete_item(
                item.id, status, self._clock(), error=error, merge_sha=merge_sha
            )
            if status is BulkMergeItemStatus.SUCCESS and item.snapshot_id is not None:
                snapshots = SnapshotRepository(session, engine=self._status_engine)
                snapshot = await snapshots.get_by_id(item.snapshot_id)
                if snapshot is not None:
                    await snapshots.set_pr_status(snapshot, PRStatus.MERGED)

    async def _finalize(self, operation_id: int) -> BulkMergeOperation:
        async with self._lock, self._session() as session:
            operations = BulkMergeRepository(session)
            operation = await operations.get_with_items(operation_id)
            if operation is None:
                raise BulkMergeError(f"Bulk merge {operation_id} not found")
            status = overall_status(item.status for item in operation.items)
            await operations.set_status(operation, status, self._clock())

        counts = item_counts(operation)
        logger.info(
            "Bulk merge {} finished: {} ({} merged, {} failed, {} skipped)",
            operation.id,
            status.value,
            counts["success"],
            counts["failed"],
            counts["skipped"],
        )
        await self._notifier.notify(
            Event(
                EventKind.BULK_MERGE_COMPLETED,
                {"operation_id": operation.id, "status": status.value, **counts},
            )
        )
        return operation

    # -------------------------------------------------------------------------
    # Cancellation & status
    # -------------------------------------------------------------------------
    async def cancel(self, operation_id: int) -> int:
        """Skip every item that has not been dispatched yet.

        A running operation finishes its in-flight merges and then
        finalizes itself; a never-started one is finalized here.

        Returns:
            Number of items cancelled
        """
        now = self._clock()
        async with self._lock, self._session() as session:
            operations = BulkMergeRepository(session)
            operation = await operations.get_with_items(operation_id)
            if operation is None:
                raise BulkMergeError(f"Bulk merge {operation_id} not found")
            cancelled = await operations.cancel_pending(operation_id, now)
            never_started = operation.status is BulkMergeStatus.PENDING
            if never_started:
                await operations.set_status(operation, BulkMergeStatus.RUNNING, now)

        logger.info("Cancelled {} pending items of bulk merge {}", cancelled, operation_id)
        if never_started:
            await self._finalize(operation_id)
        return cancelled

    async def get_status(self, operation_id: int) -> BulkMergeOperation:
        """Load an operation with its items.

        Raises:
            BulkMergeError: If the operation does not exist
        """
        async with self._session() as session:
            operation = await BulkMergeRepository(session).get_with_items(operation_id)
        if operation is None:
            raise BulkMergeError(f"Bulk merge {operation_id} not found")
        return operation
