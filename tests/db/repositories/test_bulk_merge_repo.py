"""Tests for BulkMergeRepository."""

from ampel_sync.db.models import (
    BulkMergeItem,
    BulkMergeItemStatus,
    BulkMergeOperation,
    BulkMergeStatus,
)
from ampel_sync.db.repositories import BulkMergeRepository
from ampel_sync.providers.schemas import MergeStrategy
from tests.factories import NOW, make_repository, make_snapshot


async def _operation(db_session, count: int = 3) -> BulkMergeOperation:
    repo = make_repository(db_session)
    snapshots = [make_snapshot(db_session, repo, number=n + 1) for n in range(count)]
    await db_session.flush()

    operation = BulkMergeOperation(owner_id="alice", strategy=MergeStrategy.SQUASH)
    operation.items = [
        BulkMergeItem(
            position=position,
            snapshot_id=snapshot.id,
            repository_id=repo.id,
            pr_number=snapshot.number,
        )
        for position, snapshot in enumerate(snapshots)
    ]
    db_session.add(operation)
    await db_session.flush()
    return operation


class TestBulkMergeItems:
    """Conditional item transitions."""

    async def test_get_with_items_in_order(self, db_session):
        operation = await _operation(db_session)

        loaded = await BulkMergeRepository(db_session).get_with_items(operation.id)

        assert loaded is not None
        assert [i.position for i in loaded.items] == [0, 1, 2]
        assert all(i.status is BulkMergeItemStatus.PENDING for i in loaded.items)

    async def test_claim_then_complete(self, db_session):
        operation = await _operation(db_session, count=1)
        merges = BulkMergeRepository(db_session)
        item_id = operation.items[0].id

        assert await merges.claim_item(item_id, NOW) is True
        await merges.complete_item(item_id, BulkMergeItemStatus.SUCCESS, NOW, merge_sha="abc")

        item = await merges.get_item(item_id)
        assert item.status is BulkMergeItemStatus.SUCCESS
        assert item.merge_sha == "abc"
        assert item.started_at == NOW

    async def test_cancel_beats_claim(self, db_session):
        """A cancelled item can no longer be claimed."""
        operation = await _operation(db_session, count=2)
        merges = BulkMergeRepository(db_session)
        first, second = (i.id for i in operation.items)
        await merges.claim_item(first, NOW)

        cancelled = await merges.cancel_pending(operation.id, NOW)

        assert cancelled == 1
        assert await merges.claim_item(second, NOW) is False
        assert (await merges.get_item(first)).status is BulkMergeItemStatus.IN_PROGRESS
        skipped = await merges.get_item(second)
        assert skipped.status is BulkMergeItemStatus.SKIPPED
        assert skipped.error == "cancelled"


class TestBulkMergeOperationStatus:
    async def test_status_timestamps(self, db_session):
        operation = await _operation(db_session, count=1)
        merges = BulkMergeRepository(db_session)

        await merges.set_status(operation, BulkMergeStatus.RUNNING, NOW)
        assert operation.started_at == NOW
        assert operation.finished_at is None

        await merges.set_status(operation, BulkMergeStatus.PARTIAL_FAILURE, NOW)
        assert operation.finished_at == NOW
