"""Repository for bulk merge operations and their items."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ampel_sync.db.models import (
    BulkMergeItem,
    BulkMergeItemStatus,
    BulkMergeOperation,
    BulkMergeStatus,
)

from .base import BaseRepository


class BulkMergeRepository(BaseRepository[BulkMergeOperation]):
    """Repository for bulk merge operations.

    Item transitions are conditional UPDATEs so a cancel and a dispatch
    can never both win for the same item.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, BulkMergeOperation)

    async def get_with_items(self, operation_id: int) -> BulkMergeOperation | None:
        stmt = (
            select(BulkMergeOperation)
            .where(BulkMergeOperation.id == operation_id)
            .options(selectinload(BulkMergeOperation.items))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_item(self, item_id: int) -> BulkMergeItem | None:
        return await self._session.get(BulkMergeItem, item_id, populate_existing=True)

    async def claim_item(self, item_id: int, now: datetime) -> bool:
        """pending -> in_progress; False if the item was cancelled first."""
        result = await self._session.execute(
            update(BulkMergeItem)
            .where(BulkMergeItem.id == item_id, BulkMergeItem.status == BulkMergeItemStatus.PENDING)
            .values(status=BulkMergeItemStatus.IN_PROGRESS, started_at=now)
        )
        return bool(result.rowcount)

    async def complete_item(
        self,
        item_id: int,
        status: BulkMergeItemStatus,
        now: datetime,
        *,
        error: str | None = None,
        merge_sha: str | None = None,
    ) -> None:
        """Record an item's terminal status."""
        await self._session.execute(
            update(BulkMergeItem)
            .where(BulkMergeItem.id == item_id)
            .values(status=status, finished_at=now, error=error, merge_sha=merge_sha)
        )

    async def cancel_pending(self, operation_id: int, now: datetime) -> int:
        """Skip every item that has not been dispatched yet.

        Returns:
            Number of items cancelled
        """
        result = await self._session.execute(
            update(BulkMergeItem)
            .where(
                BulkMergeItem.operation_id == operation_id,
                BulkMergeItem.status == BulkMergeItemStatus.PENDING,
            )
            .values(status=BulkMergeItemStatus.SKIPPED, finished_at=now, error="cancelled")
        )
        return result.rowcount or 0

    async def set_status(
        self,
        operation: BulkMergeOperation,
        status: BulkMergeStatus,
        now: datetime,
    ) -> None:
        operation.status = status
        if status is BulkMergeStatus.RUNNING:
            operation.started_at = now
        elif status is not BulkMergeStatus.PENDING:
            operation.finished_at = now
        await self.flush()
