"""Schemas for bulk merge requests and their progress."""

from datetime import datetime

from pydantic import Field

from ampel_sync.db.models import BulkMergeItemStatus, BulkMergeOperation, BulkMergeStatus
from ampel_sync.providers.schemas import MergeStrategy

from .base import SchemaBase


class BulkMergeRequest(SchemaBase):
    """Input for submitting a bulk merge."""

    snapshot_ids: list[int] = Field(min_length=1, description="Pull request snapshots, in order")
    strategy: MergeStrategy | None = Field(default=None, description="Configured default if None")
    delay_seconds: float | None = Field(default=None, ge=0)
    force: bool = Field(default=False, description="Merge Red pull requests too")
    delete_branch: bool | None = None


class BulkMergeItemRead(SchemaBase):
    id: int
    position: int
    snapshot_id: int | None
    repository_id: int | None
    pr_number: int
    status: BulkMergeItemStatus
    error: str | None
    merge_sha: str | None
    started_at: datetime | None
    finished_at: datetime | None


class BulkMergeRead(SchemaBase):
    """An operation with per-item results."""

    id: int
    owner_id: str | None
    strategy: MergeStrategy
    delete_branch: bool
    force: bool
    delay_seconds: float
    status: BulkMergeStatus
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    items: list[BulkMergeItemRead]

    @classmethod
    def from_operation(cls, operation: BulkMergeOperation) -> "BulkMergeRead":
        """Build from an operation whose items are loaded."""
        return cls.from_orm(operation)

    @property
    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in BulkMergeItemStatus}
        for item in self.items:
            counts[item.status.value] += 1
        return counts
