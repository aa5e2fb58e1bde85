"""Bulk merge of many pull requests as one tracked operation."""

from .orchestrator import BulkMergeOrchestrator, item_counts, overall_status

__all__ = ["BulkMergeOrchestrator", "item_counts", "overall_status"]
