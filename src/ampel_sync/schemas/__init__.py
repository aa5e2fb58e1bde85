"""Pydantic schemas for the exposed API.

Input validation and output serialization for accounts, the dashboard
and bulk merges.
"""

from .account import AccountCreate, AccountRead
from .base import SchemaBase
from .bulk_merge import BulkMergeItemRead, BulkMergeRead, BulkMergeRequest
from .dashboard import DashboardRow, DashboardSnapshot
from .repository import RepositoryRead, parse_repo_string

__all__ = [
    # Accounts
    "AccountCreate",
    "AccountRead",
    # Bulk merge
    "BulkMergeItemRead",
    "BulkMergeRead",
    "BulkMergeRequest",
    # Dashboard
    "DashboardRow",
    "DashboardSnapshot",
    # Repository
    "RepositoryRead",
    "parse_repo_string",
    # Base
    "SchemaBase",
]
