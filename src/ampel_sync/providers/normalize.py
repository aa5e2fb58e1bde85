"""Mapping tables from provider-native vocabularies to canonical enums.

Every lookup is strict: a value missing from a table raises
UnmappedStatusError instead of falling back to a default, so upstream API
changes surface as sync failures rather than silently wrong data.
"""

from collections.abc import Mapping
from typing import TypeVar

from ampel_sync.exceptions import UnmappedStatusError
from ampel_sync.logging import get_logger

from .schemas import CIStatus, DiffFileStatus, PRStatus, ProviderKind, ReviewState

logger = get_logger(__name__)

V = TypeVar("V")

# ------------------------------------------------------------------------------
# Diff file status
# ------------------------------------------------------------------------------
GITHUB_FILE_STATUS: Mapping[str, DiffFileStatus] = {
    "added": DiffFileStatus.ADDED,
    "modified": DiffFileStatus.MODIFIED,
    "removed": DiffFileStatus.REMOVED,
    "renamed": DiffFileStatus.RENAMED,
    "copied": DiffFileStatus.ADDED,
    "changed": DiffFileStatus.MODIFIED,
    "unchanged": DiffFileStatus.MODIFIED,
}

# GitLab has no status field; the adapter derives one of these from the
# new_file / deleted_file / renamed_file flags.
GITLAB_FILE_STATUS: Mapping[str, DiffFileStatus] = {
    "new": DiffFileStatus.ADDED,
    "deleted": DiffFileStatus.REMOVED,
    "renamed": DiffFileStatus.RENAMED,
    "modified": DiffFileStatus.MODIFIED,
}

BITBUCKET_FILE_STATUS: Mapping[str, DiffFileStatus] = {
    "added": DiffFileStatus.ADDED,
    "modified": DiffFileStatus.MODIFIED,
    "removed": DiffFileStatus.REMOVED,
    "renamed": DiffFileStatus.RENAMED,
    "moved": DiffFileStatus.RENAMED,
    "merge conflict": DiffFileStatus.MODIFIED,
    "local deleted": DiffFileStatus.REMOVED,
    "remote deleted": DiffFileStatus.REMOVED,
}

# ------------------------------------------------------------------------------
# Pull request state
# ------------------------------------------------------------------------------
GITHUB_PR_STATE: Mapping[str, PRStatus] = {
    "open": PRStatus.OPEN,
    "closed": PRStatus.CLOSED,
}

GITLAB_PR_STATE: Mapping[str, PRStatus] = {
    "opened": PRStatus.OPEN,
    "merged": PRStatus.MERGED,
    "closed": PRStatus.CLOSED,
    "locked": PRStatus.CLOSED,
}

BITBUCKET_PR_STATE: Mapping[str, PRStatus] = {
    "open": PRStatus.OPEN,
    "merged": PRStatus.MERGED,
    "declined": PRStatus.CLOSED,
    "superseded": PRStatus.CLOSED,
}

# ------------------------------------------------------------------------------
# CI status
# ------------------------------------------------------------------------------
GITHUB_CHECK_STATUS: Mapping[str, CIStatus] = {
    "queued": CIStatus.QUEUED,
    "requested": CIStatus.QUEUED,
    "waiting": CIStatus.QUEUED,
    "pending": CIStatus.QUEUED,
    "in_progress": CIStatus.IN_PROGRESS,
}

GITHUB_CHECK_CONCLUSION: Mapping[str, CIStatus] = {
    "success": CIStatus.SUCCESS,
    "failure": CIStatus.FAILED,
    "timed_out": CIStatus.FAILED,
    "startup_failure": CIStatus.FAILED,
    "action_required": CIStatus.FAILED,
    "cancelled": CIStatus.CANCELLED,
    "skipped": CIStatus.SKIPPED,
    "neutral": CIStatus.NEUTRAL,
    "stale": CIStatus.NEUTRAL,
}

GITLAB_JOB_STATUS: Mapping[str, CIStatus] = {
    "created": CIStatus.QUEUED,
    "pending": CIStatus.QUEUED,
    "waiting_for_resource": CIStatus.QUEUED,
    "preparing": CIStatus.QUEUED,
    "scheduled": CIStatus.QUEUED,
    "running": CIStatus.IN_PROGRESS,
    "success": CIStatus.SUCCESS,
    "failed": CIStatus.FAILED,
    "canceled": CIStatus.CANCELLED,
    "skipped": CIStatus.SKIPPED,
    "manual": CIStatus.SKIPPED,
}

BITBUCKET_COMMIT_STATUS: Mapping[str, CIStatus] = {
    "inprogress": CIStatus.IN_PROGRESS,
    "successful": CIStatus.SUCCESS,
    "failed": CIStatus.FAILED,
    "stopped": CIStatus.CANCELLED,
}

# ------------------------------------------------------------------------------
# Review state
# ------------------------------------------------------------------------------
GITHUB_REVIEW_STATE: Mapping[str, ReviewState] = {
    "approved": ReviewState.APPROVED,
    "changes_requested": ReviewState.CHANGES_REQUESTED,
    "commented": ReviewState.COMMENTED,
    "dismissed": ReviewState.DISMISSED,
    "pending": ReviewState.PENDING,
}

BITBUCKET_PARTICIPANT_STATE: Mapping[str, ReviewState] = {
    "approved": ReviewState.APPROVED,
    "changes_requested": ReviewState.CHANGES_REQUESTED,
}

_FILE_STATUS_TABLES: Mapping[ProviderKind, Mapping[str, DiffFileStatus]] = {
    ProviderKind.GITHUB: GITHUB_FILE_STATUS,
    ProviderKind.GITLAB: GITLAB_FILE_STATUS,
    ProviderKind.BITBUCKET: BITBUCKET_FILE_STATUS,
}

_PR_STATE_TABLES: Mapping[ProviderKind, Mapping[str, PRStatus]] = {
    ProviderKind.GITHUB: GITHUB_PR_STATE,
    ProviderKind.GITLAB: GITLAB_PR_STATE,
    ProviderKind.BITBUCKET: BITBUCKET_PR_STATE,
}


def lookup(
    table: Mapping[str, V],
    value: str | None,
    *,
    provider: ProviderKind,
    field: str,
) -> V:
    """Look up a native value, case-insensitively.

    Raises:
        UnmappedStatusError: If the value has no entry in the table
    """
    key = (value or "").strip().lower()
    try:
        return table[key]
    except KeyError:
        error = UnmappedStatusError(provider.value, field, value)
        logger.error("Unmapped provider value: {}", error)
        raise error from None


def normalize_status(provider: ProviderKind, native: str) -> DiffFileStatus:
    """Map a provider-native diff file status onto DiffFileStatus."""
    return lookup(_FILE_STATUS_TABLES[provider], native, provider=provider, field="file status")


def normalize_pr_status(
    provider: ProviderKind,
    native: str,
    *,
    draft: bool = False,
    merged: bool = False,
) -> PRStatus:
    """Map a provider-native PR state onto PRStatus.

    Args:
        provider: Provider the value came from
        native: Native state string
        draft: Provider draft flag; turns an open PR into DRAFT
        merged: GitHub reports merged PRs as "closed" plus a merge timestamp

    Returns:
        Canonical PR status
    """
    status = lookup(_PR_STATE_TABLES[provider], native, provider=provider, field="PR state")
    if status is PRStatus.OPEN and draft:
        return PRStatus.DRAFT
    if status is PRStatus.CLOSED and merged:
        return PRStatus.MERGED
    return status


def gitlab_file_state(*, new_file: bool, deleted_file: bool, renamed_file: bool) -> str:
    """Derive GitLab's native file state key from its diff flags."""
    if new_file:
        return "new"
    if deleted_file:
        return "deleted"
    if renamed_file:
        return "renamed"
    return "modified"


def count_patch_lines(patch: str | None) -> tuple[int, int]:
    """Count added and deleted lines in unified diff text.

    File header lines (``+++`` / ``---``) before a hunk are not counted;
    inside a hunk every ``+``/``-`` line is content.

    Returns:
        (additions, deletions); (0, 0) when there is no patch text
    """
    if not patch:
        return 0, 0

    additions = 0
    deletions = 0
    in_hunk = False
    for line in patch.splitlines():
        if line.startswith("@@"):
            in_hunk = True
        elif line.startswith("diff --git"):
            in_hunk = False
        elif not in_hunk and line.startswith(("+++", "---")):
            continue
        elif line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions
