"""Result objects for sync operations.

Structured results provide consistent interfaces for monitoring,
error handling, and CLI output.
"""

from dataclasses import dataclass, field

from ampel_sync.db.models import SyncJobKind, SyncJobStatus


@dataclass
class PollResult:
    """Outcome of polling one repository."""

    repository_id: int
    open_prs: int = 0
    """Open pull requests returned by the provider."""

    written: int = 0
    """Snapshots created or rewritten."""

    closed: int = 0
    """Previously open snapshots that turned out merged or closed."""

    removed: int = 0
    """Snapshots deleted because the PR no longer exists."""

    ci_unknown: list[int] = field(default_factory=list)
    """PR numbers whose CI checks could not be fetched."""

    reviews_unknown: list[int] = field(default_factory=list)
    """PR numbers whose reviews could not be fetched."""

    unmapped: dict[int, str] = field(default_factory=dict)
    """PRs skipped because the provider sent an unmapped state (number -> reason)."""

    @property
    def degraded(self) -> bool:
        """True if any sub-resource was recorded as unknown."""
        return bool(self.ci_unknown or self.reviews_unknown)

    @property
    def item_error(self) -> str | None:
        """Summary stored as the repository's last sync error, if any PR failed."""
        if not self.unmapped:
            return None
        numbers = ", ".join(f"#{n}" for n in sorted(self.unmapped))
        first = self.unmapped[min(self.unmapped)]
        return f"{len(self.unmapped)} pull request(s) not synced ({numbers}): {first}"

    def to_dict(self) -> dict[str, object]:
        return {
            "repository_id": self.repository_id,
            "open_prs": self.open_prs,
            "written": self.written,
            "closed": self.closed,
            "removed": self.removed,
            "ci_unknown": self.ci_unknown,
            "reviews_unknown": self.reviews_unknown,
            "unmapped": {str(n): reason for n, reason in self.unmapped.items()},
        }


@dataclass
class JobOutcome:
    """What the scheduler did with one job run."""

    job_id: int
    kind: SyncJobKind
    status: SyncJobStatus
    """Status the job ended the run in (PENDING means rescheduled)."""

    error: str | None = None
    poll: PollResult | None = None
    consumed_attempt: bool = False

    @property
    def success(self) -> bool:
        return self.status is SyncJobStatus.DONE

    @property
    def rescheduled(self) -> bool:
        return self.status is SyncJobStatus.PENDING

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "success": self.success,
        }
        if self.error:
            result["error"] = self.error
        if self.poll:
            result["poll"] = self.poll.to_dict()
        return result
