"""Traffic-light status derivation for pull requests.

``StatusEngine.compute`` is a pure function of one PR's state: it
collects every applicable blocker in rule order and returns the worst
color among them (red > yellow > green).

Rules:
    1. Draft                -> red     Draft
    2. Merge conflict       -> red     Conflicts
    3. Any CI check failed  -> red     CIFailed
    4. Changes requested    -> red     ChangesRequested
    5. CI pending           -> yellow  CIPending
       CI unknown           -> yellow  CIUnknown
    6. Approvals missing    -> yellow  AwaitingReview (none) / NeedsReview (some)
       Reviews unknown      -> yellow  ReviewsUnknown
    7. Otherwise            -> green
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from ampel_sync.config import StatusConfig, get_settings
from ampel_sync.providers.schemas import CICheck, CIStatus, Review, ReviewState


class AmpelStatus(StrEnum):
    """Traffic-light color (wire-stable)."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {AmpelStatus.GREEN: 0, AmpelStatus.YELLOW: 1, AmpelStatus.RED: 2}


class Blocker(StrEnum):
    """A named reason a PR is not ready to merge."""

    DRAFT = "Draft"
    CONFLICTS = "Conflicts"
    CI_FAILED = "CIFailed"
    CHANGES_REQUESTED = "ChangesRequested"
    CI_PENDING = "CIPending"
    CI_UNKNOWN = "CIUnknown"
    AWAITING_REVIEW = "AwaitingReview"
    NEEDS_REVIEW = "NeedsReview"
    REVIEWS_UNKNOWN = "ReviewsUnknown"

    @property
    def color(self) -> AmpelStatus:
        return _BLOCKER_COLOR[self]


_BLOCKER_COLOR = {
    Blocker.DRAFT: AmpelStatus.RED,
    Blocker.CONFLICTS: AmpelStatus.RED,
    Blocker.CI_FAILED: AmpelStatus.RED,
    Blocker.CHANGES_REQUESTED: AmpelStatus.RED,
    Blocker.CI_PENDING: AmpelStatus.YELLOW,
    Blocker.CI_UNKNOWN: AmpelStatus.YELLOW,
    Blocker.AWAITING_REVIEW: AmpelStatus.YELLOW,
    Blocker.NEEDS_REVIEW: AmpelStatus.YELLOW,
    Blocker.REVIEWS_UNKNOWN: AmpelStatus.YELLOW,
}

# Review states that replace a reviewer's earlier verdict
_VERDICT_STATES = frozenset(
    {ReviewState.APPROVED, ReviewState.CHANGES_REQUESTED, ReviewState.DISMISSED}
)

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class StatusInput:
    """The PR state the engine looks at.

    ``ci_checks`` / ``reviews`` are None when they could not be fetched.
    """

    is_draft: bool = False
    has_conflicts: bool = False
    ci_checks: list[CICheck] | None = field(default_factory=list)
    reviews: list[Review] | None = field(default_factory=list)
    requested_reviewers: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AmpelResult:
    """Derived color and blockers, in rule order."""

    color: AmpelStatus
    blockers: list[Blocker]

    @property
    def is_ready(self) -> bool:
        return self.color is AmpelStatus.GREEN


def latest_verdicts(reviews: list[Review]) -> dict[str, ReviewState]:
    """Latest approve/request-changes/dismiss per reviewer.

    Comments and pending reviews do not change a reviewer's verdict; a
    dismissal clears it.
    """
    ordered = sorted(
        enumerate(reviews),
        key=lambda pair: (pair[1].submitted_at or _EPOCH, pair[0]),
    )
    verdicts: dict[str, ReviewState] = {}
    for _, review in ordered:
        if review.state in _VERDICT_STATES:
            verdicts[review.reviewer] = review.state
    return verdicts


class StatusEngine:
    """Computes the ampel status of a single pull request.

    Usage:
        engine = StatusEngine()
        result = engine.compute(StatusInput(is_draft=True))
        result.color     # AmpelStatus.RED
        result.blockers  # [Blocker.DRAFT]
    """

    def __init__(self, config: StatusConfig | None = None) -> None:
        self._config = config or get_settings().status

    def required_approvals(self, requested_reviewers: list[str]) -> int:
        """Approvals a PR needs before it stops waiting for review."""
        if not requested_reviewers and not self._config.require_review_by_default:
            return 0
        return self._config.required_approvals

    def compute(self, pr: StatusInput) -> AmpelResult:
        blockers: list[Blocker] = []

        if pr.is_draft:
            blockers.append(Blocker.DRAFT)
        if pr.has_conflicts:
            blockers.append(Blocker.CONFLICTS)

        checks = pr.ci_checks
        if checks is not None and any(c.status is CIStatus.FAILED for c in checks):
            blockers.append(Blocker.CI_FAILED)

        verdicts = latest_verdicts(pr.reviews) if pr.reviews is not None else None
        if verdicts is not None and ReviewState.CHANGES_REQUESTED in verdicts.values():
            blockers.append(Blocker.CHANGES_REQUESTED)

        if checks is None:
            blockers.append(Blocker.CI_UNKNOWN)
        elif any(c.status.is_pending for c in checks):
            blockers.append(Blocker.CI_PENDING)

        if verdicts is None:
            blockers.append(Blocker.REVIEWS_UNKNOWN)
        else:
            approvals = sum(1 for state in verdicts.values() if state is ReviewState.APPROVED)
            required = self.required_approvals(pr.requested_reviewers)
            if approvals < required:
                blockers.append(Blocker.NEEDS_REVIEW if pr.reviews else Blocker.AWAITING_REVIEW)

        color = max((b.color for b in blockers), key=lambda c: c.severity, default=AmpelStatus.GREEN)
        return AmpelResult(color=color, blockers=blockers)
