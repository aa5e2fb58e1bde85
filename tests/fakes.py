"""In-memory test doubles for provider adapters, notifications and time.

``FakeProvider`` holds the remote state (repositories, pull requests,
checks, reviews) and scripted failures; every adapter created by
``FakeAdapterFactory`` reads from the same provider and records its calls.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, ClassVar

from ampel_sync.exceptions import NotFoundError, UnmappedStatusError, ValidationError
from ampel_sync.notifications import Event, EventKind
from ampel_sync.providers.schemas import (
    CICheck,
    CredentialValidation,
    Credentials,
    MergeResult,
    MergeStrategy,
    Page,
    PRStatus,
    ProviderKind,
    ProviderPullRequest,
    ProviderRepository,
    ProviderUser,
    PullRequestDiff,
    RateLimitInfo,
    Review,
)
from ampel_sync.rate_limit import RateLimitTracker


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Keeps emitted events in memory."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def notify(self, event: Event) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[Event]:
        return [e for e in self.events if e.kind is kind]


class FakeProvider:
    """Remote state shared by every fake adapter."""

    def __init__(self) -> None:
        self.validations: dict[str, CredentialValidation] = {}
        self.repositories: dict[str, ProviderRepository] = {}
        self.pull_requests: dict[str, dict[int, ProviderPullRequest]] = {}
        self.checks: dict[tuple[str, int], list[CICheck]] = {}
        self.reviews: dict[tuple[str, int], list[Review]] = {}
        self.merge_results: dict[tuple[str, int], MergeResult] = {}
        # PRs whose native state the adapter cannot normalize: (full_name, number) -> value
        self.unmapped: dict[tuple[str, int], str] = {}
        # Scripted failures: key -> exception raised on every matching call.
        # Keys are "operation" or "operation:full_name" or "operation:full_name#number"
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.list_includes_conflicts = True

    # -------------------------------------------------------------------------
    # Arrange helpers
    # -------------------------------------------------------------------------
    def accept(self, token: str, *, user_id: str = "1", username: str = "alice", **extra: Any) -> None:
        self.validations[token] = CredentialValidation(
            is_valid=True, remote_user_id=user_id, username=username, **extra
        )

    def reject(self, token: str, message: str = "Bad credentials") -> None:
        self.validations[token] = CredentialValidation(is_valid=False, error_message=message)

    def add_repository(self, full_name: str) -> ProviderRepository:
        owner, _, name = full_name.rpartition("/")
        repo = ProviderRepository(
            remote_id=str(len(self.repositories) + 100),
            owner=owner,
            name=name,
            full_name=full_name,
            default_branch="main",
            url=f"https://example.test/{full_name}",
        )
        self.repositories[full_name] = repo
        self.pull_requests.setdefault(full_name, {})
        return repo

    def add_pull_request(
        self,
        full_name: str,
        number: int,
        *,
        checks: list[CICheck] | None = None,
        reviews: list[Review] | None = None,
        **fields: Any,
    ) -> ProviderPullRequest:
        values: dict[str, Any] = {
            "number": number,
            "title": f"Change {number}",
            "author": "bob",
            "source_branch": f"feature-{number}",
            "target_branch": "main",
            "status": PRStatus.OPEN,
            "head_sha": f"sha{number}",
        }
        values.update(fields)
        pr = ProviderPullRequest(**values)
        self.pull_requests.setdefault(full_name, {})[number] = pr
        self.checks[(full_name, number)] = checks or []
        self.reviews[(full_name, number)] = reviews or []
        return pr

    def add_unmapped_pull_request(self, full_name: str, number: int, native_state: str) -> None:
        self.unmapped[(full_name, number)] = native_state

    def _unmapped_error(self, full_name: str, number: int) -> UnmappedStatusError:
        return UnmappedStatusError("github", "PR state", self.unmapped[(full_name, number)])

    def set_status(self, full_name: str, number: int, status: PRStatus) -> None:
        pr = self.pull_requests[full_name][number]
        self.pull_requests[full_name][number] = pr.model_copy(update={"status": status})

    def fail(self, key: str, error: Exception) -> None:
        self.errors[key] = error

    def calls_of(self, operation: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == operation]

    # -------------------------------------------------------------------------
    # Internals used by FakeAdapter
    # -------------------------------------------------------------------------
    def _check(self, operation: str, full_name: str | None = None, number: int | None = None) -> None:
        self.calls.append((operation, full_name, number))
        keys = [operation]
        if full_name is not None:
            keys.append(f"{operation}:{full_name}")
            if number is not None:
                keys.append(f"{operation}:{full_name}#{number}")
        for key in reversed(keys):
            if key in self.errors:
                raise self.errors[key]


class FakeAdapter:
    """ProviderAdapter over a FakeProvider."""

    kind: ClassVar[ProviderKind] = ProviderKind.GITHUB

    def __init__(
        self,
        provider: FakeProvider,
        kind: ProviderKind,
        credentials: Credentials,
        account_id: int | None,
    ) -> None:
        self._provider = provider
        self.kind = kind  # type: ignore[misc]
        self.credentials = credentials
        self.account_id = account_id
        self.list_includes_conflicts = provider.list_includes_conflicts
        self.closed = False

    async def validate_credentials(self) -> CredentialValidation:
        self._provider._check("validate_credentials")
        return self._provider.validations.get(
            self.credentials.token,
            CredentialValidation(is_valid=False, error_message="Unknown token"),
        )

    async def get_user(self) -> ProviderUser:
        self._provider._check("get_user")
        validation = await self.validate_credentials()
        return ProviderUser(remote_id=validation.remote_user_id or "", username=validation.username or "")

    async def list_repositories(self, cursor: str | None = None) -> Page[ProviderRepository]:
        self._provider._check("list_repositories")
        return Page(items=list(self._provider.repositories.values()))

    async def get_repository(self, owner: str, name: str) -> ProviderRepository:
        full_name = f"{owner}/{name}"
        self._provider._check("get_repository", full_name)
        try:
            return self._provider.repositories[full_name]
        except KeyError:
            raise NotFoundError(f"{full_name}: not found", 404) from None

    async def list_pull_requests(
        self, owner: str, name: str, state: str = "open", cursor: str | None = None
    ) -> Page[ProviderPullRequest]:
        full_name = f"{owner}/{name}"
        self._provider._check("list_pull_requests", full_name)
        prs = [
            pr
            for pr in self._provider.pull_requests.get(full_name, {}).values()
            if (state != "open" or pr.status in (PRStatus.OPEN, PRStatus.DRAFT))
            and (full_name, pr.number) not in self._provider.unmapped
        ]
        unmapped = {
            number: str(self._provider._unmapped_error(repo_name, number))
            for repo_name, number in self._provider.unmapped
            if repo_name == full_name
        }
        return Page(items=sorted(prs, key=lambda pr: pr.number), unmapped=unmapped)

    async def get_pull_request(self, owner: str, name: str, number: int) -> ProviderPullRequest:
        full_name = f"{owner}/{name}"
        self._provider._check("get_pull_request", full_name, number)
        if (full_name, number) in self._provider.unmapped:
            raise self._provider._unmapped_error(full_name, number)
        try:
            return self._provider.pull_requests[full_name][number]
        except KeyError:
            raise NotFoundError(f"{full_name}#{number}: not found", 404) from None

    async def get_ci_checks(self, owner: str, name: str, pr: ProviderPullRequest) -> list[CICheck]:
        full_name = f"{owner}/{name}"
        self._provider._check("get_ci_checks", full_name, pr.number)
        return list(self._provider.checks.get((full_name, pr.number), []))

    async def get_reviews(self, owner: str, name: str, number: int) -> list[Review]:
        full_name = f"{owner}/{name}"
        self._provider._check("get_reviews", full_name, number)
        return list(self._provider.reviews.get((full_name, number), []))

    async def get_diff(self, owner: str, name: str, number: int) -> PullRequestDiff:
        self._provider._check("get_diff", f"{owner}/{name}", number)
        return PullRequestDiff(files=[])

    async def merge_pull_request(
        self,
        owner: str,
        name: str,
        number: int,
        strategy: MergeStrategy,
        *,
        delete_branch: bool = False,
        commit_title: str | None = None,
        commit_message: str | None = None,
        expected_sha: str | None = None,
    ) -> MergeResult:
        full_name = f"{owner}/{name}"
        self._provider._check("merge_pull_request", full_name, number)
        result = self._provider.merge_results.get(
            (full_name, number), MergeResult(merged=True, sha=f"merged{number}")
        )
        if result.merged:
            self._provider.set_status(full_name, number, PRStatus.MERGED)
        return result

    async def get_rate_limit(self) -> RateLimitInfo:
        self._provider._check("get_rate_limit")
        return RateLimitInfo(limit=5000, remaining=5000, reset_at=datetime(2030, 1, 1))

    async def close(self) -> None:
        self.closed = True


class FakeAdapterFactory:
    """Stands in for ProviderAdapterFactory."""

    def __init__(self, provider: FakeProvider, tracker: RateLimitTracker | None = None) -> None:
        self.provider = provider
        self.tracker = tracker
        self.created: list[FakeAdapter] = []

    def create(
        self,
        provider: ProviderKind | str,
        credentials: Credentials,
        instance_url: str | None = None,
        account_id: int | None = None,
    ) -> FakeAdapter:
        kind = ProviderKind(provider)
        if kind is ProviderKind.BITBUCKET and not credentials.username:
            raise ValidationError("Bitbucket app passwords require a username")
        adapter = FakeAdapter(self.provider, kind, credentials, account_id)
        self.created.append(adapter)
        return adapter
