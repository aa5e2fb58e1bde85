"""GitHub adapter built on githubkit.

Supports github.com and GitHub Enterprise Server (``{instance}/api/v3``).
githubkit's own retry is disabled; retries belong to the sync scheduler.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

from githubkit import GitHub
from githubkit.exception import RequestError, RequestFailed, RequestTimeout

from ampel_sync.exceptions import (
    AuthError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)
from ampel_sync.logging import get_logger

from .auth import bearer_auth_header
from .base import DEFAULT_TIMEOUT, convert_pull_requests, map_http_error, parse_datetime
from .normalize import (
    GITHUB_CHECK_CONCLUSION,
    GITHUB_CHECK_STATUS,
    GITHUB_REVIEW_STATE,
    lookup,
    normalize_pr_status,
    normalize_status,
)
from .schemas import (
    CICheck,
    CredentialValidation,
    Credentials,
    DiffFile,
    MergeResult,
    MergeStrategy,
    Page,
    ProviderKind,
    ProviderPullRequest,
    ProviderRepository,
    ProviderUser,
    PullRequestDiff,
    RateLimitInfo,
    Review,
)

if TYPE_CHECKING:
    from ampel_sync.rate_limit.tracker import RateLimitTracker

logger = get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"

# Merge endpoint answers that mean "not mergeable right now", not a broken credential
NOT_MERGEABLE_STATUSES = frozenset({405, 406, 409, 422})


def github_api_url(instance_url: str | None) -> str:
    """Resolve the REST base URL for github.com or an Enterprise instance."""
    if not instance_url:
        return GITHUB_API_URL
    base = instance_url.rstrip("/")
    if base.endswith("/api/v3"):
        return base
    return f"{base}/api/v3"


def _dump(parsed: Any) -> Any:
    """Convert githubkit parsed models into plain dicts."""
    if isinstance(parsed, list):
        return [_dump(item) for item in parsed]
    if isinstance(parsed, dict):
        return parsed
    return parsed.model_dump()


def _header_dict(response: Any) -> dict[str, str]:
    headers = getattr(response, "headers", None)
    if isinstance(headers, Mapping):
        return {str(k).lower(): str(v) for k, v in headers.items()}
    return {}


def _login(user: Mapping[str, Any] | None) -> str:
    # Deleted accounts come back as null users
    return user["login"] if user else "ghost"


class GitHubAdapter:
    """Provider adapter for GitHub.

    Usage:
        adapter = GitHubAdapter(Credentials(token="ghp_..."))
        page = await adapter.list_pull_requests("octo", "repo")
        for pr in page.items:
            print(pr.number, pr.status)
    """

    kind: ClassVar[ProviderKind] = ProviderKind.GITHUB

    # The list endpoint omits mergeable_state, so conflicts need a detail fetch
    list_includes_conflicts: ClassVar[bool] = False

    def __init__(
        self,
        credentials: Credentials,
        instance_url: str | None = None,
        *,
        account_id: int | None = None,
        tracker: RateLimitTracker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = 50,
    ) -> None:
        """Initialize the adapter.

        Args:
            credentials: Decrypted credentials (token only)
            instance_url: GitHub Enterprise URL, or None for github.com
            account_id: Account the calls are billed to (None while validating)
            tracker: Optional RateLimitTracker updated from response headers
            timeout: Per-request timeout in seconds
            page_size: Items requested per page (max 100)
        """
        bearer_auth_header(credentials)  # rejects empty tokens before any call
        self._token = credentials.token
        self._api_url = github_api_url(instance_url)
        self._account_id = account_id
        self._tracker = tracker
        self._timeout = timeout
        self._page_size = min(page_size, 100)
        self._client: GitHub[Any] | None = None

    @property
    def _github(self) -> GitHub[Any]:
        """Get or create the githubkit client instance."""
        if self._client is None:
            self._client = GitHub(
                self._token,
                base_url=self._api_url,
                timeout=self._timeout,
                auto_retry=False,
            )
        return self._client

    async def close(self) -> None:
        """Drop the githubkit client."""
        self._client = None

    async def __aenter__(self) -> GitHubAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------
    async def _call(
        self,
        context: str,
        endpoint: Callable[..., Awaitable[Any]],
        **kwargs: Any,
    ) -> Any:
        """Invoke a githubkit endpoint, mapping failures onto provider errors."""
        try:
            response = await endpoint(**kwargs)
        except RequestFailed as e:
            headers = _header_dict(e.response)
            self._track(headers)
            error = map_http_error(e.response.status_code, headers, context)
            if (
                isinstance(error, RateLimitedError)
                and self._tracker is not None
                and self._account_id is not None
            ):
                self._tracker.mark_rate_limited(self._account_id, error.retry_at())
            raise error from e
        except RequestTimeout as e:
            raise ProviderTimeoutError(f"{context}: timed out after {self._timeout}s") from e
        except RequestError as e:
            raise ProviderUnavailableError(f"{context}: {e}") from e

        self._track(_header_dict(response))
        return response

    def _track(self, headers: Mapping[str, str]) -> None:
        if self._tracker is None or self._account_id is None or not headers:
            return
        self._tracker.record_headers(self._account_id, headers)

    async def _paginate(
        self,
        context: str,
        endpoint: Callable[..., Any],
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        """Collect every item of a paginated endpoint.

        Pages go through ``_call`` one by one so each response feeds the
        rate limit tracker.
        """
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            resp = await self._call(context, endpoint, per_page=100, page=page, **kwargs)
            batch = _dump(resp.parsed_data)
            items.extend(batch)
            link = _header_dict(resp).get("link")
            has_more = 'rel="next"' in link if link is not None else len(batch) >= 100
            if not has_more:
                return items
            page += 1

    def _page(
        self, response: Any, items: list[Any], page: int, raw_count: int | None = None
    ) -> Page[Any]:
        link = _header_dict(response).get("link")
        if link is not None:
            has_more = 'rel="next"' in link
        else:
            has_more = (len(items) if raw_count is None else raw_count) >= self._page_size
        return Page(items=items, has_more=has_more, next_cursor=str(page + 1) if has_more else None)

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------
    def _to_repository(self, data: Mapping[str, Any]) -> ProviderRepository:
        return ProviderRepository(
            remote_id=str(data["id"]),
            owner=data["owner"]["login"],
            name=data["name"],
            full_name=data["full_name"],
            default_branch=data.get("default_branch"),
            is_private=bool(data.get("private", False)),
            is_archived=bool(data.get("archived", False)),
            url=data.get("html_url"),
        )

    def _to_pull_request(self, data: Mapping[str, Any]) -> ProviderPullRequest:
        draft = bool(data.get("draft", False))
        return ProviderPullRequest(
            number=data["number"],
            title=data["title"],
            author=_login(data.get("user")),
            source_branch=data["head"]["ref"],
            target_branch=data["base"]["ref"],
            status=normalize_pr_status(
                self.kind,
                data["state"],
                draft=draft,
                merged=bool(data.get("merged_at") or data.get("merged")),
            ),
            is_draft=draft,
            has_conflicts=data.get("mergeable_state") == "dirty",
            head_sha=data["head"].get("sha"),
            url=data.get("html_url"),
            requested_reviewers=[u["login"] for u in data.get("requested_reviewers") or []],
            updated_at=parse_datetime(data.get("updated_at")),
        )

    def _to_check(self, data: Mapping[str, Any]) -> CICheck:
        if data.get("status") == "completed":
            status = lookup(
                GITHUB_CHECK_CONCLUSION,
                data.get("conclusion"),
                provider=self.kind,
                field="check conclusion",
            )
        else:
            status = lookup(
                GITHUB_CHECK_STATUS, data.get("status"), provider=self.kind, field="check status"
            )
        return CICheck(name=data["name"], status=status, url=data.get("html_url"))

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------
    async def validate_credentials(self) -> CredentialValidation:
        """Check the token by fetching the authenticated user.

        A rejected token yields ``is_valid=False``; other failures propagate.
        """
        try:
            resp = await self._call("validate credentials", self._github.rest.users.async_get_authenticated)
        except AuthError as e:
            return CredentialValidation(is_valid=False, error_message=str(e))

        user = _dump(resp.parsed_data)
        headers = _header_dict(resp)
        scopes = [s.strip() for s in headers.get("x-oauth-scopes", "").split(",") if s.strip()]
        return CredentialValidation(
            is_valid=True,
            remote_user_id=str(user["id"]),
            username=user["login"],
            scopes=scopes,
            expires_at=_parse_token_expiry(headers.get("github-authentication-token-expiration")),
        )

    async def get_user(self) -> ProviderUser:
        resp = await self._call("get user", self._github.rest.users.async_get_authenticated)
        user = _dump(resp.parsed_data)
        return ProviderUser(
            remote_id=str(user["id"]),
            username=user["login"],
            email=user.get("email"),
            avatar_url=user.get("avatar_url"),
        )

    # -------------------------------------------------------------------------
    # Repositories
    # -------------------------------------------------------------------------
    async def list_repositories(self, cursor: str | None = None) -> Page[ProviderRepository]:
        page = int(cursor or 1)
        resp = await self._call(
            "list repositories",
            self._github.rest.repos.async_list_for_authenticated_user,
            per_page=self._page_size,
            page=page,
            sort="updated",
        )
        items = [self._to_repository(r) for r in _dump(resp.parsed_data)]
        return self._page(resp, items, page)

    async def get_repository(self, owner: str, name: str) -> ProviderRepository:
        resp = await self._call(
            f"get repository {owner}/{name}",
            self._github.rest.repos.async_get,
            owner=owner,
            repo=name,
        )
        return self._to_repository(_dump(resp.parsed_data))

    # -------------------------------------------------------------------------
    # Pull Requests
    # -------------------------------------------------------------------------
    async def list_pull_requests(
        self,
        owner: str,
        name: str,
        state: str = "open",
        cursor: str | None = None,
    ) -> Page[ProviderPullRequest]:
        """List pull requests ("open", "closed" or "all"), one page at a time."""
        page = int(cursor or 1)
        resp = await self._call(
            f"list pull requests {owner}/{name}",
            self._github.rest.pulls.async_list,
            owner=owner,
            repo=name,
            state=state,
            per_page=self._page_size,
            page=page,
        )
        raw = _dump(resp.parsed_data)
        items, unmapped = convert_pull_requests(raw, self._to_pull_request, "number")
        result = self._page(resp, items, page, raw_count=len(raw))
        result.unmapped = unmapped
        return result

    async def get_pull_request(self, owner: str, name: str, number: int) -> ProviderPullRequest:
        resp = await self._call(
            f"get PR #{number} in {owner}/{name}",
            self._github.rest.pulls.async_get,
            owner=owner,
            repo=name,
            pull_number=number,
        )
        return self._to_pull_request(_dump(resp.parsed_data))

    async def get_ci_checks(self, owner: str, name: str, pr: ProviderPullRequest) -> list[CICheck]:
        """Check runs reported against the PR's head commit."""
        if not pr.head_sha:
            return []
        resp = await self._call(
            f"list check runs for {owner}/{name}@{pr.head_sha[:8]}",
            self._github.rest.checks.async_list_for_ref,
            owner=owner,
            repo=name,
            ref=pr.head_sha,
            per_page=100,
        )
        runs = _dump(resp.parsed_data).get("check_runs", [])
        return [self._to_check(run) for run in runs]

    async def get_reviews(self, owner: str, name: str, number: int) -> list[Review]:
        reviews = await self._paginate(
            f"list reviews for PR #{number} in {owner}/{name}",
            self._github.rest.pulls.async_list_reviews,
            owner=owner,
            repo=name,
            pull_number=number,
        )
        return [
            Review(
                reviewer=_login(r.get("user")),
                state=lookup(GITHUB_REVIEW_STATE, r.get("state"), provider=self.kind, field="review state"),
                submitted_at=parse_datetime(r.get("submitted_at")),
            )
            for r in reviews
        ]

    async def get_diff(self, owner: str, name: str, number: int) -> PullRequestDiff:
        """Changed files with GitHub's own line counts; binary files carry no patch."""
        files = await self._paginate(
            f"list files for PR #{number} in {owner}/{name}",
            self._github.rest.pulls.async_list_files,
            owner=owner,
            repo=name,
            pull_number=number,
        )
        return PullRequestDiff(
            files=[
                DiffFile(
                    filename=f["filename"],
                    previous_filename=f.get("previous_filename"),
                    status=normalize_status(self.kind, f["status"]),
                    additions=f.get("additions", 0),
                    deletions=f.get("deletions", 0),
                    patch=f.get("patch"),
                )
                for f in files
            ]
        )

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
        """Merge a PR.

        405 (not mergeable) and 409 (head moved) come back as
        ``merged=False`` results rather than errors.
        """
        kwargs: dict[str, Any] = {"merge_method": strategy.value}
        if commit_title:
            kwargs["commit_title"] = commit_title
        if commit_message:
            kwargs["commit_message"] = commit_message
        if expected_sha:
            kwargs["sha"] = expected_sha

        source_branch: str | None = None
        if delete_branch:
            source_branch = (await self.get_pull_request(owner, name, number)).source_branch

        try:
            resp = await self._call(
                f"merge PR #{number} in {owner}/{name}",
                self._github.rest.pulls.async_merge,
                owner=owner,
                repo=name,
                pull_number=number,
                **kwargs,
            )
        except ProviderError as e:
            if e.status_code in NOT_MERGEABLE_STATUSES:
                return MergeResult(merged=False, message=str(e))
            raise

        data = _dump(resp.parsed_data)
        result = MergeResult(
            merged=bool(data.get("merged")),
            sha=data.get("sha"),
            message=data.get("message") or "",
        )
        if result.merged and source_branch:
            await self._delete_branch(owner, name, source_branch)
        return result

    async def _delete_branch(self, owner: str, name: str, branch: str) -> None:
        try:
            await self._call(
                f"delete branch {branch} in {owner}/{name}",
                self._github.rest.git.async_delete_ref,
                owner=owner,
                repo=name,
                ref=f"heads/{branch}",
            )
        except ProviderError as e:
            # The merge itself succeeded; a leftover branch is only reported
            logger.warning("Merged but could not delete branch {}: {}", branch, e)

    # -------------------------------------------------------------------------
    # Rate Limit Info
    # -------------------------------------------------------------------------
    async def get_rate_limit(self) -> RateLimitInfo:
        """Core rate limit window (the endpoint itself is free)."""
        resp = await self._call("get rate limit", self._github.rest.rate_limit.async_get)
        core = _dump(resp.parsed_data)["resources"]["core"]
        info = RateLimitInfo(
            limit=core["limit"],
            remaining=core["remaining"],
            reset_at=datetime.fromtimestamp(core["reset"], tz=UTC),
        )
        if self._tracker is not None and self._account_id is not None:
            self._tracker.record(self._account_id, info.remaining, info.limit, info.reset_at)
        return info


def _parse_token_expiry(value: str | None) -> datetime | None:
    """Parse GitHub's token expiry header ("2026-01-01 00:00:00 UTC")."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.replace(" UTC", "").strip(), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        logger.warning("Unrecognized token expiry header: {}", value)
        return None
    return parsed.replace(tzinfo=UTC)


__all__ = ["GitHubAdapter", "github_api_url"]
