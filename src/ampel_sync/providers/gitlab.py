"""GitLab adapter (gitlab.com and self-managed) over the v4 REST API."""

from __future__ import annotations

from typing import Any, ClassVar
from urllib.parse import quote

from ampel_sync.exceptions import AuthError, NotFoundError, ProviderError

from .base import HttpProviderAdapter, convert_pull_requests, parse_datetime
from .normalize import (
    GITLAB_JOB_STATUS,
    count_patch_lines,
    gitlab_file_state,
    lookup,
    normalize_pr_status,
    normalize_status,
)
from .schemas import (
    CICheck,
    CredentialValidation,
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
    ReviewState,
)

GITLAB_URL = "https://gitlab.com"

# PR state filter values accepted by list_pull_requests, in GitLab's terms
_STATE_FILTER = {"open": "opened", "closed": "closed", "merged": "merged", "all": "all"}

NOT_MERGEABLE_STATUSES = frozenset({405, 406, 409, 422})


def gitlab_api_url(instance_url: str | None) -> str:
    base = (instance_url or GITLAB_URL).rstrip("/")
    if base.endswith("/api/v4"):
        return base
    return f"{base}/api/v4"


def _project_path(owner: str, name: str) -> str:
    """URL-encoded ``namespace/project`` identifier (nested groups included)."""
    return quote(f"{owner}/{name}", safe="")


class GitLabAdapter(HttpProviderAdapter):
    """Provider adapter for GitLab merge requests.

    Pagination follows the ``x-next-page`` header; CI status comes from the
    jobs of the MR's latest pipeline and reviews from its approvals.
    """

    kind: ClassVar[ProviderKind] = ProviderKind.GITLAB
    default_limit: ClassVar[int | None] = 2000
    list_includes_conflicts: ClassVar[bool] = True

    def _paged(self, response: Any, items: list[Any]) -> Page[Any]:
        next_page = response.headers.get("x-next-page") or None
        return Page(items=items, has_more=next_page is not None, next_cursor=next_page)

    async def _collect(self, path: str, context: str, **params: Any) -> list[dict[str, Any]]:
        """Fetch every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page: str | None = "1"
        while page is not None:
            response = await self._request(
                "GET",
                path,
                params={**params, "per_page": 100, "page": page},
                context=context,
            )
            items.extend(response.json())
            page = response.headers.get("x-next-page") or None
        return items

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------
    def _to_repository(self, data: dict[str, Any]) -> ProviderRepository:
        namespace, _, name = data["path_with_namespace"].rpartition("/")
        return ProviderRepository(
            remote_id=str(data["id"]),
            owner=namespace,
            name=name,
            full_name=data["path_with_namespace"],
            default_branch=data.get("default_branch"),
            is_private=data.get("visibility", "private") != "public",
            is_archived=bool(data.get("archived", False)),
            url=data.get("web_url"),
        )

    def _to_pull_request(self, data: dict[str, Any]) -> ProviderPullRequest:
        draft = bool(data.get("draft", data.get("work_in_progress", False)))
        return ProviderPullRequest(
            number=data["iid"],
            title=data["title"],
            author=data["author"]["username"],
            source_branch=data["source_branch"],
            target_branch=data["target_branch"],
            status=normalize_pr_status(self.kind, data["state"], draft=draft),
            is_draft=draft,
            has_conflicts=bool(data.get("has_conflicts", False)),
            head_sha=data.get("sha"),
            url=data.get("web_url"),
            requested_reviewers=[r["username"] for r in data.get("reviewers") or []],
            updated_at=parse_datetime(data.get("updated_at")),
        )

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------
    async def validate_credentials(self) -> CredentialValidation:
        try:
            user = await self._get_json("/user", context="validate credentials")
        except AuthError as e:
            return CredentialValidation(is_valid=False, error_message=str(e))

        scopes: list[str] = []
        expires_at = None
        try:
            token = await self._get_json(
                "/personal_access_tokens/self", context="inspect token"
            )
        except (AuthError, NotFoundError):
            # Older instances and OAuth tokens do not expose token metadata
            pass
        else:
            scopes = list(token.get("scopes") or [])
            expires_at = parse_datetime(token.get("expires_at"))

        return CredentialValidation(
            is_valid=True,
            remote_user_id=str(user["id"]),
            username=user["username"],
            scopes=scopes,
            expires_at=expires_at,
        )

    async def get_user(self) -> ProviderUser:
        user = await self._get_json("/user", context="get user")
        return ProviderUser(
            remote_id=str(user["id"]),
            username=user["username"],
            email=user.get("email") or user.get("public_email") or None,
            avatar_url=user.get("avatar_url"),
        )

    # -------------------------------------------------------------------------
    # Repositories
    # -------------------------------------------------------------------------
    async def list_repositories(self, cursor: str | None = None) -> Page[ProviderRepository]:
        response = await self._request(
            "GET",
            "/projects",
            params={
                "membership": "true",
                "order_by": "last_activity_at",
                "per_page": self._page_size,
                "page": cursor or "1",
            },
            context="list projects",
        )
        return self._paged(response, [self._to_repository(p) for p in response.json()])

    async def get_repository(self, owner: str, name: str) -> ProviderRepository:
        data = await self._get_json(
            f"/projects/{_project_path(owner, name)}",
            context=f"get project {owner}/{name}",
        )
        return self._to_repository(data)

    # -------------------------------------------------------------------------
    # Merge Requests
    # -------------------------------------------------------------------------
    async def list_pull_requests(
        self,
        owner: str,
        name: str,
        state: str = "open",
        cursor: str | None = None,
    ) -> Page[ProviderPullRequest]:
        response = await self._request(
            "GET",
            f"/projects/{_project_path(owner, name)}/merge_requests",
            params={
                "state": _STATE_FILTER.get(state, state),
                "per_page": self._page_size,
                "page": cursor or "1",
            },
            context=f"list merge requests {owner}/{name}",
        )
        items, unmapped = convert_pull_requests(response.json(), self._to_pull_request, "iid")
        result = self._paged(response, items)
        result.unmapped = unmapped
        return result

    async def get_pull_request(self, owner: str, name: str, number: int) -> ProviderPullRequest:
        data = await self._get_json(
            f"/projects/{_project_path(owner, name)}/merge_requests/{number}",
            context=f"get MR !{number} in {owner}/{name}",
        )
        return self._to_pull_request(data)

    async def get_ci_checks(self, owner: str, name: str, pr: ProviderPullRequest) -> list[CICheck]:
        """Jobs of the most recent pipeline; no pipeline means no checks."""
        project = _project_path(owner, name)
        pipelines = await self._get_json(
            f"/projects/{project}/merge_requests/{pr.number}/pipelines",
            context=f"list pipelines for MR !{pr.number} in {owner}/{name}",
        )
        if not pipelines:
            return []

        latest = max(pipelines, key=lambda p: p["id"])
        jobs = await self._collect(
            f"/projects/{project}/pipelines/{latest['id']}/jobs",
            f"list jobs for pipeline {latest['id']} in {owner}/{name}",
        )
        return [
            CICheck(
                name=job["name"],
                status=lookup(GITLAB_JOB_STATUS, job["status"], provider=self.kind, field="job status"),
                url=job.get("web_url"),
            )
            for job in jobs
        ]

    async def get_reviews(self, owner: str, name: str, number: int) -> list[Review]:
        """Approvals as APPROVED reviews (GitLab has no changes-requested state)."""
        data = await self._get_json(
            f"/projects/{_project_path(owner, name)}/merge_requests/{number}/approvals",
            context=f"get approvals for MR !{number} in {owner}/{name}",
        )
        return [
            Review(reviewer=entry["user"]["username"], state=ReviewState.APPROVED)
            for entry in data.get("approved_by") or []
        ]

    async def get_diff(self, owner: str, name: str, number: int) -> PullRequestDiff:
        """Changed files with line counts computed from the patch text."""
        diffs = await self._collect(
            f"/projects/{_project_path(owner, name)}/merge_requests/{number}/diffs",
            f"list diffs for MR !{number} in {owner}/{name}",
        )
        files = []
        for diff in diffs:
            patch = diff.get("diff") or None
            additions, deletions = count_patch_lines(patch)
            native = gitlab_file_state(
                new_file=bool(diff.get("new_file")),
                deleted_file=bool(diff.get("deleted_file")),
                renamed_file=bool(diff.get("renamed_file")),
            )
            renamed = bool(diff.get("renamed_file"))
            files.append(
                DiffFile(
                    filename=diff["new_path"],
                    previous_filename=diff.get("old_path") if renamed else None,
                    status=normalize_status(self.kind, native),
                    additions=additions,
                    deletions=deletions,
                    patch=patch,
                )
            )
        return PullRequestDiff(files=files)

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
        """Accept a merge request.

        GitLab decides merge vs. fast-forward from project settings, so
        REBASE is sent as a plain merge; SQUASH sets ``squash``.
        """
        body: dict[str, Any] = {
            "squash": strategy is MergeStrategy.SQUASH,
            "should_remove_source_branch": delete_branch,
        }
        if expected_sha:
            body["sha"] = expected_sha
        message = "\n\n".join(part for part in (commit_title, commit_message) if part)
        if message:
            key = "squash_commit_message" if strategy is MergeStrategy.SQUASH else "merge_commit_message"
            body[key] = message

        try:
            response = await self._request(
                "PUT",
                f"/projects/{_project_path(owner, name)}/merge_requests/{number}/merge",
                json=body,
                context=f"merge MR !{number} in {owner}/{name}",
            )
        except ProviderError as e:
            if e.status_code in NOT_MERGEABLE_STATUSES:
                return MergeResult(merged=False, message=str(e))
            raise

        data = response.json()
        merged = data.get("state") == "merged"
        return MergeResult(
            merged=merged,
            sha=data.get("merge_commit_sha") or data.get("squash_commit_sha"),
            message="Merged" if merged else f"Merge request is {data.get('state')}",
        )

    # -------------------------------------------------------------------------
    # Rate Limit Info
    # -------------------------------------------------------------------------
    async def get_rate_limit(self) -> RateLimitInfo:
        """Quota from response headers (GitLab has no quota endpoint)."""
        return await self._fetch_rate_limit("/user")
