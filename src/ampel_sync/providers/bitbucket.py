"""Bitbucket Cloud adapter over the 2.0 REST API.

Authenticates with username + app password (HTTP Basic). Paginated
responses are ``{"values": [...], "next": "<url>"}``; the ``next`` URL is
used as the cursor verbatim.
"""

from __future__ import annotations

from typing import Any, ClassVar

from ampel_sync.exceptions import AuthError, ProviderError

from .base import HttpProviderAdapter, convert_pull_requests, parse_datetime
from .normalize import (
    BITBUCKET_COMMIT_STATUS,
    BITBUCKET_PARTICIPANT_STATE,
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
)

BITBUCKET_API_URL = "https://api.bitbucket.org/2.0"

_STATE_FILTER = {"open": "OPEN", "closed": "DECLINED", "merged": "MERGED"}

_MERGE_STRATEGY = {
    MergeStrategy.MERGE: "merge_commit",
    MergeStrategy.SQUASH: "squash",
    MergeStrategy.REBASE: "fast_forward",
}

NOT_MERGEABLE_STATUSES = frozenset({405, 406, 409, 422})


def _username(user: dict[str, Any] | None) -> str:
    if not user:
        return "unknown"
    return user.get("nickname") or user.get("username") or user.get("display_name") or "unknown"


class BitbucketAdapter(HttpProviderAdapter):
    """Provider adapter for Bitbucket Cloud pull requests."""

    kind: ClassVar[ProviderKind] = ProviderKind.BITBUCKET
    default_limit: ClassVar[int | None] = 1000
    # Bitbucket reports no conflict flag anywhere, so detail fetches add nothing
    list_includes_conflicts: ClassVar[bool] = True

    async def _page_of(
        self, path: str, context: str, params: dict[str, Any] | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        data = await self._get_json(path, params=params, context=context)
        return data.get("values", []), data.get("next")

    async def _collect(self, path: str, context: str, **params: Any) -> list[dict[str, Any]]:
        """Follow ``next`` links until the last page."""
        items, next_url = await self._page_of(path, context, {**params, "pagelen": 100})
        while next_url:
            more, next_url = await self._page_of(next_url, context)
            items.extend(more)
        return items

    def _repo_path(self, owner: str, name: str) -> str:
        return f"/repositories/{owner}/{name}"

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------
    def _to_repository(self, data: dict[str, Any]) -> ProviderRepository:
        workspace, _, slug = data["full_name"].partition("/")
        return ProviderRepository(
            remote_id=data.get("uuid") or data["full_name"],
            owner=workspace,
            name=data.get("slug") or slug,
            full_name=data["full_name"],
            default_branch=(data.get("mainbranch") or {}).get("name"),
            is_private=bool(data.get("is_private", True)),
            url=data.get("links", {}).get("html", {}).get("href"),
        )

    def _to_pull_request(self, data: dict[str, Any]) -> ProviderPullRequest:
        draft = bool(data.get("draft", False))
        return ProviderPullRequest(
            number=data["id"],
            title=data["title"],
            author=_username(data.get("author")),
            source_branch=data["source"]["branch"]["name"],
            target_branch=data["destination"]["branch"]["name"],
            status=normalize_pr_status(self.kind, data["state"], draft=draft),
            is_draft=draft,
            head_sha=(data["source"].get("commit") or {}).get("hash"),
            url=data.get("links", {}).get("html", {}).get("href"),
            requested_reviewers=[_username(r) for r in data.get("reviewers") or []],
            updated_at=parse_datetime(data.get("updated_on")),
        )

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------
    async def validate_credentials(self) -> CredentialValidation:
        try:
            response = await self._request("GET", "/user", context="validate credentials")
        except AuthError as e:
            return CredentialValidation(is_valid=False, error_message=str(e))

        user = response.json()
        raw_scopes = response.headers.get("x-oauth-scopes", "")
        return CredentialValidation(
            is_valid=True,
            remote_user_id=user.get("account_id") or user["uuid"],
            username=_username(user),
            scopes=[s.strip() for s in raw_scopes.split(",") if s.strip()],
        )

    async def get_user(self) -> ProviderUser:
        user = await self._get_json("/user", context="get user")
        return ProviderUser(
            remote_id=user.get("account_id") or user["uuid"],
            username=_username(user),
            avatar_url=user.get("links", {}).get("avatar", {}).get("href"),
        )

    # -------------------------------------------------------------------------
    # Repositories
    # -------------------------------------------------------------------------
    async def list_repositories(self, cursor: str | None = None) -> Page[ProviderRepository]:
        if cursor:
            values, next_url = await self._page_of(cursor, "list repositories")
        else:
            values, next_url = await self._page_of(
                "/repositories",
                "list repositories",
                {"role": "member", "pagelen": self._page_size, "sort": "-updated_on"},
            )
        return Page(
            items=[self._to_repository(r) for r in values],
            has_more=next_url is not None,
            next_cursor=next_url,
        )

    async def get_repository(self, owner: str, name: str) -> ProviderRepository:
        data = await self._get_json(
            self._repo_path(owner, name), context=f"get repository {owner}/{name}"
        )
        return self._to_repository(data)

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
        context = f"list pull requests {owner}/{name}"
        if cursor:
            values, next_url = await self._page_of(cursor, context)
        else:
            params: dict[str, Any] = {
                "pagelen": self._page_size,
                # Reviewers are omitted from list responses unless requested
                "fields": "+values.reviewers,+values.draft",
            }
            if state != "all":
                params["state"] = _STATE_FILTER.get(state, state.upper())
            values, next_url = await self._page_of(
                f"{self._repo_path(owner, name)}/pullrequests", context, params
            )
        items, unmapped = convert_pull_requests(values, self._to_pull_request, "id")
        return Page(
            items=items,
            has_more=next_url is not None,
            next_cursor=next_url,
            unmapped=unmapped,
        )

    async def get_pull_request(self, owner: str, name: str, number: int) -> ProviderPullRequest:
        data = await self._get_json(
            f"{self._repo_path(owner, name)}/pullrequests/{number}",
            context=f"get PR #{number} in {owner}/{name}",
        )
        return self._to_pull_request(data)

    async def get_ci_checks(self, owner: str, name: str, pr: ProviderPullRequest) -> list[CICheck]:
        """Commit statuses attached to the pull request."""
        statuses = await self._collect(
            f"{self._repo_path(owner, name)}/pullrequests/{pr.number}/statuses",
            f"list statuses for PR #{pr.number} in {owner}/{name}",
        )
        return [
            CICheck(
                name=s.get("name") or s.get("key") or "build",
                status=lookup(
                    BITBUCKET_COMMIT_STATUS, s.get("state"), provider=self.kind, field="commit status"
                ),
                url=s.get("url"),
            )
            for s in statuses
        ]

    async def get_reviews(self, owner: str, name: str, number: int) -> list[Review]:
        """Participants who approved or requested changes."""
        data = await self._get_json(
            f"{self._repo_path(owner, name)}/pullrequests/{number}",
            context=f"get participants for PR #{number} in {owner}/{name}",
        )
        reviews = []
        for participant in data.get("participants") or []:
            state = participant.get("state") or ("approved" if participant.get("approved") else None)
            if state is None:
                continue
            reviews.append(
                Review(
                    reviewer=_username(participant.get("user")),
                    state=lookup(
                        BITBUCKET_PARTICIPANT_STATE,
                        state,
                        provider=self.kind,
                        field="participant state",
                    ),
                    submitted_at=parse_datetime(participant.get("participated_on")),
                )
            )
        return reviews

    async def get_diff(self, owner: str, name: str, number: int) -> PullRequestDiff:
        """Per-file line counts from the diffstat endpoint (no patch text)."""
        entries = await self._collect(
            f"{self._repo_path(owner, name)}/pullrequests/{number}/diffstat",
            f"get diffstat for PR #{number} in {owner}/{name}",
        )
        files = []
        for entry in entries:
            new = entry.get("new") or {}
            old = entry.get("old") or {}
            status = normalize_status(self.kind, entry["status"])
            files.append(
                DiffFile(
                    filename=new.get("path") or old["path"],
                    previous_filename=old.get("path") if new and old.get("path") != new.get("path") else None,
                    status=status,
                    additions=entry.get("lines_added", 0),
                    deletions=entry.get("lines_removed", 0),
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
        """Merge a pull request. ``expected_sha`` is not supported by Bitbucket."""
        body: dict[str, Any] = {
            "type": "pullrequest",
            "merge_strategy": _MERGE_STRATEGY[strategy],
            "close_source_branch": delete_branch,
        }
        message = "\n\n".join(part for part in (commit_title, commit_message) if part)
        if message:
            body["message"] = message

        try:
            response = await self._request(
                "POST",
                f"{self._repo_path(owner, name)}/pullrequests/{number}/merge",
                json=body,
                context=f"merge PR #{number} in {owner}/{name}",
            )
        except ProviderError as e:
            if e.status_code in NOT_MERGEABLE_STATUSES:
                return MergeResult(merged=False, message=str(e))
            raise

        data = response.json()
        merged = str(data.get("state", "")).upper() == "MERGED"
        return MergeResult(
            merged=merged,
            sha=(data.get("merge_commit") or {}).get("hash"),
            message="Merged" if merged else f"Pull request is {data.get('state')}",
        )

    # -------------------------------------------------------------------------
    # Rate Limit Info
    # -------------------------------------------------------------------------
    async def get_rate_limit(self) -> RateLimitInfo:
        """Quota from response headers (Bitbucket has no quota endpoint)."""
        return await self._fetch_rate_limit("/user")
