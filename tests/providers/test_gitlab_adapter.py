"""Tests for GitLabAdapter against a mocked v4 REST API."""

import json
from datetime import UTC, datetime

import httpx
import pytest

from ampel_sync.exceptions import (
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    UnmappedStatusError,
)
from ampel_sync.providers import GitLabAdapter, gitlab_api_url
from ampel_sync.providers.schemas import (
    CIStatus,
    Credentials,
    DiffFileStatus,
    MergeStrategy,
    PRStatus,
    ReviewState,
)

API = "https://gitlab.example.com/api/v4"
PROJECT = "/api/v4/projects/group%2Fsub%2Fapp"


def merge_request(iid: int = 3, **overrides):
    data = {
        "iid": iid,
        "title": "Add feature",
        "author": {"username": "bob"},
        "source_branch": "feature",
        "target_branch": "main",
        "state": "opened",
        "draft": False,
        "has_conflicts": False,
        "sha": "abc123",
        "web_url": f"https://gitlab.example.com/group/sub/app/-/merge_requests/{iid}",
        "reviewers": [{"username": "carol"}],
        "updated_at": "2024-01-15T10:00:00Z",
    }
    data.update(overrides)
    return data


@pytest.fixture
def adapter(api, adapter_tracker):
    return GitLabAdapter(
        Credentials(token="glpat-test"),
        API,
        account_id=1,
        tracker=adapter_tracker,
        transport=api.transport,
    )


class TestGitlabApiUrl:
    def test_defaults_to_gitlab_com(self) -> None:
        assert gitlab_api_url(None) == "https://gitlab.com/api/v4"

    def test_self_managed(self) -> None:
        assert gitlab_api_url("https://git.corp/") == "https://git.corp/api/v4"
        assert gitlab_api_url("https://git.corp/api/v4") == "https://git.corp/api/v4"


class TestValidateCredentials:
    """Credential validation."""

    async def test_valid_token_with_metadata(self, api, adapter) -> None:
        """Scopes and expiry come from the token self-inspection endpoint."""
        api.add("GET", "/api/v4/user", {"id": 7, "username": "alice"})
        api.add(
            "GET",
            "/api/v4/personal_access_tokens/self",
            {"scopes": ["api", "read_user"], "expires_at": "2024-07-01"},
        )

        result = await adapter.validate_credentials()

        assert result.is_valid
        assert result.remote_user_id == "7"
        assert result.username == "alice"
        assert result.scopes == ["api", "read_user"]
        assert result.expires_at == datetime(2024, 7, 1, tzinfo=UTC)
        assert api.requests[0].headers["Authorization"] == "Bearer glpat-test"

    async def test_token_metadata_optional(self, api, adapter) -> None:
        """Older instances 404 on token inspection; the token is still valid."""
        api.add("GET", "/api/v4/user", {"id": 7, "username": "alice"})

        result = await adapter.validate_credentials()

        assert result.is_valid
        assert result.scopes == []
        assert result.expires_at is None

    async def test_rejected_token(self, api, adapter) -> None:
        api.add("GET", "/api/v4/user", {"message": "401 Unauthorized"}, status_code=401)

        result = await adapter.validate_credentials()

        assert result.is_valid is False
        assert "401" in (result.error_message or "")


class TestMergeRequests:
    """Listing and normalizing merge requests."""

    async def test_list_normalizes_fields(self, api, adapter) -> None:
        api.add(
            "GET",
            f"{PROJECT}/merge_requests",
            [merge_request(3), merge_request(4, draft=True, has_conflicts=True)],
            headers={"x-next-page": "2"},
        )

        page = await adapter.list_pull_requests("group/sub", "app")

        first, second = page.items
        assert first.number == 3
        assert first.status is PRStatus.OPEN
        assert first.author == "bob"
        assert first.head_sha == "abc123"
        assert first.requested_reviewers == ["carol"]
        assert second.status is PRStatus.DRAFT
        assert second.is_draft
        assert second.has_conflicts
        assert page.has_more
        assert page.next_cursor == "2"
        assert api.last().url.params["state"] == "opened"

    async def test_last_page(self, api, adapter) -> None:
        api.add("GET", f"{PROJECT}/merge_requests", [], headers={"x-next-page": ""})

        page = await adapter.list_pull_requests("group/sub", "app")

        assert page.items == []
        assert page.has_more is False

    async def test_unknown_state_fails_loudly(self, api, adapter) -> None:
        api.add("GET", f"{PROJECT}/merge_requests/3", merge_request(3, state="frozen"))

        with pytest.raises(UnmappedStatusError):
            await adapter.get_pull_request("group/sub", "app", 3)

    async def test_unknown_state_in_list_sets_item_aside(self, api, adapter) -> None:
        """The rest of the page is still returned."""
        api.add(
            "GET",
            f"{PROJECT}/merge_requests",
            [merge_request(1), merge_request(2, state="brand_new_state")],
        )

        page = await adapter.list_pull_requests("group/sub", "app")

        assert [pr.number for pr in page.items] == [1]
        assert list(page.unmapped) == [2]
        assert "brand_new_state" in page.unmapped[2]


class TestChecksAndReviews:
    """CI jobs and approvals."""

    async def test_checks_come_from_latest_pipeline(self, api, adapter) -> None:
        api.add("GET", f"{PROJECT}/merge_requests/3/pipelines", [{"id": 10}, {"id": 12}])
        api.add(
            "GET",
            f"{PROJECT}/pipelines/12/jobs",
            [
                {"name": "lint", "status": "success"},
                {"name": "test", "status": "running"},
                {"name": "deploy", "status": "manual"},
            ],
        )
        pr = await _pr(api, adapter)

        checks = await adapter.get_ci_checks("group/sub", "app", pr)

        assert [(c.name, c.status) for c in checks] == [
            ("lint", CIStatus.SUCCESS),
            ("test", CIStatus.IN_PROGRESS),
            ("deploy", CIStatus.SKIPPED),
        ]

    async def test_no_pipeline_means_no_checks(self, api, adapter) -> None:
        api.add("GET", f"{PROJECT}/merge_requests/3/pipelines", [])
        pr = await _pr(api, adapter)

        assert await adapter.get_ci_checks("group/sub", "app", pr) == []

    async def test_approvals_become_reviews(self, api, adapter) -> None:
        api.add(
            "GET",
            f"{PROJECT}/merge_requests/3/approvals",
            {"approved_by": [{"user": {"username": "carol"}}]},
        )

        reviews = await adapter.get_reviews("group/sub", "app", 3)

        assert [(r.reviewer, r.state) for r in reviews] == [("carol", ReviewState.APPROVED)]

    async def test_diff_counts_lines(self, api, adapter) -> None:
        api.add(
            "GET",
            f"{PROJECT}/merge_requests/3/diffs",
            [
                {
                    "old_path": "old.py",
                    "new_path": "new.py",
                    "renamed_file": True,
                    "diff": "@@ -1 +1,2 @@\n-a\n+b\n+c\n",
                }
            ],
        )

        diff = await adapter.get_diff("group/sub", "app", 3)

        (changed,) = diff.files
        assert changed.status is DiffFileStatus.RENAMED
        assert changed.previous_filename == "old.py"
        assert (changed.additions, changed.deletions) == (2, 1)


class TestMerge:
    """Accepting merge requests."""

    async def test_squash_merge(self, api, adapter) -> None:
        api.add(
            "PUT",
            f"{PROJECT}/merge_requests/3/merge",
            {"state": "merged", "squash_commit_sha": "def456"},
        )

        result = await adapter.merge_pull_request(
            "group/sub", "app", 3, MergeStrategy.SQUASH, delete_branch=True, expected_sha="abc123"
        )

        assert result.merged
        assert result.sha == "def456"
        body = json.loads(api.last("PUT").content)
        assert body == {"squash": True, "should_remove_source_branch": True, "sha": "abc123"}

    async def test_not_mergeable_is_a_result(self, api, adapter) -> None:
        """405/409/422 mean "cannot merge now", not a provider failure."""
        api.add(
            "PUT",
            f"{PROJECT}/merge_requests/3/merge",
            {"message": "SHA does not match HEAD of source branch"},
            status_code=409,
        )

        result = await adapter.merge_pull_request("group/sub", "app", 3, MergeStrategy.MERGE)

        assert result.merged is False
        assert "409" in result.message


class TestTransportFailures:
    """Error mapping and rate limit tracking."""

    async def test_server_error(self, api, adapter) -> None:
        api.add("GET", f"{PROJECT}/merge_requests", {"message": "boom"}, status_code=502)

        with pytest.raises(ProviderUnavailableError):
            await adapter.list_pull_requests("group/sub", "app")

    async def test_timeout(self, adapter_tracker) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        adapter = GitLabAdapter(
            Credentials(token="t"), API, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(ProviderTimeoutError):
            await adapter.get_user()

    async def test_429_throttles_account(self, api, adapter, adapter_tracker) -> None:
        api.add("GET", "/api/v4/user", {}, status_code=429, headers={"Retry-After": "30"})

        with pytest.raises(RateLimitedError) as exc_info:
            await adapter.get_user()

        assert exc_info.value.retry_after == 30.0
        assert adapter_tracker.should_throttle(1)

    async def test_headers_update_tracker(self, api, adapter, adapter_tracker) -> None:
        api.add(
            "GET",
            "/api/v4/user",
            {"id": 7, "username": "alice"},
            headers={"RateLimit-Limit": "2000", "RateLimit-Remaining": "1500", "RateLimit-Reset": "60"},
        )

        await adapter.get_user()

        observed = adapter_tracker.get(1)
        assert observed is not None
        assert observed.remaining == 1500

    async def test_rate_limit_prefers_tracked_values(self, api, adapter, adapter_tracker) -> None:
        adapter_tracker.record(1, remaining=42, limit=2000, reset_at=datetime(2030, 1, 1, tzinfo=UTC))

        info = await adapter.get_rate_limit()

        assert info.remaining == 42
        assert api.requests == []

    async def test_close_is_idempotent(self, adapter) -> None:
        await adapter.close()
        await adapter.close()


async def _pr(api, adapter):
    api.add("GET", f"{PROJECT}/merge_requests/3", merge_request(3))
    return await adapter.get_pull_request("group/sub", "app", 3)
