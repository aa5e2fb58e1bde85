"""Provider adapters for GitHub, GitLab and Bitbucket."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from ampel_sync.config import RateLimitConfig, SyncConfig, get_settings
from ampel_sync.exceptions import ValidationError

from .base import ProviderAdapter, map_http_error
from .bitbucket import BITBUCKET_API_URL, BitbucketAdapter
from .github import GitHubAdapter, github_api_url
from .gitlab import GitLabAdapter, gitlab_api_url
from .schemas import (
    CICheck,
    CIStatus,
    CredentialValidation,
    Credentials,
    DiffFile,
    DiffFileStatus,
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
    ReviewState,
)

if TYPE_CHECKING:
    from ampel_sync.rate_limit.tracker import RateLimitTracker


class ProviderAdapterFactory:
    """Builds a configured adapter for an account.

    Shares one RateLimitTracker across all adapters it creates so every
    response updates the owning account's budget.

    Usage:
        factory = ProviderAdapterFactory(tracker=tracker)
        adapter = factory.create(ProviderKind.GITLAB, Credentials(token="glpat-..."))
    """

    def __init__(
        self,
        tracker: RateLimitTracker | None = None,
        sync_config: SyncConfig | None = None,
        rate_limit_config: RateLimitConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the factory.

        Args:
            tracker: Rate limit tracker handed to every adapter
            sync_config: Timeout and page size (uses settings if not provided)
            rate_limit_config: Default limits for header-less providers
            transport: httpx transport for GitLab/Bitbucket (tests only)
        """
        settings = get_settings()
        self.tracker = tracker
        self._sync = sync_config or settings.sync
        self._rate_limit = rate_limit_config or settings.rate_limit
        self._transport = transport

    def create(
        self,
        provider: ProviderKind | str,
        credentials: Credentials,
        instance_url: str | None = None,
        account_id: int | None = None,
    ) -> ProviderAdapter:
        """Create an adapter.

        Args:
            provider: Provider kind
            credentials: Decrypted credentials
            instance_url: Self-hosted base URL (GitHub Enterprise, GitLab self-managed)
            account_id: Owning account, None while validating a new credential

        Raises:
            ValidationError: Unknown provider, Bitbucket instance URL or missing username
        """
        try:
            kind = ProviderKind(provider)
        except ValueError as e:
            raise ValidationError(f"Unsupported provider: {provider}") from e

        timeout = self._sync.request_timeout_seconds
        page_size = self._sync.page_size

        match kind:
            case ProviderKind.GITHUB:
                return GitHubAdapter(
                    credentials,
                    instance_url,
                    account_id=account_id,
                    tracker=self.tracker,
                    timeout=timeout,
                    page_size=page_size,
                )
            case ProviderKind.GITLAB:
                return GitLabAdapter(
                    credentials,
                    gitlab_api_url(instance_url),
                    account_id=account_id,
                    tracker=self.tracker,
                    timeout=timeout,
                    page_size=page_size,
                    default_limit=self._rate_limit.gitlab_default_limit,
                    transport=self._transport,
                )
            case ProviderKind.BITBUCKET:
                if instance_url:
                    raise ValidationError("Bitbucket Server/Data Center is not supported")
                return BitbucketAdapter(
                    credentials,
                    BITBUCKET_API_URL,
                    account_id=account_id,
                    tracker=self.tracker,
                    timeout=timeout,
                    page_size=page_size,
                    default_limit=self._rate_limit.bitbucket_default_limit,
                    transport=self._transport,
                )


__all__ = [
    "BITBUCKET_API_URL",
    "BitbucketAdapter",
    "CICheck",
    "CIStatus",
    "CredentialValidation",
    "Credentials",
    "DiffFile",
    "DiffFileStatus",
    "GitHubAdapter",
    "GitLabAdapter",
    "MergeResult",
    "MergeStrategy",
    "PRStatus",
    "Page",
    "ProviderAdapter",
    "ProviderAdapterFactory",
    "ProviderKind",
    "ProviderPullRequest",
    "ProviderRepository",
    "ProviderUser",
    "PullRequestDiff",
    "RateLimitInfo",
    "Review",
    "ReviewState",
    "github_api_url",
    "gitlab_api_url",
    "map_http_error",
]
