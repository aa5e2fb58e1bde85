"""Provider adapter interface and shared HTTP plumbing.

All adapters expose the same async capability set. GitHub goes through
githubkit; GitLab and Bitbucket share ``HttpProviderAdapter``, a thin
httpx wrapper that applies auth, timeouts, error mapping and rate limit
tracking to every call.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

import httpx

from ampel_sync.exceptions import (
    AuthError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    UnmappedStatusError,
)
from ampel_sync.rate_limit.schemas import HeaderObservation

from .auth import auth_headers
from .schemas import (
    CICheck,
    CredentialValidation,
    Credentials,
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

DEFAULT_TIMEOUT = 30.0


class ProviderAdapter(Protocol):
    """Capabilities every provider adapter implements."""

    kind: ClassVar[ProviderKind]
    # False when list_pull_requests cannot report merge conflicts
    list_includes_conflicts: ClassVar[bool]

    async def validate_credentials(self) -> CredentialValidation: ...

    async def get_user(self) -> ProviderUser: ...

    async def list_repositories(self, cursor: str | None = None) -> Page[ProviderRepository]: ...

    async def get_repository(self, owner: str, name: str) -> ProviderRepository: ...

    async def list_pull_requests(
        self,
        owner: str,
        name: str,
        state: str = "open",
        cursor: str | None = None,
    ) -> Page[ProviderPullRequest]: ...

    async def get_pull_request(self, owner: str, name: str, number: int) -> ProviderPullRequest: ...

    async def get_ci_checks(
        self, owner: str, name: str, pr: ProviderPullRequest
    ) -> list[CICheck]: ...

    async def get_reviews(self, owner: str, name: str, number: int) -> list[Review]: ...

    async def get_diff(self, owner: str, name: str, number: int) -> PullRequestDiff: ...

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
    ) -> MergeResult: ...

    async def get_rate_limit(self) -> RateLimitInfo: ...

    async def close(self) -> None: ...


def map_http_error(
    status_code: int,
    headers: Mapping[str, str],
    message: str,
) -> ProviderError:
    """Translate a failed HTTP response into the shared error taxonomy.

    Args:
        status_code: Response status
        headers: Response headers (used for rate limit detection)
        message: Context for the error message

    Returns:
        The exception to raise (callers raise it ``from`` the original)
    """
    observation = HeaderObservation.from_headers(headers)
    exhausted = observation.remaining == 0 or observation.retry_after is not None

    if status_code == 429 or (status_code == 403 and exhausted):
        return RateLimitedError(
            f"{message}: rate limited",
            retry_after=observation.retry_after,
            reset_at=observation.reset_at,
        )
    if status_code in (401, 403):
        return AuthError(f"{message}: credential rejected ({status_code})", status_code)
    if status_code == 404:
        return NotFoundError(f"{message}: not found", status_code)
    if status_code >= 500:
        return ProviderUnavailableError(
            f"{message}: provider unavailable ({status_code})", status_code
        )
    return ProviderError(f"{message}: HTTP {status_code}", status_code)


def convert_pull_requests(
    raw: Iterable[Mapping[str, Any]],
    convert: Callable[[Any], ProviderPullRequest],
    number_field: str,
) -> tuple[list[ProviderPullRequest], dict[int, str]]:
    """Normalize list items one at a time.

    A PR whose native state has no mapping is set aside (number -> reason)
    so the rest of the page still syncs.
    """
    converted: list[ProviderPullRequest] = []
    unmapped: dict[int, str] = {}
    for data in raw:
        try:
            converted.append(convert(data))
        except UnmappedStatusError as e:
            unmapped[int(data[number_field])] = str(e)
    return converted, unmapped


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (or pass a datetime through) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class HttpProviderAdapter:
    """Shared httpx request handling for REST providers.

    Subclasses set ``kind`` and build URLs relative to ``api_url``.
    """

    kind: ClassVar[ProviderKind]
    default_limit: ClassVar[int | None] = None

    def __init__(
        self,
        credentials: Credentials,
        api_url: str,
        *,
        account_id: int | None = None,
        tracker: RateLimitTracker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = 50,
        default_limit: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            credentials: Decrypted credentials for the account
            api_url: Base API URL (no trailing slash)
            account_id: Account the calls are billed to (None while validating a new account)
            tracker: Optional RateLimitTracker updated after every response
            timeout: Per-request timeout in seconds
            page_size: Items requested per page
            default_limit: Limit assumed when responses carry only "remaining"
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self._headers = {"Accept": "application/json", **auth_headers(self.kind, credentials)}
        self._credentials = credentials
        self._api_url = api_url.rstrip("/")
        self._account_id = account_id
        self._tracker = tracker
        self._timeout = timeout
        self._page_size = page_size
        self._default_limit = default_limit or self.default_limit
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def _http(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpProviderAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._api_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        context: str | None = None,
    ) -> httpx.Response:
        """Send a request and map failures onto provider errors.

        Raises:
            ProviderTimeoutError: On timeout
            ProviderUnavailableError: On transport failure or 5xx
            RateLimitedError / AuthError / NotFoundError / ProviderError: Per status
        """
        context = context or f"{self.kind.value} {method} {path}"
        try:
            response = await self._http.request(method, self._url(path), params=params, json=json)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{context}: timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"{context}: {e}") from e

        self._track(response)

        if response.is_success:
            return response

        error = map_http_error(response.status_code, response.headers, context)
        if (
            isinstance(error, RateLimitedError)
            and self._tracker is not None
            and self._account_id is not None
        ):
            self._tracker.mark_rate_limited(self._account_id, error.retry_at())
        raise error

    async def _get_json(self, path: str, **kwargs: Any) -> Any:
        response = await self._request("GET", path, **kwargs)
        return response.json()

    def _track(self, response: httpx.Response) -> None:
        """Update the rate limit tracker from response headers."""
        if self._tracker is None or self._account_id is None:
            return
        self._tracker.record_headers(
            self._account_id, response.headers, default_limit=self._default_limit
        )

    async def _fetch_rate_limit(self, path: str) -> RateLimitInfo:
        """Quota for providers without a quota endpoint.

        Prefers what the tracker already observed for the account; otherwise
        makes one cheap call to ``path`` and reads its headers.
        """
        if self._tracker is not None and self._account_id is not None:
            observed = self._tracker.get(self._account_id)
            if observed is not None:
                return RateLimitInfo(
                    limit=observed.limit,
                    remaining=observed.remaining,
                    reset_at=observed.reset_at,
                )

        response = await self._request("GET", path, context="fetch rate limit")
        now = datetime.now(UTC)
        parsed = HeaderObservation.from_headers(response.headers, now=now)
        limit = parsed.limit if parsed.limit is not None else (self._default_limit or 0)
        return RateLimitInfo(
            limit=limit,
            remaining=parsed.remaining if parsed.remaining is not None else limit,
            reset_at=parsed.reset_at or now + timedelta(hours=1),
        )
