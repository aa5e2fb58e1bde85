"""Tests for auth headers and HTTP error mapping shared by all adapters."""

import base64
from datetime import UTC, datetime, timedelta

import pytest

from ampel_sync.exceptions import (
    AuthError,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    RetryableProviderError,
    ValidationError,
)
from ampel_sync.providers import map_http_error
from ampel_sync.providers.auth import auth_headers, basic_auth_header, bearer_auth_header
from ampel_sync.providers.base import parse_datetime
from ampel_sync.providers.schemas import Credentials, ProviderKind


class TestAuthHeaders:
    """Authorization headers are pure functions of the credentials."""

    def test_bearer(self) -> None:
        assert bearer_auth_header(Credentials(token="ghp_x")) == {"Authorization": "Bearer ghp_x"}

    def test_basic(self) -> None:
        header = basic_auth_header(Credentials(token="app-pass", username="alice"))

        encoded = header["Authorization"].removeprefix("Basic ")
        assert base64.b64decode(encoded) == b"alice:app-pass"

    def test_basic_requires_username(self) -> None:
        with pytest.raises(ValidationError, match="username"):
            basic_auth_header(Credentials(token="app-pass"))

    def test_empty_token_rejected(self) -> None:
        with pytest.raises(ValidationError):
            bearer_auth_header(Credentials(token=""))

    @pytest.mark.parametrize("provider", [ProviderKind.GITHUB, ProviderKind.GITLAB])
    def test_token_providers_use_bearer(self, provider) -> None:
        headers = auth_headers(provider, Credentials(token="t"))

        assert headers["Authorization"].startswith("Bearer ")

    def test_credentials_repr_hides_token(self) -> None:
        assert "secret" not in repr(Credentials(token="secret", username="alice"))


class TestMapHttpError:
    """Status codes map onto the shared error taxonomy."""

    def test_429_with_retry_after(self) -> None:
        error = map_http_error(429, {"Retry-After": "30"}, "list")

        assert isinstance(error, RateLimitedError)
        assert isinstance(error, RetryableProviderError)
        assert error.retry_after == 30.0

    def test_403_with_exhausted_quota_is_rate_limit(self) -> None:
        """GitHub answers 403 (not 429) when the primary limit is exhausted."""
        reset = int((datetime.now(UTC) + timedelta(minutes=5)).timestamp())
        error = map_http_error(
            403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(reset)}, "list"
        )

        assert isinstance(error, RateLimitedError)
        assert error.reset_at == datetime.fromtimestamp(reset, tz=UTC)

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_failures(self, status_code) -> None:
        error = map_http_error(status_code, {}, "get user")

        assert isinstance(error, AuthError)
        assert error.status_code == status_code

    def test_not_found(self) -> None:
        assert isinstance(map_http_error(404, {}, "get"), NotFoundError)

    @pytest.mark.parametrize("status_code", [500, 502, 503])
    def test_server_errors_are_retryable(self, status_code) -> None:
        assert isinstance(map_http_error(status_code, {}, "get"), ProviderUnavailableError)

    def test_other_client_errors(self) -> None:
        error = map_http_error(422, {}, "merge")

        assert type(error) is ProviderError
        assert "HTTP 422" in str(error)


class TestRateLimitedRetryAt:
    NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def test_prefers_retry_after(self) -> None:
        error = RateLimitedError("x", retry_after=10, reset_at=self.NOW + timedelta(hours=1))

        assert error.retry_at(self.NOW) == self.NOW + timedelta(seconds=10)

    def test_falls_back_to_reset(self) -> None:
        reset = self.NOW + timedelta(minutes=3)

        assert RateLimitedError("x", reset_at=reset).retry_at(self.NOW) == reset

    def test_default_delay(self) -> None:
        assert RateLimitedError("x").retry_at(self.NOW) == self.NOW + timedelta(seconds=60)


class TestParseDatetime:
    def test_zulu_suffix(self) -> None:
        assert parse_datetime("2024-01-15T10:00:00Z") == datetime(2024, 1, 15, 10, tzinfo=UTC)

    def test_offset_converted_to_utc(self) -> None:
        assert parse_datetime("2024-01-15T12:00:00+02:00") == datetime(2024, 1, 15, 10, tzinfo=UTC)

    def test_empty(self) -> None:
        assert parse_datetime(None) is None
        assert parse_datetime("") is None
