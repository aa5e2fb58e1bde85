"""Exception hierarchy for provider calls, the credential vault and sync jobs."""

from datetime import UTC, datetime, timedelta


class AmpelError(Exception):
    """Base exception for all Ampel errors."""

    pass


class ValidationError(AmpelError):
    """Raised when input is rejected before any network call is made."""

    pass


# ------------------------------------------------------------------------------
# Provider errors
# ------------------------------------------------------------------------------
class ProviderError(AmpelError):
    """Base exception for errors returned by a provider API.

    Attributes:
        status_code: HTTP status of the failed response, if there was one
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ProviderError):
    """Raised on 401/403: the credential is rejected.

    Never retried automatically. The owning account is flipped to Invalid
    and polling for its repositories stops until it is revalidated.
    """

    pass


class NotFoundError(ProviderError):
    """Raised when a resource is not found (404). Terminal, never retried."""

    pass


class UnmappedStatusError(ProviderError):
    """Raised when a provider returns a native status value with no mapping."""

    def __init__(self, provider: str, field: str, value: object) -> None:
        super().__init__(f"{provider} returned unmapped {field} value {value!r}")
        self.provider = provider
        self.field = field
        self.value = value


class RetryableProviderError(ProviderError):
    """Base class for errors that the scheduler retries.

    Subclasses propagate out of adapters and the poller unchanged so the
    scheduler can decide between deferral and backoff.
    """

    pass


class RateLimitedError(RetryableProviderError):
    """Raised on 429 or an exhausted rate limit window.

    Retrying does not consume an attempt; the job is deferred until
    ``retry_at``.
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after
        self.reset_at = reset_at

    def retry_at(self, now: datetime | None = None, fallback: float = 60.0) -> datetime:
        """Earliest time a retry may be attempted."""
        now = now or datetime.now(UTC)
        if self.retry_after is not None:
            return now + timedelta(seconds=self.retry_after)
        if self.reset_at is not None and self.reset_at > now:
            return self.reset_at
        return now + timedelta(seconds=fallback)


class ProviderUnavailableError(RetryableProviderError):
    """Raised on 5xx responses or transport failures."""

    pass


class ProviderTimeoutError(RetryableProviderError):
    """Raised when an outbound call exceeds its timeout."""

    pass


# ------------------------------------------------------------------------------
# Vault errors
# ------------------------------------------------------------------------------
class VaultError(AmpelError):
    """Base exception for credential vault errors."""

    pass


class AccountNotFoundError(VaultError):
    """Raised when a provider account does not exist."""

    pass


class InvalidCredentialsError(VaultError):
    """Raised when the provider refuses a credential during add."""

    pass


class DuplicateAccountError(VaultError):
    """Raised when an account would violate a uniqueness rule."""

    pass


class DecryptionError(VaultError):
    """Raised when a stored token cannot be decrypted.

    Signals a key misconfiguration or tampered data. Never retried.
    """

    pass


class BulkMergeError(AmpelError):
    """Raised for bulk merge operations that cannot be found or changed."""

    pass
