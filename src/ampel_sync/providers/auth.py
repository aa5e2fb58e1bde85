"""Authentication headers as pure functions of credentials."""

import base64

from ampel_sync.exceptions import ValidationError

from .schemas import Credentials, ProviderKind


def bearer_auth_header(credentials: Credentials) -> dict[str, str]:
    """Authorization header for token-based providers (GitHub, GitLab)."""
    if not credentials.token:
        raise ValidationError("Access token is empty")
    return {"Authorization": f"Bearer {credentials.token}"}


def basic_auth_header(credentials: Credentials) -> dict[str, str]:
    """Authorization header for app-password providers (Bitbucket).

    Raises:
        ValidationError: If the username or token is missing
    """
    if not credentials.username:
        raise ValidationError("Bitbucket app passwords require a username")
    if not credentials.token:
        raise ValidationError("Access token is empty")
    raw = f"{credentials.username}:{credentials.token}".encode()
    return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}


def auth_headers(provider: ProviderKind, credentials: Credentials) -> dict[str, str]:
    """Authorization header for a provider."""
    match provider:
        case ProviderKind.GITHUB | ProviderKind.GITLAB:
            return bearer_auth_header(credentials)
        case ProviderKind.BITBUCKET:
            return basic_auth_header(credentials)
