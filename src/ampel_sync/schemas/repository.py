"""Schemas for tracked repositories."""

from datetime import datetime

from ampel_sync.providers.schemas import ProviderKind

from .base import SchemaBase


class RepositoryRead(SchemaBase):
    """A tracked repository and its last sync result."""

    id: int
    account_id: int | None
    provider: ProviderKind
    instance_url: str
    full_name: str
    default_branch: str | None
    url: str | None
    is_active: bool
    last_synced_at: datetime | None
    last_sync_error: str | None


def parse_repo_string(repo: str) -> tuple[str, str]:
    """Split "owner/name" into its parts.

    GitLab subgroups keep every leading segment in the owner
    ("group/sub/project" -> ("group/sub", "project")).

    Raises:
        ValueError: If either part is empty
    """
    owner, sep, name = repo.strip().strip("/").rpartition("/")
    if not sep or not owner or not name:
        raise ValueError(f"Invalid repository format: '{repo}'. Expected 'owner/name'")
    return owner, name
