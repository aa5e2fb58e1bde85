"""Schemas for provider accounts.

``AccountRead`` never carries the token; only its owner, label and
validation state leave the vault.
"""

from datetime import datetime

from pydantic import Field, field_validator, model_validator

from ampel_sync.db.models import ValidationStatus
from ampel_sync.providers.schemas import ProviderKind

from .base import SchemaBase


class AccountCreate(SchemaBase):
    """Input for connecting a provider account."""

    owner_id: str = Field(min_length=1, max_length=100, description="Local user the account belongs to")
    provider: ProviderKind
    label: str = Field(min_length=1, max_length=100, description="User-chosen name, e.g. 'work'")
    token: str = Field(min_length=1, repr=False, description="Access token or app password")
    instance_url: str | None = Field(
        default=None, max_length=300, description="Self-hosted instance, None for the cloud"
    )
    username: str | None = Field(
        default=None, max_length=100, description="Bitbucket username for HTTP Basic auth"
    )

    @field_validator("instance_url")
    @classmethod
    def validate_instance_url(cls, v: str | None) -> str | None:
        if not v:
            return None
        if not v.startswith(("https://", "http://")):
            raise ValueError("Instance URL must start with http:// or https://")
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_provider_rules(self) -> "AccountCreate":
        if self.provider is ProviderKind.BITBUCKET:
            if not self.username:
                raise ValueError("Bitbucket accounts require a username")
            if self.instance_url:
                raise ValueError("Bitbucket Server instances are not supported")
        return self


class AccountRead(SchemaBase):
    """An account as shown to its owner."""

    id: int
    owner_id: str
    provider: ProviderKind
    instance_url: str
    label: str
    username: str
    scopes: list[str]
    token_expires_at: datetime | None
    last_validated_at: datetime | None
    validation_status: ValidationStatus
    is_active: bool
    is_default: bool
    created_at: datetime
