"""Repository for ProviderAccount CRUD operations."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ampel_sync.db.models import ProviderAccount, ValidationStatus
from ampel_sync.providers.schemas import ProviderKind

from .base import BaseRepository


class AccountRepository(BaseRepository[ProviderAccount]):
    """Repository for provider accounts.

    A "scope" is (owner_id, provider, instance_url): the unit within which
    labels and remote users are unique and exactly one default exists.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, ProviderAccount)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    async def list_for_owner(self, owner_id: str) -> list[ProviderAccount]:
        """All accounts of an owner, grouped by provider then label."""
        stmt = (
            select(ProviderAccount)
            .where(ProviderAccount.owner_id == owner_id)
            .order_by(ProviderAccount.provider, ProviderAccount.instance_url, ProviderAccount.label)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_in_scope(
        self, owner_id: str, provider: ProviderKind, instance_url: str
    ) -> list[ProviderAccount]:
        stmt = (
            select(ProviderAccount)
            .where(
                ProviderAccount.owner_id == owner_id,
                ProviderAccount.provider == provider,
                ProviderAccount.instance_url == instance_url,
            )
            .order_by(ProviderAccount.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_default(
        self, owner_id: str, provider: ProviderKind, instance_url: str
    ) -> ProviderAccount | None:
        stmt = select(ProviderAccount).where(
            ProviderAccount.owner_id == owner_id,
            ProviderAccount.provider == provider,
            ProviderAccount.instance_url == instance_url,
            ProviderAccount.is_default.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_remote_user(
        self, owner_id: str, provider: ProviderKind, instance_url: str, remote_user_id: str
    ) -> ProviderAccount | None:
        stmt = select(ProviderAccount).where(
            ProviderAccount.owner_id == owner_id,
            ProviderAccount.provider == provider,
            ProviderAccount.instance_url == instance_url,
            ProviderAccount.remote_user_id == remote_user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_label(
        self, owner_id: str, provider: ProviderKind, instance_url: str, label: str
    ) -> ProviderAccount | None:
        stmt = select(ProviderAccount).where(
            ProviderAccount.owner_id == owner_id,
            ProviderAccount.provider == provider,
            ProviderAccount.instance_url == instance_url,
            ProviderAccount.label == label,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_expiring(self, before: datetime) -> list[ProviderAccount]:
        """Active accounts whose token expires before the given time."""
        stmt = select(ProviderAccount).where(
            ProviderAccount.is_active.is_(True),
            ProviderAccount.token_expires_at.is_not(None),
            ProviderAccount.token_expires_at <= before,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Update Methods
    # -------------------------------------------------------------------------
    async def clear_default(
        self, owner_id: str, provider: ProviderKind, instance_url: str
    ) -> None:
        """Unset the default flag across a scope (flushes the UPDATE)."""
        await self._session.execute(
            update(ProviderAccount)
            .where(
                ProviderAccount.owner_id == owner_id,
                ProviderAccount.provider == provider,
                ProviderAccount.instance_url == instance_url,
                ProviderAccount.is_default.is_(True),
            )
            .values(is_default=False)
        )

    async def set_validation(
        self,
        account: ProviderAccount,
        status: ValidationStatus,
        validated_at: datetime,
    ) -> ProviderAccount:
        account.validation_status = status
        account.last_validated_at = validated_at
        await self.flush()
        return account
