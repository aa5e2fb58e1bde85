"""Repository for tracked Repository model CRUD operations."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ampel_sync.db.models import ProviderAccount, Repository
from ampel_sync.providers.schemas import ProviderRepository

from .base import BaseRepository


class RepositoryRepository(BaseRepository[Repository]):
    """Repository for tracked repositories."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Repository)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    async def get_for_account(self, account: ProviderAccount, full_name: str) -> Repository | None:
        """Find a repository by full name within the account's scope."""
        stmt = select(Repository).where(
            Repository.owner_id == account.owner_id,
            Repository.provider == account.provider,
            Repository.instance_url == account.instance_url,
            Repository.full_name == full_name,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_account(self, account_id: int) -> list[Repository]:
        stmt = select(Repository).where(Repository.account_id == account_id).order_by(Repository.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_owner(self, owner_id: str) -> list[Repository]:
        stmt = (
            select(Repository)
            .where(Repository.owner_id == owner_id)
            .order_by(Repository.provider, Repository.full_name)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Create/Update Methods
    # -------------------------------------------------------------------------
    async def upsert_from_provider(
        self,
        account: ProviderAccount,
        remote: ProviderRepository,
    ) -> tuple[Repository, bool]:
        """Create or refresh a repository from provider data.

        Re-attaches the repository to ``account`` if it was orphaned.

        Returns:
            Tuple of (repository, created)
        """
        repo = await self.get_for_account(account, remote.full_name)
        created = repo is None
        if repo is None:
            repo = Repository(
                owner_id=account.owner_id,
                provider=account.provider,
                instance_url=account.instance_url,
                full_name=remote.full_name,
            )
            self.add(repo)

        repo.account_id = account.id
        repo.owner = remote.owner
        repo.name = remote.name
        repo.remote_id = remote.remote_id
        repo.default_branch = remote.default_branch
        repo.url = remote.url
        repo.is_private = remote.is_private
        repo.is_archived = remote.is_archived
        repo.is_active = True
        await self.flush()
        return repo, created

    async def record_sync(
        self,
        repository_id: int,
        synced_at: datetime | None,
        error: str | None,
    ) -> Repository | None:
        """Record the outcome of a sync job.

        A completed poll passes ``synced_at`` (with an error only when some
        PRs could not be synced); a failed job passes ``None`` and keeps the
        previous last_synced_at.
        """
        repo = await self.get_by_id(repository_id)
        if repo is None:
            return None

        if synced_at is not None:
            repo.last_synced_at = synced_at
        repo.last_sync_error = error
        await self.flush()
        return repo

    async def detach_account(self, account_id: int) -> int:
        """Null the account reference on every repository it owned.

        Returns:
            Number of repositories detached
        """
        result = await self._session.execute(
            update(Repository).where(Repository.account_id == account_id).values(account_id=None)
        )
        return result.rowcount or 0
