"""Tests for RepositoryRepository."""

from ampel_sync.db.repositories import RepositoryRepository
from ampel_sync.providers.schemas import ProviderKind, ProviderRepository
from tests.factories import NOW, make_account, make_repository


def _remote(full_name: str = "octo/hello", **overrides) -> ProviderRepository:
    owner, _, name = full_name.rpartition("/")
    values = {
        "remote_id": "100",
        "owner": owner,
        "name": name,
        "full_name": full_name,
        "default_branch": "main",
        "url": f"https://github.com/{full_name}",
    }
    values.update(overrides)
    return ProviderRepository(**values)


class TestRepositoryRepositoryQuery:
    """Query method tests for RepositoryRepository."""

    async def test_get_by_id(self, db_session):
        """Get repository by ID."""
        repo = make_repository(db_session, full_name="octo/hello-server")
        await db_session.flush()

        repository = RepositoryRepository(db_session)
        result = await repository.get_by_id(repo.id)

        assert result is not None
        assert result.owner == "octo"
        assert result.name == "hello-server"

    async def test_get_by_id_not_found(self, db_session):
        """Get repository by ID returns None if not found."""
        repository = RepositoryRepository(db_session)
        result = await repository.get_by_id(9999)

        assert result is None

    async def test_get_for_account_is_scoped(self, db_session):
        """The same full name on another provider is a different repository."""
        account = make_account(db_session)
        mine = make_repository(db_session, account)
        make_repository(db_session, full_name="octo/hello", provider=ProviderKind.GITLAB)
        await db_session.flush()

        result = await RepositoryRepository(db_session).get_for_account(account, "octo/hello")

        assert result is not None
        assert result.id == mine.id

    async def test_list_for_owner(self, db_session):
        make_repository(db_session, full_name="octo/b")
        make_repository(db_session, full_name="octo/a")
        make_repository(db_session, full_name="octo/c", owner_id="bob")
        await db_session.flush()

        results = await RepositoryRepository(db_session).list_for_owner("alice")

        assert [r.full_name for r in results] == ["octo/a", "octo/b"]


class TestRepositoryRepositoryUpsert:
    """Create/update from provider data."""

    async def test_upsert_creates(self, db_session):
        account = make_account(db_session)
        await db_session.flush()

        repo, created = await RepositoryRepository(db_session).upsert_from_provider(account, _remote())

        assert created is True
        assert repo.account_id == account.id
        assert repo.owner_id == "alice"
        assert repo.default_branch == "main"

    async def test_upsert_reattaches_orphan(self, db_session):
        """A repository left behind by a removed account is re-attached."""
        orphan = make_repository(db_session, is_active=False)
        account = make_account(db_session)
        await db_session.flush()

        repo, created = await RepositoryRepository(db_session).upsert_from_provider(
            account, _remote(default_branch="trunk")
        )

        assert created is False
        assert repo.id == orphan.id
        assert repo.account_id == account.id
        assert repo.is_active is True
        assert repo.default_branch == "trunk"

    async def test_subgroup_owner(self, db_session):
        account = make_account(db_session, provider=ProviderKind.GITLAB)
        await db_session.flush()

        repo, _ = await RepositoryRepository(db_session).upsert_from_provider(
            account, _remote("group/sub/app")
        )

        assert repo.owner == "group/sub"
        assert repo.name == "app"


class TestRepositoryRepositoryUpdate:
    """Sync bookkeeping."""

    async def test_record_sync_success_clears_error(self, db_session):
        repo = make_repository(db_session, last_sync_error="503")
        await db_session.flush()

        result = await RepositoryRepository(db_session).record_sync(repo.id, NOW, None)

        assert result is not None
        assert result.last_synced_at == NOW
        assert result.last_sync_error is None

    async def test_record_sync_failure_keeps_last_success(self, db_session):
        repo = make_repository(db_session, last_synced_at=NOW)
        await db_session.flush()

        result = await RepositoryRepository(db_session).record_sync(repo.id, None, "timed out")

        assert result.last_synced_at == NOW
        assert result.last_sync_error == "timed out"

    async def test_record_sync_not_found(self, db_session):
        assert await RepositoryRepository(db_session).record_sync(9999, NOW, None) is None

    async def test_detach_account(self, db_session):
        account = make_account(db_session)
        make_repository(db_session, account, full_name="octo/a")
        make_repository(db_session, account, full_name="octo/b")
        await db_session.flush()

        detached = await RepositoryRepository(db_session).detach_account(account.id)

        assert detached == 2
        assert await RepositoryRepository(db_session).list_for_account(account.id) == []

    async def test_count(self, db_session):
        """Count total repositories."""
        make_repository(db_session, full_name="octo/a")
        make_repository(db_session, full_name="octo/b")
        await db_session.flush()

        assert await RepositoryRepository(db_session).count() == 2
