"""Tests for AccountRepository."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from ampel_sync.db.models import ValidationStatus
from ampel_sync.db.repositories import AccountRepository
from ampel_sync.providers.schemas import ProviderKind
from tests.factories import NOW, make_account


class TestAccountScopes:
    """Lookups within (owner, provider, instance)."""

    async def test_list_for_owner_groups_by_provider(self, db_session):
        make_account(db_session, provider=ProviderKind.GITLAB, label="b")
        make_account(db_session, provider=ProviderKind.GITHUB, label="z")
        make_account(db_session, provider=ProviderKind.GITHUB, label="a", remote_user_id="2")
        make_account(db_session, owner_id="bob")
        await db_session.flush()

        accounts = await AccountRepository(db_session).list_for_owner("alice")

        assert [(a.provider, a.label) for a in accounts] == [
            (ProviderKind.GITHUB, "a"),
            (ProviderKind.GITHUB, "z"),
            (ProviderKind.GITLAB, "b"),
        ]

    async def test_find_label_and_remote_user(self, db_session):
        account = make_account(db_session)
        await db_session.flush()
        accounts = AccountRepository(db_session)

        assert await accounts.find_label("alice", ProviderKind.GITHUB, "", "work") is account
        assert await accounts.find_remote_user("alice", ProviderKind.GITHUB, "", "1") is account
        assert await accounts.find_label("alice", ProviderKind.GITHUB, "https://ghe", "work") is None

    async def test_get_default(self, db_session):
        make_account(db_session)
        default = make_account(db_session, label="bot", remote_user_id="2", is_default=True)
        await db_session.flush()

        assert await AccountRepository(db_session).get_default("alice", ProviderKind.GITHUB, "") is default


class TestAccountConstraints:
    """Uniqueness enforced by the database."""

    async def test_two_defaults_rejected(self, db_session):
        make_account(db_session, is_default=True)
        make_account(db_session, label="bot", remote_user_id="2", is_default=True)

        with pytest.raises(IntegrityError):
            await db_session.flush()

    async def test_defaults_in_different_instances(self, db_session):
        make_account(db_session, is_default=True)
        make_account(db_session, is_default=True, instance_url="https://ghe.corp")

        await db_session.flush()

    async def test_clear_default(self, db_session):
        account = make_account(db_session, is_default=True)
        await db_session.flush()
        accounts = AccountRepository(db_session)

        await accounts.clear_default("alice", ProviderKind.GITHUB, "")

        await db_session.refresh(account)
        assert account.is_default is False


class TestAccountUpdates:
    async def test_set_validation(self, db_session):
        account = make_account(db_session)
        await db_session.flush()

        await AccountRepository(db_session).set_validation(account, ValidationStatus.INVALID, NOW)

        assert account.validation_status is ValidationStatus.INVALID
        assert account.last_validated_at == NOW
        assert account.can_sync is False

    async def test_list_expiring(self, db_session):
        soon = make_account(db_session, token_expires_at=NOW + timedelta(hours=2))
        make_account(db_session, label="later", remote_user_id="2", token_expires_at=NOW + timedelta(days=30))
        make_account(db_session, label="never", remote_user_id="3")
        await db_session.flush()

        expiring = await AccountRepository(db_session).list_expiring(NOW + timedelta(days=1))

        assert [a.id for a in expiring] == [soon.id]
