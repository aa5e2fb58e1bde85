"""Encrypted multi-account credential storage.

The vault owns the ProviderAccount lifecycle: it validates a token with
the provider before storing it, keeps exactly one default account per
(owner, provider, instance), and decrypts tokens for the sync and merge
workers. Provider calls are always made outside the database write lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError

from ampel_sync.db.engine import SessionProvider, get_session
from ampel_sync.db.models import ProviderAccount, ValidationStatus
from ampel_sync.db.repositories import AccountRepository, RepositoryRepository, SyncJobRepository
from ampel_sync.exceptions import (
    AccountNotFoundError,
    DuplicateAccountError,
    InvalidCredentialsError,
    ValidationError,
)
from ampel_sync.logging import bind_account, get_logger
from ampel_sync.providers import ProviderAdapterFactory
from ampel_sync.providers.schemas import CredentialValidation, Credentials, ProviderKind

from .cipher import TokenCipher

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_instance_url(instance_url: str | None) -> str:
    """Canonical stored form: "" for the public cloud, no trailing slash otherwise."""
    if not instance_url:
        return ""
    return instance_url.strip().rstrip("/")


class CredentialVault:
    """Stores provider credentials encrypted at rest.

    Usage:
        vault = CredentialVault(TokenCipher.from_base64(key), ProviderAdapterFactory())
        account = await vault.add("alice", ProviderKind.GITHUB, "work", "ghp_...")
        credentials = await vault.get_credentials(account.id)
    """

    def __init__(
        self,
        cipher: TokenCipher,
        adapter_factory: ProviderAdapterFactory,
        session: SessionProvider = get_session,
        write_lock: asyncio.Lock | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the vault.

        Args:
            cipher: Token cipher built once from the configured key
            adapter_factory: Builds adapters for credential validation
            session: Session provider (committing context manager)
            write_lock: Lock shared with the scheduler and bulk merge
            clock: Callable returning the current UTC time
        """
        self._cipher = cipher
        self._factory = adapter_factory
        self._session = session
        self._lock = write_lock or asyncio.Lock()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    async def list_accounts(self, owner_id: str) -> list[ProviderAccount]:
        async with self._session() as session:
            return await AccountRepository(session).list_for_owner(owner_id)

    async def get_account(self, account_id: int) -> ProviderAccount:
        """Load an account.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        async with self._session() as session:
            account = await AccountRepository(session).get_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    async def get_credentials(self, account_id: int) -> Credentials:
        """Decrypt an account's credentials.

        Raises:
            AccountNotFoundError: If no such account exists
            DecryptionError: If the stored token cannot be decrypted
        """
        account = await self.get_account(account_id)
        return self.credentials_for(account)

    def credentials_for(self, account: ProviderAccount) -> Credentials:
        """Decrypt the credentials of an already loaded account."""
        return Credentials(
            token=self._cipher.decrypt(account.encrypted_token),
            username=account.auth_username,
        )

    # -------------------------------------------------------------------------
    # Account lifecycle
    # -------------------------------------------------------------------------
    async def add(
        self,
        owner_id: str,
        provider: ProviderKind | str,
        label: str,
        raw_token: str,
        *,
        instance_url: str | None = None,
        username: str | None = None,
    ) -> ProviderAccount:
        """Validate a token with its provider and store it.

        The first account in its (owner, provider, instance) scope becomes
        the default.

        Raises:
            ValidationError: Malformed input (rejected before any network call)
            InvalidCredentialsError: The provider refused the token
            DuplicateAccountError: Label or remote user already stored in the scope
        """
        label = label.strip()
        if not label:
            raise ValidationError("Account label must not be empty")
        if not raw_token.strip():
            raise ValidationError("Access token must not be empty")

        kind = ProviderKind(provider)
        instance = normalize_instance_url(instance_url)
        credentials = Credentials(token=raw_token.strip(), username=username)

        adapter = self._factory.create(kind, credentials, instance or None)
        try:
            validation = await adapter.validate_credentials()
        finally:
            await adapter.close()

        if not validation.is_valid:
            logger.warning("{} rejected credential for label '{}'", kind.value, label)
            raise InvalidCredentialsError(validation.error_message or "Credential rejected")

        remote_user_id = validation.remote_user_id or ""
        encrypted = self._cipher.encrypt(credentials.token)
        now = self._clock()

        async with self._lock:
            try:
                async with self._session() as session:
                    accounts = AccountRepository(session)
                    if await accounts.find_remote_user(owner_id, kind, instance, remote_user_id):
                        raise DuplicateAccountError(
                            f"{validation.username} is already connected for {kind.value}"
                        )
                    if await accounts.find_label(owner_id, kind, instance, label):
                        raise DuplicateAccountError(f"Label '{label}' is already in use")

                    is_first = not await accounts.list_in_scope(owner_id, kind, instance)
                    account = accounts.add(
                        ProviderAccount(
                            owner_id=owner_id,
                            provider=kind,
                            instance_url=instance,
                            label=label,
                            remote_user_id=remote_user_id,
                            username=validation.username or "",
                            encrypted_token=encrypted,
                            auth_username=username,
                            scopes=list(validation.scopes),
                            token_expires_at=validation.expires_at,
                            last_validated_at=now,
                            validation_status=_status_for(validation, now),
                            is_active=True,
                            is_default=is_first,
                        )
                    )
                    await accounts.flush()
            except IntegrityError as e:
                raise DuplicateAccountError("Account violates a uniqueness rule") from e

        bind_account(account.id, kind.value).info(
            "Added account '{}' as {}{}", label, account.username, " (default)" if is_first else ""
        )
        return account

    async def set_default(self, account_id: int) -> ProviderAccount:
        """Make an account the default of its scope.

        Clearing the previous default and setting the new one happen in a
        single transaction.
        """
        async with self._lock, self._session() as session:
            accounts = AccountRepository(session)
            account = await accounts.get_by_id(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if not account.is_default:
                await accounts.clear_default(account.owner_id, account.provider, account.instance_url)
                account.is_default = True
                await accounts.flush()
        return account

    async def revalidate(self, account_id: int) -> ProviderAccount:
        """Re-check a stored credential with its provider.

        Only flips ``validation_status``; an account is never deleted here.
        Non-auth provider failures propagate and leave the status unchanged.
        """
        account = await self.get_account(account_id)
        credentials = self.credentials_for(account)

        adapter = self._factory.create(
            account.provider, credentials, account.instance_url or None, account_id=account.id
        )
        try:
            validation = await adapter.validate_credentials()
        finally:
            await adapter.close()

        return await self.record_validation(account_id, validation)

    async def record_validation(
        self, account_id: int, validation: CredentialValidation
    ) -> ProviderAccount:
        """Store a validation outcome; invalid credentials stop polling."""
        now = self._clock()
        async with self._lock, self._session() as session:
            accounts = AccountRepository(session)
            account = await accounts.get_by_id(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            previous = account.validation_status
            status = _status_for(validation, now)
            if validation.is_valid:
                account.scopes = list(validation.scopes)
                account.token_expires_at = validation.expires_at
                if validation.username:
                    account.username = validation.username
            await accounts.set_validation(account, status, now)

            if status is not ValidationStatus.VALID:
                cancelled = await SyncJobRepository(session).cancel_for_account(account_id, now)
            else:
                cancelled = 0

        log = bind_account(account_id, account.provider.value)
        if status is not previous:
            log.info("Validation status {} -> {}", previous.value, status.value)
        if cancelled:
            log.warning("Cancelled {} pending jobs", cancelled)
        return account

    async def mark_invalid(self, account_id: int, reason: str) -> None:
        """Flip an account to Invalid after the provider rejected its token."""
        await self.record_validation(
            account_id, CredentialValidation(is_valid=False, error_message=reason)
        )

    async def remove(self, account_id: int) -> None:
        """Delete an account.

        Repositories keep their history with ``account_id`` nulled; pending
        jobs are cancelled; if the account was the default, the oldest
        remaining account of the scope is promoted.
        """
        now = self._clock()
        async with self._lock, self._session() as session:
            accounts = AccountRepository(session)
            account = await accounts.get_by_id(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            await SyncJobRepository(session).cancel_for_account(account_id, now)
            detached = await RepositoryRepository(session).detach_account(account_id)

            was_default = account.is_default
            scope = (account.owner_id, account.provider, account.instance_url)
            await accounts.delete(account)
            # The delete must reach the database before another default is set
            await accounts.flush()

            if was_default:
                remaining = await accounts.list_in_scope(*scope)
                if remaining:
                    remaining[0].is_default = True
                    await accounts.flush()

        bind_account(account_id, scope[1].value).info(
            "Removed account ({} repositories detached)", detached
        )


def _status_for(validation: CredentialValidation, now: datetime) -> ValidationStatus:
    if not validation.is_valid:
        return ValidationStatus.INVALID
    if validation.expires_at is not None and validation.expires_at <= now:
        return ValidationStatus.EXPIRED
    return ValidationStatus.VALID
