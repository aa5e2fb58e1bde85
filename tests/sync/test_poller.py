"""Tests for RepositoryPoller."""

import pytest

from ampel_sync.db.repositories import SnapshotRepository
from ampel_sync.exceptions import (
    AuthError,
    NotFoundError,
    ProviderUnavailableError,
    UnmappedStatusError,
)
from ampel_sync.providers.schemas import CIStatus, Credentials, PRStatus, ProviderKind, ReviewState
from ampel_sync.status import AmpelStatus
from ampel_sync.sync.poller import RepositoryPoller
from tests.factories import JAN_15, NOW, check, make_account, make_repository, review


@pytest.fixture
async def repo(session, provider):
    provider.add_repository("octo/hello")
    async with session() as s:
        account = make_account(s)
        repository = make_repository(s, account)
    return repository


def _poller(fake_factory, repo, session, write_lock) -> RepositoryPoller:
    adapter = fake_factory.create(ProviderKind.GITHUB, Credentials(token="token-1"))
    return RepositoryPoller(adapter, repo, session, write_lock)


async def _snapshot(session, repo, number):
    async with session() as s:
        return await SnapshotRepository(s).get_by_number(repo.id, number)


class TestPollWrites:
    """Open pull requests are written with a derived status."""

    async def test_poll_writes_every_open_pr(self, repo, provider, fake_factory, session, write_lock):
        provider.add_pull_request(
            "octo/hello",
            1,
            checks=[check(CIStatus.SUCCESS)],
            reviews=[review("carol", ReviewState.APPROVED, JAN_15)],
        )
        provider.add_pull_request("octo/hello", 2, is_draft=True, status=PRStatus.DRAFT)
        provider.add_pull_request("octo/hello", 3, status=PRStatus.MERGED)

        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.open_prs == 2
        assert result.written == 2
        assert not result.degraded
        green = await _snapshot(session, repo, 1)
        assert green.ampel_status is AmpelStatus.GREEN
        assert green.synced_at == NOW
        draft = await _snapshot(session, repo, 2)
        assert draft.ampel_status is AmpelStatus.RED
        assert "Draft" in draft.blockers
        assert await _snapshot(session, repo, 3) is None

    async def test_enrichment_follows_the_pr_list(self, repo, provider, fake_factory, session, write_lock):
        """Checks and reviews are fetched per listed PR, after the list."""
        provider.add_pull_request("octo/hello", 1)

        await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        operations = [c[0] for c in provider.calls]
        assert operations == ["list_pull_requests", "get_ci_checks", "get_reviews"]

    async def test_detail_fetch_when_list_lacks_conflicts(
        self, repo, provider, fake_factory, session, write_lock
    ):
        provider.list_includes_conflicts = False
        provider.add_pull_request("octo/hello", 1)
        provider.add_pull_request("octo/hello", 2, has_conflicts=True)

        await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert [c[2] for c in provider.calls_of("get_pull_request")] == [1, 2]
        conflicted = await _snapshot(session, repo, 2)
        assert conflicted.has_conflicts is True
        assert "Conflicts" in conflicted.blockers


class TestPollDegradation:
    """Sub-resource failures degrade instead of failing the poll."""

    async def test_ci_failure_is_recorded_as_unknown(
        self, repo, provider, fake_factory, session, write_lock
    ):
        provider.add_pull_request("octo/hello", 1, checks=[check(CIStatus.SUCCESS)])
        provider.add_pull_request("octo/hello", 2, checks=[check(CIStatus.SUCCESS)])
        provider.fail("get_ci_checks:octo/hello#2", ProviderUnavailableError("502 Bad Gateway", 502))

        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.degraded
        assert result.ci_unknown == [2]
        assert result.reviews_unknown == []
        unknown = await _snapshot(session, repo, 2)
        assert unknown.ci_checks is None
        assert "CIUnknown" in unknown.blockers
        assert unknown.ampel_status is not AmpelStatus.GREEN
        known = await _snapshot(session, repo, 1)
        assert known.ci_checks == [{"name": "build", "status": "success", "url": None}]

    async def test_review_failure_is_recorded_as_unknown(
        self, repo, provider, fake_factory, session, write_lock
    ):
        provider.add_pull_request("octo/hello", 1)
        provider.fail("get_reviews", NotFoundError("reviews: not found", 404))

        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.reviews_unknown == [1]
        snapshot = await _snapshot(session, repo, 1)
        assert snapshot.reviews is None
        assert "ReviewsUnknown" in snapshot.blockers

    async def test_auth_error_aborts_poll(self, repo, provider, fake_factory, session, write_lock):
        """Credential failures are not degraded; nothing is written."""
        provider.add_pull_request("octo/hello", 1)
        provider.fail("get_reviews", AuthError("Bad credentials", 401))

        with pytest.raises(AuthError):
            await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert await _snapshot(session, repo, 1) is None

    async def test_list_failure_propagates(self, repo, provider, fake_factory, session, write_lock):
        provider.fail("list_pull_requests", ProviderUnavailableError("503", 503))

        with pytest.raises(ProviderUnavailableError):
            await _poller(fake_factory, repo, session, write_lock).poll(NOW)


class TestVanishedPullRequests:
    """PRs that leave the open list get their final state."""

    async def test_merged_pr_is_closed_out(self, repo, provider, fake_factory, session, write_lock):
        provider.add_pull_request("octo/hello", 1)
        provider.add_pull_request("octo/hello", 2)
        await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        provider.set_status("octo/hello", 1, PRStatus.MERGED)
        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.open_prs == 1
        assert result.closed == 1
        merged = await _snapshot(session, repo, 1)
        assert merged.status is PRStatus.MERGED

    async def test_deleted_pr_is_removed(self, repo, provider, fake_factory, session, write_lock):
        provider.add_pull_request("octo/hello", 1)
        await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        del provider.pull_requests["octo/hello"][1]
        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.removed == 1
        assert await _snapshot(session, repo, 1) is None


class TestUnmappedPullRequests:
    """A PR the adapter cannot normalize fails alone."""

    async def test_other_prs_are_still_written(self, repo, provider, fake_factory, session, write_lock):
        provider.add_pull_request("octo/hello", 1)
        provider.add_unmapped_pull_request("octo/hello", 2, "brand_new_state")

        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.written == 1
        assert list(result.unmapped) == [2]
        assert "brand_new_state" in result.item_error
        assert await _snapshot(session, repo, 1) is not None
        assert await _snapshot(session, repo, 2) is None

    async def test_existing_snapshot_is_left_untouched(
        self, repo, provider, fake_factory, session, write_lock
    ):
        """An unmapped PR is neither closed out nor deleted."""
        provider.add_pull_request("octo/hello", 1)
        await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        provider.add_unmapped_pull_request("octo/hello", 1, "brand_new_state")
        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.closed == 0
        assert result.removed == 0
        snapshot = await _snapshot(session, repo, 1)
        assert snapshot.status is PRStatus.OPEN

    async def test_detail_fetch_sets_pr_aside(self, repo, provider, fake_factory, session, write_lock):
        provider.list_includes_conflicts = False
        provider.add_pull_request("octo/hello", 1)
        provider.add_pull_request("octo/hello", 2)
        provider.fail(
            "get_pull_request:octo/hello#2", UnmappedStatusError("github", "PR state", "frozen")
        )

        result = await _poller(fake_factory, repo, session, write_lock).poll(NOW)

        assert result.written == 1
        assert "frozen" in result.unmapped[2]
        assert await _snapshot(session, repo, 1) is not None
