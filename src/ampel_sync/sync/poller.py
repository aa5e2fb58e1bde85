"""Repository polling: fetch -> enrich -> snapshot.

Fetches the open pull request list first, then CI checks, then reviews
for each PR, so every enrichment joins onto a known PR identity. CI and
review failures degrade only that sub-resource to "unknown". A PR whose
state cannot be normalized is skipped and reported on the result, leaving
its snapshot untouched; auth and rate limit errors abort the poll and are
handled by the scheduler.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from ampel_sync.db.engine import SessionProvider
from ampel_sync.db.models import Repository
from ampel_sync.db.repositories import SnapshotRepository
from ampel_sync.exceptions import (
    AuthError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    UnmappedStatusError,
)
from ampel_sync.logging import bind_repo
from ampel_sync.providers.base import ProviderAdapter
from ampel_sync.providers.schemas import CICheck, ProviderPullRequest, Review
from ampel_sync.status import StatusEngine

from .results import PollResult

T = TypeVar("T")

_Enriched = tuple[ProviderPullRequest, list[CICheck] | None, list[Review] | None]


class RepositoryPoller:
    """Refreshes every open pull request snapshot of one repository.

    Usage:
        poller = RepositoryPoller(adapter, repository, get_session, lock)
        result = await poller.poll(now)
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        repository: Repository,
        session: SessionProvider,
        write_lock: asyncio.Lock,
        status_engine: StatusEngine | None = None,
    ) -> None:
        self._adapter = adapter
        self._repository = repository
        self._session = session
        self._lock = write_lock
        self._engine = status_engine
        self._log = bind_repo(repository.provider.value, repository.full_name)

    async def poll(self, now: datetime) -> PollResult:
        """Poll the repository and rewrite its snapshots.

        Raises:
            AuthError / RateLimitedError / RetryableProviderError: From the PR list
            NotFoundError: If the repository itself is gone
        """
        repo = self._repository
        result = PollResult(repository_id=repo.id)

        prs = await self._list_open(result)
        result.open_prs = len(prs)

        enriched: list[_Enriched] = []
        for pr in prs:
            checks = await self._optional(
                "CI checks", pr, lambda pr=pr: self._adapter.get_ci_checks(repo.owner, repo.name, pr)
            )
            reviews = await self._optional(
                "reviews", pr, lambda pr=pr: self._adapter.get_reviews(repo.owner, repo.name, pr.number)
            )
            if checks is None:
                result.ci_unknown.append(pr.number)
            if reviews is None:
                result.reviews_unknown.append(pr.number)
            enriched.append((pr, checks, reviews))

        async with self._lock, self._session() as session:
            stale = await SnapshotRepository(session).list_open(repo.id)
        listed = {pr.number for pr in prs}
        vanished = [
            s.number for s in stale if s.number not in listed and s.number not in result.unmapped
        ]
        final_states = await self._fetch_vanished(vanished, result)

        async with self._lock, self._session() as session:
            snapshots = SnapshotRepository(session, engine=self._engine)
            for pr, checks, reviews in enriched:
                await snapshots.write(repo.id, pr, checks, reviews, now)
                result.written += 1

            for number, final in final_states.items():
                snapshot = await snapshots.get_by_number(repo.id, number)
                if snapshot is None:
                    continue
                if final is None:
                    await snapshots.delete(snapshot)
                    result.removed += 1
                else:
                    await snapshots.set_pr_status(snapshot, final.status)
                    result.closed += 1
            await snapshots.flush()

        self._log.info(
            "Polled {} open PRs ({} closed, {} removed{})",
            result.open_prs,
            result.closed,
            result.removed,
            ", degraded" if result.degraded else "",
        )
        for number, reason in result.unmapped.items():
            self._log.error("PR #{} not synced: {}", number, reason)
        return result

    async def _list_open(self, result: PollResult) -> list[ProviderPullRequest]:
        repo = self._repository
        prs: list[ProviderPullRequest] = []
        cursor: str | None = None
        while True:
            page = await self._adapter.list_pull_requests(repo.owner, repo.name, "open", cursor)
            prs.extend(page.items)
            result.unmapped.update(page.unmapped)
            if not page.has_more or page.next_cursor is None:
                break
            cursor = page.next_cursor

        if self._adapter.list_includes_conflicts:
            return prs
        detailed: list[ProviderPullRequest] = []
        for pr in prs:
            try:
                detailed.append(await self._adapter.get_pull_request(repo.owner, repo.name, pr.number))
            except UnmappedStatusError as e:
                result.unmapped[pr.number] = str(e)
        return detailed

    async def _optional(
        self,
        what: str,
        pr: ProviderPullRequest,
        fetch: Callable[[], Awaitable[T]],
    ) -> T | None:
        """Fetch a sub-resource; None (unknown) if it fails for a non-fatal reason."""
        try:
            return await fetch()
        except (AuthError, RateLimitedError):
            raise
        except ProviderError as e:
            self._log.warning("Could not fetch {} for PR #{}: {}", what, pr.number, e)
            return None

    async def _fetch_vanished(
        self, numbers: list[int], result: PollResult
    ) -> dict[int, ProviderPullRequest | None]:
        """Final state of PRs that left the open list; None if deleted upstream."""
        repo = self._repository
        states: dict[int, ProviderPullRequest | None] = {}
        for number in numbers:
            try:
                states[number] = await self._adapter.get_pull_request(repo.owner, repo.name, number)
            except NotFoundError:
                states[number] = None
            except UnmappedStatusError as e:
                result.unmapped[number] = str(e)
        return states
