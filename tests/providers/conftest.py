"""Fixtures for adapter tests backed by httpx.MockTransport."""

from collections import deque
from typing import Any

import httpx
import pytest

from ampel_sync.config import RateLimitConfig
from ampel_sync.rate_limit import RateLimitTracker
from tests.factories import NOW
from tests.fakes import FrozenClock


class MockProviderAPI:
    """Routes requests by method and raw (still percent-encoded) path.

    Each route holds a queue of responses; the last one repeats. Unknown
    routes answer 404. Every request is recorded for assertions.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], deque[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        json: Any = None,
        *,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        response = httpx.Response(status_code, json=json, headers=headers)
        self.routes.setdefault((method, path), deque()).append(response)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.raw_path.decode().split("?", 1)[0]
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"message": "404 Not Found"})
        return queue.popleft() if len(queue) > 1 else queue[0]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last(self, method: str | None = None) -> httpx.Request:
        matching = [r for r in self.requests if method is None or r.method == method]
        return matching[-1]


@pytest.fixture
def api() -> MockProviderAPI:
    return MockProviderAPI()


@pytest.fixture
def adapter_tracker() -> RateLimitTracker:
    return RateLimitTracker(RateLimitConfig(), FrozenClock(NOW))
