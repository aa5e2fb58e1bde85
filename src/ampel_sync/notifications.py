"""Outbound events for an external notification service.

Delivery (email, chat, ...) is someone else's job; the sync engine only
emits these three events through a ``Notifier``.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from ampel_sync.logging import get_logger

logger = get_logger(__name__)


class EventKind(StrEnum):
    SYNC_FAILED = "sync_failed"
    TOKEN_EXPIRING = "token_expiring"
    BULK_MERGE_COMPLETED = "bulk_merge_completed"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Notifier(Protocol):
    async def notify(self, event: Event) -> None: ...


class LogNotifier:
    """Default notifier: writes events to the log."""

    async def notify(self, event: Event) -> None:
        logger.bind(event=event.kind.value, **event.payload).info("Event {}", event.kind.value)

