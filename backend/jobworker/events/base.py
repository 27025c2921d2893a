"""Push-notification contract shared by every event bus."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol


class SubscriptionStatus(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class JobChange:
    """One insert/update notification for a row in a queue."""

    op: str  # INSERT | UPDATE
    queue: str
    job_id: str | None = None
    status: str | None = None


ChangeCallback = Callable[[JobChange], None]
StatusCallback = Callable[[SubscriptionStatus, "BaseException | None"], None]


class Subscription(Protocol):
    queue: str

    async def unsubscribe(self) -> None: ...


class EventBus(Protocol):
    """Best-effort delivery: notifications may be dropped or duplicated.

    ``subscribe`` raises on failure to establish the channel.  Failures after
    that are reported through *on_status*.
    """

    async def subscribe(
        self,
        queue: str,
        on_change: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription: ...
