"""In-process event bus.

Used when the database has no notification channel of its own (SQLite) and in
tests.  ``SqlJobStore`` publishes into it after enqueueing and after RETRY
transitions.
"""

from __future__ import annotations

import logging

from jobworker.events.base import (
    ChangeCallback,
    JobChange,
    StatusCallback,
    SubscriptionStatus,
)

logger = logging.getLogger("jobworker.events.local")


class LocalSubscription:
    def __init__(self, bus: "LocalEventBus", queue: str, on_change: ChangeCallback, on_status: StatusCallback | None):
        self.queue = queue
        self._bus = bus
        self._on_change = on_change
        self._on_status = on_status
        self.active = True

    def deliver(self, change: JobChange) -> None:
        try:
            self._on_change(change)
        except Exception:
            logger.exception("Change callback failed for queue %s", self.queue)

    def report(self, status: SubscriptionStatus, error: BaseException | None = None) -> None:
        if self._on_status is not None:
            self._on_status(status, error)

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)
        self.report(SubscriptionStatus.CLOSED)


class LocalEventBus:
    def __init__(self) -> None:
        self._subscriptions: list[LocalSubscription] = []

    async def subscribe(
        self,
        queue: str,
        on_change: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> LocalSubscription:
        sub = LocalSubscription(self, queue, on_change, on_status)
        self._subscriptions.append(sub)
        sub.report(SubscriptionStatus.SUBSCRIBED)
        logger.debug("Local subscription added for queue %s", queue)
        return sub

    def publish(self, change: JobChange) -> int:
        """Deliver *change* to every subscriber of its queue.  Returns the fan-out."""
        targets = [s for s in self._subscriptions if s.queue == change.queue]
        for sub in targets:
            sub.deliver(change)
        return len(targets)

    def subscriber_count(self, queue: str | None = None) -> int:
        if queue is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.queue == queue)

    def _remove(self, sub: LocalSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
