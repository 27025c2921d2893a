"""Row-change notifications that wake idle workers.

``LocalEventBus`` fans out in-process (SQLite / tests).  ``PostgresEventBus``
listens on a NOTIFY channel fed by a trigger on ``jobs``.
"""

from jobworker.events.base import (
    EventBus,
    JobChange,
    Subscription,
    SubscriptionStatus,
)
from jobworker.events.local import LocalEventBus

__all__ = ["EventBus", "JobChange", "LocalEventBus", "Subscription", "SubscriptionStatus"]
