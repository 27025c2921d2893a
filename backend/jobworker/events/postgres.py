"""PostgreSQL LISTEN/NOTIFY event bus.

Migration ``v002`` installs a trigger on ``jobs`` that runs

    pg_notify('jobworker_jobs', json_build_object('op', TG_OP, 'queue', NEW.queue,
                                                  'job_id', NEW.job_id, 'status', NEW.status)::text)

whenever a row becomes claimable (insert, or release to RETRY).  Each subscription holds one dedicated asyncpg
connection (LISTEN cannot share a pooled connection) and filters the
notifications down to its queue.  Losing that connection is reported as
``CHANNEL_ERROR``; the worker decides whether to resubscribe.
"""

from __future__ import annotations

import json
import logging

import asyncpg

from jobworker.errors import SubscriptionError
from jobworker.events.base import (
    ChangeCallback,
    JobChange,
    StatusCallback,
    SubscriptionStatus,
)

logger = logging.getLogger("jobworker.events.postgres")

NOTIFY_CHANNEL = "jobworker_jobs"


def parse_notification(payload: str) -> JobChange | None:
    """Decode a trigger payload; ``None`` for anything malformed."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or not data.get("queue"):
        return None
    return JobChange(
        op=str(data.get("op") or "UPDATE"),
        queue=str(data["queue"]),
        job_id=data.get("job_id"),
        status=data.get("status"),
    )


class PostgresSubscription:
    def __init__(
        self,
        queue: str,
        conn: asyncpg.Connection,
        on_change: ChangeCallback,
        on_status: StatusCallback | None,
        channel: str,
    ):
        self.queue = queue
        self._conn = conn
        self._on_change = on_change
        self._on_status = on_status
        self._channel = channel
        self._closing = False

    def _handle_notify(self, _conn, _pid, _channel, payload: str) -> None:
        change = parse_notification(payload)
        if change is None:
            logger.debug("Ignoring malformed notification: %r", payload)
            return
        if change.queue != self.queue:
            return
        try:
            self._on_change(change)
        except Exception:
            logger.exception("Change callback failed for queue %s", self.queue)

    def _handle_termination(self, _conn) -> None:
        if self._closing:
            return
        logger.warning("LISTEN connection for queue %s terminated", self.queue)
        if self._on_status is not None:
            self._on_status(
                SubscriptionStatus.CHANNEL_ERROR,
                SubscriptionError("notification connection terminated"),
            )

    async def unsubscribe(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self._conn.remove_listener(self._channel, self._handle_notify)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
            logger.debug("remove_listener failed for queue %s", self.queue, exc_info=True)
        finally:
            await self._conn.close()
        if self._on_status is not None:
            self._on_status(SubscriptionStatus.CLOSED, None)


class PostgresEventBus:
    def __init__(self, dsn: str, *, channel: str = NOTIFY_CHANNEL):
        self._dsn = dsn
        self._channel = channel

    async def subscribe(
        self,
        queue: str,
        on_change: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> PostgresSubscription:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (asyncpg.PostgresError, OSError) as exc:
            raise SubscriptionError(f"could not open LISTEN connection: {exc}") from exc

        sub = PostgresSubscription(queue, conn, on_change, on_status, self._channel)
        try:
            await conn.add_listener(self._channel, sub._handle_notify)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            await conn.close()
            raise SubscriptionError(f"LISTEN {self._channel} failed: {exc}") from exc
        conn.add_termination_listener(sub._handle_termination)

        logger.info("Listening on %s for queue %s", self._channel, queue)
        if on_status is not None:
            on_status(SubscriptionStatus.SUBSCRIBED, None)
        return sub
