"""Job store — the durable ``jobs`` table and its atomic operations.

The worker never locks anything in-process.  Every guarantee comes from the
database:

  claim()               — select one eligible row of a queue and set
                          ``claimed_at`` in a single transaction.
  increment_attempts()  — ``attempts = attempts + 1`` guarded by the claim.
  update_status()       — compare-and-swap on (status, claimed_at).
  insert_log()          — append one outcome row to ``job_logs``.

Claiming strategy (dialect-aware):
  PostgreSQL — ``SELECT … FOR UPDATE SKIP LOCKED`` + ``UPDATE … RETURNING``
               in one transaction.  Correct under any number of workers.
  SQLite     — Optimistic UPDATE with an eligibility guard
               (``WHERE claimed_at IS NULL AND status IN (…)``); a zero
               rowcount means another claimer won, so the next candidate is
               tried.

A conditional update that matches zero rows raises ``ClaimConflict``; a row
that no longer exists raises ``JobNotFound``.  The two are never conflated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobworker.db.models import Job, JobLog, JobStatus, LogStatus
from jobworker.errors import ClaimConflict, JobNotFound, StoreError
from jobworker.events import JobChange, LocalEventBus

logger = logging.getLogger("jobworker.store")

# Candidates examined per SQLite claim before giving up for this round.
_SQLITE_CLAIM_CANDIDATES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(Protocol):
    async def claim(self, queue: str) -> Job | None: ...

    async def increment_attempts(self, job: Job) -> Job: ...

    async def update_status(self, job: Job, status: str, *, clear_claim: bool = False) -> Job: ...

    async def insert_log(self, job_id: str, status: str, error: dict[str, Any] | None = None) -> JobLog: ...

    async def record_outcome(
        self,
        job: Job,
        status: str,
        log_status: str,
        error: dict[str, Any] | None = None,
        *,
        clear_claim: bool = False,
    ) -> Job: ...


def _claim_guard(job: Job) -> list:
    """WHERE clauses matching the (status, claimed_at) token observed on *job*."""
    clauses = [Job.job_id == job.job_id, Job.status == job.status]
    if job.claimed_at is None:
        clauses.append(Job.claimed_at.is_(None))
    else:
        clauses.append(Job.claimed_at == job.claimed_at)
    return clauses


class SqlJobStore:
    """``JobStore`` over an async SQLAlchemy session factory.

    Args:
        session_factory: ``async_sessionmaker`` bound to the jobs database.
        dialect:         ``"postgres"`` or ``"sqlite"``; picks the claim strategy.
        event_bus:       Optional in-process bus notified on inserts and on
                         RETRY transitions (stands in for database
                         notifications where the database has none).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession],
        *,
        dialect: str = "sqlite",
        event_bus: LocalEventBus | None = None,
    ):
        self._session = session_factory
        self._dialect = dialect
        self._event_bus = event_bus

    @property
    def is_postgres(self) -> bool:
        return self._dialect == "postgres"

    # ── Claim ────────────────────────────────────────────────────────────

    async def claim(self, queue: str) -> Job | None:
        try:
            if self.is_postgres:
                return await self._claim_postgres(queue)
            return await self._claim_sqlite(queue)
        except SQLAlchemyError as exc:
            raise StoreError(f"claim failed for queue {queue!r}: {exc}") from exc

    async def _claim_postgres(self, queue: str) -> Job | None:
        now = _utcnow()
        async with self._session() as db:
            async with db.begin():
                result = await db.execute(
                    text(
                        """
                        SELECT job_id FROM jobs
                        WHERE queue = :queue
                          AND status IN ('PENDING', 'RETRY')
                          AND claimed_at IS NULL
                        ORDER BY created_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                        """
                    ),
                    {"queue": queue},
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None

                claimed = await db.execute(
                    update(Job)
                    .where(Job.job_id == job_id)
                    .values(claimed_at=now, updated_at=now)
                    .returning(Job)
                    .execution_options(synchronize_session=False)
                )
                return claimed.scalar_one()

    async def _claim_sqlite(self, queue: str) -> Job | None:
        now = _utcnow()
        async with self._session() as db:
            result = await db.execute(
                select(Job)
                .where(
                    Job.queue == queue,
                    Job.status.in_(JobStatus.CLAIMABLE),
                    Job.claimed_at.is_(None),
                )
                .order_by(Job.created_at.asc())
                .limit(_SQLITE_CLAIM_CANDIDATES)
            )
            candidates = list(result.scalars().all())

            for job in candidates:
                update_result = await db.execute(
                    update(Job)
                    .where(
                        Job.job_id == job.job_id,
                        Job.status.in_(JobStatus.CLAIMABLE),
                        Job.claimed_at.is_(None),
                    )
                    .values(claimed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount == 1:
                    await db.commit()
                    job.claimed_at = now
                    job.updated_at = now
                    return job
                logger.debug("Lost claim race for job %s; trying next candidate", job.job_id)

            await db.commit()
        return None

    # ── Attempts ─────────────────────────────────────────────────────────

    async def increment_attempts(self, job: Job) -> Job:
        try:
            async with self._session() as db:
                result = await db.execute(
                    update(Job)
                    .where(*_claim_guard(job))
                    .values(attempts=Job.attempts + 1, updated_at=_utcnow())
                    .returning(Job)
                    .execution_options(synchronize_session=False)
                )
                updated = result.scalar_one_or_none()
                if updated is None:
                    await db.rollback()
                    await self._raise_conflict_or_missing(job.job_id, "attempts increment")
                await db.commit()
                return updated
        except SQLAlchemyError as exc:
            raise StoreError(f"attempts increment failed for job {job.job_id}: {exc}") from exc

    # ── Status / logs ────────────────────────────────────────────────────

    async def update_status(self, job: Job, status: str, *, clear_claim: bool = False) -> Job:
        try:
            async with self._session() as db:
                updated = await self._cas_status(db, job, status, clear_claim=clear_claim)
                await db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"status update failed for job {job.job_id}: {exc}") from exc
        self._publish(updated, "UPDATE")
        return updated

    async def insert_log(self, job_id: str, status: str, error: dict[str, Any] | None = None) -> JobLog:
        try:
            async with self._session() as db:
                entry = self._new_log(job_id, status, error)
                db.add(entry)
                await db.commit()
                return entry
        except SQLAlchemyError as exc:
            raise StoreError(f"log insert failed for job {job_id}: {exc}") from exc

    async def record_outcome(
        self,
        job: Job,
        status: str,
        log_status: str,
        error: dict[str, Any] | None = None,
        *,
        clear_claim: bool = False,
    ) -> Job:
        """Apply the conditional status update and its log entry atomically.

        On ``ClaimConflict`` neither write lands.
        """
        try:
            async with self._session() as db:
                updated = await self._cas_status(db, job, status, clear_claim=clear_claim)
                db.add(self._new_log(job.job_id, log_status, error))
                await db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"outcome write failed for job {job.job_id}: {exc}") from exc
        self._publish(updated, "UPDATE")
        return updated

    async def _cas_status(self, db: AsyncSession, job: Job, status: str, *, clear_claim: bool) -> Job:
        values: dict[str, Any] = {"status": status, "updated_at": _utcnow()}
        if clear_claim:
            values["claimed_at"] = None
        result = await db.execute(
            update(Job)
            .where(*_claim_guard(job))
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        updated = result.scalar_one_or_none()
        if updated is None:
            await db.rollback()
            await self._raise_conflict_or_missing(job.job_id, f"{status} write")
        return updated

    async def _raise_conflict_or_missing(self, job_id: str, operation: str) -> None:
        async with self._session() as db:
            exists = await db.get(Job, job_id)
        if exists is None:
            raise JobNotFound(job_id)
        raise ClaimConflict(job_id, operation)

    @staticmethod
    def _new_log(job_id: str, status: str, error: dict[str, Any] | None) -> JobLog:
        return JobLog(
            job_id=job_id,
            status=status,
            error_json=json.dumps(error) if error is not None else None,
            created_at=_utcnow(),
        )

    def _publish(self, job: Job, op: str) -> None:
        # Only re-claimable rows are worth a wake-up.
        if self._event_bus is None or job.status not in JobStatus.CLAIMABLE:
            return
        self._event_bus.publish(
            JobChange(op=op, queue=job.queue, job_id=job.job_id, status=job.status)
        )

    # ── Producer side / reads ────────────────────────────────────────────

    async def add_jobs(self, jobs: list[Job]) -> list[Job]:
        try:
            async with self._session() as db:
                db.add_all(jobs)
                await db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"enqueue failed: {exc}") from exc
        for job in jobs:
            self._publish(job, "INSERT")
        return jobs

    async def get_job(self, job_id: str) -> Job | None:
        async with self._session() as db:
            return await db.get(Job, job_id)

    async def list_jobs(
        self,
        queue: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        stmt = select(Job).order_by(Job.created_at.asc())
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if status:
            stmt = stmt.where(Job.status == status)
        async with self._session() as db:
            result = await db.execute(stmt.limit(limit).offset(offset))
            return list(result.scalars().all())

    async def list_logs(self, job_id: str) -> list[JobLog]:
        async with self._session() as db:
            result = await db.execute(
                select(JobLog).where(JobLog.job_id == job_id).order_by(JobLog.log_id.asc())
            )
            return list(result.scalars().all())


__all__ = ["JobStore", "SqlJobStore", "JobStatus", "LogStatus"]
