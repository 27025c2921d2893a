"""Helpers for putting jobs on a queue.

Two entry points:
  enqueue_job(db, queue, payload)   — synchronous add to a caller's session, so
                                      the job lands in the same transaction as
                                      the caller's own writes.  Caller commits.
  enqueue_jobs(store, jobs)         — async batch insert through a
                                      ``SqlJobStore``; commits and notifies
                                      in-process subscribers.

Both always create rows as ``PENDING`` with zero attempts and no claim,
whatever the caller passes.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from jobworker.db.models import Job, JobStatus


def _uuid() -> str:
    return uuid.uuid4().hex


def new_job(
    queue: str,
    payload: Any = None,
    *,
    max_attempts: int | None = None,
) -> Job:
    """Build an unsaved, claimable ``Job`` row.

    Args:
        queue:        Queue name; must be non-empty.
        payload:      Any JSON-serializable value handed to the handler.
        max_attempts: Override the worker's default for this job only.
    """
    if not queue or not queue.strip():
        raise ValueError("Queue name cannot be empty.")
    if max_attempts is not None and max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")

    now = datetime.now(timezone.utc)
    options = {"max_attempts": max_attempts} if max_attempts is not None else None
    return Job(
        job_id=_uuid(),
        queue=queue,
        status=JobStatus.PENDING,
        attempts=0,
        payload_json=json.dumps(payload) if payload is not None else None,
        options_json=json.dumps(options) if options else None,
        claimed_at=None,
        created_at=now,
        updated_at=now,
    )


def enqueue_job(
    db_session,
    queue: str,
    payload: Any = None,
    *,
    max_attempts: int | None = None,
) -> Job:
    """Add a job to *db_session*.  NOT committed here."""
    job = new_job(queue, payload, max_attempts=max_attempts)
    db_session.add(job)
    return job


async def enqueue_jobs(store, jobs: list[dict[str, Any]]) -> list[Job]:
    """Insert several jobs at once.

    Each item is ``{"queue": ..., "payload": ..., "options": {"max_attempts": ...}}``;
    ``options`` and ``payload`` are optional.  Any other keys (ids, status,
    attempts) are ignored.
    """
    rows = []
    for item in jobs:
        options = item.get("options") or {}
        rows.append(
            new_job(
                item["queue"],
                item.get("payload"),
                max_attempts=options.get("max_attempts"),
            )
        )
    return await store.add_jobs(rows)
