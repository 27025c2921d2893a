"""Claim protocol — claim → increment attempts → conditional outcome write.

Every step is a separate atomic store operation:

  claim()               store error → ``None`` (transient, the loop retries
                        on its own cadence)
  increment_attempts()  raises ``ClaimConflict`` / ``StoreError``; the caller
                        must route the job straight to ERROR without running
                        the handler
  commit()              status CAS + log insert in one transaction; conflicts
                        and store errors are logged and swallowed
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from jobworker.db.models import Job, JobStatus, LogStatus
from jobworker.errors import ClaimConflict, HandlerError, StoreError
from jobworker.store import JobStore
from jobworker.utils.metrics import record_claim_conflict, record_job_claimed, record_store_error

logger = logging.getLogger("jobworker.worker.claim")

# Status written for each outcome, and whether the claim is released with it.
_OUTCOME_WRITES: dict[str, tuple[str, bool]] = {
    JobStatus.SUCCESS: (LogStatus.SUCCESS, False),
    JobStatus.RETRY: (LogStatus.RETRY, True),
    JobStatus.ERROR: (LogStatus.ERROR, False),
}

_MAX_ERROR_MESSAGE = 2000


def error_detail(exc: BaseException) -> dict[str, Any]:
    """Serializable ``{"type", "message", "stack"}`` for a job log entry.

    ``HandlerError`` is unwrapped so the log shows what the handler raised.
    """
    if isinstance(exc, HandlerError) and exc.__cause__ is not None:
        exc = exc.__cause__
    return {
        "type": type(exc).__name__,
        "message": str(exc)[:_MAX_ERROR_MESSAGE],
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


class ClaimProtocol:
    def __init__(self, store: JobStore):
        self.store = store

    async def claim(self, queue: str) -> Job | None:
        try:
            job = await self.store.claim(queue)
        except StoreError as exc:
            record_store_error("claim")
            logger.error("Error claiming job from queue %s: %s", queue, exc)
            return None
        if job is not None:
            record_job_claimed(queue)
            logger.debug("Claimed job %s (queue %s, attempts %d)", job.job_id, queue, job.attempts)
        return job

    async def increment_attempts(self, job: Job) -> Job:
        try:
            return await self.store.increment_attempts(job)
        except ClaimConflict:
            record_claim_conflict(job.queue)
            logger.warning("Attempts increment conflicted for job %s", job.job_id)
            raise
        except StoreError as exc:
            record_store_error("increment_attempts")
            logger.error("Error incrementing attempts for job %s: %s", job.job_id, exc)
            raise

    async def commit(self, job: Job, status: str, error: BaseException | None = None) -> bool:
        """Write *status* and its log entry for *job*.  Returns True when committed."""
        log_status, clear_claim = _OUTCOME_WRITES[status]
        detail = error_detail(error) if error is not None else None
        try:
            await self.store.record_outcome(
                job, status, log_status, detail, clear_claim=clear_claim
            )
        except ClaimConflict:
            record_claim_conflict(job.queue)
            logger.warning(
                "Job %s was changed by another actor; %s outcome discarded",
                job.job_id, status,
            )
            return False
        except StoreError as exc:
            record_store_error("record_outcome")
            logger.error("Error recording %s outcome for job %s: %s", status, job.job_id, exc)
            return False
        except Exception:
            record_store_error("record_outcome")
            logger.exception("Unexpected error recording %s outcome for job %s", status, job.job_id)
            return False
        return True
