"""Exception taxonomy for the worker.

``ConfigError`` fails construction and is never retried.  ``StoreError`` is a
transient storage failure.  ``ClaimConflict`` means a conditional update
matched zero rows because some other actor already changed the job.
``HandlerError`` and ``JobTimeoutError`` both feed the retry/fail decision.
``SubscriptionError`` belongs to the push channel only.
"""

from __future__ import annotations


class JobWorkerError(Exception):
    """Base class for all worker errors."""


class ConfigError(JobWorkerError, ValueError):
    """Invalid worker option."""


class StoreError(JobWorkerError):
    """The job store could not complete an operation."""


class JobNotFound(StoreError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} does not exist")
        self.job_id = job_id


class ClaimConflict(JobWorkerError):
    """A conditional update affected zero rows."""

    def __init__(self, job_id: str, operation: str):
        super().__init__(
            f"Job {job_id} changed since it was claimed; {operation} abandoned"
        )
        self.job_id = job_id
        self.operation = operation


class HandlerError(JobWorkerError):
    """The job handler raised.  The original exception is ``__cause__``."""

    def __init__(self, job_id: str, exc: BaseException):
        super().__init__(f"Handler failed for job {job_id}: {exc}")
        self.job_id = job_id


class JobTimeoutError(JobWorkerError):
    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class SubscriptionError(JobWorkerError):
    """The push channel could not be (re)established."""
