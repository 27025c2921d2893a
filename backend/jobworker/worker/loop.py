"""Worker scheduling loop.

Architecture
------------
One ``Worker`` claims and runs one job at a time from a single queue.  Scale
out by running more workers; they coordinate only through the store's atomic
claim and conditional updates.

Wake-up strategy (hybrid push/poll):
  * the event bus sets the wake signal on every claimable insert/update;
  * the loop sets it again after every processed job (another may be waiting);
  * after ``max_ticks`` idle ticks the loop forces it (polling backstop for
    dropped notifications; ``max_ticks=0`` disables the backstop).

Per-job sequence:
  claim → increment attempts → handler (raced against ``job_timeout_ms``)
        → SUCCESS | RETRY (claim released) | ERROR, status + log together.

Lifecycle:
  NOT_STARTED → SUBSCRIBING → RUNNING → STOPPING → STOPPED

``stop()`` is cooperative.  It never aborts the in-flight job, it only keeps
the loop from claiming another one.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

from jobworker.db.models import Job, JobStatus
from jobworker.errors import ClaimConflict, HandlerError, JobTimeoutError, StoreError
from jobworker.events.base import EventBus, JobChange, Subscription, SubscriptionStatus
from jobworker.schemas.worker import WorkerOptions
from jobworker.store import JobStore
from jobworker.utils.logger import ctx_job_id, ctx_queue, ctx_worker_id
from jobworker.utils.metrics import record_job_outcome, record_job_timeout, record_subscription_failure
from jobworker.worker.claim import ClaimProtocol
from jobworker.worker.retry import RetryDecision, decide, resolve_max_attempts
from jobworker.worker.state import (
    LoopState,
    WorkerState,
    backstop_due,
    record_idle_tick,
    record_subscribe_failure,
    record_subscribe_success,
    reset_ticks,
)

logger = logging.getLogger("jobworker.worker.loop")

JobHandler = Callable[[Job], Awaitable[Any] | Any]


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class Worker:
    """Processes jobs from ``options.queue`` with *handler*.

    Args:
        store:      ``JobStore`` providing claim / increment / CAS operations.
        handler:    ``async def handler(job)``; plain callables run in a thread.
        options:    ``WorkerOptions`` or a dict of them; validated here.
        event_bus:  Push channel.  Without one the worker polls only.
        worker_id:  Explicit identity (default: hostname + random suffix).

    Raises:
        ConfigError: if any option violates its constraint.
    """

    def __init__(
        self,
        store: JobStore,
        handler: JobHandler,
        options: WorkerOptions | dict[str, Any],
        *,
        event_bus: EventBus | None = None,
        worker_id: str | None = None,
    ):
        self.options = WorkerOptions.build(options)
        self.id = worker_id or _default_worker_id()
        self.store = store
        self.claims = ClaimProtocol(store)
        self.handler = handler
        self.event_bus = event_bus
        self.state = WorkerState.NOT_STARTED

        self._loop_state = LoopState()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscription: Subscription | None = None
        self._generation = 0
        self._resubscribe_task: asyncio.Task | None = None
        self._abandoned: set[asyncio.Task] = set()

        if self.options.max_ticks == 0:
            logger.warning(
                "Worker %s: max_ticks is 0, the queue is only re-checked on push notifications",
                self.id,
            )
            if not self._push_enabled:
                logger.warning(
                    "Worker %s: no push channel either; queue %s is checked once at start only",
                    self.id, self.options.queue,
                )

    # ── Public API ──────────────────────────────────────────────────────

    @property
    def queue(self) -> str:
        return self.options.queue

    @property
    def loop_state(self) -> LoopState:
        return self._loop_state

    @property
    def _push_enabled(self) -> bool:
        return self.options.realtime_enabled and self.event_bus is not None

    async def start(self) -> None:
        """Subscribe, then run the loop until ``stop()``.  Never raises for
        subscription exhaustion or loop failures; the worker ends STOPPED."""
        if self.state is not WorkerState.NOT_STARTED:
            logger.warning("Worker %s already %s; start() ignored", self.id, self.state.value)
            return

        self._loop = asyncio.get_running_loop()
        ctx_worker_id.set(self.id)
        ctx_queue.set(self.queue)
        logger.info(
            "Worker %s starting (queue=%s, tick=%dms, max_ticks=%d, realtime=%s)",
            self.id, self.queue, self.options.tick_interval_ms,
            self.options.max_ticks, self._push_enabled,
        )

        self.state = WorkerState.SUBSCRIBING
        if self._push_enabled:
            subscribed = await self._subscribe_with_retry()
            if not subscribed:
                if self.state is WorkerState.SUBSCRIBING:
                    logger.error("Worker %s could not subscribe to queue %s; stopping", self.id, self.queue)
                await self.stop()
                return
        if self.state is not WorkerState.SUBSCRIBING:
            # stop() arrived while subscribing
            await self._unsubscribe()
            return

        self.state = WorkerState.RUNNING
        self._wake.set()  # check the queue right away
        try:
            await self._work()
        finally:
            await self.stop()
            self.state = WorkerState.STOPPED
            logger.info("Worker %s stopped", self.id)

    async def stop(self) -> None:
        """Stop claiming new jobs and drop the push subscription.  Idempotent."""
        if self.state in (WorkerState.STOPPING, WorkerState.STOPPED):
            return
        loop_active = self.state is WorkerState.RUNNING
        self.state = WorkerState.STOPPING
        logger.info("Worker %s stopping", self.id)
        self._wake.set()
        await self._cancel_resubscribe()
        await self._unsubscribe()
        if not loop_active:
            self.state = WorkerState.STOPPED

    def notify(self) -> None:
        """Signal that work may be available.  Safe from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._wake.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    # ── Scheduling loop ─────────────────────────────────────────────────

    async def _work(self) -> None:
        try:
            while self.state is WorkerState.RUNNING:
                if backstop_due(self._loop_state, self.options.max_ticks):
                    logger.debug(
                        "Max ticks reached after %dms; checking for work",
                        self._loop_state.ticks * self.options.tick_interval_ms,
                    )
                    self._wake.set()

                if not self._wake.is_set():
                    await self._idle_tick()
                    continue

                self._wake.clear()
                reset_ticks(self._loop_state)
                if self.state is not WorkerState.RUNNING:
                    break

                job = await self.claims.claim(self.queue)
                if job is None:
                    continue

                await self._process(job)
                self._wake.set()

            logger.debug("Work loop for worker %s ended", self.id)
        except Exception:
            logger.exception("Fatal error in work loop of worker %s", self.id)
            await self.stop()

    async def _idle_tick(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.options.tick_interval)
        except asyncio.TimeoutError:
            record_idle_tick(self._loop_state)

    # ── Job execution ───────────────────────────────────────────────────

    async def _process(self, job: Job) -> None:
        token = ctx_job_id.set(job.job_id)
        try:
            try:
                job = await self.claims.increment_attempts(job)
            except (ClaimConflict, StoreError) as exc:
                logger.error(
                    "Attempts for job %s could not be recorded; marking ERROR without running it",
                    job.job_id,
                )
                await self._finish(job, JobStatus.ERROR, exc)
                return

            max_attempts = self._max_attempts_for(job)
            logger.info(
                "Worker %s executing job %s (attempt %d/%d)",
                self.id, job.job_id, job.attempts, max_attempts,
            )
            started = time.monotonic()
            try:
                await self._run_handler(job)
            except (HandlerError, JobTimeoutError) as exc:
                duration = time.monotonic() - started
                if decide(job.attempts, max_attempts) is RetryDecision.RETRY:
                    logger.warning(
                        "Job %s failed (attempt %d/%d), will retry: %s",
                        job.job_id, job.attempts, max_attempts, exc,
                    )
                    await self._finish(job, JobStatus.RETRY, exc, duration)
                else:
                    logger.error(
                        "Job %s permanently failed after %d attempts: %s",
                        job.job_id, job.attempts, exc,
                    )
                    await self._finish(job, JobStatus.ERROR, exc, duration)
            else:
                duration = time.monotonic() - started
                logger.info("Job %s completed successfully", job.job_id)
                await self._finish(job, JobStatus.SUCCESS, None, duration)
        finally:
            ctx_job_id.reset(token)

    def _max_attempts_for(self, job: Job) -> int:
        try:
            options = job.options
        except ValueError:
            options = None
        if not isinstance(options, dict):
            logger.warning("Job %s has unreadable options; using worker defaults", job.job_id)
            options = None
        return resolve_max_attempts(options, self.options.max_attempts)

    async def _finish(
        self,
        job: Job,
        status: str,
        error: BaseException | None,
        duration: float | None = None,
    ) -> None:
        if await self.claims.commit(job, status, error):
            record_job_outcome(self.queue, status, duration)

    async def _run_handler(self, job: Job) -> None:
        """Race the handler against the job timeout.

        Losing the race does not cancel the handler; it keeps running in the
        background and only its eventual result is logged.
        """
        task = asyncio.ensure_future(self._invoke(job))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.options.job_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task not in done:
            record_job_timeout(self.queue, self.options.job_timeout_ms)
            self._abandon(task, job.job_id)
            raise JobTimeoutError(job.job_id, self.options.job_timeout_ms)

        if task.cancelled():
            raise HandlerError(job.job_id, asyncio.CancelledError())
        exc = task.exception()
        if exc is None:
            return
        if not isinstance(exc, Exception):
            raise exc
        raise HandlerError(job.job_id, exc) from exc

    async def _invoke(self, job: Job) -> None:
        if inspect.iscoroutinefunction(self.handler):
            await self.handler(job)
            return
        result = await asyncio.to_thread(self.handler, job)
        if inspect.isawaitable(result):
            await result

    def _abandon(self, task: asyncio.Task, job_id: str) -> None:
        self._abandoned.add(task)

        def _reap(t: asyncio.Task) -> None:
            self._abandoned.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.info("Timed-out handler for job %s later failed: %s", job_id, exc)
            else:
                logger.info("Timed-out handler for job %s later finished", job_id)

        task.add_done_callback(_reap)

    # ── Push subscription ───────────────────────────────────────────────

    async def _subscribe_once(self) -> None:
        await self._unsubscribe()
        self._generation += 1
        on_status = functools.partial(self._on_status, self._generation)
        timeout = self.options.subscribe_timeout_ms / 1000 or None
        self._subscription = await asyncio.wait_for(
            self.event_bus.subscribe(self.queue, self._on_change, on_status),
            timeout=timeout,
        )

    async def _subscribe_with_retry(self) -> bool:
        while self.state in (WorkerState.SUBSCRIBING, WorkerState.RUNNING):
            try:
                await self._subscribe_once()
            except asyncio.TimeoutError as exc:
                status, error = SubscriptionStatus.TIMED_OUT, exc
            except Exception as exc:
                status, error = SubscriptionStatus.CHANNEL_ERROR, exc
            else:
                record_subscribe_success(self._loop_state)
                logger.info("Worker %s subscribed to queue %s", self.id, self.queue)
                return True
            if not await self._backoff_after_failure(status, error):
                return False
        return False

    async def _backoff_after_failure(self, status: SubscriptionStatus, error: BaseException | None) -> bool:
        """Count one failure; sleep the fixed delay if another retry is allowed."""
        record_subscription_failure(self.queue, status.value)
        retries = self.options.subscribe_retries
        if not record_subscribe_failure(self._loop_state, retries):
            logger.error(
                "Subscription to queue %s failed (%s) with no retries left: %s",
                self.queue, status.value, error,
            )
            return False
        logger.warning(
            "Subscription to queue %s failed (%s): %s; retry %d/%d in %dms",
            self.queue, status.value, error, self._loop_state.subscribe_failures,
            retries, self.options.subscribe_retry_delay_ms,
        )
        await asyncio.sleep(self.options.subscribe_retry_delay_ms / 1000)
        return True

    def _on_change(self, change: JobChange) -> None:
        if change.status is not None and change.status not in JobStatus.CLAIMABLE:
            return
        logger.debug("Push notification (%s job %s); checking for work", change.op, change.job_id)
        self.notify()

    def _on_status(self, generation: int, status: SubscriptionStatus, error: BaseException | None = None) -> None:
        if generation != self._generation:
            return  # report from a subscription we already replaced
        if status is SubscriptionStatus.SUBSCRIBED:
            logger.debug("Worker %s channel subscribed", self.id)
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._begin_resubscribe, generation, status, error)

    def _begin_resubscribe(self, generation: int, status: SubscriptionStatus, error: BaseException | None) -> None:
        if generation != self._generation or self.state is not WorkerState.RUNNING:
            return
        if self._resubscribe_task is not None and not self._resubscribe_task.done():
            return
        logger.warning("Worker %s push channel reported %s; resubscribing", self.id, status.value)
        self._resubscribe_task = asyncio.create_task(
            self._resubscribe(status, error), name=f"resubscribe-{self.id}"
        )

    async def _resubscribe(self, status: SubscriptionStatus, error: BaseException | None) -> None:
        if await self._backoff_after_failure(status, error) and await self._subscribe_with_retry():
            return
        if self.state is WorkerState.RUNNING:
            logger.error("Worker %s abandoning push channel for queue %s; stopping", self.id, self.queue)
            await self.stop()

    async def _cancel_resubscribe(self) -> None:
        task = self._resubscribe_task
        self._resubscribe_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _unsubscribe(self) -> None:
        sub, self._subscription = self._subscription, None
        self._generation += 1
        if sub is None:
            return
        try:
            await sub.unsubscribe()
        except Exception:
            logger.warning("Error unsubscribing worker %s from queue %s", self.id, self.queue, exc_info=True)


# ─────────────────────────────────────────────────────────────────────────────
# Fleet helpers
# ─────────────────────────────────────────────────────────────────────────────


async def start_workers(workers: list[Worker]) -> None:
    """Run several workers until every one of them has stopped."""
    results = await asyncio.gather(*(w.start() for w in workers), return_exceptions=True)
    for worker, result in zip(workers, results):
        if isinstance(result, BaseException):
            logger.error("Worker %s ended with error: %s", worker.id, result)


async def stop_workers(workers: list[Worker]) -> None:
    results = await asyncio.gather(*(w.stop() for w in workers), return_exceptions=True)
    for worker, result in zip(workers, results):
        if isinstance(result, BaseException):
            logger.error("Worker %s failed to stop cleanly: %s", worker.id, result)
