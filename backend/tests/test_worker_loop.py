"""Worker loop end-to-end against a real SQLite store.

Covers:
  1. retry then success / always failing / per-job max_attempts override
  2. timeout race: handler loses, keeps running, job goes down the retry path
  3. payload delivered unchanged, sync handlers run off the event loop
  4. wake-up sources: push, polling backstop, max_ticks=0, cross-thread notify
  5. subscription lifecycle: retries, timeouts, fail-stop, resubscribe
  6. stop(): idempotent, never aborts the in-flight job
  7. store failures: increment failure → ERROR without running the handler
  8. several workers on one queue
"""

from __future__ import annotations

import asyncio
import logging
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update

from jobworker.db.models import Job, JobStatus, LogStatus
from jobworker.errors import ClaimConflict, StoreError, SubscriptionError
from jobworker.events import JobChange, SubscriptionStatus
from jobworker.utils.metrics import metrics
from jobworker.worker.enqueue import enqueue_jobs, new_job
from jobworker.worker.loop import Worker, start_workers, stop_workers
from jobworker.worker.state import WorkerState


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _opts(**overrides) -> dict:
    opts = {
        "queue": "q",
        "tick_interval_ms": 100,
        "job_timeout_ms": 2000,
        "subscribe_retry_delay_ms": 0,
        "subscribe_timeout_ms": 1000,
    }
    opts.update(overrides)
    return opts


async def _start(worker, wait_until):
    task = asyncio.create_task(worker.start())
    await wait_until(lambda: worker.state is WorkerState.RUNNING or task.done())
    return task


async def _shutdown(worker, task):
    await worker.stop()
    await asyncio.wait_for(task, timeout=5)
    assert worker.state is WorkerState.STOPPED


async def _enqueue_one(store, payload=None, **options):
    item = {"queue": "q", "payload": payload}
    if options:
        item["options"] = options
    (job,) = await enqueue_jobs(store, [item])
    return job


def _terminal(store, job_id):
    async def _check():
        job = await store.get_job(job_id)
        return job if job.is_terminal else None

    return _check


# ─────────────────────────────────────────────────────────────────────────────
# 1. Retry policy through the loop
# ─────────────────────────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_k_failures_then_success(self, store, event_bus, wait_until):
        calls = []

        async def handler(job):
            calls.append(job.attempts)
            if len(calls) <= 2:
                raise ValueError(f"flaky {len(calls)}")

        worker = Worker(store, handler, _opts(max_attempts=3), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)

        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.SUCCESS
        assert done.attempts == 3
        assert calls == [1, 2, 3]
        logs = await store.list_logs(job.job_id)
        assert [log.status for log in logs] == [LogStatus.RETRY, LogStatus.RETRY, LogStatus.SUCCESS]
        assert logs[0].error["type"] == "ValueError"
        assert logs[0].error["message"] == "flaky 1"
        assert logs[2].error is None

    @pytest.mark.asyncio
    async def test_always_failing_ends_in_error(self, store, event_bus, wait_until):
        handler = AsyncMock(side_effect=RuntimeError("broken"))
        worker = Worker(store, handler, _opts(max_attempts=3), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)

        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.ERROR
        assert done.attempts == 3
        logs = await store.list_logs(job.job_id)
        assert [log.status for log in logs].count(LogStatus.RETRY) == 2
        assert [log.status for log in logs].count(LogStatus.ERROR) == 1
        assert logs[-1].status == LogStatus.ERROR
        assert handler.await_count == 3
        assert metrics.get_counter("job_outcomes_total", {"queue": "q", "status": "ERROR"}) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("override", [1, 5])
    async def test_per_job_max_attempts_override(self, store, event_bus, wait_until, override):
        handler = AsyncMock(side_effect=RuntimeError("broken"))
        worker = Worker(store, handler, _opts(max_attempts=3), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store, max_attempts=override)

        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.ERROR
        assert done.attempts == override
        statuses = [log.status for log in await store.list_logs(job.job_id)]
        assert statuses == [LogStatus.RETRY] * (override - 1) + [LogStatus.ERROR]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw_options", ['["x"]', "5", "not json"])
    async def test_malformed_options_do_not_stop_the_loop(
        self, store, session_factory, event_bus, wait_until, raw_options
    ):
        bad = await _enqueue_one(store, payload="bad")
        async with session_factory() as session:
            await session.execute(update(Job).where(Job.job_id == bad.job_id).values(options_json=raw_options))
            await session.commit()

        async def handler(job):
            if job.payload == "bad":
                raise ValueError("bad payload")

        worker = Worker(store, handler, _opts(max_attempts=2), event_bus=event_bus)
        task = await _start(worker, wait_until)

        done_bad = await wait_until(_terminal(store, bad.job_id))
        good = await _enqueue_one(store, payload="good")
        done_good = await wait_until(_terminal(store, good.job_id))

        assert worker.state is WorkerState.RUNNING
        await _shutdown(worker, task)
        # Falls back to the worker's max_attempts.
        assert done_bad.status == JobStatus.ERROR
        assert done_bad.attempts == 2
        assert done_good.status == JobStatus.SUCCESS


# ─────────────────────────────────────────────────────────────────────────────
# 2. Timeout race
# ─────────────────────────────────────────────────────────────────────────────


class TestTimeout:
    @pytest.mark.asyncio
    async def test_slow_handler_times_out_and_keeps_running(self, store, event_bus, wait_until):
        release = asyncio.Event()
        started, finished = [], []

        async def handler(job):
            started.append(job.attempts)
            await release.wait()
            finished.append(job.attempts)

        worker = Worker(store, handler, _opts(job_timeout_ms=50, max_attempts=2), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)

        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.ERROR
        assert done.attempts == 2
        logs = await store.list_logs(job.job_id)
        assert [log.status for log in logs] == [LogStatus.RETRY, LogStatus.ERROR]
        assert all(log.error["type"] == "JobTimeoutError" for log in logs)
        assert metrics.get_counter("job_timeouts_total", {"queue": "q"}) == 2

        # Neither abandoned handler was cancelled.
        assert started == [1, 2]
        release.set()
        await wait_until(lambda: len(finished) == 2)

    @pytest.mark.asyncio
    async def test_zero_timeout_waits_for_handler(self, store, event_bus, wait_until):
        async def handler(job):
            await asyncio.sleep(0.2)

        worker = Worker(store, handler, _opts(job_timeout_ms=0), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)

        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)
        assert done.status == JobStatus.SUCCESS


# ─────────────────────────────────────────────────────────────────────────────
# 3. Handler invocation
# ─────────────────────────────────────────────────────────────────────────────


class TestHandler:
    @pytest.mark.asyncio
    async def test_payload_delivered_unchanged(self, store, event_bus, wait_until):
        payload = {"to": "a@example.com", "items": [1, 2.5, None, {"deep": [True, False]}], "note": "ünïcode"}
        seen = []

        async def handler(job):
            seen.append(job.payload)

        worker = Worker(store, handler, _opts(), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store, payload)
        await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert seen == [payload]

    @pytest.mark.asyncio
    async def test_sync_handler_runs_in_thread(self, store, event_bus, wait_until):
        threads = []

        def handler(job):
            threads.append(threading.current_thread())

        worker = Worker(store, handler, _opts(), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)
        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.SUCCESS
        assert threads and threads[0] is not threading.main_thread()

    @pytest.mark.asyncio
    async def test_sync_handler_failure_retries(self, store, event_bus, wait_until):
        def handler(job):
            raise KeyError("missing")

        worker = Worker(store, handler, _opts(max_attempts=2), event_bus=event_bus)
        task = await _start(worker, wait_until)
        job = await _enqueue_one(store)
        done = await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)

        assert done.status == JobStatus.ERROR
        logs = await store.list_logs(job.job_id)
        assert logs[0].error["type"] == "KeyError"


# ─────────────────────────────────────────────────────────────────────────────
# 4. Wake-up sources
# ─────────────────────────────────────────────────────────────────────────────


class TestWakeUp:
    @pytest.mark.asyncio
    async def test_existing_backlog_processed_at_start(self, silent_store, wait_until):
        jobs = await enqueue_jobs(silent_store, [{"queue": "q"} for _ in range(3)])
        handler = AsyncMock()
        worker = Worker(silent_store, handler, _opts(max_ticks=0, realtime_enabled=False))
        task = await _start(worker, wait_until)

        for job in jobs:
            await wait_until(_terminal(silent_store, job.job_id))
        await _shutdown(worker, task)
        assert handler.await_count == 3

    @pytest.mark.asyncio
    async def test_backstop_polls_without_push(self, silent_store, wait_until):
        handler = AsyncMock()
        worker = Worker(silent_store, handler, _opts(max_ticks=2), event_bus=None)
        task = await _start(worker, wait_until)
        await asyncio.sleep(0.15)

        job = await _enqueue_one(silent_store)
        done = await wait_until(_terminal(silent_store, job.job_id), timeout=3)
        await _shutdown(worker, task)
        assert done.status == JobStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_zero_max_ticks_without_notification_never_claims(
        self, silent_store, event_bus, wait_until
    ):
        handler = AsyncMock()
        worker = Worker(silent_store, handler, _opts(max_ticks=0), event_bus=event_bus)
        task = await _start(worker, wait_until)
        await asyncio.sleep(0.3)  # initial queue check has happened

        job = await _enqueue_one(silent_store)
        await asyncio.sleep(0.7)

        stored = await silent_store.get_job(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.claimed_at is None
        assert stored.attempts == 0
        handler.assert_not_awaited()
        assert worker.loop_state.ticks >= 5

        # A push wakes it.
        event_bus.publish(JobChange(op="INSERT", queue="q", job_id=job.job_id, status=JobStatus.PENDING))
        await wait_until(_terminal(silent_store, job.job_id))
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_notify_from_another_thread(self, silent_store, wait_until):
        handler = AsyncMock()
        worker = Worker(silent_store, handler, _opts(max_ticks=0, realtime_enabled=False))
        task = await _start(worker, wait_until)
        await asyncio.sleep(0.2)

        job = await _enqueue_one(silent_store)
        t = threading.Thread(target=worker.notify)
        t.start()
        t.join()

        await wait_until(_terminal(silent_store, job.job_id))
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_terminal_notifications_do_not_wake(self, silent_store, event_bus, wait_until):
        worker = Worker(silent_store, AsyncMock(), _opts(max_ticks=0), event_bus=event_bus)
        task = await _start(worker, wait_until)
        await asyncio.sleep(0.2)

        event_bus.publish(JobChange(op="UPDATE", queue="q", job_id="x", status=JobStatus.SUCCESS))
        assert not worker._wake.is_set()
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_realtime_disabled_does_not_subscribe(self, silent_store, event_bus, wait_until):
        worker = Worker(silent_store, AsyncMock(), _opts(realtime_enabled=False), event_bus=event_bus)
        task = await _start(worker, wait_until)
        assert event_bus.subscriber_count() == 0
        await _shutdown(worker, task)


    def test_zero_max_ticks_warns(self, silent_store, event_bus, caplog):
        with caplog.at_level(logging.WARNING, logger="jobworker.worker.loop"):
            Worker(silent_store, AsyncMock(), {"queue": "q", "max_ticks": 0}, event_bus=event_bus)
        warnings = [r for r in caplog.records if r.name == "jobworker.worker.loop" and r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "max_ticks is 0" in warnings[0].getMessage()

    def test_zero_max_ticks_without_push_warns_twice(self, silent_store, caplog):
        with caplog.at_level(logging.WARNING, logger="jobworker.worker.loop"):
            Worker(silent_store, AsyncMock(), {"queue": "q", "max_ticks": 0, "realtime_enabled": False})
        warnings = [r.getMessage() for r in caplog.records if r.name == "jobworker.worker.loop" and r.levelno == logging.WARNING]
        assert len(warnings) == 2
        assert "checked once at start only" in warnings[1]

    def test_default_max_ticks_does_not_warn(self, silent_store, event_bus, caplog):
        with caplog.at_level(logging.WARNING, logger="jobworker.worker.loop"):
            Worker(silent_store, AsyncMock(), {"queue": "q"}, event_bus=event_bus)
        assert not [r for r in caplog.records if r.name == "jobworker.worker.loop"]


# ─────────────────────────────────────────────────────────────────────────────
# 5. Subscription lifecycle
# ─────────────────────────────────────────────────────────────────────────────


class _FailingBus:
    def __init__(self, failures: int | None = None, hang: bool = False):
        self.calls = 0
        self.failures = failures
        self.hang = hang
        self.inner = None

    async def subscribe(self, queue, on_change, on_status=None):
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            if self.hang:
                await asyncio.sleep(10)
            raise SubscriptionError("channel unavailable")
        from jobworker.events import LocalEventBus

        self.inner = LocalEventBus()
        return await self.inner.subscribe(queue, on_change, on_status)


class TestSubscription:
    @pytest.mark.asyncio
    async def test_exhausted_retries_stop_without_raising(self, silent_store):
        bus = _FailingBus()
        handler = AsyncMock()
        await _enqueue_one(silent_store)
        worker = Worker(silent_store, handler, _opts(subscribe_retries=2), event_bus=bus)

        await asyncio.wait_for(worker.start(), timeout=5)

        assert worker.state is WorkerState.STOPPED
        assert bus.calls == 3
        handler.assert_not_awaited()
        assert metrics.get_counter(
            "subscription_failures_total", {"queue": "q", "status": "CHANNEL_ERROR"}
        ) == 3

    @pytest.mark.asyncio
    async def test_subscribe_timeout_counts_as_failure(self, silent_store):
        bus = _FailingBus(hang=True)
        worker = Worker(
            silent_store, AsyncMock(), _opts(subscribe_retries=1, subscribe_timeout_ms=50), event_bus=bus
        )
        await asyncio.wait_for(worker.start(), timeout=5)

        assert worker.state is WorkerState.STOPPED
        assert bus.calls == 2
        assert metrics.get_counter(
            "subscription_failures_total", {"queue": "q", "status": "TIMED_OUT"}
        ) == 2

    @pytest.mark.asyncio
    async def test_recovers_within_retry_budget(self, silent_store, wait_until):
        bus = _FailingBus(failures=2)
        worker = Worker(silent_store, AsyncMock(), _opts(subscribe_retries=2), event_bus=bus)
        task = await _start(worker, wait_until)

        assert worker.state is WorkerState.RUNNING
        assert bus.calls == 3
        assert worker.loop_state.subscribe_failures == 0
        await _shutdown(worker, task)
        assert bus.inner.subscriber_count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.CLOSED])
    async def test_channel_loss_while_running_resubscribes(self, store, event_bus, wait_until, status):
        handler = AsyncMock()
        worker = Worker(store, handler, _opts(max_ticks=0, subscribe_retries=1), event_bus=event_bus)
        task = await _start(worker, wait_until)
        (original,) = event_bus._subscriptions

        original.report(status, SubscriptionError("connection lost"))
        await wait_until(
            lambda: event_bus.subscriber_count("q") == 1 and event_bus._subscriptions[0] is not original
        )
        assert worker.state is WorkerState.RUNNING

        # Push still wakes the worker on the new subscription.
        job = await _enqueue_one(store)
        await wait_until(_terminal(store, job.job_id))
        await _shutdown(worker, task)
        assert event_bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_channel_loss_without_retries_stops_worker(self, store, event_bus, wait_until):
        worker = Worker(store, AsyncMock(), _opts(subscribe_retries=0), event_bus=event_bus)
        task = await _start(worker, wait_until)

        event_bus._subscriptions[0].report(SubscriptionStatus.TIMED_OUT)
        await asyncio.wait_for(task, timeout=5)
        assert worker.state is WorkerState.STOPPED
        assert event_bus.subscriber_count() == 0


# ─────────────────────────────────────────────────────────────────────────────
# 6. stop()
# ─────────────────────────────────────────────────────────────────────────────


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, store, event_bus, wait_until):
        worker = Worker(store, AsyncMock(), _opts(), event_bus=event_bus)
        task = await _start(worker, wait_until)

        await worker.stop()
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)
        await worker.stop()
        assert worker.state is WorkerState.STOPPED
        assert event_bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, store, event_bus, wait_until):
        worker = Worker(store, AsyncMock(), _opts(), event_bus=event_bus)
        task = await _start(worker, wait_until)
        await asyncio.wait_for(worker.start(), timeout=1)
        assert event_bus.subscriber_count() == 1
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_stop_before_start(self, store):
        worker = Worker(store, AsyncMock(), _opts())
        await worker.stop()
        assert worker.state is WorkerState.STOPPED
        await asyncio.wait_for(worker.start(), timeout=1)
        assert worker.state is WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_in_flight_job_finishes_and_no_new_claims(self, store, event_bus, wait_until):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(job):
            started.set()
            await release.wait()

        worker = Worker(store, handler, _opts(job_timeout_ms=5000), event_bus=event_bus)
        first = await _enqueue_one(store)
        second = await _enqueue_one(store)
        task = await _start(worker, wait_until)

        await asyncio.wait_for(started.wait(), timeout=5)
        await worker.stop()
        assert worker.state is WorkerState.STOPPING

        release.set()
        await asyncio.wait_for(task, timeout=5)
        assert worker.state is WorkerState.STOPPED
        assert (await store.get_job(first.job_id)).status == JobStatus.SUCCESS
        untouched = await store.get_job(second.job_id)
        assert untouched.status == JobStatus.PENDING
        assert untouched.claimed_at is None


# ─────────────────────────────────────────────────────────────────────────────
# 7. Store failures (mocked store)
# ─────────────────────────────────────────────────────────────────────────────


def _mock_store(job, **methods):
    pending = [job]
    store = MagicMock()
    store.claim = AsyncMock(side_effect=lambda queue: pending.pop() if pending else None)
    store.increment_attempts = AsyncMock(**methods.get("increment_attempts", {}))
    store.record_outcome = AsyncMock(**methods.get("record_outcome", {}))
    return store


class TestStoreFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [StoreError("down"), ClaimConflict("j", "attempts increment")])
    async def test_increment_failure_marks_error_without_running(self, wait_until, exc):
        job = new_job("q")
        store = _mock_store(job, increment_attempts={"side_effect": exc})
        handler = AsyncMock()
        worker = Worker(store, handler, _opts())
        task = await _start(worker, wait_until)

        await wait_until(lambda: store.record_outcome.await_count == 1)
        await _shutdown(worker, task)

        handler.assert_not_awaited()
        args, kwargs = store.record_outcome.await_args
        assert args[0] is job
        assert args[1] == JobStatus.ERROR
        assert args[2] == LogStatus.ERROR
        assert kwargs == {"clear_claim": False}

    @pytest.mark.asyncio
    async def test_outcome_write_failure_does_not_stop_loop(self, wait_until):
        job = new_job("q")
        claimed = new_job("q")
        claimed.attempts = 1
        store = _mock_store(
            job,
            increment_attempts={"return_value": claimed},
            record_outcome={"side_effect": StoreError("disk full")},
        )
        worker = Worker(store, AsyncMock(), _opts())
        task = await _start(worker, wait_until)

        await wait_until(lambda: store.record_outcome.await_count == 1)
        await asyncio.sleep(0.2)
        assert worker.state is WorkerState.RUNNING
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_unexpected_loop_error_stops_worker(self, wait_until):
        store = MagicMock()
        store.claim = AsyncMock(side_effect=RuntimeError("bug"))
        worker = Worker(store, AsyncMock(), _opts())

        await asyncio.wait_for(worker.start(), timeout=5)
        assert worker.state is WorkerState.STOPPED


# ─────────────────────────────────────────────────────────────────────────────
# 8. Several workers
# ─────────────────────────────────────────────────────────────────────────────


class TestFleet:
    @pytest.mark.asyncio
    async def test_each_job_processed_exactly_once(self, store, event_bus, wait_until):
        seen = []

        async def handler(job):
            seen.append(job.job_id)
            await asyncio.sleep(0.01)

        workers = [
            Worker(store, handler, _opts(max_ticks=2), event_bus=event_bus, worker_id=f"w{i}")
            for i in range(3)
        ]
        fleet = asyncio.create_task(start_workers(workers))
        await wait_until(lambda: all(w.state is WorkerState.RUNNING for w in workers))

        jobs = await enqueue_jobs(store, [{"queue": "q", "payload": i} for i in range(12)])
        for job in jobs:
            await wait_until(_terminal(store, job.job_id), timeout=10)

        await stop_workers(workers)
        await asyncio.wait_for(fleet, timeout=5)

        assert sorted(seen) == sorted(j.job_id for j in jobs)
        assert all(w.state is WorkerState.STOPPED for w in workers)
        for job in jobs:
            assert (await store.get_job(job.job_id)).status == JobStatus.SUCCESS
