"""Queue worker package.

A worker claims jobs from the ``jobs`` table one at a time and records each
outcome in ``job_logs``.

Single-process (SQLite dev):
    A worker runs as an asyncio.Task inside the API process.
    Enabled automatically when WORKER_EMBEDDED=true (default for SQLite).

Multi-process (PostgreSQL production):
    Start workers separately:
        WORKER_HANDLER=myproject.jobs:handle python -m jobworker.worker
        WORKER_ID=w1 WORKER_QUEUE=emails python -m jobworker.worker

Claiming uses:
- An optimistic guarded UPDATE for SQLite (zero rowcount = lost the race).
- SELECT … FOR UPDATE SKIP LOCKED for PostgreSQL.
"""
