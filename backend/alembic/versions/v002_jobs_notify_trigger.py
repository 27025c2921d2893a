"""NOTIFY trigger on jobs (PostgreSQL only).

Revision ID: v002
Revises: v001
Create Date: 2026-10-02 00:00:00.000000

Publishes a JSON payload on channel ``jobworker_jobs`` whenever a row becomes
claimable (inserted, or released back to RETRY).  SQLite has no equivalent;
there the store fans out to in-process subscribers instead, so this revision
is a no-op.
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

revision: str = "v002"
down_revision: Union[str, None] = "v001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(
        """
        CREATE OR REPLACE FUNCTION jobworker_notify_job_change() RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify(
                'jobworker_jobs',
                json_build_object(
                    'op', TG_OP,
                    'queue', NEW.queue,
                    'job_id', NEW.job_id,
                    'status', NEW.status
                )::text
            );
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER jobs_notify_change
        AFTER INSERT OR UPDATE ON jobs
        FOR EACH ROW
        WHEN (NEW.claimed_at IS NULL AND NEW.status IN ('PENDING', 'RETRY'))
        EXECUTE FUNCTION jobworker_notify_job_change()
        """
    )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP TRIGGER IF EXISTS jobs_notify_change ON jobs")
    op.execute("DROP FUNCTION IF EXISTS jobworker_notify_job_change()")
