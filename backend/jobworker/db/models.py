"""ORM models — jobs and their outcome log."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


class JobStatus:
    PENDING = "PENDING"
    RETRY = "RETRY"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"

    CLAIMABLE = (PENDING, RETRY)
    TERMINAL = (SUCCESS, ERROR)


class LogStatus:
    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    ERROR = "ERROR"


class Base(DeclarativeBase):
    pass


# ── Jobs ────────────────────────────────────────────────────────


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        # Claim scan: eligible rows of one queue, oldest first.
        Index("ix_jobs_claim", "queue", "status", "claimed_at", "created_at"),
    )

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    queue: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    options_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def payload(self) -> Any:
        if self.payload_json is None:
            return None
        return json.loads(self.payload_json)

    @property
    def options(self) -> dict[str, Any]:
        if not self.options_json:
            return {}
        return json.loads(self.options_json)

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def __repr__(self) -> str:
        return (
            f"<Job {self.job_id} queue={self.queue} status={self.status} "
            f"attempts={self.attempts}>"
        )


# ── Job logs (append-only outcome records) ─────────────────────


class JobLog(Base):
    __tablename__ = "job_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("jobs.job_id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def error(self) -> dict[str, Any] | None:
        if not self.error_json:
            return None
        return json.loads(self.error_json)
