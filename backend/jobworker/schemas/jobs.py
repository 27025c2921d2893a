"""Pydantic models for jobs and job logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


class JobOptionsIn(BaseModel):
    max_attempts: int | None = Field(default=None, ge=1)


class JobCreate(BaseModel):
    queue: str = Field(min_length=1)
    payload: Any = None
    options: JobOptionsIn | None = None


class JobOut(BaseModel):
    job_id: str
    queue: str
    status: str
    attempts: int
    payload: Any = None
    options: dict[str, Any] = {}
    claimed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def _parse_fields(cls, data: Any) -> Any:
        # ORM rows carry JSON as text; the properties expose it decoded.
        if hasattr(data, "__dict__") and hasattr(data, "payload_json"):
            return {
                "job_id": data.job_id,
                "queue": data.queue,
                "status": data.status,
                "attempts": data.attempts,
                "payload": data.payload,
                "options": data.options,
                "claimed_at": data.claimed_at,
                "created_at": data.created_at,
                "updated_at": data.updated_at,
            }
        return data


class JobLogOut(BaseModel):
    log_id: int
    job_id: str
    status: str
    error: dict[str, Any] | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def _parse_fields(cls, data: Any) -> Any:
        if hasattr(data, "__dict__") and hasattr(data, "error_json"):
            return {
                "log_id": data.log_id,
                "job_id": data.job_id,
                "status": data.status,
                "error": data.error,
                "created_at": data.created_at,
            }
        return data
