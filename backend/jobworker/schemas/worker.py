"""Pydantic model for worker options."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from jobworker.errors import ConfigError

MIN_TICK_INTERVAL_MS = 100


class WorkerOptions(BaseModel):
    queue: str
    job_timeout_ms: int = Field(default=5000, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    tick_interval_ms: int = Field(default=1000, ge=MIN_TICK_INTERVAL_MS)
    max_ticks: int = Field(default=60, ge=0)
    realtime_enabled: bool = True
    subscribe_retries: int = Field(default=3, ge=0)
    subscribe_retry_delay_ms: int = Field(default=1000, ge=0)
    subscribe_timeout_ms: int = Field(default=10000, ge=0)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("queue")
    @classmethod
    def _queue_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("queue must be a non-empty string")
        return v

    @classmethod
    def build(cls, options: "WorkerOptions | dict[str, Any]") -> "WorkerOptions":
        """Validate *options*, raising ``ConfigError`` instead of ``ValidationError``."""
        if isinstance(options, WorkerOptions):
            return options
        try:
            return cls(**options)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigError(f"Invalid worker options: {problems}") from exc

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "WorkerOptions":
        """Build options from ``WORKER_*`` settings; keyword overrides win."""
        values: dict[str, Any] = {
            "queue": settings.WORKER_QUEUE,
            "job_timeout_ms": settings.WORKER_JOB_TIMEOUT_MS,
            "max_attempts": settings.WORKER_MAX_ATTEMPTS,
            "tick_interval_ms": settings.WORKER_TICK_INTERVAL_MS,
            "max_ticks": settings.WORKER_MAX_TICKS,
            "realtime_enabled": settings.WORKER_REALTIME_ENABLED,
            "subscribe_retries": settings.WORKER_SUBSCRIBE_RETRIES,
            "subscribe_retry_delay_ms": settings.WORKER_SUBSCRIBE_RETRY_DELAY_MS,
            "subscribe_timeout_ms": settings.WORKER_SUBSCRIBE_TIMEOUT_MS,
        }
        values.update(overrides)
        return cls.build(values)

    @property
    def tick_interval(self) -> float:
        return self.tick_interval_ms / 1000

    @property
    def job_timeout(self) -> float | None:
        """Handler budget in seconds; ``None`` when the race is disabled."""
        return self.job_timeout_ms / 1000 if self.job_timeout_ms > 0 else None
