"""Retry policy — pure decisions, no I/O."""

from __future__ import annotations

import enum
from typing import Any


class RetryDecision(str, enum.Enum):
    RETRY = "RETRY"
    FAIL = "FAIL"


def resolve_max_attempts(job_options: dict[str, Any] | None, default: int) -> int:
    """Per-job ``max_attempts`` override when present and valid, else *default*.

    Options that are not a JSON object carry no override.
    """
    if isinstance(job_options, dict):
        override = job_options.get("max_attempts")
        if isinstance(override, int) and not isinstance(override, bool) and override >= 1:
            return override
    return default


def decide(attempts: int, max_attempts: int) -> RetryDecision:
    if attempts < max_attempts:
        return RetryDecision.RETRY
    return RetryDecision.FAIL
