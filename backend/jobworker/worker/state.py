"""Worker lifecycle and scheduling-loop state.

``LoopState`` is owned by a single ``Worker``; the functions below are the only
way the loop mutates it, which keeps the polling backstop and the subscription
retry ceiling testable without a store, a bus or a clock.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class WorkerState(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    SUBSCRIBING = "SUBSCRIBING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


@dataclass
class LoopState:
    ticks: int = 0
    subscribe_failures: int = 0


def backstop_due(state: LoopState, max_ticks: int) -> bool:
    """True when enough idle ticks have passed to force a queue check.

    ``max_ticks == 0`` disables the backstop (push notifications only).
    """
    return max_ticks > 0 and state.ticks >= max_ticks


def record_idle_tick(state: LoopState) -> None:
    state.ticks += 1


def reset_ticks(state: LoopState) -> None:
    state.ticks = 0


def record_subscribe_failure(state: LoopState, max_retries: int) -> bool:
    """Count a failed subscription attempt; True while another retry is allowed."""
    state.subscribe_failures += 1
    return state.subscribe_failures <= max_retries


def record_subscribe_success(state: LoopState) -> None:
    state.subscribe_failures = 0
