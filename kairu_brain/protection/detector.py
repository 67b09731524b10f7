"""Protective-mode state machine: Inactive -> Active -> Inactive.

Entry is automatic once enough burnout signals cluster. Exit is gated:
either the minimum duration has elapsed and the user acknowledges, or the
mode times out (idle after the minimum duration, or the hard maximum).
An explicit early exit by the user is possible but recorded as such.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from kairu_brain.core.config import ProtectiveModeConfig
from kairu_brain.core.exceptions import ProtectiveModeError
from kairu_brain.core.models import (
    BehaviorHistory,
    BurnoutSignal,
    Effort,
    Priority,
    ProtectiveModeState,
    TaskRecord,
    as_utc,
)
from kairu_brain.protection.signals import detect_signals

logger = logging.getLogger("brain.protection.detector")

_SIGNAL_LABELS = {
    BurnoutSignal.CHRONIC_OVERLOAD: "High load for several days",
    BurnoutSignal.SLEEP_DEBT: "Not enough rest recently",
    BurnoutSignal.CONSTANT_OVERRIDES: "Many forced decisions",
    BurnoutSignal.ZERO_COMPLETION: "Low completion rate",
    BurnoutSignal.ERRATIC_BEHAVIOR: "Erratic behavior detected",
    BurnoutSignal.TASK_ACCUMULATION: "Excessive task accumulation",
}


def task_allowed_in_protective_mode(task: TaskRecord) -> bool:
    """Only light tasks, or urgent tasks that are not heavy."""
    if task.effort == Effort.HEAVY:
        return False
    if task.priority != Priority.URGENT and task.urgency != Priority.URGENT:
        return task.effort == Effort.LIGHT
    return True


@dataclass
class ModeTransition:
    """One entry/exit of protective mode."""
    at: datetime
    entered: bool
    reason: str
    triggered_by: str  # "SYSTEM" or "USER"
    user_confirmed: bool = False


class ProtectiveModeDetector:
    """Sole owner of ProtectiveModeState.

    Every read returns an immutable snapshot; every change replaces it
    under a lock.
    """

    def __init__(self, config: Optional[ProtectiveModeConfig] = None):
        self.config = config or ProtectiveModeConfig()
        self._lock = threading.Lock()
        self._state = ProtectiveModeState(min_duration=self._min_duration)
        self._transitions: list[ModeTransition] = []

    @property
    def _min_duration(self) -> timedelta:
        return timedelta(hours=self.config.min_duration_hours)

    @property
    def state(self) -> ProtectiveModeState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state.active

    @property
    def transitions(self) -> list[ModeTransition]:
        return list(self._transitions)

    def observe(self, signals: Iterable[BurnoutSignal], now: datetime) -> ProtectiveModeState:
        """Feed the currently true signals. Enters the mode when enough cluster."""
        now = as_utc(now)
        current = frozenset(signals)
        with self._lock:
            state = self._state
            if state.active:
                self._state = state.model_copy(update={"signals": state.signals | current})
                return self._state

            if len(current) < self.config.min_signals:
                return state

            self._state = ProtectiveModeState(
                active=True,
                signals=current,
                entered_at=now,
                min_duration=self._min_duration,
                last_activity_at=now,
            )
            self._transitions.append(
                ModeTransition(at=now, entered=True, reason="burnout_signals", triggered_by="SYSTEM")
            )
        logger.warning(
            "Protective mode ACTIVATED (%d signals: %s) until at least %s",
            len(current),
            ", ".join(sorted(s.value for s in current)),
            self._state.locked_until.isoformat(),
        )
        return self._state

    def evaluate_history(self, history: BehaviorHistory, now: datetime) -> ProtectiveModeState:
        return self.observe(detect_signals(history, now), now)

    def record_activity(self, now: datetime) -> None:
        """Note a scheduling request; idle exit counts from the last one."""
        now = as_utc(now)
        with self._lock:
            if self._state.active:
                self._state = self._state.model_copy(update={"last_activity_at": now})

    def request_exit(self, now: datetime, acknowledged: bool) -> bool:
        """Ask to leave protective mode. Never a bare toggle.

        Succeeds only with explicit acknowledgement once the minimum
        duration has elapsed.
        """
        now = as_utc(now)
        with self._lock:
            state = self._state
            if not state.active:
                return True
            if not acknowledged:
                logger.info("Protective-mode exit refused: not acknowledged")
                return False
            if now < state.locked_until:
                logger.info(
                    "Protective-mode exit refused: locked until %s",
                    state.locked_until.isoformat(),
                )
                return False
            self._exit(now, "user_exit", triggered_by="USER", user_confirmed=True)
        return True

    def force_exit(self, now: datetime, reason: str) -> ProtectiveModeState:
        """Explicit early exit chosen by the user, inside the minimum duration."""
        if not reason:
            raise ProtectiveModeError("An early exit needs an explicit reason")
        now = as_utc(now)
        with self._lock:
            if self._state.active:
                logger.warning("Protective mode exited early by user: %s", reason)
                self._exit(now, f"user_early_exit: {reason}", triggered_by="USER", user_confirmed=True)
            return self._state

    def tick(self, now: datetime) -> ProtectiveModeState:
        """Time-gated exits. Called from background maintenance."""
        now = as_utc(now)
        with self._lock:
            state = self._state
            if not state.active or state.entered_at is None:
                return state

            # No time-gated exit before the minimum duration.
            if now < state.locked_until:
                return state

            idle_since = state.last_activity_at or state.entered_at
            if now - state.entered_at >= timedelta(hours=self.config.max_duration_hours):
                self._exit(now, "max_duration_elapsed", triggered_by="SYSTEM")
            elif now - idle_since >= timedelta(hours=self.config.idle_exit_hours):
                self._exit(now, "idle_timeout", triggered_by="SYSTEM")
            return self._state

    def _exit(self, now: datetime, reason: str, triggered_by: str, user_confirmed: bool = False) -> None:
        self._state = ProtectiveModeState(
            active=False,
            min_duration=self._min_duration,
            exited_at=now,
            exit_reason=reason,
        )
        self._transitions.append(
            ModeTransition(
                at=now,
                entered=False,
                reason=reason,
                triggered_by=triggered_by,
                user_confirmed=user_confirmed,
            )
        )
        logger.info("Protective mode deactivated (%s)", reason)

    def is_task_allowed(self, task: TaskRecord) -> bool:
        if not self._state.active:
            return True
        return task_allowed_in_protective_mode(task)

    def restrictions(self) -> dict[str, object]:
        return {
            "max_tasks_per_session": self.config.max_tasks_per_session,
            "allow_heavy_tasks": False,
            "session_duration_limit_minutes": self.config.session_duration_limit_minutes,
            "coach_enabled": False,
        }

    def notification(self) -> Optional[str]:
        """User-facing summary of why protective mode is on."""
        state = self._state
        if not state.active:
            return None
        lines = ["Protective mode is on. Several signals suggest you are pushing too hard:"]
        for signal in sorted(state.signals, key=lambda s: s.value):
            lines.append(f"- {_SIGNAL_LABELS[signal]}")
        lines.append(
            f"For the next {self.config.min_duration_hours:g}h: at most "
            f"{self.config.max_tasks_per_session} tasks per session, light or urgent tasks only."
        )
        lines.append("You stay in control: forcing a task is possible, but it disables protections.")
        return "\n".join(lines)
