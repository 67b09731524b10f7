"""Burnout signal checks over a rolling observation window.

Each detector is a pure function over records supplied by storage:
1. Chronic overload: most of the last five days above the daily-load threshold
2. Sleep debt: every one of the last three nights under six hours
3. Constant overrides: overrides above 30% of estimated decisions in a week
4. Zero completion: most active days of the week below 30% completion
5. Erratic behavior: session durations scattered far around their mean
6. Task accumulation: a large open backlog still growing quickly
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import numpy as np

from kairu_brain.core.models import (
    BehaviorHistory,
    BurnoutSignal,
    OverrideEvent,
    SessionRecord,
    SessionState,
    SleepRecord,
    TaskRecord,
    as_utc,
)

logger = logging.getLogger("brain.protection.signals")

SIGNAL_WEIGHTS: dict[BurnoutSignal, float] = {
    BurnoutSignal.CHRONIC_OVERLOAD: 0.3,
    BurnoutSignal.SLEEP_DEBT: 0.3,
    BurnoutSignal.CONSTANT_OVERRIDES: 0.15,
    BurnoutSignal.ZERO_COMPLETION: 0.15,
    BurnoutSignal.ERRATIC_BEHAVIOR: 0.05,
    BurnoutSignal.TASK_ACCUMULATION: 0.05,
}

_STRESS_FACTORS = {
    SessionState.EXHAUSTED: 1.5,
    SessionState.BLOCKED: 1.3,
}


class SignalCheck:
    """Result of a single burnout signal check."""

    def __init__(self, signal: BurnoutSignal, triggered: bool, message: str = ""):
        self.signal = signal
        self.triggered = triggered
        self.message = message


def _day(now: datetime, days_ago: int) -> date:
    return (now - timedelta(days=days_ago)).date()


def _sessions_on(sessions: list[SessionRecord], day: date) -> list[SessionRecord]:
    return [s for s in sessions if s.started_at.date() == day]


def daily_load(sessions: list[SessionRecord], day: date) -> float:
    """Load of one day: unfinished share of each session, weighted by stress.

    Normalised so that three heavy sessions make a load of 1.0; capped at 2.0.
    """
    total = 0.0
    for session in _sessions_on(sessions, day):
        if session.planned_tasks <= 0:
            continue
        completion_ratio = min(1.0, session.completed_tasks / session.planned_tasks)
        stress = _STRESS_FACTORS.get(session.state, 1.0)
        total += (1.0 - completion_ratio) * stress
    return min(total / 3.0, 2.0)


def detect_chronic_overload(
    sessions: list[SessionRecord],
    now: datetime,
    days: int = 5,
    threshold: float = 1.2,
    min_overloaded_days: int = 4,
) -> bool:
    overloaded = sum(1 for i in range(days) if daily_load(sessions, _day(now, i)) > threshold)
    return overloaded >= min_overloaded_days


def detect_sleep_debt(
    sleep: list[SleepRecord],
    now: datetime,
    days: int = 3,
    min_hours: float = 6.0,
) -> bool:
    # No data means benefit of the doubt.
    if not sleep:
        return False
    by_day = {record.day: record.hours for record in sleep}
    short_nights = 0
    for i in range(days):
        hours = by_day.get(_day(now, i))
        if hours is not None and hours < min_hours:
            short_nights += 1
    return short_nights >= days


def detect_constant_overrides(
    overrides: list[OverrideEvent],
    history_event_count: int,
    now: datetime,
    period_days: int = 7,
    max_rate: float = 0.3,
) -> bool:
    start = now - timedelta(days=period_days)
    recent = [o for o in overrides if o.at >= start]
    if not recent:
        return False
    # Roughly one system decision per three history events, never fewer than 10.
    estimated_decisions = max(history_event_count / 3.0, 10.0)
    return len(recent) / estimated_decisions > max_rate


def detect_zero_completion(
    sessions: list[SessionRecord],
    now: datetime,
    period_days: int = 7,
    low_rate: float = 0.3,
    min_active_days: int = 3,
) -> bool:
    active_days = 0
    low_days = 0
    for i in range(period_days):
        day_sessions = _sessions_on(sessions, _day(now, i))
        if not day_sessions:
            continue
        active_days += 1
        planned = sum(s.planned_tasks for s in day_sessions)
        completed = sum(s.completed_tasks for s in day_sessions)
        if planned > 0 and completed / planned < low_rate:
            low_days += 1

    if active_days < min_active_days:
        return False
    return low_days / active_days > 0.5


def detect_erratic_behavior(
    sessions: list[SessionRecord],
    now: datetime,
    period_days: int = 7,
    min_sessions: int = 5,
    min_minutes: float = 5.0,
) -> bool:
    start = now - timedelta(days=period_days)
    durations = [
        (s.ended_at - s.started_at).total_seconds() / 60.0
        for s in sessions
        if s.ended_at is not None and s.started_at >= start
    ]
    durations = [d for d in durations if d > min_minutes]
    if len(durations) < min_sessions:
        return False

    values = np.asarray(durations, dtype=float)
    return bool(values.std() > 1.5 * values.mean())


def detect_task_accumulation(
    open_tasks: list[TaskRecord],
    now: datetime,
    period_days: int = 7,
    max_open: int = 20,
    max_created_per_day: float = 3.0,
) -> bool:
    pending = [t for t in open_tasks if not t.completed]
    if len(pending) <= max_open:
        return False
    start = now - timedelta(days=period_days)
    created_recently = sum(1 for t in pending if t.created_at > start)
    return created_recently / period_days > max_created_per_day


def run_signal_checks(history: BehaviorHistory, now: datetime) -> list[SignalCheck]:
    """Run all burnout checks. Returns one result per signal."""
    now = as_utc(now)
    checks = [
        SignalCheck(
            BurnoutSignal.CHRONIC_OVERLOAD,
            detect_chronic_overload(history.sessions, now),
            "High load for several days",
        ),
        SignalCheck(
            BurnoutSignal.SLEEP_DEBT,
            detect_sleep_debt(history.sleep, now),
            "Not enough rest recently",
        ),
        SignalCheck(
            BurnoutSignal.CONSTANT_OVERRIDES,
            detect_constant_overrides(history.overrides, history.history_event_count, now),
            "Many forced decisions",
        ),
        SignalCheck(
            BurnoutSignal.ZERO_COMPLETION,
            detect_zero_completion(history.sessions, now),
            "Low completion rate",
        ),
        SignalCheck(
            BurnoutSignal.ERRATIC_BEHAVIOR,
            detect_erratic_behavior(history.sessions, now),
            "Erratic session pattern",
        ),
        SignalCheck(
            BurnoutSignal.TASK_ACCUMULATION,
            detect_task_accumulation(history.open_tasks, now),
            "Task backlog piling up",
        ),
    ]

    triggered = [c for c in checks if c.triggered]
    if triggered:
        logger.info(
            "Burnout checks: %d/%d triggered: %s",
            len(triggered), len(checks),
            ", ".join(c.signal.value for c in triggered),
        )
    else:
        logger.debug("Burnout checks: none of %d triggered", len(checks))
    return checks


def detect_signals(history: BehaviorHistory, now: datetime) -> frozenset[BurnoutSignal]:
    return frozenset(c.signal for c in run_signal_checks(history, now) if c.triggered)


def burnout_score(signals: frozenset[BurnoutSignal] | set[BurnoutSignal]) -> float:
    """Weighted burnout score in [0, 1]."""
    return min(1.0, sum(SIGNAL_WEIGHTS[s] for s in signals))
