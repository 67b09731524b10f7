"""Decision-quality monitor: after-the-fact scoring of each session.

Per-session metrics:
  {forcing_rate, completion_accuracy, consistency_score, override_impact, overall_quality}

The rolling history only feeds read-aggregation and the low-quality alert.
Nothing here changes how decisions are made; that is the adaptation
guard's job, gated separately.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from kairu_brain.core.config import QualityConfig
from kairu_brain.core.models import (
    DecisionMode,
    DecisionQualityMetrics,
    QualityAlert,
    QualityRecord,
    SessionDecisionData,
    SessionRecord,
)

logger = logging.getLogger("brain.quality.monitor")

AlertListener = Callable[[QualityAlert], None]


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def calculate_decision_quality(session: SessionDecisionData) -> DecisionQualityMetrics:
    """Score one session's decisions.

    Quality starts at 1.0 and is penalised for forcing (the decision layer
    is being bypassed) and for a large completion misestimate, then scaled
    by completion accuracy.
    """
    forcing_rate = session.forced_tasks / session.total_tasks if session.total_tasks > 0 else 0.0

    quality = 1.0
    if forcing_rate > 0.5:
        quality -= 0.3
    elif forcing_rate > 0.2:
        quality -= 0.1

    gap = abs(session.estimated_completion - session.actual_completion)
    completion_accuracy = max(0.0, 1.0 - gap)
    if gap > 0.3:
        quality -= 0.2

    consistency = 1.0
    if session.total_tasks > 0:
        consistency = max(0.0, 1.0 - session.overrides / session.total_tasks)

    override_impact = 0.0
    if session.overrides > 0:
        override_impact = min(1.0, session.cognitive_debt / (session.overrides * 10))

    return DecisionQualityMetrics(
        forcing_rate=forcing_rate,
        completion_accuracy=completion_accuracy,
        consistency_score=consistency,
        override_impact=override_impact,
        overall_quality=_clamp01(quality * (0.5 + completion_accuracy * 0.5)),
    )


class DecisionQualityTracker:
    """Rolling history of quality snapshots with a low-quality alert.

    Used by the Brain after each session. Listeners receive a QualityAlert
    whenever the trailing-window mean drops below the threshold.
    """

    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()
        self._lock = threading.Lock()
        self._history: list[QualityRecord] = []
        self._listeners: list[AlertListener] = []

    def add_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def record(
        self,
        metrics: DecisionQualityMetrics,
        at: datetime,
        session_id: Optional[str] = None,
    ) -> Optional[QualityAlert]:
        """Append a snapshot, prune the history and check for an alert."""
        with self._lock:
            self._history.append(QualityRecord(recorded_at=at, session_id=session_id, metrics=metrics))
            self._prune_locked(at)
        logger.debug(
            "Quality recorded for session %s: overall=%.3f forcing=%.2f",
            session_id or "-", metrics.overall_quality, metrics.forcing_rate,
        )
        return self.check_alert(at)

    def prune(self, now: datetime) -> int:
        """Drop snapshots older than the history window. Returns how many."""
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: datetime) -> int:
        cutoff = now - timedelta(days=self.config.history_days)
        before = len(self._history)
        self._history = [r for r in self._history if r.recorded_at >= cutoff]
        return before - len(self._history)

    def _window(self, days: float, now: datetime) -> list[QualityRecord]:
        start = now - timedelta(days=days)
        with self._lock:
            return [r for r in self._history if start <= r.recorded_at <= now]

    def stats(self, days: Optional[float] = None, now: Optional[datetime] = None) -> dict:
        """Mean of each metric over the trailing window."""
        if now is None:
            now = self._history[-1].recorded_at if self._history else datetime.min
        window = self._window(days if days is not None else self.config.alert_window_days, now)
        if not window:
            return {
                "average_quality": 0.0,
                "forcing_rate": 0.0,
                "completion_accuracy": 0.0,
                "consistency_score": 0.0,
                "sample_size": 0,
            }

        n = len(window)
        return {
            "average_quality": sum(r.metrics.overall_quality for r in window) / n,
            "forcing_rate": sum(r.metrics.forcing_rate for r in window) / n,
            "completion_accuracy": sum(r.metrics.completion_accuracy for r in window) / n,
            "consistency_score": sum(r.metrics.consistency_score for r in window) / n,
            "sample_size": n,
        }

    def check_alert(self, now: datetime) -> Optional[QualityAlert]:
        window = self._window(self.config.alert_window_days, now)
        if not window:
            return None

        average = sum(r.metrics.overall_quality for r in window) / len(window)
        if average >= self.config.alert_threshold:
            return None

        alert = QualityAlert(
            average_quality=average,
            window_days=self.config.alert_window_days,
            sample_size=len(window),
            raised_at=now,
        )
        logger.warning(
            "Decision quality low: %.1f%% over %d day(s) (%d sessions)",
            average * 100, alert.window_days, alert.sample_size,
        )
        for listener in list(self._listeners):
            listener(alert)
        return alert

    def history(self) -> list[QualityRecord]:
        with self._lock:
            return list(self._history)


def compute_brain_quality(
    sessions: Sequence[SessionRecord],
    override_count: int,
    transitions: Sequence = (),
) -> float:
    """Self-assessment across many sessions.

    0.4 x share of sessions above 70% completion
    + 0.3 x (1 - overrides per decision)
    + 0.3 x user alignment (confirmed system mode changes, followed suggestions).
    """
    def _completion(session: SessionRecord) -> float:
        return session.completed_tasks / max(session.planned_tasks, 1)

    good = [s for s in sessions if s.planned_tasks > 0 and _completion(s) > 0.7]
    completion_accuracy = len(good) / max(len(sessions), 1)

    total_decisions = sum(s.planned_tasks for s in sessions)
    override_penalty = max(0.0, 1.0 - override_count / max(total_decisions, 1))

    system = [t for t in transitions if getattr(t, "triggered_by", None) == "SYSTEM"]
    mode_acceptance = 0.0
    if system:
        mode_acceptance = sum(1 for t in system if t.user_confirmed) / len(system)
    suggestion_acceptance = 0.0
    if sessions:
        suggestion_acceptance = sum(_completion(s) for s in sessions) / len(sessions)
    alignment = (mode_acceptance + min(1.0, suggestion_acceptance)) / 2

    return 0.4 * completion_accuracy + 0.3 * override_penalty + 0.3 * alignment


def conservative_mode_profile() -> dict:
    """Recommended settings when brain quality drops below 0.5."""
    return {
        "max_tasks": 3,
        "strictness": 0.5,
        "coach_enabled": False,
        "mode": DecisionMode.STRICT.value,
        "reason": "Brain quality below 0.5: conservative mode recommended",
    }
