"""Tests for kairu_brain/quality/monitor.py: session scoring and the quality alert."""

from datetime import timedelta

import pytest

from kairu_brain.core.config import QualityConfig
from kairu_brain.core.models import DecisionQualityMetrics, SessionDecisionData, SessionRecord
from kairu_brain.protection.detector import ModeTransition
from kairu_brain.quality.monitor import (
    DecisionQualityTracker,
    calculate_decision_quality,
    compute_brain_quality,
    conservative_mode_profile,
)


def _metrics(overall):
    return DecisionQualityMetrics(
        forcing_rate=0.0,
        completion_accuracy=1.0,
        consistency_score=1.0,
        override_impact=0.0,
        overall_quality=overall,
    )


class TestCalculateDecisionQuality:
    def test_clean_session_is_perfect(self):
        metrics = calculate_decision_quality(
            SessionDecisionData(total_tasks=5, estimated_completion=0.8, actual_completion=0.8)
        )
        assert metrics.overall_quality == pytest.approx(1.0)
        assert metrics.forcing_rate == 0.0
        assert metrics.consistency_score == 1.0
        assert metrics.override_impact == 0.0

    def test_heavy_forcing_caps_quality(self):
        metrics = calculate_decision_quality(
            SessionDecisionData(total_tasks=10, forced_tasks=6, estimated_completion=0.5, actual_completion=0.5)
        )
        assert metrics.forcing_rate == pytest.approx(0.6)
        assert metrics.overall_quality <= 0.7

    def test_more_forcing_never_scores_higher(self):
        scores = [
            calculate_decision_quality(
                SessionDecisionData(total_tasks=10, forced_tasks=forced, estimated_completion=0.6, actual_completion=0.5)
            ).overall_quality
            for forced in range(11)
        ]
        assert all(a >= b for a, b in zip(scores, scores[1:]))

    def test_completion_gap(self):
        metrics = calculate_decision_quality(
            SessionDecisionData(total_tasks=4, estimated_completion=0.8, actual_completion=0.4)
        )
        assert metrics.completion_accuracy == pytest.approx(0.6)
        # (1 - 0.2) x (0.5 + 0.6 x 0.5)
        assert metrics.overall_quality == pytest.approx(0.64)

    def test_override_metrics(self):
        metrics = calculate_decision_quality(
            SessionDecisionData(total_tasks=4, overrides=2, cognitive_debt=5.0)
        )
        assert metrics.consistency_score == pytest.approx(0.5)
        assert metrics.override_impact == pytest.approx(0.25)

    def test_empty_session(self):
        metrics = calculate_decision_quality(SessionDecisionData())
        assert metrics.forcing_rate == 0.0
        assert 0.0 <= metrics.overall_quality <= 1.0


class TestDecisionQualityTracker:
    def test_no_alert_when_quality_is_fine(self, now):
        tracker = DecisionQualityTracker()
        assert tracker.record(_metrics(0.9), now) is None

    def test_alert_and_listeners(self, now):
        tracker = DecisionQualityTracker(QualityConfig(alert_threshold=0.5, alert_window_days=7))
        received = []
        tracker.add_listener(received.append)

        tracker.record(_metrics(0.6), now - timedelta(days=2))
        alert = tracker.record(_metrics(0.2), now)
        assert alert is not None
        assert alert.average_quality == pytest.approx(0.4)
        assert alert.sample_size == 2
        assert received == [alert]

    def test_old_records_outside_alert_window(self, now):
        tracker = DecisionQualityTracker()
        tracker.record(_metrics(0.1), now - timedelta(days=10))
        assert tracker.check_alert(now) is None

    def test_prune(self, now):
        tracker = DecisionQualityTracker(QualityConfig(history_days=30))
        tracker.record(_metrics(0.9), now - timedelta(days=40))
        tracker.record(_metrics(0.9), now - timedelta(days=20))
        assert len(tracker.history()) == 2
        assert tracker.prune(now) == 1
        assert len(tracker.history()) == 1

    def test_stats(self, now):
        tracker = DecisionQualityTracker()
        tracker.record(_metrics(0.8), now - timedelta(days=1))
        tracker.record(_metrics(0.6), now)
        stats = tracker.stats(days=7, now=now)
        assert stats["sample_size"] == 2
        assert stats["average_quality"] == pytest.approx(0.7)
        assert tracker.stats(days=7, now=now + timedelta(days=30))["sample_size"] == 0


class TestBrainQuality:
    def _sessions(self, now):
        return [
            SessionRecord(planned_tasks=10, completed_tasks=8, started_at=now - timedelta(days=i))
            for i in range(2)
        ]

    def test_without_mode_changes(self, now):
        # 0.4 x 1.0 + 0.3 x 0.9 + 0.3 x (0 + 0.8) / 2
        assert compute_brain_quality(self._sessions(now), override_count=2) == pytest.approx(0.79)

    def test_confirmed_mode_changes(self, now):
        transitions = [
            ModeTransition(at=now, entered=True, reason="burnout_signals", triggered_by="SYSTEM", user_confirmed=True),
            ModeTransition(at=now, entered=False, reason="user_exit", triggered_by="USER", user_confirmed=True),
        ]
        score = compute_brain_quality(self._sessions(now), override_count=2, transitions=transitions)
        assert score == pytest.approx(0.94)

    def test_no_sessions(self):
        assert compute_brain_quality([], override_count=0) == pytest.approx(0.3)

    def test_conservative_profile(self):
        profile = conservative_mode_profile()
        assert profile["coach_enabled"] is False
        assert profile["mode"] == "STRICT"
