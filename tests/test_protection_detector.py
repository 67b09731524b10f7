"""Tests for kairu_brain/protection/detector.py: protective-mode state machine."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from kairu_brain.core.config import ProtectiveModeConfig
from kairu_brain.core.exceptions import ProtectiveModeError
from kairu_brain.core.models import BurnoutSignal, Effort, Priority
from kairu_brain.protection.detector import (
    ProtectiveModeDetector,
    task_allowed_in_protective_mode,
)

TWO_SIGNALS = {BurnoutSignal.SLEEP_DEBT, BurnoutSignal.CHRONIC_OVERLOAD}


@pytest.fixture
def detector():
    return ProtectiveModeDetector()


@pytest.fixture
def active(detector, now):
    detector.observe(TWO_SIGNALS, now)
    return detector


class TestActivation:
    def test_single_signal_does_not_activate(self, detector, now):
        state = detector.observe({BurnoutSignal.SLEEP_DEBT}, now)
        assert not state.active
        assert detector.transitions == []

    def test_two_signals_activate(self, detector, now):
        state = detector.observe(TWO_SIGNALS, now)
        assert state.active
        assert state.entered_at == now
        assert state.locked_until == now + timedelta(hours=24)
        assert detector.transitions[0].entered
        assert detector.transitions[0].triggered_by == "SYSTEM"

    def test_signals_accumulate_while_active(self, active, now):
        state = active.observe({BurnoutSignal.ZERO_COMPLETION}, now + timedelta(hours=1))
        assert state.signals == frozenset(TWO_SIGNALS | {BurnoutSignal.ZERO_COMPLETION})
        assert state.entered_at == now

    def test_state_is_a_snapshot(self, active):
        snapshot = active.state
        with pytest.raises(Exception):
            snapshot.active = False
        assert active.is_active

    @pytest.mark.parametrize(
        "durations",
        [
            {"min_duration_hours": -1},
            {"min_duration_hours": 12},
            {"min_duration_hours": 24, "max_duration_hours": 12},
        ],
    )
    def test_unsafe_durations_rejected(self, durations):
        with pytest.raises(ValidationError):
            ProtectiveModeConfig(**durations)


class TestExit:
    def test_exit_refused_inside_minimum(self, active, now):
        assert not active.request_exit(now + timedelta(hours=23), acknowledged=True)
        assert active.is_active

    def test_exit_needs_acknowledgement(self, active, now):
        assert not active.request_exit(now + timedelta(hours=30), acknowledged=False)
        assert active.is_active

    def test_exit_after_minimum(self, active, now):
        assert active.request_exit(now + timedelta(hours=24), acknowledged=True)
        assert not active.is_active
        last = active.transitions[-1]
        assert not last.entered
        assert last.triggered_by == "USER"
        assert last.user_confirmed

    def test_exit_when_inactive_is_a_no_op(self, detector, now):
        assert detector.request_exit(now, acknowledged=False)

    def test_force_exit_needs_reason(self, active, now):
        with pytest.raises(ProtectiveModeError):
            active.force_exit(now, "")
        assert active.is_active

    def test_force_exit(self, active, now):
        state = active.force_exit(now + timedelta(hours=1), "feeling better")
        assert not state.active
        assert "feeling better" in state.exit_reason


class TestTick:
    def test_idle_exit_after_minimum(self, active, now):
        # idle exit only becomes possible at the minimum duration
        assert active.tick(now + timedelta(hours=23)).active
        assert not active.tick(now + timedelta(hours=24)).active
        assert active.transitions[-1].reason == "idle_timeout"

    def test_activity_keeps_it_on(self, active, now):
        active.record_activity(now + timedelta(hours=20))
        assert active.tick(now + timedelta(hours=25)).active

    def test_max_duration(self, active, now):
        active.record_activity(now + timedelta(hours=47))
        state = active.tick(now + timedelta(hours=48))
        assert not state.active
        assert state.exit_reason == "max_duration_elapsed"

    def test_max_duration_never_cuts_the_minimum(self, now):
        # bypasses validation to reach the tick guard directly
        config = ProtectiveModeConfig.model_construct(min_duration_hours=24, max_duration_hours=12)
        detector = ProtectiveModeDetector(config)
        detector.observe(TWO_SIGNALS, now)
        assert detector.tick(now + timedelta(hours=13)).active
        state = detector.tick(now + timedelta(hours=24))
        assert not state.active
        assert state.exit_reason == "max_duration_elapsed"

    def test_naive_times_are_utc(self, detector, now):
        naive = now.replace(tzinfo=None)
        detector.observe(TWO_SIGNALS, naive)
        assert detector.state.entered_at == now
        assert detector.tick(now + timedelta(hours=1)).active


class TestRestrictions:
    @pytest.mark.parametrize(
        "effort,priority,allowed",
        [
            (Effort.LIGHT, Priority.LOW, True),
            (Effort.MEDIUM, Priority.MEDIUM, False),
            (Effort.MEDIUM, Priority.URGENT, True),
            (Effort.HEAVY, Priority.URGENT, False),
        ],
    )
    def test_task_filter(self, make_task, effort, priority, allowed):
        task = make_task(effort=effort, priority=priority)
        assert task_allowed_in_protective_mode(task) is allowed

    def test_inactive_allows_everything(self, detector, make_task):
        assert detector.is_task_allowed(make_task(effort=Effort.HEAVY))
        assert detector.notification() is None

    def test_notification_lists_signals(self, active):
        text = active.notification()
        assert "Not enough rest recently" in text
        assert "High load for several days" in text
        assert active.restrictions()["max_tasks_per_session"] == 2
        assert active.restrictions()["allow_heavy_tasks"] is False
