"""Shared fixtures for the decision-core tests.

Time is always injected: every test works from the fixed ``now`` below so
results never depend on the wall clock.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from kairu_brain.core.config import BrainConfig
from kairu_brain.core.models import DailyBudget, TaskRecord

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def brain_config():
    return BrainConfig()


@pytest.fixture
def make_task():
    """Factory for TaskRecord with readable defaults."""
    counter = {"n": 0}

    def _make(**kwargs) -> TaskRecord:
        counter["n"] += 1
        kwargs.setdefault("id", f"task-{counter['n']}")
        kwargs.setdefault("name", f"Task {counter['n']}")
        kwargs.setdefault("created_at", NOW)
        return TaskRecord(**kwargs)

    return _make


def budget_of(max_load: float, used_load: float = 0.0, lock_threshold: float = 0.0) -> DailyBudget:
    return DailyBudget(
        max_load=max_load,
        used_load=used_load,
        remaining=max_load - used_load,
        lock_threshold=lock_threshold,
    )


