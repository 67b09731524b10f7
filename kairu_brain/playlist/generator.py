"""Daily playlist: rank the candidate tasks for one planning cycle.

Each task gets three factors in [0, 1]:
1. energy: how well the task's energy requirement matches the declared energy
2. impact: priority plus tag bonuses (keystone habits, high-impact keywords)
3. deadline: 0 without a deadline, rising linearly to 1 as it nears

score = weighted sum using the adaptive weights (equal until an adaptation
is accepted). The output is always a permutation of the input.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime, timedelta
from typing import Optional, Sequence

from kairu_brain.adaptation.guard import OverfittingGuard
from kairu_brain.budget.engine import task_load
from kairu_brain.core.config import PlaylistConfig
from kairu_brain.core.exceptions import BrainError
from kairu_brain.core.models import (
    DailyBudget,
    EnergyLevel,
    PlaylistFactors,
    PlaylistItem,
    Priority,
    TaskRecord,
    as_utc,
)

logger = logging.getLogger("brain.playlist.generator")

FACTORS = ("energy", "impact", "deadline")
EQUAL_WEIGHTS = {name: 1.0 / len(FACTORS) for name in FACTORS}

# declared energy -> task requirement -> match
_ENERGY_MATCH = {
    EnergyLevel.HIGH: {EnergyLevel.HIGH: 1.0, EnergyLevel.MEDIUM: 0.7, EnergyLevel.LOW: 0.3},
    EnergyLevel.MEDIUM: {EnergyLevel.HIGH: 0.6, EnergyLevel.MEDIUM: 1.0, EnergyLevel.LOW: 0.6},
    EnergyLevel.LOW: {EnergyLevel.HIGH: 0.3, EnergyLevel.MEDIUM: 0.6, EnergyLevel.LOW: 1.0},
}
_UNSPECIFIED_ENERGY = 0.5

_PRIORITY_IMPACT = {
    Priority.LOW: 0.25,
    Priority.MEDIUM: 0.5,
    Priority.HIGH: 0.75,
    Priority.URGENT: 1.0,
}


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def energy_match(task: TaskRecord, energy: EnergyLevel) -> float:
    if task.energy_required is None:
        return _UNSPECIFIED_ENERGY
    return _ENERGY_MATCH[energy][task.energy_required]


def normalise_weights(weights: dict[str, float]) -> dict[str, float]:
    """Scale the three factor weights to sum to 1; equal weights if unusable."""
    values = {name: float(weights.get(name, 0.0)) for name in FACTORS}
    if any(not math.isfinite(v) or v < 0 for v in values.values()):
        return dict(EQUAL_WEIGHTS)
    total = sum(values.values())
    if total <= 0:
        return dict(EQUAL_WEIGHTS)
    return {name: v / total for name, v in values.items()}


class PlaylistGenerator:
    """Builds the ordered playlist.

    Injected dependencies:
        config: Horizon, impact keywords and thresholds.
        guard: Source of the adaptive factor weights (optional).
    """

    def __init__(self, config: Optional[PlaylistConfig] = None, guard: Optional[OverfittingGuard] = None):
        self.config = config or PlaylistConfig()
        self.guard = guard
        if guard is not None:
            for name, value in EQUAL_WEIGHTS.items():
                guard.register(f"playlist.{name}", value)

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def _tags(self, task: TaskRecord) -> set[str]:
        return {tag.strip().lower() for tag in task.tags}

    def is_keystone(self, task: TaskRecord) -> bool:
        keystone = {t.lower() for t in self.config.keystone_tags}
        return bool(self._tags(task) & keystone)

    def impact(self, task: TaskRecord) -> float:
        score = _PRIORITY_IMPACT[task.priority]
        text = " ".join([task.name, task.description or "", *task.tags]).lower()
        if self.is_keystone(task):
            score += 0.3
        if any(word in text for word in self.config.high_impact_keywords):
            score += 0.2
        elif any(word in text for word in self.config.medium_impact_keywords):
            score += 0.1
        return _clamp01(score)

    def deadline_proximity(self, task: TaskRecord, now: datetime) -> float:
        if task.deadline is None:
            return 0.0
        horizon = timedelta(days=self.config.deadline_horizon_days)
        left = task.deadline - now
        if left <= timedelta(0):
            return 1.0
        return _clamp01(1.0 - left / horizon)

    def factors(self, task: TaskRecord, energy: EnergyLevel, now: datetime) -> PlaylistFactors:
        return PlaylistFactors(
            energy=energy_match(task, energy),
            impact=self.impact(task),
            deadline=self.deadline_proximity(task, now),
        )

    def weights(self) -> dict[str, float]:
        """Current factor weights, or equal weights if the lookup fails."""
        if self.guard is None:
            return dict(EQUAL_WEIGHTS)
        try:
            raw = self.guard.weights({f"playlist.{n}": v for n, v in EQUAL_WEIGHTS.items()})
            return normalise_weights({n: raw[f"playlist.{n}"] for n in FACTORS})
        except (BrainError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Weight lookup failed, using equal weights: %s", exc)
            return dict(EQUAL_WEIGHTS)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _reason(self, factors: PlaylistFactors, keystone: bool) -> str:
        parts = []
        if factors.energy >= 0.7:
            parts.append(f"energy match {factors.energy:.0%}")
        if factors.impact >= self.config.high_impact_threshold:
            parts.append("high impact")
        if factors.deadline >= 0.5:
            parts.append(f"deadline close ({factors.deadline:.0%})")
        if keystone:
            parts.append("keystone habit")
        return ", ".join(parts) or "fits the day"

    def generate(
        self,
        tasks: Sequence[TaskRecord],
        budget: Optional[DailyBudget],
        energy: EnergyLevel,
        now: Optional[datetime] = None,
        weights: Optional[dict[str, float]] = None,
    ) -> list[PlaylistItem]:
        """Score and order the tasks. Flags never influence the order."""
        now = as_utc(now) or datetime.now(UTC)
        w = normalise_weights(weights) if weights is not None else self.weights()

        scored = []
        for index, task in enumerate(tasks):
            factors = self.factors(task, energy, now)
            score = w["energy"] * factors.energy + w["impact"] * factors.impact + w["deadline"] * factors.deadline
            scored.append((task, factors, score, index))

        def _key(entry):
            task, _, score, index = entry
            deadline = task.deadline.timestamp() if task.deadline is not None else math.inf
            return (-score, deadline, index)

        scored.sort(key=_key)

        remaining = budget.remaining if budget is not None else 0.0
        cumulative = 0.0
        items: list[PlaylistItem] = []
        for task, factors, score, _ in scored:
            cumulative += task_load(task)
            keystone = self.is_keystone(task)
            items.append(
                PlaylistItem(
                    task_id=task.id,
                    score=score,
                    factors=factors,
                    is_high_impact=factors.impact >= self.config.high_impact_threshold,
                    is_keystone_habit=keystone,
                    fits_budget=cumulative <= remaining + 1e-9,
                    reason=self._reason(factors, keystone),
                )
            )

        if self.config.max_items is not None:
            items = items[: self.config.max_items]
        logger.debug(
            "Playlist generated: %d item(s), weights=%s",
            len(items), ", ".join(f"{k}={v:.2f}" for k, v in w.items()),
        )
        return items
