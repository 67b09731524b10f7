"""Tests for kairu_brain/playlist/generator.py: factor scoring and ordering."""

from datetime import timedelta

import pytest

from kairu_brain.adaptation.guard import OverfittingGuard
from kairu_brain.core.config import PlaylistConfig
from kairu_brain.core.models import Effort, EnergyLevel, Priority
from kairu_brain.playlist.generator import (
    EQUAL_WEIGHTS,
    PlaylistGenerator,
    energy_match,
    normalise_weights,
)

from tests.conftest import budget_of


@pytest.fixture
def generator():
    return PlaylistGenerator()


class TestFactors:
    @pytest.mark.parametrize(
        "declared,required,expected",
        [
            (EnergyLevel.HIGH, EnergyLevel.HIGH, 1.0),
            (EnergyLevel.HIGH, EnergyLevel.LOW, 0.3),
            (EnergyLevel.MEDIUM, EnergyLevel.HIGH, 0.6),
            (EnergyLevel.LOW, EnergyLevel.MEDIUM, 0.6),
            (EnergyLevel.LOW, None, 0.5),
        ],
    )
    def test_energy_match(self, make_task, declared, required, expected):
        assert energy_match(make_task(energy_required=required), declared) == expected

    def test_impact(self, generator, make_task):
        assert generator.impact(make_task(priority=Priority.HIGH, tags=["Keystone Habit"])) == 1.0
        assert generator.impact(make_task(name="Client call")) == pytest.approx(0.7)
        assert generator.impact(make_task(name="Team sync", priority=Priority.LOW)) == pytest.approx(0.35)
        assert generator.impact(make_task()) == pytest.approx(0.5)

    def test_deadline_proximity(self, generator, make_task, now):
        assert generator.deadline_proximity(make_task(), now) == 0.0
        assert generator.deadline_proximity(make_task(deadline=now + timedelta(days=3.5)), now) == pytest.approx(0.5)
        assert generator.deadline_proximity(make_task(deadline=now - timedelta(hours=1)), now) == 1.0
        assert generator.deadline_proximity(make_task(deadline=now + timedelta(days=14)), now) == 0.0


class TestNormaliseWeights:
    def test_scales_to_one(self):
        assert normalise_weights({"energy": 2, "impact": 1, "deadline": 1}) == pytest.approx(
            {"energy": 0.5, "impact": 0.25, "deadline": 0.25}
        )

    @pytest.mark.parametrize(
        "weights",
        [
            {"energy": -1, "impact": 1, "deadline": 1},
            {"energy": 0, "impact": 0, "deadline": 0},
            {"energy": float("nan"), "impact": 1, "deadline": 1},
            {},
        ],
    )
    def test_unusable_weights_fall_back_to_equal(self, weights):
        assert normalise_weights(weights) == EQUAL_WEIGHTS


class TestGenerate:
    def test_output_is_sorted_permutation(self, generator, make_task, now):
        tasks = [
            make_task(priority=Priority.LOW, energy_required=EnergyLevel.HIGH),
            make_task(priority=Priority.URGENT, deadline=now + timedelta(days=1)),
            make_task(name="Quarterly strategy", energy_required=EnergyLevel.LOW),
            make_task(tags=["keystone"], effort=Effort.LIGHT),
            make_task(priority=Priority.HIGH, deadline=now + timedelta(days=6)),
        ]
        items = generator.generate(tasks, budget_of(10), EnergyLevel.LOW, now=now)
        assert sorted(i.task_id for i in items) == sorted(t.id for t in tasks)
        scores = [i.score for i in items]
        assert scores == sorted(scores, reverse=True)
        assert items[0].task_id == tasks[1].id

    def test_ties_broken_by_deadline_then_input_order(self, generator, make_task, now):
        later = make_task(deadline=now + timedelta(days=10))
        sooner = make_task(deadline=now + timedelta(days=8))
        first = make_task()
        second = make_task()
        items = generator.generate([first, later, second, sooner], budget_of(10), EnergyLevel.MEDIUM, now=now)
        assert [i.task_id for i in items] == [sooner.id, later.id, first.id, second.id]

    def test_fits_budget_is_cumulative(self, generator, make_task, now):
        tasks = [make_task(effort=Effort.LIGHT) for _ in range(3)]
        items = generator.generate(tasks, budget_of(1.0), EnergyLevel.MEDIUM, now=now)
        assert [i.fits_budget for i in items] == [True, True, False]

    def test_flags(self, generator, make_task, now):
        task = make_task(priority=Priority.URGENT, tags=["keystone"])
        item = generator.generate([task], budget_of(10), EnergyLevel.MEDIUM, now=now)[0]
        assert item.is_high_impact
        assert item.is_keystone_habit
        assert "keystone habit" in item.reason

    def test_explicit_weights(self, generator, make_task, now):
        urgent = make_task(priority=Priority.URGENT)
        matched = make_task(energy_required=EnergyLevel.LOW)
        items = generator.generate(
            [urgent, matched], budget_of(10), EnergyLevel.LOW, now=now,
            weights={"energy": 1, "impact": 0, "deadline": 0},
        )
        assert items[0].task_id == matched.id

    def test_max_items(self, make_task, now):
        generator = PlaylistGenerator(PlaylistConfig(max_items=2))
        items = generator.generate([make_task() for _ in range(4)], budget_of(10), EnergyLevel.MEDIUM, now=now)
        assert len(items) == 2

    def test_empty(self, generator, now):
        assert generator.generate([], budget_of(10), EnergyLevel.MEDIUM, now=now) == []


class TestAdaptiveWeights:
    def test_defaults_registered_with_guard(self):
        guard = OverfittingGuard()
        generator = PlaylistGenerator(guard=guard)
        assert guard.weight("playlist.energy") == pytest.approx(1 / 3)
        assert generator.weights() == pytest.approx(EQUAL_WEIGHTS)

    def test_accepted_adaptation_shifts_weights(self, now):
        guard = OverfittingGuard()
        generator = PlaylistGenerator(guard=guard)
        guard.observe("playlist.impact", 0.9, now - timedelta(days=31))
        guard.observe("playlist.impact", 0.9, now)
        assert guard.propose("playlist.impact", 0.9, now).accepted
        weights = generator.weights()
        assert weights["impact"] > weights["energy"]
        assert sum(weights.values()) == pytest.approx(1.0)


class TestNaiveTimestamps:
    def test_naive_deadline_is_utc(self, generator, make_task, now):
        task = make_task(deadline=(now + timedelta(days=3.5)).replace(tzinfo=None))
        assert task.deadline.tzinfo is not None
        items = generator.generate([task], budget_of(10), EnergyLevel.HIGH, now=now)
        assert items[0].factors.deadline == pytest.approx(0.5)

    def test_naive_now(self, generator, make_task, now):
        task = make_task(deadline=now + timedelta(days=1))
        items = generator.generate([task, make_task()], budget_of(10), EnergyLevel.MEDIUM, now=now.replace(tzinfo=None))
        assert items[0].task_id == task.id
