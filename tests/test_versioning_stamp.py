"""Tests for kairu_brain/versioning/stamp.py: fingerprints and replay comparison."""

import re
from datetime import timedelta

import pytest

from kairu_brain.core.models import (
    BrainDecision,
    DecisionExplanations,
    DecisionInputs,
    DecisionOutputs,
    EnergyLevel,
    Priority,
)
from kairu_brain.versioning.stamp import (
    DecisionReproducibilityRegistry,
    canonical_json,
    fingerprint,
    fnv1a32,
    is_reproducible_equal,
    mismatched_fields,
    stamp,
)

RULES = {"max_tasks": 3, "modes": ["STRICT", "ASSISTED"], "lock_ratio": 0.2}


def _decision(now, version="1.1.0", rules=None, energy=EnergyLevel.MEDIUM):
    inputs = DecisionInputs(energy_state=energy, task_ids=["a", "b"])
    return BrainDecision(
        inputs=inputs,
        outputs=DecisionOutputs(allowed=True, allowed_task_ids=["a"], rejected_task_ids=["b"]),
        explanations=DecisionExplanations(summary="1 of 2", reason="strict"),
        stamp=stamp(rules or RULES, inputs, now, version),
    )


class TestFnv1a:
    def test_known_vectors(self):
        assert fnv1a32(b"") == 0x811C9DC5
        assert fnv1a32(b"a") == 0xE40C292C

    def test_fingerprint_format(self):
        assert re.fullmatch(r"fnv1a32_[0-9a-f]{8}", fingerprint(RULES))


class TestCanonicalJson:
    def test_key_order_is_irrelevant(self):
        assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})

    def test_sequence_order_is_irrelevant(self):
        assert fingerprint(["x", "y", "z"]) == fingerprint(["z", "x", "y"])
        assert fingerprint({"tags": {"b", "a"}}) == fingerprint({"tags": ["a", "b"]})

    def test_values_matter(self):
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})

    def test_enums_and_datetimes(self, now):
        assert canonical_json({"p": Priority.HIGH, "at": now}) == (
            '{"at":"2026-03-10T12:00:00+00:00","p":"high"}'
        )

    def test_integral_floats(self):
        assert canonical_json({"x": 2.0}) == canonical_json({"x": 2})


class TestStamp:
    def test_stamp_fields(self, now):
        result = stamp(RULES, {"energy": "low"}, now, "1.1.0")
        assert result.brain_version == "1.1.0"
        assert result.rules_hash == fingerprint(RULES)
        assert result.decision_context_hash == fingerprint({"energy": "low"})
        assert result.decision_timestamp == now

    def test_timestamp_ignored_for_equality(self, now):
        a = _decision(now)
        b = _decision(now + timedelta(days=3))
        assert is_reproducible_equal(a, b)

    def test_mismatched_fields(self, now):
        a = _decision(now)
        b = _decision(now, version="2.0.0", rules={"max_tasks": 4})
        assert mismatched_fields(a, b) == ["brain_version", "rules_hash"]
        c = _decision(now, energy=EnergyLevel.LOW)
        assert mismatched_fields(a.stamp, c.stamp) == ["decision_context_hash"]


class TestRegistry:
    @pytest.fixture
    def registry(self, now):
        registry = DecisionReproducibilityRegistry()
        registry.record(_decision(now))
        return registry

    def test_compare_equal(self, registry, now):
        original = registry.by_version("1.1.0")[0]
        report = registry.compare(original.id, _decision(now + timedelta(hours=1)))
        assert report.equal
        assert report.mismatched == []

    def test_compare_changed_rules(self, registry, now):
        original = registry.by_version("1.1.0")[0]
        report = registry.compare(original.id, _decision(now, rules={"max_tasks": 5}))
        assert not report.equal
        assert report.mismatched == ["rules_hash"]

    def test_unknown_decision(self, registry, now):
        report = registry.compare("nope", _decision(now))
        assert not report.equal
        assert report.mismatched == ["decision_id"]

    def test_lookup(self, registry, now):
        assert len(registry) == 1
        assert registry.by_version("0.9.0") == []
        decision = registry.by_version("1.1.0")[0]
        assert registry.get(decision.id) == decision

    def test_prune_drops_oldest_beyond_bound(self, now):
        registry = DecisionReproducibilityRegistry(max_entries=2)
        decisions = [_decision(now + timedelta(minutes=i)) for i in range(3)]
        for decision in decisions:
            registry.record(decision)
        assert registry.prune() == 1
        assert registry.get(decisions[0].id) is None
        assert [registry.get(d.id) for d in decisions[1:]] == decisions[1:]
        assert registry.prune() == 0

    def test_unbounded_registry_never_prunes(self, registry):
        assert registry.prune() == 0
        assert len(registry) == 1
