"""Tests for kairu_brain/budget/hints.py: budget display strings."""

from kairu_brain.budget.hints import (
    budget_status_message,
    consequence_descriptions,
    format_cost,
    override_warning_message,
    should_confirm_override,
)
from kairu_brain.core.models import CostType, DailyBudget, OverrideConsequences, OverrideCost, WarningLevel

from tests.conftest import budget_of


def _cost(total: float, warning: WarningLevel, protection_disabled: bool = False) -> OverrideCost:
    return OverrideCost(
        type=CostType.FOCUS,
        total=total,
        explanation_required=warning == WarningLevel.HIGH,
        consequences=OverrideConsequences(
            budget_reduction=total * 10,
            protection_disabled=protection_disabled,
            warning_level=warning,
        ),
    )


# ---------------------------------------------------------------------------
# Budget status
# ---------------------------------------------------------------------------

def test_healthy_budget():
    assert "healthy" in budget_status_message(budget_of(10, 2, lock_threshold=2))


def test_budget_getting_full():
    assert "Continue carefully" in budget_status_message(budget_of(10, 7, lock_threshold=1))


def test_locked_budget():
    assert "locked" in budget_status_message(budget_of(10, 9, lock_threshold=2))


def test_debt_reported_first():
    budget = DailyBudget(max_load=10, used_load=10, remaining=0, carried_debt=3.5)
    assert "3.50" in budget_status_message(budget)


def test_zero_budget():
    assert "Rest" in budget_status_message(budget_of(0))


# ---------------------------------------------------------------------------
# Override warnings
# ---------------------------------------------------------------------------

def test_format_cost():
    assert format_cost(_cost(0.288, WarningLevel.LOW)) == "29%"


def test_warning_message_by_level():
    assert "high cost" in override_warning_message(_cost(0.8, WarningLevel.HIGH))
    assert "low cost" in override_warning_message(_cost(0.1, WarningLevel.LOW))


def test_consequences_listed():
    lines = consequence_descriptions(_cost(0.8, WarningLevel.HIGH, protection_disabled=True))
    assert any("Budget reduced" in line for line in lines)
    assert any("Protections disabled" in line for line in lines)
    assert any("explanation" in line for line in lines)


def test_confirmation_needed_above_low():
    assert not should_confirm_override(_cost(0.1, WarningLevel.LOW))
    assert should_confirm_override(_cost(0.4, WarningLevel.MEDIUM))
    assert should_confirm_override(_cost(0.8, WarningLevel.HIGH))
