"""Budget-aware display hints.

Generates the short status and warning lines the UI shows next to the
budget gauge and the override dialog.
"""

from __future__ import annotations

from kairu_brain.core.models import DailyBudget, OverrideCost, WarningLevel

_WARNING_MESSAGES = {
    WarningLevel.HIGH: "This task has a high cost on your future budget and disables protections.",
    WarningLevel.MEDIUM: "This task has a moderate cost on your future budget.",
    WarningLevel.LOW: "This task has a low cost on your future budget.",
}


def format_cost(cost: OverrideCost) -> str:
    return f"{cost.total * 100:.0f}%"


def budget_status_message(budget: DailyBudget) -> str:
    """One-line status for the daily budget."""
    if budget.max_load <= 0:
        return "No budget available today. Rest is the plan."

    used_pct = budget.used_load / budget.max_load * 100
    parts: list[str] = []
    if budget.carried_debt > 0:
        parts.append(f"Budget exceeded by {budget.carried_debt:.2f} points; debt carried to tomorrow.")
    elif budget.is_locked:
        parts.append(f"Budget locked ({used_pct:.1f}% used). Only overrides can add work.")
    elif used_pct > 80:
        parts.append(f"Budget almost reached ({used_pct:.1f}%). Watch for fatigue.")
    elif used_pct > 60:
        parts.append(f"Budget at {used_pct:.1f}%. Continue carefully.")
    else:
        parts.append(f"Budget healthy ({used_pct:.1f}% used).")
    return " ".join(parts)


def override_warning_message(cost: OverrideCost) -> str:
    return _WARNING_MESSAGES[cost.consequences.warning_level]


def consequence_descriptions(cost: OverrideCost) -> list[str]:
    """Human-readable list of what forcing the task will do."""
    consequences: list[str] = []
    if cost.consequences.budget_reduction > 0:
        consequences.append(f"Budget reduced by {cost.consequences.budget_reduction:.2f} points")
    if cost.consequences.protection_disabled:
        consequences.append("Protections disabled for 24h")
    if cost.explanation_required:
        consequences.append("An explanation is required before forcing")
    return consequences


def should_confirm_override(cost: OverrideCost) -> bool:
    """Medium and high costs always need an explicit confirmation."""
    return cost.consequences.warning_level != WarningLevel.LOW
