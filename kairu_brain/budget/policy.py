"""Session decision policies: how many and which tasks a session may hold.

STRICT keeps the user's order and only drops invariant violations,
ASSISTED sorts by urgency, EMERGENCY exposes urgent and imposed work only.
Every policy respects the task cap and the remaining daily budget.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from kairu_brain.budget.engine import task_load, validate_budget
from kairu_brain.core.models import (
    DecisionMode,
    Effort,
    EnergyLevel,
    EvaluationContext,
    Priority,
    RejectionReason,
    TaskOrigin,
    TaskRecord,
)
from kairu_brain.protection.detector import task_allowed_in_protective_mode

_URGENCY_RANK = {Priority.URGENT: 4, Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}

_MODE_REASONS = {
    DecisionMode.STRICT: "Strict policy: invariants only, your order is kept.",
    DecisionMode.ASSISTED: "Assisted policy: most urgent work first.",
    DecisionMode.EMERGENCY: "Emergency policy: only urgent and imposed work is shown.",
}

_PER_TASK_REASONS = {
    RejectionReason.CAPACITY_LIMIT: "Over today's task cap or remaining budget",
    RejectionReason.BUDGET_LOCKED: "Daily budget is locked",
    RejectionReason.ENERGY_MISMATCH: "Heavy task at low energy",
    RejectionReason.PROTECTIVE_MODE: "Not allowed while protective mode is on",
    RejectionReason.DEGRADED: "Budget unavailable; refused conservatively",
}


@dataclass
class SessionPlan:
    """Outcome of applying a policy to a pool of tasks."""
    mode: DecisionMode
    max_tasks: int
    allowed: list[TaskRecord] = field(default_factory=list)
    rejected: dict[str, RejectionReason] = field(default_factory=dict)
    budget_consumed: float = 0.0
    summary: str = ""
    reason: str = ""

    def per_task_reasons(self) -> dict[str, str]:
        reasons = {t.id: "Allowed" for t in self.allowed}
        for task_id, reason in self.rejected.items():
            reasons[task_id] = _PER_TASK_REASONS[reason]
        return reasons


def calculate_max_tasks(
    tasks: list[TaskRecord],
    mode: DecisionMode,
    protective_active: bool = False,
    protective_cap: int = 2,
) -> int:
    """Dynamic task cap: 3 plus modifiers, clamped to [1, 9]."""
    modifiers = 0
    if sum(1 for t in tasks if t.origin == TaskOrigin.IMPOSED) > 2:
        modifiers += 1
    if sum(1 for t in tasks if t.effort == Effort.LIGHT) > 3:
        modifiers += 1
    if mode == DecisionMode.EMERGENCY:
        modifiers += 2
    cap = 3 + modifiers
    if protective_active:
        cap = min(cap, protective_cap)
    return max(1, min(9, cap))


def _order_candidates(
    tasks: list[TaskRecord],
    mode: DecisionMode,
    energy: EnergyLevel,
) -> tuple[list[TaskRecord], dict[str, RejectionReason]]:
    rejected: dict[str, RejectionReason] = {}
    if mode == DecisionMode.ASSISTED:
        return sorted(tasks, key=lambda t: -_URGENCY_RANK[t.urgency]), rejected

    if mode == DecisionMode.EMERGENCY:
        candidates = []
        for task in tasks:
            if task.urgency == Priority.URGENT or task.origin == TaskOrigin.IMPOSED:
                candidates.append(task)
            else:
                rejected[task.id] = RejectionReason.CAPACITY_LIMIT
        return candidates, rejected

    candidates = []
    for task in tasks:
        if task.effort == Effort.HEAVY and energy == EnergyLevel.LOW:
            rejected[task.id] = RejectionReason.ENERGY_MISMATCH
        else:
            candidates.append(task)
    return candidates, rejected


def decide_session(
    tasks: list[TaskRecord],
    context: EvaluationContext,
    mode: DecisionMode = DecisionMode.STRICT,
    protective_cap: int = 2,
) -> SessionPlan:
    """Apply a decision policy to the day's candidate tasks."""
    protective = context.protective_active
    max_tasks = calculate_max_tasks(tasks, mode, protective, protective_cap)
    plan = SessionPlan(mode=mode, max_tasks=max_tasks, reason=_MODE_REASONS[mode])

    if validate_budget(context.budget):
        plan.rejected = {t.id: RejectionReason.DEGRADED for t in tasks}
        plan.summary = "Budget state unavailable: nothing was scheduled."
        return plan

    budget = context.budget
    remaining = budget.remaining
    candidates, rejected = _order_candidates(tasks, mode, context.energy)

    for task in candidates:
        load = task_load(task, context.stability)
        reason: Optional[RejectionReason] = None
        if protective and not task_allowed_in_protective_mode(task):
            reason = RejectionReason.PROTECTIVE_MODE
        elif remaining <= budget.lock_threshold:
            # Locks as soon as the running plan reaches the threshold.
            reason = RejectionReason.BUDGET_LOCKED
        elif len(plan.allowed) >= max_tasks or load > remaining:
            reason = RejectionReason.CAPACITY_LIMIT

        if reason is None:
            plan.allowed.append(task)
            plan.budget_consumed += load
            remaining -= load
        else:
            rejected[task.id] = reason

    # Keep the input order for rejected ids so the output is stable.
    plan.rejected = {t.id: rejected[t.id] for t in tasks if t.id in rejected}
    plan.summary = (
        f"{len(plan.allowed)} of {len(tasks)} task(s) fit today "
        f"(cap {max_tasks}, load {plan.budget_consumed:.2f}/{budget.remaining:.2f})."
    )
    return plan
