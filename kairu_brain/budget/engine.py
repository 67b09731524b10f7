"""Budget & cost engine.

Decides whether a task request fits the remaining daily capacity and, if
not, prices the override. The engine is the only writer of the DailyBudget:
commits are serialised so two overrides never read-then-write the same
``remaining`` value concurrently.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Optional

from kairu_brain.core.config import BudgetConfig
from kairu_brain.core.exceptions import BudgetError, MalformedContextError
from kairu_brain.core.models import (
    Allowed,
    CostType,
    DailyBudget,
    Effort,
    EnergyLevel,
    EnergyStability,
    EvaluationContext,
    EvaluationResult,
    OverrideConsequences,
    OverrideCost,
    Priority,
    RefusedWithCost,
    RejectionReason,
    TaskRecord,
    WarningLevel,
)
from kairu_brain.protection.detector import task_allowed_in_protective_mode

logger = logging.getLogger("brain.budget.engine")

_EFFORT_LOAD = {Effort.LIGHT: 1.0, Effort.MEDIUM: 2.0, Effort.HEAVY: 3.0}
_EFFORT_COST = {Effort.LIGHT: 0.5, Effort.MEDIUM: 1.0, Effort.HEAVY: 2.0}
_PRIORITY_COST = {
    Priority.URGENT: 0.6,
    Priority.HIGH: 0.8,
    Priority.MEDIUM: 1.0,
    Priority.LOW: 1.3,
}

_REFUSAL_MESSAGES = {
    RejectionReason.CAPACITY_LIMIT: "Not enough budget left today for this task.",
    RejectionReason.BUDGET_LOCKED: "Today's budget is locked; only an override can add work.",
    RejectionReason.PROTECTIVE_MODE: "Protective mode only allows light or urgent tasks.",
    RejectionReason.DEGRADED: "Budget state is unavailable; refusing conservatively.",
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def task_load(task: TaskRecord, stability: EnergyStability = EnergyStability.STABLE) -> float:
    """Estimated cognitive load of a task.

    Uses the stored estimate when present, else effort x 30-minute chunks x
    stability penalty.
    """
    if task.estimated_load is not None:
        return float(task.estimated_load)
    duration_factor = math.ceil(max(task.duration_minutes, 1) / 30) * 0.5
    stability_penalty = 1.5 if stability == EnergyStability.VOLATILE else 1.0
    return _EFFORT_LOAD[task.effort] * duration_factor * stability_penalty


def validate_context(task: TaskRecord, context: EvaluationContext) -> list[str]:
    """Return every problem that makes a context unusable (empty if fine)."""
    problems: list[str] = []
    if task.estimated_load is not None and (
        task.estimated_load < 0 or not math.isfinite(task.estimated_load)
    ):
        problems.append(f"negative or non-finite estimated_load ({task.estimated_load})")
    return problems + validate_budget(context.budget)


def validate_budget(budget: Optional[DailyBudget]) -> list[str]:
    if budget is None:
        return ["missing budget"]

    problems: list[str] = []
    for name in ("max_load", "used_load", "remaining", "lock_threshold", "carried_debt"):
        value = getattr(budget, name)
        if not math.isfinite(value):
            problems.append(f"{name} is not finite")
        elif value < 0:
            problems.append(f"negative {name} ({value})")
    if not problems and not budget.is_balanced:
        problems.append(
            f"used_load + remaining != max_load ({budget.used_load} + {budget.remaining} != {budget.max_load})"
        )
    return problems


class BudgetEngine:
    """Evaluates task requests and owns the daily budget.

    Injected dependencies:
        config: Budget thresholds and cost constants.
        budget: Initial budget; a fresh one from config when omitted.
    """

    def __init__(self, config: Optional[BudgetConfig] = None, budget: Optional[DailyBudget] = None):
        self.config = config or BudgetConfig()
        self._lock = threading.Lock()
        self._budget = budget or self.create_daily_budget()
        self.cycle = 0
        self._folded_debt = 0.0  # yesterday's debt already taken out of today's max_load

    @property
    def budget(self) -> DailyBudget:
        return self._budget

    # ------------------------------------------------------------------
    # Budget lifecycle
    # ------------------------------------------------------------------

    def create_daily_budget(
        self,
        max_load: Optional[float] = None,
        carried_debt: float = 0.0,
        capacity_bias: float = 0.0,
    ) -> DailyBudget:
        """Build a budget for a new planning cycle.

        ``capacity_bias`` is the learned calibration (bounded); ``carried_debt``
        is what yesterday's overrides borrowed. Debt larger than the day is
        carried further.
        """
        base = self.config.default_max_load if max_load is None else max_load
        bias = _clamp(capacity_bias, -self.config.max_capacity_adjustment, self.config.max_capacity_adjustment)
        capacity = max(0.0, base * (1.0 + bias))
        effective = max(0.0, capacity - carried_debt)
        leftover_debt = max(0.0, carried_debt - capacity)
        return DailyBudget(
            max_load=effective,
            used_load=0.0,
            remaining=effective,
            lock_threshold=effective * self.config.lock_threshold_ratio,
            carried_debt=leftover_debt,
        )

    def start_new_day(self, max_load: Optional[float] = None, capacity_bias: float = 0.0) -> DailyBudget:
        """Reset at the day boundary, charging today's override debt to tomorrow."""
        with self._lock:
            debt = self._budget.carried_debt
            self._budget = self.create_daily_budget(
                max_load=max_load, carried_debt=debt, capacity_bias=capacity_bias,
            )
            self._folded_debt = debt - self._budget.carried_debt
            self.cycle += 1
        logger.info(
            "New daily budget: max_load=%.2f (debt carried=%.2f, bias=%.3f)",
            self._budget.max_load, debt, capacity_bias,
        )
        return self._budget

    def context(self, **kwargs) -> EvaluationContext:
        """Evaluation context over a snapshot of the owned budget."""
        kwargs.setdefault("budget", self._budget)
        return EvaluationContext(**kwargs)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, task: TaskRecord, context: EvaluationContext) -> EvaluationResult:
        """Allow the task or refuse it with the explicit cost of forcing it.

        Never raises on bad input: a malformed context yields a DEGRADED
        refusal so a miscalculation cannot grant unlimited capacity.
        """
        try:
            problems = validate_context(task, context)
            if problems:
                raise MalformedContextError(problems)
        except MalformedContextError as exc:
            logger.warning("Degraded evaluation for task %s: %s", task.id, exc)
            return self._degraded_refusal(task, exc.problems)

        budget = context.budget
        load = task_load(task, context.stability)

        reason: Optional[RejectionReason] = None
        if context.protective_active and not task_allowed_in_protective_mode(task):
            reason = RejectionReason.PROTECTIVE_MODE
        elif budget.is_locked:
            reason = RejectionReason.BUDGET_LOCKED
        elif budget.remaining < load:
            reason = RejectionReason.CAPACITY_LIMIT

        if reason is None:
            logger.debug("Task %s allowed: load=%.2f remaining=%.2f", task.id, load, budget.remaining)
            return Allowed(task_id=task.id, estimated_load=load)

        cost = self.compute_override_cost(task, context)
        logger.info(
            "Task %s refused (%s): load=%.2f remaining=%.2f cost=%.3f warning=%s",
            task.id, reason.value, load, budget.remaining, cost.total,
            cost.consequences.warning_level.value,
        )
        return RefusedWithCost(
            task_id=task.id,
            estimated_load=load,
            reason=reason,
            cost=cost,
            message=_REFUSAL_MESSAGES[reason],
        )

    def compute_override_cost(self, task: TaskRecord, context: EvaluationContext) -> OverrideCost:
        """Price forcing a task: a fraction of future budget in (0, 1)."""
        budget = context.budget
        if budget is None:
            return self._degraded_cost()

        used_ratio = 1.0 if budget.max_load <= 0 else _clamp(budget.used_load / budget.max_load, 0.0, 1.0)
        heavy_at_low_energy = task.effort == Effort.HEAVY and context.energy == EnergyLevel.LOW
        multipliers = {
            "priority": _PRIORITY_COST[task.priority],
            "task_effort": _EFFORT_COST[task.effort],
            "energy_mismatch": 1.5 if heavy_at_low_energy else 1.0,
            "scarcity": 1.0 + used_ratio,
            "burnout_signals": 1.0 + _clamp(context.burnout_score, 0.0, 1.0) * 0.5,
            "recent_overrides": 1.3 if context.overrides_last_2h > 0 else 1.0,
        }
        raw = self.config.base_override_cost * math.prod(multipliers.values())
        total = _clamp(raw, self.config.min_override_cost, self.config.max_override_cost)

        protective = context.protective_active
        if protective:
            total = max(total, self.config.protective_cost_floor)

        warning = self._warning_level(total)
        if protective and warning.rank < WarningLevel.MEDIUM.rank:
            warning = WarningLevel.MEDIUM

        return OverrideCost(
            type=self._cost_type(task, context),
            total=total,
            explanation_required=warning == WarningLevel.HIGH,
            consequences=OverrideConsequences(
                budget_reduction=total * max(0.0, budget.remaining),
                protection_disabled=protective or multipliers["burnout_signals"] > 1.4,
                warning_level=warning,
            ),
            multipliers=multipliers,
        )

    def _warning_level(self, total: float) -> WarningLevel:
        if total > self.config.high_warning_above:
            return WarningLevel.HIGH
        if total > self.config.medium_warning_above:
            return WarningLevel.MEDIUM
        return WarningLevel.LOW

    def _cost_type(self, task: TaskRecord, context: EvaluationContext) -> CostType:
        if task.effort == Effort.HEAVY or (
            context.energy == EnergyLevel.LOW and task.effort != Effort.LIGHT
        ):
            return CostType.ENERGY
        if task.duration_minutes >= self.config.long_task_minutes:
            return CostType.TIME
        return CostType.FOCUS

    def _degraded_cost(self) -> OverrideCost:
        return OverrideCost(
            type=CostType.ENERGY,
            total=self.config.degraded_override_cost,
            explanation_required=True,
            consequences=OverrideConsequences(
                budget_reduction=0.0,
                protection_disabled=False,
                warning_level=WarningLevel.HIGH,
            ),
            degraded=True,
        )

    def _degraded_refusal(self, task: TaskRecord, problems: list[str]) -> RefusedWithCost:
        try:
            load = max(0.0, task_load(task))
        except (KeyError, TypeError, ValueError):
            load = 0.0
        if not math.isfinite(load):
            load = 0.0
        return RefusedWithCost(
            task_id=task.id,
            estimated_load=load,
            reason=RejectionReason.DEGRADED,
            cost=self._degraded_cost(),
            message=_REFUSAL_MESSAGES[RejectionReason.DEGRADED] + " (" + "; ".join(problems) + ")",
            degraded=True,
        )

    # ------------------------------------------------------------------
    # Commit / refund
    # ------------------------------------------------------------------

    def commit(self, evaluation: EvaluationResult) -> float:
        """Consume budget for an evaluated request. Returns the amount charged.

        A forced request charges ``load + budget_reduction``; whatever does not
        fit today becomes carried debt so ``remaining`` never goes negative.
        """
        if isinstance(evaluation, RefusedWithCost) and evaluation.degraded:
            raise BudgetError("Cannot commit an override against a degraded evaluation")

        with self._lock:
            budget = self._budget
            if isinstance(evaluation, Allowed):
                amount = evaluation.estimated_load
                if amount > budget.remaining + 1e-9:
                    raise BudgetError(
                        f"Stale evaluation for task {evaluation.task_id}: "
                        f"load {amount:.2f} exceeds remaining {budget.remaining:.2f}"
                    )
            else:
                amount = evaluation.estimated_load + evaluation.cost.consequences.budget_reduction
            self._budget = self._apply_load(budget, amount)
            after = self._budget

        logger.info(
            "Committed %.2f for task %s (override=%s): used=%.2f remaining=%.2f debt=%.2f",
            amount, evaluation.task_id, not evaluation.allowed,
            after.used_load, after.remaining, after.carried_debt,
        )
        return amount

    def refund(self, amount: float) -> DailyBudget:
        """Give load back (a regretted override). Debt is repaid first."""
        if amount < 0:
            raise BudgetError(f"Cannot refund a negative amount ({amount})")
        with self._lock:
            budget = self._budget
            from_debt = min(budget.carried_debt, amount)
            used = max(0.0, budget.used_load - (amount - from_debt))
            self._budget = budget.model_copy(
                update={
                    "used_load": used,
                    "remaining": budget.max_load - used,
                    "carried_debt": budget.carried_debt - from_debt,
                }
            )
            after = self._budget
        logger.info("Refunded %.2f: used=%.2f remaining=%.2f", amount, after.used_load, after.remaining)
        return after

    def restore_capacity(self, debt: float) -> DailyBudget:
        """Cancel debt charged on an earlier cycle (an override regretted after the rollover).

        Debt still carried is cleared first; the rest is given back to
        today's ``max_load``, up to what the rollover took out of it.
        """
        if debt < 0:
            raise BudgetError(f"Cannot restore a negative amount ({debt})")
        with self._lock:
            budget = self._budget
            from_debt = min(budget.carried_debt, debt)
            restored = min(debt - from_debt, self._folded_debt)
            self._folded_debt -= restored
            max_load = budget.max_load + restored
            self._budget = budget.model_copy(
                update={
                    "max_load": max_load,
                    "remaining": max_load - budget.used_load,
                    "lock_threshold": max_load * self.config.lock_threshold_ratio,
                    "carried_debt": budget.carried_debt - from_debt,
                }
            )
            after = self._budget
        logger.info(
            "Restored %.2f of earlier debt: max_load=%.2f remaining=%.2f debt=%.2f",
            from_debt + restored, after.max_load, after.remaining, after.carried_debt,
        )
        return after

    @staticmethod
    def _apply_load(budget: DailyBudget, amount: float) -> DailyBudget:
        used = budget.used_load + amount
        overflow = max(0.0, used - budget.max_load)
        used = min(used, budget.max_load)
        return budget.model_copy(
            update={
                "used_load": used,
                "remaining": budget.max_load - used,
                "carried_debt": budget.carried_debt + overflow,
            }
        )
