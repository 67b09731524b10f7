"""The Brain: one owner per piece of shared state, wired together.

Data flow:
  evaluate -> budget engine (consults protective state and budget)
  session outcome -> quality monitor -> overfitting guard -> weights
  weights -> budget capacity and playlist factors
  decide -> versioning stamp -> optional coach annotation
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Sequence

from kairu_brain.adaptation.guard import OverfittingGuard
from kairu_brain.budget.engine import BudgetEngine
from kairu_brain.budget.policy import SessionPlan, decide_session
from kairu_brain.coach.safety import Advisor, CoachSafetyLayer, ReversibleOverrideManager
from kairu_brain.core.config import BrainConfig, load_config
from kairu_brain.core.exceptions import BudgetError
from kairu_brain.core.models import (
    AnnotatedDecision,
    BehaviorHistory,
    BrainDecision,
    DailyBudget,
    DecisionExplanations,
    DecisionInputs,
    DecisionMode,
    DecisionOutputs,
    DecisionQualityMetrics,
    EnergyLevel,
    EnergyStability,
    EvaluationContext,
    EvaluationResult,
    OverrideSource,
    PlaylistItem,
    ProtectiveModeState,
    RefusedWithCost,
    ReproducibilityReport,
    ReversibleOverride,
    SessionDecisionData,
    TaskRecord,
    TimeOfDay,
    as_utc,
)
from kairu_brain.orchestrator.records import RecordSink
from kairu_brain.playlist.generator import FACTORS, PlaylistGenerator
from kairu_brain.protection.detector import ProtectiveModeDetector
from kairu_brain.protection.signals import burnout_score, detect_signals
from kairu_brain.quality.monitor import DecisionQualityTracker, calculate_decision_quality
from kairu_brain.versioning.stamp import DecisionReproducibilityRegistry, stamp

logger = logging.getLogger("brain.orchestrator.brain")

CAPACITY_BIAS = "budget.capacity_bias"
_RECENT_OVERRIDE_WINDOW = timedelta(hours=2)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Brain:
    """Facade over the decision core.

    Each component is the single writer of its state: the engine owns the
    budget, the detector owns protective state, the guard owns the weights,
    the kill-switch manager owns the kill switch.
    """

    def __init__(self, config: Optional[BrainConfig] = None, sink: Optional[RecordSink] = None):
        self.config = config or BrainConfig()
        self.sink = sink
        self.guard = OverfittingGuard(self.config.adaptation, defaults={CAPACITY_BIAS: 0.0})
        self.engine = BudgetEngine(self.config.budget)
        self.detector = ProtectiveModeDetector(self.config.protective)
        self.tracker = DecisionQualityTracker(self.config.quality)
        self.registry = DecisionReproducibilityRegistry(self.config.versioning.max_registry_entries)
        self.coach = CoachSafetyLayer(self.config.coach)
        self.overrides = ReversibleOverrideManager(
            undo_window=timedelta(minutes=self.config.coach.undo_window_minutes)
        )
        self.playlist = PlaylistGenerator(self.config.playlist, guard=self.guard)
        self._override_times: list[datetime] = []
        # override id -> (budget cycle it was committed on, debt it carried over)
        self._override_debt: dict[str, tuple[int, float]] = {}
        self._burnout_score = 0.0

    @classmethod
    def from_config_dir(cls, config_dir: Optional[Path] = None, env: Optional[str] = None) -> Brain:
        return cls(load_config(config_dir=config_dir, env=env))

    def _emit(self, record_type: str, record) -> None:
        if self.sink is not None:
            self.sink.emit(record_type, record)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def budget(self) -> DailyBudget:
        return self.engine.budget

    @property
    def protective_state(self) -> ProtectiveModeState:
        return self.detector.state

    def observe_history(self, history: BehaviorHistory, now: Optional[datetime] = None) -> ProtectiveModeState:
        """Run the burnout checks and feed the protective-mode detector."""
        now = as_utc(now) or _utcnow()
        signals = detect_signals(history, now)
        self._burnout_score = burnout_score(signals)
        return self.detector.observe(signals, now)

    def context(
        self,
        now: Optional[datetime] = None,
        energy: EnergyLevel = EnergyLevel.MEDIUM,
        stability: EnergyStability = EnergyStability.STABLE,
        time_of_day: Optional[TimeOfDay] = None,
    ) -> EvaluationContext:
        now = as_utc(now) or _utcnow()
        recent = sum(1 for at in self._override_times if now - at <= _RECENT_OVERRIDE_WINDOW)
        return self.engine.context(
            protective=self.detector.state,
            energy=energy,
            stability=stability,
            time_of_day=time_of_day,
            burnout_score=self._burnout_score,
            overrides_last_2h=recent,
            now=now,
        )

    # ------------------------------------------------------------------
    # Single-task requests
    # ------------------------------------------------------------------

    def evaluate(
        self,
        task: TaskRecord,
        now: Optional[datetime] = None,
        energy: EnergyLevel = EnergyLevel.MEDIUM,
        stability: EnergyStability = EnergyStability.STABLE,
        time_of_day: Optional[TimeOfDay] = None,
    ) -> EvaluationResult:
        now = as_utc(now) or _utcnow()
        self.detector.record_activity(now)
        return self.engine.evaluate(task, self.context(now, energy, stability, time_of_day))

    def commit(self, evaluation: EvaluationResult) -> float:
        return self.engine.commit(evaluation)

    def commit_override(
        self,
        evaluation: EvaluationResult,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
        user_reason: Optional[str] = None,
        source: OverrideSource = OverrideSource.BRAIN,
    ) -> ReversibleOverride:
        """Force a refused task through, at its stated cost."""
        if not isinstance(evaluation, RefusedWithCost):
            raise BudgetError(f"Task {evaluation.task_id} was allowed; there is nothing to override")
        now = as_utc(now) or _utcnow()
        debt_before = self.engine.budget.carried_debt
        amount = self.engine.commit(evaluation)
        debt = self.engine.budget.carried_debt - debt_before
        override = self.overrides.create(
            task_id=evaluation.task_id,
            invariant_touched=evaluation.reason.value,
            now=now,
            committed_load=amount,
            estimated_cognitive_debt=evaluation.cost.consequences.budget_reduction,
            session_id=session_id,
            user_reason=user_reason,
            source=source,
        )
        self._override_times.append(now)
        self._override_debt[override.id] = (self.engine.cycle, debt)
        self._emit("override", override)
        return override

    def undo_override(self, override_id: str, now: Optional[datetime] = None) -> ReversibleOverride:
        """Regret an override inside its window; its load is refunded.

        After a day rollover only the debt it carried into today comes back;
        the load it used on the earlier day went with that day.
        """
        override = self.overrides.undo(override_id, as_utc(now) or _utcnow())
        cycle, debt = self._override_debt.pop(override_id, (self.engine.cycle, 0.0))
        if cycle == self.engine.cycle:
            self.engine.refund(override.committed_load)
        else:
            self.engine.restore_capacity(debt)
        self._emit("override", override)
        return override

    # ------------------------------------------------------------------
    # Session decisions
    # ------------------------------------------------------------------

    def rules(self, mode: DecisionMode) -> dict[str, Any]:
        """The rule set a decision depends on, for the rules hash."""
        return {
            "budget": self.config.budget.model_dump(),
            "protective": self.config.protective.model_dump(),
            "policy": mode.value,
        }

    def _build_decision(
        self,
        tasks: Sequence[TaskRecord],
        plan: SessionPlan,
        inputs: DecisionInputs,
        now: datetime,
        session_id: Optional[str],
    ) -> BrainDecision:
        context_digest = {"inputs": inputs, "tasks": list(tasks)}
        allowed_ids = [t.id for t in plan.allowed]
        return BrainDecision(
            session_id=session_id,
            inputs=inputs,
            outputs=DecisionOutputs(
                allowed=bool(allowed_ids),
                allowed_task_ids=allowed_ids,
                rejected_task_ids=list(plan.rejected),
                max_tasks=plan.max_tasks,
                budget_consumed=plan.budget_consumed,
                mode=plan.mode,
            ),
            explanations=DecisionExplanations(
                summary=plan.summary,
                reason=plan.reason,
                per_task=plan.per_task_reasons(),
            ),
            stamp=stamp(self.rules(plan.mode), context_digest, now, self.config.versioning.brain_version),
        )

    def decide(
        self,
        tasks: Sequence[TaskRecord],
        now: Optional[datetime] = None,
        energy: EnergyLevel = EnergyLevel.MEDIUM,
        mode: DecisionMode = DecisionMode.STRICT,
        stability: EnergyStability = EnergyStability.STABLE,
        session_id: Optional[str] = None,
        temporal_constraints: Optional[list[str]] = None,
        behavior_history: Optional[dict[str, Any]] = None,
    ) -> BrainDecision:
        """Decide which of the tasks a session may hold, stamped for replay."""
        now = as_utc(now) or _utcnow()
        self.detector.record_activity(now)
        context = self.context(now, energy, stability)
        plan = decide_session(list(tasks), context, mode, self.config.protective.max_tasks_per_session)
        inputs = DecisionInputs(
            energy_state=energy,
            budget=context.budget,
            task_ids=[t.id for t in tasks],
            temporal_constraints=temporal_constraints or [],
            behavior_history=behavior_history or {},
            protective_active=context.protective_active,
            stability=stability,
            mode=mode,
        )
        decision = self._build_decision(tasks, plan, inputs, now, session_id)
        self.registry.record(decision)
        self._emit("decision", decision)
        logger.info(
            "Decision %s (%s): %d allowed, %d rejected",
            decision.id, mode.value,
            len(decision.outputs.allowed_task_ids), len(decision.outputs.rejected_task_ids),
        )
        return decision

    def replay(
        self,
        decision_id: str,
        tasks: Sequence[TaskRecord],
        now: Optional[datetime] = None,
    ) -> ReproducibilityReport:
        """Re-run a recorded decision from its stored inputs and compare."""
        original = self.registry.get(decision_id)
        if original is None:
            return ReproducibilityReport(
                equal=False, mismatched=["decision_id"], message=f"Unknown decision {decision_id}",
            )

        inputs = original.inputs
        protective = ProtectiveModeState(
            active=inputs.protective_active,
            entered_at=original.stamp.decision_timestamp if inputs.protective_active else None,
        )
        context = EvaluationContext(
            budget=inputs.budget,
            protective=protective,
            energy=inputs.energy_state,
            stability=inputs.stability,
            now=original.stamp.decision_timestamp,
        )
        plan = decide_session(list(tasks), context, inputs.mode, self.config.protective.max_tasks_per_session)
        replayed = self._build_decision(tasks, plan, inputs, as_utc(now) or _utcnow(), original.session_id)

        report = self.registry.compare(decision_id, replayed)
        if report.equal and replayed.outputs.allowed_task_ids != original.outputs.allowed_task_ids:
            logger.info("Decision %s replayed with different outputs", decision_id)
            return ReproducibilityReport(equal=False, mismatched=["outputs"], message="Differs in outputs")
        return report

    async def annotate(
        self,
        decision: BrainDecision,
        advisor: Optional[Advisor],
        now: Optional[datetime] = None,
    ) -> AnnotatedDecision:
        """Optional advice on a decision; skipped while protective mode is on."""
        if self.detector.is_active:
            advisor = None
        return await self.coach.annotate(decision, advisor, session_id=decision.session_id, now=now)

    def generate_playlist(
        self,
        tasks: Sequence[TaskRecord],
        energy: EnergyLevel,
        now: Optional[datetime] = None,
    ) -> list[PlaylistItem]:
        return self.playlist.generate(tasks, self.engine.budget, energy, now=now)

    # ------------------------------------------------------------------
    # Feedback and lifecycle
    # ------------------------------------------------------------------

    def record_session(
        self,
        data: SessionDecisionData,
        now: Optional[datetime] = None,
    ) -> DecisionQualityMetrics:
        """Score a finished session and feed the outcome to the guard."""
        now = as_utc(now) or _utcnow()
        metrics = calculate_decision_quality(data)
        self.tracker.record(metrics, now, session_id=data.session_id)
        self._emit("quality", metrics)

        limit = self.config.budget.max_capacity_adjustment
        calibration = max(-limit, min(limit, data.actual_completion - data.estimated_completion))
        self.guard.observe(CAPACITY_BIAS, calibration, now)
        self.guard.propose(CAPACITY_BIAS, calibration, now)

        for name, value in data.factor_outcomes.items():
            if name not in FACTORS:
                logger.debug("Ignoring unknown factor outcome '%s'", name)
                continue
            feature = f"playlist.{name}"
            self.guard.observe(feature, value, now)
            self.guard.propose(feature, value, now)
        return metrics

    def start_new_day(self, max_load: Optional[float] = None) -> DailyBudget:
        return self.engine.start_new_day(max_load=max_load, capacity_bias=self.guard.weight(CAPACITY_BIAS))

    def run_maintenance(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Periodic upkeep: decay and expiry, mode windows, override finality, pruning.

        Only prunes or decays shared state; stamped decisions are never modified.
        """
        now = as_utc(now) or _utcnow()
        expired = self.guard.tick(now)
        was_active = self.detector.is_active
        self.detector.tick(now)
        finalized = self.overrides.finalize_expired(now)
        for override in finalized:
            self._override_debt.pop(override.id, None)
        forgotten = self.overrides.prune(now, timedelta(days=self.config.coach.override_retention_days))
        pruned = self.tracker.prune(now)
        decisions_pruned = self.registry.prune()
        self._override_times = [at for at in self._override_times if now - at <= _RECENT_OVERRIDE_WINDOW]
        summary = {
            "adaptations_expired": len(expired),
            "protective_exited": int(was_active and not self.detector.is_active),
            "overrides_finalized": len(finalized),
            "overrides_pruned": len(forgotten),
            "quality_records_pruned": pruned,
            "decisions_pruned": decisions_pruned,
        }
        logger.debug("Maintenance at %s: %s", now.isoformat(), summary)
        return summary
