"""All Pydantic data models for the decision core.

Defines the data contracts exchanged with the storage collaborator (task,
session and history records) and the values the core hands back (decisions,
costs, quality snapshots, playlists). Every value here is plain and
serializable; behaviour lives in the owning components.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps from storage are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EnergyLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EnergyStability(str, enum.Enum):
    STABLE = "stable"
    VOLATILE = "volatile"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Effort(str, enum.Enum):
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


class TaskOrigin(str, enum.Enum):
    IMPOSED = "imposed"
    SELF_CHOSEN = "self_chosen"


class TimeOfDay(str, enum.Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class CostType(str, enum.Enum):
    TIME = "TIME"
    ENERGY = "ENERGY"
    FOCUS = "FOCUS"


class WarningLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return {"LOW": 0, "MEDIUM": 1, "HIGH": 2}[self.value]


class DecisionMode(str, enum.Enum):
    STRICT = "STRICT"
    ASSISTED = "ASSISTED"
    EMERGENCY = "EMERGENCY"


class BurnoutSignal(str, enum.Enum):
    CHRONIC_OVERLOAD = "chronic_overload"
    SLEEP_DEBT = "sleep_debt"
    CONSTANT_OVERRIDES = "constant_overrides"
    ZERO_COMPLETION = "zero_completion"
    ERRATIC_BEHAVIOR = "erratic_behavior"
    TASK_ACCUMULATION = "task_accumulation"


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    BLOCKED = "blocked"


class RejectionReason(str, enum.Enum):
    CAPACITY_LIMIT = "capacity_limit"
    BUDGET_LOCKED = "budget_locked"
    ENERGY_MISMATCH = "energy_mismatch"
    PROTECTIVE_MODE = "protective_mode"
    DEGRADED = "degraded"


class OverrideSource(str, enum.Enum):
    BRAIN = "BRAIN"
    COACH = "COACH"
    MANUAL = "MANUAL"


class CoachResponseType(str, enum.Enum):
    SUGGESTION = "SUGGESTION"
    WARNING = "WARNING"
    INFO = "INFO"
    INVALID_RESPONSE = "INVALID_RESPONSE"


# ---------------------------------------------------------------------------
# Storage records (read-only inputs)
# ---------------------------------------------------------------------------

class TaskRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    description: Optional[str] = None
    effort: Effort = Effort.MEDIUM
    priority: Priority = Priority.MEDIUM
    urgency: Priority = Priority.MEDIUM
    energy_required: Optional[EnergyLevel] = None
    duration_minutes: int = 30
    deadline: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    origin: TaskOrigin = TaskOrigin.SELF_CHOSEN
    estimated_load: Optional[float] = None  # derived from effort/duration when absent
    completed: bool = False
    created_at: datetime = Field(default_factory=_now)

    @field_validator("deadline", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SessionRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    planned_tasks: int = 0
    completed_tasks: int = 0
    state: SessionState = SessionState.COMPLETED
    started_at: datetime = Field(default_factory=_now)
    ended_at: Optional[datetime] = None
    overrides: int = 0

    @field_validator("started_at", "ended_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SleepRecord(BaseModel):
    day: date
    hours: float


class OverrideEvent(BaseModel):
    at: datetime
    task_id: Optional[str] = None

    @field_validator("at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class BehaviorHistory(BaseModel):
    """Everything the burnout detectors look at, supplied by storage."""
    sessions: list[SessionRecord] = Field(default_factory=list)
    sleep: list[SleepRecord] = Field(default_factory=list)
    overrides: list[OverrideEvent] = Field(default_factory=list)
    open_tasks: list[TaskRecord] = Field(default_factory=list)
    history_event_count: int = 0


# ---------------------------------------------------------------------------
# Budget and cost
# ---------------------------------------------------------------------------

class DailyBudget(BaseModel):
    """Task-load capacity for one planning cycle.

    Owned by BudgetEngine; every change produces a new instance.
    """
    model_config = ConfigDict(frozen=True)

    max_load: float
    used_load: float = 0.0
    remaining: float
    lock_threshold: float = 0.0
    carried_debt: float = 0.0  # overflow of committed overrides, charged to the next cycle

    @property
    def is_balanced(self) -> bool:
        return abs((self.used_load + self.remaining) - self.max_load) <= 1e-6

    @property
    def is_locked(self) -> bool:
        return self.remaining <= self.lock_threshold


class OverrideConsequences(BaseModel):
    model_config = ConfigDict(frozen=True)

    budget_reduction: float
    protection_disabled: bool
    warning_level: WarningLevel


class OverrideCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CostType
    total: float  # fraction of future budget, in (0, 1)
    explanation_required: bool
    consequences: OverrideConsequences
    multipliers: dict[str, float] = Field(default_factory=dict)
    degraded: bool = False


class ProtectiveModeState(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: bool = False
    signals: frozenset[BurnoutSignal] = frozenset()
    entered_at: Optional[datetime] = None
    min_duration: timedelta = timedelta(hours=24)
    last_activity_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_reason: Optional[str] = None

    @property
    def locked_until(self) -> Optional[datetime]:
        if not self.active or self.entered_at is None:
            return None
        return self.entered_at + self.min_duration


class EvaluationContext(BaseModel):
    budget: Optional[DailyBudget] = None
    protective: Optional[ProtectiveModeState] = None
    energy: EnergyLevel = EnergyLevel.MEDIUM
    stability: EnergyStability = EnergyStability.STABLE
    time_of_day: Optional[TimeOfDay] = None
    burnout_score: float = 0.0
    overrides_last_2h: int = 0
    now: datetime = Field(default_factory=_now)

    @field_validator("now")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def protective_active(self) -> bool:
        return bool(self.protective and self.protective.active)


class Allowed(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: Literal[True] = True
    task_id: str
    estimated_load: float
    reason: str = "Fits the remaining daily budget"


class RefusedWithCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: Literal[False] = False
    task_id: str
    estimated_load: float
    reason: RejectionReason
    cost: OverrideCost
    message: str = ""
    degraded: bool = False


EvaluationResult = Union[Allowed, RefusedWithCost]


# ---------------------------------------------------------------------------
# Decisions and versioning
# ---------------------------------------------------------------------------

class VersionStamp(BaseModel):
    model_config = ConfigDict(frozen=True)

    brain_version: str
    rules_hash: str
    decision_context_hash: str
    decision_timestamp: datetime


class ReproducibilityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    equal: bool
    mismatched: list[str] = Field(default_factory=list)
    message: str = ""


class DecisionInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    energy_state: EnergyLevel
    budget: Optional[DailyBudget] = None
    task_ids: list[str] = Field(default_factory=list)
    temporal_constraints: list[str] = Field(default_factory=list)
    behavior_history: dict[str, Any] = Field(default_factory=dict)
    protective_active: bool = False
    stability: EnergyStability = EnergyStability.STABLE
    mode: DecisionMode = DecisionMode.STRICT


class DecisionOutputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    allowed_task_ids: list[str] = Field(default_factory=list)
    rejected_task_ids: list[str] = Field(default_factory=list)
    max_tasks: int = 0
    budget_consumed: float = 0.0
    mode: DecisionMode = DecisionMode.STRICT


class DecisionExplanations(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str
    reason: str
    per_task: dict[str, str] = Field(default_factory=dict)


class BrainDecision(BaseModel):
    """One scheduling decision. Immutable once stamped."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    session_id: Optional[str] = None
    inputs: DecisionInputs
    outputs: DecisionOutputs
    explanations: DecisionExplanations
    stamp: VersionStamp
    created_by: Literal["SYSTEM", "USER_OVERRIDE"] = "SYSTEM"


# ---------------------------------------------------------------------------
# Overrides and coach
# ---------------------------------------------------------------------------

class ReversibleOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    task_id: str
    session_id: Optional[str] = None
    invariant_touched: str
    user_reason: Optional[str] = None
    estimated_cognitive_debt: float = 0.0
    committed_load: float = 0.0
    acknowledged: bool = False
    reversible: bool = True
    undo_window: timedelta = timedelta(hours=1)
    created_at: datetime = Field(default_factory=_now)
    undo_available_until: datetime
    succeeded: bool = True
    user_regretted: bool = False
    permanent: bool = False
    source: OverrideSource = OverrideSource.BRAIN


class CoachKillSwitch(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_active: bool = False
    disabled_until: Optional[datetime] = None
    last_toggle: Optional[datetime] = None
    toggle_count: int = 0
    reason_last_used: Optional[str] = None


class CoachRequest(BaseModel):
    prompt: str
    context: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None


class CoachResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CoachResponseType
    message: str
    priority: WarningLevel = WarningLevel.LOW
    can_be_disabled: bool = True
    timestamp: datetime = Field(default_factory=_now)


class AnnotatedDecision(BaseModel):
    """A decision plus optional advisory. The raw reason is always present."""
    model_config = ConfigDict(frozen=True)

    decision: BrainDecision
    raw_reason: str
    advisory: Optional[CoachResponse] = None


# ---------------------------------------------------------------------------
# Quality and adaptation
# ---------------------------------------------------------------------------

class SessionDecisionData(BaseModel):
    session_id: str = Field(default_factory=_new_id)
    total_tasks: int = 0
    forced_tasks: int = 0
    completed_tasks: int = 0
    estimated_completion: float = 0.0  # ratio 0..1
    actual_completion: float = 0.0  # ratio 0..1
    overrides: int = 0
    cognitive_debt: float = 0.0
    factor_outcomes: dict[str, float] = Field(default_factory=dict)


class DecisionQualityMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    forcing_rate: float
    completion_accuracy: float
    consistency_score: float
    override_impact: float
    overall_quality: float


class QualityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    recorded_at: datetime
    session_id: Optional[str] = None
    metrics: DecisionQualityMetrics

    @field_validator("recorded_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class QualityAlert(BaseModel):
    model_config = ConfigDict(frozen=True)

    average_quality: float
    window_days: int
    sample_size: int
    raised_at: datetime


class AdaptiveWeight(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: float
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class TimedAdaptation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    feature: str
    value: float
    created_at: datetime
    expires_at: datetime

    @field_validator("created_at", "expires_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class AdaptationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    feature: str
    accepted: bool
    reason: str
    previous_weight: Optional[float] = None
    new_weight: Optional[float] = None


# ---------------------------------------------------------------------------
# Playlist
# ---------------------------------------------------------------------------

class PlaylistFactors(BaseModel):
    model_config = ConfigDict(frozen=True)

    energy: float
    impact: float
    deadline: float


class PlaylistItem(BaseModel):
    """UI-facing projection, produced fresh each planning cycle."""
    model_config = ConfigDict(frozen=True)

    task_id: str
    score: float
    factors: PlaylistFactors
    is_high_impact: bool = False
    is_keystone_habit: bool = False
    fits_budget: bool = False
    reason: str = ""
