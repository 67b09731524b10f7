"""Safety layer around the optional coach advisory."""

from kairu_brain.coach.safety import (
    CoachKillSwitchManager,
    CoachSafetyLayer,
    ExplanationBudget,
    ReversibleOverrideManager,
)

__all__ = [
    "CoachKillSwitchManager",
    "CoachSafetyLayer",
    "ExplanationBudget",
    "ReversibleOverrideManager",
]
