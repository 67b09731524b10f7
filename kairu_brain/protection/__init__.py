"""Burnout signals and the protective-mode state machine."""

from kairu_brain.protection.detector import ModeTransition, ProtectiveModeDetector, task_allowed_in_protective_mode
from kairu_brain.protection.signals import burnout_score, detect_signals, run_signal_checks

__all__ = [
    "ModeTransition",
    "ProtectiveModeDetector",
    "burnout_score",
    "detect_signals",
    "run_signal_checks",
    "task_allowed_in_protective_mode",
]
