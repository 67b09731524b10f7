"""Custom exception hierarchy for the decision core.

All exceptions inherit from BrainError so callers can catch broadly
or narrowly as needed. Most of them never reach the user: the budget
engine and the coach layer convert them into safe fallbacks.
"""


class BrainError(Exception):
    """Base exception for all decision-core errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(BrainError):
    """Invalid or missing configuration."""


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class BudgetError(BrainError):
    """Invalid budget operation (commit, refund)."""


class MalformedContextError(BudgetError):
    """Evaluation context is missing or inconsistent.

    Raised internally by context validation; ``BudgetEngine.evaluate``
    turns it into a DEGRADED refusal instead of propagating it.
    """

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Malformed evaluation context: " + "; ".join(problems))


# ---------------------------------------------------------------------------
# Advisory (coach)
# ---------------------------------------------------------------------------

class AdvisoryError(BrainError):
    """Advisory call failed."""


class AdvisoryTimeoutError(AdvisoryError):
    """Advisory call did not answer within the hard timeout."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Advisory call exceeded {timeout_ms}ms")


class InvalidAdvisoryResponseError(AdvisoryError):
    """Advisory call returned something that is not a valid coach response."""


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------

class OverrideError(BrainError):
    """Reversible override operation failed."""


class OverrideNotFoundError(OverrideError):
    """No override with the given id."""

    def __init__(self, override_id: str):
        self.override_id = override_id
        super().__init__(f"Unknown override '{override_id}'")


class UndoWindowClosedError(OverrideError):
    """The undo window of an override has closed; it is permanent now."""

    def __init__(self, override_id: str):
        self.override_id = override_id
        super().__init__(f"Override '{override_id}' is permanent; undo window closed")


# ---------------------------------------------------------------------------
# Protective mode
# ---------------------------------------------------------------------------

class ProtectiveModeError(BrainError):
    """Invalid protective-mode operation."""
