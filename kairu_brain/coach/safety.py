"""Coach safety layer around the optional advisory step.

Guarantees:
  - the raw decision and its reason are always displayable; advice is additive
  - the advisory call races a hard timeout and loses quietly (None)
  - a kill switch stops the advisor from being called at all
  - explanations are budgeted per session and per day
  - forced overrides stay reversible for an undo window, then become permanent
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from datetime import UTC, date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from kairu_brain.core.config import CoachConfig
from kairu_brain.core.exceptions import (
    AdvisoryError,
    AdvisoryTimeoutError,
    InvalidAdvisoryResponseError,
    OverrideError,
    OverrideNotFoundError,
    UndoWindowClosedError,
)
from kairu_brain.core.models import (
    AnnotatedDecision,
    BrainDecision,
    CoachKillSwitch,
    CoachRequest,
    CoachResponse,
    CoachResponseType,
    OverrideSource,
    ReversibleOverride,
)

logger = logging.getLogger("brain.coach.safety")

AdvisorResult = Union[CoachResponse, dict, None]
Advisor = Callable[[CoachRequest], Union[AdvisorResult, Awaitable[AdvisorResult]]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Kill switch
# ---------------------------------------------------------------------------

class CoachKillSwitchManager:
    """Sole owner of the kill switch. Expiry is a time comparison only."""

    def __init__(self, default_duration: timedelta = timedelta(hours=24)):
        self.default_duration = default_duration
        self._lock = threading.Lock()
        self._state = CoachKillSwitch()

    @property
    def state(self) -> CoachKillSwitch:
        return self._state

    def activate(
        self,
        duration: Optional[timedelta] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CoachKillSwitch:
        now = now or _utcnow()
        with self._lock:
            self._state = CoachKillSwitch(
                is_active=True,
                disabled_until=now + (duration or self.default_duration),
                last_toggle=now,
                toggle_count=self._state.toggle_count + 1,
                reason_last_used=reason,
            )
        logger.info(
            "Coach disabled until %s (%s)",
            self._state.disabled_until.isoformat(), reason or "no reason given",
        )
        return self._state

    def deactivate(self, now: Optional[datetime] = None) -> CoachKillSwitch:
        with self._lock:
            self._state = self._state.model_copy(
                update={
                    "is_active": False,
                    "disabled_until": None,
                    "last_toggle": now or _utcnow(),
                    "toggle_count": self._state.toggle_count + 1,
                }
            )
        logger.info("Coach re-enabled")
        return self._state

    def is_disabled(self, now: Optional[datetime] = None) -> bool:
        state = self._state
        if not state.is_active:
            return False
        if state.disabled_until is None:
            return True
        return (now or _utcnow()) <= state.disabled_until


# ---------------------------------------------------------------------------
# Explanation budget
# ---------------------------------------------------------------------------

class ExplanationBudget:
    """At most N explanations per session and M per calendar day."""

    def __init__(self, per_session: int = 3, per_day: int = 10):
        self.per_session = per_session
        self.per_day = per_day
        self._lock = threading.Lock()
        self._by_session: dict[str, int] = {}
        self._day: Optional[date] = None
        self._today = 0

    def _roll(self, now: datetime) -> None:
        if self._day != now.date():
            self._day = now.date()
            self._today = 0
            self._by_session.clear()

    def available(self, session_id: str, now: datetime) -> bool:
        with self._lock:
            self._roll(now)
            return self._today < self.per_day and self._by_session.get(session_id, 0) < self.per_session

    def try_consume(self, session_id: str, now: datetime) -> bool:
        with self._lock:
            self._roll(now)
            used = self._by_session.get(session_id, 0)
            if self._today >= self.per_day or used >= self.per_session:
                return False
            self._by_session[session_id] = used + 1
            self._today += 1
            return True

    def remaining(self, session_id: str, now: datetime) -> int:
        with self._lock:
            self._roll(now)
            return max(0, min(self.per_day - self._today, self.per_session - self._by_session.get(session_id, 0)))


# ---------------------------------------------------------------------------
# Safety layer
# ---------------------------------------------------------------------------

def _validate_response(result: Any) -> CoachResponse:
    if isinstance(result, CoachResponse):
        response = result
    elif isinstance(result, dict):
        try:
            response = CoachResponse.model_validate(result)
        except ValidationError as exc:
            raise InvalidAdvisoryResponseError(f"Malformed advisory response: {exc}") from exc
    else:
        raise InvalidAdvisoryResponseError(f"Unexpected advisory response type {type(result).__name__}")

    if response.type == CoachResponseType.INVALID_RESPONSE or not response.message.strip():
        raise InvalidAdvisoryResponseError("Advisor flagged its own response as invalid")
    return response


class CoachSafetyLayer:
    """Wraps an advisor with a hard timeout, a kill switch and a budget.

    Injected dependencies:
        config: Timeout and budget limits.
        kill_switch: Shared kill-switch owner (one per user).
    """

    def __init__(
        self,
        config: Optional[CoachConfig] = None,
        kill_switch: Optional[CoachKillSwitchManager] = None,
        budget: Optional[ExplanationBudget] = None,
    ):
        self.config = config or CoachConfig()
        self.kill_switch = kill_switch or CoachKillSwitchManager(
            timedelta(hours=self.config.default_kill_switch_hours)
        )
        self.budget = budget or ExplanationBudget(
            per_session=self.config.max_explanations_per_session,
            per_day=self.config.max_explanations_per_day,
        )

    def _timeout_ms(self, request: CoachRequest) -> int:
        if request.timeout_ms is None:
            return self.config.max_timeout_ms
        return max(0, min(request.timeout_ms, self.config.max_timeout_ms))

    async def _call(self, request: CoachRequest, advisor: Advisor) -> AdvisorResult:
        if inspect.iscoroutinefunction(advisor):
            return await advisor(request)
        result = await asyncio.to_thread(advisor, request)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _race(self, request: CoachRequest, advisor: Advisor) -> CoachResponse:
        timeout_ms = self._timeout_ms(request)
        try:
            result = await asyncio.wait_for(self._call(request, advisor), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise AdvisoryTimeoutError(timeout_ms) from exc
        return _validate_response(result)

    async def invoke(
        self,
        request: CoachRequest,
        advisor: Advisor,
        session_id: str = "default",
        now: Optional[datetime] = None,
    ) -> Optional[CoachResponse]:
        """Return the advisor's response, or None on any failure.

        Cancelling the caller cancels the advisory call; its result is
        never applied afterwards.
        """
        now = now or _utcnow()
        if self.kill_switch.is_disabled(now):
            logger.debug("Coach kill switch active; advisor not called")
            return None
        if not self.budget.available(session_id, now):
            logger.debug("Explanation budget exhausted for session %s", session_id)
            return None

        try:
            response = await self._race(request, advisor)
        except AdvisoryError as exc:
            logger.warning("Coach unavailable, falling back to raw decision: %s", exc)
            return None
        except asyncio.CancelledError:
            logger.debug("Advisory call cancelled by caller; result discarded")
            raise
        except Exception as exc:
            logger.warning("Advisor raised %s, falling back to raw decision: %s", type(exc).__name__, exc)
            return None

        if not self.budget.try_consume(session_id, now):
            logger.debug("Explanation budget exhausted while waiting; advisory dropped")
            return None
        return response

    async def annotate(
        self,
        decision: BrainDecision,
        advisor: Optional[Advisor],
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AnnotatedDecision:
        """Attach optional advice. The raw reason is always kept."""
        advisory = None
        if advisor is not None:
            request = CoachRequest(
                prompt=decision.explanations.summary,
                context={
                    "decision_id": decision.id,
                    "reason": decision.explanations.reason,
                    "allowed": decision.outputs.allowed_task_ids,
                    "rejected": decision.outputs.rejected_task_ids,
                },
            )
            advisory = await self.invoke(
                request, advisor, session_id=session_id or decision.session_id or "default", now=now,
            )
        return AnnotatedDecision(
            decision=decision,
            raw_reason=decision.explanations.reason,
            advisory=advisory,
        )


# ---------------------------------------------------------------------------
# Reversible overrides
# ---------------------------------------------------------------------------

class ReversibleOverrideManager:
    """Tracks forced decisions through their undo window."""

    def __init__(self, undo_window: timedelta = timedelta(hours=1)):
        self.undo_window = undo_window
        self._lock = threading.Lock()
        self._overrides: dict[str, ReversibleOverride] = {}

    def create(
        self,
        task_id: str,
        invariant_touched: str,
        now: datetime,
        committed_load: float = 0.0,
        estimated_cognitive_debt: float = 0.0,
        session_id: Optional[str] = None,
        user_reason: Optional[str] = None,
        acknowledged: bool = True,
        source: OverrideSource = OverrideSource.BRAIN,
    ) -> ReversibleOverride:
        override = ReversibleOverride(
            task_id=task_id,
            session_id=session_id,
            invariant_touched=invariant_touched,
            user_reason=user_reason,
            estimated_cognitive_debt=estimated_cognitive_debt,
            committed_load=committed_load,
            acknowledged=acknowledged,
            undo_window=self.undo_window,
            created_at=now,
            undo_available_until=now + self.undo_window,
            source=source,
        )
        with self._lock:
            self._overrides[override.id] = override
        logger.info(
            "Override %s on task %s (%s), undo until %s",
            override.id, task_id, invariant_touched, override.undo_available_until.isoformat(),
        )
        return override

    def get(self, override_id: str) -> ReversibleOverride:
        with self._lock:
            override = self._overrides.get(override_id)
        if override is None:
            raise OverrideNotFoundError(override_id)
        return override

    def can_undo(self, override_id: str, now: datetime) -> bool:
        with self._lock:
            override = self._overrides.get(override_id)
        return (
            override is not None
            and not override.permanent
            and not override.user_regretted
            and now <= override.undo_available_until
        )

    def undo(self, override_id: str, now: datetime) -> ReversibleOverride:
        """Flip the override to regretted (no-cost outcome) within the window."""
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None:
                raise OverrideNotFoundError(override_id)
            if override.permanent or now > override.undo_available_until:
                raise UndoWindowClosedError(override_id)
            if override.user_regretted:
                raise OverrideError(f"Override '{override_id}' was already undone")
            override = override.model_copy(update={"user_regretted": True, "succeeded": False})
            self._overrides[override_id] = override
        logger.info("Override %s undone; %.2f load to refund", override_id, override.committed_load)
        return override

    def finalize_expired(self, now: datetime) -> list[ReversibleOverride]:
        """Mark every override past its window as permanent."""
        finalized: list[ReversibleOverride] = []
        with self._lock:
            for override_id, override in list(self._overrides.items()):
                if not override.permanent and now > override.undo_available_until:
                    override = override.model_copy(update={"permanent": True, "reversible": False})
                    self._overrides[override_id] = override
                    finalized.append(override)
        if finalized:
            logger.debug("%d override(s) became permanent", len(finalized))
        return finalized

    def prune(self, now: datetime, retention: timedelta) -> list[str]:
        """Forget settled overrides whose window closed more than ``retention`` ago.

        Settled means permanent or undone. Returns the removed ids.
        """
        cutoff = now - retention
        with self._lock:
            removed = [
                override_id
                for override_id, override in self._overrides.items()
                if (override.permanent or override.user_regretted) and override.undo_available_until < cutoff
            ]
            for override_id in removed:
                del self._overrides[override_id]
        if removed:
            logger.debug("%d settled override(s) pruned", len(removed))
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._overrides)

    def active(self, now: datetime) -> list[ReversibleOverride]:
        with self._lock:
            return [o for o in self._overrides.values() if not o.permanent and now <= o.undo_available_until]
