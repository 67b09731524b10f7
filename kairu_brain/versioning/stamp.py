"""Decision stamps for audit and replay.

Each decision carries {brain_version, rules_hash, decision_context_hash,
decision_timestamp}. The hashes are FNV-1a 32-bit fingerprints of a
canonical, order-normalised JSON rendering: fast and collision-tolerant,
meant for diffing decisions, not for security or content addressing.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union

from pydantic import BaseModel

from kairu_brain.core.models import BrainDecision, ReproducibilityReport, VersionStamp

logger = logging.getLogger("brain.versioning.stamp")

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193

_STAMP_FIELDS = ("brain_version", "rules_hash", "decision_context_hash")


def _normalise(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return _normalise(obj.model_dump(mode="json"))
    if isinstance(obj, enum.Enum):
        return _normalise(obj.value)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, dict):
        return {str(k): _normalise(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = [_normalise(v) for v in obj]
        return sorted(items, key=_dump)
    if isinstance(obj, float) and obj.is_integer():
        return int(obj)
    return obj


def _dump(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, sorted sequences, ISO datetimes, enum values."""
    return _dump(_normalise(obj))


def fnv1a32(data: bytes) -> int:
    h = _FNV_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def fingerprint(obj: Any) -> str:
    """Non-cryptographic digest, e.g. ``fnv1a32_1c2b3a4d``."""
    return f"fnv1a32_{fnv1a32(canonical_json(obj).encode('utf-8')):08x}"


def stamp(rules: Any, context: Any, now: datetime, brain_version: str) -> VersionStamp:
    return VersionStamp(
        brain_version=brain_version,
        rules_hash=fingerprint(rules),
        decision_context_hash=fingerprint(context),
        decision_timestamp=now,
    )


def _as_stamp(value: Union[VersionStamp, BrainDecision]) -> VersionStamp:
    return value.stamp if isinstance(value, BrainDecision) else value


def mismatched_fields(
    a: Union[VersionStamp, BrainDecision],
    b: Union[VersionStamp, BrainDecision],
) -> list[str]:
    sa, sb = _as_stamp(a), _as_stamp(b)
    return [name for name in _STAMP_FIELDS if getattr(sa, name) != getattr(sb, name)]


def is_reproducible_equal(
    a: Union[VersionStamp, BrainDecision],
    b: Union[VersionStamp, BrainDecision],
) -> bool:
    """Version, rules hash and context hash all match. Timestamps are ignored."""
    return not mismatched_fields(a, b)


class DecisionReproducibilityRegistry:
    """In-memory index of stamped decisions for later comparison.

    Holds at most ``max_entries`` decisions once pruned; the oldest
    recorded go first.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._decisions: dict[str, BrainDecision] = {}

    def record(self, decision: BrainDecision) -> None:
        with self._lock:
            self._decisions[decision.id] = decision

    def get(self, decision_id: str) -> Optional[BrainDecision]:
        with self._lock:
            return self._decisions.get(decision_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._decisions)

    def prune(self) -> int:
        """Drop the oldest decisions beyond ``max_entries``. Returns how many."""
        if self.max_entries is None:
            return 0
        with self._lock:
            excess = len(self._decisions) - self.max_entries
            if excess <= 0:
                return 0
            for decision_id in list(self._decisions)[:excess]:
                del self._decisions[decision_id]
        logger.debug("Registry pruned %d decision(s)", excess)
        return excess

    def compare(
        self,
        decision_id: str,
        candidate: Union[VersionStamp, BrainDecision],
    ) -> ReproducibilityReport:
        """Would the same inputs today produce the same decision?

        Mismatches are informational: logged, never raised.
        """
        original = self.get(decision_id)
        if original is None:
            return ReproducibilityReport(
                equal=False, mismatched=["decision_id"], message=f"Unknown decision {decision_id}",
            )

        mismatched = mismatched_fields(original, candidate)
        if mismatched:
            logger.info("Decision %s not reproducible: %s differ", decision_id, ", ".join(mismatched))
            return ReproducibilityReport(
                equal=False,
                mismatched=mismatched,
                message=f"Differs in {', '.join(mismatched)}",
            )
        return ReproducibilityReport(equal=True, message="Reproducible")

    def by_version(self, brain_version: str) -> list[BrainDecision]:
        with self._lock:
            return [d for d in self._decisions.values() if d.stamp.brain_version == brain_version]
