"""Adaptive weights behind an overfitting guard.

Two gates protect every adaptation:
1. Evidence: observations must span at least ``min_observation_days`` of
   calendar time (sample count alone is not enough)
2. Stability: the sample standard deviation must stay under ``max_std_dev``

Accepted adaptations expire after ``adaptation_ttl_days`` and the weight
falls back to its default until new evidence supports it again. Decay is
applied only by ``tick(now)`` and just before an update, never on read.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Optional

import numpy as np

from kairu_brain.core.config import AdaptationConfig
from kairu_brain.core.models import AdaptationOutcome, AdaptiveWeight, TimedAdaptation, as_utc

logger = logging.getLogger("brain.adaptation.guard")


class ObservationWindow:
    """Bounded, timestamped samples for one feature."""

    def __init__(self, max_samples: int = 1000):
        self._samples: deque[tuple[datetime, float]] = deque(maxlen=max_samples)

    def add(self, value: float, at: datetime) -> None:
        self._samples.append((as_utc(at), float(value)))

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def values(self) -> list[float]:
        return [v for _, v in self._samples]

    @property
    def span(self) -> timedelta:
        if len(self._samples) < 2:
            return timedelta(0)
        times = [t for t, _ in self._samples]
        return max(times) - min(times)

    def std(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        return float(np.std(self.values, ddof=1))

    def mean(self) -> float:
        if not self._samples:
            return 0.0
        return float(np.mean(self.values))


def check_adaptation_allowed(window: ObservationWindow, config: AdaptationConfig) -> tuple[bool, str]:
    """Apply both gates. Returns (allowed, reason)."""
    if len(window) < config.min_samples:
        return False, f"insufficient samples ({len(window)} < {config.min_samples})"
    span_days = window.span.total_seconds() / 86400
    if span_days < config.min_observation_days:
        return False, f"observation window too short ({span_days:.1f}d < {config.min_observation_days:g}d)"
    std = window.std()
    if std > config.max_std_dev:
        return False, f"variance too high (std {std:.3f} > {config.max_std_dev})"
    return True, "ok"


def is_adaptation_allowed(window: ObservationWindow, config: Optional[AdaptationConfig] = None) -> bool:
    allowed, _ = check_adaptation_allowed(window, config or AdaptationConfig())
    return allowed


class AdaptiveWeights:
    """Named weights with exponential forgetting.

    Only holds adapted values; a feature without an entry reads as its
    default.
    """

    def __init__(self, config: Optional[AdaptationConfig] = None):
        self.config = config or AdaptationConfig()
        self._weights: dict[str, AdaptiveWeight] = {}

    def get(self, feature: str, default: float) -> float:
        weight = self._weights.get(feature)
        return default if weight is None else weight.value

    def has(self, feature: str) -> bool:
        return feature in self._weights

    def snapshot(self) -> dict[str, AdaptiveWeight]:
        return dict(self._weights)

    def _decayed(self, weight: AdaptiveWeight, now: datetime) -> AdaptiveWeight:
        days = (now - weight.updated_at).total_seconds() / 86400
        if days <= 0:
            return weight
        return weight.model_copy(
            update={"value": weight.value * self.config.forgetting_factor ** days, "updated_at": now}
        )

    def tick(self, now: datetime) -> None:
        """Apply forgetting up to ``now`` for every weight."""
        self._weights = {name: self._decayed(w, now) for name, w in self._weights.items()}

    def update(self, feature: str, observed: float, now: datetime, default: float) -> float:
        """Forget, then smooth toward the observation. Returns the new value."""
        current = self._weights.get(feature)
        old = default if current is None else self._decayed(current, now).value
        new = old * self.config.smoothing_old + observed * self.config.smoothing_new
        self._weights[feature] = AdaptiveWeight(name=feature, value=new, updated_at=now)
        return new

    def reset(self, feature: str) -> None:
        self._weights.pop(feature, None)


class OverfittingGuard:
    """Sole owner of the adaptive weight map.

    Collects observations per feature and only lets a proposed change
    through when the observation window passes both gates.
    """

    def __init__(self, config: Optional[AdaptationConfig] = None, defaults: Optional[dict[str, float]] = None):
        self.config = config or AdaptationConfig()
        self.defaults: dict[str, float] = dict(defaults or {})
        self._lock = threading.Lock()
        self._windows: dict[str, ObservationWindow] = {}
        self._weights = AdaptiveWeights(self.config)
        self._adaptations: dict[str, TimedAdaptation] = {}

    def register(self, feature: str, default: float) -> None:
        with self._lock:
            self.defaults[feature] = default

    def observe(self, feature: str, value: float, at: datetime) -> None:
        with self._lock:
            window = self._windows.get(feature)
            if window is None:
                window = self._windows[feature] = ObservationWindow(self.config.max_window_samples)
            window.add(value, at)

    def window(self, feature: str) -> ObservationWindow:
        with self._lock:
            return self._windows.get(feature) or ObservationWindow(self.config.max_window_samples)

    def is_adaptation_allowed(self, feature: str) -> bool:
        return is_adaptation_allowed(self.window(feature), self.config)

    def propose(self, feature: str, observed: float, now: datetime) -> AdaptationOutcome:
        """Try to move a weight toward ``observed``.

        A rejected proposal is dropped whole, never partially applied.
        """
        now = as_utc(now)
        with self._lock:
            window = self._windows.get(feature) or ObservationWindow(self.config.max_window_samples)
            allowed, reason = check_adaptation_allowed(window, self.config)
            default = self.defaults.get(feature, 0.0)
            previous = self._weights.get(feature, default)
            if not allowed:
                logger.info("Adaptation of '%s' rejected: %s", feature, reason)
                return AdaptationOutcome(
                    feature=feature, accepted=False, reason=reason, previous_weight=previous,
                )

            new = self._weights.update(feature, observed, now, default)
            self._adaptations[feature] = TimedAdaptation(
                feature=feature,
                value=new,
                created_at=now,
                expires_at=now + timedelta(days=self.config.adaptation_ttl_days),
            )

        logger.info("Adaptation of '%s' accepted: %.4f -> %.4f", feature, previous, new)
        return AdaptationOutcome(
            feature=feature, accepted=True, reason=reason, previous_weight=previous, new_weight=new,
        )

    def weight(self, feature: str, default: Optional[float] = None) -> float:
        with self._lock:
            fallback = self.defaults.get(feature, 0.0) if default is None else default
            return self._weights.get(feature, fallback)

    def weights(self, defaults: Optional[dict[str, float]] = None) -> dict[str, float]:
        """Current value of each named feature (registered defaults when omitted)."""
        with self._lock:
            names = dict(self.defaults if defaults is None else defaults)
            return {name: self._weights.get(name, value) for name, value in names.items()}

    def valid_adaptations(self, now: datetime) -> list[TimedAdaptation]:
        now = as_utc(now)
        with self._lock:
            return [a for a in self._adaptations.values() if a.expires_at > now]

    def tick(self, now: datetime) -> list[str]:
        """Decay all weights, then purge expired adaptations. Returns purged features."""
        now = as_utc(now)
        with self._lock:
            self._weights.tick(now)
            expired = [f for f, a in self._adaptations.items() if a.expires_at <= now]
            for feature in expired:
                del self._adaptations[feature]
                self._weights.reset(feature)
        for feature in expired:
            logger.info("Adaptation of '%s' expired; reverted to default", feature)
        return expired
