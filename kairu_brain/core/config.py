"""Configuration loader for the decision core.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from kairu_brain.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class BudgetConfig(BaseModel):
    default_max_load: float = 10.0
    lock_threshold_ratio: float = 0.2
    base_override_cost: float = 0.2
    min_override_cost: float = 0.01
    max_override_cost: float = 0.95
    protective_cost_floor: float = 0.5
    degraded_override_cost: float = 0.9
    medium_warning_above: float = 0.3
    high_warning_above: float = 0.5
    long_task_minutes: int = 60
    max_capacity_adjustment: float = 0.3


class ProtectiveModeConfig(BaseModel):
    min_signals: int = 2
    min_duration_hours: float = 24.0
    idle_exit_hours: float = 24.0
    max_duration_hours: float = 48.0
    max_tasks_per_session: int = 2
    session_duration_limit_minutes: int = 45

    @model_validator(mode="after")
    def _validate_durations(self) -> "ProtectiveModeConfig":
        if self.min_duration_hours < 24:
            raise ValueError("min_duration_hours must be at least 24")
        if self.max_duration_hours < self.min_duration_hours:
            raise ValueError("max_duration_hours must not be shorter than min_duration_hours")
        if self.idle_exit_hours < 0:
            raise ValueError("idle_exit_hours must be non-negative")
        return self


class QualityConfig(BaseModel):
    history_days: int = 30
    alert_window_days: int = 7
    alert_threshold: float = 0.5


class AdaptationConfig(BaseModel):
    min_observation_days: float = 30.0
    min_samples: int = 2
    max_std_dev: float = 0.3
    adaptation_ttl_days: float = 60.0
    forgetting_factor: float = 0.95
    smoothing_old: float = 0.7
    smoothing_new: float = 0.3
    max_window_samples: int = 1000


class CoachConfig(BaseModel):
    max_timeout_ms: int = 200
    max_explanations_per_session: int = 3
    max_explanations_per_day: int = 10
    undo_window_minutes: float = 60.0
    default_kill_switch_hours: float = 24.0
    override_retention_days: float = 7.0


class PlaylistConfig(BaseModel):
    deadline_horizon_days: float = 7.0
    high_impact_threshold: float = 0.7
    keystone_tags: list[str] = Field(default_factory=lambda: ["keystone habit", "keystone"])
    high_impact_keywords: list[str] = Field(
        default_factory=lambda: [
            "client",
            "project",
            "strategy",
            "revenue",
            "growth",
            "business",
            "sales",
            "goal",
        ]
    )
    medium_impact_keywords: list[str] = Field(
        default_factory=lambda: ["team", "collaboration", "process", "improvement", "organization"]
    )
    max_items: Optional[int] = None


class VersioningConfig(BaseModel):
    brain_version: str = "1.1.0"
    max_registry_entries: int = 10_000


class MaintenanceConfig(BaseModel):
    interval_seconds: float = 300.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class BrainConfig(BaseModel):
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    protective: ProtectiveModeConfig = Field(default_factory=ProtectiveModeConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    adaptation: AdaptationConfig = Field(default_factory=AdaptationConfig)
    coach: CoachConfig = Field(default_factory=CoachConfig)
    playlist: PlaylistConfig = Field(default_factory=PlaylistConfig)
    versioning: VersioningConfig = Field(default_factory=VersioningConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> BrainConfig:
    """Load the decision-core config from the YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (KAIRU_BRAIN_LOG_LEVEL,
    KAIRU_BRAIN_VERSION).
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    log_level = os.getenv("KAIRU_BRAIN_LOG_LEVEL")
    if log_level:
        merged.setdefault("logging", {})
        merged["logging"]["level"] = log_level

    brain_version = os.getenv("KAIRU_BRAIN_VERSION")
    if brain_version:
        merged.setdefault("versioning", {})
        merged["versioning"]["brain_version"] = brain_version

    try:
        return BrainConfig(**merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_dir}: {exc}") from exc
