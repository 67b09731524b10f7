"""CLI entrypoint for the decision core."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from pydantic import BaseModel, ValidationError

from kairu_brain.budget.engine import BudgetEngine
from kairu_brain.budget.hints import (
    budget_status_message,
    consequence_descriptions,
    override_warning_message,
    should_confirm_override,
)
from kairu_brain.budget.policy import decide_session
from kairu_brain.core.config import BrainConfig, load_config
from kairu_brain.core.exceptions import ConfigError
from kairu_brain.core.models import (
    DailyBudget,
    DecisionMode,
    EnergyLevel,
    EvaluationContext,
    RefusedWithCost,
    SessionDecisionData,
    TaskRecord,
)
from kairu_brain.playlist.generator import PlaylistGenerator
from kairu_brain.quality.monitor import calculate_decision_quality
from kairu_brain.versioning.stamp import stamp as stamp_decision

_INPUT_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


def _setup_logging(config: Optional[BrainConfig], verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    if config is not None:
        level_name = config.logging.level
        fmt = config.logging.format
    else:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _load_input(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(text)
        return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot parse {path}: {exc}") from exc


def _load_object(path: Path) -> dict[str, Any]:
    data = _load_input(path)
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a JSON/YAML object.")
    return data


def _load_tasks(path: Path) -> tuple[list[TaskRecord], Optional[dict[str, Any]]]:
    """Tasks file: a list of tasks, or an object with ``tasks`` and optional ``budget``."""
    data = _load_input(path)
    budget = None
    if isinstance(data, dict):
        budget = data.get("budget")
        data = data.get("tasks")
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must contain a list of tasks.")
    try:
        return [TaskRecord(**item) for item in data], budget
    except (TypeError, ValidationError) as exc:
        raise click.ClickException(f"Invalid task in {path}: {exc}") from exc


def _budget(data: Optional[dict[str, Any]]) -> Optional[DailyBudget]:
    if not data:
        return None
    try:
        return DailyBudget(**data)
    except ValidationError as exc:
        raise click.ClickException(f"Invalid budget: {exc}") from exc


def _echo_json(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        click.echo(payload.model_dump_json(indent=2))
    elif isinstance(payload, list):
        click.echo(json.dumps([p.model_dump(mode="json") for p in payload], indent=2))
    else:
        click.echo(json.dumps(payload, indent=2, default=str))


def _config(ctx: click.Context) -> BrainConfig:
    return ctx.obj["config"]


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml and environment overlays.",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Adaptive task-governance core."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_dir=config_dir, env=env)
    except ConfigError as exc:
        _setup_logging(None, verbose=verbose)
        raise click.ClickException(str(exc)) from exc
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config
    _setup_logging(config, verbose=verbose)


@cli.command("evaluate")
@click.option("--task", "task_path", required=True, type=_INPUT_FILE, help="JSON or YAML task record.")
@click.option("--context", "context_path", required=True, type=_INPUT_FILE, help="JSON or YAML evaluation context.")
@click.pass_context
def evaluate(ctx: click.Context, task_path: Path, context_path: Path) -> None:
    """Allow a task or print the cost of forcing it."""
    try:
        task = TaskRecord(**_load_object(task_path))
        context = EvaluationContext(**_load_object(context_path))
    except ValidationError as exc:
        raise click.ClickException(f"Invalid input: {exc}") from exc

    engine = BudgetEngine(_config(ctx).budget, budget=context.budget)
    result = engine.evaluate(task, context)
    payload = result.model_dump(mode="json")
    if isinstance(result, RefusedWithCost):
        payload["warning"] = override_warning_message(result.cost)
        payload["consequences"] = consequence_descriptions(result.cost)
        payload["confirm_required"] = should_confirm_override(result.cost)
    _echo_json(payload)


@cli.command("decide")
@click.option("--tasks", "tasks_path", required=True, type=_INPUT_FILE, help="JSON or YAML task list.")
@click.option("--energy", type=click.Choice([e.value for e in EnergyLevel]), default="medium", show_default=True)
@click.option("--mode", type=click.Choice([m.value for m in DecisionMode]), default="STRICT", show_default=True)
@click.pass_context
def decide(ctx: click.Context, tasks_path: Path, energy: str, mode: str) -> None:
    """Apply a session policy to a task list."""
    config = _config(ctx)
    tasks, budget_data = _load_tasks(tasks_path)
    engine = BudgetEngine(config.budget, budget=_budget(budget_data))
    plan = decide_session(
        tasks,
        engine.context(energy=EnergyLevel(energy)),
        DecisionMode(mode),
        config.protective.max_tasks_per_session,
    )
    _echo_json(
        {
            "mode": plan.mode.value,
            "max_tasks": plan.max_tasks,
            "allowed": [t.id for t in plan.allowed],
            "rejected": {task_id: reason.value for task_id, reason in plan.rejected.items()},
            "budget_consumed": plan.budget_consumed,
            "summary": plan.summary,
            "budget_status": budget_status_message(engine.budget),
        }
    )


@cli.command("playlist")
@click.option("--tasks", "tasks_path", required=True, type=_INPUT_FILE, help="JSON or YAML task list.")
@click.option(
    "--energy",
    type=click.Choice([e.value for e in EnergyLevel]),
    required=True,
    help="Declared energy level.",
)
@click.pass_context
def playlist(ctx: click.Context, tasks_path: Path, energy: str) -> None:
    """Rank tasks into today's playlist."""
    config = _config(ctx)
    tasks, budget_data = _load_tasks(tasks_path)
    budget = _budget(budget_data) or BudgetEngine(config.budget).budget
    items = PlaylistGenerator(config.playlist).generate(tasks, budget, EnergyLevel(energy))
    _echo_json(items)


@cli.command("quality")
@click.option("--session", "session_path", required=True, type=_INPUT_FILE, help="JSON or YAML session data.")
def quality(session_path: Path) -> None:
    """Score one session's decisions."""
    try:
        session = SessionDecisionData(**_load_object(session_path))
    except ValidationError as exc:
        raise click.ClickException(f"Invalid session data: {exc}") from exc
    _echo_json(calculate_decision_quality(session))


@cli.command("stamp")
@click.option("--rules", "rules_path", required=True, type=_INPUT_FILE, help="JSON or YAML rule set.")
@click.option("--context", "context_path", required=True, type=_INPUT_FILE, help="JSON or YAML decision context.")
@click.option("--brain-version", default=None, help="Override the configured brain version.")
@click.pass_context
def stamp(ctx: click.Context, rules_path: Path, context_path: Path, brain_version: Optional[str]) -> None:
    """Fingerprint a rule set and a decision context."""
    version = brain_version or _config(ctx).versioning.brain_version
    result = stamp_decision(_load_input(rules_path), _load_input(context_path), datetime.now(UTC), version)
    _echo_json(result)


def main() -> None:
    """Entry point used by `kairu-brain` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
