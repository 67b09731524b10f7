"""Tests for kairu_brain/cli.py: input helpers and the click commands."""

from __future__ import annotations

import json

import click
import pytest
import yaml
from click.testing import CliRunner

from kairu_brain.cli import _budget, _load_input, _load_object, _load_tasks, cli
from kairu_brain.versioning.stamp import fingerprint


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    (path / "default.yaml").write_text(yaml.safe_dump({"logging": {"level": "ERROR"}}))
    return path


def _write(tmp_path, name, data):
    path = tmp_path / name
    if name.endswith((".yaml", ".yml")):
        path.write_text(yaml.safe_dump(data))
    else:
        path.write_text(json.dumps(data))
    return path


def _run(config_dir, *args):
    return CliRunner().invoke(cli, ["--config-dir", str(config_dir), *args])


class TestInputHelpers:
    def test_yaml_and_json(self, tmp_path):
        assert _load_input(_write(tmp_path, "a.yaml", {"x": 1})) == {"x": 1}
        assert _load_input(_write(tmp_path, "a.json", [1, 2])) == [1, 2]

    def test_unparseable(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(click.ClickException):
            _load_input(path)

    def test_object_required(self, tmp_path):
        with pytest.raises(click.ClickException):
            _load_object(_write(tmp_path, "list.json", [1]))

    def test_tasks_list_or_object(self, tmp_path):
        tasks, budget = _load_tasks(_write(tmp_path, "t.json", [{"id": "a"}]))
        assert [t.id for t in tasks] == ["a"] and budget is None

        tasks, budget = _load_tasks(
            _write(tmp_path, "t.yaml", {"tasks": [{"id": "b"}], "budget": {"max_load": 5, "remaining": 5}})
        )
        assert [t.id for t in tasks] == ["b"]
        assert _budget(budget).max_load == 5

    def test_invalid_task(self, tmp_path):
        with pytest.raises(click.ClickException):
            _load_tasks(_write(tmp_path, "t.json", [{"effort": "enormous"}]))

    def test_invalid_budget(self):
        with pytest.raises(click.ClickException):
            _budget({"max_load": "lots"})
        assert _budget(None) is None


class TestCommands:
    def test_evaluate(self, tmp_path, config_dir):
        task = _write(tmp_path, "task.json", {"id": "t1", "effort": "light"})
        context = _write(
            tmp_path, "ctx.json",
            {"budget": {"max_load": 10, "remaining": 10, "lock_threshold": 2}, "now": "2026-03-10T12:00:00+00:00"},
        )
        result = _run(config_dir, "evaluate", "--task", str(task), "--context", str(context))
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["allowed"] is True
        assert payload["estimated_load"] == 0.5

    def test_evaluate_refusal_explains_the_override(self, tmp_path, config_dir):
        task = _write(tmp_path, "task.json", {"id": "t1", "estimated_load": 5})
        context = _write(
            tmp_path, "ctx.json",
            {"budget": {"max_load": 10, "used_load": 9, "remaining": 1}, "now": "2026-03-10T12:00:00"},
        )
        result = _run(config_dir, "evaluate", "--task", str(task), "--context", str(context))
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["allowed"] is False
        assert payload["reason"] == "capacity_limit"
        assert payload["warning"].startswith("This task has a")
        assert payload["consequences"][0].startswith("Budget reduced by")
        assert payload["confirm_required"] == (payload["cost"]["consequences"]["warning_level"] != "LOW")

    def test_evaluate_without_budget_is_degraded(self, tmp_path, config_dir):
        task = _write(tmp_path, "task.json", {"id": "t1"})
        context = _write(tmp_path, "ctx.json", {"energy": "low"})
        result = _run(config_dir, "evaluate", "--task", str(task), "--context", str(context))
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["allowed"] is False
        assert payload["degraded"] is True

    def test_decide(self, tmp_path, config_dir):
        tasks = _write(
            tmp_path, "tasks.yaml",
            {
                "tasks": [{"id": "easy", "effort": "light"}, {"id": "hard", "effort": "heavy"}],
                "budget": {"max_load": 10, "remaining": 10, "lock_threshold": 2},
            },
        )
        result = _run(config_dir, "decide", "--tasks", str(tasks), "--energy", "low")
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["allowed"] == ["easy"]
        assert payload["rejected"] == {"hard": "energy_mismatch"}
        assert payload["budget_status"].startswith("Budget healthy")

    def test_playlist(self, tmp_path, config_dir):
        tasks = _write(tmp_path, "tasks.json", [{"id": "a"}, {"id": "b", "priority": "urgent"}])
        result = _run(config_dir, "playlist", "--tasks", str(tasks), "--energy", "medium")
        assert result.exit_code == 0, result.output
        items = json.loads(result.output)
        assert [i["task_id"] for i in items] == ["b", "a"]

    def test_playlist_with_naive_deadline(self, tmp_path, config_dir):
        tasks = _write(
            tmp_path, "tasks.json",
            [{"id": "a", "deadline": "2030-01-01T10:00:00", "created_at": "2026-03-10T09:00:00"}, {"id": "b"}],
        )
        result = _run(config_dir, "playlist", "--tasks", str(tasks), "--energy", "medium")
        assert result.exit_code == 0, result.output
        assert {i["task_id"] for i in json.loads(result.output)} == {"a", "b"}

    def test_playlist_requires_energy(self, tmp_path, config_dir):
        tasks = _write(tmp_path, "tasks.json", [{"id": "a"}])
        result = _run(config_dir, "playlist", "--tasks", str(tasks))
        assert result.exit_code != 0

    def test_quality(self, tmp_path, config_dir):
        session = _write(tmp_path, "session.json", {"total_tasks": 10, "forced_tasks": 6})
        result = _run(config_dir, "quality", "--session", str(session))
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["forcing_rate"] == 0.6

    def test_stamp(self, tmp_path, config_dir):
        rules = {"max_tasks": 3, "modes": ["STRICT"]}
        rules_path = _write(tmp_path, "rules.json", rules)
        context_path = _write(tmp_path, "ctx.json", {"energy": "low"})
        result = _run(
            config_dir, "stamp", "--rules", str(rules_path), "--context", str(context_path),
            "--brain-version", "9.9.9",
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["brain_version"] == "9.9.9"
        assert payload["rules_hash"] == fingerprint(rules)

    def test_bad_config(self, tmp_path):
        bad = tmp_path / "bad"
        bad.mkdir()
        (bad / "default.yaml").write_text(yaml.safe_dump({"budget": {"default_max_load": "many"}}))
        session = _write(tmp_path, "session.json", {"total_tasks": 1})
        result = CliRunner().invoke(cli, ["--config-dir", str(bad), "quality", "--session", str(session)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
