# tests/test_config.py
# Unit tests for the project config file and resolved execution options.

import argparse

import yaml

from plan_agent.config import (
    DEFAULT_MAX_BATCH_ITERATIONS,
    SUMMARY_ENV_VAR,
    UPDATE_DOCS_NEVER,
    AgentConfig,
    load_agent_config,
    resolve_execution_options,
)


def _args(**overrides) -> argparse.Namespace:
    defaults = dict(
        serial_tasks=False, steps=None, executor=None, model=None, dry_run=False, mode=None,
        update_docs=None, apply_lessons=False, final_review=True, summary_file=None,
        no_summary=False, no_log=False, non_interactive=False, workspace=None,
        auto_workspace=False, new_workspace=False, commit=False,
    )
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


def test_missing_config_file_gives_defaults(tmp_path):
    config = load_agent_config(str(tmp_path / ".claude" / "plan-agent.yaml"))
    assert config.tasks_dir == "tasks"
    assert config.post_apply_commands == []
    assert config.update_docs_mode == UPDATE_DOCS_NEVER
    assert config.max_batch_iterations == DEFAULT_MAX_BATCH_ITERATIONS
    assert config.resolve_tasks_dir() == str((tmp_path / "tasks").resolve())


def test_malformed_config_file_gives_defaults(tmp_path):
    path = tmp_path / "plan-agent.yaml"
    path.write_text("tasks_dir: [unclosed\n")
    assert load_agent_config(str(path)).tasks_dir == "tasks"


def test_config_file_values_are_parsed(tmp_path):
    path = tmp_path / ".claude" / "plan-agent.yaml"
    path.parent.mkdir()
    path.write_text(yaml.dump({
        "tasks_dir": "plans",
        "default_executor": "codex-cli",
        "post_apply_commands": [
            {"title": "Format", "command": "make fmt", "allow_failure": True, "env": {"CI": 1}},
            {"title": "No command"},
        ],
        "update_docs": {"mode": "after-completion", "apply_lessons": True},
        "lock": {"stale_timeout_hours": 2},
        "batch": {"max_iterations": 5},
        "notifications": {"command": "notify-send"},
    }))

    config = load_agent_config(str(path))

    assert config.tasks_dir == "plans"
    assert config.default_executor == "codex-cli"
    assert len(config.post_apply_commands) == 1
    assert config.post_apply_commands[0].allow_failure is True
    assert config.post_apply_commands[0].env == {"CI": "1"}
    assert config.update_docs_mode == "after-completion"
    assert config.apply_lessons is True
    assert config.lock_stale_hours == 2
    assert config.max_batch_iterations == 5
    assert config.notifications.command == "notify-send"
    assert config.resolve_tasks_dir() == str((tmp_path / "plans").resolve())


def test_cli_flags_override_config(monkeypatch):
    monkeypatch.delenv(SUMMARY_ENV_VAR, raising=False)
    config = AgentConfig(default_executor="codex-cli", model="o3", update_docs_mode="after-iteration")

    options = resolve_execution_options(
        _args(executor="claude-code", steps=4, update_docs="never", serial_tasks=True), config
    )

    assert options.executor == "claude-code"
    assert options.model == "o3"
    assert options.update_docs_mode == "never"
    assert options.serial_tasks is True
    assert options.max_steps == 4
    assert options.batch_iteration_limit == 4


def test_batch_limit_falls_back_to_config():
    options = resolve_execution_options(_args(), AgentConfig(max_batch_iterations=7))
    assert options.max_steps is None
    assert options.batch_iteration_limit == 7


def test_summary_disabled_by_environment(monkeypatch):
    monkeypatch.setenv(SUMMARY_ENV_VAR, "false")
    assert resolve_execution_options(_args(), AgentConfig()).summary_enabled is False
    monkeypatch.setenv(SUMMARY_ENV_VAR, "1")
    assert resolve_execution_options(_args(), AgentConfig()).summary_enabled is True
    assert resolve_execution_options(_args(no_summary=True), AgentConfig()).summary_enabled is False
