"""
Project configuration and resolved execution options.

The project config lives in .claude/plan-agent.yaml. A missing or malformed
file behaves like an empty one so that plan-agent works with no setup.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

CONFIG_PATH = ".claude/plan-agent.yaml"

DEFAULT_TASKS_DIR = "tasks"
DEFAULT_EXECUTOR = "claude-code"
DEFAULT_WORKSPACE_ROOT = ".worktrees"
DEFAULT_LOCK_STALE_HOURS = 24
DEFAULT_MAX_BATCH_ITERATIONS = 20
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 600  # inactivity window per executor run

UPDATE_DOCS_NEVER = "never"
UPDATE_DOCS_AFTER_ITERATION = "after-iteration"
UPDATE_DOCS_AFTER_COMPLETION = "after-completion"
UPDATE_DOCS_MODES = (UPDATE_DOCS_NEVER, UPDATE_DOCS_AFTER_ITERATION, UPDATE_DOCS_AFTER_COMPLETION)

EXECUTION_MODES = ("normal", "simple", "tdd")

SUMMARY_ENV_VAR = "PLAN_AGENT_SUMMARY"


@dataclass
class PostApplyCommand:
    """A shell command run after every successful executor call."""
    title: str
    command: str
    allow_failure: bool = False
    hide_output: bool = False
    working_directory: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "PostApplyCommand":
        return cls(
            title=str(data.get("title") or data.get("command", "")),
            command=str(data.get("command", "")),
            allow_failure=bool(data.get("allow_failure", False)),
            hide_output=bool(data.get("hide_output", False)),
            working_directory=data.get("working_directory"),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )


@dataclass
class NotificationConfig:
    enabled: bool = True
    command: Optional[str] = None
    slack_webhook_url: Optional[str] = None


@dataclass
class AgentConfig:
    """Parsed contents of the project config file."""
    tasks_dir: str = DEFAULT_TASKS_DIR
    default_executor: str = DEFAULT_EXECUTOR
    model: Optional[str] = None
    post_apply_commands: list[PostApplyCommand] = field(default_factory=list)
    update_docs_mode: str = UPDATE_DOCS_NEVER
    apply_lessons: bool = False
    workspace_root: str = DEFAULT_WORKSPACE_ROOT
    lock_stale_hours: float = DEFAULT_LOCK_STALE_HOURS
    max_batch_iterations: int = DEFAULT_MAX_BATCH_ITERATIONS
    executor_timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    config_dir: Optional[str] = None

    def resolve_tasks_dir(self, base_dir: Optional[str] = None) -> str:
        """Return tasks_dir as an absolute path relative to the project root."""
        root = base_dir or (str(Path(self.config_dir).parent) if self.config_dir else os.getcwd())
        return str(Path(root, self.tasks_dir).resolve())


def load_config_file(config_path: str = CONFIG_PATH) -> dict:
    """Load project-level config from .claude/plan-agent.yaml.

    Returns the parsed dict, or an empty dict if the file doesn't exist.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, yaml.YAMLError):
        return {}


def parse_config(data: dict, config_dir: Optional[str] = None) -> AgentConfig:
    update_docs = data.get("update_docs") or {}
    if not isinstance(update_docs, dict):
        update_docs = {"mode": update_docs}
    mode = str(update_docs.get("mode", UPDATE_DOCS_NEVER))
    if mode not in UPDATE_DOCS_MODES:
        mode = UPDATE_DOCS_NEVER

    workspaces = data.get("workspaces") or {}
    lock = data.get("lock") or {}
    batch = data.get("batch") or {}
    notify = data.get("notifications") or {}

    return AgentConfig(
        tasks_dir=str(data.get("tasks_dir", DEFAULT_TASKS_DIR)),
        default_executor=str(data.get("default_executor", DEFAULT_EXECUTOR)),
        model=data.get("model"),
        post_apply_commands=[
            PostApplyCommand.from_dict(c) for c in data.get("post_apply_commands") or []
            if isinstance(c, dict) and c.get("command")
        ],
        update_docs_mode=mode,
        apply_lessons=bool(update_docs.get("apply_lessons", False)),
        workspace_root=str(workspaces.get("root", DEFAULT_WORKSPACE_ROOT)),
        lock_stale_hours=float(lock.get("stale_timeout_hours", DEFAULT_LOCK_STALE_HOURS)),
        max_batch_iterations=int(batch.get("max_iterations", DEFAULT_MAX_BATCH_ITERATIONS)),
        executor_timeout_seconds=int(data.get("executor_timeout_seconds", DEFAULT_EXECUTOR_TIMEOUT_SECONDS)),
        notifications=NotificationConfig(
            enabled=bool(notify.get("enabled", True)),
            command=notify.get("command"),
            slack_webhook_url=notify.get("slack_webhook_url"),
        ),
        config_dir=config_dir,
    )


def load_agent_config(config_path: str = CONFIG_PATH) -> AgentConfig:
    data = load_config_file(config_path)
    config_dir = str(Path(config_path).resolve().parent)
    return parse_config(data, config_dir=config_dir)


def summary_enabled_from_env() -> bool:
    """The summary is on unless PLAN_AGENT_SUMMARY is 0/false/no/off."""
    value = os.environ.get(SUMMARY_ENV_VAR, "").strip().lower()
    return value not in ("0", "false", "no", "off")


@dataclass
class ExecutionOptions:
    """Every knob of one agent run, resolved once from CLI flags and config."""
    serial_tasks: bool = False
    max_steps: Optional[int] = None
    executor: str = DEFAULT_EXECUTOR
    model: Optional[str] = None
    dry_run: bool = False
    execution_mode: str = "normal"
    update_docs_mode: str = UPDATE_DOCS_NEVER
    apply_lessons: bool = False
    final_review: bool = True
    summary_enabled: bool = True
    summary_file: Optional[str] = None
    log_to_file: bool = True
    non_interactive: bool = False
    workspace: Optional[str] = None
    auto_workspace: bool = False
    new_workspace: bool = False
    commit: bool = False
    max_batch_iterations: int = DEFAULT_MAX_BATCH_ITERATIONS

    @property
    def batch_iteration_limit(self) -> int:
        return self.max_steps if self.max_steps is not None else self.max_batch_iterations


def resolve_execution_options(args, config: AgentConfig) -> ExecutionOptions:
    """Merge parsed CLI arguments over the project config."""
    update_docs_mode = getattr(args, "update_docs", None) or config.update_docs_mode
    apply_lessons = bool(getattr(args, "apply_lessons", False)) or config.apply_lessons
    summary_enabled = summary_enabled_from_env() and not getattr(args, "no_summary", False)
    return ExecutionOptions(
        serial_tasks=bool(getattr(args, "serial_tasks", False)),
        max_steps=getattr(args, "steps", None),
        executor=getattr(args, "executor", None) or config.default_executor,
        model=getattr(args, "model", None) or config.model,
        dry_run=bool(getattr(args, "dry_run", False)),
        execution_mode=getattr(args, "mode", None) or "normal",
        update_docs_mode=update_docs_mode,
        apply_lessons=apply_lessons,
        final_review=getattr(args, "final_review", True),
        summary_enabled=summary_enabled,
        summary_file=getattr(args, "summary_file", None),
        log_to_file=not getattr(args, "no_log", False),
        non_interactive=bool(getattr(args, "non_interactive", False)),
        workspace=getattr(args, "workspace", None),
        auto_workspace=bool(getattr(args, "auto_workspace", False)),
        new_workspace=bool(getattr(args, "new_workspace", False)),
        commit=bool(getattr(args, "commit", False)),
        max_batch_iterations=config.max_batch_iterations,
    )
