"""
Execution summary: what ran, how long it took, what failed, what changed.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .actions import get_changed_files, get_current_commit
from .output import log

MAX_OUTPUT_CHARS = 2000


@dataclass
class StepResult:
    title: str
    executor: str
    success: bool
    duration_seconds: float = 0.0
    output: str = ""
    error: str = ""
    iteration: Optional[int] = None


@dataclass
class ExecutionSummary:
    plan_id: object
    plan_title: str
    plan_file: str
    mode: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    steps: list[StepResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    batch_iterations: int = 0
    changed_files: list[str] = field(default_factory=list)
    plan_completed: bool = False


class SummaryCollector:
    """Accumulates an ExecutionSummary over one agent run."""

    def __init__(self, plan_id, plan_title: str, plan_file: str, mode: str, base_dir: Optional[str] = None):
        self.summary = ExecutionSummary(plan_id=plan_id, plan_title=plan_title, plan_file=plan_file, mode=mode)
        self.base_dir = base_dir
        self._baseline_commit: Optional[str] = None

    def start(self) -> None:
        self.summary.started_at = datetime.now()
        self._baseline_commit = get_current_commit(self.base_dir)

    def end(self) -> None:
        if self.summary.ended_at is None:
            self.summary.ended_at = datetime.now()

    def add_step_result(self, result: StepResult) -> None:
        if len(result.output) > MAX_OUTPUT_CHARS:
            result.output = result.output[:MAX_OUTPUT_CHARS] + "\n... (truncated)"
        self.summary.steps.append(result)

    def add_error(self, message: str) -> None:
        self.summary.errors.append(message)

    def set_batch_iterations(self, count: int) -> None:
        self.summary.batch_iterations = count

    def set_plan_completed(self, completed: bool) -> None:
        self.summary.plan_completed = completed

    def track_file_changes(self) -> None:
        """Record files changed since start() relative to the git baseline."""
        self.summary.changed_files = get_changed_files(self.base_dir, since_commit=self._baseline_commit)


def format_summary(summary: ExecutionSummary) -> str:
    lines = [
        f"# Execution Summary: {summary.plan_title}",
        "",
        f"- Plan: {summary.plan_id} ({summary.plan_file})",
        f"- Mode: {summary.mode}",
    ]
    if summary.started_at:
        lines.append(f"- Started: {summary.started_at.isoformat(timespec='seconds')}")
    if summary.ended_at:
        lines.append(f"- Ended: {summary.ended_at.isoformat(timespec='seconds')}")
    if summary.started_at and summary.ended_at:
        duration = (summary.ended_at - summary.started_at).total_seconds()
        lines.append(f"- Duration: {duration:.1f}s")
    if summary.mode == "batch":
        lines.append(f"- Batch iterations: {summary.batch_iterations}")
    lines.append(f"- Plan completed: {'yes' if summary.plan_completed else 'no'}")

    succeeded = sum(1 for s in summary.steps if s.success)
    lines += ["", f"## Steps ({succeeded}/{len(summary.steps)} succeeded)", ""]
    for step in summary.steps:
        status = "OK" if step.success else "FAILED"
        lines.append(f"### [{status}] {step.title} ({step.executor}, {step.duration_seconds:.1f}s)")
        if step.error:
            lines += ["", f"Error: {step.error}"]
        if step.output:
            lines += ["", "```", step.output.rstrip(), "```"]
        lines.append("")

    if summary.errors:
        lines += ["## Errors", ""]
        lines += [f"- {e}" for e in summary.errors]
        lines.append("")

    if summary.changed_files:
        lines += ["## Changed Files", ""]
        lines += [f"- {f}" for f in summary.changed_files]
        lines.append("")
    return "\n".join(lines)


def write_or_display_summary(summary: ExecutionSummary, summary_file: Optional[str] = None) -> None:
    text = format_summary(summary)
    if summary_file:
        path = Path(summary_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        log(f"Execution summary written to {summary_file}")
    else:
        log("")
        log(text)
