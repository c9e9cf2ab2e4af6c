# tests/test_summary_notifications.py
# Unit tests for execution summary formatting and end-of-run notifications.

import json
import sys
from datetime import datetime, timedelta

from plan_agent.config import NotificationConfig
from plan_agent.notifications import Notification, format_agent_message, send_notification
from plan_agent.summary import (
    MAX_OUTPUT_CHARS,
    ExecutionSummary,
    StepResult,
    SummaryCollector,
    format_summary,
    write_or_display_summary,
)


# --- summary tests ---


def test_format_summary_lists_steps_and_errors():
    started = datetime(2026, 3, 1, 10, 0, 0)
    summary = ExecutionSummary(
        plan_id=7, plan_title="Add caching", plan_file="tasks/7.plan.yml", mode="batch",
        started_at=started, ended_at=started + timedelta(seconds=90), batch_iterations=2,
        steps=[
            StepResult(title="Batch Iteration 1", executor="claude-code", success=True, duration_seconds=40),
            StepResult(title="Batch Iteration 2", executor="claude-code", success=False, error="tests fail"),
        ],
        errors=["tests fail"],
        changed_files=["src/cache.py"],
    )

    text = format_summary(summary)

    assert "# Execution Summary: Add caching" in text
    assert "- Duration: 90.0s" in text
    assert "- Batch iterations: 2" in text
    assert "- Plan completed: no" in text
    assert "## Steps (1/2 succeeded)" in text
    assert "### [OK] Batch Iteration 1 (claude-code, 40.0s)" in text
    assert "### [FAILED] Batch Iteration 2" in text
    assert "## Errors" in text
    assert "- src/cache.py" in text


def test_serial_summary_has_no_batch_line():
    summary = ExecutionSummary(plan_id=1, plan_title="x", plan_file="f", mode="serial", plan_completed=True)
    text = format_summary(summary)
    assert "Batch iterations" not in text
    assert "- Plan completed: yes" in text


def test_long_step_output_is_truncated(tmp_path):
    collector = SummaryCollector(1, "x", "f", "serial", base_dir=str(tmp_path))
    collector.add_step_result(StepResult(title="t", executor="e", success=True, output="a" * (MAX_OUTPUT_CHARS + 50)))
    out = collector.summary.steps[0].output
    assert out.endswith("(truncated)")
    assert len(out) < MAX_OUTPUT_CHARS + 50


def test_summary_written_to_file(tmp_path):
    target = tmp_path / "reports" / "summary.md"
    write_or_display_summary(ExecutionSummary(plan_id=1, plan_title="T", plan_file="f", mode="stub"), str(target))
    assert target.read_text().startswith("# Execution Summary: T")


# --- notification tests ---


def test_format_agent_message():
    assert format_agent_message("Plan A", True) == "agent completed: Plan A"
    assert format_agent_message("Plan A", False, "boom") == "agent failed: Plan A (boom)"
    assert format_agent_message("Plan A", False) == "agent failed: Plan A"


def test_notification_command_receives_json(tmp_path):
    target = tmp_path / "notification.json"
    command = f'{sys.executable} -c "import sys; open(sys.argv[1], \'w\').write(sys.stdin.read())" {target}'
    notification = Notification(command="plan-agent agent 1", status="success",
                                message="agent completed: A", plan_id=1)

    send_notification(NotificationConfig(command=command), notification)

    data = json.loads(target.read_text())
    assert data["status"] == "success"
    assert data["plan_id"] == 1


def test_failing_notification_command_only_warns(capsys):
    notification = Notification(command="c", status="error", message="m")
    send_notification(NotificationConfig(command="exit 4"), notification)
    assert "Notification command exited with code 4" in capsys.readouterr().out


def test_unreachable_webhook_only_warns(capsys):
    notification = Notification(command="c", status="error", message="m")
    send_notification(NotificationConfig(slack_webhook_url="http://127.0.0.1:9/hook"), notification)
    assert "Slack notification failed" in capsys.readouterr().out


def test_disabled_notifications_do_nothing(tmp_path):
    target = tmp_path / "never"
    send_notification(NotificationConfig(enabled=False, command=f"touch {target}"),
                      Notification(command="c", status="success", message="m"))
    assert not target.exists()
