"""
End-of-run notifications.

Two channels, both optional: a shell command that receives the notification
as JSON on stdin, and a Slack incoming webhook. Delivery failures are logged
and never affect the run.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import subprocess
import urllib.request
from dataclasses import asdict, dataclass
from typing import Optional

from .config import NotificationConfig
from .output import verbose_log, warn

NOTIFY_COMMAND_TIMEOUT_SECONDS = 30
SLACK_TIMEOUT_SECONDS = 10

SLACK_STATUS_EMOJI = {
    "success": ":white_check_mark:",
    "error": ":x:",
}


@dataclass
class Notification:
    command: str
    status: str  # "success" or "error"
    message: str
    plan_id: object = None
    plan_title: str = ""
    plan_file: str = ""
    workspace: str = ""


def format_agent_message(plan_title: str, success: bool, error_message: Optional[str] = None) -> str:
    if success:
        return f"agent completed: {plan_title}"
    return f"agent failed: {plan_title} ({error_message})" if error_message else f"agent failed: {plan_title}"


def _run_notify_command(command: str, notification: Notification) -> None:
    result = subprocess.run(
        command,
        shell=True,
        input=json.dumps(asdict(notification), default=str),
        capture_output=True,
        text=True,
        timeout=NOTIFY_COMMAND_TIMEOUT_SECONDS,
    )
    if result.returncode != 0:
        warn(f"Notification command exited with code {result.returncode}: {result.stderr[:200]}")


def _post_slack_webhook(url: str, notification: Notification) -> None:
    emoji = SLACK_STATUS_EMOJI.get(notification.status, ":large_blue_circle:")
    payload = {"text": f"{emoji} {notification.message}"}
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json; charset=utf-8"},
    )
    with urllib.request.urlopen(req, timeout=SLACK_TIMEOUT_SECONDS) as resp:
        verbose_log(f"Slack webhook responded {resp.status}", "NOTIFY")


def send_notification(config: NotificationConfig, notification: Notification) -> None:
    """Deliver a notification on every configured channel. Never raises."""
    if not config.enabled:
        return
    if config.command:
        try:
            _run_notify_command(config.command, notification)
        except Exception as e:
            warn(f"Notification command failed: {e}")
    if config.slack_webhook_url:
        try:
            _post_slack_webhook(config.slack_webhook_url, notification)
        except Exception as e:
            warn(f"Slack notification failed: {e}")
