"""
Console output for plan-agent.

Everything the agent prints goes through this module so that it can be
tee'd to a log file and, when running as a nested subprocess, forwarded to
the top-level process over the output tunnel instead of being printed.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import sys
from datetime import datetime
from typing import Optional, TextIO

# Global verbose flag
VERBOSE = False

# When set, prompts return their default instead of asking
NON_INTERACTIVE = False

_log_file: Optional[TextIO] = None

# TunnelClient installed by tunnel.connect_tunnel_from_env()
_tunnel_client = None


def set_verbose(enabled: bool) -> None:
    global VERBOSE
    VERBOSE = enabled


def set_non_interactive(enabled: bool) -> None:
    global NON_INTERACTIVE
    NON_INTERACTIVE = enabled


def set_tunnel_client(client) -> None:
    """Route all output through the given tunnel client (None to stop)."""
    global _tunnel_client
    _tunnel_client = client


def get_tunnel_client():
    return _tunnel_client


# ─── Log file ────────────────────────────────────────────────────────


def open_log_file(path: str) -> None:
    """Start copying all output to the given file (appends)."""
    global _log_file
    close_log_file()
    _log_file = open(path, "a", encoding="utf-8")
    _log_file.write(f"\n# plan-agent output {datetime.now().isoformat(timespec='seconds')}\n\n")
    _log_file.flush()


def close_log_file() -> None:
    global _log_file
    if _log_file is not None:
        try:
            _log_file.close()
        finally:
            _log_file = None


def _write_log_file(text: str) -> None:
    if _log_file is None:
        return
    _log_file.write(text if text.endswith("\n") else text + "\n")
    _log_file.flush()


# ─── Console output ──────────────────────────────────────────────────


def _forward(kind: str, text: str) -> bool:
    """Send a log line to the parent process. Returns False if not tunneled."""
    if _tunnel_client is None:
        return False
    return _tunnel_client.send_log(kind, [text])


def log(message: str) -> None:
    _write_log_file(message)
    if not _forward("log", message):
        print(message, flush=True)


def warn(message: str) -> None:
    _write_log_file(f"[WARNING] {message}")
    if not _forward("warn", message):
        print(f"[WARNING] {message}", flush=True)


def error(message: str) -> None:
    _write_log_file(f"[ERROR] {message}")
    if not _forward("error", message):
        print(f"[ERROR] {message}", flush=True)


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if not VERBOSE:
        return
    timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
    line = f"[{timestamp}] [{prefix}] {message}"
    _write_log_file(line)
    if not _forward("debug", line):
        print(line, flush=True)


def debug(message: str) -> None:
    verbose_log(message, "DEBUG")


def write_stdout(data: str) -> None:
    """Pass raw subprocess output through unchanged."""
    _write_log_file(data)
    if _tunnel_client is not None and _tunnel_client.send_output("stdout", data):
        return
    sys.stdout.write(data)
    sys.stdout.flush()


def write_stderr(data: str) -> None:
    _write_log_file(data)
    if _tunnel_client is not None and _tunnel_client.send_output("stderr", data):
        return
    sys.stderr.write(data)
    sys.stderr.flush()


# ─── Structured messages ─────────────────────────────────────────────


def format_structured(message: dict) -> str:
    """Render a structured progress message as console text."""
    kind = message.get("type", "")
    if kind == "agent_iteration_start":
        return f"\n=== Iteration {message.get('iteration')}: {message.get('title', '')} ==="
    if kind == "agent_step_start":
        executor = message.get("executor", "")
        return f"[STEP START] {message.get('title', '')}" + (f" (executor: {executor})" if executor else "")
    if kind == "agent_step_end":
        status = "done" if message.get("success") else "FAILED"
        duration = message.get("duration_seconds")
        suffix = f" in {duration:.1f}s" if isinstance(duration, (int, float)) else ""
        return f"[STEP END] {message.get('title', '')}: {status}{suffix}"
    if kind == "task_completion":
        line = f"[TASK DONE] {message.get('title', '')}"
        if message.get("plan_complete"):
            line += " (plan complete)"
        return line
    if kind == "workflow_progress":
        return f"[PROGRESS] {message.get('message', '')}"
    if kind == "plan_discovery":
        return f"[PLAN] {message.get('title', '')} ({message.get('plan_id', '?')})"
    if kind == "failure_report":
        lines = [f"[FAILURE] {message.get('summary', '')}"]
        for key in ("requirements", "problems", "solutions"):
            if message.get(key):
                lines.append(f"  {key.capitalize()}: {message[key]}")
        if message.get("source_agent"):
            lines.append(f"  Reported by: {message['source_agent']}")
        return "\n".join(lines)
    return json.dumps(message, default=str)


def send_structured(message: dict) -> None:
    """Emit a structured progress event.

    Tunneled: the raw dict goes to the parent, which formats it. Otherwise it
    is formatted and printed here.
    """
    if _tunnel_client is not None and _tunnel_client.send_structured(message):
        _write_log_file(format_structured(message))
        return
    text = format_structured(message)
    _write_log_file(text)
    print(text, flush=True)


# ─── Prompts ─────────────────────────────────────────────────────────


def prompt_confirm(message: str, default: bool = False) -> bool:
    """Ask a yes/no question.

    Nested processes ask the top-level process through the tunnel. Without a
    terminal, or in non-interactive mode, the default is returned.
    """
    if _tunnel_client is not None and _tunnel_client.connected:
        from .tunnel import TunnelError

        try:
            value = _tunnel_client.send_prompt_request({
                "prompt_type": "confirm",
                "prompt_config": {"message": message, "default": default},
            })
            return bool(value)
        except TunnelError as e:
            warn(f"Prompt through tunnel failed ({e}); using default: {'yes' if default else 'no'}")
            return default

    if NON_INTERACTIVE or not sys.stdin.isatty():
        verbose_log(f"Non-interactive; answering '{'yes' if default else 'no'}' to: {message}", "PROMPT")
        return default

    hint = "[Y/n]" if default else "[y/N]"
    try:
        answer = input(f"{message} {hint} ").strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")


def prompt_input(message: str, default: str = "") -> str:
    """Ask for a line of text. Same routing rules as prompt_confirm."""
    if _tunnel_client is not None and _tunnel_client.connected:
        from .tunnel import TunnelError

        try:
            value = _tunnel_client.send_prompt_request({
                "prompt_type": "input",
                "prompt_config": {"message": message, "default": default},
            })
            return "" if value is None else str(value)
        except TunnelError as e:
            warn(f"Prompt through tunnel failed ({e}); using default")
            return default

    if NON_INTERACTIVE or not sys.stdin.isatty():
        return default
    try:
        answer = input(f"{message} ").strip()
    except EOFError:
        return default
    return answer or default
