# tests/test_executors.py
# Unit tests for executor result handling and the agent subprocess runner.

import sys

import pytest

from plan_agent.executors import (
    ClaudeCodeExecutor,
    CodexCliExecutor,
    ExecutorError,
    ProcessRun,
    build_executor,
    parse_failed_output,
    run_agent_process,
)


# --- parse_failed_output tests ---


def test_parse_failed_output_sections():
    text = """FAILED: could not finish
Requirements:
Add the flag
Problems:
The build is broken
Solutions:
Fix the build first
"""
    details = parse_failed_output(text, "claude-code")
    assert details.requirements == "Add the flag"
    assert details.problems == "The build is broken"
    assert details.solutions == "Fix the build first"
    assert details.source_agent == "claude-code"


def test_parse_failed_output_without_sections_uses_summary():
    details = parse_failed_output("FAILED: ran out of ideas", "codex-cli")
    assert details.problems == "ran out of ideas"


def test_parse_failed_output_ignores_normal_messages():
    assert parse_failed_output("All done. FAILED: nothing", "x") is None


# --- ClaudeCodeExecutor.interpret tests ---


def _run(returncode=0, timed_out=False, stdout="", stderr=""):
    return ProcessRun(returncode=returncode, stdout=stdout, stderr=stderr,
                      duration_seconds=1.0, timed_out=timed_out)


def test_result_event_is_success():
    result = ClaudeCodeExecutor().interpret(_run(), {"type": "result", "result": "Done", "num_turns": 3})
    assert result.success is True
    assert result.content == "Done"
    assert result.metadata["num_turns"] == 3


def test_result_seen_before_inactivity_kill_still_counts():
    result = ClaudeCodeExecutor().interpret(_run(returncode=-15, timed_out=True), {"result": "Done"})
    assert result.success is True


def test_timeout_without_result_is_failure():
    executor = ClaudeCodeExecutor(timeout_seconds=5)
    result = executor.interpret(_run(returncode=-15, timed_out=True), {})
    assert result.success is False
    assert "no output for 5s" in result.failure_details.problems


def test_failed_final_message_is_soft_failure():
    result = ClaudeCodeExecutor().interpret(_run(), {"result": "FAILED: tests do not pass"})
    assert result.success is False
    assert result.failure_details.problems == "tests do not pass"


def test_nonzero_exit_without_result_is_failure():
    result = ClaudeCodeExecutor().interpret(_run(returncode=1, stderr="crash"), {})
    assert result.success is False
    assert "exited with code 1: crash" in result.failure_details.problems


def test_model_is_passed_on_command_line():
    cmd = ClaudeCodeExecutor(model="opus").build_command("do it")
    assert cmd[-2:] == ["--model", "opus"]
    assert "--dangerously-skip-permissions" in cmd
    assert CodexCliExecutor(model="o3").build_command("do it")[-3:] == ["--model", "o3", "do it"]


# --- build_executor tests ---


def test_build_executor_by_name():
    executor = build_executor("claude-code", model="sonnet", base_dir="/tmp")
    assert isinstance(executor, ClaudeCodeExecutor)
    assert executor.model == "sonnet"


def test_build_unknown_executor_raises():
    with pytest.raises(ExecutorError, match="Unknown executor"):
        build_executor("nope")


# --- run_agent_process tests ---


def test_run_agent_process_collects_output(tmp_path):
    lines = []
    run = run_agent_process(
        [sys.executable, "-c", "print('hello')"],
        cwd=str(tmp_path),
        inactivity_timeout=30,
        stdout_handler=lines.append,
    )
    assert run.returncode == 0
    assert run.stdout == "hello\n"
    assert lines == ["hello\n"]
    assert run.timed_out is False


def test_run_agent_process_hides_nested_session_marker(tmp_path, monkeypatch):
    monkeypatch.setenv("CLAUDECODE", "1")
    run = run_agent_process(
        [sys.executable, "-c", "import os; print(os.environ.get('CLAUDECODE', 'unset'))"],
        cwd=str(tmp_path),
        inactivity_timeout=30,
    )
    assert run.stdout == "unset\n"


def test_run_agent_process_kills_silent_process(tmp_path):
    run = run_agent_process(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        cwd=str(tmp_path),
        inactivity_timeout=1,
    )
    assert run.timed_out is True
    assert run.returncode != 0


def test_missing_binary_raises_executor_error(tmp_path):
    with pytest.raises(ExecutorError):
        run_agent_process(["definitely-not-a-real-binary-xyz"], cwd=str(tmp_path), inactivity_timeout=1)
