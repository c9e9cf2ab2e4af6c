"""
Executors: the coding agents that do the actual work for a prompt.

An executor takes a prompt and returns None (success), or an ExecutorOutput
whose success flag is False for a soft failure. Exceptions mean the executor
itself broke. Both stop the agent loop.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from . import output
from .config import DEFAULT_EXECUTOR_TIMEOUT_SECONDS
from .output import log, verbose_log, warn

# Global npm installs of the Claude Code CLI, run through node
CLAUDE_CLI_SCRIPTS = [
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]

# Not passed to agent processes. CLAUDECODE marks a nested session and makes
# the claude CLI refuse to start.
STRIPPED_ENV_VARS = ["CLAUDECODE"]

FAILED_PREFIX = "FAILED:"
FAILURE_SECTION_PATTERN = re.compile(
    r"^\s*(requirements|problems|solutions)\s*:\s*$", re.IGNORECASE | re.MULTILINE
)
TERMINATE_GRACE_SECONDS = 5


class ExecutorError(Exception):
    """The executor could not run at all."""


@dataclass
class ExecutePlanInfo:
    plan_id: object
    plan_title: str
    plan_file_path: str
    execution_mode: str = "normal"
    batch_mode: bool = False
    capture_output: bool = False


@dataclass
class FailureDetails:
    requirements: str = ""
    problems: str = ""
    solutions: str = ""
    source_agent: str = ""


@dataclass
class ExecutorOutput:
    success: Optional[bool] = True
    content: str = ""
    failure_details: Optional[FailureDetails] = None
    metadata: dict = field(default_factory=dict)


def parse_failed_output(text: str, source_agent: str) -> Optional[FailureDetails]:
    """Parse an agent's final message of the form

        FAILED: one line summary
        Requirements:
        ...
        Problems:
        ...
        Solutions:
        ...

    Returns None if the message does not start with FAILED:.
    """
    stripped = text.strip()
    if not stripped.startswith(FAILED_PREFIX):
        return None
    body = stripped[len(FAILED_PREFIX):]
    sections = {"requirements": "", "problems": "", "solutions": ""}
    matches = list(FAILURE_SECTION_PATTERN.finditer(body))
    summary = body[:matches[0].start()] if matches else body
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        sections[match.group(1).lower()] = body[match.end():end].strip()
    if not sections["problems"]:
        sections["problems"] = summary.strip()
    return FailureDetails(source_agent=source_agent, **sections)


# ─── Subprocess plumbing ─────────────────────────────────────────────


class _PipeReader(threading.Thread):
    """Drains one pipe of an agent process and notes when output last arrived."""

    def __init__(self, pipe, on_line: Optional[Callable[[str], None]]):
        super().__init__(daemon=True)
        self.pipe = pipe
        self.on_line = on_line
        self.chunks: list[str] = []
        self.last_output = time.time()

    def run(self) -> None:
        try:
            for line in self.pipe:
                self.chunks.append(line)
                self.last_output = time.time()
                if self.on_line is not None:
                    self.on_line(line)
        except (OSError, ValueError) as e:
            verbose_log(f"Output reader stopped: {e}", "EXEC")

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@dataclass
class ProcessRun:
    returncode: Optional[int]
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False


def run_agent_process(
    cmd: list[str],
    cwd: str,
    inactivity_timeout: float,
    stdout_handler: Optional[Callable[[str], None]] = None,
    stderr_handler: Optional[Callable[[str], None]] = None,
) -> ProcessRun:
    """Run an agent process, killing it after inactivity_timeout seconds of silence."""
    start_time = time.time()
    env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        raise ExecutorError(f"Could not start {cmd[0]}: {e}")

    stdout_reader = _PipeReader(process.stdout, stdout_handler)
    stderr_reader = _PipeReader(process.stderr, stderr_handler)
    stdout_reader.start()
    stderr_reader.start()

    timed_out = False
    while process.poll() is None:
        time.sleep(1)
        silent_for = time.time() - max(stdout_reader.last_output, stderr_reader.last_output)
        if silent_for > inactivity_timeout:
            warn(f"No output for {inactivity_timeout:.0f}s, terminating agent process {process.pid}")
            timed_out = True
            process.terminate()
            try:
                process.wait(timeout=TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            break

    stdout_reader.join(timeout=5)
    stderr_reader.join(timeout=5)
    duration = time.time() - start_time
    verbose_log(f"Process completed with return code {process.returncode} after {duration:.1f}s", "EXEC")
    return ProcessRun(
        returncode=process.returncode,
        stdout=stdout_reader.text,
        stderr=stderr_reader.text,
        duration_seconds=duration,
        timed_out=timed_out,
    )


# ─── Executors ───────────────────────────────────────────────────────


class Executor:
    """Base class for executors."""

    name = ""

    def __init__(self, model: Optional[str] = None, base_dir: Optional[str] = None,
                 timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS):
        self.model = model
        self.base_dir = base_dir or os.getcwd()
        self.timeout_seconds = timeout_seconds

    def execute(self, prompt: str, info: ExecutePlanInfo) -> Optional[ExecutorOutput]:
        raise NotImplementedError


def _display_stream_event(event: dict) -> None:
    """Show assistant text and tool use from a stream-json event."""
    ts = datetime.now().strftime("%H:%M:%S")
    msg = event.get("message", {})
    for block in msg.get("content", []):
        block_type = block.get("type", "")
        if block_type == "text":
            text = block.get("text", "").strip()
            if text:
                display = text[:200] + ("..." if len(text) > 200 else "")
                log(f"  [{ts}] [Claude] {display}")
        elif block_type == "tool_use":
            tool_name = block.get("name", "?")
            tool_input = block.get("input", {})
            if tool_name in ("Read", "Edit", "Write"):
                detail = tool_input.get("file_path", "")
            elif tool_name == "Bash":
                cmd = tool_input.get("command", "")
                detail = cmd[:80] + ("..." if len(cmd) > 80 else "")
            elif tool_name in ("Grep", "Glob"):
                detail = tool_input.get("pattern", "")
            else:
                detail = ""
            log(f"  [{ts}] [Tool] {tool_name}: {detail}")


class ClaudeCodeExecutor(Executor):
    """Runs the Claude Code CLI in print mode with stream-json output."""

    name = "claude-code"

    @staticmethod
    def find_binary() -> list[str]:
        """Command prefix for the claude CLI.

        Tries PATH, then a global npm install run through node, then npx.
        """
        claude = shutil.which("claude")
        if claude:
            return [claude]
        node = shutil.which("node")
        script = next((p for p in CLAUDE_CLI_SCRIPTS if os.path.isfile(p)), None)
        if node and script:
            return [node, script]
        npx = shutil.which("npx")
        if npx:
            return [npx, "@anthropic-ai/claude-code"]
        warn("Could not find 'claude' binary. Install with: npm install -g @anthropic-ai/claude-code")
        return ["claude"]

    def build_command(self, prompt: str) -> list[str]:
        cmd = [
            *self.find_binary(),
            "--dangerously-skip-permissions",
            "--print",
            prompt,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def execute(self, prompt: str, info: ExecutePlanInfo) -> Optional[ExecutorOutput]:
        verbose_log(f"Prompt length: {len(prompt)} chars", "EXEC")
        verbose_log(f"Working directory: {self.base_dir}", "EXEC")
        result_capture: dict = {}

        def handle_line(line: str) -> None:
            try:
                event = json.loads(line)
            except (json.JSONDecodeError, ValueError):
                return
            if not isinstance(event, dict):
                return
            event_type = event.get("type", "")
            if event_type == "assistant" and not info.capture_output:
                _display_stream_event(event)
            elif event_type == "result":
                result_capture.update(event)

        run = run_agent_process(
            self.build_command(prompt),
            cwd=self.base_dir,
            inactivity_timeout=self.timeout_seconds,
            stdout_handler=handle_line,
            stderr_handler=None if info.capture_output else output.write_stderr,
        )
        return self.interpret(run, result_capture)

    def interpret(self, run: ProcessRun, result_capture: dict) -> ExecutorOutput:
        """Decide success from the process run and the final result event.

        A result event seen before an inactivity kill still counts.
        """
        metadata = {"duration_seconds": run.duration_seconds}
        if result_capture:
            metadata["cost_usd"] = result_capture.get("total_cost_usd", 0)
            metadata["num_turns"] = result_capture.get("num_turns", 0)
            content = str(result_capture.get("result", ""))
            failure = parse_failed_output(content, self.name)
            if failure is not None:
                return ExecutorOutput(success=False, content=content, failure_details=failure, metadata=metadata)
            if result_capture.get("is_error"):
                return ExecutorOutput(
                    success=False,
                    content=content,
                    failure_details=FailureDetails(problems=content or "Agent reported an error", source_agent=self.name),
                    metadata=metadata,
                )
            return ExecutorOutput(success=True, content=content, metadata=metadata)

        if run.timed_out:
            problem = f"Agent produced no output for {self.timeout_seconds}s and was terminated"
        else:
            error_msg = run.stderr[:500] if run.stderr else "Unknown error"
            problem = f"Claude exited with code {run.returncode}: {error_msg}"
        return ExecutorOutput(
            success=False,
            content=run.stdout,
            failure_details=FailureDetails(problems=problem, source_agent=self.name),
            metadata=metadata,
        )


class CodexCliExecutor(Executor):
    """Runs the Codex CLI non-interactively."""

    name = "codex-cli"

    def build_command(self, prompt: str) -> list[str]:
        cmd = ["codex", "exec", "--full-auto"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.append(prompt)
        return cmd

    def execute(self, prompt: str, info: ExecutePlanInfo) -> Optional[ExecutorOutput]:
        handler = None if info.capture_output else output.write_stdout
        run = run_agent_process(
            self.build_command(prompt),
            cwd=self.base_dir,
            inactivity_timeout=self.timeout_seconds,
            stdout_handler=handler,
            stderr_handler=None if info.capture_output else output.write_stderr,
        )
        lines = [line for line in run.stdout.strip().splitlines() if line.strip()]
        final_message = lines[-1] if lines else ""
        metadata = {"duration_seconds": run.duration_seconds}

        failure = parse_failed_output(final_message, self.name)
        if failure is not None:
            return ExecutorOutput(success=False, content=run.stdout, failure_details=failure, metadata=metadata)
        if run.returncode == 0 and not run.timed_out:
            return ExecutorOutput(success=True, content=run.stdout, metadata=metadata)
        problem = (
            f"Agent produced no output for {self.timeout_seconds}s and was terminated"
            if run.timed_out else f"codex exited with code {run.returncode}: {run.stderr[:500]}"
        )
        return ExecutorOutput(
            success=False,
            content=run.stdout,
            failure_details=FailureDetails(problems=problem, source_agent=self.name),
            metadata=metadata,
        )


class CopyOnlyExecutor(Executor):
    """Prints the prompt for a human to run elsewhere, then asks if it worked."""

    name = "copy-only"

    def execute(self, prompt: str, info: ExecutePlanInfo) -> Optional[ExecutorOutput]:
        log("=" * 60)
        log(prompt)
        log("=" * 60)
        if output.prompt_confirm("Was the work above completed successfully?", default=True):
            return None
        return ExecutorOutput(
            success=False,
            failure_details=FailureDetails(problems="Marked as not completed by the user", source_agent=self.name),
        )


EXECUTORS: dict[str, type] = {
    ClaudeCodeExecutor.name: ClaudeCodeExecutor,
    CodexCliExecutor.name: CodexCliExecutor,
    CopyOnlyExecutor.name: CopyOnlyExecutor,
}


def build_executor(name: str, model: Optional[str] = None, base_dir: Optional[str] = None,
                   timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS) -> Executor:
    executor_class = EXECUTORS.get(name)
    if executor_class is None:
        raise ExecutorError(f"Unknown executor: {name}. Available: {', '.join(sorted(EXECUTORS))}")
    return executor_class(model=model, base_dir=base_dir, timeout_seconds=timeout_seconds)
