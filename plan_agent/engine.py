"""
Plan execution engine.

run_agent() takes a resolved plan file through one invocation:

    select workspace -> acquire lock -> start output tunnel ->
    serial / batch / stub loop -> cleanup

Serial mode executes one actionable item (a step or a simple task) per
iteration and records progress itself. Batch mode hands every incomplete
task to the executor at once and lets it mark tasks done in the plan file.
Plans without tasks go through a single direct execution.

Every failure in the loop is fatal: the loop stops, cleanup runs, and
AgentExecutionError propagates. Cleanup is one routine fed a single
ExecutionOutcome; a failing cleanup step is logged and never replaces the
original error.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from . import output
from .actions import commit_all, execute_post_apply_command, get_current_branch, get_git_root
from .config import (
    UPDATE_DOCS_AFTER_COMPLETION,
    UPDATE_DOCS_AFTER_ITERATION,
    AgentConfig,
    ExecutionOptions,
)
from .executors import ExecutePlanInfo, Executor, ExecutorOutput, FailureDetails, build_executor
from .find_next import find_next_actionable_item, get_all_incomplete_tasks
from .followups import run_final_review, run_update_docs, run_update_lessons
from .mark_done import check_and_mark_parent_done, mark_parent_in_progress, mark_step_done, mark_task_done
from .models import STATUS_DONE, STATUS_IN_PROGRESS, STATUS_PENDING, Plan, StepItem
from .notifications import Notification, format_agent_message, send_notification
from .output import log, send_structured, verbose_log, warn
from .plans import PlanStore
from .prompts import build_batch_prompt, build_step_prompt, build_stub_plan_prompt, build_task_prompt
from .summary import StepResult, SummaryCollector, write_or_display_summary
from .tunnel import TunnelClient, TunnelSession, connect_tunnel_from_env, is_tunnel_active, start_tunnel_session
from .workspace import setup_workspace
from .workspace_lock import WorkspaceLock

MODE_SERIAL = "serial"
MODE_BATCH = "batch"
MODE_STUB = "stub"

# Results of the completion phase
COMPLETION_DONE = "done"
COMPLETION_CONTINUE = "continue"
COMPLETION_STOPPED = "stopped"

LOG_FILE_SUFFIX = "-agent-output.md"


class AgentExecutionError(Exception):
    """The agent loop stopped on a fatal error."""


@dataclass
class ExecutionOutcome:
    """Everything the cleanup routine needs to know about how the run ended."""
    success: bool = False
    error: Optional[BaseException] = None
    plan_complete: bool = False
    mode: str = MODE_SERIAL


@dataclass
class RunResources:
    """Resources acquired during a run, released by finalize_run()."""
    lock_workspace: Optional[str] = None
    tunnel_session: Optional[TunnelSession] = None
    tunnel_client: Optional[TunnelClient] = None
    summary: Optional[SummaryCollector] = None
    log_file_open: bool = False


@dataclass
class AgentContext:
    store: PlanStore
    config: AgentConfig
    options: ExecutionOptions
    executor: Executor
    plan_file: str
    base_dir: str
    base_branch: Optional[str] = None
    summary: Optional[SummaryCollector] = None
    iterations: int = 0
    initially_done: int = 0


# ─── Entry point ─────────────────────────────────────────────────────


def select_mode(plan: Plan, options: ExecutionOptions) -> str:
    if plan.is_stub:
        return MODE_STUB
    return MODE_SERIAL if options.serial_tasks else MODE_BATCH


def run_agent(
    plan_file: str,
    store: PlanStore,
    config: AgentConfig,
    options: ExecutionOptions,
    executor: Optional[Executor] = None,
    repo_root: Optional[str] = None,
    command: Optional[str] = None,
) -> ExecutionOutcome:
    """Execute a plan. Raises AgentExecutionError (or the setup error) on failure."""
    plan = store.read_plan(plan_file)
    outcome = ExecutionOutcome(mode=select_mode(plan, options))
    resources = RunResources()
    repo_root = repo_root or get_git_root(str(Path(plan_file).parent)) or os.getcwd()
    command = command or f"plan-agent agent {plan_file}"

    send_structured({
        "type": "plan_discovery",
        "plan_id": plan.id,
        "title": plan.display_title,
        "plan_file": plan_file,
    })

    try:
        base_branch = get_current_branch(repo_root)
        workspace = setup_workspace(options, config, repo_root, plan_file, plan.id)
        base_dir, plan_file = workspace.path, workspace.plan_file

        if not options.dry_run:
            WorkspaceLock.acquire_lock(base_dir, command, stale_timeout_hours=config.lock_stale_hours)
            resources.lock_workspace = base_dir

        if is_tunnel_active():
            resources.tunnel_client = connect_tunnel_from_env()
        else:
            resources.tunnel_session = start_tunnel_session()

        if options.log_to_file and not options.dry_run:
            log_path = Path(plan_file).with_name(Path(plan_file).stem + LOG_FILE_SUFFIX)
            output.open_log_file(str(log_path))
            resources.log_file_open = True

        if executor is None:
            executor = build_executor(
                options.executor,
                model=options.model,
                base_dir=base_dir,
                timeout_seconds=config.executor_timeout_seconds,
            )

        if options.summary_enabled and not options.dry_run:
            resources.summary = SummaryCollector(plan.id, plan.display_title, plan_file, outcome.mode, base_dir)
            resources.summary.start()

        ctx = AgentContext(
            store=store,
            config=config,
            options=options,
            executor=executor,
            plan_file=plan_file,
            base_dir=base_dir,
            base_branch=base_branch,
            summary=resources.summary,
        )
        log(f"Executing plan {plan.id}: {plan.display_title} ({outcome.mode} mode, executor: {executor.name})")

        if outcome.mode == MODE_STUB:
            outcome.plan_complete = execute_stub_plan(ctx)
        elif outcome.mode == MODE_SERIAL:
            outcome.plan_complete = execute_serial_mode(ctx)
        else:
            outcome.plan_complete = execute_batch_mode(ctx)
        outcome.success = True
    except BaseException as e:
        outcome.error = e
        raise
    finally:
        finalize_run(outcome, resources, config, options, plan)
    return outcome


# ─── Cleanup ─────────────────────────────────────────────────────────


def _flush_summary(outcome: ExecutionOutcome, resources: RunResources, options: ExecutionOptions) -> None:
    summary = resources.summary
    if summary is None:
        return
    summary.end()
    summary.set_plan_completed(outcome.plan_complete)
    if outcome.error is not None:
        summary.add_error(str(outcome.error) or type(outcome.error).__name__)
    summary.track_file_changes()
    write_or_display_summary(summary.summary, options.summary_file)


def _notify(outcome: ExecutionOutcome, config: AgentConfig, options: ExecutionOptions, plan: Plan,
            resources: RunResources) -> None:
    if options.dry_run:
        return
    error_message = str(outcome.error) if outcome.error is not None else None
    send_notification(config.notifications, Notification(
        command="agent",
        status="success" if outcome.success else "error",
        message=format_agent_message(plan.display_title, outcome.success, error_message),
        plan_id=plan.id,
        plan_title=plan.display_title,
        plan_file=plan.filename or "",
        workspace=resources.lock_workspace or "",
    ))


def _close_tunnel(resources: RunResources) -> None:
    if resources.tunnel_client is not None:
        output.set_tunnel_client(None)
        resources.tunnel_client.close()
        resources.tunnel_client = None
    if resources.tunnel_session is not None:
        resources.tunnel_session.close()
        resources.tunnel_session = None


def _release_lock(resources: RunResources) -> None:
    if resources.lock_workspace is not None:
        WorkspaceLock.release_lock(resources.lock_workspace)
        resources.lock_workspace = None


def _close_log(resources: RunResources) -> None:
    if resources.log_file_open:
        output.close_log_file()
        resources.log_file_open = False


def finalize_run(
    outcome: ExecutionOutcome,
    resources: RunResources,
    config: AgentConfig,
    options: ExecutionOptions,
    plan: Plan,
) -> None:
    """Release everything a run acquired. Each step runs even if an earlier one fails."""
    steps: list[tuple[str, Callable[[], None]]] = [
        ("summary", lambda: _flush_summary(outcome, resources, options)),
        ("notification", lambda: _notify(outcome, config, options, plan, resources)),
        ("workspace lock", lambda: _release_lock(resources)),
        ("output tunnel", lambda: _close_tunnel(resources)),
        ("log file", lambda: _close_log(resources)),
    ]
    for name, step in steps:
        try:
            step()
        except Exception as e:
            warn(f"Cleanup of {name} failed: {e}")


# ─── Shared loop pieces ──────────────────────────────────────────────


def start_iteration(ctx: AgentContext) -> Plan:
    """Re-read the plan; a pending plan (and its parent) becomes in_progress.

    The branch the work starts from (the branch checked out in the main
    repository) is recorded the first time.
    """
    plan = ctx.store.read_plan(ctx.plan_file)
    if plan.status == STATUS_PENDING and not ctx.options.dry_run:
        plan.status = STATUS_IN_PROGRESS
        if not plan.base_branch:
            plan.base_branch = ctx.base_branch or get_current_branch(ctx.base_dir)
        ctx.store.write_plan(ctx.plan_file, plan)
        verbose_log(f"Plan {plan.id} marked in_progress", "ENGINE")
        if plan.parent is not None:
            try:
                mark_parent_in_progress(ctx.store, plan.parent)
            except Exception as e:
                warn(f"Could not update parent plan {plan.parent}: {e}")
    return plan


def run_executor(ctx: AgentContext, prompt: str, title: str, plan: Plan, batch_mode: bool = False) -> Optional[ExecutorOutput]:
    """Run the executor once, recording the result. Raises AgentExecutionError on any failure."""
    executor_name = ctx.executor.name
    send_structured({
        "type": "agent_step_start",
        "title": title,
        "executor": executor_name,
        "iteration": ctx.iterations,
    })
    info = ExecutePlanInfo(
        plan_id=plan.id,
        plan_title=plan.display_title,
        plan_file_path=ctx.plan_file,
        execution_mode=ctx.options.execution_mode,
        batch_mode=batch_mode,
    )
    start_time = time.time()
    try:
        result = ctx.executor.execute(prompt, info)
    except Exception as e:
        duration = time.time() - start_time
        _record_step(ctx, StepResult(title, executor_name, False, duration, error=str(e), iteration=ctx.iterations))
        send_structured({"type": "agent_step_end", "title": title, "success": False, "duration_seconds": duration})
        raise AgentExecutionError(f"Executor failed during '{title}': {e}") from e
    finally:
        # The executor may have edited any plan file
        ctx.store.cache.invalidate()

    duration = time.time() - start_time
    ok = result is None or result.success is not False
    content = result.content if result is not None else ""

    if not ok:
        details = result.failure_details or FailureDetails(problems=content or "Executor reported failure")
        send_structured({
            "type": "failure_report",
            "summary": f"{title} failed",
            "requirements": details.requirements,
            "problems": details.problems,
            "solutions": details.solutions,
            "source_agent": details.source_agent or executor_name,
        })
        _record_step(ctx, StepResult(
            title, executor_name, False, duration,
            output=content, error=details.problems or "Executor reported failure", iteration=ctx.iterations,
        ))
        send_structured({"type": "agent_step_end", "title": title, "success": False, "duration_seconds": duration})
        raise AgentExecutionError(f"Executor reported failure during '{title}': {details.problems}")

    _record_step(ctx, StepResult(title, executor_name, True, duration, output=content, iteration=ctx.iterations))
    send_structured({"type": "agent_step_end", "title": title, "success": True, "duration_seconds": duration})
    return result


def _record_step(ctx: AgentContext, result: StepResult) -> None:
    if ctx.summary is not None:
        ctx.summary.add_step_result(result)


def run_post_apply_commands(ctx: AgentContext, title: str) -> None:
    for command in ctx.config.post_apply_commands:
        if not execute_post_apply_command(command, ctx.base_dir):
            raise AgentExecutionError(f"Post-apply command '{command.title}' failed after '{title}'")


def _update_docs_after_iteration(ctx: AgentContext, task_title: str) -> None:
    if ctx.options.update_docs_mode != UPDATE_DOCS_AFTER_ITERATION:
        return
    if run_update_docs(ctx.executor, ctx.store, ctx.plan_file, task_title, ctx.options.execution_mode):
        run_post_apply_commands(ctx, "documentation update")


def complete_plan(ctx: AgentContext) -> str:
    """Run the completion passes for a plan whose tasks are all done.

    Returns COMPLETION_CONTINUE if the final review added tasks and the user
    chose to keep going, COMPLETION_STOPPED if they declined, otherwise
    COMPLETION_DONE.
    """
    if ctx.options.update_docs_mode == UPDATE_DOCS_AFTER_COMPLETION:
        if run_update_docs(ctx.executor, ctx.store, ctx.plan_file, None, ctx.options.execution_mode):
            run_post_apply_commands(ctx, "documentation update")

    trivial_run = ctx.initially_done == 0 and ctx.iterations == 1
    if ctx.options.final_review and not trivial_run:
        review = run_final_review(ctx.executor, ctx.store, ctx.plan_file, ctx.options.execution_mode)
        if review.tasks_appended:
            ctx.store.set_plan_status(ctx.plan_file, STATUS_IN_PROGRESS)
            if output.prompt_confirm(
                f"Final review added {review.tasks_appended} task(s). Continue executing them?", default=True
            ):
                return COMPLETION_CONTINUE
            log("Stopping with review tasks still pending")
            return COMPLETION_STOPPED
    elif not ctx.options.final_review:
        verbose_log("Final review disabled", "ENGINE")

    if ctx.options.apply_lessons:
        run_update_lessons(ctx.executor, ctx.store, ctx.plan_file, ctx.options.execution_mode)
    return COMPLETION_DONE


def _ensure_plan_done(ctx: AgentContext) -> None:
    plan = ctx.store.read_plan(ctx.plan_file)
    if plan.status != STATUS_DONE:
        ctx.store.set_plan_status(ctx.plan_file, STATUS_DONE)
    if plan.parent is not None:
        try:
            check_and_mark_parent_done(ctx.store, plan.parent)
        except Exception as e:
            warn(f"Could not update parent plan {plan.parent}: {e}")


# ─── Serial mode ─────────────────────────────────────────────────────


def execute_serial_mode(ctx: AgentContext) -> bool:
    """Execute one step or simple task per iteration. Returns True if the plan completed."""
    ctx.initially_done = ctx.store.read_plan(ctx.plan_file).count_done_tasks()
    max_steps = ctx.options.max_steps

    while max_steps is None or ctx.iterations < max_steps:
        plan = start_iteration(ctx)
        item = find_next_actionable_item(plan)
        if item is None:
            log("All tasks are already complete")
            _ensure_plan_done(ctx)
            return True

        if isinstance(item, StepItem):
            title = f"Task {item.task_index + 1}, step {item.step_index + 1}: {item.task.title}"
            prompt = build_step_prompt(plan, ctx.plan_file, item)
        else:
            title = f"Task {item.task_index + 1}: {item.task.title}"
            prompt = build_task_prompt(plan, ctx.plan_file, item.task_index, item.task)

        if ctx.options.dry_run:
            log(f"[DRY RUN] Would execute {title}:\n{prompt}")
            return False

        ctx.iterations += 1
        send_structured({"type": "agent_iteration_start", "iteration": ctx.iterations, "title": title})
        run_executor(ctx, prompt, title, plan)
        run_post_apply_commands(ctx, title)
        _update_docs_after_iteration(ctx, item.task.title)

        try:
            if isinstance(item, StepItem):
                result = mark_step_done(
                    ctx.store, ctx.plan_file, item.task_index, item.step_index,
                    commit=ctx.options.commit, base_dir=ctx.base_dir,
                )
            else:
                result = mark_task_done(
                    ctx.store, ctx.plan_file, item.task_index,
                    commit=ctx.options.commit, base_dir=ctx.base_dir,
                )
        except Exception as e:
            raise AgentExecutionError(f"Failed to mark '{title}' done: {e}") from e

        send_structured({"type": "task_completion", "title": title, "plan_complete": result.plan_complete})

        if result.plan_complete:
            state = complete_plan(ctx)
            if state == COMPLETION_CONTINUE:
                continue
            return state == COMPLETION_DONE

    log(f"Reached maximum steps ({max_steps})")
    return False


# ─── Batch mode ──────────────────────────────────────────────────────


def execute_batch_mode(ctx: AgentContext) -> bool:
    """Hand all incomplete tasks to the executor per iteration. Returns True if the plan completed."""
    ctx.initially_done = ctx.store.read_plan(ctx.plan_file).count_done_tasks()
    limit = ctx.options.batch_iteration_limit

    while ctx.iterations < limit:
        plan = start_iteration(ctx)
        incomplete = get_all_incomplete_tasks(plan)
        if not incomplete:
            log("All tasks are already complete")
            _ensure_plan_done(ctx)
            return True

        prompt = build_batch_prompt(plan, ctx.plan_file, incomplete)
        if ctx.options.dry_run:
            log(f"[DRY RUN] Would execute batch of {len(incomplete)} task(s):\n{prompt}")
            return False

        ctx.iterations += 1
        if ctx.summary is not None:
            ctx.summary.set_batch_iterations(ctx.iterations)
        title = f"Batch Iteration {ctx.iterations}"
        send_structured({
            "type": "agent_iteration_start",
            "iteration": ctx.iterations,
            "title": f"{title} ({len(incomplete)} incomplete task(s))",
        })
        run_executor(ctx, prompt, title, plan, batch_mode=True)
        run_post_apply_commands(ctx, title)

        plan = ctx.store.read_plan(ctx.plan_file)
        remaining = len(get_all_incomplete_tasks(plan))
        send_structured({
            "type": "workflow_progress",
            "message": f"{len(incomplete) - remaining} task(s) completed, {remaining} remaining",
        })

        if remaining:
            _update_docs_after_iteration(ctx, title)
            continue

        ctx.store.set_plan_status(ctx.plan_file, STATUS_DONE)
        state = complete_plan(ctx)
        if state == COMPLETION_CONTINUE:
            continue
        if state == COMPLETION_STOPPED:
            return False
        _ensure_plan_done(ctx)
        if ctx.options.commit:
            commit_all(f"{plan.display_title}: plan complete", cwd=ctx.base_dir)
        return True

    warn(f"Reached maximum batch iterations ({limit}) with tasks remaining")
    return False


# ─── Stub plans ──────────────────────────────────────────────────────


def execute_stub_plan(ctx: AgentContext) -> bool:
    """Execute a plan that has no tasks with one direct prompt."""
    plan = start_iteration(ctx)
    prompt = build_stub_plan_prompt(plan, ctx.plan_file)
    if ctx.options.dry_run:
        log(f"[DRY RUN] Would execute stub plan:\n{prompt}")
        return False

    ctx.iterations = 1
    send_structured({"type": "agent_iteration_start", "iteration": 1, "title": plan.display_title})
    run_executor(ctx, prompt, plan.display_title, plan)
    run_post_apply_commands(ctx, plan.display_title)

    if ctx.options.update_docs_mode in (UPDATE_DOCS_AFTER_ITERATION, UPDATE_DOCS_AFTER_COMPLETION):
        if run_update_docs(ctx.executor, ctx.store, ctx.plan_file, None, ctx.options.execution_mode):
            run_post_apply_commands(ctx, "documentation update")
    if ctx.options.apply_lessons:
        run_update_lessons(ctx.executor, ctx.store, ctx.plan_file, ctx.options.execution_mode)

    _ensure_plan_done(ctx)
    send_structured({"type": "task_completion", "title": plan.display_title, "plan_complete": True})
    if ctx.options.commit:
        commit_all(f"{plan.display_title}: plan complete", cwd=ctx.base_dir)
    return True
