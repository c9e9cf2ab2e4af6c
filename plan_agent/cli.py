"""
Command line interface.

Usage:
    plan-agent agent [PLAN | --next | --current | --latest | --next-ready ID] [options]
    plan-agent ready [--sort FIELD] [--include-maybe]
    plan-agent lock {status,acquire,release} [WORKSPACE] [--force] [--owner NAME]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import sys
from typing import Optional

from . import output
from .config import (
    CONFIG_PATH,
    EXECUTION_MODES,
    UPDATE_DOCS_MODES,
    AgentConfig,
    load_agent_config,
    resolve_execution_options,
)
from .dependencies import find_next_ready_dependency, resolve_plan_id
from .engine import AgentExecutionError, run_agent
from .executors import EXECUTORS, ExecutorError
from .output import error, log
from .plans import (
    PLAN_REF_CURRENT,
    PLAN_REF_LATEST,
    PLAN_REF_NEXT,
    READY_SORT_FIELDS,
    DuplicatePlanIdError,
    PlanFileError,
    PlanNotFoundError,
    PlanStore,
)
from .workspace import WorkspaceError
from .workspace_lock import LOCK_TYPE_PERSISTENT, WorkspaceLock, WorkspaceLockError

EXIT_OK = 0
EXIT_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plan-agent",
        description="Execute YAML implementation plans with coding agents"
    )
    parser.add_argument(
        "--config", default=CONFIG_PATH,
        help=f"Project config file (default: {CONFIG_PATH})"
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Show detailed execution logs"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # agent
    agent = subparsers.add_parser("agent", help="Execute a plan")
    agent.add_argument("plan", nargs="?", help="Plan id or plan file path")
    selector = agent.add_mutually_exclusive_group()
    selector.add_argument("--next", action="store_true", help="Run the highest priority ready plan")
    selector.add_argument("--current", action="store_true", help="Run the in-progress plan (or the next ready one)")
    selector.add_argument("--latest", action="store_true", help="Run the most recently created plan")
    selector.add_argument(
        "--next-ready", metavar="ID",
        help="Run the first ready dependency of the given parent plan (id or file)"
    )
    agent.add_argument("--serial-tasks", action="store_true", help="Execute one step or task per iteration")
    agent.add_argument("--steps", type=int, default=None, metavar="N", help="Maximum number of iterations")
    agent.add_argument(
        "--executor", choices=sorted(EXECUTORS), default=None,
        help="Executor to run prompts with"
    )
    agent.add_argument("--model", default=None, help="Model passed to the executor")
    agent.add_argument("--mode", choices=EXECUTION_MODES, default=None, help="Execution mode hint for the executor")
    agent.add_argument("--dry-run", action="store_true", help="Print the next prompt without executing")
    agent.add_argument("--workspace", metavar="NAME", default=None, help="Run in the named workspace")
    agent.add_argument("--auto-workspace", action="store_true", help="Pick an unlocked workspace or create one")
    agent.add_argument("--new-workspace", action="store_true", help="Always create a new workspace")
    agent.add_argument(
        "--no-final-review", dest="final_review", action="store_false",
        help="Skip the review pass after all tasks are done"
    )
    agent.add_argument("--apply-lessons", action="store_true", help="Record lessons learned when the plan completes")
    agent.add_argument("--update-docs", choices=UPDATE_DOCS_MODES, default=None, help="When to update documentation")
    agent.add_argument("--summary-file", metavar="PATH", default=None, help="Write the execution summary to a file")
    agent.add_argument("--no-summary", action="store_true", help="Do not produce an execution summary")
    agent.add_argument("--no-log", action="store_true", help="Do not copy output to a log file")
    agent.add_argument("--commit", action="store_true", help="Commit after each completed task")
    agent.add_argument("--non-interactive", action="store_true", help="Never prompt; use defaults")

    # ready
    ready = subparsers.add_parser("ready", help="List plans that are ready to work on")
    ready.add_argument("--sort", choices=READY_SORT_FIELDS, default="priority")
    ready.add_argument("--include-maybe", action="store_true", help="Include plans with priority 'maybe'")

    # lock
    lock = subparsers.add_parser("lock", help="Inspect or manage a workspace lock")
    lock.add_argument("action", choices=["status", "acquire", "release"])
    lock.add_argument("workspace", nargs="?", default=".", help="Workspace directory (default: .)")
    lock.add_argument("--force", action="store_true", help="Release a lock held by another process")
    lock.add_argument("--owner", default=None, help="Owner recorded in a persistent lock")

    return parser


def resolve_agent_plan(args: argparse.Namespace, store: PlanStore) -> Optional[str]:
    """Return the plan file to run, or None if there is nothing to do."""
    if args.next_ready:
        parent_id = resolve_plan_id(args.next_ready, store)
        result = find_next_ready_dependency(parent_id, store)
        log(result.message)
        if result.plan is None:
            return None
        return result.plan.filename
    if args.next:
        return store.resolve_plan_file(PLAN_REF_NEXT)
    if args.current:
        return store.resolve_plan_file(PLAN_REF_CURRENT)
    if args.latest:
        return store.resolve_plan_file(PLAN_REF_LATEST)
    if args.plan:
        return store.resolve_plan_file(args.plan)
    raise PlanNotFoundError("No plan given. Pass a plan id or file, or one of --next, --current, --latest, --next-ready")


def cmd_agent(args: argparse.Namespace, config: AgentConfig, store: PlanStore) -> int:
    options = resolve_execution_options(args, config)
    output.set_non_interactive(options.non_interactive)
    plan_file = resolve_agent_plan(args, store)
    if plan_file is None:
        return EXIT_OK
    try:
        outcome = run_agent(plan_file, store, config, options)
    except AgentExecutionError as e:
        error(str(e))
        error("Agent stopped due to error.")
        return EXIT_ERROR
    if outcome.plan_complete:
        log("Plan complete!")
    return EXIT_OK


def cmd_ready(args: argparse.Namespace, store: PlanStore) -> int:
    plans = store.list_ready_plans(sort_by=args.sort, include_maybe=args.include_maybe)
    if not plans:
        log("No ready plans found")
        return EXIT_OK
    log(f"{len(plans)} ready plan(s):")
    for plan in plans:
        priority = plan.priority or "-"
        log(f"  {str(plan.id):>5}  [{priority:<6}]  {plan.display_title}  ({len(plan.tasks)} tasks)")
    return EXIT_OK


def cmd_lock(args: argparse.Namespace, config: AgentConfig) -> int:
    workspace = os.path.abspath(args.workspace)
    if args.action == "status":
        info = WorkspaceLock.get_lock_info(workspace)
        if info is None:
            log(f"{workspace}: not locked")
            return EXIT_OK
        stale = WorkspaceLock.is_lock_stale(info, config.lock_stale_hours)
        log(f"{workspace}: locked ({info.type}) by {info.describe()}" + (" [STALE]" if stale else ""))
        return EXIT_OK
    if args.action == "acquire":
        info = WorkspaceLock.acquire_lock(
            workspace, "plan-agent lock acquire", lock_type=LOCK_TYPE_PERSISTENT,
            owner=args.owner, stale_timeout_hours=config.lock_stale_hours,
        )
        log(f"{workspace}: persistent lock acquired ({info.command})")
        return EXIT_OK
    if WorkspaceLock.release_lock(workspace, force=args.force):
        log(f"{workspace}: lock released")
        return EXIT_OK
    error(f"{workspace}: no lock released (not locked, or held by another process; use --force)")
    return EXIT_ERROR


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    output.set_verbose(args.verbose)

    config = load_agent_config(args.config)
    store = PlanStore(config.resolve_tasks_dir())
    output.verbose_log(f"Tasks directory: {store.tasks_dir}", "CONFIG")

    try:
        if args.command == "agent":
            code = cmd_agent(args, config, store)
        elif args.command == "ready":
            code = cmd_ready(args, store)
        else:
            code = cmd_lock(args, config)
    except (PlanNotFoundError, PlanFileError, DuplicatePlanIdError, WorkspaceLockError,
            WorkspaceError, ExecutorError, ValueError, OSError) as e:
        error(str(e))
        code = EXIT_ERROR
    sys.exit(code)


if __name__ == "__main__":
    main()
