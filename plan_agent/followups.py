"""
Follow-up passes around plan execution: documentation updates, lessons
learned, and the final review. None of them can fail the run; errors are
logged and reported back as a False / empty result.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass
from typing import Optional

from .executors import ExecutePlanInfo, Executor
from .output import error, log
from .plans import PlanStore
from .prompts import build_lessons_prompt, build_review_prompt, build_update_docs_prompt


@dataclass
class ReviewResult:
    ran: bool
    tasks_appended: int = 0


def _plan_info(plan, plan_file: str, execution_mode: str) -> ExecutePlanInfo:
    return ExecutePlanInfo(
        plan_id=plan.id,
        plan_title=plan.display_title,
        plan_file_path=plan_file,
        execution_mode=execution_mode,
    )


def _succeeded(result) -> bool:
    return result is None or result.success is not False


def run_update_docs(
    executor: Executor,
    store: PlanStore,
    plan_file: str,
    task_title: Optional[str] = None,
    execution_mode: str = "normal",
) -> bool:
    try:
        plan = store.read_plan(plan_file)
        log("Updating documentation...")
        result = executor.execute(
            build_update_docs_prompt(plan, plan_file, task_title),
            _plan_info(plan, plan_file, execution_mode),
        )
        if not _succeeded(result):
            error("Documentation update reported a failure")
            return False
        return True
    except Exception as e:
        error(f"Documentation update failed: {e}")
        return False


def run_update_lessons(
    executor: Executor,
    store: PlanStore,
    plan_file: str,
    execution_mode: str = "normal",
) -> bool:
    try:
        plan = store.read_plan(plan_file)
        log("Recording lessons learned...")
        result = executor.execute(build_lessons_prompt(plan, plan_file), _plan_info(plan, plan_file, execution_mode))
        if not _succeeded(result):
            error("Lessons-learned update reported a failure")
            return False
        return True
    except Exception as e:
        error(f"Lessons-learned update failed: {e}")
        return False


def run_final_review(
    executor: Executor,
    store: PlanStore,
    plan_file: str,
    execution_mode: str = "normal",
) -> ReviewResult:
    """Review the finished plan. The reviewer may append tasks to the plan file."""
    try:
        before = store.read_plan(plan_file)
        log("Running final review...")
        result = executor.execute(build_review_prompt(before, plan_file), _plan_info(before, plan_file, execution_mode))
        if not _succeeded(result):
            error("Final review reported a failure")
            return ReviewResult(ran=False)
        after = store.read_plan(plan_file)
        appended = max(0, len(after.tasks) - len(before.tasks))
        if appended:
            log(f"Final review appended {appended} task(s)")
        else:
            log("Final review found no additional work")
        return ReviewResult(ran=True, tasks_appended=appended)
    except Exception as e:
        error(f"Final review failed: {e}")
        return ReviewResult(ran=False)
