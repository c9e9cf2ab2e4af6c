"""
Marking steps, tasks and plans done.

Every function re-reads the plan file before changing it so that edits made
by an executor during its run are never overwritten with stale data.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .actions import commit_all, get_changed_files_on_branch, get_git_root
from .find_next import find_next_actionable_item, find_pending_task
from .models import STATUS_DONE, STATUS_IN_PROGRESS, Plan, PlanId, StepItem, ids_equal
from .output import log, verbose_log, warn
from .plans import PlanStore


@dataclass
class MarkDoneResult:
    plan_complete: bool
    message: str


def _tasks_exclude_paths(store: PlanStore, plan_path: str, git_root: str) -> list[str]:
    """The tasks directories, relative to git_root, that hold plan files."""
    paths = []
    for directory in (store.tasks_dir, str(Path(plan_path).parent)):
        relative = os.path.relpath(Path(directory).resolve(), Path(git_root).resolve())
        if relative != "." and not relative.startswith("..") and relative not in paths:
            paths.append(relative)
    return paths


def _record_changed_files(store: PlanStore, plan_path: str, plan: Plan, base_dir: Optional[str]) -> None:
    if not base_dir:
        return
    git_root = get_git_root(base_dir)
    if not git_root:
        return
    changed = get_changed_files_on_branch(
        git_root,
        base_branch=plan.base_branch,
        exclude_paths=_tasks_exclude_paths(store, plan_path, git_root),
    )
    if changed:
        plan.changed_files = changed


def _finish_update(
    store: PlanStore,
    plan_path: str,
    plan: Plan,
    message: str,
    commit: bool,
    base_dir: Optional[str],
) -> MarkDoneResult:
    _record_changed_files(store, plan_path, plan, base_dir)
    plan_complete = find_next_actionable_item(plan) is None
    if plan_complete:
        plan.status = STATUS_DONE
    store.write_plan(plan_path, plan)
    log(message)

    if commit:
        commit_all(f"{plan.display_title}: {message}", cwd=base_dir)

    if plan_complete and plan.parent is not None:
        try:
            check_and_mark_parent_done(store, plan.parent)
        except Exception as e:
            warn(f"Could not update parent plan {plan.parent}: {e}")

    return MarkDoneResult(plan_complete=plan_complete, message=message)


def mark_step_done(
    store: PlanStore,
    plan_path: str,
    task_index: Optional[int] = None,
    step_index: Optional[int] = None,
    commit: bool = False,
    base_dir: Optional[str] = None,
) -> MarkDoneResult:
    """Mark one step done.

    With no indices the next actionable step is used. When the last step of a
    task is marked, the task is marked done as well.
    """
    plan = store.read_plan(plan_path)

    if task_index is None or step_index is None:
        item = find_next_actionable_item(plan)
        if not isinstance(item, StepItem):
            raise ValueError(f"No pending step found in plan {plan_path}")
        task_index, step_index = item.task_index, item.step_index

    _validate_task_index(plan, task_index)
    task = plan.tasks[task_index]
    if step_index < 0 or step_index >= len(task.steps):
        raise ValueError(
            f"Invalid step index: {step_index}. Task {task_index + 1} has {len(task.steps)} steps."
        )

    task.steps[step_index].done = True
    message = f"Marked step {step_index + 1} of task {task_index + 1} done: {task.title}"
    if all(s.done for s in task.steps):
        task.done = True
        message = f"Marked task {task_index + 1} done: {task.title}"

    return _finish_update(store, plan_path, plan, message, commit, base_dir)


def mark_task_done(
    store: PlanStore,
    plan_path: str,
    task_index: Optional[int] = None,
    commit: bool = False,
    base_dir: Optional[str] = None,
) -> MarkDoneResult:
    """Mark a whole task done. With no index the first pending task is used."""
    plan = store.read_plan(plan_path)
    if task_index is None:
        pending = find_pending_task(plan)
        if pending is None:
            raise ValueError(f"No pending task found in plan {plan_path}")
        task_index = pending[0]
    _validate_task_index(plan, task_index)
    task = plan.tasks[task_index]
    task.done = True
    message = f"Marked task {task_index + 1} done: {task.title}"
    return _finish_update(store, plan_path, plan, message, commit, base_dir)


def _validate_task_index(plan: Plan, task_index: int) -> None:
    if task_index < 0 or task_index >= len(plan.tasks):
        raise ValueError(f"Invalid task index: {task_index}. Plan has {len(plan.tasks)} tasks.")


def mark_parent_in_progress(store: PlanStore, parent_id: Optional[PlanId]) -> bool:
    """Move the parent plan to in_progress unless it already is.

    Returns True if the parent was changed.
    """
    if parent_id is None:
        return False
    parent = store.get_plan(parent_id)
    if parent is None:
        warn(f"Parent plan {parent_id} not found")
        return False
    if parent.status == STATUS_IN_PROGRESS:
        return False
    store.set_plan_status(parent.filename, STATUS_IN_PROGRESS)
    log(f"Parent plan {parent_id} marked in_progress")
    return True


def check_and_mark_parent_done(store: PlanStore, parent_id: PlanId) -> bool:
    """Mark the parent done if all its children and tasks are done.

    Walks up the hierarchy. Returns True if the direct parent was marked done.
    """
    plans = store.read_all_plans(refresh=True)
    parent = plans.get(str(parent_id))
    if parent is None or parent.status == STATUS_DONE:
        return False

    children = [p for p in plans.values() if ids_equal(p.parent, parent.id)]
    if not children or any(c.status != STATUS_DONE for c in children):
        verbose_log(f"Parent plan {parent_id} still has incomplete children", "PLANS")
        return False
    if any(not t.done for t in parent.tasks):
        return False

    store.set_plan_status(parent.filename, STATUS_DONE)
    log(f"Parent plan {parent_id} marked done (all children complete)")
    if parent.parent is not None:
        check_and_mark_parent_done(store, parent.parent)
    return True
