"""
Actionable item resolution.

Pure functions over a Plan: no I/O, no mutation.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from typing import Optional

from .models import ActionableItem, Plan, StepItem, Task, TaskItem


def find_next_actionable_item(plan: Plan) -> Optional[ActionableItem]:
    """Return the next unit of work in the plan, or None if every task is done.

    Tasks are scanned in array order and done tasks are skipped. The first
    incomplete task decides the result:
    - without steps it is returned as a TaskItem
    - with steps, its first incomplete step is returned as a StepItem
    - with steps that are all done, the task itself is returned as a TaskItem
      so it can be closed out through the task path
    """
    for task_index, task in enumerate(plan.tasks):
        if task.done:
            continue
        if not task.steps:
            return TaskItem(task_index=task_index, task=task)
        for step_index, step in enumerate(task.steps):
            if not step.done:
                return StepItem(
                    task_index=task_index,
                    step_index=step_index,
                    task=task,
                    step=step,
                )
        return TaskItem(task_index=task_index, task=task)
    return None


def get_all_incomplete_tasks(plan: Plan) -> list[tuple[int, Task]]:
    """Return (task_index, task) for every task not marked done, in order."""
    return [(i, task) for i, task in enumerate(plan.tasks) if not task.done]


def find_pending_task(plan: Plan) -> Optional[tuple[int, Task]]:
    """Return the first task not marked done, or None."""
    for i, task in enumerate(plan.tasks):
        if not task.done:
            return i, task
    return None
