"""
Prompt text sent to executors.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from typing import Optional

from .models import Plan, StepItem, Task

FAILURE_PROTOCOL = """If you cannot complete the work, end your final message with:

FAILED: <one line summary>
Requirements:
<what was asked>
Problems:
<what prevented completion>
Solutions:
<what could be done next>
"""


def _plan_context(plan: Plan, plan_file: str) -> str:
    lines = [f"## Plan: {plan.display_title}", f"Plan file: {plan_file}"]
    if plan.goal:
        lines.append(f"\nGoal: {plan.goal}")
    if plan.details:
        lines.append(f"\nDetails:\n{plan.details}")
    return "\n".join(lines)


def _task_block(number: int, task: Task) -> str:
    text = f"Task {number}: {task.title}"
    if task.description:
        text += f"\nDescription: {task.description}"
    if task.files:
        text += "\nRelevant files: " + ", ".join(task.files)
    return text


def build_task_prompt(plan: Plan, plan_file: str, task_index: int, task: Task) -> str:
    """Prompt for a simple task executed as one unit."""
    return f"""{_plan_context(plan, plan_file)}

## Your Task
{_task_block(task_index + 1, task)}

Complete this task. Do not edit the plan file; progress is recorded for you.

{FAILURE_PROTOCOL}"""


def build_step_prompt(plan: Plan, plan_file: str, item: StepItem) -> str:
    """Prompt for one step of a multi-step task, showing the completed steps."""
    task = item.task
    done_steps = [s.prompt for s in task.steps[:item.step_index] if s.done]
    previous = ""
    if done_steps:
        previous = "\n## Completed steps of this task\n" + "\n".join(f"- {s}" for s in done_steps) + "\n"
    return f"""{_plan_context(plan, plan_file)}

## Current Task
{_task_block(item.task_index + 1, task)}
{previous}
## Your Step ({item.step_index + 1} of {len(task.steps)})
{item.step.prompt}

Complete only this step. Do not edit the plan file; progress is recorded for you.

{FAILURE_PROTOCOL}"""


def build_batch_prompt(plan: Plan, plan_file: str, incomplete: list[tuple[int, Task]]) -> str:
    """Prompt listing every incomplete task; the agent picks a subset and marks them done."""
    tasks_text = "\n\n".join(_task_block(i + 1, task) for i, task in incomplete)
    return f"""{_plan_context(plan, plan_file)}

## Incomplete Tasks
{tasks_text}

Please select and complete a logical subset of the incomplete tasks above that
make sense to work on together. When a task is finished, set `done: true` on
that task in the plan file {plan_file}. Do not mark a task done unless it is
fully complete.

{FAILURE_PROTOCOL}"""


def build_stub_plan_prompt(plan: Plan, plan_file: str) -> str:
    """Prompt for a plan that has a goal but no task breakdown."""
    return f"""{_plan_context(plan, plan_file)}

This plan has no task breakdown. Implement the goal described above directly.

{FAILURE_PROTOCOL}"""


def build_review_prompt(plan: Plan, plan_file: str) -> str:
    return f"""{_plan_context(plan, plan_file)}

All tasks in this plan are marked done. Review the changes made for this plan
against its goal. If you find problems that need more work, append new tasks
(with `done: false`) to the `tasks` list in {plan_file}. If everything is in
order, do not modify the plan file."""


def build_update_docs_prompt(plan: Plan, plan_file: str, task_title: Optional[str] = None) -> str:
    scope = f"the work just completed for task \"{task_title}\"" if task_title else "the completed plan"
    return f"""{_plan_context(plan, plan_file)}

Update the project documentation to reflect {scope}. Only change documentation
files. Keep changes minimal and accurate."""


def build_lessons_prompt(plan: Plan, plan_file: str) -> str:
    return f"""{_plan_context(plan, plan_file)}

The plan is complete. Record any lessons learned while implementing it that
would help future work (surprises, pitfalls, conventions discovered) in the
project's documentation or agent instructions. Do not restate what the code
already makes obvious. If there is nothing worth recording, change nothing."""
