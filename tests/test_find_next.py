# tests/test_find_next.py
# Unit tests for actionable item resolution.

from plan_agent.find_next import find_next_actionable_item, find_pending_task, get_all_incomplete_tasks
from plan_agent.models import Plan, Step, StepItem, Task, TaskItem


def _make_plan_with_tasks(tasks: list[Task]) -> Plan:
    """Build a minimal plan around the given tasks."""
    return Plan(id=1, title="Test plan", goal="Test goal", tasks=tasks)


# --- find_next_actionable_item tests ---


def test_first_simple_task_is_returned_as_task_item():
    plan = _make_plan_with_tasks([Task(title="A"), Task(title="B")])
    item = find_next_actionable_item(plan)
    assert isinstance(item, TaskItem)
    assert item.task_index == 0
    assert item.type == "task"


def test_done_tasks_are_skipped():
    plan = _make_plan_with_tasks([Task(title="A", done=True), Task(title="B")])
    item = find_next_actionable_item(plan)
    assert item.task_index == 1
    assert item.task.title == "B"


def test_first_incomplete_step_is_returned():
    plan = _make_plan_with_tasks([
        Task(title="A", steps=[Step("one", done=True), Step("two"), Step("three")]),
    ])
    item = find_next_actionable_item(plan)
    assert isinstance(item, StepItem)
    assert item.task_index == 0
    assert item.step_index == 1
    assert item.step.prompt == "two"


def test_task_with_all_steps_done_but_not_marked_is_a_task_item():
    """The task is closed out through the task path instead of being skipped."""
    plan = _make_plan_with_tasks([
        Task(title="A", steps=[Step("one", done=True), Step("two", done=True)]),
        Task(title="B"),
    ])
    item = find_next_actionable_item(plan)
    assert isinstance(item, TaskItem)
    assert item.task_index == 0


def test_returns_none_when_all_tasks_done():
    plan = _make_plan_with_tasks([Task(title="A", done=True), Task(title="B", done=True)])
    assert find_next_actionable_item(plan) is None


def test_plan_without_tasks_has_no_actionable_item():
    assert find_next_actionable_item(_make_plan_with_tasks([])) is None


def test_resolution_is_deterministic_and_does_not_mutate():
    plan = _make_plan_with_tasks([Task(title="A", steps=[Step("one")]), Task(title="B")])
    before = plan.to_dict()
    first = find_next_actionable_item(plan)
    second = find_next_actionable_item(plan)
    assert first == second
    assert plan.to_dict() == before


# --- get_all_incomplete_tasks tests ---


def test_incomplete_tasks_keep_their_indices_in_order():
    plan = _make_plan_with_tasks([
        Task(title="A", done=True),
        Task(title="B"),
        Task(title="C", done=True),
        Task(title="D"),
    ])
    result = get_all_incomplete_tasks(plan)
    assert [i for i, _ in result] == [1, 3]
    assert [t.title for _, t in result] == ["B", "D"]


def test_incomplete_tasks_empty_when_plan_done():
    plan = _make_plan_with_tasks([Task(title="A", done=True)])
    assert get_all_incomplete_tasks(plan) == []


# --- find_pending_task tests ---


def test_find_pending_task():
    plan = _make_plan_with_tasks([Task(title="A", done=True), Task(title="B")])
    index, task = find_pending_task(plan)
    assert index == 1
    assert task.title == "B"
    assert find_pending_task(_make_plan_with_tasks([Task(title="A", done=True)])) is None
