"""
Plan, task and step data model.

Plans are stored as YAML documents. These dataclasses hold the parsed form;
from_dict/to_dict keep unknown keys so that rewriting a plan never drops data
written by other tools.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass, field
from typing import Optional, Union

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_DONE = "done"
STATUS_CANCELLED = "cancelled"
STATUS_DEFERRED = "deferred"

PLAN_STATUSES = (
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_DONE,
    STATUS_CANCELLED,
    STATUS_DEFERRED,
)

# Lower index sorts first
PRIORITY_ORDER = ["urgent", "high", "medium", "low", "maybe"]

PlanId = Union[int, str]

_STEP_KEYS = ("prompt", "done")
_TASK_KEYS = ("title", "description", "done", "steps", "files")
_PLAN_KEYS = (
    "id", "uuid", "title", "goal", "details", "status", "priority", "parent",
    "dependencies", "tasks", "created_at", "updated_at", "base_branch",
    "changed_files",
)


def _opt_str(value) -> Optional[str]:
    # Unquoted YAML timestamps load as datetime objects
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass
class Step:
    prompt: str
    done: bool = False
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Step":
        return cls(
            prompt=str(data.get("prompt", "")),
            done=bool(data.get("done", False)),
            extra={k: v for k, v in data.items() if k not in _STEP_KEYS},
        )

    def to_dict(self) -> dict:
        result: dict = {"prompt": self.prompt, "done": self.done}
        result.update(self.extra)
        return result


@dataclass
class Task:
    """A unit of work in a plan.

    A task without steps is a simple task executed as one unit. A task with
    steps is executed step by step in array order.
    """
    title: str
    description: str = ""
    done: bool = False
    steps: list[Step] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @property
    def is_simple(self) -> bool:
        return not self.steps

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            title=str(data.get("title", "")),
            description=str(data.get("description", "") or ""),
            done=bool(data.get("done", False)),
            steps=[Step.from_dict(s) for s in data.get("steps") or [] if isinstance(s, dict)],
            files=[str(f) for f in data.get("files") or []],
            extra={k: v for k, v in data.items() if k not in _TASK_KEYS},
        )

    def to_dict(self) -> dict:
        result: dict = {"title": self.title, "description": self.description, "done": self.done}
        if self.files:
            result["files"] = list(self.files)
        result.update(self.extra)
        if self.steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        return result


@dataclass
class Plan:
    """A goal broken into tasks, persisted as one YAML file.

    `filename` is the file the plan was read from. It is not serialized.
    """
    id: Optional[PlanId] = None
    title: str = ""
    goal: str = ""
    details: str = ""
    status: str = STATUS_PENDING
    priority: Optional[str] = None
    parent: Optional[PlanId] = None
    dependencies: list[PlanId] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    uuid: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    base_branch: Optional[str] = None
    changed_files: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)
    filename: Optional[str] = field(default=None, compare=False)

    @property
    def is_stub(self) -> bool:
        return not self.tasks

    @property
    def display_title(self) -> str:
        return self.title or self.goal or f"Plan {self.id}"

    def count_done_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.done)

    @classmethod
    def from_dict(cls, data: dict, filename: Optional[str] = None) -> "Plan":
        return cls(
            id=data.get("id"),
            uuid=data.get("uuid"),
            title=str(data.get("title", "") or ""),
            goal=str(data.get("goal", "") or ""),
            details=str(data.get("details", "") or ""),
            status=str(data.get("status") or STATUS_PENDING),
            priority=data.get("priority"),
            parent=data.get("parent"),
            dependencies=list(data.get("dependencies") or []),
            tasks=[Task.from_dict(t) for t in data.get("tasks") or [] if isinstance(t, dict)],
            created_at=_opt_str(data.get("created_at")),
            updated_at=_opt_str(data.get("updated_at")),
            base_branch=data.get("base_branch"),
            changed_files=list(data.get("changed_files") or []),
            extra={k: v for k, v in data.items() if k not in _PLAN_KEYS},
            filename=filename,
        )

    def to_dict(self) -> dict:
        result: dict = {}
        if self.id is not None:
            result["id"] = self.id
        if self.uuid:
            result["uuid"] = self.uuid
        result["title"] = self.title
        result["goal"] = self.goal
        if self.details:
            result["details"] = self.details
        result["status"] = self.status
        if self.priority:
            result["priority"] = self.priority
        if self.parent is not None:
            result["parent"] = self.parent
        if self.dependencies:
            result["dependencies"] = list(self.dependencies)
        if self.base_branch:
            result["base_branch"] = self.base_branch
        if self.created_at:
            result["created_at"] = self.created_at
        if self.updated_at:
            result["updated_at"] = self.updated_at
        if self.changed_files:
            result["changed_files"] = list(self.changed_files)
        result.update(self.extra)
        result["tasks"] = [t.to_dict() for t in self.tasks]
        return result


@dataclass(frozen=True)
class TaskItem:
    """The next unit of work is a whole simple task."""
    task_index: int
    task: Task
    type: str = "task"


@dataclass(frozen=True)
class StepItem:
    """The next unit of work is one step of a task."""
    task_index: int
    step_index: int
    task: Task
    step: Step
    type: str = "step"


ActionableItem = Union[TaskItem, StepItem]


def ids_equal(a: Optional[PlanId], b: Optional[PlanId]) -> bool:
    """Compare plan ids, treating 3 and "3" as the same plan."""
    if a is None or b is None:
        return False
    return str(a) == str(b)
