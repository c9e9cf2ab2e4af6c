"""
Finding the next dependency of a parent plan that is ready to work on.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import STATUS_DONE, STATUS_IN_PROGRESS, STATUS_PENDING, Plan, PlanId
from .plans import PlanFileError, PlanNotFoundError, PlanStore


@dataclass
class ReadyDependencyResult:
    """Outcome of a ready-dependency search. plan is None when nothing is ready."""
    plan: Optional[Plan]
    message: str


def _dependencies_done(plan: Plan, plans: dict[str, Plan]) -> bool:
    for dep_id in plan.dependencies:
        dep = plans.get(str(dep_id))
        if dep is None or dep.status != STATUS_DONE:
            return False
    return True


def find_next_ready_dependency(parent_id: PlanId, store: PlanStore) -> ReadyDependencyResult:
    """Return the first direct dependency of the parent that is ready.

    Ready means pending or in_progress with every one of its own
    dependencies done. Candidates are checked in the order the parent lists
    them. Never raises for a missing parent or tasks directory.
    """
    if not Path(store.tasks_dir).is_dir():
        return ReadyDependencyResult(
            plan=None,
            message=f"Directory not found: {store.tasks_dir}\n→ Check the path is correct and that you have read permissions",
        )

    plans = store.read_all_plans()
    parent = plans.get(str(parent_id))
    if parent is None:
        return ReadyDependencyResult(
            plan=None,
            message=f"Plan not found: {parent_id}\n→ Check the plan ID is correct",
        )

    if not parent.dependencies:
        return ReadyDependencyResult(
            plan=None,
            message=f"No dependencies found for this plan\n→ Plan {parent_id} can be worked on directly",
        )

    candidates = [plans[str(d)] for d in parent.dependencies if str(d) in plans]
    if candidates and all(c.status == STATUS_DONE for c in candidates):
        return ReadyDependencyResult(
            plan=None,
            message=f"All dependencies are complete\n→ Ready to work on the parent plan ({parent_id})",
        )

    for candidate in candidates:
        if candidate.status not in (STATUS_PENDING, STATUS_IN_PROGRESS):
            continue
        if not _dependencies_done(candidate, plans):
            continue
        if candidate.status == STATUS_IN_PROGRESS:
            message = f"Found in-progress plan: {candidate.display_title} ({candidate.id})"
        else:
            message = f"Found ready plan: {candidate.display_title} ({candidate.id})"
        return ReadyDependencyResult(plan=candidate, message=message)

    blocked = sum(
        1 for c in candidates
        if c.status in (STATUS_PENDING, STATUS_IN_PROGRESS) and not _dependencies_done(c, plans)
    )
    message = "No ready dependencies found"
    if blocked:
        message += f"\n→ {blocked} dependencies are blocked by incomplete prerequisites"
    return ReadyDependencyResult(plan=None, message=message)


def resolve_plan_id(ref: str, store: PlanStore) -> PlanId:
    """Turn a numeric id or a plan file reference into the plan's numeric id."""
    ref = str(ref).strip()
    if ref.isdigit():
        return int(ref)
    try:
        path = store.resolve_plan_file(ref)
        plan = store.read_plan(path)
    except (PlanNotFoundError, PlanFileError) as e:
        raise ValueError(str(e))
    if not isinstance(plan.id, int):
        raise ValueError(f"Plan file {ref} does not have a valid numeric ID")
    return plan.id
