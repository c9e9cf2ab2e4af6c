"""
Plan file storage.

Plans are YAML files under the tasks directory. PlanStore reads them all,
keyed by id, through an explicit PlanCache that is invalidated on every
write made through the store.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml

from .models import (
    PRIORITY_ORDER,
    STATUS_DONE,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Plan,
    PlanId,
)
from .output import verbose_log, warn

PLAN_FILE_SUFFIXES = (".yml", ".yaml")

PLAN_REF_NEXT = "next"
PLAN_REF_CURRENT = "current"
PLAN_REF_LATEST = "latest"

READY_SORT_FIELDS = ("priority", "id", "title", "created", "updated")


class PlanFileError(Exception):
    """A plan file is missing or cannot be parsed."""


class PlanNotFoundError(Exception):
    """A plan reference does not match any file or id."""


class DuplicatePlanIdError(Exception):
    """Two plan files declare the same id."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def read_plan_file(path: str) -> Plan:
    """Load and parse one plan file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise PlanFileError(f"Plan file not found: {path}")
    except (IOError, yaml.YAMLError) as e:
        raise PlanFileError(f"Could not read plan file {path}: {e}")
    if not isinstance(data, dict):
        raise PlanFileError(f"Plan file {path} does not contain a YAML mapping")
    return Plan.from_dict(data, filename=str(Path(path).resolve()))


def write_plan_file(path: str, plan: Plan) -> None:
    """Save a plan, stamping updated_at."""
    plan.updated_at = now_iso()
    if not plan.created_at:
        plan.created_at = plan.updated_at
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(plan.to_dict(), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    plan.filename = str(Path(path).resolve())


def _id_key(plan_id: PlanId) -> str:
    return str(plan_id)


def _priority_rank(plan: Plan) -> int:
    priority = plan.priority or "medium"
    try:
        return PRIORITY_ORDER.index(priority)
    except ValueError:
        return PRIORITY_ORDER.index("medium")


def _numeric_id(plan: Plan) -> tuple:
    if isinstance(plan.id, int):
        return (0, plan.id, "")
    return (1, 0, str(plan.id))


class PlanCache:
    """Holds the last full read of the tasks directory until invalidated."""

    def __init__(self) -> None:
        self._plans: Optional[dict[str, Plan]] = None

    def get(self) -> Optional[dict[str, Plan]]:
        return self._plans

    def put(self, plans: dict[str, Plan]) -> None:
        self._plans = plans

    def invalidate(self) -> None:
        self._plans = None


class PlanStore:
    """Read/write access to every plan in one tasks directory."""

    def __init__(self, tasks_dir: str, cache: Optional[PlanCache] = None):
        self.tasks_dir = tasks_dir
        self.cache = cache if cache is not None else PlanCache()

    def plan_files(self) -> list[Path]:
        root = Path(self.tasks_dir)
        if not root.is_dir():
            return []
        return sorted(
            p for p in root.rglob("*")
            if p.is_file() and p.suffix in PLAN_FILE_SUFFIXES
        )

    def read_all_plans(self, refresh: bool = False) -> dict[str, Plan]:
        """Return every plan keyed by str(id).

        Files without an id are skipped. Unreadable files are warned about
        and skipped. Raises DuplicatePlanIdError if two files share an id.
        """
        if not refresh:
            cached = self.cache.get()
            if cached is not None:
                return cached

        plans: dict[str, Plan] = {}
        for path in self.plan_files():
            try:
                plan = read_plan_file(str(path))
            except PlanFileError as e:
                warn(str(e))
                continue
            if plan.id is None:
                verbose_log(f"Skipping plan without id: {path}", "PLANS")
                continue
            key = _id_key(plan.id)
            if key in plans:
                raise DuplicatePlanIdError(
                    f"Duplicate plan id {plan.id}: {plans[key].filename} and {plan.filename}"
                )
            plans[key] = plan
        self.cache.put(plans)
        return plans

    def get_plan(self, plan_id: PlanId) -> Optional[Plan]:
        return self.read_all_plans().get(_id_key(plan_id))

    def read_plan(self, path: str) -> Plan:
        return read_plan_file(path)

    def write_plan(self, path: str, plan: Plan) -> None:
        write_plan_file(path, plan)
        self.cache.invalidate()

    def set_plan_status(self, path: str, status: str) -> Plan:
        """Re-read the plan, set its status, write it back."""
        plan = self.read_plan(path)
        plan.status = status
        self.write_plan(path, plan)
        return plan

    # --- Reference resolution ---

    def resolve_plan_file(self, ref: str) -> str:
        """Turn a plan id, file path, or next/current/latest into a file path."""
        ref = str(ref)
        if ref == PLAN_REF_NEXT:
            plan = self.find_next_plan()
            if plan is None:
                raise PlanNotFoundError("No ready plans found")
            return plan.filename
        if ref == PLAN_REF_CURRENT:
            plan = self.find_current_plan()
            if plan is None:
                raise PlanNotFoundError("No current plan found")
            return plan.filename
        if ref == PLAN_REF_LATEST:
            plan = self.find_latest_plan()
            if plan is None:
                raise PlanNotFoundError("No plans found")
            return plan.filename

        if os.path.isfile(ref):
            return str(Path(ref).resolve())
        candidate = Path(self.tasks_dir, ref)
        if candidate.is_file():
            return str(candidate.resolve())

        plan = self.get_plan(ref)
        if plan is None and ref.isdigit():
            plan = self.get_plan(int(ref))
        if plan is None:
            raise PlanNotFoundError(f"Plan not found: {ref}")
        return plan.filename

    # --- Queries ---

    def is_plan_ready(self, plan: Plan, include_in_progress: bool = False) -> bool:
        """Pending (optionally in-progress) with every dependency done."""
        allowed = (STATUS_PENDING, STATUS_IN_PROGRESS) if include_in_progress else (STATUS_PENDING,)
        if plan.status not in allowed:
            return False
        plans = self.read_all_plans()
        for dep_id in plan.dependencies:
            dep = plans.get(_id_key(dep_id))
            if dep is None or dep.status != STATUS_DONE:
                return False
        return True

    def list_ready_plans(self, sort_by: str = "priority", include_maybe: bool = False) -> list[Plan]:
        if sort_by not in READY_SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {sort_by}")
        ready = [
            p for p in self.read_all_plans().values()
            if self.is_plan_ready(p) and (include_maybe or p.priority != "maybe")
        ]
        if sort_by == "priority":
            ready.sort(key=lambda p: (_priority_rank(p), _numeric_id(p)))
        elif sort_by == "id":
            ready.sort(key=_numeric_id)
        elif sort_by == "title":
            ready.sort(key=lambda p: p.display_title.lower())
        elif sort_by == "created":
            ready.sort(key=lambda p: p.created_at or "")
        else:
            ready.sort(key=lambda p: p.updated_at or "", reverse=True)
        return ready

    def find_next_plan(self) -> Optional[Plan]:
        ready = self.list_ready_plans()
        return ready[0] if ready else None

    def find_current_plan(self) -> Optional[Plan]:
        """The in-progress plan with the lowest id, else the next ready plan."""
        in_progress = sorted(
            (p for p in self.read_all_plans().values() if p.status == STATUS_IN_PROGRESS),
            key=_numeric_id,
        )
        if in_progress:
            return in_progress[0]
        return self.find_next_plan()

    def find_latest_plan(self) -> Optional[Plan]:
        plans = list(self.read_all_plans().values())
        if not plans:
            return None

        def created(plan: Plan) -> str:
            if plan.created_at:
                return str(plan.created_at)
            mtime = os.path.getmtime(plan.filename) if plan.filename else 0
            return datetime.fromtimestamp(mtime, timezone.utc).isoformat(timespec="seconds")

        return max(plans, key=created)
