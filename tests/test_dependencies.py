# tests/test_dependencies.py
# Unit tests for find_next_ready_dependency and plan id resolution.

import pytest
import yaml

from plan_agent.dependencies import find_next_ready_dependency, resolve_plan_id
from plan_agent.plans import PlanStore


def _write_plan(tasks_dir, plan_id, filename=None, **fields):
    tasks_dir.mkdir(parents=True, exist_ok=True)
    data = {"id": plan_id, "title": f"Plan {plan_id}", "goal": "goal", "status": "pending", "tasks": []}
    data.update(fields)
    path = tasks_dir / (filename or f"{plan_id}.plan.yml")
    path.write_text(yaml.dump(data, sort_keys=False))
    return path


# --- find_next_ready_dependency tests ---


def test_returns_first_ready_dependency_in_declaration_order(tmp_path):
    _write_plan(tmp_path, 1, dependencies=[3, 2])
    _write_plan(tmp_path, 2)
    _write_plan(tmp_path, 3)
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan.id == 3
    assert "Found ready plan" in result.message


def test_skips_dependency_blocked_by_prerequisite(tmp_path):
    _write_plan(tmp_path, 1, dependencies=[2, 3])
    _write_plan(tmp_path, 2, dependencies=[4])
    _write_plan(tmp_path, 3)
    _write_plan(tmp_path, 4, status="pending")
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan.id == 3


def test_in_progress_dependency_is_ready(tmp_path):
    _write_plan(tmp_path, 1, dependencies=[2])
    _write_plan(tmp_path, 2, status="in_progress")
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan.id == 2
    assert "Found in-progress plan" in result.message


def test_missing_parent_is_a_result_not_an_exception(tmp_path):
    _write_plan(tmp_path, 1)
    result = find_next_ready_dependency(999, PlanStore(str(tmp_path)))
    assert result.plan is None
    assert "Plan not found: 999" in result.message
    assert "Check the plan ID is correct" in result.message


def test_missing_directory(tmp_path):
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path / "nope")))
    assert result.plan is None
    assert "Directory not found" in result.message


def test_no_dependencies(tmp_path):
    _write_plan(tmp_path, 1)
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan is None
    assert "No dependencies found for this plan" in result.message


def test_all_dependencies_complete(tmp_path):
    _write_plan(tmp_path, 1, dependencies=[2])
    _write_plan(tmp_path, 2, status="done")
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan is None
    assert "All dependencies are complete" in result.message


def test_all_dependencies_blocked(tmp_path):
    _write_plan(tmp_path, 1, dependencies=[2])
    _write_plan(tmp_path, 2, dependencies=[3])
    _write_plan(tmp_path, 3, status="deferred")
    result = find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert result.plan is None
    assert "No ready dependencies found" in result.message
    assert "blocked by incomplete prerequisites" in result.message


def test_search_does_not_modify_plans(tmp_path):
    path = _write_plan(tmp_path, 1, dependencies=[2])
    dep_path = _write_plan(tmp_path, 2)
    before = (path.read_text(), dep_path.read_text())
    find_next_ready_dependency(1, PlanStore(str(tmp_path)))
    assert (path.read_text(), dep_path.read_text()) == before


# --- resolve_plan_id tests ---


def test_numeric_reference_is_parsed(tmp_path):
    assert resolve_plan_id("42", PlanStore(str(tmp_path))) == 42


def test_file_reference_resolves_to_its_id(tmp_path):
    path = _write_plan(tmp_path, 7)
    assert resolve_plan_id(str(path), PlanStore(str(tmp_path))) == 7


def test_file_without_numeric_id_raises(tmp_path):
    path = _write_plan(tmp_path, "abc", filename="named.yml")
    with pytest.raises(ValueError, match="does not have a valid numeric ID"):
        resolve_plan_id(str(path), PlanStore(str(tmp_path)))
