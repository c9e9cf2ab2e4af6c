# tests/test_plans.py
# Unit tests for plan file storage, the plan cache and ready-plan queries.

import pytest
import yaml

from plan_agent.models import STATUS_DONE, STATUS_IN_PROGRESS, Plan, Task
from plan_agent.plans import (
    DuplicatePlanIdError,
    PlanCache,
    PlanFileError,
    PlanNotFoundError,
    PlanStore,
    read_plan_file,
    write_plan_file,
)


def _write_plan(tasks_dir, plan_id, **fields):
    """Write a plan YAML file and return its path."""
    tasks_dir.mkdir(parents=True, exist_ok=True)
    data = {"id": plan_id, "title": f"Plan {plan_id}", "goal": "goal", "status": "pending", "tasks": []}
    data.update(fields)
    path = tasks_dir / f"{plan_id}.plan.yml"
    path.write_text(yaml.dump(data, sort_keys=False))
    return path


# --- read/write tests ---


def test_read_plan_file_parses_tasks_and_steps(tmp_path):
    path = _write_plan(tmp_path, 1, tasks=[
        {"title": "A", "description": "do A", "done": False, "steps": [{"prompt": "s1", "done": True}]},
    ])
    plan = read_plan_file(str(path))
    assert plan.id == 1
    assert plan.tasks[0].title == "A"
    assert plan.tasks[0].steps[0].done is True
    assert plan.filename == str(path.resolve())


def test_read_missing_plan_file_raises(tmp_path):
    with pytest.raises(PlanFileError):
        read_plan_file(str(tmp_path / "missing.yml"))


def test_read_non_mapping_plan_file_raises(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(PlanFileError):
        read_plan_file(str(path))


def test_write_plan_file_stamps_updated_at_and_keeps_unknown_keys(tmp_path):
    path = _write_plan(tmp_path, 2, custom_field="keep me")
    plan = read_plan_file(str(path))
    plan.tasks.append(Task(title="New"))
    write_plan_file(str(path), plan)

    data = yaml.safe_load(path.read_text())
    assert data["custom_field"] == "keep me"
    assert data["updated_at"]
    assert data["tasks"][0]["title"] == "New"
    assert "filename" not in data


# --- PlanStore tests ---


def test_duplicate_plan_ids_raise(tmp_path):
    _write_plan(tmp_path, 5)
    (tmp_path / "other.yml").write_text(yaml.dump({"id": 5, "title": "Dup", "tasks": []}))
    store = PlanStore(str(tmp_path))
    with pytest.raises(DuplicatePlanIdError):
        store.read_all_plans()


def test_read_all_plans_skips_unreadable_files(tmp_path, capsys):
    _write_plan(tmp_path, 1)
    (tmp_path / "broken.yml").write_text("id: [unclosed\n")
    store = PlanStore(str(tmp_path))
    plans = store.read_all_plans()
    assert list(plans) == ["1"]
    assert "[WARNING]" in capsys.readouterr().out


def test_cache_is_used_until_invalidated(tmp_path):
    _write_plan(tmp_path, 1)
    cache = PlanCache()
    store = PlanStore(str(tmp_path), cache)
    assert len(store.read_all_plans()) == 1

    _write_plan(tmp_path, 2)
    assert len(store.read_all_plans()) == 1, "cached result should be reused"

    cache.invalidate()
    assert len(store.read_all_plans()) == 2


def test_write_plan_invalidates_cache(tmp_path):
    path = _write_plan(tmp_path, 1)
    store = PlanStore(str(tmp_path))
    store.read_all_plans()
    store.set_plan_status(str(path), STATUS_DONE)
    assert store.get_plan(1).status == STATUS_DONE


def test_resolve_plan_file_by_id_and_path(tmp_path):
    path = _write_plan(tmp_path, 3)
    store = PlanStore(str(tmp_path))
    assert store.resolve_plan_file("3") == str(path.resolve())
    assert store.resolve_plan_file(str(path)) == str(path.resolve())
    assert store.resolve_plan_file("3.plan.yml") == str(path.resolve())


def test_resolve_unknown_plan_raises(tmp_path):
    _write_plan(tmp_path, 3)
    store = PlanStore(str(tmp_path))
    with pytest.raises(PlanNotFoundError, match="Plan not found: 999"):
        store.resolve_plan_file("999")


def test_list_ready_plans_sorted_by_priority(tmp_path):
    _write_plan(tmp_path, 1, priority="low")
    _write_plan(tmp_path, 2, priority="urgent")
    _write_plan(tmp_path, 3)
    _write_plan(tmp_path, 4, priority="maybe")
    _write_plan(tmp_path, 5, priority="high", dependencies=[6])
    _write_plan(tmp_path, 6, status="in_progress")
    store = PlanStore(str(tmp_path))

    ready = store.list_ready_plans()
    assert [p.id for p in ready] == [2, 3, 1]

    with_maybe = store.list_ready_plans(include_maybe=True)
    assert [p.id for p in with_maybe] == [2, 3, 1, 4]


def test_find_next_and_current_plan(tmp_path):
    _write_plan(tmp_path, 1, priority="low")
    _write_plan(tmp_path, 2, priority="high")
    store = PlanStore(str(tmp_path))
    assert store.find_next_plan().id == 2
    assert store.find_current_plan().id == 2

    _write_plan(tmp_path, 1, priority="low", status=STATUS_IN_PROGRESS)
    store.cache.invalidate()
    assert store.find_current_plan().id == 1


def test_find_latest_plan_uses_created_at(tmp_path):
    _write_plan(tmp_path, 1, created_at="2025-01-02T00:00:00+00:00")
    _write_plan(tmp_path, 2, created_at="2025-01-01T00:00:00+00:00")
    store = PlanStore(str(tmp_path))
    assert store.find_latest_plan().id == 1


def test_plan_round_trip_preserves_model():
    plan = Plan(id=7, title="T", goal="G", parent=3, dependencies=[1, 2], tasks=[Task(title="A")])
    assert Plan.from_dict(plan.to_dict()) == plan
