from __future__ import annotations

import json

import pytest

from batchclust.workflow import TaskState, Workflow, build_workflow, load_workflow


def test_levels_follow_longest_path(diamond: Workflow) -> None:
  assert diamond.num_levels() == 3
  assert [t.id for t in diamond.tasks_in_level_range(1, 1)] == ["b", "c", "d", "e"]
  assert [t.id for t in diamond.tasks_in_level_range(1, 2)] == ["b", "c", "d", "e", "f"]
  assert diamond.task_level(diamond.get_task("f")) == 2


def test_level_of_task_with_uneven_parents() -> None:
  workflow = build_workflow([
    {"id": "x", "flops": 1.0, "parents": ["a", "c"]},
    {"id": "a", "flops": 1.0},
    {"id": "b", "flops": 1.0, "parents": ["a"]},
    {"id": "c", "flops": 1.0, "parents": ["b"]},
  ])
  assert workflow.task_level(workflow.get_task("x")) == 3
  assert workflow.num_levels() == 4


def test_task_states_follow_completions(diamond: Workflow) -> None:
  a = diamond.get_task("a")
  assert diamond.task_state(a) == TaskState.READY
  assert [t.id for t in diamond.ready_tasks()] == ["a"]

  diamond.mark_running(a)
  diamond.mark_completed(a)
  assert [t.id for t in diamond.ready_tasks()] == ["b", "c", "d", "e"]

  for task_id in ("b", "c", "d"):
    task = diamond.get_task(task_id)
    diamond.mark_running(task)
    diamond.mark_completed(task)
  assert diamond.task_state(diamond.get_task("f")) == TaskState.NOT_READY

  e = diamond.get_task("e")
  diamond.mark_running(e)
  diamond.mark_failed(e)
  assert diamond.task_state(e) == TaskState.READY
  diamond.mark_running(e)
  diamond.mark_completed(e)
  assert diamond.task_state(diamond.get_task("f")) == TaskState.READY
  assert not diamond.is_done()


def test_illegal_transitions_raise(diamond: Workflow) -> None:
  with pytest.raises(ValueError):
    diamond.mark_running(diamond.get_task("f"))
  with pytest.raises(ValueError):
    diamond.mark_completed(diamond.get_task("a"))


def test_construction_rejects_bad_graphs() -> None:
  workflow = Workflow()
  a = workflow.add_task("a", 1.0)
  b = workflow.add_task("b", 1.0)
  workflow.add_dependency(a, b)

  with pytest.raises(ValueError):
    workflow.add_task("a", 2.0)
  with pytest.raises(ValueError):
    workflow.add_task("z", -1.0)
  with pytest.raises(ValueError):
    workflow.add_dependency(a, b)
  with pytest.raises(ValueError, match="cycle"):
    workflow.add_dependency(b, a)
  assert workflow.num_levels() == 2
  assert [t.id for t in workflow.parents_of(b)] == ["a"]

  with pytest.raises(ValueError, match="unknown parent"):
    build_workflow([{"id": "x", "flops": 1.0, "parents": ["nope"]}])


def test_load_workflow_from_json(tmp_path) -> None:
  path = tmp_path / "workflow.json"
  path.write_text(json.dumps({
    "tasks": [
      {"id": "prep", "flops": 100},
      {"id": "sim_0", "flops": 400, "parents": ["prep"]},
      {"id": "sim_1", "flops": 400, "parents": ["prep"]},
      {"id": "merge", "flops": 50, "parents": ["sim_0", "sim_1"]},
    ]
  }))

  workflow = load_workflow(path)
  assert workflow.num_levels() == 3
  assert workflow.task_cost(workflow.get_task("sim_1")) == pytest.approx(400.0)
  assert sorted(t.id for t in workflow.children_of(workflow.get_task("prep"))) == ["sim_0", "sim_1"]

  bad = tmp_path / "bad.json"
  bad.write_text(json.dumps({"jobs": []}))
  with pytest.raises(ValueError):
    load_workflow(bad)
