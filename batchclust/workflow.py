"""
In-memory workflow DAG consumed by the clustering schedulers.

The schedulers only ever *query* a workflow (task states, costs, levels and
children).  State changes are driven by the execution substrate through the
``mark_*`` methods as tasks start, finish or get killed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import networkx as nx


class TaskState(Enum):
  NOT_READY = "not_ready"
  READY = "ready"
  RUNNING = "running"
  COMPLETED = "completed"


@dataclass(eq=False)
class Task:
  """
  A single workflow task.

  Parameters
  ----------
  id:
      Unique task identifier.
  flops:
      Cost of the task in abstract compute units; divided by the per-core
      flop rate of the batch service to obtain its execution time.
  state:
      Current :class:`TaskState`.  Owned by the workflow.
  level:
      Topological depth, assigned by the workflow once the DAG is frozen.
  """

  id: str
  flops: float
  state: TaskState = TaskState.READY
  level: int = 0

  def __repr__(self) -> str:
    return f"Task({self.id})"


class Workflow:
  """A DAG of :class:`Task` objects organised into topological levels."""

  def __init__(self) -> None:
    self._graph = nx.DiGraph()
    self._tasks: Dict[str, Task] = {}
    self._levels: Optional[List[List[Task]]] = None
    self._num_completed = 0

  # construction ---------------------------------------------------------

  def add_task(self, task_id: str, flops: float) -> Task:
    if task_id in self._tasks:
      raise ValueError(f"Duplicate task id: {task_id}")
    if flops < 0:
      raise ValueError(f"Task {task_id} has negative cost {flops}")
    task = Task(id=str(task_id), flops=float(flops))
    self._tasks[task.id] = task
    self._graph.add_node(task.id)
    self._levels = None
    return task

  def add_dependency(self, parent: Task, child: Task) -> None:
    if parent.id not in self._tasks or child.id not in self._tasks:
      raise ValueError(f"Unknown task in dependency {parent.id} -> {child.id}")
    if self._graph.has_edge(parent.id, child.id):
      raise ValueError(f"Duplicate dependency {parent.id} -> {child.id}")
    self._graph.add_edge(parent.id, child.id)
    if not nx.is_directed_acyclic_graph(self._graph):
      self._graph.remove_edge(parent.id, child.id)
      raise ValueError(f"Dependency {parent.id} -> {child.id} would create a cycle")
    child.state = TaskState.NOT_READY
    self._levels = None

  def _ensure_levels(self) -> List[List[Task]]:
    if self._levels is None:
      levels: List[List[Task]] = []
      for number, generation in enumerate(nx.topological_generations(self._graph)):
        tasks = sorted((self._tasks[tid] for tid in generation), key=lambda t: t.id)
        for task in tasks:
          task.level = number
        levels.append(tasks)
      self._levels = levels
    return self._levels

  # queries --------------------------------------------------------------

  @property
  def tasks(self) -> List[Task]:
    return list(self._tasks.values())

  def get_task(self, task_id: str) -> Task:
    return self._tasks[task_id]

  def task_state(self, task: Task) -> TaskState:
    return task.state

  def task_cost(self, task: Task) -> float:
    return task.flops

  def task_level(self, task: Task) -> int:
    self._ensure_levels()
    return task.level

  def num_levels(self) -> int:
    return len(self._ensure_levels())

  def tasks_in_level_range(self, low: int, high: int) -> List[Task]:
    """Return the tasks whose level lies in ``[low, high]``, ordered by level then id."""
    levels = self._ensure_levels()
    selected: List[Task] = []
    for level in range(max(0, low), min(high, len(levels) - 1) + 1):
      selected.extend(levels[level])
    return selected

  def children_of(self, task: Task) -> List[Task]:
    return [self._tasks[tid] for tid in self._graph.successors(task.id)]

  def parents_of(self, task: Task) -> List[Task]:
    return [self._tasks[tid] for tid in self._graph.predecessors(task.id)]

  def ready_tasks(self) -> List[Task]:
    return [t for t in self.tasks_in_level_range(0, self.num_levels() - 1) if t.state == TaskState.READY]

  def is_done(self) -> bool:
    return self._num_completed == len(self._tasks)

  # state changes (execution substrate only) -----------------------------

  def mark_running(self, task: Task) -> None:
    if task.state != TaskState.READY:
      raise ValueError(f"Task {task.id} cannot start from state {task.state.name}")
    task.state = TaskState.RUNNING

  def mark_completed(self, task: Task) -> None:
    if task.state != TaskState.RUNNING:
      raise ValueError(f"Task {task.id} cannot complete from state {task.state.name}")
    task.state = TaskState.COMPLETED
    self._num_completed += 1
    for child in self.children_of(task):
      if child.state == TaskState.NOT_READY and all(
        p.state == TaskState.COMPLETED for p in self.parents_of(child)
      ):
        child.state = TaskState.READY

  def mark_failed(self, task: Task) -> None:
    if task.state != TaskState.RUNNING:
      raise ValueError(f"Task {task.id} cannot fail from state {task.state.name}")
    task.state = TaskState.READY


def build_workflow(specs: Iterable[dict]) -> Workflow:
  """
  Build a workflow from task descriptions.

  Each entry is a mapping with ``id``, ``flops`` and an optional list of
  ``parents`` (task ids).  Parents may be declared after their children.
  """
  entries = list(specs)
  workflow = Workflow()
  for entry in entries:
    workflow.add_task(str(entry["id"]), float(entry["flops"]))
  for entry in entries:
    child = workflow.get_task(str(entry["id"]))
    for parent_id in entry.get("parents", []):
      try:
        parent = workflow.get_task(str(parent_id))
      except KeyError:
        raise ValueError(f"Task {child.id} lists unknown parent {parent_id}") from None
      workflow.add_dependency(parent, child)
  return workflow


def load_workflow(path: str | Path) -> Workflow:
  """Read a JSON workflow description: ``{"tasks": [{"id", "flops", "parents"}]}``."""
  with open(Path(path), "r") as handle:
    document = json.load(handle)
  if "tasks" not in document:
    raise ValueError(f"Workflow file {path} has no 'tasks' entry")
  return build_workflow(document["tasks"])
