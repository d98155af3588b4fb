"""
Task clustering policies.

A policy turns a set of not-yet-completed tasks into :class:`ClusteredJob`
groups, each sized to a node count.  Policies are selected through a
dash-delimited spec string such as ``"hc-4-2"`` (four tasks per cluster, two
nodes per cluster).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Dict, List, Sequence

import numpy as np

import batchclust.constants as c
from batchclust.errors import InvalidSpec
from batchclust.workflow import Task, TaskState, Workflow


def lpt_makespan(durations: Sequence[float], num_nodes: int) -> float:
  """Makespan of independent ``durations`` on ``num_nodes`` nodes, longest first."""
  if num_nodes < 1:
    raise ValueError("num_nodes must be at least 1")
  values = np.asarray(durations, dtype=np.float64)
  if values.size == 0:
    return 0.0
  if values.size <= num_nodes:
    return float(values.max())
  loads = np.zeros(num_nodes, dtype=np.float64)
  for duration in np.sort(values)[::-1]:
    loads[np.argmin(loads)] += duration
  return float(loads.max())


def estimate_makespan(tasks: Sequence[Task], num_nodes: int, core_speed: float) -> float:
  """
  Estimate the time needed to run ``tasks`` on ``num_nodes`` single-core nodes.

  Tasks of one level are independent and packed longest-first; a level may
  only start once the previous one is done, so per-level makespans add up
  along the group's level range.
  """
  if num_nodes < 1:
    raise ValueError("Cannot estimate the makespan of a cluster with no nodes "
                     "(queue-prediction sizing is not supported)")
  if core_speed <= 0:
    raise ValueError("core_speed must be positive")
  by_level: Dict[int, List[float]] = {}
  for task in tasks:
    by_level.setdefault(task.level, []).append(task.flops / core_speed)
  return sum(lpt_makespan(durations, num_nodes) for durations in by_level.values())


@dataclass(eq=False)
class ClusteredJob:
  """A group of tasks meant to run together inside one reservation."""

  tasks: List[Task] = field(default_factory=list)
  num_nodes: int = 0

  def add_task(self, task: Task) -> None:
    if any(t is task for t in self.tasks):
      raise ValueError(f"Task {task.id} is already part of this cluster")
    self.tasks.append(task)

  @property
  def num_tasks(self) -> int:
    return len(self.tasks)

  def estimate_makespan(self, core_speed: float) -> float:
    return estimate_makespan(self.tasks, self.num_nodes, core_speed)

  def __repr__(self) -> str:
    return f"ClusteredJob({[t.id for t in self.tasks]}, nodes={self.num_nodes})"


class ClusteringPolicy:
  """Group-producing function over a task set."""

  name = ""

  def cluster(self, tasks: Sequence[Task], core_speed: float) -> List[ClusteredJob]:
    raise NotImplementedError


def create_hc_jobs(
  tasks: Sequence[Task],
  num_tasks_per_cluster: int,
  num_nodes_per_cluster: int,
) -> List[ClusteredJob]:
  """
  Split ``tasks`` into ``ceil(n / num_tasks_per_cluster)`` consecutive chunks.

  ``num_nodes_per_cluster`` may be 0, which leaves node sizing to the caller
  (e.g. queue prediction); such clusters cannot be priced until sized.
  """
  if num_tasks_per_cluster < 1:
    raise ValueError("num_tasks_per_cluster must be at least 1")
  if num_nodes_per_cluster < 0:
    raise ValueError("num_nodes_per_cluster cannot be negative")
  jobs: List[ClusteredJob] = []
  for offset in range(0, len(tasks), num_tasks_per_cluster):
    job = ClusteredJob(num_nodes=num_nodes_per_cluster)
    for task in tasks[offset:offset + num_tasks_per_cluster]:
      job.add_task(task)
    jobs.append(job)
  return jobs


@dataclass(frozen=True)
class HorizontalClustering(ClusteringPolicy):
  num_tasks_per_cluster: int
  num_nodes_per_cluster: int
  name = "hc"

  def cluster(self, tasks: Sequence[Task], core_speed: float) -> List[ClusteredJob]:
    return create_hc_jobs(tasks, self.num_tasks_per_cluster, self.num_nodes_per_cluster)


@dataclass(frozen=True)
class RuntimeBudgetClustering(ClusteringPolicy):
  """Fill clusters in task order until their aggregate runtime reaches a budget."""

  seconds_per_cluster: int
  num_nodes_per_cluster: int
  name = "dfjs"

  def cluster(self, tasks: Sequence[Task], core_speed: float) -> List[ClusteredJob]:
    jobs: List[ClusteredJob] = []
    current = ClusteredJob(num_nodes=self.num_nodes_per_cluster)
    runtime = 0.0
    for task in tasks:
      duration = task.flops / core_speed
      if current.tasks and runtime + duration > self.seconds_per_cluster:
        jobs.append(current)
        current = ClusteredJob(num_nodes=self.num_nodes_per_cluster)
        runtime = 0.0
      current.add_task(task)
      runtime += duration
    if current.tasks:
      jobs.append(current)
    return jobs


@dataclass(frozen=True)
class RuntimeBalancingClustering(ClusteringPolicy):
  """Spread tasks over ``ceil(total / budget)`` clusters, longest task into the lightest cluster."""

  seconds_per_cluster: int
  num_nodes_per_cluster: int
  name = "hrb"

  def cluster(self, tasks: Sequence[Task], core_speed: float) -> List[ClusteredJob]:
    if not tasks:
      return []
    durations = np.array([t.flops / core_speed for t in tasks], dtype=np.float64)
    num_clusters = int(math.ceil(durations.sum() / self.seconds_per_cluster))
    num_clusters = min(max(1, num_clusters), len(tasks))

    loads = np.zeros(num_clusters, dtype=np.float64)
    members: List[List[int]] = [[] for _ in range(num_clusters)]
    # stable sort keeps equal-runtime tasks in their original order
    for index in np.argsort(-durations, kind="stable"):
      target = int(np.argmin(loads))
      loads[target] += durations[index]
      members[target].append(int(index))

    jobs: List[ClusteredJob] = []
    for indices in members:
      job = ClusteredJob(num_nodes=self.num_nodes_per_cluster)
      for index in sorted(indices):
        job.add_task(tasks[index])
      jobs.append(job)
    return jobs


_POLICY_TYPES = {
  "hc": HorizontalClustering,
  "dfjs": RuntimeBudgetClustering,
  "hrb": RuntimeBalancingClustering,
}


def parse_clustering_spec(spec: str) -> ClusteringPolicy:
  """
  Parse a ``<policy>-<size>-<nodes>`` clustering spec.

  Supported policies are listed in ``batchclust.constants.clustering_policies``;
  all of them take a positive per-cluster size (tasks or seconds) and a
  positive node count.
  """
  tokens = str(spec).split("-")
  name = tokens[0]
  if name in c.unsupported_clustering_policies:
    raise InvalidSpec(spec, f"{c.unsupported_clustering_policies[name]} is not supported")
  if name not in _POLICY_TYPES:
    raise InvalidSpec(spec, f"unknown policy {name!r} (expected one of {sorted(c.clustering_policies)})")
  if len(tokens) != 3:
    raise InvalidSpec(spec, f"expected {name}-<size>-<nodes>")
  try:
    size = int(tokens[1])
    num_nodes = int(tokens[2])
  except ValueError:
    raise InvalidSpec(spec, "size and node count must be integers") from None
  if size < 1 or num_nodes < 1:
    raise InvalidSpec(spec, "size and node count must be at least 1")
  return _POLICY_TYPES[name](size, num_nodes)


def cluster_level(
  workflow: Workflow,
  level: int,
  policy: ClusteringPolicy,
  core_speed: float,
) -> List[ClusteredJob]:
  """Apply ``policy`` to the not-completed tasks of ``level``."""
  tasks = [
    t for t in workflow.tasks_in_level_range(level, level)
    if workflow.task_state(t) != TaskState.COMPLETED
  ]
  return policy.cluster(tasks, core_speed)
