"""
Level-by-level clustering.

Tasks are clustered one workflow level at a time with a static policy, and
each cluster gets its own pilot job.  At most two levels are in flight, and a
level's pilot jobs are only submitted once every pilot job of the previous
level has started, so reservations start in level order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
import warnings

import batchclust.constants as c
from batchclust.batch.service import BatchService
from batchclust.clustering import cluster_level, parse_clustering_spec
from batchclust.errors import ConsistencyError
from batchclust.events import ReservationExpired, ReservationStarted, TaskCompleted
from batchclust.placeholder import PlaceholderJob
from batchclust.wms.base import ClusteringWMS
from batchclust.workflow import TaskState, Workflow


@dataclass(eq=False)
class OngoingLevel:
  """Placeholder jobs of one workflow level that is currently in flight."""

  level_number: int
  pending_placeholder_jobs: Set[PlaceholderJob] = field(default_factory=set)
  running_placeholder_jobs: Set[PlaceholderJob] = field(default_factory=set)
  completed_placeholder_jobs: Set[PlaceholderJob] = field(default_factory=set)

  @property
  def finished(self) -> bool:
    return not self.pending_placeholder_jobs and not self.running_placeholder_jobs


class LevelByLevelWMS(ClusteringWMS):
  """
  Parameters
  ----------
  overlap:
      When False, a level is only submitted once no other level is in flight.
  clustering_spec:
      Static clustering policy applied to every level, e.g. ``"hc-4-1"``.
      Parsed eagerly so that a malformed spec aborts before anything runs.
  """

  name = "level_by_level_wms"

  def __init__(
    self,
    workflow: Workflow,
    service: BatchService,
    *,
    overlap: bool = True,
    clustering_spec: str = "hc-1-1",
    verbose: bool = False,
  ) -> None:
    super().__init__(workflow, service, verbose=verbose)
    self.overlap = bool(overlap)
    self.clustering_spec = clustering_spec
    self.policy = parse_clustering_spec(clustering_spec)
    if self.policy.num_nodes_per_cluster > self.num_hosts:
      raise ValueError(f"Clustering spec {clustering_spec} asks for {self.policy.num_nodes_per_cluster} "
                       f"nodes per cluster, the batch service has {self.num_hosts}")
    self.ongoing_levels: Dict[int, OngoingLevel] = {}
    self._last_submitted_level: Optional[int] = None

  def submit_pilot_jobs(self) -> None:
    self.submit_pilot_jobs_for_next_level()

  def _next_level(self) -> int:
    if self.ongoing_levels:
      return max(self.ongoing_levels) + 1
    if self._last_submitted_level is None:
      return 0
    return self._last_submitted_level + 1

  def submit_pilot_jobs_for_next_level(self) -> None:
    self._log("Seeing if I can submit jobs for the 'next' level...")

    while True:
      if len(self.ongoing_levels) >= c.MAX_ONGOING_LEVELS:
        self._log("Too many ongoing levels going on... will try later")
        return
      if not self.overlap and self.ongoing_levels:
        return

      level_to_submit = self._next_level()
      if level_to_submit >= self.workflow.num_levels():
        self._log("All workflow levels have been submitted!")
        return

      previous = self.ongoing_levels.get(level_to_submit - 1)
      if previous is not None and previous.pending_placeholder_jobs:
        self._log(f"Cannot submit pilot jobs for level {level_to_submit} since level "
                  f"{level_to_submit - 1} still has pilot jobs that haven't started yet")
        return

      self._last_submitted_level = level_to_submit
      ongoing_level = self._create_ongoing_level(level_to_submit)
      if ongoing_level is not None:
        self.ongoing_levels[level_to_submit] = ongoing_level
        return
      # nothing left to run in that level, move on to the next one

  def _create_ongoing_level(self, level: int) -> Optional[OngoingLevel]:
    clustered_jobs = cluster_level(self.workflow, level, self.policy, self.core_speed)
    if not clustered_jobs:
      if any(self.workflow.task_state(t) != TaskState.COMPLETED
             for t in self.workflow.tasks_in_level_range(level, level)):
        warnings.warn(f"Clustering spec {self.clustering_spec} produced no clusters for level {level}",
                      RuntimeWarning, stacklevel=2)
      self._log(f"Level {level} has nothing left to run")
      return None

    if level > 0:
      self._log(f"All pilot jobs from level {level - 1} have started... off I go with level {level}!")
    else:
      self._log("Starting the first level!")

    ongoing_level = OngoingLevel(level_number=level)
    for clustered_job in clustered_jobs:
      self._log(f"Creating a placeholder job for level {level} based on a clustered job "
                f"with {clustered_job.num_tasks} tasks")
      job = self.arena.create(clustered_job, level, level)
      ongoing_level.pending_placeholder_jobs.add(job)
      self._submit_placeholder(job, clustered_job.estimate_makespan(self.core_speed))
    return ongoing_level

  def _ongoing_level_of(self, job: PlaceholderJob) -> OngoingLevel:
    ongoing_level = self.ongoing_levels.get(job.start_level)
    if ongoing_level is None:
      raise ConsistencyError(f"Level {job.start_level} of {job.describe()} is not ongoing")
    return ongoing_level

  def _drop_level_if_finished(self, ongoing_level: OngoingLevel) -> None:
    if ongoing_level.finished and self.ongoing_levels.get(ongoing_level.level_number) is ongoing_level:
      self._log(f"Level {ongoing_level.level_number} is finished!")
      del self.ongoing_levels[ongoing_level.level_number]

  # events ---------------------------------------------------------------

  def on_reservation_started(self, event: ReservationStarted) -> None:
    self._log(f"Got a pilot job start event: {event.reservation.name}")
    job = self._started_job(event)
    if job is None:
      return
    ongoing_level = self._ongoing_level_of(job)
    if job not in ongoing_level.pending_placeholder_jobs:
      raise ConsistencyError(f"{job.describe()} is not pending in its level")

    ongoing_level.pending_placeholder_jobs.discard(job)
    ongoing_level.running_placeholder_jobs.add(job)
    self._start_job(job)

  def on_reservation_expired(self, event: ReservationExpired) -> None:
    job = self._expired_job(event)
    if job is None:
      return
    ongoing_level = self._ongoing_level_of(job)
    self._log(f"Got a pilot job expiration for {job.describe()} ({event.reservation.name})")
    ongoing_level.running_placeholder_jobs.discard(job)

    if not job.unfinished_tasks():
      self._log("This placeholder job has no unprocessed tasks. great.")
      job.complete()
      self._retire(job, "completed")
      ongoing_level.completed_placeholder_jobs.add(job)
      self._drop_level_if_finished(ongoing_level)
      return

    replacement = self._resubmit_remainder(job)
    ongoing_level.pending_placeholder_jobs.add(replacement)

  def on_task_completed(self, event: TaskCompleted) -> None:
    completed_task = event.task
    self._log(f"Got a standard job completion for task {completed_task.id}")

    job = self._owning_job(completed_task)
    ongoing_level = self._ongoing_level_of(job)

    if job.record_completion(completed_task):
      self._close_job(job)
      ongoing_level.running_placeholder_jobs.discard(job)
      ongoing_level.completed_placeholder_jobs.add(job)

    # children may live in any running placeholder job, of any level
    running: List[PlaceholderJob] = []
    for level in self.ongoing_levels.values():
      running.extend(level.running_placeholder_jobs)
    self._start_ready_children(completed_task, running)

    self._drop_level_if_finished(ongoing_level)
