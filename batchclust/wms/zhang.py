"""
Dynamic level grouping after Zhang et al.

Rather than clustering one level at a time, this scheduler decides how many
consecutive workflow levels to pack into a single pilot job.  Starting at the
first level nobody is working on, it "peels" levels one at a time and, for
each candidate range, compares the batch queue's expected wait time with the
range's estimated runtime:

* while the wait still dominates the runtime, a bigger reservation is needed
  to amortise it, so peeling continues;
* afterwards, peeling stops as soon as the wait/runtime ratio gets worse than
  one level earlier, or worse than submitting the whole remainder at once,
  and the previous range is submitted.

If peeling runs all the way to the last level, grouping does not pay off and
the scheduler switches, permanently, to one reservation per ready task.

Only one grouped pilot job is pending at a time.  When it starts, the next
decision is taken immediately so that the next reservation queues while the
current one runs.  A reservation requested while a parent reservation still
runs is stretched ("leeway") so that its wait overlaps the parent's remaining
runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import List, Optional, Set

import batchclust.constants as c
from batchclust.batch.service import BatchService
from batchclust.clustering import ClusteredJob, estimate_makespan
from batchclust.errors import AdmissionError, ConsistencyError, EstimationFailure
from batchclust.events import ReservationExpired, ReservationStarted, TaskCompleted
from batchclust.placeholder import PlaceholderJob
from batchclust.wms.base import ClusteringWMS
from batchclust.workflow import Task, TaskState, Workflow


@dataclass
class GroupingContext:
  """
  Mutable state shared by the wait-time queries of one scheduler.

  ``parent_runtime`` is the remaining runtime of the longest still-running
  grouped reservation when the current decision started; ``sequence`` makes
  every wait-time query key unique since the estimator may be stateful.
  """

  parent_runtime: float = 0.0
  sequence: int = 0

  def next_key(self, prefix: str) -> str:
    key = f"{prefix}_{self.sequence}"
    self.sequence += 1
    return key


@dataclass(frozen=True)
class PeelCandidate:
  """Levels ``[start_level, end_level]`` priced as a single reservation."""

  start_level: int
  end_level: int
  parallelism: int
  runtime: float
  wait_time: float

  @property
  def ratio(self) -> float:
    if self.runtime > 0:
      return self.wait_time / self.runtime
    return math.inf if self.wait_time > 0 else 0.0


class ZhangClusteringWMS(ClusteringWMS):
  """
  Parameters
  ----------
  overlap:
      Allow a new grouped reservation to be requested while others run.
  plimit:
      Treat a level wider than the cluster as inadmissible
      (:class:`~batchclust.errors.AdmissionError`) instead of capping the
      parallelism at the number of hosts.
  allow_giant:
      When peeling reaches the last level, submit the whole remainder as one
      reservation if its runtime is below half its wait time, instead of
      always switching to individual mode.
  """

  name = "zhang_clustering_wms"

  def __init__(
    self,
    workflow: Workflow,
    service: BatchService,
    *,
    overlap: bool = True,
    plimit: bool = False,
    allow_giant: bool = False,
    verbose: bool = False,
  ) -> None:
    super().__init__(workflow, service, verbose=verbose)
    self.overlap = bool(overlap)
    self.plimit = bool(plimit)
    self.allow_giant = bool(allow_giant)
    self.context = GroupingContext()

    self.pending_placeholder_job: Optional[PlaceholderJob] = None
    self.pending_individual_jobs: Set[PlaceholderJob] = set()
    self.running_placeholder_jobs: Set[PlaceholderJob] = set()
    self.individual_mode = False

  # decision -------------------------------------------------------------

  def submit_pilot_jobs(self) -> None:
    self.submit_pilot_job()

  def submit_pilot_job(self) -> None:
    if self.individual_mode:
      self._submit_individual_jobs()
      return
    if self.pending_placeholder_job is not None:
      return
    if not self.overlap and self.running_placeholder_jobs:
      return
    self.apply_grouping_heuristic()

  def _range_tasks(self, start_level: int, end_level: int) -> List[Task]:
    return [
      t for t in self.workflow.tasks_in_level_range(start_level, end_level)
      if self.workflow.task_state(t) != TaskState.COMPLETED and self.arena.owner_of(t) is None
    ]

  def start_level(self) -> int:
    """
    First level not fully completed, moved past every running reservation.

    Never moves past a level that still holds unfinished tasks no live job
    owns (left behind by a cancelled reservation).
    """
    num_levels = self.workflow.num_levels()
    first_level = num_levels
    for level in range(num_levels):
      if any(self.workflow.task_state(t) != TaskState.COMPLETED
             for t in self.workflow.tasks_in_level_range(level, level)):
        first_level = level
        break
    start_level = first_level
    for job in self.running_placeholder_jobs:
      start_level = max(start_level, job.end_level + 1)
    for level in range(first_level, min(start_level, num_levels)):
      if self._range_tasks(level, level):
        return level
    return start_level

  def max_parallelism(self, start_level: int, end_level: int) -> int:
    """Widest level of the range (never the sum), capped at the host count."""
    parallelism = 0
    for level in range(start_level, end_level + 1):
      num_tasks_in_level = len(self._range_tasks(level, level))
      if self.plimit and num_tasks_in_level > self.num_hosts:
        raise AdmissionError(f"Workflow level {level} has {num_tasks_in_level} tasks, more than the "
                             f"{self.num_hosts} hosts of the batch service")
      parallelism = max(parallelism, num_tasks_in_level)
    return min(parallelism, self.num_hosts)

  def estimate_range_makespan(self, start_level: int, end_level: int, parallelism: int) -> float:
    tasks = self._range_tasks(start_level, end_level)
    if not tasks:
      return 0.0
    return estimate_makespan(tasks, max(1, parallelism), self.core_speed)

  def estimate_wait_time(self, num_nodes: int, runtime: float) -> float:
    key = self.context.next_key(self.name)
    duration = runtime * c.EXECUTION_TIME_FUDGE_FACTOR
    estimates = self.service.estimate_wait_times({key: (num_nodes, c.DEFAULT_CORES_PER_NODE, duration)})
    wait_time = estimates.get(key)
    if wait_time is None or not wait_time >= 0:
      raise EstimationFailure(f"Could not estimate the wait time of a {num_nodes}-node, "
                              f"{duration:.1f}s reservation (got {wait_time!r})")
    return float(wait_time)

  def _parent_runtime(self) -> float:
    remaining = 0.0
    for job in self.running_placeholder_jobs:
      expected_end = job.expected_end()
      if expected_end is not None:
        remaining = max(remaining, expected_end - self._now)
    return remaining

  def _net_wait(self, candidate: PeelCandidate) -> float:
    return max(0.0, candidate.wait_time - self.context.parent_runtime)

  def peel(self, start_level: int, end_level: int) -> PeelCandidate:
    """Price levels ``[start_level, end_level]``, stretching the request over a running parent."""
    parallelism = self.max_parallelism(start_level, end_level)
    runtime = self.estimate_range_makespan(start_level, end_level, parallelism)
    wait_time = self.estimate_wait_time(max(1, parallelism), runtime)

    parent_runtime = self.context.parent_runtime
    if parent_runtime > 0 and wait_time < parent_runtime:
      leeway = parent_runtime - wait_time
      runtime += leeway
      wait_time = self.estimate_wait_time(max(1, parallelism), runtime)
      self._log(f"Adding {leeway:.2f}s of leeway to levels {start_level}-{end_level}")

    return PeelCandidate(start_level, end_level, parallelism, runtime, wait_time)

  def group_levels(self, start_level: int, last_level: int, remainder: PeelCandidate) -> Optional[PeelCandidate]:
    """
    Run the level-peeling search over ``[start_level, last_level]``.

    Returns the accepted candidate, or None when peeling consumed every level
    (the "giant" outcome).
    """
    previous: Optional[PeelCandidate] = None
    for candidate_end_level in range(start_level, last_level + 1):
      candidate = self.peel(start_level, candidate_end_level)
      if candidate.parallelism == 0:
        continue

      if self._net_wait(candidate) > candidate.runtime:
        # a bigger reservation is needed to amortise the wait
        previous = candidate
        continue

      worse_than_previous = previous is not None and candidate.ratio > previous.ratio
      worse_than_remainder = candidate.ratio > remainder.ratio
      if worse_than_previous or worse_than_remainder:
        return previous if previous is not None else candidate
      previous = candidate
    return None

  def apply_grouping_heuristic(self) -> None:
    start_level = self.start_level()
    last_level = self.workflow.num_levels() - 1
    if start_level > last_level:
      return
    if not self._range_tasks(start_level, last_level):
      return

    self.context.parent_runtime = self._parent_runtime()

    parallelism = self.max_parallelism(start_level, last_level)
    runtime = self.estimate_range_makespan(start_level, last_level, parallelism)
    wait_time = self.estimate_wait_time(parallelism, runtime)
    remainder = PeelCandidate(start_level, last_level, parallelism, runtime, wait_time)
    self._log(f"Remaining levels {start_level}-{last_level}: {parallelism} hosts, "
              f"runtime {runtime:.2f}s, wait {wait_time:.2f}s")

    accepted = self.group_levels(start_level, last_level, remainder)
    if accepted is None:
      if self.allow_giant and remainder.runtime < remainder.wait_time / 2.0:
        self._log("Submitting the rest of the workflow as a single giant pilot job")
        self._submit_candidate(remainder)
        return
      self._log("Grouping does not pay off anymore, switching to individual mode")
      self.individual_mode = True
      self._submit_individual_jobs()
      return

    self._submit_candidate(accepted)

  def _submit_candidate(self, candidate: PeelCandidate) -> None:
    clustered_job = ClusteredJob(num_nodes=max(1, candidate.parallelism))
    for task in self._range_tasks(candidate.start_level, candidate.end_level):
      clustered_job.add_task(task)
    job = self.arena.create(clustered_job, candidate.start_level, candidate.end_level)
    self._submit_placeholder(job, candidate.runtime)
    self.pending_placeholder_job = job

  def _submit_individual_jobs(self) -> None:
    for task in self.workflow.ready_tasks():
      if self.arena.owner_of(task) is not None:
        continue
      clustered_job = ClusteredJob(num_nodes=1)
      clustered_job.add_task(task)
      level = self.workflow.task_level(task)
      job = self.arena.create(clustered_job, level, level, kind="individual")
      self._submit_placeholder(job, clustered_job.estimate_makespan(self.core_speed))
      self.pending_individual_jobs.add(job)

  # events ---------------------------------------------------------------

  def on_reservation_started(self, event: ReservationStarted) -> None:
    job = self._started_job(event)
    if job is None:
      return
    if job is self.pending_placeholder_job:
      self.pending_placeholder_job = None
      self._log("The pending pilot job has started!")
    elif job in self.pending_individual_jobs:
      self.pending_individual_jobs.discard(job)
    else:
      raise ConsistencyError(f"A pilot job has started ({event.reservation.name}), "
                             "but it doesn't match any pending pilot job")

    self.running_placeholder_jobs.add(job)
    self._start_job(job)
    self.submit_pilot_job()

  def on_reservation_expired(self, event: ReservationExpired) -> None:
    job = self._expired_job(event)
    if job is None:
      return
    self._log(f"Got a pilot job expiration for {job.describe()}")
    self.running_placeholder_jobs.discard(job)

    if not job.unfinished_tasks():
      self._log("This placeholder job has no unprocessed tasks. great.")
      job.complete()
      self._retire(job, "completed")
      return

    absorbed: List[PlaceholderJob] = []
    pending = self.pending_placeholder_job
    if pending is not None:
      self._log("Canceling pending placeholder job!")
      self._cancel_job(pending)
      self.pending_placeholder_job = None
      # a pending resubmission holds leftovers of an earlier expiration
      if pending.kind == "resubmission":
        absorbed.append(pending)

    for other in list(self.running_placeholder_jobs):
      if not other.has_started_tasks():
        self._log(f"Canceling running {other.describe()} because none of its tasks has started")
        self._cancel_job(other)
        self.running_placeholder_jobs.discard(other)

    self.pending_placeholder_job = self._resubmit_remainder(job, absorbed)
    self.submit_pilot_job()

  def on_task_completed(self, event: TaskCompleted) -> None:
    completed_task = event.task
    self._log(f"Got a standard job completion for task {completed_task.id}")

    job = self._owning_job(completed_task)
    if job.record_completion(completed_task):
      self._close_job(job)
      self.running_placeholder_jobs.discard(job)

    self._start_ready_children(completed_task, self.running_placeholder_jobs)

    if self.individual_mode:
      self._submit_individual_jobs()
