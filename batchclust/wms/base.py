"""
Shared machinery of the clustering workflow management systems.

A clustering WMS is a single-threaded reactive state machine: the run loop
alternates between a decision tick (:meth:`ClusteringWMS.submit_pilot_jobs`)
and the delivery of exactly one event from the batch service.  Subclasses
decide how tasks are grouped into reservations; this module implements the
placeholder-job lifecycle they have in common.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pandas as pd
from tqdm.auto import tqdm

import batchclust.constants as c
from batchclust.batch.service import BatchService, Reservation, ReservationRequest
from batchclust.errors import ConsistencyError
from batchclust.events import Event, ReservationExpired, ReservationStarted, TaskCompleted, TaskFailed
from batchclust.placeholder import PlaceholderArena, PlaceholderJob, PlaceholderStatus, regroup_remainder
from batchclust.report import ReservationRecord, history_frame, summarize
from batchclust.utils import log_message
from batchclust.workflow import Task, TaskState, Workflow


@dataclass
class RunSummary:
  """Result packet returned by :meth:`ClusteringWMS.run`."""

  makespan: float
  history: pd.DataFrame
  metadata: Dict[str, Any] = field(default_factory=dict)


class ClusteringWMS:
  """
  Base class for pilot-job clustering schedulers.

  Parameters
  ----------
  workflow:
      Workflow to execute; only queried, never mutated.
  service:
      Batch service receiving reservation requests and delivering events.
  verbose:
      Print every scheduling decision, prefixed with the event time.
  """

  name = "clustering_wms"

  def __init__(self, workflow: Workflow, service: BatchService, *, verbose: bool = False) -> None:
    self.workflow = workflow
    self.service = service
    self.verbose = verbose

    self.core_speed = float(service.core_flop_rate())
    self.num_hosts = int(service.num_hosts())
    if self.core_speed <= 0:
      raise ValueError("The batch service reports a non-positive core flop rate")
    if self.num_hosts < 1:
      raise ValueError("The batch service reports no hosts")

    self.arena = PlaceholderArena()
    self.records: Dict[int, ReservationRecord] = {}
    self._retired: Set[Reservation] = set()
    self._now = float(service.now())
    self._handlers: Dict[type, Callable[[Any], None]] = {
      ReservationStarted: self.on_reservation_started,
      ReservationExpired: self.on_reservation_expired,
      TaskCompleted: self.on_task_completed,
      TaskFailed: self.on_task_failed,
    }

  def _log(self, message: str) -> None:
    if self.verbose:
      log_message(self._now, self.name, message)

  # run loop -------------------------------------------------------------

  def run(self, progress: bool = False) -> RunSummary:
    """Drive the workflow to completion and return the reservation history."""
    total = len(self.workflow.tasks)
    with tqdm(total=total, desc=f"Running workflow ({self.name})", unit="task",
              leave=False, disable=not progress) as bar:
      while not self.workflow.is_done():
        self.submit_pilot_jobs()
        event = self.service.wait_for_next_event()
        self.dispatch(event)
        if isinstance(event, TaskCompleted):
          bar.update(1)

    for job in self.arena:
      self._log(f"Workflow done, cancelling leftover {job.describe()}")
      self._cancel_job(job)

    frame = self.history()
    return RunSummary(makespan=self._now, history=frame, metadata=summarize(frame))

  def dispatch(self, event: Event) -> None:
    handler = self._handlers.get(type(event))
    if handler is None:
      raise TypeError(f"Unsupported event type {type(event).__name__}")
    self._now = max(self._now, float(event.time))
    handler(event)

  def history(self) -> pd.DataFrame:
    return history_frame([self.records[job_id] for job_id in sorted(self.records)])

  # event handlers -------------------------------------------------------

  def submit_pilot_jobs(self) -> None:
    raise NotImplementedError

  def on_reservation_started(self, event: ReservationStarted) -> None:
    raise NotImplementedError

  def on_reservation_expired(self, event: ReservationExpired) -> None:
    raise NotImplementedError

  def on_task_completed(self, event: TaskCompleted) -> None:
    raise NotImplementedError

  def on_task_failed(self, event: TaskFailed) -> None:
    # the expiration event that follows re-derives the remaining work
    self._log(f"Got a task failure for {event.task.id} -- ignoring it, "
              f"the pilot job expiration will handle it")

  # lifecycle helpers ----------------------------------------------------

  def _submit_placeholder(self, job: PlaceholderJob, makespan: float) -> None:
    request = ReservationRequest(
      num_nodes=job.num_nodes,
      cores_per_node=c.DEFAULT_CORES_PER_NODE,
      min_duration=0.0,
      duration=makespan * c.EXECUTION_TIME_FUDGE_FACTOR,
    )
    service_args = request.service_args()
    job.reservation = self.service.submit_reservation(request, service_args)
    job.requested_duration = request.duration
    self.records[job.job_id] = ReservationRecord(
      job_id=job.job_id,
      reservation=job.reservation.name,
      kind=job.kind,
      start_level=job.start_level,
      end_level=job.end_level,
      num_tasks=len(job.tasks),
      num_nodes=job.num_nodes,
      requested_seconds=request.duration,
      wall_time_minutes=request.wall_time_minutes,
      submitted_at=self._now,
    )
    self._log(f"Submitted a pilot job ({service_args[c.ARG_NUM_NODES]} hosts, "
              f"{service_args[c.ARG_WALL_TIME_MINUTES]} min) for levels "
              f"{job.start_level}-{job.end_level} ({job.reservation.name}) with tasks "
              f"{[t.id for t in job.tasks]}")

  def _started_job(self, event: ReservationStarted) -> Optional[PlaceholderJob]:
    """Return the pending job behind a started reservation, or None for a retired one."""
    job = self.arena.find_by_reservation(event.reservation)
    if job is None:
      if event.reservation in self._retired:
        self._log(f"{event.reservation.name} started after being cancelled, ignoring it")
        return None
      raise ConsistencyError(f"Couldn't find a placeholder job for pilot job {event.reservation.name} "
                             "that just started")
    if job.status != PlaceholderStatus.PENDING:
      raise ConsistencyError(f"Pilot job {event.reservation.name} started twice")
    return job

  def _expired_job(self, event: ReservationExpired) -> Optional[PlaceholderJob]:
    """Return the running job behind an expired reservation, or None for a retired one."""
    job = self.arena.find_by_reservation(event.reservation)
    if job is None:
      if event.reservation in self._retired:
        self._log(f"{event.reservation.name} expired after being closed, ignoring it")
        return None
      raise ConsistencyError(f"Got a pilot job expiration for {event.reservation.name}, "
                             "but no matching placeholder job found")
    if job.status != PlaceholderStatus.RUNNING:
      raise ConsistencyError(f"Pilot job {event.reservation.name} expired without having started")
    return job

  def _start_job(self, job: PlaceholderJob) -> None:
    job.start(self._now)
    self.records[job.job_id].started_at = self._now
    self.records[job.job_id].outcome = "running"
    self._log(f"{job.describe()} started with {len(job.tasks)} tasks")
    self._start_ready_tasks(job)

  def _start_ready_tasks(self, job: PlaceholderJob) -> None:
    for task in job.ready_tasks():
      self._log(f"Submitting task {task.id} as part of {job.describe()}")
      self.service.submit_task(task, job.reservation)

  def _start_ready_children(self, completed: Task, jobs: Iterable[PlaceholderJob]) -> None:
    """Submit READY children of ``completed`` in any of the running ``jobs``."""
    children = {t.id for t in self.workflow.children_of(completed)}
    if not children:
      return
    for job in jobs:
      if job.status != PlaceholderStatus.RUNNING:
        continue
      for task in job.tasks:
        if task.id in children and self.workflow.task_state(task) == TaskState.READY:
          self._log(f"Submitting task {task.id} as part of {job.describe()}")
          self.service.submit_task(task, job.reservation)

  def _owning_job(self, task: Task) -> PlaceholderJob:
    job = self.arena.owner_of(task)
    if job is None or job.status != PlaceholderStatus.RUNNING:
      raise ConsistencyError(f"Got a completion for task {task.id}, but couldn't find "
                             "a running placeholder job for it")
    return job

  def _terminate(self, reservation: Reservation) -> bool:
    terminated = self.service.terminate_reservation(reservation)
    if not terminated:
      self._log(f"{reservation.name} was already gone")
    return terminated

  def _retire(self, job: PlaceholderJob, outcome: str) -> None:
    self.arena.remove(job)
    if job.reservation is not None:
      self._retired.add(job.reservation)
    record = self.records.get(job.job_id)
    if record is not None:
      record.outcome = outcome
      if record.started_at is not None:
        record.finished_at = self._now

  def _close_job(self, job: PlaceholderJob) -> None:
    """All tasks done: terminate the reservation (best effort) and drop the job."""
    self._log(f"All tasks are completed in {job.describe()}, terminating {job.reservation.name}")
    job.complete()
    self._terminate(job.reservation)
    self._retire(job, "completed")

  def _cancel_job(self, job: PlaceholderJob) -> None:
    if job.reservation is not None:
      self._terminate(job.reservation)
    self._retire(job, "cancelled")

  def _resubmit_remainder(self, job: PlaceholderJob, absorbed: Iterable[PlaceholderJob] = ()) -> PlaceholderJob:
    """
    Replace an expired job by a new pending one holding its unfinished tasks.

    ``absorbed`` are already-cancelled jobs whose unfinished tasks join the
    replacement, which then spans the union of their level ranges.
    """
    remainder = regroup_remainder(job)
    self._retire(job, "expired")
    start_level, end_level = job.start_level, job.end_level
    absorbed = list(absorbed)
    for other in absorbed:
      for task in other.unfinished_tasks():
        remainder.add_task(task)
      remainder.num_nodes = min(max(remainder.num_nodes, other.num_nodes), remainder.num_tasks)
      start_level = min(start_level, other.start_level)
      end_level = max(end_level, other.end_level)
    if absorbed:
      remainder.tasks.sort(key=lambda t: (t.level, t.id))
    replacement = self.arena.create(remainder, start_level, end_level, kind="resubmission")
    self._log(f"{job.describe()} has {remainder.num_tasks} unprocessed tasks, "
              f"resubmitting them on {remainder.num_nodes} nodes")
    self._submit_placeholder(replacement, remainder.estimate_makespan(self.core_speed))
    return replacement

  def running_jobs(self) -> List[PlaceholderJob]:
    return self.arena.jobs_with_status(PlaceholderStatus.RUNNING)

  def pending_jobs(self) -> List[PlaceholderJob]:
    return self.arena.jobs_with_status(PlaceholderStatus.PENDING)
