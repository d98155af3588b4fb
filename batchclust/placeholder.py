"""
Placeholder jobs: the scheduler-side record binding a task cluster to the
reservation meant to run it.

A placeholder job is created PENDING when its reservation is requested,
becomes RUNNING when the reservation starts, and COMPLETED once every task
in its cluster has finished.  A reservation that expires with unfinished
work is never resumed; its remaining tasks go into a brand-new placeholder
job (see :func:`regroup_remainder`).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from batchclust.clustering import ClusteredJob
from batchclust.errors import ConsistencyError
from batchclust.workflow import Task, TaskState

if TYPE_CHECKING:
  from batchclust.batch.service import Reservation


class PlaceholderStatus(Enum):
  PENDING = "pending"
  RUNNING = "running"
  COMPLETED = "completed"


@dataclass(eq=False)
class PlaceholderJob:
  """
  Scheduler bookkeeping for one reservation.

  Parameters
  ----------
  job_id:
      Arena key, unique for the lifetime of a scheduler.
  clustered_job:
      The tasks (and node count) this reservation is meant to run.
  start_level / end_level:
      Workflow level range covered by the cluster.
  kind:
      ``"grouped"``, ``"individual"`` or ``"resubmission"``; informational.
  """

  job_id: int
  clustered_job: ClusteredJob
  start_level: int
  end_level: int
  kind: str = "grouped"
  reservation: Optional["Reservation"] = None
  requested_duration: float = 0.0
  num_completed_tasks: int = 0
  status: PlaceholderStatus = PlaceholderStatus.PENDING
  started_at: Optional[float] = None

  @property
  def tasks(self) -> List[Task]:
    return self.clustered_job.tasks

  @property
  def num_nodes(self) -> int:
    return self.clustered_job.num_nodes

  def contains(self, task: Task) -> bool:
    return any(t is task for t in self.clustered_job.tasks)

  def start(self, now: float) -> None:
    if self.status != PlaceholderStatus.PENDING:
      raise ConsistencyError(f"Placeholder job {self.job_id} cannot start from {self.status.name}")
    self.status = PlaceholderStatus.RUNNING
    self.started_at = now

  def record_completion(self, task: Task) -> bool:
    """Count ``task`` as done; return True when the whole cluster has finished."""
    if self.status != PlaceholderStatus.RUNNING:
      raise ConsistencyError(f"Task {task.id} completed in placeholder job {self.job_id} "
                             f"which is {self.status.name}")
    if not self.contains(task):
      raise ConsistencyError(f"Task {task.id} is not part of placeholder job {self.job_id}")
    if self.num_completed_tasks >= self.clustered_job.num_tasks:
      raise ConsistencyError(f"Placeholder job {self.job_id} counted more completions than tasks")
    self.num_completed_tasks += 1
    return self.num_completed_tasks == self.clustered_job.num_tasks

  def complete(self) -> None:
    if self.status != PlaceholderStatus.RUNNING:
      raise ConsistencyError(f"Placeholder job {self.job_id} cannot complete from {self.status.name}")
    self.status = PlaceholderStatus.COMPLETED

  def unfinished_tasks(self) -> List[Task]:
    return [t for t in self.clustered_job.tasks if t.state != TaskState.COMPLETED]

  def ready_tasks(self) -> List[Task]:
    return [t for t in self.clustered_job.tasks if t.state == TaskState.READY]

  def has_started_tasks(self) -> bool:
    """True once any task of the cluster has left NOT_READY."""
    return any(t.state != TaskState.NOT_READY for t in self.clustered_job.tasks)

  def expected_end(self) -> Optional[float]:
    if self.started_at is None:
      return None
    return self.started_at + self.requested_duration

  def describe(self) -> str:
    return f"placeholder job {self.job_id} (levels {self.start_level}-{self.end_level})"


class PlaceholderArena:
  """
  Indexed table owning every live placeholder job of a scheduler.

  Jobs are keyed by a monotonic id; tasks and reservations only ever point
  back into the table through lookups, so a job can be dropped without
  leaving dangling references.  A task belongs to at most one live job.
  """

  def __init__(self) -> None:
    self._jobs: Dict[int, PlaceholderJob] = {}
    self._owners: Dict[str, int] = {}
    self._next_id = 0

  def create(
    self,
    clustered_job: ClusteredJob,
    start_level: int,
    end_level: int,
    *,
    kind: str = "grouped",
  ) -> PlaceholderJob:
    if not clustered_job.tasks:
      raise ConsistencyError("Refusing to create a placeholder job without tasks")
    for task in clustered_job.tasks:
      if task.state == TaskState.COMPLETED:
        raise ConsistencyError(f"Task {task.id} is already completed")
      owner = self._owners.get(task.id)
      if owner is not None:
        raise ConsistencyError(f"Task {task.id} already belongs to placeholder job {owner}")

    job = PlaceholderJob(
      job_id=self._next_id,
      clustered_job=clustered_job,
      start_level=start_level,
      end_level=end_level,
      kind=kind,
    )
    self._next_id += 1
    self._jobs[job.job_id] = job
    for task in clustered_job.tasks:
      self._owners[task.id] = job.job_id
    return job

  def get(self, job_id: int) -> PlaceholderJob:
    try:
      return self._jobs[job_id]
    except KeyError:
      raise ConsistencyError(f"Unknown placeholder job {job_id}") from None

  def remove(self, job: PlaceholderJob) -> None:
    if self._jobs.pop(job.job_id, None) is None:
      raise ConsistencyError(f"Placeholder job {job.job_id} is not live")
    for task in job.tasks:
      if self._owners.get(task.id) == job.job_id:
        del self._owners[task.id]

  def find_by_reservation(self, reservation: "Reservation") -> Optional[PlaceholderJob]:
    for job in self._jobs.values():
      if job.reservation is reservation:
        return job
    return None

  def owner_of(self, task: Task) -> Optional[PlaceholderJob]:
    job_id = self._owners.get(task.id)
    return None if job_id is None else self._jobs[job_id]

  def jobs_with_status(self, status: PlaceholderStatus) -> List[PlaceholderJob]:
    return [job for job in self._jobs.values() if job.status == status]

  def __iter__(self) -> Iterator[PlaceholderJob]:
    return iter(list(self._jobs.values()))

  def __len__(self) -> int:
    return len(self._jobs)

  def __contains__(self, job: object) -> bool:
    return isinstance(job, PlaceholderJob) and self._jobs.get(job.job_id) is job


def regroup_remainder(job: PlaceholderJob) -> ClusteredJob:
  """
  Build the replacement cluster for a job whose reservation expired early.

  The new cluster holds exactly the job's not-completed tasks and uses
  ``min(previous nodes, remaining tasks)`` nodes.
  """
  remainder = ClusteredJob()
  for task in job.unfinished_tasks():
    remainder.add_task(task)
  remainder.num_nodes = min(job.clustered_job.num_nodes, remainder.num_tasks)
  return remainder
