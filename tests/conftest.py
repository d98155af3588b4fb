from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pytest

import batchclust.constants as c
from batchclust.batch.service import Reservation, ReservationRequest, ReservationShape, ReservationState
from batchclust.events import Event, ReservationExpired, ReservationStarted, TaskCompleted
from batchclust.workflow import Task, Workflow, build_workflow

WaitModel = Union[float, None, Callable[[ReservationShape], Optional[float]]]


class FakeBatchService:
  """
  Recording batch service: nothing happens unless a test makes it happen.

  Tests build events with :meth:`start`, :meth:`complete` and :meth:`expire`
  and hand them to the scheduler's ``dispatch`` themselves.
  """

  def __init__(
    self,
    workflow: Workflow,
    *,
    num_hosts: int = 4,
    core_flop_rate: float = 1.0,
    wait_time: WaitModel = 0.0,
  ) -> None:
    self.workflow = workflow
    self.clock = 0.0
    self._num_hosts = num_hosts
    self._core_flop_rate = core_flop_rate
    self.wait_time = wait_time

    self.submitted: List[Tuple[Reservation, ReservationRequest, Dict[str, str]]] = []
    self.terminated: List[Reservation] = []
    self.wait_queries: List[Dict[str, ReservationShape]] = []
    self.task_submissions: List[Tuple[Task, Reservation]] = []
    self.events: Deque[Event] = deque()
    self._running_tasks: Dict[str, Tuple[Task, Reservation]] = {}

  def now(self) -> float:
    return self.clock

  def num_hosts(self) -> int:
    return self._num_hosts

  def core_flop_rate(self) -> float:
    return self._core_flop_rate

  def submit_reservation(self, request: ReservationRequest, service_args: Mapping[str, str]) -> Reservation:
    reservation = Reservation(
      name=f"fake_{len(self.submitted)}",
      num_hosts=int(service_args[c.ARG_NUM_NODES]),
      cores_per_host=int(service_args[c.ARG_CORES_PER_NODE]),
      duration=request.duration,
      wall_time=int(service_args[c.ARG_WALL_TIME_MINUTES]) * 60.0,
      submitted_at=self.clock,
    )
    self.submitted.append((reservation, request, dict(service_args)))
    return reservation

  def terminate_reservation(self, reservation: Reservation) -> bool:
    if reservation.state in (ReservationState.EXPIRED, ReservationState.TERMINATED):
      return False
    reservation.state = ReservationState.TERMINATED
    self.terminated.append(reservation)
    return True

  def estimate_wait_times(self, shapes: Mapping[str, ReservationShape]) -> Dict[str, float]:
    self.wait_queries.append(dict(shapes))
    estimates: Dict[str, float] = {}
    for key, shape in shapes.items():
      value = self.wait_time(shape) if callable(self.wait_time) else self.wait_time
      if value is not None:
        estimates[key] = value
    return estimates

  def submit_task(self, task: Task, reservation: Reservation) -> None:
    self.workflow.mark_running(task)
    self._running_tasks[task.id] = (task, reservation)
    self.task_submissions.append((task, reservation))

  def wait_for_next_event(self) -> Event:
    return self.events.popleft()

  # test drivers ---------------------------------------------------------

  def reservation(self, index: int) -> Reservation:
    return self.submitted[index][0]

  def request(self, index: int) -> ReservationRequest:
    return self.submitted[index][1]

  def submitted_task_ids(self) -> List[str]:
    return [task.id for task, _ in self.task_submissions]

  def start(self, reservation: Reservation) -> ReservationStarted:
    reservation.state = ReservationState.RUNNING
    reservation.started_at = self.clock
    return ReservationStarted(reservation, self.clock)

  def complete(self, task: Task) -> TaskCompleted:
    self._running_tasks.pop(task.id)
    self.workflow.mark_completed(task)
    return TaskCompleted(task, self.clock)

  def expire(self, reservation: Reservation) -> ReservationExpired:
    for task_id, (task, owner) in list(self._running_tasks.items()):
      if owner is reservation:
        self.workflow.mark_failed(task)
        del self._running_tasks[task_id]
    reservation.state = ReservationState.EXPIRED
    return ReservationExpired(reservation, self.clock)


def layered_workflow(widths: Sequence[int], flops: float = 10.0) -> Workflow:
  """Every task of level k depends on every task of level k - 1."""
  specs = []
  previous: List[str] = []
  for level, width in enumerate(widths):
    current = [f"L{level}_{i}" for i in range(width)]
    for task_id in current:
      specs.append({"id": task_id, "flops": flops, "parents": list(previous)})
    previous = current
  return build_workflow(specs)


@pytest.fixture
def diamond() -> Workflow:
  # a -> {b, c, d, e} -> f
  return build_workflow([
    {"id": "a", "flops": 5.0},
    {"id": "b", "flops": 4.0, "parents": ["a"]},
    {"id": "c", "flops": 4.0, "parents": ["a"]},
    {"id": "d", "flops": 4.0, "parents": ["a"]},
    {"id": "e", "flops": 4.0, "parents": ["a"]},
    {"id": "f", "flops": 3.0, "parents": ["b", "c", "d", "e"]},
  ])


@pytest.fixture
def chain() -> Workflow:
  # a -> b -> c -> d
  return build_workflow([
    {"id": "a", "flops": 10.0},
    {"id": "b", "flops": 10.0, "parents": ["a"]},
    {"id": "c", "flops": 10.0, "parents": ["b"]},
    {"id": "d", "flops": 10.0, "parents": ["c"]},
  ])


@pytest.fixture
def layered() -> Callable[..., Workflow]:
  return layered_workflow


@pytest.fixture
def make_service() -> Callable[..., FakeBatchService]:
  def _make(workflow: Workflow, **kwargs) -> FakeBatchService:
    return FakeBatchService(workflow, **kwargs)
  return _make
