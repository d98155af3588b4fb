"""
Discrete-event simulation of a batch-scheduled cluster running pilot jobs.

The simulator plays both collaborators of a clustering scheduler: it is the
batch service (FCFS queue, no backfilling, wait-time estimates obtained by
projecting the queue) and the execution substrate (tasks run on single cores
inside started reservations).  Scheduler-visible events are buffered in an
outbox and handed out one at a time by :meth:`wait_for_next_event`.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import heapq
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import batchclust.constants as c
from batchclust.batch.service import Reservation, ReservationRequest, ReservationShape, ReservationState
from batchclust.events import Event, ReservationExpired, ReservationStarted, TaskCompleted, TaskFailed
from batchclust.utils import log_message, wall_time_minutes
from batchclust.workflow import Task, Workflow

# Same-time ordering: tasks finishing exactly at expiration count as done.
_TASK_FINISH = 0
_EXPIRATION = 1
_ARRIVAL = 2


class SimulationStalled(RuntimeError):
  """No event is pending and none can ever be produced."""


@dataclass(eq=False)
class _Allocation:
  name: str
  num_nodes: int
  wall_time: float
  reservation: Optional[Reservation] = None
  started_at: Optional[float] = None


@dataclass(eq=False)
class _PilotRuntime:
  reservation: Reservation
  free_cores: int
  waiting: Deque[Task] = field(default_factory=deque)
  running: Dict[str, Task] = field(default_factory=dict)


class BatchSimulator:
  """
  Simulated batch service driving a :class:`~batchclust.workflow.Workflow`.

  Parameters
  ----------
  workflow:
      Workflow whose task states the simulator updates as tasks run.
  num_hosts:
      Number of nodes managed by the batch service.
  core_flop_rate:
      Compute units processed per second by one core.
  background_jobs:
      Optional ``(submit_time, num_nodes, duration_seconds)`` tuples for
      competing jobs from other users; they only occupy nodes.
  execution_slowdown:
      Factor applied to every task execution time, so that the flop-based
      estimates the schedulers use turn out optimistic (1.0: exact).
  verbose:
      Print queue and execution activity.
  """

  def __init__(
    self,
    workflow: Workflow,
    num_hosts: int,
    core_flop_rate: float,
    *,
    background_jobs: Iterable[Tuple[float, int, float]] = (),
    execution_slowdown: float = 1.0,
    verbose: bool = False,
  ) -> None:
    if num_hosts < 1:
      raise ValueError("num_hosts must be at least 1")
    if core_flop_rate <= 0:
      raise ValueError("core_flop_rate must be positive")
    if not execution_slowdown > 0:
      raise ValueError("execution_slowdown must be positive")

    self._workflow = workflow
    self._num_hosts = int(num_hosts)
    self._core_flop_rate = float(core_flop_rate)
    self._execution_slowdown = float(execution_slowdown)
    self.verbose = verbose

    self._time = 0.0
    self._free_hosts = self._num_hosts
    self._queue: List[_Allocation] = []
    self._running: List[_Allocation] = []
    self._pilots: Dict[int, _PilotRuntime] = {}
    self._events: List[tuple] = []
    self._event_counter = 0
    self._outbox: Deque[Event] = deque()
    self._num_submitted = 0
    self._num_background = 0

    for submit_time, num_nodes, duration in background_jobs:
      if num_nodes < 1 or num_nodes > self._num_hosts:
        raise ValueError(f"Background job needs {num_nodes} nodes, the cluster has {self._num_hosts}")
      allocation = _Allocation(
        name=f"background_{self._num_background}",
        num_nodes=int(num_nodes),
        wall_time=float(duration),
      )
      self._num_background += 1
      if submit_time <= 0:
        self._queue.append(allocation)
      else:
        self._push(float(submit_time), _ARRIVAL, allocation)
    self._schedule_queue()

  def _log(self, message: str) -> None:
    if self.verbose:
      log_message(self._time, "batch", message)

  def _push(self, time: float, priority: int, payload: object) -> None:
    heapq.heappush(self._events, (time, priority, self._event_counter, payload))
    self._event_counter += 1

  # BatchService --------------------------------------------------------

  def now(self) -> float:
    return self._time

  def num_hosts(self) -> int:
    return self._num_hosts

  def core_flop_rate(self) -> float:
    return self._core_flop_rate

  def submit_reservation(self, request: ReservationRequest, service_args: Mapping[str, str]) -> Reservation:
    num_nodes = int(service_args.get(c.ARG_NUM_NODES, request.num_nodes))
    cores = int(service_args.get(c.ARG_CORES_PER_NODE, request.cores_per_node))
    minutes = int(service_args.get(c.ARG_WALL_TIME_MINUTES, request.wall_time_minutes))
    if num_nodes > self._num_hosts:
      raise ValueError(f"Reservation asks for {num_nodes} nodes, the cluster has {self._num_hosts}")

    reservation = Reservation(
      name=f"pilot_job_{self._num_submitted}",
      num_hosts=num_nodes,
      cores_per_host=cores,
      duration=request.duration,
      wall_time=minutes * 60.0,
      submitted_at=self._time,
    )
    self._num_submitted += 1
    self._queue.append(_Allocation(
      name=reservation.name,
      num_nodes=num_nodes,
      wall_time=reservation.wall_time,
      reservation=reservation,
    ))
    self._log(f"queued {reservation.name} ({num_nodes} nodes, {minutes} min)")
    self._schedule_queue()
    return reservation

  def terminate_reservation(self, reservation: Reservation) -> bool:
    for allocation in self._queue:
      if allocation.reservation is reservation:
        self._queue.remove(allocation)
        reservation.state = ReservationState.TERMINATED
        self._log(f"cancelled queued {reservation.name}")
        self._schedule_queue()
        return True
    for allocation in self._running:
      if allocation.reservation is reservation:
        self._release(allocation, ReservationState.TERMINATED, "reservation terminated")
        self._log(f"terminated {reservation.name}")
        self._schedule_queue()
        return True
    return False

  def estimate_wait_times(self, shapes: Mapping[str, ReservationShape]) -> Dict[str, float]:
    estimates: Dict[str, float] = {}
    for key, (num_nodes, _cores, duration) in shapes.items():
      if num_nodes < 1 or num_nodes > self._num_hosts:
        continue
      start = self._projected_start(int(num_nodes), wall_time_minutes(duration) * 60.0)
      estimates[key] = start - self._time
    return estimates

  def submit_task(self, task: Task, reservation: Reservation) -> None:
    pilot = self._pilots.get(id(reservation))
    if pilot is None or reservation.state != ReservationState.RUNNING:
      raise ValueError(f"Cannot run {task.id}: {reservation.name} is not running")
    self._workflow.mark_running(task)
    if pilot.free_cores > 0:
      self._start_task(pilot, task)
    else:
      pilot.waiting.append(task)

  def wait_for_next_event(self) -> Event:
    while not self._outbox:
      if not self._events:
        raise SimulationStalled(f"Nothing left to simulate at t={self._time:.2f}")
      self._step()
    return self._outbox.popleft()

  # internals -----------------------------------------------------------

  def _projected_start(self, num_nodes: int, wall_time: float) -> float:
    free = self._free_hosts
    releases = [(a.started_at + a.wall_time, a.num_nodes) for a in self._running]
    heapq.heapify(releases)
    start = self._time
    shapes: Sequence[Tuple[int, float]] = [(a.num_nodes, a.wall_time) for a in self._queue]
    for nodes, duration in [*shapes, (num_nodes, wall_time)]:
      while free < nodes:
        end, released = heapq.heappop(releases)
        start = max(start, end)
        free += released
      free -= nodes
      heapq.heappush(releases, (start + duration, nodes))
    return start

  def _schedule_queue(self) -> None:
    while self._queue and self._queue[0].num_nodes <= self._free_hosts:
      allocation = self._queue.pop(0)
      allocation.started_at = self._time
      self._free_hosts -= allocation.num_nodes
      self._running.append(allocation)
      self._push(self._time + allocation.wall_time, _EXPIRATION, allocation)
      reservation = allocation.reservation
      if reservation is not None:
        reservation.started_at = self._time
        reservation.state = ReservationState.RUNNING
        self._pilots[id(reservation)] = _PilotRuntime(
          reservation=reservation,
          free_cores=reservation.num_hosts * reservation.cores_per_host,
        )
        self._log(f"started {reservation.name}")
        self._outbox.append(ReservationStarted(reservation, self._time))

  def _execution_time(self, task: Task) -> float:
    return task.flops / self._core_flop_rate * self._execution_slowdown

  def _start_task(self, pilot: _PilotRuntime, task: Task) -> None:
    pilot.free_cores -= 1
    pilot.running[task.id] = task
    self._push(self._time + self._execution_time(task), _TASK_FINISH, (pilot, task))

  def _release(self, allocation: _Allocation, state: ReservationState, cause: str) -> None:
    self._running.remove(allocation)
    self._free_hosts += allocation.num_nodes
    reservation = allocation.reservation
    if reservation is None:
      return
    reservation.state = state
    pilot = self._pilots.pop(id(reservation))
    for task in [*pilot.running.values(), *pilot.waiting]:
      self._workflow.mark_failed(task)
      self._outbox.append(TaskFailed(task, self._time, cause))
    pilot.running.clear()
    pilot.waiting.clear()

  def _step(self) -> None:
    time, priority, _, payload = heapq.heappop(self._events)
    self._time = time

    if priority == _TASK_FINISH:
      pilot, task = payload
      # stale if the reservation went away while the task was running
      if pilot.running.pop(task.id, None) is not None:
        pilot.free_cores += 1
        self._workflow.mark_completed(task)
        self._outbox.append(TaskCompleted(task, self._time))
        if pilot.waiting:
          self._start_task(pilot, pilot.waiting.popleft())

    elif priority == _EXPIRATION:
      allocation = payload
      if allocation in self._running:
        self._release(allocation, ReservationState.EXPIRED, "reservation expired")
        if allocation.reservation is not None:
          self._log(f"{allocation.name} expired")
          self._outbox.append(ReservationExpired(allocation.reservation, self._time))

    else:
      self._queue.append(payload)

    self._schedule_queue()
