"""
Interface between the clustering schedulers and a batch-scheduled cluster.

Reservations ("pilot jobs") are requested with a node count and a duration
estimate; the service later reports their start and expiration, runs tasks
inside them, and answers wait-time queries for hypothetical reservation
shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Protocol, Tuple

import batchclust.constants as c
from batchclust.events import Event
from batchclust.utils import wall_time_minutes
from batchclust.workflow import Task

# (num_nodes, cores_per_node, duration_seconds)
ReservationShape = Tuple[int, int, float]


@dataclass(frozen=True)
class ReservationRequest:
  """
  Shape of a reservation to submit.

  Parameters
  ----------
  num_nodes:
      Number of nodes to reserve.
  cores_per_node:
      Cores used on every node.
  min_duration:
      Lower bound hint for the duration (seconds); 0 when unknown.
  duration:
      Requested duration in seconds, already inflated by the fudge factor.
  """

  num_nodes: int
  cores_per_node: int
  min_duration: float
  duration: float

  def __post_init__(self) -> None:
    if self.num_nodes < 1:
      raise ValueError("A reservation needs at least one node")
    if self.cores_per_node < 1:
      raise ValueError("A reservation needs at least one core per node")
    if self.duration < 0 or self.min_duration < 0:
      raise ValueError("Reservation durations cannot be negative")

  @property
  def wall_time_minutes(self) -> int:
    return wall_time_minutes(self.duration)

  def service_args(self) -> Dict[str, str]:
    return {
      c.ARG_NUM_NODES: str(self.num_nodes),
      c.ARG_CORES_PER_NODE: str(self.cores_per_node),
      c.ARG_WALL_TIME_MINUTES: str(self.wall_time_minutes),
    }


class ReservationState(Enum):
  PENDING = "pending"
  RUNNING = "running"
  EXPIRED = "expired"
  TERMINATED = "terminated"


@dataclass(eq=False)
class Reservation:
  """Handle on a submitted reservation.  Owned by the batch service."""

  name: str
  num_hosts: int
  cores_per_host: int
  duration: float
  wall_time: float
  submitted_at: float = 0.0
  started_at: Optional[float] = None
  state: ReservationState = ReservationState.PENDING

  @property
  def expires_at(self) -> Optional[float]:
    if self.started_at is None:
      return None
    return self.started_at + self.wall_time

  def __repr__(self) -> str:
    return f"Reservation({self.name}, {self.num_hosts}x{self.cores_per_host}, {self.state.name})"


class BatchService(Protocol):
  """Everything a clustering scheduler needs from the batch system."""

  def now(self) -> float: ...

  def num_hosts(self) -> int: ...

  def core_flop_rate(self) -> float: ...

  def submit_reservation(self, request: ReservationRequest, service_args: Mapping[str, str]) -> Reservation: ...

  def terminate_reservation(self, reservation: Reservation) -> bool:
    """Terminate ``reservation``; return False when it is already gone."""
    ...

  def estimate_wait_times(self, shapes: Mapping[str, ReservationShape]) -> Dict[str, float]:
    """Return the expected queueing delay, in seconds, for each keyed shape."""
    ...

  def submit_task(self, task: Task, reservation: Reservation) -> None: ...

  def wait_for_next_event(self) -> Event: ...
