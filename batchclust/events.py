"""Events delivered by the execution substrate to a clustering scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
  from batchclust.batch.service import Reservation
  from batchclust.workflow import Task


@dataclass(frozen=True)
class ReservationStarted:
  reservation: "Reservation"
  time: float = 0.0


@dataclass(frozen=True)
class ReservationExpired:
  reservation: "Reservation"
  time: float = 0.0


@dataclass(frozen=True)
class TaskCompleted:
  task: "Task"
  time: float = 0.0


@dataclass(frozen=True)
class TaskFailed:
  task: "Task"
  time: float = 0.0
  cause: str = ""


Event = Union[ReservationStarted, ReservationExpired, TaskCompleted, TaskFailed]
