"""
Batch-service side of the clustering schedulers.

``service`` defines what a scheduler expects from a batch-scheduled cluster;
``simulator`` provides a discrete-event implementation of it.
"""

from __future__ import annotations

from .service import (
  BatchService,
  Reservation,
  ReservationRequest,
  ReservationShape,
  ReservationState,
)
from .simulator import BatchSimulator, SimulationStalled

__all__ = [
  "BatchService",
  "Reservation",
  "ReservationRequest",
  "ReservationShape",
  "ReservationState",
  "BatchSimulator",
  "SimulationStalled",
]
