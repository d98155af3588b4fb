"""Tabular history of the reservations a scheduler submitted."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd


@dataclass
class ReservationRecord:
  """One submitted reservation and what became of it."""

  job_id: int
  reservation: str
  kind: str
  start_level: int
  end_level: int
  num_tasks: int
  num_nodes: int
  requested_seconds: float
  wall_time_minutes: int
  submitted_at: float
  started_at: Optional[float] = None
  finished_at: Optional[float] = None
  outcome: str = "pending"


_COLUMNS = [f.name for f in fields(ReservationRecord)]


def history_frame(records: Sequence[ReservationRecord]) -> pd.DataFrame:
  """Return one row per reservation, in submission order."""
  if not records:
    return pd.DataFrame(columns=_COLUMNS)
  frame = pd.DataFrame([asdict(record) for record in records], columns=_COLUMNS)
  for column in ("started_at", "finished_at"):
    frame[column] = frame[column].astype(np.float64)
  return frame


def summarize(frame: pd.DataFrame) -> Dict[str, Any]:
  """
  Aggregate a history frame.

  ``node_seconds`` counts the node-time actually held by reservations
  (start to expiration or termination); ``mean_wait`` is the average queueing
  delay of reservations that started.
  """
  if frame.empty:
    return {"reservations": 0, "by_kind": {}, "by_outcome": {}, "node_seconds": 0.0, "mean_wait": 0.0}

  started = frame.dropna(subset=["started_at"])
  held = started.dropna(subset=["finished_at"])
  node_seconds = float(((held["finished_at"] - held["started_at"]) * held["num_nodes"]).sum())
  waits = (started["started_at"] - started["submitted_at"]).to_numpy(dtype=np.float64)
  return {
    "reservations": int(len(frame)),
    "by_kind": {str(k): int(v) for k, v in frame.groupby("kind").size().items()},
    "by_outcome": {str(k): int(v) for k, v in frame.groupby("outcome").size().items()},
    "node_seconds": node_seconds,
    "mean_wait": float(waits.mean()) if waits.size else 0.0,
  }
