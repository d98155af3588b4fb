from __future__ import annotations

import math


def log_message(now: float, component: str, message: str) -> None:
  print(f"[{now:10.2f}] {component}: {message}", flush=True)


def wall_time_minutes(duration: float) -> int:
  # batch services take whole minutes; always leave at least one minute of slack
  return int(math.ceil(1.0 + max(0.0, duration) / 60.0))
