"""Exceptions raised by the clustering schedulers."""

from __future__ import annotations


class ClusteringError(RuntimeError):
  """Base class for fatal scheduling errors."""


class InvalidSpec(ClusteringError, ValueError):
  """A clustering policy string does not parse into a supported policy."""

  def __init__(self, spec: str, reason: str = '') -> None:
    self.spec = spec
    message = f"Invalid clustering spec {spec!r}"
    if reason:
      message += f": {reason}"
    super().__init__(message)


class AdmissionError(ClusteringError):
  """A workflow level is wider than the batch service under strict parallelism limits."""


class EstimationFailure(ClusteringError):
  """The batch service could not price a candidate reservation shape."""


class ConsistencyError(ClusteringError):
  """An event or transition contradicts the scheduler's own bookkeeping."""
