"""
Clustering workflow management systems.

Both schedulers share the placeholder-job lifecycle of :mod:`.base` and differ
in how they group tasks into reservations: :class:`LevelByLevelWMS` clusters
one level at a time with a static policy, :class:`ZhangClusteringWMS` decides
dynamically how many levels one reservation should cover.
"""

from __future__ import annotations

from typing import Any, Dict, Type

from batchclust.batch.service import BatchService
from batchclust.workflow import Workflow

from .base import ClusteringWMS, RunSummary
from .level_by_level import LevelByLevelWMS, OngoingLevel
from .zhang import GroupingContext, PeelCandidate, ZhangClusteringWMS

wms_algorithms: Dict[str, Type[ClusteringWMS]] = {
  "level-by-level": LevelByLevelWMS,
  "zhang": ZhangClusteringWMS,
}


def create_wms(algorithm: str, workflow: Workflow, service: BatchService, **options: Any) -> ClusteringWMS:
  """Instantiate the scheduler registered under ``algorithm`` with keyword ``options``."""
  try:
    wms_class = wms_algorithms[algorithm]
  except KeyError:
    raise ValueError(f"Unknown scheduling algorithm {algorithm!r} "
                     f"(expected one of {sorted(wms_algorithms)})") from None
  return wms_class(workflow, service, **options)


__all__ = [
  "ClusteringWMS",
  "RunSummary",
  "LevelByLevelWMS",
  "OngoingLevel",
  "GroupingContext",
  "PeelCandidate",
  "ZhangClusteringWMS",
  "create_wms",
  "wms_algorithms",
]
