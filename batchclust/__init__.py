"""
Pilot-job task clustering for workflows on batch-scheduled clusters.
"""

from __future__ import annotations

from .batch import BatchSimulator, ReservationRequest
from .clustering import ClusteredJob, parse_clustering_spec
from .errors import AdmissionError, ClusteringError, ConsistencyError, EstimationFailure, InvalidSpec
from .workflow import Task, TaskState, Workflow, build_workflow, load_workflow
from .wms import LevelByLevelWMS, RunSummary, ZhangClusteringWMS, create_wms

__all__ = [
  "BatchSimulator",
  "ReservationRequest",
  "ClusteredJob",
  "parse_clustering_spec",
  "AdmissionError",
  "ClusteringError",
  "ConsistencyError",
  "EstimationFailure",
  "InvalidSpec",
  "Task",
  "TaskState",
  "Workflow",
  "build_workflow",
  "load_workflow",
  "LevelByLevelWMS",
  "RunSummary",
  "ZhangClusteringWMS",
  "create_wms",
]
