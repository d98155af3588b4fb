from __future__ import annotations

import pytest

from batchclust.batch import BatchSimulator
from batchclust.wms import LevelByLevelWMS, ZhangClusteringWMS, create_wms
from batchclust.workflow import build_workflow


def _workflow():
  # irregular fan-out/fan-in with uneven task costs
  return build_workflow([
    {"id": "split", "flops": 20},
    {"id": "sim_0", "flops": 60, "parents": ["split"]},
    {"id": "sim_1", "flops": 45, "parents": ["split"]},
    {"id": "sim_2", "flops": 30, "parents": ["split"]},
    {"id": "sim_3", "flops": 50, "parents": ["split"]},
    {"id": "sim_4", "flops": 25, "parents": ["split"]},
    {"id": "post_0", "flops": 15, "parents": ["sim_0", "sim_1"]},
    {"id": "post_1", "flops": 15, "parents": ["sim_2", "sim_3", "sim_4"]},
    {"id": "stats", "flops": 10, "parents": ["sim_1"]},
    {"id": "merge", "flops": 40, "parents": ["post_0", "post_1", "stats"]},
  ])


@pytest.mark.parametrize("algorithm, options", [
  ("level-by-level", {"clustering_spec": "hc-1-1"}),
  ("level-by-level", {"clustering_spec": "hc-2-1", "overlap": False}),
  ("level-by-level", {"clustering_spec": "hrb-60-2"}),
  ("level-by-level", {"clustering_spec": "dfjs-90-1"}),
  ("zhang", {}),
  ("zhang", {"overlap": False}),
])
def test_workflow_runs_to_completion(algorithm: str, options: dict) -> None:
  workflow = _workflow()
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0)
  wms = create_wms(algorithm, workflow, simulator, **options)
  summary = wms.run()

  assert workflow.is_done()
  assert summary.makespan >= 20 + 60 + 15 + 40
  assert len(summary.history) == summary.metadata["reservations"]
  assert set(summary.history["outcome"]) <= {"completed", "expired", "cancelled"}
  assert len(wms.arena) == 0


def test_busy_cluster_with_giant_group() -> None:
  workflow = _workflow()
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0, background_jobs=[(0.0, 4, 1000.0)])
  wms = ZhangClusteringWMS(workflow, simulator, allow_giant=True)
  summary = wms.run()

  assert workflow.is_done()
  assert summary.makespan > 1000.0
  assert summary.metadata["by_kind"] == {"grouped": 1}
  row = summary.history.iloc[0]
  assert (row["start_level"], row["end_level"]) == (0, workflow.num_levels() - 1)
  assert row["started_at"] == pytest.approx(1000.0)
  assert row["num_nodes"] == 4


def test_background_load_delays_level_by_level() -> None:
  workflow = _workflow()
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0,
                             background_jobs=[(0.0, 2, 300.0), (50.0, 4, 200.0)])
  wms = LevelByLevelWMS(workflow, simulator, clustering_spec="hc-2-2")
  summary = wms.run(progress=True)

  assert workflow.is_done()
  assert summary.metadata["mean_wait"] > 0.0
  assert summary.metadata["node_seconds"] > 0.0


def test_unknown_algorithm() -> None:
  workflow = _workflow()
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0)
  with pytest.raises(ValueError, match="Unknown scheduling algorithm"):
    create_wms("round-robin", workflow, simulator)


def test_level_by_level_recovers_from_early_expirations(layered) -> None:
  # tasks run 1.6x longer than estimated, so the wall times are too short
  workflow = layered([2, 1], flops=100.0)
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0, execution_slowdown=1.6)
  wms = LevelByLevelWMS(workflow, simulator, clustering_spec="hc-2-1")
  summary = wms.run()

  assert workflow.is_done()
  assert summary.makespan == pytest.approx(700.0)
  outcomes = summary.metadata["by_outcome"]
  assert outcomes["expired"] >= 2
  assert outcomes["completed"] >= 2
  assert summary.metadata["by_kind"]["resubmission"] >= 2
  assert len(wms.arena) == 0


def test_giant_group_expiration_is_resubmitted(layered) -> None:
  workflow = layered([2, 1], flops=100.0)
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0,
                             background_jobs=[(0.0, 4, 1000.0)], execution_slowdown=1.6)
  wms = ZhangClusteringWMS(workflow, simulator, allow_giant=True)
  summary = wms.run()

  assert workflow.is_done()
  assert list(summary.history["kind"]) == ["grouped", "resubmission"]
  assert list(summary.history["outcome"]) == ["expired", "completed"]
  assert summary.history.iloc[0]["finished_at"] == pytest.approx(1300.0)
  assert summary.history.iloc[1]["num_tasks"] == 1
  assert summary.makespan == pytest.approx(1460.0)
