from __future__ import annotations

import pytest

from batchclust.batch import BatchSimulator, ReservationRequest, ReservationState, SimulationStalled
from batchclust.events import ReservationExpired, ReservationStarted, TaskCompleted, TaskFailed
from batchclust.utils import wall_time_minutes
from batchclust.workflow import TaskState


def _submit(simulator: BatchSimulator, num_nodes: int, duration: float):
  request = ReservationRequest(num_nodes=num_nodes, cores_per_node=1, min_duration=0.0, duration=duration)
  return simulator.submit_reservation(request, request.service_args())


def test_wall_time_rounding() -> None:
  assert wall_time_minutes(0.0) == 1
  assert wall_time_minutes(30.0) == 2
  assert wall_time_minutes(60.0) == 2
  assert wall_time_minutes(90.0) == 3

  request = ReservationRequest(num_nodes=2, cores_per_node=1, min_duration=0.0, duration=90.0)
  assert request.service_args() == {"-N": "2", "-c": "1", "-t": "3"}
  with pytest.raises(ValueError):
    ReservationRequest(num_nodes=0, cores_per_node=1, min_duration=0.0, duration=1.0)


def test_tasks_share_the_cores_of_a_reservation(layered) -> None:
  workflow = layered([2])
  simulator = BatchSimulator(workflow, num_hosts=2, core_flop_rate=1.0)
  reservation = _submit(simulator, 1, 30.0)

  event = simulator.wait_for_next_event()
  assert isinstance(event, ReservationStarted) and event.reservation is reservation
  assert reservation.state == ReservationState.RUNNING

  first, second = workflow.tasks_in_level_range(0, 0)
  simulator.submit_task(first, reservation)
  simulator.submit_task(second, reservation)

  events = [simulator.wait_for_next_event() for _ in range(3)]
  assert [type(e) for e in events] == [TaskCompleted, TaskCompleted, ReservationExpired]
  assert [e.time for e in events] == pytest.approx([10.0, 20.0, 120.0])
  assert workflow.is_done()

  with pytest.raises(SimulationStalled):
    simulator.wait_for_next_event()


def test_expiration_fails_running_tasks(layered) -> None:
  workflow = layered([1], flops=1000.0)
  simulator = BatchSimulator(workflow, num_hosts=1, core_flop_rate=1.0)
  reservation = _submit(simulator, 1, 60.0)
  simulator.wait_for_next_event()
  task = workflow.tasks[0]
  simulator.submit_task(task, reservation)

  failed = simulator.wait_for_next_event()
  expired = simulator.wait_for_next_event()
  assert isinstance(failed, TaskFailed) and failed.task is task
  assert isinstance(expired, ReservationExpired)
  assert expired.time == pytest.approx(120.0)
  assert workflow.task_state(task) == TaskState.READY
  assert reservation.state == ReservationState.EXPIRED

  with pytest.raises(ValueError):
    simulator.submit_task(task, reservation)


def test_wait_estimates_match_fcfs_starts(layered) -> None:
  workflow = layered([1])
  simulator = BatchSimulator(workflow, num_hosts=4, core_flop_rate=1.0, background_jobs=[(0.0, 3, 600.0)])

  estimates = simulator.estimate_wait_times({
    "small": (1, 1, 30.0),
    "large": (2, 1, 30.0),
    "too_big": (5, 1, 30.0),
  })
  assert estimates == {"small": pytest.approx(0.0), "large": pytest.approx(600.0)}

  reservation = _submit(simulator, 2, 30.0)
  event = simulator.wait_for_next_event()
  assert isinstance(event, ReservationStarted) and event.reservation is reservation
  assert event.time == pytest.approx(estimates["large"])


def test_queue_blocks_behind_its_head(layered) -> None:
  workflow = layered([1])
  simulator = BatchSimulator(workflow, num_hosts=2, core_flop_rate=1.0, background_jobs=[(0.0, 1, 300.0)])
  head = _submit(simulator, 2, 30.0)
  behind = _submit(simulator, 1, 30.0)
  # no backfilling: the 1-node request waits for the 2-node head
  assert simulator.estimate_wait_times({"next": (1, 1, 30.0)})["next"] == pytest.approx(300.0 + 120.0)

  events = [simulator.wait_for_next_event() for _ in range(3)]
  assert [type(e) for e in events] == [ReservationStarted, ReservationExpired, ReservationStarted]
  assert [e.reservation for e in events] == [head, head, behind]
  assert [e.time for e in events] == pytest.approx([300.0, 420.0, 420.0])


def test_terminate_reservation(layered) -> None:
  workflow = layered([1])
  simulator = BatchSimulator(workflow, num_hosts=1, core_flop_rate=1.0)
  running = _submit(simulator, 1, 30.0)
  queued = _submit(simulator, 1, 30.0)

  assert simulator.terminate_reservation(queued)
  assert queued.state == ReservationState.TERMINATED
  assert not simulator.terminate_reservation(queued)

  simulator.wait_for_next_event()
  assert simulator.terminate_reservation(running)
  assert running.state == ReservationState.TERMINATED
  assert not simulator.terminate_reservation(running)
  with pytest.raises(SimulationStalled):
    simulator.wait_for_next_event()


def test_oversized_reservation_is_rejected(layered) -> None:
  simulator = BatchSimulator(layered([1]), num_hosts=2, core_flop_rate=1.0)
  with pytest.raises(ValueError):
    _submit(simulator, 3, 10.0)
  with pytest.raises(ValueError):
    BatchSimulator(layered([1]), num_hosts=2, core_flop_rate=1.0, background_jobs=[(0.0, 3, 10.0)])


def test_execution_slowdown_stretches_tasks(layered) -> None:
  workflow = layered([1], flops=100.0)
  simulator = BatchSimulator(workflow, num_hosts=1, core_flop_rate=2.0, execution_slowdown=1.5)
  reservation = _submit(simulator, 1, 30.0)
  simulator.wait_for_next_event()
  simulator.submit_task(workflow.tasks[0], reservation)

  event = simulator.wait_for_next_event()
  assert isinstance(event, TaskCompleted)
  assert event.time == pytest.approx(75.0)

  with pytest.raises(ValueError):
    BatchSimulator(layered([1]), num_hosts=1, core_flop_rate=1.0, execution_slowdown=0.0)
