import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from switchyard.config import SwitchyardConfig
from switchyard.errors import ConfigurationError
from switchyard.orchestrator import WorkflowOrchestrator, workflow_record
from switchyard.patterns import PhaseSpec
from switchyard.registry import CapabilityRegistry
from switchyard.router import Task
from switchyard.session import CoordinationSession
from switchyard.state import HistoryStore
from switchyard.workers import FixtureBackend, WorkerOutput


class FixedAssessor:
    def __init__(self, score: float) -> None:
        self.score = score

    def assess_alignment(self, session: CoordinationSession) -> float:
        _ = session
        return self.score


class FirstCallTimeoutBackend(FixtureBackend):
    def __init__(self, slow_worker: str) -> None:
        super().__init__()
        self.slow_worker = slow_worker
        self.slowed = False

    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        if worker_name == self.slow_worker and not self.slowed:
            self.slowed = True
            await asyncio.sleep(1.0)
        return await super().invoke(worker_name, task, snapshot)


class CancellingBackend(FixtureBackend):
    def __init__(self) -> None:
        super().__init__()
        self.orchestrator: WorkflowOrchestrator | None = None

    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        assert self.orchestrator is not None
        for session_id in list(self.orchestrator.active_sessions):
            self.orchestrator.cancel(session_id)
        return await super().invoke(worker_name, task, snapshot)


class SnapshotRecordingBackend(FixtureBackend):
    def __init__(self) -> None:
        super().__init__()
        self.seen: list[tuple[str, list[str]]] = []

    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        self.seen.append((worker_name, sorted(snapshot)))
        return await super().invoke(worker_name, task, snapshot)


class InFlightBackend(FixtureBackend):
    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().invoke(worker_name, task, snapshot)
        finally:
            self.in_flight -= 1


class UnreachableAssessor:
    def assess_alignment(self, session: CoordinationSession) -> float:
        _ = session
        raise ConnectionError("ethics service unreachable")


def _orchestrator(backend: FixtureBackend | None = None, **kwargs: Any) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(CapabilityRegistry.default(), backend or FixtureBackend(), **kwargs)


def test_sequential_workflow_completes_all_phases() -> None:
    checkpoints: list[str] = []
    orchestrator = _orchestrator(checkpoint_hook=lambda session, phase: checkpoints.append(phase.name))

    result = orchestrator.run_workflow_sync(Task(description="build checkout api for payments"), "sequential")

    assert result.success is True
    assert result.failure_kind is None
    assert [phase.phase for phase in result.phase_log] == [
        "initiation",
        "department_sequence",
        "handoff_validation",
        "completion",
    ]
    assert checkpoints == ["handoff_validation"]
    assert result.final_quality_metrics["gates"] == {
        "alignment": 1.0,
        "coherence": 1.0,
        "integrity": 1.0,
    }
    assert result.final_quality_metrics["phases_completed"] == 4
    assert len(result.handoffs) == 8
    assert result.handoffs[0]["from_worker"] == "strategy"
    assert result.handoffs[0]["to_worker"] == "design"
    assert result.shared_knowledge["pattern"] == "sequential"
    assert result.shared_knowledge["task_context"]["description"] == "build checkout api for payments"
    assert "initiation.backend" in result.shared_knowledge


def test_gate_failure_stops_workflow_after_failing_phase() -> None:
    backend = FixtureBackend(
        hints={name: {"coherence": 0.7} for name in ("strategy", "design", "backend")}
    )
    orchestrator = _orchestrator(backend, assessor=FixedAssessor(0.9))

    result = asyncio.run(orchestrator.run_workflow(Task(description="launch referral program"), "sequential"))

    assert result.success is False
    assert result.failure_kind == "gate_failure"
    assert [phase.phase for phase in result.phase_log] == ["initiation", "department_sequence"]
    assert result.phase_log[1].gate is not None
    assert result.phase_log[1].gate.score == pytest.approx(0.7)
    assert result.phase_log[1].gate.passed is False
    assert "coherence" in (result.failure_reason or "")
    assert result.final_quality_metrics["gates"] == {"alignment": 0.9, "coherence": 0.7}
    session = orchestrator.history[-1]
    assert session.status == "failed"
    assert len(session.boundary_checks) == 2


def test_parallel_phase_survives_a_timed_out_participant() -> None:
    config = SwitchyardConfig.default()
    config.orchestration.invocation_timeout_seconds = 0.05
    orchestrator = _orchestrator(FirstCallTimeoutBackend("design"), config=config)

    result = orchestrator.run_workflow_sync(Task(description="prepare quarterly launch"), "parallel")

    assert result.success is True
    first = result.phase_log[0]
    assert first.participants["design"].status == "timed_out"
    assert first.participants["design"].error
    assert first.participants["strategy"].status == "completed"
    assert first.participants["backend"].status == "completed"
    assert "initiation.design" not in result.shared_knowledge
    assert "parallel_setup.design" in result.shared_knowledge
    assert result.final_quality_metrics["participant_failures"] == 1
    assert len(result.phase_log) == 5


def test_concurrent_phase_snapshots_exclude_peer_output() -> None:
    backend = SnapshotRecordingBackend()

    _orchestrator(backend).run_workflow_sync(Task(description="prepare quarterly launch"), "parallel")

    first_phase = backend.seen[:3]
    assert all("initiation.strategy" not in keys for _, keys in first_phase)


def test_sequential_phase_exposes_earlier_output_to_later_workers() -> None:
    backend = SnapshotRecordingBackend()

    _orchestrator(backend).run_workflow_sync(Task(description="build checkout api"), "sequential")

    worker, keys = backend.seen[1]
    assert worker == "design"
    assert "initiation.strategy" in keys


def test_phase_with_only_failures_fails_the_workflow() -> None:
    backend = FixtureBackend(failures={name: "offline" for name in ("strategy", "design", "backend")})

    result = _orchestrator(backend).run_workflow_sync(Task(description="anything"), "sequential")

    assert result.success is False
    assert result.failure_kind == "phase_failure"
    assert [phase.phase for phase in result.phase_log] == ["initiation"]
    assert "offline" in (result.failure_reason or "")


def test_orchestrated_lead_sets_phase_parameters_first() -> None:
    result = _orchestrator().run_workflow_sync(Task(description="build checkout api"), "orchestrated")

    assert result.success is True
    assert result.pattern == "orchestrated"
    assert result.shared_knowledge["executive_initiation.phase_parameters"]["worker"] == "strategy"
    assert "executive_initiation.design" in result.shared_knowledge
    assert result.handoffs[0]["from_worker"] == "strategy"


def test_custom_pattern_runs_keyword_phases() -> None:
    result = _orchestrator().run_workflow_sync(
        Task(description="gather requirements and design the UI"), "bespoke"
    )

    assert result.success is True
    assert result.pattern == "bespoke"
    assert [phase.phase for phase in result.phase_log] == ["strategy_phase", "design_phase"]
    assert list(result.phase_log[1].participants) == ["design"]


def test_auto_pattern_selection() -> None:
    result = _orchestrator().run_workflow_sync(Task(description="cross-functional workshop on pricing"))

    assert result.pattern == "collaborative"
    assert len(result.phase_log) == 6


def test_cancellation_discards_in_flight_output() -> None:
    backend = CancellingBackend()
    orchestrator = _orchestrator(backend)
    backend.orchestrator = orchestrator

    result = orchestrator.run_workflow_sync(Task(description="build checkout api"), "sequential")

    assert result.success is False
    assert result.failure_kind == "cancelled"
    assert [phase.phase for phase in result.phase_log] == ["initiation"]
    assert list(result.phase_log[0].participants) == ["strategy"]
    assert result.phase_log[0].participants["strategy"].status == "discarded"
    assert "initiation.strategy" not in result.shared_knowledge
    assert orchestrator.active_sessions == {}
    assert orchestrator.cancel("session-unknown") is False


def test_cancellation_between_phases_stops_at_next_boundary() -> None:
    orchestrator = _orchestrator()

    def cancel_after_first_phase(event: dict) -> None:
        if event["event"] == "phase_completed" and event["index"] == 0:
            orchestrator.cancel(event["session_id"])

    orchestrator.event_hook = cancel_after_first_phase

    result = orchestrator.run_workflow_sync(Task(description="build checkout api"), "sequential")

    assert result.success is False
    assert result.failure_kind == "cancelled"
    assert [phase.phase for phase in result.phase_log] == ["initiation"]
    assert all(item.status == "completed" for item in result.phase_log[0].participants.values())
    assert "initiation.strategy" in result.shared_knowledge
    assert "department_sequence" in (result.failure_reason or "")
    session = orchestrator.history[-1]
    assert session.boundary_checks[-1]["cancel_requested"] is True
    assert session.status == "failed"


def test_concurrent_phases_overlap_invocations() -> None:
    backend = InFlightBackend()

    result = _orchestrator(backend).run_workflow_sync(Task(description="prepare quarterly launch"), "parallel")

    assert result.success is True
    assert backend.peak == 3


def test_sequential_phases_invoke_one_worker_at_a_time() -> None:
    backend = InFlightBackend()

    _orchestrator(backend).run_workflow_sync(Task(description="build checkout api"), "sequential")

    assert backend.peak == 1


def test_assessor_error_is_reported_as_gate_failure() -> None:
    result = _orchestrator(assessor=UnreachableAssessor()).run_workflow_sync(
        Task(description="build checkout api"), "sequential"
    )

    assert result.success is False
    assert result.failure_kind == "gate_failure"
    assert "ethics service unreachable" in (result.failure_reason or "")
    assert [phase.phase for phase in result.phase_log] == ["initiation"]
    assert result.phase_log[0].gate is None


def test_repeated_phase_participant_is_rejected_at_construction() -> None:
    with pytest.raises(ConfigurationError, match="more than once"):
        _orchestrator(
            pattern_overrides={"sequential": (PhaseSpec("draft", participants=("design", "design")),)}
        )


def test_checkpoint_hook_errors_are_recorded_not_fatal() -> None:
    def broken_hook(session: CoordinationSession, phase: PhaseSpec) -> None:
        raise RuntimeError("observer down")

    orchestrator = _orchestrator(checkpoint_hook=broken_hook)

    result = orchestrator.run_workflow_sync(Task(description="build checkout api"), "sequential")

    assert result.success is True
    session = orchestrator.history[-1]
    assert session.checkpoints[0]["error"] == "observer down"


def test_events_and_history_records() -> None:
    events: list[dict] = []
    history = HistoryStore()
    orchestrator = _orchestrator(event_hook=events.append, history_store=history)

    result = orchestrator.run_workflow_sync(Task(description="build checkout api"), "sequential")

    names = [event["event"] for event in events]
    assert names[0] == "session_started"
    assert names[-1] == "session_completed"
    assert "boundary_check" in names
    assert "gate_checked" in names
    records = history.records(kind="workflow")
    assert len(records) == 1
    assert records[0]["session_id"] == result.session_id
    assert records[0]["phases"] == workflow_record(result)["phases"]


def test_pattern_overrides_drive_phase_tables() -> None:
    orchestrator = _orchestrator(
        pattern_overrides={
            "sequential": (
                PhaseSpec("draft", participants=("strategy",)),
                PhaseSpec("review", required_gate="integrity", participants=("design", "backend")),
            )
        }
    )

    result = orchestrator.run_workflow_sync(Task(description="write brief"), "sequential")

    assert result.success is True
    assert [phase.phase for phase in result.phase_log] == ["draft", "review"]
    assert list(result.phase_log[0].participants) == ["strategy"]


def test_invalid_configuration_raises() -> None:
    config = SwitchyardConfig.default()
    config.orchestration.lead_worker = "ghost"

    with pytest.raises(ConfigurationError):
        _orchestrator(config=config)
