import json

import pytest

from switchyard.gates import QualityGateResult
from switchyard.router import Task
from switchyard.session import (
    CoordinationSession,
    ParticipantResult,
    PhaseResult,
    SessionStateError,
    SharedKnowledge,
)


def _session() -> CoordinationSession:
    return CoordinationSession(
        task=Task(description="ship onboarding flow", tags=("design",)),
        pattern="sequential",
        participants=("strategy", "design"),
        planned_phases=("initiation", "department_sequence"),
    )


def test_status_transitions_are_monotonic() -> None:
    session = _session()

    session.transition("running")
    with pytest.raises(SessionStateError):
        session.transition("initializing")
    session.transition("completed")
    assert session.finished
    assert session.ended_at is not None
    with pytest.raises(SessionStateError):
        session.transition("failed")


def test_phases_must_be_appended_in_plan_order() -> None:
    session = _session()

    with pytest.raises(SessionStateError, match="out of order"):
        session.append_phase(PhaseResult(phase="department_sequence", index=0, started_at="t"))

    session.append_phase(PhaseResult(phase="initiation", index=0, started_at="t"))
    session.append_phase(PhaseResult(phase="department_sequence", index=1, started_at="t"))
    with pytest.raises(SessionStateError):
        session.append_phase(PhaseResult(phase="extra", index=2, started_at="t"))
    assert [phase.phase for phase in session.phase_log] == ["initiation", "department_sequence"]


def test_shared_knowledge_is_append_only_and_snapshots_are_isolated() -> None:
    knowledge = SharedKnowledge()
    knowledge.write("initiation.strategy", {"goals": ["a"]}, writer="strategy")

    with pytest.raises(SessionStateError):
        knowledge.write("initiation.strategy", {}, writer="design")

    snapshot = knowledge.snapshot()
    snapshot["initiation.strategy"]["goals"].append("mutated")
    with pytest.raises(TypeError):
        snapshot["new"] = 1  # type: ignore[index]

    assert knowledge["initiation.strategy"] == {"goals": ["a"]}
    assert knowledge.writer_of("initiation.strategy") == "strategy"
    assert list(knowledge) == ["initiation.strategy"]


def test_phase_result_reports_failures() -> None:
    phase = PhaseResult(
        phase="initiation",
        index=0,
        started_at="t",
        participants={
            "strategy": ParticipantResult("strategy", "failed", error="boom"),
            "design": ParticipantResult("design", "timed_out"),
        },
    )

    assert phase.all_failed
    assert phase.failures() == {"strategy": "boom", "design": "timed_out"}


def test_session_roundtrip_reproduces_audit_view() -> None:
    session = _session()
    session.shared_knowledge.write("task_context", session.task.to_dict(), writer="orchestrator")
    session.transition("running")
    session.append_phase(
        PhaseResult(
            phase="initiation",
            index=0,
            started_at="2026-01-01T00:00:00+00:00",
            ended_at="2026-01-01T00:00:01+00:00",
            participants={
                "strategy": ParticipantResult(
                    "strategy", "completed", {"summary": "scope"}, {"coherence": 0.9}
                ),
                "design": ParticipantResult("design", "timed_out", error="slow"),
            },
            gate=QualityGateResult("alignment", 0.9, 0.85, True, "ok"),
        )
    )
    session.shared_knowledge.write("initiation.strategy", {"summary": "scope"}, writer="strategy")
    session.handoffs.append({"phase": "initiation", "from_worker": "strategy", "to_worker": "design"})
    session.transition("failed")

    restored = CoordinationSession.from_dict(json.loads(json.dumps(session.to_dict())))

    assert restored.view() == session.view()
    assert restored.phase_log[0].gate == session.phase_log[0].gate
    assert restored.shared_knowledge.writer_of("initiation.strategy") == "strategy"
    view = restored.view()
    assert view.status == "failed"
    with pytest.raises(TypeError):
        view.phase_log[0]["phase"] = "changed"  # type: ignore[index]
