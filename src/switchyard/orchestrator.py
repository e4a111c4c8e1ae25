from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from switchyard.config import SwitchyardConfig
from switchyard.errors import (
    GateFailure,
    PhaseFailure,
    SessionCancelled,
    WorkerTimeoutError,
)
from switchyard.gates import AlignmentAssessor, QualityGateValidator
from switchyard.patterns import PatternCatalog, PatternPlan, PhaseSpec
from switchyard.registry import CapabilityRegistry
from switchyard.router import Router, Task
from switchyard.session import CoordinationSession, ParticipantResult, PhaseResult
from switchyard.state.history import HistoryStore
from switchyard.workers.base import Worker, WorkerBackend, build_worker
from switchyard.workers.resilient import ResilientInvoker, RetryPolicy

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
CheckpointHook = Callable[[CoordinationSession, PhaseSpec], Any]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class WorkflowResult:
    success: bool
    session_id: str
    task_id: str
    pattern: str
    phase_log: list[PhaseResult] = field(default_factory=list)
    final_quality_metrics: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    failure_kind: str | None = None
    shared_knowledge: dict[str, Any] = field(default_factory=dict)
    handoffs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "pattern": self.pattern,
            "phase_log": [phase.to_dict() for phase in self.phase_log],
            "final_quality_metrics": dict(self.final_quality_metrics),
            "failure_reason": self.failure_reason,
            "failure_kind": self.failure_kind,
            "shared_knowledge": dict(self.shared_knowledge),
            "handoffs": list(self.handoffs),
        }


def workflow_record(result: WorkflowResult) -> dict[str, Any]:
    """Flatten a workflow result into a history record."""
    return {
        "kind": "workflow",
        "task_id": result.task_id,
        "session_id": result.session_id,
        "pattern": result.pattern,
        "success": result.success,
        "failure_kind": result.failure_kind,
        "failure_reason": result.failure_reason,
        "phases": [phase.phase for phase in result.phase_log],
        "gates": dict(result.final_quality_metrics.get("gates", {})),
    }


class WorkflowOrchestrator:
    """Drives a task through the phases of a coordination pattern.

    Each run owns a fresh ``CoordinationSession``. Task-content problems
    (gate failures, failed phases, cancellation) come back as a failed
    ``WorkflowResult``; configuration problems raise.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        backend: WorkerBackend,
        *,
        config: SwitchyardConfig | None = None,
        router: Router | None = None,
        validator: QualityGateValidator | None = None,
        assessor: AlignmentAssessor | None = None,
        checkpoint_hook: CheckpointHook | None = None,
        event_hook: EventHook | None = None,
        pattern_overrides: Mapping[str, Sequence[PhaseSpec]] | None = None,
        history_store: HistoryStore | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or SwitchyardConfig.default()
        self.router = router or Router(registry, self.config.routing)
        self.event_hook = event_hook
        self.validator = validator or QualityGateValidator(
            self.config.gates.thresholds(), assessor=assessor, event_hook=event_hook
        )
        self.checkpoint_hook = checkpoint_hook
        self.history_store = history_store
        orchestration = self.config.orchestration
        self.catalog = PatternCatalog.with_overrides(
            registry,
            lead_worker=orchestration.lead_worker,
            default_worker=self.config.routing.default_worker,
            overrides=pattern_overrides,
        )
        self.invoker = ResilientInvoker(
            backend,
            RetryPolicy(
                max_retries=orchestration.max_retries,
                backoff_seconds=orchestration.retry_backoff_seconds,
                timeout_seconds=orchestration.invocation_timeout_seconds,
            ),
            event_hook=event_hook,
        )
        self.workers: dict[str, Worker] = {
            profile.name: build_worker(profile, self.invoker) for profile in registry
        }
        self.active_sessions: dict[str, CoordinationSession] = {}
        self.history: deque[CoordinationSession] = deque(maxlen=self.config.history.max_records)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def cancel(self, session_id: str) -> bool:
        session = self.active_sessions.get(session_id)
        if session is None:
            return False
        session.cancel_requested = True
        self._emit({"event": "cancel_requested", "session_id": session_id})
        return True

    def run_workflow_sync(self, task: Task, pattern: str | None = None) -> WorkflowResult:
        return asyncio.run(self.run_workflow(task, pattern))

    async def run_workflow(self, task: Task, pattern: str | None = None) -> WorkflowResult:
        plan = self.catalog.plan(pattern or self.config.orchestration.default_pattern, task)
        session = CoordinationSession(
            task=task,
            pattern=plan.pattern,
            participants=plan.participants,
            planned_phases=tuple(phase.name for phase in plan.phases),
        )
        self.active_sessions[session.id] = session
        self._emit(
            {
                "event": "session_started",
                "session_id": session.id,
                "task_id": task.id,
                "pattern": plan.pattern,
                "participants": list(plan.participants),
            }
        )
        try:
            self._initialize(session, plan)
            for index, phase in enumerate(plan.phases):
                self._boundary_check(session, phase, index)
                await self._run_phase(session, plan, phase, index)
            session.transition("completed")
            result = self._result(session, success=True)
        except GateFailure as exc:
            result = self._fail(session, "gate_failure", exc)
        except PhaseFailure as exc:
            result = self._fail(session, "phase_failure", exc)
        except SessionCancelled as exc:
            result = self._fail(session, "cancelled", exc)
        except Exception:
            if not session.finished:
                session.transition("failed")
            raise
        finally:
            self.active_sessions.pop(session.id, None)
            self.history.append(session)
            self.validator.forget(session.id)

        self._emit(
            {
                "event": "session_completed" if result.success else "session_failed",
                "session_id": session.id,
                "task_id": task.id,
                "failure_kind": result.failure_kind,
            }
        )
        if self.history_store is not None:
            self.history_store.append_workflow(workflow_record(result))
        return result

    def _initialize(self, session: CoordinationSession, plan: PatternPlan) -> None:
        knowledge = session.shared_knowledge
        knowledge.write("task_context", session.task.to_dict(), writer="orchestrator")
        knowledge.write("pattern", plan.pattern, writer="orchestrator")
        knowledge.write("started_at", session.created_at, writer="orchestrator")
        for name in plan.participants:
            session.worker_status[name] = "ready"
        session.transition("running")
        logger.debug("session %s running %s with %s", session.id, plan.pattern, plan.participants)

    def _boundary_check(self, session: CoordinationSession, phase: PhaseSpec, index: int) -> None:
        failed = sum(
            1
            for logged in session.phase_log
            for item in logged.participants.values()
            if not item.succeeded
        )
        open_conflicts = sum(
            1
            for handoff in session.handoffs
            for conflict in handoff.get("conflicts", [])
            if conflict.get("risk_level") == "high"
        )
        check = {
            "phase": phase.name,
            "index": index,
            "checked_at": _utcnow_iso(),
            "failed_participants": failed,
            "open_conflicts": open_conflicts,
            "cancel_requested": session.cancel_requested,
        }
        session.boundary_checks.append(check)
        self._emit({"event": "boundary_check", "session_id": session.id, **check})
        if session.cancel_requested:
            raise SessionCancelled(f"Session {session.id} cancelled before phase '{phase.name}'.")

    async def _run_phase(
        self, session: CoordinationSession, plan: PatternPlan, phase: PhaseSpec, index: int
    ) -> None:
        participants = plan.phase_participants(phase)
        mode = plan.phase_mode(phase)
        self._emit(
            {
                "event": "phase_started",
                "session_id": session.id,
                "phase": phase.name,
                "index": index,
                "mode": mode,
            }
        )
        result = PhaseResult(phase=phase.name, index=index, started_at=_utcnow_iso())
        if mode == "concurrent":
            await self._run_concurrent(session, phase, participants, result)
        elif mode == "led":
            lead = plan.lead or self.config.orchestration.lead_worker
            await self._run_led(session, phase, lead, participants, result)
        else:
            await self._run_sequential(session, phase, participants, result)
        result.ended_at = _utcnow_iso()

        session.append_phase(result)
        if session.cancel_requested:
            self._emit(
                {"event": "phase_discarded", "session_id": session.id, "phase": phase.name}
            )
            raise SessionCancelled(f"Session {session.id} cancelled during phase '{phase.name}'.")
        logger.debug("phase %s of %s finished", phase.name, session.id)
        if result.all_failed:
            raise PhaseFailure(phase.name, result.failures())
        if phase.required_gate:
            gate = await self.validator.validate(phase.required_gate, session)
            result.gate = gate
            if not gate.passed:
                raise GateFailure(gate.gate_name, gate.score, gate.threshold, gate.detail)
        if phase.consciousness_checkpoint:
            await self._checkpoint(session, phase)
        self._emit(
            {
                "event": "phase_completed",
                "session_id": session.id,
                "phase": phase.name,
                "index": index,
                "failures": len(result.failures()),
            }
        )

    async def _invoke(self, session: CoordinationSession, worker_name: str) -> ParticipantResult:
        worker = self.workers[worker_name]
        snapshot = session.shared_knowledge.snapshot()
        session.worker_status[worker_name] = "active"
        started_at = _utcnow_iso()
        try:
            produced = await worker.run(session.task, snapshot)
        except WorkerTimeoutError as exc:
            session.worker_status[worker_name] = "failed"
            return ParticipantResult(
                worker=worker_name, status="timed_out", error=str(exc), started_at=started_at
            )
        except Exception as exc:
            session.worker_status[worker_name] = "failed"
            return ParticipantResult(
                worker=worker_name, status="failed", error=str(exc), started_at=started_at
            )
        session.worker_status[worker_name] = "ready"
        return ParticipantResult(
            worker=worker_name,
            status="completed",
            output=produced.output,
            quality_hints=produced.quality_hints,
            started_at=started_at,
        )

    def _record(
        self,
        session: CoordinationSession,
        phase: PhaseSpec,
        result: PhaseResult,
        item: ParticipantResult,
        key: str | None = None,
    ) -> None:
        if session.cancel_requested:
            item.status = "discarded"
            item.output = {}
        result.participants[item.worker] = item
        if item.succeeded:
            session.shared_knowledge.write(
                key or f"{phase.name}.{item.worker}", item.output, writer=item.worker
            )

    def _log_handoff(
        self, session: CoordinationSession, phase: PhaseSpec, from_worker: str, to_worker: str
    ) -> None:
        conflicts = self.router.detect_conflicts(from_worker, to_worker, session.task)
        session.handoffs.append(
            {
                "phase": phase.name,
                "from_worker": from_worker,
                "to_worker": to_worker,
                "at": _utcnow_iso(),
                "conflicts": [asdict(conflict) for conflict in conflicts],
            }
        )

    async def _run_sequential(
        self,
        session: CoordinationSession,
        phase: PhaseSpec,
        participants: Sequence[str],
        result: PhaseResult,
        previous: str | None = None,
    ) -> None:
        for name in participants:
            if session.cancel_requested:
                break
            item = await self._invoke(session, name)
            self._record(session, phase, result, item)
            if item.succeeded:
                if previous is not None:
                    self._log_handoff(session, phase, previous, name)
                previous = name

    async def _run_concurrent(
        self,
        session: CoordinationSession,
        phase: PhaseSpec,
        participants: Sequence[str],
        result: PhaseResult,
    ) -> None:
        items = await asyncio.gather(*(self._invoke(session, name) for name in participants))
        for item in items:
            self._record(session, phase, result, item)

    async def _run_led(
        self,
        session: CoordinationSession,
        phase: PhaseSpec,
        lead: str,
        participants: Sequence[str],
        result: PhaseResult,
    ) -> None:
        item = await self._invoke(session, lead)
        self._record(session, phase, result, item, key=f"{phase.name}.phase_parameters")
        rest = [name for name in participants if name != lead]
        await self._run_sequential(
            session, phase, rest, result, previous=lead if item.succeeded else None
        )

    async def _checkpoint(self, session: CoordinationSession, phase: PhaseSpec) -> None:
        entry: dict[str, Any] = {"phase": phase.name, "at": _utcnow_iso()}
        if self.checkpoint_hook is None:
            entry["result"] = None
        else:
            try:
                outcome = self.checkpoint_hook(session, phase)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                entry["result"] = outcome
            except Exception as exc:
                # Checkpoints are observational; a broken hook never stops the run.
                entry["error"] = str(exc)
                logger.debug("checkpoint hook failed in %s: %s", phase.name, exc)
        session.checkpoints.append(entry)
        self._emit({"event": "checkpoint", "session_id": session.id, **entry})

    @staticmethod
    def _metrics(session: CoordinationSession) -> dict[str, Any]:
        gates: dict[str, float] = {}
        for phase in session.phase_log:
            if phase.gate is not None:
                gates[phase.gate.gate_name] = phase.gate.score
        failures = sum(len(phase.failures()) for phase in session.phase_log)
        return {
            "gates": gates,
            "average_gate_score": round(sum(gates.values()) / len(gates), 4) if gates else None,
            "phases_completed": len(session.phase_log),
            "participant_failures": failures,
            "handoffs": len(session.handoffs),
        }

    def _result(
        self,
        session: CoordinationSession,
        *,
        success: bool,
        failure_kind: str | None = None,
        failure_reason: str | None = None,
    ) -> WorkflowResult:
        return WorkflowResult(
            success=success,
            session_id=session.id,
            task_id=session.task.id,
            pattern=session.pattern,
            phase_log=list(session.phase_log),
            final_quality_metrics=self._metrics(session),
            failure_reason=failure_reason,
            failure_kind=failure_kind,
            shared_knowledge=dict(session.shared_knowledge.snapshot()),
            handoffs=list(session.handoffs),
        )

    def _fail(self, session: CoordinationSession, kind: str, exc: Exception) -> WorkflowResult:
        session.transition("failed")
        logger.debug("session %s failed (%s): %s", session.id, kind, exc)
        return self._result(session, success=False, failure_kind=kind, failure_reason=str(exc))
