from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Literal
from uuid import uuid4

from switchyard.errors import SwitchyardError
from switchyard.gates import QualityGateResult
from switchyard.router import Task

SessionStatus = Literal["initializing", "running", "completed", "failed"]
ParticipantStatus = Literal["completed", "failed", "timed_out", "discarded"]

_STATUS_RANK = {"initializing": 0, "running": 1, "completed": 2, "failed": 2}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class SessionStateError(SwitchyardError):
    """Raised when a session would break its lifecycle invariants."""


@dataclass(slots=True)
class ParticipantResult:
    worker: str
    status: ParticipantStatus
    output: dict[str, Any] = field(default_factory=dict)
    quality_hints: dict[str, float] = field(default_factory=dict)
    error: str | None = None
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str = field(default_factory=_utcnow_iso)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker": self.worker,
            "status": self.status,
            "output": copy.deepcopy(self.output),
            "quality_hints": dict(self.quality_hints),
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParticipantResult:
        return cls(
            worker=str(data["worker"]),
            status=data["status"],
            output=dict(data.get("output") or {}),
            quality_hints={str(k): float(v) for k, v in (data.get("quality_hints") or {}).items()},
            error=data.get("error"),
            started_at=str(data.get("started_at", "")),
            ended_at=str(data.get("ended_at", "")),
        )


@dataclass(slots=True)
class PhaseResult:
    phase: str
    index: int
    started_at: str
    ended_at: str | None = None
    participants: dict[str, ParticipantResult] = field(default_factory=dict)
    gate: QualityGateResult | None = None

    @property
    def all_failed(self) -> bool:
        return bool(self.participants) and not any(
            item.succeeded for item in self.participants.values()
        )

    def failures(self) -> dict[str, str]:
        return {
            name: item.error or item.status
            for name, item in self.participants.items()
            if not item.succeeded
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "index": self.index,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "participants": {name: item.to_dict() for name, item in self.participants.items()},
            "gate": self.gate.to_dict() if self.gate else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PhaseResult:
        gate = data.get("gate")
        return cls(
            phase=str(data["phase"]),
            index=int(data["index"]),
            started_at=str(data["started_at"]),
            ended_at=data.get("ended_at"),
            participants={
                str(name): ParticipantResult.from_dict(item)
                for name, item in (data.get("participants") or {}).items()
            },
            gate=QualityGateResult.from_dict(gate) if gate else None,
        )


class SharedKnowledge(Mapping[str, Any]):
    """Append-only blackboard owned by a single session.

    Keys can be written once; readers get deep-copied snapshots.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}
        self._writers: dict[str, str] = {}

    def write(self, key: str, value: Any, *, writer: str) -> None:
        if key in self._entries:
            raise SessionStateError(f"Shared knowledge key '{key}' is already written.")
        self._entries[key] = copy.deepcopy(value)
        self._writers[key] = writer

    def writer_of(self, key: str) -> str:
        return self._writers[key]

    def snapshot(self) -> Mapping[str, Any]:
        return MappingProxyType(copy.deepcopy(self._entries))

    def __getitem__(self, key: str) -> Any:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": copy.deepcopy(self._entries),
            "writers": dict(self._writers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SharedKnowledge:
        knowledge = cls()
        writers = data.get("writers") or {}
        for key, value in (data.get("entries") or {}).items():
            knowledge.write(key, value, writer=str(writers.get(key, "unknown")))
        return knowledge


@dataclass(frozen=True)
class SessionView:
    """Read-only audit view of a finished or restored session."""

    id: str
    task: Mapping[str, Any]
    pattern: str
    status: str
    participants: tuple[str, ...]
    phase_log: tuple[Mapping[str, Any], ...]
    shared_knowledge: Mapping[str, Any]
    handoffs: tuple[Mapping[str, Any], ...]


@dataclass
class CoordinationSession:
    task: Task
    pattern: str
    participants: tuple[str, ...]
    planned_phases: tuple[str, ...]
    id: str = field(default_factory=lambda: f"session-{uuid4().hex[:12]}")
    status: SessionStatus = "initializing"
    phase_log: list[PhaseResult] = field(default_factory=list)
    shared_knowledge: SharedKnowledge = field(default_factory=SharedKnowledge)
    handoffs: list[dict[str, Any]] = field(default_factory=list)
    worker_status: dict[str, str] = field(default_factory=dict)
    checkpoints: list[dict[str, Any]] = field(default_factory=list)
    boundary_checks: list[dict[str, Any]] = field(default_factory=list)
    cancel_requested: bool = False
    created_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None

    def transition(self, status: SessionStatus) -> None:
        if status not in _STATUS_RANK:
            raise SessionStateError(f"Unknown session status: {status}")
        if self.status in {"completed", "failed"}:
            raise SessionStateError(f"Session {self.id} already finished as {self.status}.")
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise SessionStateError(
                f"Session {self.id} cannot move from {self.status} back to {status}."
            )
        self.status = status
        if status in {"completed", "failed"}:
            self.ended_at = _utcnow_iso()

    @property
    def finished(self) -> bool:
        return self.status in {"completed", "failed"}

    @property
    def current_phase_index(self) -> int:
        return len(self.phase_log) - 1

    def append_phase(self, result: PhaseResult) -> None:
        position = len(self.phase_log)
        if position >= len(self.planned_phases):
            raise SessionStateError(
                f"Session {self.id} already logged all {len(self.planned_phases)} phases."
            )
        expected = self.planned_phases[position]
        if result.phase != expected or result.index != position:
            raise SessionStateError(
                f"Phase '{result.phase}' appended out of order; expected '{expected}'."
            )
        self.phase_log.append(result)

    def participant_results(self, worker: str) -> list[ParticipantResult]:
        return [
            phase.participants[worker]
            for phase in self.phase_log
            if worker in phase.participants
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task.to_dict(),
            "pattern": self.pattern,
            "participants": list(self.participants),
            "planned_phases": list(self.planned_phases),
            "status": self.status,
            "phase_log": [phase.to_dict() for phase in self.phase_log],
            "shared_knowledge": self.shared_knowledge.to_dict(),
            "handoffs": copy.deepcopy(self.handoffs),
            "worker_status": dict(self.worker_status),
            "checkpoints": copy.deepcopy(self.checkpoints),
            "boundary_checks": copy.deepcopy(self.boundary_checks),
            "created_at": self.created_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CoordinationSession:
        return cls(
            task=Task.from_dict(data["task"]),
            pattern=str(data["pattern"]),
            participants=tuple(data.get("participants") or ()),
            planned_phases=tuple(data.get("planned_phases") or ()),
            id=str(data["id"]),
            status=data.get("status", "initializing"),
            phase_log=[PhaseResult.from_dict(item) for item in data.get("phase_log") or []],
            shared_knowledge=SharedKnowledge.from_dict(data.get("shared_knowledge") or {}),
            handoffs=list(data.get("handoffs") or []),
            worker_status=dict(data.get("worker_status") or {}),
            checkpoints=list(data.get("checkpoints") or []),
            boundary_checks=list(data.get("boundary_checks") or []),
            created_at=str(data.get("created_at", "")),
            ended_at=data.get("ended_at"),
        )

    def view(self) -> SessionView:
        return SessionView(
            id=self.id,
            task=MappingProxyType(self.task.to_dict()),
            pattern=self.pattern,
            status=self.status,
            participants=tuple(self.participants),
            phase_log=tuple(MappingProxyType(phase.to_dict()) for phase in self.phase_log),
            shared_knowledge=self.shared_knowledge.snapshot(),
            handoffs=tuple(MappingProxyType(copy.deepcopy(item)) for item in self.handoffs),
        )
