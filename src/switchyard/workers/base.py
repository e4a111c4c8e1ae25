from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from switchyard.registry import WorkerProfile
from switchyard.router import Task


@dataclass(slots=True)
class WorkerOutput:
    output: dict[str, Any] = field(default_factory=dict)
    quality_hints: dict[str, float] = field(default_factory=dict)


def normalize_quality_hints(raw: Mapping[str, Any] | None) -> dict[str, float]:
    hints: dict[str, float] = {}
    for key, value in (raw or {}).items():
        if isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isnan(number):
            continue
        hints[str(key)] = min(1.0, max(0.0, number))
    return hints


class WorkerBackend(ABC):
    @abstractmethod
    async def invoke(
        self,
        worker_name: str,
        task: Task,
        snapshot: Mapping[str, Any],
    ) -> WorkerOutput:
        """Run one worker against a task and a read-only blackboard snapshot."""


class Worker:
    kind: str = "specialist"

    def __init__(self, profile: WorkerProfile, backend: WorkerBackend) -> None:
        self.profile = profile
        self.backend = backend

    @property
    def name(self) -> str:
        return self.profile.name

    async def run(self, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        result = await self.backend.invoke(self.name, task, snapshot)
        if not isinstance(result, WorkerOutput):
            payload = result if isinstance(result, dict) else {"content": str(result)}
            result = WorkerOutput(output=dict(payload))
        return WorkerOutput(
            output=dict(result.output),
            quality_hints=normalize_quality_hints(result.quality_hints),
        )


class SpecialistWorker(Worker):
    kind = "specialist"


class GenericWorker(Worker):
    """Fixed implementation for ``kind = "generic"`` profiles.

    It never calls the backend: it acknowledges the task and echoes its
    objectives so downstream phases still see a contribution.
    """

    kind = "generic"

    async def run(self, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        _ = snapshot
        return WorkerOutput(
            output={
                "worker": self.name,
                "summary": f"General handling of: {task.description}".strip(),
                "tags": list(task.tags),
            },
            quality_hints={},
        )


def build_worker(profile: WorkerProfile, backend: WorkerBackend) -> Worker:
    if profile.is_generic:
        return GenericWorker(profile, backend)
    return SpecialistWorker(profile, backend)
