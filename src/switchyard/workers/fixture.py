from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from switchyard.errors import WorkerInvocationError
from switchyard.router import Task
from switchyard.workers.base import WorkerBackend, WorkerOutput

FixtureFn = Callable[[str, Task], WorkerOutput]


def default_fixture(worker_name: str, task: Task) -> WorkerOutput:
    return WorkerOutput(
        output={
            "worker": worker_name,
            "summary": f"{worker_name} contribution for: {task.description}".strip(),
            "tags": list(task.tags),
        }
    )


class FixtureBackend(WorkerBackend):
    """Deterministic backend: output depends only on ``(worker, task)``.

    ``delays`` and ``failures`` let callers simulate slow or broken workers
    without touching the output function.
    """

    def __init__(
        self,
        fixture: FixtureFn | None = None,
        *,
        hints: Mapping[str, Mapping[str, float]] | None = None,
        delays: Mapping[str, float] | None = None,
        failures: Mapping[str, str] | None = None,
    ) -> None:
        self.fixture = fixture or default_fixture
        self.hints = {name: dict(values) for name, values in (hints or {}).items()}
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, str]] = []

    async def invoke(
        self,
        worker_name: str,
        task: Task,
        snapshot: Mapping[str, Any],
    ) -> WorkerOutput:
        _ = snapshot
        self.calls.append((worker_name, task.id))
        delay = self.delays.get(worker_name)
        if delay:
            await asyncio.sleep(delay)
        if worker_name in self.failures:
            raise WorkerInvocationError(
                self.failures[worker_name], worker=worker_name, retriable=False
            )
        result = self.fixture(worker_name, task)
        hints = dict(result.quality_hints)
        hints.update(self.hints.get(worker_name, {}))
        return WorkerOutput(output=dict(result.output), quality_hints=hints)
