import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from switchyard.errors import WorkerInvocationError, WorkerTimeoutError
from switchyard.registry import CapabilityRegistry
from switchyard.router import Task
from switchyard.workers import (
    FixtureBackend,
    GenericWorker,
    ResilientInvoker,
    RetryPolicy,
    SpecialistWorker,
    WorkerBackend,
    WorkerOutput,
    build_worker,
)
from switchyard.workers.base import normalize_quality_hints


class FlakyBackend(WorkerBackend):
    def __init__(self, failures_before_success: int) -> None:
        self.failures_before_success = failures_before_success
        self.calls = 0

    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        _ = task, snapshot
        self.calls += 1
        if self.calls <= self.failures_before_success:
            raise WorkerInvocationError("flaky", worker=worker_name, retriable=True)
        return WorkerOutput(output={"ok": True})


class SlowBackend(WorkerBackend):
    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> WorkerOutput:
        _ = worker_name, task, snapshot
        await asyncio.sleep(1.0)
        return WorkerOutput(output={"late": True})


class RawDictBackend(WorkerBackend):
    async def invoke(self, worker_name: str, task: Task, snapshot: Mapping[str, Any]) -> Any:
        _ = worker_name, task, snapshot
        return {"content": "plain"}


def test_fixture_backend_is_deterministic() -> None:
    backend = FixtureBackend(hints={"design": {"coherence": 0.6}})
    task = Task(description="draft onboarding", tags=("design",))

    first = asyncio.run(backend.invoke("design", task, {}))
    second = asyncio.run(backend.invoke("design", task, {}))

    assert first == second
    assert first.output["summary"] == "design contribution for: draft onboarding"
    assert first.quality_hints == {"coherence": 0.6}
    assert backend.calls == [("design", task.id), ("design", task.id)]


def test_fixture_backend_failures_are_not_retriable() -> None:
    backend = FixtureBackend(failures={"backend": "disk full"})

    with pytest.raises(WorkerInvocationError) as excinfo:
        asyncio.run(backend.invoke("backend", Task(description="x"), {}))

    assert excinfo.value.worker == "backend"
    assert excinfo.value.retriable is False


def test_resilient_invoker_retries_retriable_errors() -> None:
    events: list[dict] = []
    backend = FlakyBackend(failures_before_success=1)
    invoker = ResilientInvoker(
        backend, RetryPolicy(max_retries=1, backoff_seconds=0.0), event_hook=events.append
    )

    result = asyncio.run(invoker.invoke("backend", Task(description="x"), {}))

    assert result.output == {"ok": True}
    assert backend.calls == 2
    assert [event["event"] for event in events] == ["worker_attempt_failed", "worker_retry"]


def test_resilient_invoker_gives_up_after_retries() -> None:
    invoker = ResilientInvoker(FlakyBackend(failures_before_success=5), RetryPolicy(max_retries=2, backoff_seconds=0.0))

    with pytest.raises(WorkerInvocationError, match="All attempts failed") as excinfo:
        asyncio.run(invoker.invoke("backend", Task(description="x"), {}))

    assert excinfo.value.retriable is False


def test_resilient_invoker_times_out() -> None:
    invoker = ResilientInvoker(SlowBackend(), RetryPolicy(timeout_seconds=0.05))

    with pytest.raises(WorkerTimeoutError):
        asyncio.run(invoker.invoke("design", Task(description="x"), {}))


def test_build_worker_picks_kind_from_profile() -> None:
    registry = CapabilityRegistry.default()
    backend = FixtureBackend()

    assert isinstance(build_worker(registry.get_profile("design"), backend), SpecialistWorker)
    assert isinstance(build_worker(registry.get_profile("generalist"), backend), GenericWorker)


def test_generic_worker_never_calls_backend() -> None:
    backend = FixtureBackend()
    worker = build_worker(CapabilityRegistry.default().get_profile("generalist"), backend)

    result = asyncio.run(worker.run(Task(description="sort the inbox"), {}))

    assert backend.calls == []
    assert result.output["summary"] == "General handling of: sort the inbox"


def test_worker_wraps_plain_dict_results() -> None:
    worker = build_worker(CapabilityRegistry.default().get_profile("backend"), RawDictBackend())

    result = asyncio.run(worker.run(Task(description="x"), {}))

    assert result.output == {"content": "plain"}
    assert result.quality_hints == {}


def test_quality_hints_are_clamped_and_filtered() -> None:
    hints = normalize_quality_hints(
        {"coherence": 1.4, "feasibility": -2, "integrity": "0.5", "alignment": "high", "flag": True}
    )

    assert hints == {"coherence": 1.0, "feasibility": 0.0, "integrity": 0.5}
