from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from switchyard.errors import WorkerInvocationError, WorkerTimeoutError
from switchyard.router import Task
from switchyard.workers.base import WorkerBackend, WorkerOutput

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 30.0


class ResilientInvoker(WorkerBackend):
    """Wraps a backend with a per-invocation timeout and bounded retries."""

    def __init__(
        self,
        backend: WorkerBackend,
        retry_policy: RetryPolicy,
        event_hook: EventHook | None = None,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self,
        worker_name: str,
        task: Task,
        snapshot: Mapping[str, Any],
    ) -> WorkerOutput:
        errors: list[str] = []
        last_error: WorkerInvocationError | None = None
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "worker_retry",
                        "worker": worker_name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await asyncio.wait_for(
                    self.backend.invoke(worker_name, task, snapshot),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                last_error = WorkerTimeoutError(
                    (
                        f"Worker '{worker_name}' timed out after "
                        f"{self.retry_policy.timeout_seconds:.1f}s"
                    ),
                    worker=worker_name,
                    retriable=True,
                )
            except WorkerInvocationError as exc:
                last_error = exc
                if exc.worker is None:
                    exc.worker = worker_name
            except Exception as exc:
                last_error = WorkerInvocationError(str(exc), worker=worker_name, retriable=True)

            errors.append(f"{worker_name}[{attempt}]: {last_error}")
            self._emit(
                {
                    "event": "worker_attempt_failed",
                    "worker": worker_name,
                    "attempt": attempt,
                    "error": str(last_error),
                    "retriable": last_error.retriable,
                    "timed_out": isinstance(last_error, WorkerTimeoutError),
                }
            )
            if not last_error.retriable:
                break

        if isinstance(last_error, WorkerTimeoutError) and len(errors) == 1:
            raise last_error
        summary = "; ".join(errors[-6:])
        error_type = WorkerTimeoutError if isinstance(last_error, WorkerTimeoutError) else WorkerInvocationError
        raise error_type(
            f"All attempts failed for worker '{worker_name}'. {summary}",
            worker=worker_name,
            retriable=False,
        )
