from __future__ import annotations


class SwitchyardError(RuntimeError):
    """Base class for routing and coordination failures."""


class ConfigurationError(SwitchyardError):
    """Raised for unknown worker names or malformed phase/config data."""


class GateFailure(SwitchyardError):
    """Raised when a quality gate scores below its threshold."""

    def __init__(self, gate: str, score: float, threshold: float, detail: str = "") -> None:
        message = f"Quality gate '{gate}' failed: score {score:.2f} < threshold {threshold:.2f}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.gate = gate
        self.score = score
        self.threshold = threshold
        self.detail = detail


class PhaseFailure(SwitchyardError):
    """Raised when every participant of a phase failed."""

    def __init__(self, phase: str, errors: dict[str, str]) -> None:
        summary = "; ".join(f"{worker}: {error}" for worker, error in errors.items())
        super().__init__(f"All participants failed in phase '{phase}'. {summary}".strip())
        self.phase = phase
        self.errors = dict(errors)


class WorkerInvocationError(SwitchyardError):
    """Raised when a single worker invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.retriable = retriable


class WorkerTimeoutError(WorkerInvocationError):
    """Raised when a worker invocation exceeds its timeout."""


class SessionCancelled(SwitchyardError):
    """Raised at a phase boundary once cancellation has been requested."""
