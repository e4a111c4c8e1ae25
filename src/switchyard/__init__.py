from switchyard.gates import QualityGateResult, QualityGateValidator
from switchyard.orchestrator import WorkflowOrchestrator, WorkflowResult
from switchyard.registry import CapabilityRegistry, WorkerProfile
from switchyard.router import RoutingContext, RoutingDecision, Router, Task

__version__ = "0.3.0"

__all__ = [
    "CapabilityRegistry",
    "QualityGateResult",
    "QualityGateValidator",
    "Router",
    "RoutingContext",
    "RoutingDecision",
    "Task",
    "WorkerProfile",
    "WorkflowOrchestrator",
    "WorkflowResult",
    "__version__",
]
