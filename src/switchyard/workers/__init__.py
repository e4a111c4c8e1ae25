from switchyard.workers.base import (
    GenericWorker,
    SpecialistWorker,
    Worker,
    WorkerBackend,
    WorkerOutput,
    build_worker,
)
from switchyard.workers.fixture import FixtureBackend
from switchyard.workers.resilient import ResilientInvoker, RetryPolicy

__all__ = [
    "FixtureBackend",
    "GenericWorker",
    "ResilientInvoker",
    "RetryPolicy",
    "SpecialistWorker",
    "Worker",
    "WorkerBackend",
    "WorkerOutput",
    "build_worker",
]
