"""Subprocess-backed inference gateway for plan generation.

This module keeps model inference out of the API process, enabling:
- Failure isolation (a crashed or stuck model never takes the API down)
- Warm, pre-spawned workers (model load is paid once per worker)
- Bounded concurrency with time-bounded, cancellable waits

Key components:
- orchestrator: PlanOrchestrator, the generate_plan() entry point
- pool: WorkerPool for worker leasing, retirement and respawn
- process: WorkerProcess, one subprocess and its pipes
- codec: length-prefixed JSON framing
- health: HealthMonitor liveness sweeps
- base: BaseWorker for implementing worker programs
- protocol: Shared request/response models
"""

from .errors import (
    GatewayError,
    SpawnError,
    PipeBroken,
    StreamClosed,
    WorkerTimeout,
    PoolExhausted,
    PoolClosed,
)
from .orchestrator import (
    PlanOrchestrator,
    get_orchestrator,
    start_orchestrator,
    shutdown_orchestrator,
    generate_plan,
)
from .pool import WorkerPool, WorkerLease
from .protocol import (
    FailureKind,
    Outcome,
    Plan,
    PlanFailure,
    PlanRequest,
    WorkerError,
    WorkerState,
)

__all__ = [
    "GatewayError",
    "SpawnError",
    "PipeBroken",
    "StreamClosed",
    "WorkerTimeout",
    "PoolExhausted",
    "PoolClosed",
    "PlanOrchestrator",
    "get_orchestrator",
    "start_orchestrator",
    "shutdown_orchestrator",
    "generate_plan",
    "WorkerPool",
    "WorkerLease",
    "FailureKind",
    "Outcome",
    "Plan",
    "PlanFailure",
    "PlanRequest",
    "WorkerError",
    "WorkerState",
]
