"""Shared request/response models for the worker protocol.

Workers speak length-prefixed JSON over stdin/stdout:
- handshake (worker -> gateway, once): {"ready": true, "protocol": 1, "model": "..."}
- request   (gateway -> worker):       {"userId", "goals", "preferences", "healthData"}
- response  (worker -> gateway):       {"planId", "type", "durationWeeks", "workouts", "nutrition"}
- failure   (worker -> gateway):       {"error": {"code", "message"}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


PROTOCOL_VERSION = 1


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STARTING = "starting"  # Process spawned, loading model
    IDLE = "idle"  # Handshake received, waiting in the pool
    BUSY = "busy"  # Leased to exactly one request
    DRAINING = "draining"  # Retired, being terminated before replacement
    DEAD = "dead"  # Unusable or terminated


class Outcome(str, Enum):
    """How an exchange ended, as reported to WorkerPool.release()."""

    SUCCESS = "success"
    RECOVERABLE = "recoverable"  # Worker reported an error; framing still in sync
    UNUSED = "unused"  # Lease returned before any frame was written
    UNUSABLE = "unusable"  # Crash, closed stream, timeout or protocol desync


class FailureKind(str, Enum):
    """Classified failures returned by the orchestrator."""

    INVALID_REQUEST = "invalid_request"
    OVERLOADED = "overloaded"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_PROTOCOL_ERROR = "upstream_protocol_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    SERVICE_DEGRADED = "service_degraded"


@dataclass(frozen=True, eq=True)
class PlanRequest:
    """Validated plan request handed to a worker."""

    user_id: str
    goals: Tuple[str, ...]
    preferences: Optional[Dict[str, Any]]
    health_data: Optional[Dict[str, Any]]

    # Holds dicts, so not hashable despite being frozen
    __hash__ = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        # Accept any sequence for goals but store it immutably
        if not isinstance(self.goals, tuple):
            object.__setattr__(self, "goals", tuple(self.goals))

    def to_wire(self) -> Dict[str, Any]:
        # Every key is always present; absent optionals are explicit nulls
        return {
            "userId": self.user_id,
            "goals": list(self.goals),
            "preferences": self.preferences,
            "healthData": self.health_data,
        }


@dataclass(frozen=True, eq=True)
class Plan:
    """Plan returned by a worker. Workouts and nutrition are mirrored verbatim."""

    plan_id: Optional[str]
    type: str
    duration_weeks: int
    workouts: Tuple[Any, ...] = ()
    nutrition: Dict[str, Any] = field(default_factory=dict)

    __hash__ = None  # type: ignore[assignment]

    def to_wire(self) -> Dict[str, Any]:
        return {
            "planId": self.plan_id,
            "type": self.type,
            "durationWeeks": self.duration_weeks,
            "workouts": list(self.workouts),
            "nutrition": self.nutrition,
        }


@dataclass(frozen=True)
class WorkerError:
    """A response that is not a plan: malformed bytes or an explicit worker failure."""

    code: str
    message: str
    reported_by_worker: bool = False  # True only for {"error": {...}} payloads


@dataclass(frozen=True)
class PlanFailure:
    """Classified failure returned to the caller instead of a Plan."""

    kind: FailureKind
    message: str
    code: Optional[str] = None  # Worker error code, when the worker sent one
    request_id: Optional[str] = None
    worker_pid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.kind.value.upper(),
            "message": self.message,
            "worker_code": self.code,
            "request_id": self.request_id,
        }


@dataclass
class InFlightRequest:
    """Correlates one request with the worker serving it, for one exchange."""

    request_id: str
    request: PlanRequest
    worker_pid: int
    worker_slot: int
    attempt: int
    deadline: float  # event loop time


PlanResult = Union[Plan, PlanFailure]
