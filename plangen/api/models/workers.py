"""Pydantic models for worker pool status endpoints."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WorkerInfo(BaseModel):
    """One worker process."""

    pid: int
    state: str
    model: Optional[str] = None
    requests_served: int
    uptime_seconds: float
    idle_seconds: float
    memory_rss_mb: Optional[float] = None
    alive: bool


class SlotInfo(BaseModel):
    """One pool slot."""

    slot: int
    worker: Optional[WorkerInfo] = None
    respawning: bool
    consecutive_failures: int
    last_error: Optional[str] = None
    spawn_count: int


class PoolStatusResponse(BaseModel):
    """Worker pool status."""

    capacity: int = Field(..., description="Configured number of workers")
    live: int = Field(..., description="Worker processes currently alive")
    idle: int
    busy: int
    waiting: int = Field(..., description="Requests waiting for a worker")
    degraded: bool
    fatal: bool
    closed: bool
    stats: Dict[str, int]
    slots: List[SlotInfo]


class ExchangeLogsResponse(BaseModel):
    """Recent worker exchanges and aggregate statistics."""

    logs: List[Dict[str, Any]]
    stats: Dict[str, Any]
