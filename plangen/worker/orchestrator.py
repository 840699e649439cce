"""PlanOrchestrator - public entry point for plan generation.

Responsibilities:
- Admit requests (minimal defensive check, no worker slot consumed)
- Lease a worker, run one exchange within the caller's time budget
- Classify every outcome into a Plan or a PlanFailure
- Own the pool and health monitor lifecycle
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from typing import Any, Dict, Optional, Union

from ..config import GatewayConfig
from ..db import worker_logs
from .codec import decode_response, encode_request
from .errors import FrameTooLarge, PipeBroken, PoolClosed, PoolExhausted, StreamClosed, WorkerTimeout
from .health import HealthMonitor
from .pool import WorkerLease, WorkerPool
from .protocol import (
    FailureKind,
    InFlightRequest,
    Outcome,
    Plan,
    PlanFailure,
    PlanRequest,
    PlanResult,
    WorkerError,
)

logger = logging.getLogger(__name__)


class _RetryOnFreshWorker:
    """Marker: the request never reached a worker because its pipe was broken."""

    def __init__(self, reason: str):
        self.reason = reason


class PlanOrchestrator:
    """
    Drives plan requests through the worker pool.

    Usage:
        async with PlanOrchestrator(config) as orchestrator:
            result = await orchestrator.generate_plan(request)
            if isinstance(result, PlanFailure):
                ...
    """

    def __init__(self, config: GatewayConfig, pool: Optional[WorkerPool] = None):
        """
        Initialize orchestrator.

        Args:
            config: Gateway configuration
            pool: Pool to use instead of building one from config
        """
        self.config = config
        self.pool = pool if pool is not None else WorkerPool(config)
        self.monitor = HealthMonitor(self.pool, interval=config.health_check_interval)

    async def start(self) -> None:
        """Pre-spawn workers and start the health monitor."""
        await self.pool.start()
        self.monitor.start()

    async def shutdown(self) -> None:
        """Stop the health monitor and terminate all workers."""
        await self.monitor.stop()
        await self.pool.shutdown()

    async def __aenter__(self) -> "PlanOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    def status(self) -> Dict[str, Any]:
        return self.pool.status()

    async def generate_plan(
        self,
        request: PlanRequest,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> PlanResult:
        """
        Generate a plan for one request.

        Args:
            request: Validated plan request
            timeout: Overall budget in seconds (default: config.request_timeout)
            request_id: Correlation id for logs (default: generated)

        Returns:
            The worker's Plan, or a PlanFailure describing why there is none.
            Only asyncio.CancelledError propagates; the leased worker is
            released before it does.
        """
        request_id = request_id or str(uuid.uuid4())

        if not isinstance(request, PlanRequest) or not isinstance(request.user_id, str) or not request.user_id.strip():
            return PlanFailure(FailureKind.INVALID_REQUEST, "userId must be a non-empty string", request_id=request_id)
        try:
            frame = encode_request(request, self.config.max_frame_bytes)
        except (TypeError, ValueError) as e:
            return PlanFailure(FailureKind.INVALID_REQUEST, f"Request cannot be encoded: {e}", request_id=request_id)

        budget = timeout if timeout is not None else self.config.request_timeout
        deadline = asyncio.get_running_loop().time() + budget

        # One automatic retry, only when the pipe was found broken before the request was delivered
        for attempt in (1, 2):
            result = await self._attempt(request, frame, request_id, attempt, deadline)
            if not isinstance(result, _RetryOnFreshWorker):
                return result
            logger.warning(f"Request {request_id} attempt {attempt} hit a broken pipe: {result.reason}")

        return PlanFailure(
            FailureKind.UPSTREAM_UNAVAILABLE,
            f"Worker input closed on two workers in a row: {result.reason}",
            request_id=request_id,
        )

    async def _attempt(
        self,
        request: PlanRequest,
        frame: bytes,
        request_id: str,
        attempt: int,
        deadline: float,
    ) -> Union[Plan, PlanFailure, _RetryOnFreshWorker]:
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            return PlanFailure(
                FailureKind.UPSTREAM_UNAVAILABLE,
                f"Request budget exhausted before attempt {attempt}",
                request_id=request_id,
            )

        try:
            async with self.pool.lease(min(self.config.acquire_timeout, remaining)) as lease:
                inflight = InFlightRequest(
                    request_id=request_id,
                    request=request,
                    worker_pid=lease.pid,
                    worker_slot=lease.slot,
                    attempt=attempt,
                    deadline=deadline,
                )
                return await self._exchange(lease, frame, inflight)
        except PoolExhausted as e:
            if self.pool.degraded:
                return PlanFailure(
                    FailureKind.SERVICE_DEGRADED,
                    f"Worker pool cannot maintain capacity: {e}",
                    request_id=request_id,
                )
            return PlanFailure(FailureKind.OVERLOADED, str(e), request_id=request_id)
        except PoolClosed as e:
            return PlanFailure(FailureKind.UPSTREAM_UNAVAILABLE, str(e), request_id=request_id)

    async def _exchange(
        self, lease: WorkerLease, frame: bytes, inflight: InFlightRequest
    ) -> Union[Plan, PlanFailure, _RetryOnFreshWorker]:
        """Write the request, read one frame, decode it, set the lease outcome."""
        loop = asyncio.get_running_loop()
        log_id = self._log_start(inflight, len(frame))
        start_time = time.time()
        response: Optional[bytes] = None
        result: Union[Plan, PlanFailure, _RetryOnFreshWorker, None] = None

        def failure(kind: FailureKind, message: str, code: Optional[str] = None) -> PlanFailure:
            return PlanFailure(kind, message, code=code, request_id=inflight.request_id, worker_pid=inflight.worker_pid)

        try:
            try:
                await asyncio.wait_for(lease.send(frame), max(inflight.deadline - loop.time(), 0))
            except PipeBroken as e:
                lease.outcome = Outcome.UNUSABLE
                result = _RetryOnFreshWorker(str(e))
                return result
            except asyncio.TimeoutError:
                lease.outcome = Outcome.UNUSABLE
                result = failure(FailureKind.UPSTREAM_TIMEOUT, "Worker did not accept the request in time")
                return result

            try:
                response = await lease.receive(max(inflight.deadline - loop.time(), 0))
            except WorkerTimeout as e:
                # A late reply would desync framing for the next caller
                lease.outcome = Outcome.UNUSABLE
                result = failure(FailureKind.UPSTREAM_TIMEOUT, str(e))
                return result
            except StreamClosed as e:
                lease.outcome = Outcome.UNUSABLE
                kind = FailureKind.UPSTREAM_PROTOCOL_ERROR if e.partial_bytes else FailureKind.UPSTREAM_UNAVAILABLE
                result = failure(kind, str(e))
                return result
            except FrameTooLarge as e:
                lease.outcome = Outcome.UNUSABLE
                result = failure(FailureKind.UPSTREAM_PROTOCOL_ERROR, str(e), code="frame_too_large")
                return result

            decoded = decode_response(response)
            if isinstance(decoded, WorkerError):
                # A worker-reported error leaves framing intact; anything else is a desync
                lease.outcome = Outcome.RECOVERABLE if decoded.reported_by_worker else Outcome.UNUSABLE
                result = failure(FailureKind.UPSTREAM_PROTOCOL_ERROR, decoded.message, code=decoded.code)
                return result

            lease.outcome = Outcome.SUCCESS
            if decoded.plan_id is None:
                decoded = dataclasses.replace(decoded, plan_id=str(uuid.uuid4()))
            result = decoded
            return result
        finally:
            if isinstance(result, PlanFailure):
                logger.warning(
                    f"Request {inflight.request_id} failed on worker pid={inflight.worker_pid}: "
                    f"{result.kind.value}: {result.message}"
                )
            self._log_complete(log_id, start_time, response, result)

    def _log_start(self, inflight: InFlightRequest, input_size: int) -> Optional[int]:
        if not self.config.record_exchanges:
            return None
        try:
            return worker_logs.create_log(
                request_id=inflight.request_id,
                attempt=inflight.attempt,
                worker_pid=inflight.worker_pid,
                worker_slot=inflight.worker_slot,
                input_size_bytes=input_size,
            )
        except Exception as e:
            logger.warning(f"Failed to create worker log: {e}")
            return None

    def _log_complete(self, log_id: Optional[int], start_time: float, response: Optional[bytes], result: Any) -> None:
        if log_id is None:
            return
        if isinstance(result, Plan):
            status, kind, message = "completed", None, None
        elif isinstance(result, PlanFailure):
            status, kind, message = "failed", result.kind.value, result.message
        elif isinstance(result, _RetryOnFreshWorker):
            status, kind, message = "failed", "pipe_broken", result.reason
        else:
            status, kind, message = "failed", "cancelled", "Caller cancelled the request"
        try:
            worker_logs.complete_log(
                log_id=log_id,
                duration_ms=int((time.time() - start_time) * 1000),
                output_size_bytes=len(response) if response is not None else None,
                status=status,
                failure_kind=kind,
                error_message=message,
            )
        except Exception as e:
            logger.warning(f"Failed to complete worker log: {e}")


# Global orchestrator instance
_orchestrator: Optional[PlanOrchestrator] = None


def get_orchestrator() -> PlanOrchestrator:
    """
    Get the running global orchestrator.

    Raises:
        RuntimeError: If start_orchestrator() has not been called
    """
    if _orchestrator is None:
        raise RuntimeError("Plan orchestrator is not running")
    return _orchestrator


async def start_orchestrator(config: GatewayConfig) -> PlanOrchestrator:
    """Create, start and register the global orchestrator."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
    _orchestrator = PlanOrchestrator(config)
    await _orchestrator.start()
    return _orchestrator


async def shutdown_orchestrator() -> None:
    """Shut down and unregister the global orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        return
    orchestrator, _orchestrator = _orchestrator, None
    await orchestrator.shutdown()


async def generate_plan(
    request: PlanRequest,
    timeout: Optional[float] = None,
    request_id: Optional[str] = None,
) -> PlanResult:
    """
    Convenience function to generate a plan via the global orchestrator.

    Args:
        request: Validated plan request
        timeout: Overall budget in seconds
        request_id: Correlation id for logs

    Returns:
        Plan or PlanFailure
    """
    return await get_orchestrator().generate_plan(request, timeout=timeout, request_id=request_id)
