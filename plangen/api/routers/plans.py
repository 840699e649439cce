"""Plan generation API router."""

import logging
import time
import uuid

from fastapi import APIRouter, HTTPException

from ..models.plan import PlanGenerationRequest, PlanGenerationResponse
from ...worker import FailureKind, PlanFailure, PlanRequest, generate_plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["plans"])

# HTTP status for each classified failure
FAILURE_STATUS = {
    FailureKind.INVALID_REQUEST: 400,
    FailureKind.OVERLOADED: 503,
    FailureKind.UPSTREAM_TIMEOUT: 504,
    FailureKind.UPSTREAM_PROTOCOL_ERROR: 502,
    FailureKind.UPSTREAM_UNAVAILABLE: 502,
    FailureKind.SERVICE_DEGRADED: 503,
}


def failure_to_http(failure: PlanFailure) -> HTTPException:
    """Map a classified orchestrator failure to an HTTP error."""
    headers = None
    if failure.kind in (FailureKind.OVERLOADED, FailureKind.SERVICE_DEGRADED):
        headers = {"Retry-After": "1" if failure.kind is FailureKind.OVERLOADED else "30"}
    return HTTPException(
        status_code=FAILURE_STATUS[failure.kind],
        detail=failure.to_dict(),
        headers=headers,
    )


@router.post("/plans", response_model=PlanGenerationResponse)
async def create_plan(request: PlanGenerationRequest) -> PlanGenerationResponse:
    """
    Generate a workout and nutrition plan.

    The request is handed to a pooled inference worker; the plan comes back
    exactly as the model produced it.

    Args:
        request: Plan generation parameters

    Returns:
        Generated plan and metadata

    Raises:
        HTTPException: If the plan could not be generated
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    plan_request = PlanRequest(
        user_id=request.user_id,
        goals=tuple(request.goals),
        preferences=request.preferences,
        health_data=request.health_data,
    )

    try:
        result = await generate_plan(plan_request, timeout=request.timeout_seconds, request_id=request_id)
    except RuntimeError as e:
        # Orchestrator not running (startup failed or shutting down)
        logger.error(f"Plan generation unavailable for request {request_id}: {e}")
        raise HTTPException(
            status_code=503,
            detail={
                "code": "SERVICE_UNAVAILABLE",
                "message": str(e),
                "request_id": request_id,
            },
        )

    if isinstance(result, PlanFailure):
        logger.warning(f"Plan generation failed for request {request_id}: {result.kind.value}: {result.message}")
        raise failure_to_http(result)

    processing_time_ms = int((time.time() - start_time) * 1000)
    logger.info(f"Plan {result.plan_id} generated for request {request_id} in {processing_time_ms}ms")

    return PlanGenerationResponse(
        request_id=request_id,
        processing_time_ms=processing_time_ms,
        plan_id=result.plan_id,
        type=result.type,
        duration_weeks=result.duration_weeks,
        workouts=list(result.workouts),
        nutrition=result.nutrition,
    )
