"""Worker pool status API router."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from ..models.workers import ExchangeLogsResponse, PoolStatusResponse
from ...db import worker_logs
from ...worker import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["workers"])


@router.get("/workers", response_model=PoolStatusResponse)
async def get_workers() -> PoolStatusResponse:
    """
    Get worker pool status.

    Returns:
        Capacity, per-slot worker state and pool counters
    """
    try:
        orchestrator = get_orchestrator()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail={"code": "SERVICE_UNAVAILABLE", "message": str(e)})
    return PoolStatusResponse(**orchestrator.status())


@router.get("/workers/logs", response_model=ExchangeLogsResponse)
async def get_worker_logs(
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of entries"),
    status: Optional[str] = Query(None, description="Filter by status (running, completed, failed)"),
    failure_kind: Optional[str] = Query(None, description="Filter by failure kind"),
    hours: int = Query(24, ge=1, le=24 * 30, description="Window for aggregate statistics"),
) -> ExchangeLogsResponse:
    """
    Get recent worker exchanges.

    Returns:
        Recent log entries and aggregate statistics
    """
    try:
        logs = worker_logs.get_recent_logs(limit=limit, status=status, failure_kind=failure_kind)
        stats = worker_logs.get_log_stats(hours=hours)
    except Exception as e:
        logger.error(f"Error reading worker logs: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={
                "code": "LOGS_ERROR",
                "message": f"Failed to read worker logs: {str(e)}",
            },
        )
    return ExchangeLogsResponse(logs=logs, stats=stats)
