"""Pydantic models for plan generation API endpoints."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PlanGenerationRequest(BaseModel):
    """Request model for plan generation."""

    user_id: str = Field(..., description="Opaque user identifier", min_length=1)
    goals: List[str] = Field(default_factory=list, description="Ordered goals, most important first")
    preferences: Optional[Dict[str, Any]] = Field(
        default=None, description="Free-form preferences passed through to the model"
    )
    health_data: Optional[Dict[str, Any]] = Field(
        default=None, description="Free-form health data passed through to the model"
    )
    timeout_seconds: Optional[float] = Field(
        default=None, description="Overall time budget (default: server setting)", gt=0, le=600
    )


class PlanGenerationResponse(BaseModel):
    """Generated plan plus request metadata."""

    request_id: str = Field(..., description="Correlation id, also used in gateway logs")
    processing_time_ms: int = Field(..., description="Time from request receipt to plan, in milliseconds")
    plan_id: str = Field(..., description="Plan identifier")
    type: str = Field(..., description="Plan type")
    duration_weeks: int = Field(..., description="Plan length in weeks", ge=1)
    workouts: List[Any] = Field(..., description="Workouts exactly as produced by the model")
    nutrition: Dict[str, Any] = Field(..., description="Nutrition record exactly as produced by the model")
