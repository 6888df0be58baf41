"""Pydantic schemas for pillar pipeline progress."""
from typing import Optional, Any, Dict
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...core.enums import PipelineStep
from .processing import as_utc


class PipelineProgressSnapshot(BaseModel):
    """Immutable view of a pipeline progress row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str
    pillar_type: str
    current_step: PipelineStep
    step_progress_percentage: int = Field(0, ge=0, le=100)
    total_progress_percentage: int = Field(0, ge=0, le=100)
    step_data: Dict[str, Any] = Field(default_factory=dict)
    completion_timestamps: Dict[str, datetime] = Field(default_factory=dict)
    version: int = 1
    started_at: datetime
    last_activity_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("started_at", "last_activity_at", "completed_at")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("completion_timestamps")
    @classmethod
    def _ensure_utc_timestamps(cls, value: Dict[str, datetime]) -> Dict[str, datetime]:
        return {step: as_utc(ts) for step, ts in value.items()}

    @field_validator("step_data", "completion_timestamps", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class PipelineProgressUpdateRequest(BaseModel):
    """Schema for advancing a pillar pipeline."""
    step: PipelineStep = Field(..., description="Step the user is currently on")
    step_progress: float = Field(..., allow_inf_nan=False, description="Progress within the step, clamped to 0-100")
    step_data: Optional[Dict[str, Any]] = Field(None, description="Per-step payload merged into the record")
