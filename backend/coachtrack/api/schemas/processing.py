"""Pydantic schemas for AI processing sessions."""
from typing import Optional, Any, Dict
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...core.enums import ProcessType, SessionStatus


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProcessingMetadata(BaseModel):
    """
    Known metadata keys of a processing session.

    Unknown keys are kept as opaque diagnostics.
    """
    model_config = ConfigDict(extra="allow")

    started_by: Optional[str] = Field(None, description="Who initiated the session ('user', 'system', ...)")
    client_signature: Optional[str] = Field(None, description="User agent or client identifier of the initiator")
    timestamp: Optional[datetime] = Field(None, description="When the session was requested")
    results: Optional[Dict[str, Any]] = Field(None, description="Result payload attached on completion")
    completed_by: Optional[str] = Field(None, description="Who marked the session completed")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ProcessingSessionSnapshot(BaseModel):
    """Immutable view of a processing session row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: str
    process_type: ProcessType
    pillar_type: Optional[str] = None
    status: SessionStatus
    progress_percentage: int = Field(0, ge=0, le=100)
    current_step: Optional[str] = None
    estimated_completion_time: Optional[datetime] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    processing_metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    error_details: Optional[str] = None
    version: int = 1
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("estimated_completion_time", "started_at", "updated_at", "completed_at")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("input_data", "processing_metadata", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


# ===== API request/response schemas =====


class StartProcessingRequest(BaseModel):
    """Schema for starting a processing session."""
    process_type: ProcessType = Field(..., description="Kind of AI processing to start")
    pillar_type: Optional[str] = Field(None, description="Pillar the processing concerns")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Input payload passed to the AI runner")


class StartProcessingResponse(BaseModel):
    """Returns the session ID immediately; progress arrives later."""
    session_id: str = Field(..., description="Unique ID to track the processing session")
    status: SessionStatus = Field(SessionStatus.STARTED, description="Initial status is always 'started'")
    dispatched: bool = Field(False, description="Whether an AI runner was scheduled for this session")


class ProgressUpdateRequest(BaseModel):
    # Not range-validated; out-of-range values are clamped by the tracker
    progress: float = Field(..., allow_inf_nan=False, description="Progress percentage, clamped to 0-100")
    current_step: Optional[str] = Field(None, description="Human-readable label of the current sub-activity")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Metadata to merge into the session")


class CompleteSessionRequest(BaseModel):
    results: Optional[Dict[str, Any]] = Field(None, description="Results merged into the session metadata")


class FailSessionRequest(BaseModel):
    error_details: str = Field(..., min_length=1, description="Reason shown to the user")
