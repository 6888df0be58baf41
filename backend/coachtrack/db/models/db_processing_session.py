"""
Database model for AI processing sessions.
Stores one row per asynchronous AI processing attempt with status tracking.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, Enum as SQLEnum, Index

from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingSession(Base):
    """Model for a single AI processing attempt."""

    __tablename__ = "ai_processing_sessions"

    # Primary key
    id = Column(String(50), primary_key=True, index=True)

    # Owner
    user_id = Column(String(50), nullable=False, index=True)

    process_type = Column(
        SQLEnum(
            "assessment_analysis",
            "actionable_generation",
            "calendar_optimization",
            name="ai_process_type",
            create_type=True
        ),
        nullable=False,
    )
    pillar_type = Column(String(32), nullable=True)

    # Status tracking
    status = Column(
        SQLEnum(
            "started",
            "processing",
            "completed",
            "failed",
            name="ai_processing_status",
            create_type=True
        ),
        nullable=False,
        default="started",
        index=True
    )
    progress_percentage = Column(Integer, nullable=False, default=0)  # Percentage 0-100
    current_step = Column(String(255), nullable=True)
    estimated_completion_time = Column(DateTime, nullable=True)

    # Payloads
    input_data = Column(JSON, nullable=False, default=dict)
    processing_metadata = Column(JSON, nullable=False, default=dict)
    error_details = Column(Text, nullable=True)

    # Incremented on every write; consumers drop notifications older than their copy
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_ai_processing_sessions_user_started", "user_id", "started_at"),
    )
