"""
Per-pillar pipeline progress, one row per (user, pillar).
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Enum as SQLEnum,
    UniqueConstraint,
)

from ..database import Base


class PipelineProgress(Base):
    """Stores a user's position in the multi-step pipeline of one pillar."""

    __tablename__ = "user_pipeline_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), nullable=False, index=True)
    pillar_type = Column(String(32), nullable=False)
    current_step = Column(
        SQLEnum(
            "assessment",
            "ai_processing",
            "results_preview",
            "actionables_generation",
            "calendar_integration",
            "completed",
            name="pipeline_step",
            create_type=True
        ),
        nullable=False,
        default="assessment",
    )
    step_progress_percentage = Column(Integer, nullable=False, default=0)  # Percentage 0-100
    total_progress_percentage = Column(Integer, nullable=False, default=0)  # Cached, see progress_calculator
    step_data = Column(JSON, nullable=False, default=dict)
    completion_timestamps = Column(JSON, nullable=False, default=dict)  # step -> ISO timestamp
    version = Column(Integer, nullable=False)
    started_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    last_activity_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "pillar_type", name="uq_user_pipeline_progress_user_pillar"),
    )

    # Optimistic locking: updates carry "WHERE version = <read version>"
    __mapper_args__ = {"version_id_col": version}
