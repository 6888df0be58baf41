"""Enumerations shared by the database models, services and API schemas."""
from enum import Enum


class ProcessType(str, Enum):
    """Kinds of asynchronous AI processing a user can start."""

    ASSESSMENT_ANALYSIS = "assessment_analysis"
    ACTIONABLE_GENERATION = "actionable_generation"
    CALENDAR_OPTIMIZATION = "calendar_optimization"


class SessionStatus(str, Enum):
    """Lifecycle states of a processing session."""

    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class PipelineStep(str, Enum):
    """Ordered steps of a pillar pipeline. Declaration order is pipeline order."""

    ASSESSMENT = "assessment"
    AI_PROCESSING = "ai_processing"
    RESULTS_PREVIEW = "results_preview"
    ACTIONABLES_GENERATION = "actionables_generation"
    CALENDAR_INTEGRATION = "calendar_integration"
    COMPLETED = "completed"


ACTIVE_SESSION_STATUSES = (SessionStatus.STARTED.value, SessionStatus.PROCESSING.value)
