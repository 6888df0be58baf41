"""
Services module for the coachtrack backend.
Contains the processing tracker and its collaborators.
"""
from .change_feed import ChangeFeed, SubscriptionHandle
from .live_updates import LiveSubscription, LiveUpdateListener
from .progress_calculator import (
    STEP_WEIGHTS,
    calculate_total_progress,
    clamp_percentage,
    next_step,
    step_index,
)
from .stores import (
    PipelineProgressStore,
    SessionStore,
    SqlPipelineProgressStore,
    SqlSessionStore,
)
from .tracker_service import ProcessingTracker
from .tracker_state import TrackerState
from .processing_service import (
    ProgressReporter,
    register_runner,
    schedule_processing_task,
    cancel_processing_task,
    shutdown_active_tasks,
)

__all__ = [
    # Change notifications
    "ChangeFeed",
    "SubscriptionHandle",
    "LiveSubscription",
    "LiveUpdateListener",
    # Progress calculation
    "STEP_WEIGHTS",
    "calculate_total_progress",
    "clamp_percentage",
    "next_step",
    "step_index",
    # Stores
    "PipelineProgressStore",
    "SessionStore",
    "SqlPipelineProgressStore",
    "SqlSessionStore",
    # Tracker
    "ProcessingTracker",
    "TrackerState",
    # AI task dispatch
    "ProgressReporter",
    "register_runner",
    "schedule_processing_task",
    "cancel_processing_task",
    "shutdown_active_tasks",
]
