"""
CRUD operations for database models.
"""
from . import processing_sessions_crud
from . import pipeline_progress_crud

__all__ = [
    "processing_sessions_crud",
    "pipeline_progress_crud",
]
