from .db_processing_session import ProcessingSession
from .db_pipeline_progress import PipelineProgress

__all__ = [
    "ProcessingSession",
    "PipelineProgress",
]
