"""
Pipeline Router
Endpoints for reading and advancing a user's pillar pipeline.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from ...services.tracker_runtime import get_tracker
from ...services.tracker_service import ProcessingTracker
from ...utils.auth import get_actor_id_optional
from ...utils.results import unwrap
from ..schemas import pipeline as pipeline_schema


router = APIRouter(
    prefix="/pipeline",
    tags=["pipeline"],
    responses={404: {"description": "Not found"}},
)


@router.put(
    "/{pillar_type}",
    response_model=pipeline_schema.PipelineProgressSnapshot,
    summary="Report the current step of a pillar pipeline"
)
async def update_pipeline_progress(
    pillar_type: str,
    body: pipeline_schema.PipelineProgressUpdateRequest,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """
    Upserts the pipeline record and recomputes the weighted total progress.

    Progress never moves backwards: an earlier step is recorded as activity
    but keeps the current position.
    """
    return unwrap(await tracker.update_pipeline_progress(
        actor_id, pillar_type, body.step.value, body.step_progress, body.step_data
    ))


@router.get(
    "/{pillar_type}",
    response_model=Optional[pipeline_schema.PipelineProgressSnapshot],
    summary="Get the pipeline progress of a pillar"
)
async def get_pipeline_progress(
    pillar_type: str,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """Returns `null` when the user has not started this pillar's pipeline."""
    return unwrap(await tracker.load_pipeline_progress(actor_id, pillar_type))
