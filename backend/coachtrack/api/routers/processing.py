"""
Processing Router
Endpoints for starting AI processing sessions and following their progress.
"""
import asyncio
import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from ...config import settings
from ...services import processing_service
from ...services.tracker_runtime import TrackerRuntime, get_runtime, get_tracker
from ...services.tracker_service import ProcessingTracker
from ...utils.auth import get_actor_id, get_actor_id_optional
from ...utils.results import unwrap
from ..schemas import processing as processing_schema

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/processing",
    tags=["processing"],
    responses={404: {"description": "Not found"}},
)


@router.post(
    "/sessions",
    response_model=processing_schema.StartProcessingResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an AI processing session (returns session ID immediately)"
)
async def start_session(
    body: processing_schema.StartProcessingRequest,
    request: Request,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """
    Start AI processing asynchronously.

    **Process:**
    1. Creates a session with status "started"
    2. Schedules the registered runner for the process type, if any
    3. Returns the session ID immediately (HTTP 202)
    4. Client follows progress via `/processing/events` or polls the session
    """
    session_id = unwrap(await tracker.start_processing_session(
        actor_id,
        body.process_type.value,
        pillar_type=body.pillar_type,
        input_data=body.input_data,
        client_signature=request.headers.get("User-Agent"),
    ))

    session = tracker.state_for(actor_id).sessions[session_id]
    dispatched = processing_service.schedule_processing_task(tracker, session)

    return processing_schema.StartProcessingResponse(
        session_id=session_id,
        dispatched=dispatched,
    )


@router.get(
    "/sessions/latest",
    response_model=Optional[processing_schema.ProcessingSessionSnapshot],
    summary="Get the latest processing session of the current user"
)
async def get_latest_session(
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """Returns `null` when the user never started a session."""
    return unwrap(await tracker.load_latest_session(actor_id))


@router.get(
    "/sessions/{session_id}",
    response_model=processing_schema.ProcessingSessionSnapshot,
    summary="Get a processing session"
)
async def get_session(
    session_id: str,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    return unwrap(await tracker.get_session(actor_id, session_id))


@router.patch(
    "/sessions/{session_id}/progress",
    response_model=processing_schema.ProcessingSessionSnapshot,
    summary="Report progress of a processing session"
)
async def update_progress(
    session_id: str,
    body: processing_schema.ProgressUpdateRequest,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """
    Progress is clamped to 0-100. Reaching 100 completes the session.
    Sessions that already completed or failed are rejected with 409.
    """
    return unwrap(await tracker.update_progress(
        actor_id, session_id, body.progress, body.current_step, body.metadata
    ))


@router.post(
    "/sessions/{session_id}/complete",
    response_model=processing_schema.ProcessingSessionSnapshot,
    summary="Mark a processing session completed"
)
async def complete_session(
    session_id: str,
    body: processing_schema.CompleteSessionRequest,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    return unwrap(await tracker.complete_session(actor_id, session_id, body.results))


@router.post(
    "/sessions/{session_id}/fail",
    response_model=processing_schema.ProcessingSessionSnapshot,
    summary="Mark a processing session failed"
)
async def fail_session(
    session_id: str,
    body: processing_schema.FailSessionRequest,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    return unwrap(await tracker.fail_session(actor_id, session_id, body.error_details))


@router.delete(
    "/sessions/{session_id}/task",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel the background AI task of a session"
)
async def cancel_task(
    session_id: str,
    actor_id: Optional[str] = Depends(get_actor_id_optional),
    tracker: ProcessingTracker = Depends(get_tracker),
):
    """
    Cancels the in-flight runner, which marks the session failed.
    """
    # Ownership check before touching the task registry
    unwrap(await tracker.get_session(actor_id, session_id))

    if not await processing_service.cancel_processing_task(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No running task for session {session_id}"
        )
    return None  # 204 No Content


def offer_event(queue: asyncio.Queue, event: Tuple[str, Any]) -> bool:
    """Enqueue ``event``; a full queue drops its oldest event first. Returns False when one was dropped."""
    dropped = False
    if queue.full():
        queue.get_nowait()
        dropped = True
    queue.put_nowait(event)
    return not dropped


def _format_event(table: str, record: Any) -> str:
    return f"event: {table}\ndata: {record.model_dump_json()}\n\n"


@router.get(
    "/events",
    summary="Stream live changes of the current user's sessions and pipelines"
)
async def stream_events(
    request: Request,
    actor_id: str = Depends(get_actor_id),
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """
    Server-Sent Events stream. Each event is named after the table that
    changed and carries the full record as JSON. The subscription is released
    when the client disconnects.
    """
    async def event_stream():
        queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=settings.EVENT_STREAM_QUEUE_SIZE)

        def on_change(table: str, record: Any) -> None:
            if not offer_event(queue, (table, record)):
                logger.warning("Event stream for user %s is lagging; dropped an event", actor_id)

        with runtime.listener.subscribe(actor_id, on_change):
            while not await request.is_disconnected():
                try:
                    table, record = await asyncio.wait_for(
                        queue.get(), timeout=settings.EVENT_STREAM_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _format_event(table, record)

    return StreamingResponse(event_stream(), media_type="text/event-stream")
