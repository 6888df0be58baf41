"""
Processing tracker.

Single coordination point for starting, updating, completing and failing AI
processing sessions and for advancing pillar pipelines. Every public
operation takes the acting user explicitly and returns a ``TrackerResult``;
failures are logged here and never raised to the caller.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..api.schemas.pipeline import PipelineProgressSnapshot
from ..api.schemas.processing import ProcessingMetadata, ProcessingSessionSnapshot
from ..config import settings
from ..core.enums import ACTIVE_SESSION_STATUSES, PipelineStep, ProcessType, SessionStatus
from ..core.errors import (
    AuthenticationRequired,
    NotFoundError,
    PersistenceError,
    TrackerError,
    ValidationError,
)
from ..core.result import TrackerResult
from .progress_calculator import calculate_total_progress, clamp_percentage, step_index
from .stores import PipelineProgressStore, SessionStore
from .tracker_state import TrackerState

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require_actor(actor_id: Optional[str]) -> str:
    if not actor_id:
        raise AuthenticationRequired()
    return actor_id


def _percentage(value: float) -> int:
    try:
        return clamp_percentage(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid percentage: {value!r}") from exc


def _merge_metadata(current: ProcessingMetadata, updates: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return ProcessingMetadata.model_validate({**current.to_json(), **updates}).to_json()
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid processing metadata: {exc}") from exc


def estimate_completion(started_at: datetime, progress: int, now: datetime) -> Optional[datetime]:
    """Linear extrapolation of the finish time from elapsed time and progress."""
    if progress <= 0 or progress >= 100:
        return None
    elapsed = now - started_at
    return now + elapsed * ((100 - progress) / progress)


def _forward_position(stored: Optional[Any], reported: PipelineStep, progress: int) -> Tuple[PipelineStep, int]:
    """Position after reporting ``progress`` on ``reported``; never behind ``stored``."""
    if stored is None:
        return reported, progress
    stored_step = PipelineStep(stored.current_step)
    if step_index(reported) < step_index(stored_step):
        return stored_step, stored.step_progress_percentage
    if reported == stored_step:
        return reported, max(progress, stored.step_progress_percentage)
    return reported, progress


class ProcessingTracker:
    """Coordinates processing sessions and pipeline progress for many users."""

    def __init__(
        self,
        session_store: SessionStore,
        pipeline_store: PipelineProgressStore,
        max_cached_users: int = settings.TRACKER_CACHE_MAX_USERS,
        max_finished_sessions: int = settings.TRACKER_CACHE_FINISHED_SESSIONS,
    ):
        self._sessions = session_store
        self._pipelines = pipeline_store
        self._max_cached_users = max_cached_users
        self._max_finished_sessions = max_finished_sessions
        # Least recently used first
        self._states: "OrderedDict[str, TrackerState]" = OrderedDict()

    # ===== In-memory view =====

    def state_for(self, user_id: str) -> TrackerState:
        state = self._states.get(user_id)
        if state is not None:
            self._states.move_to_end(user_id)
            return state

        state = self._states[user_id] = TrackerState(user_id, self._max_finished_sessions)
        while len(self._states) > self._max_cached_users:
            evicted, _ = self._states.popitem(last=False)
            logger.debug("Evicted cached state of user %s", evicted)
        return state

    def current_session(self, actor_id: Optional[str]) -> Optional[ProcessingSessionSnapshot]:
        if not actor_id or actor_id not in self._states:
            return None
        return self._states[actor_id].current_session

    def pipeline_progress(self, actor_id: Optional[str], pillar_type: str) -> Optional[PipelineProgressSnapshot]:
        if not actor_id or actor_id not in self._states:
            return None
        return self._states[actor_id].pipelines.get(pillar_type)

    async def _guarded(self, operation: str, action: Callable[[], Awaitable[T]]) -> TrackerResult:
        try:
            return TrackerResult.success(await action())
        except TrackerError as exc:
            logger.warning("%s failed (%s): %s", operation, exc.kind, exc.message)
            return TrackerResult.failure(exc)
        except Exception as exc:  # noqa: BLE001
            logger.error("%s failed unexpectedly: %s", operation, exc, exc_info=True)
            return TrackerResult.failure(PersistenceError(f"{operation} failed: {exc}"))

    async def _owned_session(self, actor_id: str, session_id: str) -> ProcessingSessionSnapshot:
        session = await self._sessions.get_session(session_id, user_id=actor_id)
        if session is None:
            raise NotFoundError(f"Processing session {session_id} not found")
        return session

    def _remember(self, session: ProcessingSessionSnapshot, make_current: bool = False) -> ProcessingSessionSnapshot:
        self.state_for(session.user_id).apply_session(session, make_current=make_current)
        return session

    # ===== Processing sessions =====

    async def start_processing_session(
        self,
        actor_id: Optional[str],
        process_type: str,
        pillar_type: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        client_signature: Optional[str] = None,
    ) -> TrackerResult:
        """Create a session in ``started`` state; ``data`` is the new session id."""

        async def action() -> str:
            user_id = _require_actor(actor_id)
            try:
                kind = ProcessType(process_type)
            except ValueError as exc:
                raise ValidationError(f"Unknown process type: {process_type}") from exc

            metadata = ProcessingMetadata(
                started_by="user",
                client_signature=client_signature,
                timestamp=datetime.now(timezone.utc),
            )
            session = await self._sessions.create_session(
                user_id,
                kind.value,
                pillar_type=pillar_type,
                metadata=metadata.to_json(),
                input_data=input_data,
            )
            self._remember(session, make_current=True)
            logger.info("Started %s session %s for user %s", kind.value, session.id, user_id)
            return session.id

        return await self._guarded("start_processing_session", action)

    async def update_progress(
        self,
        actor_id: Optional[str],
        session_id: str,
        progress: float,
        current_step: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TrackerResult:
        """Record progress; reaching 100 completes the session."""

        async def action() -> ProcessingSessionSnapshot:
            user_id = _require_actor(actor_id)
            session = await self._owned_session(user_id, session_id)
            if session.status.is_terminal:
                raise ValidationError(f"Session {session_id} is already {session.status.value}")

            now = datetime.now(timezone.utc)
            percentage = _percentage(progress)
            fields: Dict[str, Any] = {
                "progress_percentage": percentage,
                "status": (SessionStatus.COMPLETED if percentage >= 100 else SessionStatus.PROCESSING).value,
                "estimated_completion_time": estimate_completion(session.started_at, percentage, now),
            }
            if current_step:
                fields["current_step"] = current_step
            if metadata:
                fields["processing_metadata"] = _merge_metadata(session.processing_metadata, metadata)
            if percentage >= 100:
                fields["completed_at"] = now

            return self._remember(await self._sessions.update_session(
                session_id, fields, allowed_statuses=ACTIVE_SESSION_STATUSES
            ))

        return await self._guarded("update_progress", action)

    async def complete_session(
        self,
        actor_id: Optional[str],
        session_id: str,
        results: Optional[Dict[str, Any]] = None,
    ) -> TrackerResult:
        """
        Force the session to completed at 100%.

        ``results`` are merged into ``processing_metadata.results``; all other
        metadata keys are kept. Completing an already completed session only
        merges the results.
        """

        async def action() -> ProcessingSessionSnapshot:
            user_id = _require_actor(actor_id)
            session = await self._owned_session(user_id, session_id)
            if session.status == SessionStatus.FAILED:
                raise ValidationError(f"Session {session_id} has already failed")

            merged_results = {**(session.processing_metadata.results or {}), **(results or {})}
            updates: Dict[str, Any] = {"completed_by": "system"}
            if merged_results:
                updates["results"] = merged_results

            fields: Dict[str, Any] = {
                "status": SessionStatus.COMPLETED.value,
                "progress_percentage": 100,
                "estimated_completion_time": None,
                "processing_metadata": _merge_metadata(session.processing_metadata, updates),
            }
            if session.completed_at is None:
                fields["completed_at"] = datetime.now(timezone.utc)

            completed = self._remember(await self._sessions.update_session(
                session_id, fields,
                allowed_statuses=ACTIVE_SESSION_STATUSES + (SessionStatus.COMPLETED.value,),
            ))
            logger.info("Completed session %s", session_id)
            return completed

        return await self._guarded("complete_session", action)

    async def fail_session(
        self,
        actor_id: Optional[str],
        session_id: str,
        error_details: str,
    ) -> TrackerResult:
        """Mark the session failed. Partial progress is kept for diagnostics."""

        async def action() -> ProcessingSessionSnapshot:
            user_id = _require_actor(actor_id)
            session = await self._owned_session(user_id, session_id)
            if session.status.is_terminal:
                raise ValidationError(f"Session {session_id} is already {session.status.value}")

            failed = self._remember(await self._sessions.update_session(session_id, {
                "status": SessionStatus.FAILED.value,
                "error_details": error_details,
                "estimated_completion_time": None,
                "completed_at": datetime.now(timezone.utc),
            }, allowed_statuses=ACTIVE_SESSION_STATUSES))
            logger.info("Session %s failed at %d%%: %s", session_id, failed.progress_percentage, error_details)
            return failed

        return await self._guarded("fail_session", action)

    async def get_session(self, actor_id: Optional[str], session_id: str) -> TrackerResult:
        """Read one session of the actor from the store and refresh the cache."""

        async def action() -> ProcessingSessionSnapshot:
            user_id = _require_actor(actor_id)
            return self._remember(await self._owned_session(user_id, session_id))

        return await self._guarded("get_session", action)

    async def load_latest_session(self, actor_id: Optional[str]) -> TrackerResult:
        """Latest session of the actor, e.g. to resume after a reload. ``data`` is None if there is none."""

        async def action() -> Optional[ProcessingSessionSnapshot]:
            user_id = _require_actor(actor_id)
            session = await self._sessions.get_latest_session(user_id)
            return self._remember(session) if session else None

        return await self._guarded("load_latest_session", action)

    async def expire_stale_sessions(
        self,
        timeout_minutes: int,
        now: Optional[datetime] = None,
    ) -> TrackerResult:
        """
        Fail sessions left in started/processing without a write for ``timeout_minutes``.

        System operation, not scoped to an actor. ``data`` lists the expired ids.
        """

        async def action() -> List[str]:
            current = now or datetime.now(timezone.utc)
            cutoff = current - timedelta(minutes=timeout_minutes)
            expired: List[str] = []
            for session in await self._sessions.list_stale_sessions(cutoff):
                try:
                    failed = await self._sessions.update_session(session.id, {
                        "status": SessionStatus.FAILED.value,
                        "error_details": f"Processing timed out after {timeout_minutes} minutes without progress",
                        "estimated_completion_time": None,
                        "completed_at": current,
                    }, allowed_statuses=ACTIVE_SESSION_STATUSES, updated_before=cutoff)
                except TrackerError as exc:
                    logger.warning("Could not expire session %s: %s", session.id, exc.message)
                    continue
                if failed.user_id in self._states:
                    self._states[failed.user_id].apply_session(failed)
                expired.append(failed.id)
            if expired:
                logger.info("Expired %d stale processing sessions", len(expired))
            return expired

        return await self._guarded("expire_stale_sessions", action)

    # ===== Pipeline progress =====

    async def update_pipeline_progress(
        self,
        actor_id: Optional[str],
        pillar_type: str,
        step: str,
        step_progress: float,
        step_data: Optional[Dict[str, Any]] = None,
    ) -> TrackerResult:
        """
        Advance the actor's pipeline for ``pillar_type``.

        Progress never moves backwards: reporting an earlier step than the
        stored one records the activity and ``step_data`` but keeps the
        current position, and a lower progress on the same step keeps the
        higher value.
        """

        async def action() -> PipelineProgressSnapshot:
            user_id = _require_actor(actor_id)
            if not pillar_type:
                raise ValidationError("A pillar type is required")
            try:
                reported = PipelineStep(step)
            except ValueError as exc:
                raise ValidationError(f"Unknown pipeline step: {step}") from exc

            reported_progress = _percentage(step_progress)

            def plan(stored: Optional[Any]) -> Tuple[str, int, int]:
                # Runs inside the store's write, against the row being updated
                current_step, current_progress = _forward_position(stored, reported, reported_progress)
                return current_step.value, current_progress, calculate_total_progress(current_step, current_progress)

            snapshot = await self._pipelines.upsert_progress(
                user_id,
                pillar_type,
                step=reported.value,
                plan=plan,
                step_data=step_data,
            )
            if step_index(reported) < step_index(snapshot.current_step):
                logger.info(
                    "User %s revisited %s in %s pipeline; keeping position at %s",
                    user_id, reported.value, pillar_type, snapshot.current_step.value,
                )
            self.state_for(user_id).apply_pipeline(snapshot)
            return snapshot

        return await self._guarded("update_pipeline_progress", action)

    async def load_pipeline_progress(self, actor_id: Optional[str], pillar_type: str) -> TrackerResult:
        """Fetch and cache the pipeline record; ``data`` is None if the pillar was never started."""

        async def action() -> Optional[PipelineProgressSnapshot]:
            user_id = _require_actor(actor_id)
            snapshot = await self._pipelines.get_progress(user_id, pillar_type)
            if snapshot is not None:
                self.state_for(user_id).apply_pipeline(snapshot)
            return snapshot

        return await self._guarded("load_pipeline_progress", action)
