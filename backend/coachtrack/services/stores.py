"""
Session and pipeline-progress stores.

The tracker only talks to the ``SessionStore`` / ``PipelineProgressStore``
protocols. The SQL implementations run each operation in its own database
session, convert rows into immutable snapshots and publish every committed
write on the change feed.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..api.schemas.pipeline import PipelineProgressSnapshot
from ..api.schemas.processing import ProcessingSessionSnapshot
from ..core.errors import NotFoundError, PersistenceError, ValidationError
from ..db.crud import pipeline_progress_crud, processing_sessions_crud
from ..db.crud.pipeline_progress_crud import PositionPlan
from ..db.models import PipelineProgress, ProcessingSession
from .change_feed import ChangeFeed

logger = logging.getLogger(__name__)

SESSIONS_TABLE = ProcessingSession.__tablename__
PIPELINE_TABLE = PipelineProgress.__tablename__


class SessionStore(Protocol):
    async def create_session(
        self,
        user_id: str,
        process_type: str,
        pillar_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> ProcessingSessionSnapshot:
        ...

    async def update_session(
        self,
        session_id: str,
        fields: Dict[str, Any],
        allowed_statuses: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
    ) -> ProcessingSessionSnapshot:
        """Write ``fields``; raises ValidationError if a guard no longer matches the row."""
        ...

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[ProcessingSessionSnapshot]:
        ...

    async def get_latest_session(self, user_id: str) -> Optional[ProcessingSessionSnapshot]:
        ...

    async def list_stale_sessions(self, cutoff: datetime) -> List[ProcessingSessionSnapshot]:
        ...


class PipelineProgressStore(Protocol):
    async def get_progress(self, user_id: str, pillar_type: str) -> Optional[PipelineProgressSnapshot]:
        ...

    async def upsert_progress(
        self,
        user_id: str,
        pillar_type: str,
        step: str,
        plan: PositionPlan,
        step_data: Optional[Dict[str, Any]] = None,
    ) -> PipelineProgressSnapshot:
        """Upsert the record; ``plan`` maps the stored row (or None) to (current_step, step progress, total)."""
        ...


class SqlSessionStore:
    """SessionStore backed by the ``ai_processing_sessions`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession], feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self._feed = feed

    def _publish(self, snapshot: ProcessingSessionSnapshot) -> None:
        if self._feed is not None:
            self._feed.publish(SESSIONS_TABLE, snapshot)

    async def create_session(
        self,
        user_id: str,
        process_type: str,
        pillar_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> ProcessingSessionSnapshot:
        try:
            async with self._session_factory() as db:
                row = await processing_sessions_crud.create_processing_session(
                    db,
                    user_id=user_id,
                    process_type=process_type,
                    pillar_type=pillar_type,
                    input_data=input_data,
                    metadata=metadata,
                )
                snapshot = ProcessingSessionSnapshot.model_validate(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not create processing session: {exc}") from exc

        self._publish(snapshot)
        return snapshot

    async def update_session(
        self,
        session_id: str,
        fields: Dict[str, Any],
        allowed_statuses: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
    ) -> ProcessingSessionSnapshot:
        try:
            async with self._session_factory() as db:
                row = await processing_sessions_crud.update_processing_session(
                    db, session_id, fields,
                    allowed_statuses=allowed_statuses,
                    updated_before=updated_before,
                )
                if row is None:
                    current = await processing_sessions_crud.get_processing_session(db, session_id)
                    if current is None:
                        raise NotFoundError(f"Processing session {session_id} not found")
                    raise ValidationError(f"Session {session_id} is {current.status} and was not updated")
                snapshot = ProcessingSessionSnapshot.model_validate(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not update processing session {session_id}: {exc}") from exc

        self._publish(snapshot)
        return snapshot

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[ProcessingSessionSnapshot]:
        try:
            async with self._session_factory() as db:
                row = await processing_sessions_crud.get_processing_session(db, session_id, user_id)
                return ProcessingSessionSnapshot.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read processing session {session_id}: {exc}") from exc

    async def get_latest_session(self, user_id: str) -> Optional[ProcessingSessionSnapshot]:
        try:
            async with self._session_factory() as db:
                row = await processing_sessions_crud.get_latest_session_for_user(db, user_id)
                return ProcessingSessionSnapshot.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read latest session for {user_id}: {exc}") from exc

    async def list_stale_sessions(self, cutoff: datetime) -> List[ProcessingSessionSnapshot]:
        try:
            async with self._session_factory() as db:
                rows = await processing_sessions_crud.list_stale_sessions(db, cutoff)
                return [ProcessingSessionSnapshot.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not list stale sessions: {exc}") from exc


class SqlPipelineProgressStore:
    """PipelineProgressStore backed by the ``user_pipeline_progress`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession], feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self._feed = feed

    async def get_progress(self, user_id: str, pillar_type: str) -> Optional[PipelineProgressSnapshot]:
        try:
            async with self._session_factory() as db:
                row = await pipeline_progress_crud.get_pipeline_progress(db, user_id, pillar_type)
                return PipelineProgressSnapshot.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read {pillar_type} pipeline for {user_id}: {exc}") from exc

    async def upsert_progress(
        self,
        user_id: str,
        pillar_type: str,
        step: str,
        plan: PositionPlan,
        step_data: Optional[Dict[str, Any]] = None,
    ) -> PipelineProgressSnapshot:
        try:
            async with self._session_factory() as db:
                row = await pipeline_progress_crud.upsert_pipeline_progress(
                    db,
                    user_id=user_id,
                    pillar_type=pillar_type,
                    step=step,
                    plan=plan,
                    step_data=step_data,
                )
                snapshot = PipelineProgressSnapshot.model_validate(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save {pillar_type} pipeline for {user_id}: {exc}") from exc

        if self._feed is not None:
            self._feed.publish(PIPELINE_TABLE, snapshot)
        return snapshot
