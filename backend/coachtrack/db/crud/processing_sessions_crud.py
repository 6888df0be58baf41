"""
CRUD operations for AI processing sessions.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.enums import ACTIVE_SESSION_STATUSES
from ..models.db_processing_session import ProcessingSession


async def create_processing_session(
    db: AsyncSession,
    user_id: str,
    process_type: str,
    pillar_type: Optional[str] = None,
    input_data: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ProcessingSession:
    """
    Create a new processing session in the ``started`` state.

    Args:
        db: Database session
        user_id: Owner of the session
        process_type: One of the ProcessType values
        pillar_type: Optional pillar the processing concerns
        input_data: Optional input payload captured at start
        metadata: Optional initial processing metadata

    Returns:
        Created ProcessingSession
    """
    now = datetime.now(timezone.utc)

    session = ProcessingSession(
        id=str(uuid.uuid4()),
        user_id=user_id,
        process_type=process_type,
        pillar_type=pillar_type,
        status="started",
        progress_percentage=0,
        input_data=dict(input_data or {}),
        processing_metadata=dict(metadata or {}),
        version=1,
        started_at=now,
        updated_at=now,
    )

    db.add(session)
    await db.commit()
    await db.refresh(session)

    return session


async def get_processing_session(
    db: AsyncSession,
    session_id: str,
    user_id: Optional[str] = None
) -> Optional[ProcessingSession]:
    """
    Get a processing session by ID.

    Args:
        db: Database session
        session_id: Session ID
        user_id: Optional user ID for ownership check

    Returns:
        ProcessingSession if found, None otherwise
    """
    query = select(ProcessingSession).where(ProcessingSession.id == session_id)

    if user_id:
        query = query.where(ProcessingSession.user_id == user_id)

    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_latest_session_for_user(
    db: AsyncSession,
    user_id: str
) -> Optional[ProcessingSession]:
    """Get the most recently started session of a user, whatever its status."""
    query = (
        select(ProcessingSession)
        .where(ProcessingSession.user_id == user_id)
        .order_by(ProcessingSession.started_at.desc(), ProcessingSession.id.desc())
        .limit(1)
    )

    result = await db.execute(query)
    return result.scalar_one_or_none()


async def update_processing_session(
    db: AsyncSession,
    session_id: str,
    fields: Dict[str, Any],
    allowed_statuses: Optional[Sequence[str]] = None,
    updated_before: Optional[datetime] = None,
) -> Optional[ProcessingSession]:
    """
    Apply a partial update to a processing session in a single UPDATE.

    Bumps ``version`` and ``updated_at`` on every write. The status and
    staleness guards are part of the WHERE clause, so a write that committed
    after the caller read the row cannot be overwritten.

    Args:
        db: Database session
        session_id: Session ID
        fields: Column name to new value
        allowed_statuses: Only update while the status is one of these
        updated_before: Only update if the last write is older than this

    Returns:
        Updated ProcessingSession, or None if no row matched
    """
    query = (
        update(ProcessingSession)
        .where(ProcessingSession.id == session_id)
        .values(
            **fields,
            version=ProcessingSession.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )

    if allowed_statuses is not None:
        query = query.where(ProcessingSession.status.in_(allowed_statuses))
    if updated_before is not None:
        query = query.where(ProcessingSession.updated_at < updated_before)

    result = await db.execute(query)
    await db.commit()

    if result.rowcount == 0:
        return None
    return await get_processing_session(db, session_id)


async def list_stale_sessions(
    db: AsyncSession,
    cutoff: datetime,
) -> List[ProcessingSession]:
    """
    Sessions still started/processing whose last write is older than ``cutoff``.
    """
    query = (
        select(ProcessingSession)
        .where(ProcessingSession.status.in_(ACTIVE_SESSION_STATUSES))
        .where(ProcessingSession.updated_at < cutoff)
        .order_by(ProcessingSession.updated_at.asc())
    )
    result = await db.execute(query)
    return list(result.scalars().all())
