"""
CRUD operations for per-pillar pipeline progress.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..models.db_pipeline_progress import PipelineProgress

PositionPlan = Callable[[Optional[PipelineProgress]], Tuple[str, int, int]]


async def get_pipeline_progress(
    db: AsyncSession,
    user_id: str,
    pillar_type: str,
) -> Optional[PipelineProgress]:
    """Get the progress record for ``(user_id, pillar_type)`` if it exists."""
    query = (
        select(PipelineProgress)
        .where(PipelineProgress.user_id == user_id)
        .where(PipelineProgress.pillar_type == pillar_type)
    )
    result = await db.execute(query)
    return result.scalar_one_or_none()


def _apply_step(
    record: PipelineProgress,
    step: str,
    current_step: str,
    step_progress_percentage: int,
    total_progress_percentage: int,
    step_data: Optional[Dict[str, Any]],
    now: datetime,
) -> None:
    record.current_step = current_step
    record.step_progress_percentage = step_progress_percentage
    record.total_progress_percentage = total_progress_percentage

    # JSON columns are replaced, never mutated in place, so the change is tracked
    record.step_data = {**(record.step_data or {}), **(step_data or {})}

    timestamps = dict(record.completion_timestamps or {})
    timestamps.setdefault(step, now.isoformat())
    record.completion_timestamps = timestamps

    record.last_activity_at = now
    if current_step == "completed" and record.completed_at is None:
        record.completed_at = now


async def upsert_pipeline_progress(
    db: AsyncSession,
    user_id: str,
    pillar_type: str,
    step: str,
    plan: PositionPlan,
    step_data: Optional[Dict[str, Any]] = None,
    max_attempts: int = 3,
) -> PipelineProgress:
    """
    Insert or update the progress record of ``(user_id, pillar_type)``.

    ``plan`` receives the stored record (or None) and returns the
    ``(current_step, step_progress_percentage, total_progress_percentage)``
    to store. It runs against the row actually being written: when a
    concurrent writer wins, the record is re-read and planned again.
    ``step_data`` is merged into the stored payload and the first timestamp
    recorded for a step is kept.

    Args:
        db: Database session
        user_id: Owner
        pillar_type: Pillar key
        step: Reported step (gets a completion timestamp if it has none)
        plan: Decides the stored position from the current record
        step_data: Optional payload to merge
        max_attempts: Writes tried before a conflict is raised

    Returns:
        The stored PipelineProgress
    """
    for attempt in range(1, max_attempts + 1):
        now = datetime.now(timezone.utc)
        record = await get_pipeline_progress(db, user_id, pillar_type)

        if record is None:
            record = PipelineProgress(
                user_id=user_id,
                pillar_type=pillar_type,
                step_data={},
                completion_timestamps={},
                started_at=now,
            )
            db.add(record)
            _apply_step(record, step, *plan(None), step_data, now)
        else:
            _apply_step(record, step, *plan(record), step_data, now)

        try:
            await db.commit()
        except (IntegrityError, StaleDataError):
            # Another writer created or changed the row since it was read
            await db.rollback()
            if attempt == max_attempts:
                raise
            continue

        await db.refresh(record)
        return record
