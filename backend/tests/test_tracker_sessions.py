from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from coachtrack.core.enums import SessionStatus
from coachtrack.db.database import create_engine_for_url, make_session_factory
from coachtrack.db.models import ProcessingSession
from coachtrack.services import ProcessingTracker
from coachtrack.services.stores import SESSIONS_TABLE, SqlPipelineProgressStore, SqlSessionStore


async def _start(tracker, user="user-1", process_type="assessment_analysis", **kwargs):
    result = await tracker.start_processing_session(user, process_type, **kwargs)
    assert result.ok, result.message
    return result.data


async def test_start_creates_session_and_sets_current(tracker, session_store):
    session_id = await _start(tracker, pillar_type="self_care", input_data={"answers": 12},
                              client_signature="pytest-agent")

    stored = await session_store.get_session(session_id)
    assert stored.status == SessionStatus.STARTED
    assert stored.progress_percentage == 0
    assert stored.pillar_type == "self_care"
    assert stored.input_data == {"answers": 12}
    assert stored.processing_metadata.started_by == "user"
    assert stored.processing_metadata.client_signature == "pytest-agent"
    assert stored.completed_at is None
    assert tracker.current_session("user-1").id == session_id


async def test_unauthenticated_start_is_a_no_op(tracker, feed):
    published = []
    feed.subscribe(SESSIONS_TABLE, None, lambda table, record: published.append(record))

    result = await tracker.start_processing_session(None, "assessment_analysis")

    assert not result.ok
    assert result.data is None
    assert result.error == "authentication_required"
    assert published == []


async def test_unknown_process_type_is_rejected(tracker):
    result = await tracker.start_processing_session("user-1", "horoscope")
    assert result.error == "validation_error"


@pytest.mark.parametrize("reported,stored,status", [
    (-15, 0, SessionStatus.PROCESSING),
    (0, 0, SessionStatus.PROCESSING),
    (45, 45, SessionStatus.PROCESSING),
    (99.6, 100, SessionStatus.COMPLETED),
    (100, 100, SessionStatus.COMPLETED),
    (180, 100, SessionStatus.COMPLETED),
])
async def test_update_progress_clamps_and_derives_status(tracker, reported, stored, status):
    session_id = await _start(tracker)

    result = await tracker.update_progress("user-1", session_id, reported, "Analyserar mönster...")

    session = result.data
    assert session.progress_percentage == stored
    assert session.status == status
    assert session.current_step == "Analyserar mönster..."
    assert (session.completed_at is not None) == status.is_terminal


async def test_update_progress_estimates_completion(tracker):
    session_id = await _start(tracker)

    session = (await tracker.update_progress("user-1", session_id, 25)).data
    assert session.estimated_completion_time is not None
    assert session.estimated_completion_time >= session.started_at

    finished = (await tracker.update_progress("user-1", session_id, 100)).data
    assert finished.estimated_completion_time is None


async def test_update_progress_merges_metadata(tracker):
    session_id = await _start(tracker, client_signature="agent")

    await tracker.update_progress("user-1", session_id, 10, metadata={"model": "stefan-v2"})
    session = (await tracker.update_progress("user-1", session_id, 20, metadata={"tokens": 512})).data

    metadata = session.processing_metadata.to_json()
    assert metadata["client_signature"] == "agent"
    assert metadata["model"] == "stefan-v2"
    assert metadata["tokens"] == 512


async def test_update_refreshes_cache_from_store(tracker):
    session_id = await _start(tracker)

    await tracker.update_progress("user-1", session_id, 30)

    cached = tracker.current_session("user-1")
    assert cached.progress_percentage == 30
    assert cached.version == 2


async def test_complete_session_keeps_prior_metadata(tracker):
    session_id = await _start(tracker, client_signature="agent")
    await tracker.update_progress("user-1", session_id, 60, metadata={"model": "stefan-v2"})

    result = await tracker.complete_session("user-1", session_id, {"strengths": ["focus"]})

    session = result.data
    assert session.status == SessionStatus.COMPLETED
    assert session.progress_percentage == 100
    assert session.completed_at is not None
    assert session.processing_metadata.results == {"strengths": ["focus"]}
    assert session.processing_metadata.completed_by == "system"
    assert session.processing_metadata.client_signature == "agent"
    assert session.processing_metadata.to_json()["model"] == "stefan-v2"


async def test_completing_twice_merges_results_without_moving_completed_at(tracker):
    session_id = await _start(tracker)
    first = (await tracker.complete_session("user-1", session_id, {"a": 1})).data

    second = (await tracker.complete_session("user-1", session_id, {"b": 2})).data

    assert second.completed_at == first.completed_at
    assert second.processing_metadata.results == {"a": 1, "b": 2}


async def test_failure_preserves_partial_progress(tracker):
    session_id = await _start(tracker)
    await tracker.update_progress("user-1", session_id, 45, "step X")

    result = await tracker.fail_session("user-1", session_id, "AI timeout")

    session = result.data
    assert session.status == SessionStatus.FAILED
    assert session.progress_percentage == 45
    assert session.error_details == "AI timeout"
    assert session.completed_at is not None


async def test_session_can_fail_straight_from_started(tracker):
    session_id = await _start(tracker)
    result = await tracker.fail_session("user-1", session_id, "quota exceeded")
    assert result.data.status == SessionStatus.FAILED
    assert result.data.progress_percentage == 0


@pytest.mark.parametrize("finish", ["complete", "fail"])
async def test_terminal_sessions_reject_transitions(tracker, finish):
    session_id = await _start(tracker)
    if finish == "complete":
        await tracker.complete_session("user-1", session_id)
    else:
        await tracker.fail_session("user-1", session_id, "boom")

    update = await tracker.update_progress("user-1", session_id, 50)
    fail = await tracker.fail_session("user-1", session_id, "again")

    assert update.error == "validation_error"
    assert fail.error == "validation_error"


async def test_complete_after_failure_is_rejected(tracker):
    session_id = await _start(tracker)
    await tracker.fail_session("user-1", session_id, "boom")

    result = await tracker.complete_session("user-1", session_id)

    assert result.error == "validation_error"
    assert tracker.current_session("user-1").status == SessionStatus.FAILED


async def test_other_users_cannot_touch_a_session(tracker, session_store):
    session_id = await _start(tracker, user="owner")

    result = await tracker.update_progress("intruder", session_id, 80)

    assert result.error == "not_found"
    assert (await session_store.get_session(session_id)).progress_percentage == 0


async def test_unknown_session_is_not_found(tracker):
    result = await tracker.update_progress("user-1", "missing", 10)
    assert result.error == "not_found"
    assert tracker.current_session("user-1") is None


async def test_load_latest_session(tracker):
    assert (await tracker.load_latest_session("user-1")).data is None

    await _start(tracker)
    latest_id = await _start(tracker, process_type="calendar_optimization")

    latest = (await tracker.load_latest_session("user-1")).data
    assert latest.id == latest_id


async def test_store_failures_become_error_results(db_url, feed):
    # Engine on a database without the schema: every statement fails
    engine = await create_engine_for_url(db_url)
    factory = make_session_factory(engine)
    tracker = ProcessingTracker(SqlSessionStore(factory, feed), SqlPipelineProgressStore(factory, feed))

    started = await tracker.start_processing_session("user-1", "assessment_analysis")
    pipeline = await tracker.update_pipeline_progress("user-1", "brand", "assessment", 10)

    assert started.error == "persistence_error"
    assert pipeline.error == "persistence_error"
    assert tracker.current_session("user-1") is None
    await engine.dispose()


async def test_expire_stale_sessions(tracker, session_store):
    stale_id = await _start(tracker)
    done_id = await _start(tracker)
    await tracker.complete_session("user-1", done_id)

    later = datetime.now(timezone.utc) + timedelta(minutes=31)
    result = await tracker.expire_stale_sessions(timeout_minutes=30, now=later)

    assert result.data == [stale_id]
    stale = await session_store.get_session(stale_id)
    assert stale.status == SessionStatus.FAILED
    assert "timed out" in stale.error_details
    assert stale.completed_at is not None
    assert (await session_store.get_session(done_id)).status == SessionStatus.COMPLETED
    assert tracker.state_for("user-1").sessions[stale_id].status == SessionStatus.FAILED


async def test_recent_sessions_are_not_expired(tracker):
    await _start(tracker)
    result = await tracker.expire_stale_sessions(timeout_minutes=30)
    assert result.data == []


@pytest.mark.parametrize("reported", [float("nan"), float("inf"), float("-inf")])
async def test_non_finite_progress_is_rejected(tracker, session_store, reported):
    session_id = await _start(tracker)

    result = await tracker.update_progress("user-1", session_id, reported)

    assert result.error == "validation_error"
    assert (await session_store.get_session(session_id)).version == 1


async def test_reading_an_older_session_keeps_the_current_one(tracker):
    old_id = await _start(tracker)
    await tracker.fail_session("user-1", old_id, "boom")
    new_id = await _start(tracker, process_type="calendar_optimization")

    await tracker.get_session("user-1", old_id)

    assert tracker.current_session("user-1").id == new_id


async def test_sweep_of_an_older_session_keeps_the_current_one(tracker, session_factory):
    old_id = await _start(tracker)
    new_id = await _start(tracker, process_type="calendar_optimization")
    async with session_factory() as db:
        await db.execute(
            update(ProcessingSession)
            .where(ProcessingSession.id == old_id)
            .values(updated_at=datetime.now(timezone.utc) - timedelta(minutes=60))
        )
        await db.commit()

    result = await tracker.expire_stale_sessions(timeout_minutes=30)

    assert result.data == [old_id]
    assert tracker.state_for("user-1").sessions[old_id].status == SessionStatus.FAILED
    assert tracker.current_session("user-1").id == new_id


async def test_cache_keeps_only_recent_users(session_store, pipeline_store):
    tracker = ProcessingTracker(session_store, pipeline_store, max_cached_users=3)

    for n in range(5):
        await _start(tracker, user=f"user-{n}")

    assert tracker.current_session("user-0") is None
    assert tracker.current_session("user-1") is None
    assert all(tracker.current_session(f"user-{n}") is not None for n in (2, 3, 4))

    # Evicted users are rebuilt from the store on the next read
    assert (await tracker.load_latest_session("user-0")).data is not None
    assert tracker.current_session("user-0") is not None


async def test_cache_drops_oldest_finished_sessions(session_store, pipeline_store):
    tracker = ProcessingTracker(session_store, pipeline_store, max_finished_sessions=1)

    first = await _start(tracker)
    await tracker.fail_session("user-1", first, "boom")
    second = await _start(tracker)
    await tracker.complete_session("user-1", second)
    current = await _start(tracker)

    assert set(tracker.state_for("user-1").sessions) == {second, current}
