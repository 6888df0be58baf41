import pytest

from coachtrack.core.enums import PipelineStep


async def _advance(tracker, step, progress, pillar="self_care", user="user-1", **kwargs):
    result = await tracker.update_pipeline_progress(user, pillar, step, progress, **kwargs)
    assert result.ok, result.message
    return result.data


async def test_full_pipeline_reaches_100(tracker):
    totals = []
    for step in PipelineStep:
        await _advance(tracker, step.value, 0)
        totals.append((await _advance(tracker, step.value, 100)).total_progress_percentage)

    assert totals == [20, 50, 60, 85, 95, 100]
    final = tracker.pipeline_progress("user-1", "self_care")
    assert final.current_step == PipelineStep.COMPLETED
    assert final.completed_at is not None
    assert set(final.completion_timestamps) == {step.value for step in PipelineStep}


async def test_first_timestamp_per_step_is_kept(tracker):
    first = await _advance(tracker, "assessment", 40)
    second = await _advance(tracker, "assessment", 80)

    assert second.completion_timestamps["assessment"] == first.completion_timestamps["assessment"]
    assert second.last_activity_at >= first.last_activity_at
    assert second.version == first.version + 1


async def test_step_data_is_merged(tracker):
    await _advance(tracker, "assessment", 50, step_data={"answers": 10})
    record = await _advance(tracker, "ai_processing", 10, step_data={"session_id": "abc"})

    assert record.step_data == {"answers": 10, "session_id": "abc"}


async def test_step_progress_is_clamped(tracker):
    record = await _advance(tracker, "ai_processing", 140)
    assert record.step_progress_percentage == 100
    assert record.total_progress_percentage == 50


async def test_revisiting_an_earlier_step_keeps_position(tracker):
    await _advance(tracker, "actionables_generation", 40)

    record = await _advance(tracker, "assessment", 10, step_data={"revisited": True})

    assert record.current_step == PipelineStep.ACTIONABLES_GENERATION
    assert record.step_progress_percentage == 40
    assert record.total_progress_percentage == 70
    assert record.step_data["revisited"] is True


async def test_lower_progress_on_same_step_does_not_regress(tracker):
    await _advance(tracker, "results_preview", 80)
    record = await _advance(tracker, "results_preview", 20)

    assert record.step_progress_percentage == 80
    assert record.total_progress_percentage == 58


async def test_pillars_and_users_are_independent(tracker):
    await _advance(tracker, "calendar_integration", 50, pillar="brand")
    skills = await _advance(tracker, "assessment", 50, pillar="skills")
    other = await _advance(tracker, "assessment", 0, pillar="brand", user="user-2")

    assert skills.total_progress_percentage == 10
    assert other.total_progress_percentage == 0
    assert tracker.pipeline_progress("user-1", "brand").total_progress_percentage == 90


async def test_load_pipeline_progress(tracker, pipeline_store):
    missing = await tracker.load_pipeline_progress("user-1", "economy")
    assert missing.ok
    assert missing.data is None

    await pipeline_store.upsert_progress("user-1", "economy", "ai_processing", plan=lambda stored: ("ai_processing", 50, 35))
    loaded = await tracker.load_pipeline_progress("user-1", "economy")

    assert loaded.data.total_progress_percentage == 35
    assert tracker.pipeline_progress("user-1", "economy") == loaded.data


@pytest.mark.parametrize("user,pillar,step,error", [
    (None, "self_care", "assessment", "authentication_required"),
    ("user-1", "", "assessment", "validation_error"),
    ("user-1", "self_care", "onboarding", "validation_error"),
])
async def test_invalid_pipeline_updates(tracker, user, pillar, step, error):
    result = await tracker.update_pipeline_progress(user, pillar, step, 10)
    assert result.error == error


async def test_non_finite_step_progress_is_rejected(tracker, pipeline_store):
    result = await tracker.update_pipeline_progress("user-1", "skills", "assessment", float("nan"))

    assert result.error == "validation_error"
    assert await pipeline_store.get_progress("user-1", "skills") is None
