import pytest

from coachtrack.core.errors import AuthenticationRequired
from coachtrack.services.stores import PIPELINE_TABLE, SESSIONS_TABLE, SqlPipelineProgressStore, SqlSessionStore


@pytest.fixture
def server_session_store(session_factory, feed):
    """A second writer on the same database, like a server-side AI job."""
    return SqlSessionStore(session_factory, feed)


async def test_later_notification_replaces_local_update(tracker, listener, server_session_store):
    subscription = listener.subscribe("user-1")
    session_id = (await tracker.start_processing_session("user-1", "assessment_analysis")).data
    await tracker.update_progress("user-1", session_id, 30)

    await server_session_store.update_session(session_id, {"progress_percentage": 60, "status": "processing"})

    assert tracker.current_session("user-1").progress_percentage == 60
    subscription.dispose()


async def test_stale_notification_does_not_clobber_newer_cache(tracker, listener, feed):
    with listener.subscribe("user-1"):
        session_id = (await tracker.start_processing_session("user-1", "assessment_analysis")).data
        delayed = (await tracker.update_progress("user-1", session_id, 30)).data
        await tracker.update_progress("user-1", session_id, 70)

        feed.publish(SESSIONS_TABLE, delayed)

        assert tracker.current_session("user-1").progress_percentage == 70


async def test_pipeline_notifications_update_cache(tracker, listener, session_factory, feed):
    other_writer = SqlPipelineProgressStore(session_factory, feed)

    with listener.subscribe("user-1"):
        await other_writer.upsert_progress(
            "user-1", "talent", "results_preview", plan=lambda stored: ("results_preview", 50, 55)
        )

    assert tracker.pipeline_progress("user-1", "talent").total_progress_percentage == 55


async def test_notifications_for_other_users_are_ignored(tracker, listener, server_session_store):
    received = []
    with listener.subscribe("user-1", lambda table, record: received.append(record)):
        await server_session_store.create_session("user-2", "actionable_generation")

    assert received == []
    assert tracker.current_session("user-1") is None


async def test_on_change_receives_accepted_records(tracker, listener):
    received = []
    with listener.subscribe("user-1", lambda table, record: received.append((table, record.version))):
        session_id = (await tracker.start_processing_session("user-1", "calendar_optimization")).data
        await tracker.update_progress("user-1", session_id, 10)
        await tracker.update_pipeline_progress("user-1", "skills", "assessment", 10)

    assert received == [(SESSIONS_TABLE, 1), (SESSIONS_TABLE, 2), (PIPELINE_TABLE, 1)]


async def test_no_updates_after_dispose(tracker, listener, feed, server_session_store):
    session_id = (await tracker.start_processing_session("user-1", "assessment_analysis")).data

    subscription = listener.subscribe("user-1")
    subscription.dispose()
    subscription.dispose()

    assert not subscription.active
    assert not listener.is_subscribed("user-1")
    assert feed.subscriber_count == 0

    await server_session_store.update_session(session_id, {"progress_percentage": 90, "status": "processing"})
    assert tracker.current_session("user-1").progress_percentage == 0


async def test_subscription_is_released_when_block_raises(listener, feed):
    with pytest.raises(RuntimeError):
        with listener.subscribe("user-1"):
            assert feed.subscriber_count == 2
            raise RuntimeError("component unmounted")

    assert feed.subscriber_count == 0


async def test_async_context_manager_releases(listener, feed):
    async with listener.subscribe("user-1") as subscription:
        assert subscription.active
    assert feed.subscriber_count == 0


async def test_one_feed_subscription_per_user(listener, feed):
    first = listener.subscribe("user-1")
    second = listener.subscribe("user-1")
    assert feed.subscriber_count == 2

    first.dispose()
    assert listener.is_subscribed("user-1")

    second.dispose()
    assert feed.subscriber_count == 0


async def test_subscribe_requires_a_user(listener):
    with pytest.raises(AuthenticationRequired):
        listener.subscribe(None)


def test_failing_subscriber_does_not_break_publisher(feed):
    delivered = []

    def broken(table, record):
        raise ValueError("render failed")

    feed.subscribe("t", None, broken)
    feed.subscribe("t", None, lambda table, record: delivered.append(record))

    assert feed.publish("t", object()) == 1
    assert len(delivered) == 1
