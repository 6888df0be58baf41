"""
Fire-and-forget dispatch of AI processing runs.

A runner is an async callable registered per process type. It receives the
session snapshot and a ``ProgressReporter`` and returns an optional results
dict. The task outcome is written back through the tracker: results complete
the session, exceptions fail it.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..api.schemas.processing import ProcessingSessionSnapshot
from ..core.enums import ProcessType
from .tracker_service import ProcessingTracker

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Lets a runner push progress for its own session."""

    def __init__(self, tracker: ProcessingTracker, user_id: str, session_id: str):
        self._tracker = tracker
        self._user_id = user_id
        self.session_id = session_id

    async def report(
        self,
        progress: float,
        current_step: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Runners finish through complete_session; keep explicit reports below 100
        result = await self._tracker.update_progress(
            self._user_id, self.session_id, min(progress, 99), current_step, metadata
        )
        if not result.ok:
            logger.warning("[AsyncTask %s] Progress report rejected: %s", self.session_id, result.message)


AnalysisRunner = Callable[[ProcessingSessionSnapshot, ProgressReporter], Awaitable[Optional[Dict[str, Any]]]]

_runners: Dict[ProcessType, AnalysisRunner] = {}
_active_processing_tasks: Dict[str, asyncio.Task] = {}


def register_runner(process_type: ProcessType, runner: AnalysisRunner) -> None:
    _runners[ProcessType(process_type)] = runner


def unregister_runner(process_type: ProcessType) -> None:
    _runners.pop(ProcessType(process_type), None)


def get_runner(process_type: ProcessType) -> Optional[AnalysisRunner]:
    return _runners.get(ProcessType(process_type))


def active_task_ids() -> list:
    return list(_active_processing_tasks)


async def run_processing_task(
    tracker: ProcessingTracker,
    session: ProcessingSessionSnapshot,
    runner: AnalysisRunner,
) -> None:
    """
    Run ``runner`` for ``session`` and record the outcome.

    This function:
    1. Moves the session to 'processing'
    2. Awaits the runner, which may report intermediate progress
    3. Completes the session with the runner's results, or fails it
    """
    session_id = session.id
    try:
        logger.info("[AsyncTask %s] Starting %s for user %s", session_id, session.process_type.value, session.user_id)
        await tracker.update_progress(session.user_id, session_id, 0, current_step="queued")

        results = await runner(session, ProgressReporter(tracker, session.user_id, session_id))

        completed = await tracker.complete_session(session.user_id, session_id, results)
        if completed.ok:
            logger.info("[AsyncTask %s] Status updated to 'completed'", session_id)
    except asyncio.CancelledError:
        await tracker.fail_session(session.user_id, session_id, "Processing was cancelled before completion")
        logger.info("[AsyncTask %s] Cancelled before completion", session_id)
        raise
    except Exception as e:  # noqa: BLE001
        logger.exception("[AsyncTask %s] Exception during processing: %s", session_id, e)
        await tracker.fail_session(session.user_id, session_id, str(e) or type(e).__name__)
    finally:
        _active_processing_tasks.pop(session_id, None)


def schedule_processing_task(
    tracker: ProcessingTracker,
    session: ProcessingSessionSnapshot,
    runner: Optional[AnalysisRunner] = None,
) -> bool:
    """
    Start the registered runner for ``session`` without awaiting it.

    Returns False when no runner is available for the session's process type;
    the session is then left for an external job to drive.
    """
    runner = runner or get_runner(session.process_type)
    if runner is None:
        logger.info("No runner registered for %s; session %s awaits external updates",
                    session.process_type.value, session.id)
        return False

    loop = asyncio.get_running_loop()
    task = loop.create_task(run_processing_task(tracker, session, runner))
    _active_processing_tasks[session.id] = task
    return True


async def cancel_processing_task(session_id: str) -> bool:
    task = _active_processing_tasks.pop(session_id, None)
    if not task:
        return False
    if not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("[AsyncTask %s] Background processing cancelled", session_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[AsyncTask %s] Cancellation surfaced exception: %s", session_id, exc)
    return True


async def shutdown_active_tasks(timeout: int = 300) -> None:
    """
    Gracefully shutdown all active processing tasks.

    Called during application shutdown. Tasks still running after ``timeout``
    seconds are cancelled, which marks their sessions failed.
    """
    if not _active_processing_tasks:
        logger.info("No active processing tasks to shutdown")
        return

    task_count = len(_active_processing_tasks)
    logger.info("Shutting down %d active processing tasks: %s", task_count, list(_active_processing_tasks))

    tasks = list(_active_processing_tasks.values())

    try:
        await asyncio.wait_for(
            asyncio.gather(*tasks, return_exceptions=True),
            timeout=timeout
        )
        logger.info("All %d tasks completed gracefully", task_count)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timeout (%ss) reached, cancelling remaining tasks", timeout)

        for session_id, task in list(_active_processing_tasks.items()):
            if not task.done():
                logger.warning("Cancelling incomplete task: %s", session_id)
                task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=5
            )
        except asyncio.TimeoutError:
            logger.error("Some tasks did not respond to cancellation")

    _active_processing_tasks.clear()
    logger.info("Task shutdown complete")
