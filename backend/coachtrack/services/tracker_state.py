"""In-memory view of one user's sessions and pipelines."""
import logging
from typing import Dict, Optional

from ..api.schemas.pipeline import PipelineProgressSnapshot
from ..api.schemas.processing import ProcessingSessionSnapshot

logger = logging.getLogger(__name__)


class TrackerState:
    """
    Cached records for a single user.

    Local writes and pushed notifications both go through ``apply_*``. A
    record only replaces the cached copy when its version is not older, so a
    notification delayed in transit cannot clobber a newer local write.

    The current session is the most recently started one seen. Finished
    sessions other than the current one are kept up to
    ``max_finished_sessions``, oldest dropped first.
    """

    def __init__(self, user_id: str, max_finished_sessions: int = 20):
        self.user_id = user_id
        self.max_finished_sessions = max_finished_sessions
        self.sessions: Dict[str, ProcessingSessionSnapshot] = {}
        self.pipelines: Dict[str, PipelineProgressSnapshot] = {}
        self.current_session_id: Optional[str] = None

    @property
    def current_session(self) -> Optional[ProcessingSessionSnapshot]:
        if self.current_session_id is None:
            return None
        return self.sessions.get(self.current_session_id)

    def apply_session(self, snapshot: ProcessingSessionSnapshot, make_current: bool = False) -> bool:
        cached = self.sessions.get(snapshot.id)
        if cached is not None and snapshot.version < cached.version:
            logger.debug(
                "Ignoring stale session %s v%d (cached v%d)",
                snapshot.id, snapshot.version, cached.version,
            )
            return False
        self.sessions[snapshot.id] = snapshot

        current = self.current_session
        if make_current or current is None or snapshot.started_at > current.started_at:
            self.current_session_id = snapshot.id
        self._prune_finished()
        return True

    def apply_pipeline(self, snapshot: PipelineProgressSnapshot) -> bool:
        cached = self.pipelines.get(snapshot.pillar_type)
        if cached is not None and snapshot.version < cached.version:
            logger.debug(
                "Ignoring stale %s pipeline v%d (cached v%d)",
                snapshot.pillar_type, snapshot.version, cached.version,
            )
            return False
        self.pipelines[snapshot.pillar_type] = snapshot
        return True

    def _prune_finished(self) -> None:
        finished = sorted(
            (s for s in self.sessions.values() if s.status.is_terminal and s.id != self.current_session_id),
            key=lambda s: s.started_at,
        )
        for session in finished[:max(len(finished) - self.max_finished_sessions, 0)]:
            del self.sessions[session.id]
