"""
Live update listener.

Holds one change-feed subscription pair (sessions + pipelines) per user and
feeds every matching notification into that user's ``TrackerState``.
Subscriptions are scoped resources: use them as (async) context managers or
call ``dispose()``; disposing twice is a no-op.
"""
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

from ..api.schemas.pipeline import PipelineProgressSnapshot
from ..api.schemas.processing import ProcessingSessionSnapshot
from ..core.errors import AuthenticationRequired
from .change_feed import ChangeFeed, SubscriptionHandle
from .stores import PIPELINE_TABLE, SESSIONS_TABLE
from .tracker_state import TrackerState

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Any], None]


class LiveSubscription:
    """Handle returned by ``LiveUpdateListener.subscribe``."""

    def __init__(self, listener: "LiveUpdateListener", user_id: str, token: int):
        self._listener = listener
        self.user_id = user_id
        self._token = token
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._listener._release(self.user_id, self._token)

    def __enter__(self) -> "LiveSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    async def __aenter__(self) -> "LiveSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.dispose()


class _UserChannel:
    def __init__(self, handles: List[SubscriptionHandle]):
        self.handles = handles
        self.listeners: Dict[int, Optional[ChangeListener]] = {}


class LiveUpdateListener:
    """Route change notifications for subscribed users into their cached state."""

    def __init__(self, feed: ChangeFeed, state_for: Callable[[str], TrackerState]):
        self._feed = feed
        self._state_for = state_for
        self._channels: Dict[str, _UserChannel] = {}
        self._tokens = itertools.count(1)

    def is_subscribed(self, user_id: str) -> bool:
        return user_id in self._channels

    def subscribe(self, user_id: Optional[str], on_change: Optional[ChangeListener] = None) -> LiveSubscription:
        """
        Start receiving changes for ``user_id``.

        The feed subscription is shared by all handles of the same user and
        torn down when the last handle is disposed. ``on_change`` is called
        after the cached state accepted a change.
        """
        if not user_id:
            raise AuthenticationRequired()

        channel = self._channels.get(user_id)
        if channel is None:
            channel = _UserChannel([
                self._feed.subscribe(SESSIONS_TABLE, {"user_id": user_id}, self._dispatch),
                self._feed.subscribe(PIPELINE_TABLE, {"user_id": user_id}, self._dispatch),
            ])
            self._channels[user_id] = channel
            logger.info("Live updates subscribed for user %s", user_id)

        token = next(self._tokens)
        channel.listeners[token] = on_change
        return LiveSubscription(self, user_id, token)

    def _release(self, user_id: str, token: int) -> None:
        channel = self._channels.get(user_id)
        if channel is None:
            return
        channel.listeners.pop(token, None)
        if channel.listeners:
            return
        for handle in channel.handles:
            self._feed.unsubscribe(handle)
        del self._channels[user_id]
        logger.info("Live updates unsubscribed for user %s", user_id)

    def close(self) -> None:
        """Tear down every user channel."""
        for user_id in list(self._channels):
            channel = self._channels.pop(user_id)
            for handle in channel.handles:
                self._feed.unsubscribe(handle)

    def _dispatch(self, table: str, record: Any) -> None:
        user_id = getattr(record, "user_id", None)
        channel = self._channels.get(user_id)
        if channel is None:
            return

        state = self._state_for(user_id)
        if isinstance(record, ProcessingSessionSnapshot):
            accepted = state.apply_session(record)
        elif isinstance(record, PipelineProgressSnapshot):
            accepted = state.apply_pipeline(record)
        else:
            logger.warning("Unexpected record on %s: %r", table, type(record))
            return

        if not accepted:
            return
        for on_change in list(channel.listeners.values()):
            if on_change is not None:
                on_change(table, record)
