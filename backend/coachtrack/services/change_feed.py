"""
In-process change notification bus.

Stores publish every committed row here; subscribers register a table, an
equality filter (e.g. ``{"user_id": "u1"}``) and a callback.

The feed lives in one process. Writes made by another worker process are
not delivered, so live updates assume the API runs as a single worker.
"""
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Any], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    id: int
    table: str


@dataclass
class _Subscriber:
    handle: SubscriptionHandle
    filter: Dict[str, Any]
    callback: ChangeCallback

    def matches(self, record: Any) -> bool:
        return all(getattr(record, key, None) == value for key, value in self.filter.items())


class ChangeFeed:
    """Fan out row changes to subscribers whose filter matches the row."""

    def __init__(self) -> None:
        self._subscribers: Dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self,
        table: str,
        filter: Optional[Dict[str, Any]],
        on_change: ChangeCallback,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(id=next(self._ids), table=table)
        self._subscribers[handle.id] = _Subscriber(handle, dict(filter or {}), on_change)
        logger.debug("Subscribed %s to %s with filter %s", handle.id, table, filter)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        removed = self._subscribers.pop(handle.id, None)
        return removed is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, table: str, record: Any) -> int:
        """
        Deliver ``record`` to every matching subscriber of ``table``.

        A failing callback is logged and does not affect the publisher or the
        remaining subscribers. Returns the number of deliveries.
        """
        delivered = 0
        for subscriber in list(self._subscribers.values()):
            if subscriber.handle.table != table or not subscriber.matches(record):
                continue
            try:
                subscriber.callback(table, record)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Change subscriber %s failed for %s: %s",
                    subscriber.handle.id, table, exc, exc_info=True,
                )
        return delivered
