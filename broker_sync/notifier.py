"""
Broker Sync - Event Notifier.

============================================================
PURPOSE
============================================================
Tells dashboard subscribers that a sync batch finished.

PRINCIPLES:
- One event per completed batch, even with zero new trades
- At-most-once delivery per registered handler, no replay
- A failing handler never affects other handlers or the sync
- Cached aggregate views of the user are invalidated first,
  so subscribers pulling on receipt see fresh numbers

============================================================
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .types import utc_now


logger = logging.getLogger(__name__)


PLATFORM_SYNC_EVENT = "PLATFORM_SYNC"

# Cached aggregate views, keyed as f"{prefix}{user_id}"
AGGREGATE_VIEW_PREFIXES = ("dashboard_stats_", "recent_trades_", "platform_stats_")


# ============================================================
# EVENT
# ============================================================

@dataclass
class SyncEvent:
    """Batch-completion event."""

    user_id: str
    counts: Dict[str, int] = field(default_factory=dict)
    type: str = PLATFORM_SYNC_EVENT
    timestamp: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)
    """Per-account results and messages."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "user_id": self.user_id,
            "counts": dict(self.counts),
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


EventHandler = Callable[[SyncEvent], Any]


# ============================================================
# AGGREGATE VIEW CACHE
# ============================================================

class AggregateViewCache:
    """
    TTL cache of per-user dashboard aggregates.

    Readers store computed views here; the notifier drops a user's
    entries whenever that user's trades may have changed.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate_user(self, user_id: str) -> int:
        """
        Drop every aggregate view of a user.

        Returns:
            Number of entries removed
        """
        keys = [f"{prefix}{user_id}" for prefix in AGGREGATE_VIEW_PREFIXES]
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def status(self) -> Dict[str, Any]:
        return {"entries": len(self._entries), "ttl_seconds": self._ttl}


# ============================================================
# EVENT NOTIFIER
# ============================================================

class EventNotifier:
    """
    Dashboard notification bus.

    Handlers may be plain callables or coroutine functions.
    """

    def __init__(self, view_cache: Optional[AggregateViewCache] = None):
        self._handlers: Dict[str, EventHandler] = {}
        self._view_cache = view_cache or AggregateViewCache()
        self._published = 0

    @property
    def view_cache(self) -> AggregateViewCache:
        return self._view_cache

    @property
    def published_count(self) -> int:
        return self._published

    def register(self, handler_id: str, handler: EventHandler) -> None:
        """Register a handler. Re-registering an id replaces it."""
        self._handlers[handler_id] = handler
        logger.info(f"Registered dashboard handler: {handler_id}")

    def unregister(self, handler_id: str) -> bool:
        """Unregister a handler. Returns False if it was unknown."""
        removed = self._handlers.pop(handler_id, None) is not None
        if removed:
            logger.info(f"Unregistered dashboard handler: {handler_id}")
        return removed

    def list_handlers(self) -> List[str]:
        return list(self._handlers)

    async def publish(self, event: SyncEvent) -> int:
        """
        Invalidate the user's aggregates and deliver the event.

        Returns:
            Number of handlers that received the event without error
        """
        dropped = self._view_cache.invalidate_user(event.user_id)
        logger.info(
            f"Publishing {event.type} for user {event.user_id} "
            f"({len(self._handlers)} handlers, {dropped} cached views dropped)"
        )
        self._published += 1

        delivered = 0
        for handler_id, handler in list(self._handlers.items()):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Dashboard handler {handler_id} error: {e}")
        return delivered
