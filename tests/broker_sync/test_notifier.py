"""
Event Notifier Tests.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from broker_sync.notifier import AggregateViewCache, EventNotifier, SyncEvent


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_event(user_id="user-1"):
    return SyncEvent(
        user_id=user_id,
        counts={"fetched": 0, "created": 0, "updated": 0, "skipped": 0},
        timestamp=datetime(2026, 10, 15, tzinfo=timezone.utc),
    )


# ============================================================
# VIEW CACHE
# ============================================================

class TestAggregateViewCache:
    """Tests for the per-user aggregate cache."""

    def test_get_set(self):
        cache = AggregateViewCache()
        cache.set("dashboard_stats_user-1", {"trades": 3})

        assert cache.get("dashboard_stats_user-1") == {"trades": 3}
        assert cache.get("dashboard_stats_user-2") is None

    def test_entries_expire(self):
        clock = FakeMonotonic()
        cache = AggregateViewCache(ttl_seconds=300, clock=clock)
        cache.set("recent_trades_user-1", [1])

        clock.now = 299.0
        assert cache.get("recent_trades_user-1") == [1]
        clock.now = 300.0
        assert cache.get("recent_trades_user-1") is None

    def test_invalidate_user_only_touches_that_user(self):
        cache = AggregateViewCache()
        for prefix in ("dashboard_stats_", "recent_trades_", "platform_stats_"):
            cache.set(f"{prefix}user-1", 1)
            cache.set(f"{prefix}user-2", 2)

        assert cache.invalidate_user("user-1") == 3
        assert cache.get("platform_stats_user-1") is None
        assert cache.get("platform_stats_user-2") == 2
        assert cache.status()["entries"] == 3


# ============================================================
# NOTIFIER
# ============================================================

class TestEventNotifier:
    """Tests for handler registration and delivery."""

    def test_register_and_unregister(self):
        notifier = EventNotifier()
        notifier.register("dashboard", MagicMock())

        assert notifier.list_handlers() == ["dashboard"]
        assert notifier.unregister("dashboard")
        assert not notifier.unregister("dashboard")

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_handlers(self):
        notifier = EventNotifier()
        sync_handler = MagicMock(return_value=None)
        async_handler = AsyncMock()
        notifier.register("sync", sync_handler)
        notifier.register("async", async_handler)
        event = make_event()

        delivered = await notifier.publish(event)

        assert delivered == 2
        sync_handler.assert_called_once_with(event)
        async_handler.assert_awaited_once_with(event)
        assert notifier.published_count == 1

    @pytest.mark.asyncio
    async def test_publish_without_handlers_still_invalidates(self):
        notifier = EventNotifier()
        notifier.view_cache.set("dashboard_stats_user-1", {"trades": 1})

        delivered = await notifier.publish(make_event())

        assert delivered == 0
        assert notifier.view_cache.get("dashboard_stats_user-1") is None

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self):
        notifier = EventNotifier()
        good = AsyncMock()
        notifier.register("bad", MagicMock(side_effect=RuntimeError("closed")))
        notifier.register("good", good)

        delivered = await notifier.publish(make_event())

        assert delivered == 1
        good.assert_awaited_once()

    def test_event_to_dict(self):
        data = make_event().to_dict()

        assert data["type"] == "PLATFORM_SYNC"
        assert data["timestamp"] == "2026-10-15T00:00:00+00:00"
        assert data["counts"]["fetched"] == 0
