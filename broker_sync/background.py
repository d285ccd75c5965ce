"""
Broker Sync - Background Sync Service.

============================================================
PURPOSE
============================================================
Periodically syncs every user that has an active account.

PRINCIPLES:
- One user at a time, reusing the orchestrator (and its governor)
- A failing user never stops the loop
- Short lookback window; full history comes from manual syncs

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .errors import NoConnectedAccountsError
from .orchestrator import SyncOrchestrator
from .store import TradeStore
from .types import BatchSyncResult, SyncRequest, utc_now


logger = logging.getLogger(__name__)


@dataclass
class BackgroundSyncStats:
    """Counters of the background loop."""

    runs: int = 0
    users_synced: int = 0
    users_failed: int = 0
    last_run_at: Optional[datetime] = None
    last_duration_seconds: float = 0.0
    last_results: Dict[str, bool] = field(default_factory=dict)
    """user_id -> batch success of the last run."""


class BackgroundSyncService:
    """
    Runs sync for all users on an interval.

    Runs as a background task.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: TradeStore,
        interval_minutes: float = 30.0,
        lookback: timedelta = timedelta(days=1),
    ):
        """
        Initialize service.

        Args:
            orchestrator: Sync orchestrator
            store: Store used to enumerate users
            interval_minutes: Delay between runs
            lookback: Fetch window of scheduled runs
        """
        self._orchestrator = orchestrator
        self._store = store
        self._interval = interval_minutes * 60
        self._lookback = lookback
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = BackgroundSyncStats()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop. The first run happens immediately."""
        if self._running:
            logger.info("Background sync is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Background sync started with {self._interval / 60:g} minute interval")

    async def stop(self) -> None:
        """Stop the loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Background sync stopped")

    async def _run(self) -> None:
        """Main run loop."""
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Background sync run failed: {e}")

            await asyncio.sleep(self._interval)

    async def run_once(self) -> Dict[str, BatchSyncResult]:
        """
        Sync every user with an active account once.

        Returns:
            user_id -> batch result (users without accounts omitted)
        """
        started = utc_now()
        users = await self._store.list_users_with_active_accounts()
        logger.info(f"Scheduled sync starting for {len(users)} users")

        results: Dict[str, BatchSyncResult] = {}
        for user_id in users:
            batch = await self._sync_user(user_id, started)
            if batch is not None:
                results[user_id] = batch

        self._stats.runs += 1
        self._stats.last_run_at = started
        self._stats.last_duration_seconds = (utc_now() - started).total_seconds()
        self._stats.last_results = {user_id: batch.success for user_id, batch in results.items()}

        succeeded = sum(1 for batch in results.values() if batch.success)
        logger.info(
            f"Scheduled sync completed in {self._stats.last_duration_seconds:.1f}s: "
            f"{succeeded}/{len(results)} users succeeded"
        )
        return results

    async def _sync_user(self, user_id: str, now: datetime) -> Optional[BatchSyncResult]:
        request = SyncRequest(user_id=user_id, start=now - self._lookback, end=now)
        try:
            batch = await self._orchestrator.sync(request)
        except NoConnectedAccountsError:
            logger.debug(f"User {user_id} has no active accounts")
            return None
        except Exception as e:
            self._stats.users_failed += 1
            logger.error(f"Background sync failed for user {user_id}: {e}")
            return None

        if batch.success:
            self._stats.users_synced += 1
        else:
            self._stats.users_failed += 1
        return batch

    async def trigger_manual_sync(self, user_id: Optional[str] = None) -> Dict[str, BatchSyncResult]:
        """
        Sync now, outside the schedule.

        Args:
            user_id: Only this user; all users when None
        """
        if user_id is None:
            return await self.run_once()

        batch = await self._sync_user(user_id, utc_now())
        return {user_id: batch} if batch is not None else {}

    def status(self) -> Dict[str, Any]:
        """Loop state and counters."""
        return {
            "is_running": self._running,
            "interval_minutes": self._interval / 60,
            "lookback_hours": self._lookback.total_seconds() / 3600,
            "runs": self._stats.runs,
            "users_synced": self._stats.users_synced,
            "users_failed": self._stats.users_failed,
            "last_run_at": self._stats.last_run_at.isoformat() if self._stats.last_run_at else None,
            "last_duration_seconds": round(self._stats.last_duration_seconds, 3),
            "last_results": dict(self._stats.last_results),
        }
