"""
Broker Sync - Sync Orchestrator.

============================================================
PURPOSE
============================================================
Runs one sync invocation across a user's broker accounts.

FLOW (per account, strictly sequential):
1. Skip accounts waiting for a fresh one-time code
2. Build the provider credential bundle and adapter
3. authenticate() -> classify failure, continue with next account
4. Persist rotated tokens
5. fetch_trades(start, end) -> classify failure
6. Pair fills -> resolve candidates against the store
7. ALWAYS write sync_status + last_sync_at

BATCH:
- success iff at least one account succeeded
- otherwise a single dominant error code
  (totp_invalid > token_expired > auth_failed > other)
- one PLATFORM_SYNC event per completed batch

============================================================
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from .adapters.base import PlatformAdapter
from .adapters.registry import PLATFORM_CATALOG, AdapterRegistry
from .config import BrokerSyncConfig
from .credentials import credentials_from_account
from .errors import (
    BrokerError,
    ErrorRecord,
    InvalidCredentialsError,
    NoConnectedAccountsError,
    SyncErrorCode,
    UnsupportedPlatformError,
    classify_exception,
    dominant_error_code,
)
from .governor import RequestGovernor
from .notifier import EventNotifier, SyncEvent
from .pairing import pair_fills
from .resolver import TradeResolver
from .store import TradeStore
from .types import (
    AccountSyncResult,
    BatchSyncResult,
    BrokerAccount,
    ConnectionTestResult,
    Platform,
    SyncRequest,
    SyncStatus,
    utc_now,
)


logger = logging.getLogger(__name__)


# ============================================================
# USER-FACING MESSAGES
# ============================================================

TOTP_REQUIRED_MESSAGE = "TOTP (2FA) authentication required. Please enter a fresh TOTP code to sync this account."
TOTP_INVALID_MESSAGE = "Your TOTP code is invalid or expired. Please enter a new TOTP from your authenticator app."
AUTH_FAILED_MESSAGE = "Authentication failed. Please check your credentials."
ALL_FAILED_MESSAGE = "All platform syncs failed."
ZERODHA_SAME_DAY_MESSAGE = (
    "Sync completed successfully. Note: Zerodha's Kite Connect API only provides today's trades, "
    "not historical data from previous days."
)


def platform_label(platform: Platform) -> str:
    info = PLATFORM_CATALOG.get(platform)
    return info.label if info else platform.value


def auth_failure_message(code: SyncErrorCode, platform: Platform, detail: Optional[str] = None) -> str:
    """Actionable message for a failed authentication."""
    label = platform_label(platform)
    if code == SyncErrorCode.TOTP_INVALID:
        return TOTP_INVALID_MESSAGE
    if code == SyncErrorCode.TOKEN_EXPIRED:
        return f"Your {label} access token has expired. Please reconnect your {label} account to continue syncing."
    if code == SyncErrorCode.REACTIVATION_REQUIRED:
        return (
            f"Your {label} account needs reactivation. "
            f"Please log into your {label} account and reactivate it before syncing."
        )
    if code == SyncErrorCode.AUTH_FAILED:
        return AUTH_FAILED_MESSAGE
    return f"Authentication failed: {detail}" if detail else AUTH_FAILED_MESSAGE


def fetch_failure_message(code: SyncErrorCode, platform: Platform, detail: str) -> str:
    """Actionable message for a failed trade fetch."""
    label = platform_label(platform)
    if code == SyncErrorCode.TRADEBOOK_UNAVAILABLE:
        return (
            f"{label} tradebook not accessible. This could be due to account reactivation "
            f"requirements or API permissions. Please check your {label} account status."
        )
    if code == SyncErrorCode.AUTH_FAILED:
        return "Authentication failed. Your access token may have expired. Please reconnect your account."
    if code == SyncErrorCode.RATE_LIMITED:
        return f"{label} rate limit reached. Please try again in a few minutes."
    if code in (SyncErrorCode.TOTP_INVALID, SyncErrorCode.TOKEN_EXPIRED, SyncErrorCode.REACTIVATION_REQUIRED):
        return auth_failure_message(code, platform, detail)
    return f"Failed to fetch trades: {detail}"


# ============================================================
# SYNC ORCHESTRATOR
# ============================================================

class SyncOrchestrator:
    """
    Coordinates adapters, pairing, resolution and notification.

    The governor is shared by every adapter this orchestrator
    creates, so all invocations against one provider draw on the
    same pacing budget.
    """

    def __init__(
        self,
        store: TradeStore,
        registry: Optional[AdapterRegistry] = None,
        governor: Optional[RequestGovernor] = None,
        notifier: Optional[EventNotifier] = None,
        config: Optional[BrokerSyncConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Trade and account persistence
            registry: Adapter registry
            governor: Shared request governor
            notifier: Dashboard notification bus
            config: Broker sync configuration
            session: Optional aiohttp session shared by adapters
            clock: Wall clock, injectable for tests
        """
        self._config = config or (registry.config if registry else BrokerSyncConfig())
        self._store = store
        self._registry = registry or AdapterRegistry(self._config)
        self._governor = governor or RequestGovernor(
            rate_limits=self._config.rate_limit_for,
            cache_config=self._config.cache,
            retry_config=self._config.retry,
        )
        self._notifier = notifier or EventNotifier()
        self._resolver = TradeResolver(store, price_precision=self._config.sync.price_precision)
        self._session = session
        self._clock = clock

        self._account_locks: Dict[str, asyncio.Lock] = {}

    @property
    def governor(self) -> RequestGovernor:
        return self._governor

    @property
    def notifier(self) -> EventNotifier:
        return self._notifier

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def sync(self, request: SyncRequest) -> BatchSyncResult:
        """
        Sync every active account of a user.

        Args:
            request: Sync parameters

        Returns:
            BatchSyncResult

        Raises:
            NoConnectedAccountsError: User has no matching active account
        """
        accounts = await self._store.list_accounts(request.user_id, request.platform)
        if not accounts:
            raise NoConnectedAccountsError("No connected trading accounts found.")

        end = request.end or self._clock()
        start = request.start or end - timedelta(days=self._config.sync.default_window_days)

        if request.test_only:
            return await self._test_accounts(accounts, request)

        logger.info(
            f"Sync started for user {request.user_id}: {len(accounts)} accounts, "
            f"window {start.isoformat()} -> {end.isoformat()}"
        )

        results: List[AccountSyncResult] = []
        for account in accounts:
            results.append(await self._sync_with_lock(account, request, start, end))

        batch = self._summarize(results)
        await self._publish(request.user_id, batch)

        logger.info(
            f"Sync finished for user {request.user_id}: success={batch.success} "
            f"fetched={batch.fetched} created={batch.created} updated={batch.updated} "
            f"skipped={batch.skipped} error_code={batch.error_code}"
        )
        return batch

    async def connect_account(
        self,
        user_id: str,
        platform: Platform,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
        extras: Optional[Dict[str, str]] = None,
    ) -> Tuple[Optional[BrokerAccount], ConnectionTestResult]:
        """
        Connect a new broker account.

        Runs the provider's login or token exchange (Zerodha request
        token, Upstox authorization code, Angel One TOTP login) and
        stores the account with the issued tokens. One-time codes are
        never stored.

        Returns:
            (stored account or None, connection outcome)

        Raises:
            InvalidCredentialsError: Required fields are missing
            UnsupportedPlatformError: No adapter serves the platform
        """
        account = BrokerAccount(
            id=self._store.new_id(),
            user_id=user_id,
            platform=platform,
            api_key=api_key,
            api_secret=api_secret,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
            extras=dict(extras or {}),
        )
        one_time_code = account.extras.pop("totp", None)

        credentials = credentials_from_account(account, one_time_code)
        adapter = self._create_adapter(account, credentials)
        async with adapter:
            if await adapter.authenticate():
                self._apply_tokens(account, adapter)
                # Exchange codes are single use
                for key in ("request_token", "authorization_code", "code"):
                    account.extras.pop(key, None)
                account.sync_status = SyncStatus.CONNECTED
                stored = await self._store.save_account(account)
                logger.info(f"Connected {platform.value} account {stored.id} for user {user_id}")
                return stored, ConnectionTestResult(
                    success=True,
                    message=f"{platform_label(platform)} account connected",
                    details={"account_id": stored.id},
                )

            code = adapter.failure_reason or SyncErrorCode.AUTH_FAILED
            outcome = ConnectionTestResult(
                success=False,
                message=auth_failure_message(code, platform, adapter.last_error),
                details={"error_code": code.value},
            )
            if code != SyncErrorCode.TOTP_INVALID:
                return None, outcome

            account.sync_status = SyncStatus.TOTP_REQUIRED
            stored = await self._store.save_account(account)
            outcome.details["account_id"] = stored.id
            return stored, outcome

    # --------------------------------------------------------
    # PER-ACCOUNT SYNC
    # --------------------------------------------------------

    async def _sync_with_lock(
        self,
        account: BrokerAccount,
        request: SyncRequest,
        start: datetime,
        end: datetime,
    ) -> AccountSyncResult:
        if not self._config.sync.per_account_lock:
            return await self.sync_account(account, request, start, end)

        lock = self._account_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            # Re-read so token rotation by a concurrent sync is not lost
            fresh = await self._store.get_account(account.id) or account
            return await self.sync_account(fresh, request, start, end)

    async def sync_account(
        self,
        account: BrokerAccount,
        request: SyncRequest,
        start: datetime,
        end: datetime,
    ) -> AccountSyncResult:
        """
        Sync one account. Never raises for provider failures.

        sync_status and last_sync_at are written on every exit path.
        """
        started = time.monotonic()
        result = AccountSyncResult(platform=account.platform, account_id=account.id)
        status = SyncStatus.FAILED

        try:
            status = await self._run_account(account, request, start, end, result)
        except InvalidCredentialsError as e:
            result.error_code = SyncErrorCode.AUTH_FAILED.value
            result.message = f"Invalid credentials: {e.message}"
        except UnsupportedPlatformError as e:
            result.error_code = SyncErrorCode.UNKNOWN.value
            result.message = e.message
        except BrokerError as e:
            result.error_code = e.code.value
            result.message = fetch_failure_message(e.code, account.platform, e.message)
        except Exception as e:
            record = ErrorRecord.from_exception(e, account.platform.value, account.id)
            logger.exception(f"Unexpected sync failure: {record.to_dict()}")
            result.error_code = SyncErrorCode.UNKNOWN.value
            result.message = f"Sync failed: {e}"
        finally:
            result.duration_seconds = time.monotonic() - started
            try:
                await self._store.update_sync_status(account.id, status, self._clock())
            except Exception as e:
                logger.error(f"Failed to record sync status {status.value} for account {account.id}: {e}")

        if result.success:
            logger.info(
                f"{account.platform.value} account {account.id}: fetched={result.fetched} "
                f"created={result.created} updated={result.updated} skipped={result.skipped}"
            )
        else:
            logger.warning(f"{account.platform.value} account {account.id} failed: {result.error_code}: {result.message}")
        return result

    async def _run_account(
        self,
        account: BrokerAccount,
        request: SyncRequest,
        start: datetime,
        end: datetime,
        result: AccountSyncResult,
    ) -> SyncStatus:
        """Fill in result and return the status to persist."""
        if account.sync_status == SyncStatus.TOTP_REQUIRED and not request.one_time_code:
            result.error_code = SyncErrorCode.TOTP_INVALID.value
            result.message = TOTP_REQUIRED_MESSAGE
            return SyncStatus.TOTP_REQUIRED

        credentials = credentials_from_account(account, request.one_time_code)
        adapter = self._create_adapter(account, credentials, request.force_refresh)

        async with adapter:
            if not await adapter.authenticate():
                code = adapter.failure_reason or SyncErrorCode.AUTH_FAILED
                result.error_code = code.value
                result.message = auth_failure_message(code, account.platform, adapter.last_error)
                if code == SyncErrorCode.TOTP_INVALID:
                    return SyncStatus.TOTP_REQUIRED
                return SyncStatus.FAILED

            await self._persist_tokens(account, adapter)

            try:
                fills = await adapter.fetch_trades(start, end)
            except Exception as e:
                record = ErrorRecord.from_exception(e, account.platform.value, account.id)
                logger.warning(f"Trade fetch failed: {record.to_dict()}")
                await self._persist_tokens(account, adapter)
                code = classify_exception(e, account.platform.value)
                result.error_code = code.value
                result.message = fetch_failure_message(code, account.platform, record.message)
                return SyncStatus.FAILED

            # A refresh during fetch may have rotated tokens again
            await self._persist_tokens(account, adapter)

        candidates = pair_fills(fills, account.platform)
        counts = await self._resolver.resolve_all(account.user_id, candidates)

        result.success = True
        result.fetched = len(fills)
        result.created = counts.created
        result.updated = counts.updated
        result.skipped = counts.skipped
        result.message = (
            f"Fetched {result.fetched} fills, created {result.created}, "
            f"updated {result.updated}, skipped {result.skipped}"
        )
        return SyncStatus.SUCCESS

    def _create_adapter(
        self,
        account: BrokerAccount,
        credentials: Any,
        force_refresh: bool = False,
    ) -> PlatformAdapter:
        return self._registry.create(
            account.platform,
            credentials,
            self._governor,
            session=self._session,
            force_refresh=force_refresh,
        )

    @staticmethod
    def _apply_tokens(account: BrokerAccount, adapter: PlatformAdapter) -> bool:
        """Copy rotated tokens onto the account. Returns True if anything changed."""
        update = adapter.token_update
        if update is None or update.access_token == account.access_token:
            return False
        account.access_token = update.access_token
        account.refresh_token = update.refresh_token or account.refresh_token
        account.token_expiry = update.token_expiry
        return True

    async def _persist_tokens(self, account: BrokerAccount, adapter: PlatformAdapter) -> None:
        if self._apply_tokens(account, adapter):
            await self._store.update_account_tokens(account.id, adapter.token_update)
            logger.info(f"Updated tokens for {account.platform.value} account {account.id}")

    # --------------------------------------------------------
    # TEST-ONLY MODE
    # --------------------------------------------------------

    async def _test_accounts(
        self,
        accounts: List[BrokerAccount],
        request: SyncRequest,
    ) -> BatchSyncResult:
        """Check connectivity of each account without touching trades."""
        results = []
        for account in accounts:
            started = time.monotonic()
            result = AccountSyncResult(platform=account.platform, account_id=account.id)
            try:
                credentials = credentials_from_account(account, request.one_time_code)
                adapter = self._create_adapter(account, credentials, request.force_refresh)
                async with adapter:
                    outcome = await adapter.test_connection()
                    await self._persist_tokens(account, adapter)
                result.success = outcome.success
                result.message = outcome.message
                if not outcome.success:
                    code = adapter.failure_reason or SyncErrorCode.FETCH_FAILED
                    result.error_code = code.value
            except BrokerError as e:
                result.error_code = e.code.value
                result.message = e.message
            result.duration_seconds = time.monotonic() - started
            results.append(result)

        return BatchSyncResult(
            success=any(r.success for r in results),
            results=results,
            message="Connection tests completed",
            test_only=True,
        )

    # --------------------------------------------------------
    # BATCH SUMMARY
    # --------------------------------------------------------

    def _summarize(self, results: List[AccountSyncResult]) -> BatchSyncResult:
        batch = BatchSyncResult(
            success=any(r.success for r in results),
            results=results,
            fetched=sum(r.fetched for r in results),
            created=sum(r.created for r in results),
            updated=sum(r.updated for r in results),
            skipped=sum(r.skipped for r in results),
        )

        if not batch.success:
            batch.error_code = dominant_error_code(r.error_code for r in results)
            batch.message = ALL_FAILED_MESSAGE
        elif batch.fetched == 0:
            if any(r.platform == Platform.ZERODHA for r in results):
                batch.message = ZERODHA_SAME_DAY_MESSAGE
            else:
                batch.message = (
                    f"Sync completed successfully. No trades found in the last "
                    f"{self._config.sync.default_window_days} days."
                )
        else:
            batch.message = (
                f"Sync completed successfully! Fetched {batch.fetched} trades, created {batch.created} "
                f"new trades, updated {batch.updated} existing trades, and skipped {batch.skipped} trades."
            )
        return batch

    async def _publish(self, user_id: str, batch: BatchSyncResult) -> None:
        event = SyncEvent(
            user_id=user_id,
            counts={
                "fetched": batch.fetched,
                "created": batch.created,
                "updated": batch.updated,
                "skipped": batch.skipped,
            },
            timestamp=self._clock(),
            data={"success": batch.success, "results": [r.to_dict() for r in batch.results]},
        )
        await self._notifier.publish(event)
