"""
Sync Orchestrator Tests.

============================================================
PURPOSE
============================================================
End-to-end sync over the in-memory store and scripted mock
adapters.

TEST CATEGORIES:
- Batch outcome: partial failure, dominant error code
- Account state: status always written, TOTP gate, token rotation
- Idempotence: re-running a sync
- Notification: event on every batch, cache invalidation
- Connect flow and test-only mode

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict
from unittest.mock import AsyncMock

import pytest

from broker_sync.adapters import AdapterRegistry, MockConfig, MockPlatformAdapter
from broker_sync.config import BrokerSyncConfig
from broker_sync.errors import (
    AuthenticationError,
    NoConnectedAccountsError,
    RateLimitError,
    TokenExpiredError,
    TotpInvalidError,
    TradebookUnavailableError,
)
from broker_sync.notifier import EventNotifier
from broker_sync.orchestrator import (
    ALL_FAILED_MESSAGE,
    TOTP_INVALID_MESSAGE,
    TOTP_REQUIRED_MESSAGE,
    SyncOrchestrator,
)
from broker_sync.store import InMemoryTradeStore
from broker_sync.types import (
    BrokerAccount,
    FillSide,
    Platform,
    RawFill,
    SyncRequest,
    SyncStatus,
    TokenUpdate,
)


NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
USER = "user-1"


def fill(symbol, side, price, qty, days_ago=1, minutes=0, order_id=None):
    return RawFill(
        symbol=symbol,
        side=FillSide(side),
        price=Decimal(str(price)),
        quantity=Decimal(str(qty)),
        filled_at=NOW - timedelta(days=days_ago) + timedelta(minutes=minutes),
        order_id=order_id or f"{symbol}-{side}-{days_ago}-{minutes}",
    )


ROUND_TRIP = [
    fill("INFY", "BUY", 100, 10, minutes=0, order_id="b1"),
    fill("INFY", "SELL", 110, 10, minutes=30, order_id="s1"),
]


class Harness:
    """Store, notifier and orchestrator wired to scripted mock adapters."""

    def __init__(self, governor, config=None):
        self.store = InMemoryTradeStore()
        self.notifier = EventNotifier()
        self.scripts: Dict[str, MockConfig] = {}
        self.created = 0

        registry = AdapterRegistry(config)
        registry.register(Platform.MOCK, creator=self._create)
        self.orchestrator = SyncOrchestrator(
            self.store,
            registry=registry,
            governor=governor,
            notifier=self.notifier,
            clock=lambda: NOW,
        )

    def _create(self, credentials, governor, **kwargs):
        self.created += 1
        script = self.scripts.get(credentials.access_token, MockConfig())
        return MockPlatformAdapter(credentials, governor, mock_config=script, **kwargs)

    async def add_account(self, token, script=None, platform=Platform.MOCK, minutes=0, **kwargs):
        account = BrokerAccount(
            id=f"acc-{token}",
            user_id=USER,
            platform=platform,
            access_token=token,
            created_at=NOW - timedelta(days=30) + timedelta(minutes=minutes),
            **kwargs,
        )
        if script is not None:
            self.scripts[token] = script
        await self.store.save_account(account)
        return account

    async def account(self, token):
        return await self.store.get_account(f"acc-{token}")


@pytest.fixture
def harness(governor):
    return Harness(governor)


# ============================================================
# BATCH OUTCOME TESTS
# ============================================================

class TestBatchOutcome:
    """Tests for batch success and error reporting."""

    @pytest.mark.asyncio
    async def test_successful_sync(self, harness):
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert (batch.fetched, batch.created, batch.updated, batch.skipped) == (2, 1, 0, 0)
        assert batch.error_code is None
        assert batch.message.startswith("Sync completed successfully! Fetched 2 trades")

        trades = await harness.store.list_trades(USER)
        assert len(trades) == 1
        assert trades[0].profit_loss == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_failure_isolated_per_account(self, harness):
        """One failing account does not abort the others."""
        await harness.add_account("bad", MockConfig(auth_error=AuthenticationError("Invalid API key")), minutes=0)
        await harness.add_account("good", MockConfig(fills=list(ROUND_TRIP)), minutes=1)

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert [r.account_id for r in batch.results] == ["acc-bad", "acc-good"]
        assert [r.success for r in batch.results] == [False, True]
        assert batch.results[0].error_code == "auth_failed"
        assert (await harness.account("bad")).sync_status == SyncStatus.FAILED
        assert (await harness.account("good")).sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_all_failed_reports_dominant_code(self, harness):
        await harness.add_account("a", MockConfig(auth_error=TokenExpiredError("expired")), minutes=0)
        await harness.add_account("b", MockConfig(fetch_errors=[TradebookUnavailableError("404")]), minutes=1)
        await harness.add_account("c", MockConfig(auth_error=TotpInvalidError("Invalid totp")), minutes=2)

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert not batch.success
        assert batch.error_code == "totp_invalid"
        assert batch.message == ALL_FAILED_MESSAGE
        assert [r.error_code for r in batch.results] == ["token_expired", "tradebook_unavailable", "totp_invalid"]

    @pytest.mark.asyncio
    async def test_token_expired_beats_other_codes(self, harness):
        await harness.add_account("a", MockConfig(fetch_errors=[RateLimitError("slow")] * 3), minutes=0)
        await harness.add_account("b", MockConfig(auth_error=TokenExpiredError("expired")), minutes=1)

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.error_code == "token_expired"
        assert batch.results[0].error_code == "rate_limited"

    @pytest.mark.asyncio
    async def test_no_accounts(self, harness):
        with pytest.raises(NoConnectedAccountsError):
            await harness.orchestrator.sync(SyncRequest(user_id=USER))

    @pytest.mark.asyncio
    async def test_inactive_accounts_ignored(self, harness):
        await harness.add_account("a", is_active=False)

        with pytest.raises(NoConnectedAccountsError):
            await harness.orchestrator.sync(SyncRequest(user_id=USER))

    @pytest.mark.asyncio
    async def test_platform_filter(self, harness):
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        with pytest.raises(NoConnectedAccountsError):
            await harness.orchestrator.sync(SyncRequest(user_id=USER, platform=Platform.ZERODHA))

    @pytest.mark.asyncio
    async def test_unsupported_platform_account(self, harness):
        await harness.add_account("g", platform=Platform.GROWW, api_key="k")

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert not batch.success
        assert batch.results[0].error_code == "unknown"
        assert "not implemented" in batch.results[0].message

    @pytest.mark.asyncio
    async def test_invalid_credentials_account(self, harness):
        await harness.add_account("x", platform=Platform.ANGEL_ONE, api_key="k")

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.results[0].error_code == "auth_failed"
        assert batch.results[0].message.startswith("Invalid credentials")

    @pytest.mark.asyncio
    async def test_unexpected_error_classified_unknown(self, governor):
        def explode(credentials, governor, **kwargs):
            raise RuntimeError("adapter exploded")

        harness = Harness(governor)
        harness.orchestrator.registry.register(Platform.MOCK, creator=explode)
        await harness.add_account("a")

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.results[0].error_code == "unknown"
        assert (await harness.account("a")).sync_status == SyncStatus.FAILED


# ============================================================
# ACCOUNT STATE TESTS
# ============================================================

class TestAccountState:
    """Tests for per-account status, TOTP gating and tokens."""

    @pytest.mark.asyncio
    async def test_status_written_on_every_path(self, harness):
        await harness.add_account("ok", MockConfig(), minutes=0)
        await harness.add_account("auth", MockConfig(auth_error=AuthenticationError("no")), minutes=1)
        await harness.add_account("fetch", MockConfig(fetch_errors=[TradebookUnavailableError("404")]), minutes=2)

        await harness.orchestrator.sync(SyncRequest(user_id=USER))

        for token, status in (("ok", SyncStatus.SUCCESS), ("auth", SyncStatus.FAILED), ("fetch", SyncStatus.FAILED)):
            account = await harness.account(token)
            assert account.sync_status == status
            assert account.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_totp_required_account_skipped(self, harness):
        """Accounts awaiting a one-time code make no provider calls."""
        await harness.add_account("t", MockConfig(fills=list(ROUND_TRIP)), sync_status=SyncStatus.TOTP_REQUIRED)

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert harness.created == 0
        assert batch.error_code == "totp_invalid"
        assert batch.results[0].message == TOTP_REQUIRED_MESSAGE
        account = await harness.account("t")
        assert account.sync_status == SyncStatus.TOTP_REQUIRED
        assert account.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_fresh_totp_unblocks_account(self, harness):
        await harness.add_account(
            "t",
            MockConfig(fills=list(ROUND_TRIP), expected_totp="654321"),
            sync_status=SyncStatus.TOTP_REQUIRED,
        )

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER, one_time_code="654321"))

        assert batch.success
        assert (await harness.account("t")).sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_wrong_totp_marks_totp_required(self, harness):
        await harness.add_account("t", MockConfig(expected_totp="654321"))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER, one_time_code="000000"))

        assert batch.results[0].error_code == "totp_invalid"
        assert batch.results[0].message == TOTP_INVALID_MESSAGE
        assert (await harness.account("t")).sync_status == SyncStatus.TOTP_REQUIRED

    @pytest.mark.asyncio
    async def test_rotated_tokens_persisted(self, harness):
        expiry = NOW + timedelta(hours=8)
        await harness.add_account(
            "old",
            MockConfig(fills=list(ROUND_TRIP), issued_token=TokenUpdate("new", "refresh-2", expiry)),
            refresh_token="refresh-1",
        )

        await harness.orchestrator.sync(SyncRequest(user_id=USER))

        account = await harness.account("old")
        assert account.access_token == "new"
        assert account.refresh_token == "refresh-2"
        assert account.token_expiry == expiry

    @pytest.mark.asyncio
    async def test_tokens_persisted_even_when_fetch_fails(self, harness):
        await harness.add_account(
            "old",
            MockConfig(issued_token=TokenUpdate("new"), fetch_errors=[TradebookUnavailableError("404")]),
        )

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert not batch.success
        assert (await harness.account("old")).access_token == "new"

    @pytest.mark.asyncio
    async def test_fetch_failure_message(self, harness):
        await harness.add_account("a", MockConfig(fetch_errors=[TradebookUnavailableError("404")]))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert "tradebook not accessible" in batch.results[0].message

    @pytest.mark.asyncio
    async def test_untyped_fetch_error_classified(self, harness):
        """Provider exceptions outside the taxonomy are classified by message."""
        error = RuntimeError("TokenException: Incorrect `api_key` or `access_token`")
        await harness.add_account("a", MockConfig(fetch_errors=[error]))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert not batch.success
        assert batch.results[0].error_code == "token_expired"
        assert batch.error_code == "token_expired"
        assert (await harness.account("a")).sync_status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_status_write_failure_does_not_abort_batch(self, harness):
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)), minutes=0)
        await harness.add_account("b", MockConfig(fills=list(ROUND_TRIP)), minutes=1)
        update_sync_status = harness.store.update_sync_status

        async def flaky_update(account_id, status, last_sync_at):
            if account_id == "acc-a":
                raise RuntimeError("database is locked")
            await update_sync_status(account_id, status, last_sync_at)

        harness.store.update_sync_status = flaky_update

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert [r.success for r in batch.results] == [True, True]
        assert (await harness.account("a")).sync_status == SyncStatus.PENDING
        assert (await harness.account("b")).sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_default_window_is_ninety_days(self, harness):
        fills = [
            fill("INFY", "BUY", 100, 1, days_ago=10, order_id="recent"),
            fill("INFY", "BUY", 100, 1, days_ago=100, order_id="ancient"),
        ]
        await harness.add_account("a", MockConfig(fills=fills, filter_by_window=True))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.fetched == 1
        trades = await harness.store.list_trades(USER)
        assert trades[0].platform_trade_id == "mock_recent_open"

    @pytest.mark.asyncio
    async def test_explicit_window(self, harness):
        fills = [fill("INFY", "BUY", 100, 1, days_ago=100, order_id="ancient")]
        await harness.add_account("a", MockConfig(fills=fills, filter_by_window=True))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER, start=NOW - timedelta(days=365)))

        assert batch.fetched == 1

    @pytest.mark.asyncio
    async def test_per_account_lock(self, governor):
        config = BrokerSyncConfig()
        config.sync.per_account_lock = True
        harness = Harness(governor, config)
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert "acc-a" in harness.orchestrator._account_locks


# ============================================================
# IDEMPOTENCE TESTS
# ============================================================

class TestIdempotence:
    """Tests for repeated syncs."""

    @pytest.mark.asyncio
    async def test_rerun_updates_instead_of_creating(self, harness):
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        first = await harness.orchestrator.sync(SyncRequest(user_id=USER))
        second = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert (first.created, first.updated) == (1, 0)
        assert (second.created, second.updated) == (0, 1)
        assert len(await harness.store.list_trades(USER)) == 1

    @pytest.mark.asyncio
    async def test_skipped_fills_counted(self, harness):
        undated = RawFill(
            symbol="TCS",
            side=FillSide.BUY,
            price=Decimal("10"),
            quantity=Decimal("1"),
            order_id="nodate",
        )
        await harness.add_account("a", MockConfig(fills=[undated]))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert (batch.created, batch.skipped) == (0, 1)


# ============================================================
# NOTIFICATION TESTS
# ============================================================

class TestNotification:
    """Tests for batch events."""

    @pytest.mark.asyncio
    async def test_event_published_with_zero_trades(self, harness):
        handler = AsyncMock()
        harness.notifier.register("dashboard", handler)
        await harness.add_account("a", MockConfig())

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success
        assert batch.message == "Sync completed successfully. No trades found in the last 90 days."
        handler.assert_awaited_once()
        event = handler.await_args.args[0]
        assert event.type == "PLATFORM_SYNC"
        assert event.user_id == USER
        assert event.counts == {"fetched": 0, "created": 0, "updated": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_event_published_when_all_failed(self, harness):
        handler = AsyncMock()
        harness.notifier.register("dashboard", handler)
        await harness.add_account("a", MockConfig(auth_error=AuthenticationError("no")))

        await harness.orchestrator.sync(SyncRequest(user_id=USER))

        handler.assert_awaited_once()
        assert handler.await_args.args[0].data["success"] is False

    @pytest.mark.asyncio
    async def test_cached_views_invalidated(self, harness):
        cache = harness.notifier.view_cache
        cache.set(f"dashboard_stats_{USER}", {"total": 1})
        cache.set("dashboard_stats_someone-else", {"total": 2})
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert cache.get(f"dashboard_stats_{USER}") is None
        assert cache.get("dashboard_stats_someone-else") == {"total": 2}

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_sync(self, harness):
        harness.notifier.register("broken", AsyncMock(side_effect=RuntimeError("socket closed")))
        await harness.add_account("a", MockConfig(fills=list(ROUND_TRIP)))

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER))

        assert batch.success


# ============================================================
# CONNECT + TEST-ONLY TESTS
# ============================================================

class TestConnectAccount:
    """Tests for connecting a new account."""

    @pytest.mark.asyncio
    async def test_connect_stores_issued_tokens(self, harness):
        harness.scripts[None] = MockConfig(issued_token=TokenUpdate("issued"))

        account, outcome = await harness.orchestrator.connect_account(
            USER, Platform.MOCK, extras={"request_token": "single-use"},
        )

        assert outcome.success
        stored = await harness.store.get_account(account.id)
        assert stored.access_token == "issued"
        assert stored.sync_status == SyncStatus.CONNECTED
        assert "request_token" not in stored.extras

    @pytest.mark.asyncio
    async def test_connect_wrong_totp_saves_totp_required(self, harness):
        harness.scripts["tok"] = MockConfig(expected_totp="123456")

        account, outcome = await harness.orchestrator.connect_account(
            USER, Platform.MOCK, access_token="tok", extras={"totp": "000000"},
        )

        assert not outcome.success
        assert outcome.details["error_code"] == "totp_invalid"
        stored = await harness.store.get_account(account.id)
        assert stored.sync_status == SyncStatus.TOTP_REQUIRED
        assert "totp" not in stored.extras

    @pytest.mark.asyncio
    async def test_connect_rejected(self, harness):
        harness.scripts["tok"] = MockConfig(auth_error=AuthenticationError("Invalid API key"))

        account, outcome = await harness.orchestrator.connect_account(USER, Platform.MOCK, access_token="tok")

        assert account is None
        assert not outcome.success
        assert await harness.store.list_accounts(USER) == []


class TestTestOnly:
    """Tests for connectivity checks."""

    @pytest.mark.asyncio
    async def test_check_leaves_state_untouched(self, harness):
        handler = AsyncMock()
        harness.notifier.register("dashboard", handler)
        await harness.add_account("ok", MockConfig(fills=list(ROUND_TRIP)), minutes=0)
        await harness.add_account("bad", MockConfig(auth_error=AuthenticationError("no")), minutes=1)

        batch = await harness.orchestrator.sync(SyncRequest(user_id=USER, test_only=True))

        assert batch.test_only
        assert batch.success
        assert [r.success for r in batch.results] == [True, False]
        assert batch.results[1].error_code == "auth_failed"
        assert await harness.store.list_trades(USER) == []
        assert (await harness.account("ok")).last_sync_at is None
        handler.assert_not_awaited()
