"""
Broker Sync API Tests.

============================================================
PURPOSE
============================================================
Tests for the HTTP trigger: identity, body parsing, status
code mapping and the catalog/status endpoints.

============================================================
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import test_utils, web

from broker_sync.adapters import AdapterRegistry, MockConfig, MockPlatformAdapter
from broker_sync.api import SyncAPI, SyncEncoder, setup_sync_routes
from broker_sync.errors import AuthenticationError
from broker_sync.orchestrator import SyncOrchestrator
from broker_sync.store import InMemoryTradeStore
from broker_sync.types import BrokerAccount, FillSide, Platform, RawFill, SyncStatus


NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


def make_request(headers=None, body=None, body_error=None):
    request = MagicMock()
    request.headers = headers or {}
    request.can_read_body = body is not None or body_error is not None
    if body_error is not None:
        request.json = AsyncMock(side_effect=body_error)
    else:
        request.json = AsyncMock(return_value=body)
    return request


def payload(response: web.Response):
    return json.loads(response.text)


class Setup:
    """API over an in-memory store and scripted mock accounts."""

    def __init__(self, governor):
        self.store = InMemoryTradeStore()
        self.scripts = {}
        registry = AdapterRegistry()
        registry.register(
            Platform.MOCK,
            creator=lambda creds, gov, **kw: MockPlatformAdapter(
                creds, gov, mock_config=self.scripts.get(creds.access_token), **kw
            ),
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            registry=registry,
            governor=governor,
            clock=lambda: NOW,
        )
        self.api = SyncAPI(self.orchestrator)

    async def add_account(self, token, script):
        self.scripts[token] = script
        await self.store.save_account(BrokerAccount(
            id=f"acc-{token}",
            user_id="user-1",
            platform=Platform.MOCK,
            access_token=token,
        ))


@pytest.fixture
def setup(governor):
    return Setup(governor)


def round_trip():
    return [
        RawFill("INFY", FillSide.BUY, Decimal("100"), Decimal("10"), NOW - timedelta(hours=2), order_id="b1"),
        RawFill("INFY", FillSide.SELL, Decimal("110"), Decimal("10"), NOW - timedelta(hours=1), order_id="s1"),
    ]


# ============================================================
# SYNC ENDPOINT
# ============================================================

class TestSyncEndpoint:
    """Tests for POST /sync."""

    @pytest.mark.asyncio
    async def test_requires_identity(self, setup):
        response = await setup.api.sync(make_request(body={}))

        assert response.status == 401
        assert payload(response)["error"] == "Unauthorized"

    @pytest.mark.asyncio
    async def test_custom_identity_resolver(self, setup):
        await setup.add_account("a", MockConfig(fills=round_trip()))

        async def identity(request):
            return "user-1"

        api = SyncAPI(setup.orchestrator, identity=identity)
        response = await api.sync(make_request())

        assert response.status == 200

    @pytest.mark.asyncio
    async def test_success(self, setup):
        await setup.add_account("a", MockConfig(fills=round_trip()))

        response = await setup.api.sync(make_request(headers={"X-User-Id": "user-1"}))

        body = payload(response)
        assert response.status == 200
        assert body["success"] is True
        assert body["totals"] == {"fetched": 2, "created": 1, "updated": 0, "skipped": 0}
        assert body["results"][0]["platform"] == "MOCK"

    @pytest.mark.asyncio
    async def test_all_failed_returns_500(self, setup):
        await setup.add_account("a", MockConfig(auth_error=AuthenticationError("Invalid API key")))

        response = await setup.api.sync(make_request(headers={"X-User-Id": "user-1"}, body={}))

        body = payload(response)
        assert response.status == 500
        assert body["success"] is False
        assert body["error_code"] == "auth_failed"

    @pytest.mark.asyncio
    async def test_no_accounts_returns_400(self, setup):
        response = await setup.api.sync(make_request(headers={"X-User-Id": "user-1"}, body={}))

        assert response.status == 400
        assert payload(response)["error"] == "No connected trading accounts found."

    @pytest.mark.asyncio
    async def test_unknown_platform_returns_400(self, setup):
        response = await setup.api.sync(make_request(
            headers={"X-User-Id": "user-1"},
            body={"platform": "robinhood"},
        ))

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_malformed_body(self, setup):
        response = await setup.api.sync(make_request(
            headers={"X-User-Id": "user-1"},
            body_error=json.JSONDecodeError("Expecting value", "", 0),
        ))

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_bad_date_returns_400(self, setup):
        response = await setup.api.sync(make_request(
            headers={"X-User-Id": "user-1"},
            body={"start_date": "yesterday"},
        ))

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_body_fields_reach_orchestrator(self, setup):
        setup.orchestrator.sync = AsyncMock(side_effect=RuntimeError("boom"))

        response = await setup.api.sync(make_request(
            headers={"X-User-Id": "user-1"},
            body={
                "platform": "mock",
                "start_date": "2026-01-01T00:00:00Z",
                "totp": "123456",
                "force_refresh": True,
            },
        ))

        assert response.status == 500
        request = setup.orchestrator.sync.await_args.args[0]
        assert request.platform == Platform.MOCK
        assert request.start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert request.one_time_code == "123456"
        assert request.force_refresh is True

    @pytest.mark.asyncio
    async def test_test_only_returns_200_even_if_failing(self, setup):
        await setup.add_account("a", MockConfig(auth_error=AuthenticationError("no")))

        response = await setup.api.sync(make_request(
            headers={"X-User-Id": "user-1"},
            body={"test_only": True},
        ))

        body = payload(response)
        assert response.status == 200
        assert body["test_only"] is True
        assert (await setup.store.get_account("acc-a")).sync_status == SyncStatus.PENDING


# ============================================================
# CATALOG AND STATUS
# ============================================================

class TestInfoEndpoints:
    """Tests for platforms, status and health."""

    @pytest.mark.asyncio
    async def test_platforms(self, setup):
        response = await setup.api.platforms(make_request())

        platforms = {p["value"]: p for p in payload(response)["platforms"]}
        assert platforms["ZERODHA"]["supported"] is True
        assert platforms["GROWW"]["supported"] is False
        assert "MOCK" not in platforms

    @pytest.mark.asyncio
    async def test_status(self, setup):
        await setup.add_account("a", MockConfig(fills=round_trip()))
        await setup.api.sync(make_request(headers={"X-User-Id": "user-1"}))

        body = payload(await setup.api.status(make_request()))

        assert body["providers"]["MOCK"]["total_calls"] == 2
        assert body["cache"]["ttl_seconds"] == 300

    @pytest.mark.asyncio
    async def test_health(self, setup):
        body = payload(await setup.api.health(make_request()))

        assert body["status"] == "ok"
        assert body["service"] == "broker_sync"


# ============================================================
# ROUTING
# ============================================================

class TestRouting:
    """Tests for the mounted sub-application."""

    @pytest.mark.asyncio
    async def test_routes_under_prefix(self, setup):
        await setup.add_account("a", MockConfig(fills=round_trip()))
        app = web.Application()
        setup_sync_routes(app, setup.orchestrator)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            health = await client.get("/api/trading-platforms/health")
            unauthorized = await client.post("/api/trading-platforms/sync", json={})
            synced = await client.post(
                "/api/trading-platforms/sync",
                json={"platform": "MOCK"},
                headers={"X-User-Id": "user-1"},
            )

            assert health.status == 200
            assert unauthorized.status == 401
            assert synced.status == 200
            assert (await synced.json())["totals"]["created"] == 1


class TestEncoder:
    """Tests for SyncEncoder."""

    def test_encodes_domain_values(self):
        text = json.dumps(
            {"at": NOW, "price": Decimal("1.5"), "platform": Platform.DHAN},
            cls=SyncEncoder,
        )

        assert json.loads(text) == {"at": NOW.isoformat(), "price": 1.5, "platform": "DHAN"}
