"""
Broker Sync API Endpoints.

============================================================
PURPOSE
============================================================
HTTP trigger for broker synchronization (aiohttp.web).

ROUTES (under /api/trading-platforms):
- POST /sync       Sync the caller's accounts
- GET  /platforms  Platform catalog with credential requirements
- GET  /status     Governor pacing and cache status
- GET  /health     Health check

The engine performs no end-user authentication: an injected
identity resolver maps a request to an opaque user id.

============================================================
"""

import inspect
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from aiohttp import web

from .adapters.registry import AdapterRegistry
from .errors import NoConnectedAccountsError
from .orchestrator import SyncOrchestrator
from .types import Platform, SyncRequest, utc_now


logger = logging.getLogger(__name__)


IdentityResolver = Callable[[web.Request], Union[Optional[str], Awaitable[Optional[str]]]]

USER_HEADER = "X-User-Id"


# ============================================================
# JSON ENCODER
# ============================================================

class SyncEncoder(json.JSONEncoder):
    """JSON encoder for sync results."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=SyncEncoder),
        status=status,
        content_type="application/json",
    )


def header_identity(request: web.Request) -> Optional[str]:
    """Default identity resolver: trusted upstream header."""
    return request.headers.get(USER_HEADER) or None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================
# API HANDLERS
# ============================================================

class SyncAPI:
    """HTTP handlers for broker sync."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        identity: IdentityResolver = header_identity,
    ):
        self._orchestrator = orchestrator
        self._identity = identity

    async def _user_id(self, request: web.Request) -> Optional[str]:
        user_id = self._identity(request)
        if inspect.isawaitable(user_id):
            user_id = await user_id
        return user_id

    # --------------------------------------------------------
    # SYNC
    # --------------------------------------------------------

    async def sync(self, request: web.Request) -> web.Response:
        """
        POST /api/trading-platforms/sync

        Body (all optional): platform, start_date, end_date, totp,
        force_refresh, test_only.

        Status codes:
            200 at least one account succeeded (or test-only run)
            400 malformed body or no connected accounts
            401 no authenticated identity
            500 every account failed
        """
        user_id = await self._user_id(request)
        if not user_id:
            return json_response({"success": False, "error": "Unauthorized"}, status=401)

        try:
            body = await request.json() if request.can_read_body else {}
        except ValueError:
            return json_response({"success": False, "error": "Request body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return json_response({"success": False, "error": "Request body must be an object"}, status=400)

        try:
            sync_request = SyncRequest(
                user_id=user_id,
                platform=Platform.parse(body["platform"]) if body.get("platform") else None,
                start=_parse_datetime(body.get("start_date")),
                end=_parse_datetime(body.get("end_date")),
                one_time_code=body.get("totp") or None,
                force_refresh=bool(body.get("force_refresh", False)),
                test_only=bool(body.get("test_only", False)),
            )
        except ValueError as e:
            return json_response({"success": False, "error": str(e)}, status=400)

        try:
            batch = await self._orchestrator.sync(sync_request)
        except NoConnectedAccountsError as e:
            return json_response({"success": False, "error": e.message}, status=400)
        except Exception as e:
            logger.error(f"Error in sync API: {e}")
            return json_response({
                "success": False,
                "error": "Internal server error during sync",
                "details": str(e),
            }, status=500)

        status = 200 if batch.success or batch.test_only else 500
        return json_response(batch.to_dict(), status=status)

    # --------------------------------------------------------
    # CATALOG / STATUS
    # --------------------------------------------------------

    async def platforms(self, request: web.Request) -> web.Response:
        """
        GET /api/trading-platforms/platforms

        Every known platform and whether an adapter serves it.
        """
        registry = self._orchestrator.registry
        return json_response({
            "platforms": [
                {**info.to_dict(), "supported": registry.is_supported(info.platform)}
                for info in AdapterRegistry.catalog()
            ],
        })

    async def status(self, request: web.Request) -> web.Response:
        """GET /api/trading-platforms/status"""
        governor = self._orchestrator.governor
        return json_response({
            "cache": governor.get_cache_status(),
            "providers": {
                platform.value: governor.get_rate_limit_status(platform.value)
                for platform in self._orchestrator.registry.list_supported()
            },
        })

    async def health(self, request: web.Request) -> web.Response:
        return json_response({
            "status": "ok",
            "timestamp": utc_now().isoformat(),
            "service": "broker_sync",
        })


# ============================================================
# ROUTER FACTORY
# ============================================================

def create_sync_app(
    orchestrator: SyncOrchestrator,
    identity: IdentityResolver = header_identity,
) -> web.Application:
    """
    Create broker sync API application.

    Returns an aiohttp Application with all routes configured.
    """
    api = SyncAPI(orchestrator, identity)

    app = web.Application()
    app.router.add_post("/sync", api.sync)
    app.router.add_get("/platforms", api.platforms)
    app.router.add_get("/status", api.status)
    app.router.add_get("/health", api.health)
    return app


def setup_sync_routes(
    app: web.Application,
    orchestrator: SyncOrchestrator,
    identity: IdentityResolver = header_identity,
    prefix: str = "/api/trading-platforms",
) -> None:
    """Add broker sync routes to an existing application."""
    app.add_subapp(prefix, create_sync_app(orchestrator, identity))
