"""
Platform Adapter - Zerodha (Kite Connect).

============================================================
PURPOSE
============================================================
Adapter for Zerodha's Kite Connect v3 API.

AUTH FLOW:
- A stored access token is used directly
- Otherwise a request token is exchanged for a session
  (checksum = sha256(api_key + request_token + api_secret))
- Kite issues no refresh tokens; an expired token needs a reconnect

LIMITATIONS:
- /trades returns only the current trading day

============================================================
"""

import hashlib
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from ..credentials import ZerodhaCredentials
from ..errors import BrokerError, map_zerodha_error
from ..types import ConnectionTestResult, Platform, RawFill
from .base import (
    IST,
    FetchStrategy,
    PlatformAdapter,
    in_window,
    parse_side,
    parse_timestamp,
    to_decimal,
)


logger = logging.getLogger(__name__)


SESSION_PATH = "/session/token"
PROFILE_PATH = "/user/profile"
TRADES_PATH = "/trades"
ORDERS_PATH = "/orders"
HOLDINGS_PATH = "/portfolio/holdings"
POSITIONS_PATH = "/portfolio/positions"

SAME_DAY_NOTE = "Kite Connect only returns the current day's trades"


def generate_checksum(api_key: str, request_token: str, api_secret: str) -> str:
    """Checksum required by the session token exchange."""
    return hashlib.sha256(f"{api_key}{request_token}{api_secret}".encode()).hexdigest()


def next_session_expiry(now: datetime) -> datetime:
    """Kite sessions expire at 06:00 IST the following morning."""
    local = now.astimezone(IST)
    expiry = local.replace(hour=6, minute=0, second=0, microsecond=0)
    if expiry <= local:
        expiry += timedelta(days=1)
    return expiry


# ============================================================
# ZERODHA ADAPTER
# ============================================================

class ZerodhaAdapter(PlatformAdapter):
    """
    Zerodha Kite Connect adapter.
    """

    platform = Platform.ZERODHA
    credential_type = ZerodhaCredentials

    # --------------------------------------------------------
    # HTTP
    # --------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Kite-Version": "3"}
        if self._credentials.access_token:
            headers["Authorization"] = f"token {self._credentials.api_key}:{self._credentials.access_token}"
        return headers

    def _raise_for_response(self, status: int, payload: Any) -> None:
        if isinstance(payload, dict) and (status >= 400 or payload.get("status") == "error"):
            raise map_zerodha_error(payload.get("error_type"), self._error_message(payload), status)
        if status >= 400:
            raise map_zerodha_error(None, "", status)

    def _is_success_payload(self, payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("status") == "success"

    # --------------------------------------------------------
    # AUTHENTICATION
    # --------------------------------------------------------

    async def _authenticate(self) -> None:
        if self._credentials.access_token:
            logger.debug("Zerodha: using stored access token")
            return

        credentials = self._credentials
        response = await self._request(
            "POST",
            SESSION_PATH,
            data={
                "api_key": credentials.api_key,
                "request_token": credentials.request_token,
                "checksum": generate_checksum(credentials.api_key, credentials.request_token, credentials.api_secret),
            },
            cacheable=False,
        )
        data = response.get("data") or {}
        token = data.get("access_token")
        if not token:
            raise map_zerodha_error("TokenException", "Session exchange returned no access token")

        self._record_tokens(
            access_token=token,
            token_expiry=next_session_expiry(datetime.now(IST)),
        )
        logger.info(f"Zerodha: session generated for {data.get('user_id', 'unknown user')}")

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    def fetch_strategies(self) -> List[FetchStrategy]:
        return [
            FetchStrategy("trades_today", self._trades),
            FetchStrategy("completed_orders", self._completed_orders),
        ]

    async def _trades(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", TRADES_PATH)
        fills = []
        for row in response.get("data") or []:
            side = parse_side(row.get("transaction_type"))
            if side is None:
                logger.warning(f"Zerodha: skipping trade {row.get('trade_id')} with side {row.get('transaction_type')!r}")
                continue
            fill = RawFill(
                symbol=row.get("tradingsymbol", ""),
                side=side,
                price=to_decimal(row.get("average_price"), Decimal("0")),
                quantity=to_decimal(row.get("quantity"), Decimal("0")),
                filled_at=parse_timestamp(
                    row.get("fill_timestamp") or row.get("trade_timestamp") or row.get("exchange_timestamp")
                ),
                order_id=str(row.get("order_id", "")),
                fill_id=str(row.get("trade_id", "")),
                exchange=row.get("exchange"),
                product_type=row.get("product"),
                raw=row,
            )
            if in_window(fill.filled_at, start, end):
                fills.append(fill)

        if not fills:
            logger.info(f"Zerodha: no trades in window. {SAME_DAY_NOTE}")
        return fills

    async def _completed_orders(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", ORDERS_PATH)
        fills = []
        for row in response.get("data") or []:
            if str(row.get("status", "")).upper() != "COMPLETE":
                continue
            side = parse_side(row.get("transaction_type"))
            if side is None:
                logger.warning(f"Zerodha: skipping order {row.get('order_id')} with side {row.get('transaction_type')!r}")
                continue
            fill = RawFill(
                symbol=row.get("tradingsymbol", ""),
                side=side,
                price=to_decimal(row.get("average_price"), Decimal("0")),
                quantity=to_decimal(row.get("filled_quantity") or row.get("quantity"), Decimal("0")),
                filled_at=parse_timestamp(row.get("exchange_timestamp") or row.get("order_timestamp")),
                order_id=str(row.get("order_id", "")),
                exchange=row.get("exchange"),
                product_type=row.get("product"),
                raw=row,
            )
            if in_window(fill.filled_at, start, end):
                fills.append(fill)
        return fills

    # --------------------------------------------------------
    # DIAGNOSTICS
    # --------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        if not await self.authenticate():
            return await super().test_connection()

        details: Dict[str, Any] = {"authenticated": True, "note": SAME_DAY_NOTE}
        checks = (
            ("profile", PROFILE_PATH),
            ("orders", ORDERS_PATH),
            ("trades", TRADES_PATH),
            ("holdings", HOLDINGS_PATH),
            ("positions", POSITIONS_PATH),
        )

        for name, path in checks:
            try:
                response = await self._request("GET", path)
            except BrokerError as e:
                details[name] = {"ok": False, "error": e.message, "code": e.code.value}
                return ConnectionTestResult(
                    success=False,
                    message=f"Zerodha {name} check failed: {e.message}",
                    details=details,
                )

            data = response.get("data")
            if isinstance(data, list):
                details[name] = {"ok": True, "count": len(data)}
            elif name == "positions" and isinstance(data, dict):
                details[name] = {"ok": True, "count": len(data.get("net") or [])}
            else:
                details[name] = {"ok": True}

        return ConnectionTestResult(success=True, message="Zerodha connection successful", details=details)
