"""
Platform Adapter - Angel One (SmartAPI).

============================================================
PURPOSE
============================================================
Adapter for Angel One's SmartAPI.

AUTH FLOW:
- Reuse an unexpired access token when present
- Otherwise renew with the refresh token
- Otherwise log in with client code + PIN + TOTP

TRADE HISTORY STRATEGIES (in order):
1. Trade book, DD-MM-YYYY window
2. Trade book, YYYY-MM-DD window
3. Trade book, no window
4. Trade book, NSE delivery
5. Trade book, BSE delivery
6. Trade book, one-year window
7. Order book, completed orders
8. Positions
9. Holdings (synthetic buys, last resort)

QUIRKS:
- HTTP 200 with status=false carries the real error
- "Request Rejected" is a hard reject, never retried
- 403 "exceeding access rate" is throttling
- Trade book reports time of day only

============================================================
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..credentials import AngelOneCredentials
from ..errors import BrokerError, TotpInvalidError, map_angel_one_error
from ..types import ConnectionTestResult, FillSide, Platform, RawFill
from .base import (
    IST,
    FetchStrategy,
    PlatformAdapter,
    parse_side,
    parse_timestamp,
    to_decimal,
)


logger = logging.getLogger(__name__)


# Endpoints
LOGIN_PATH = "/rest/auth/angelbroking/user/v1/loginByPassword"
REFRESH_PATH = "/rest/auth/angelbroking/jwt/v1/generateTokens"
PROFILE_PATH = "/rest/secure/angelbroking/user/v1/getProfile"
TRADE_BOOK_PATH = "/rest/secure/angelbroking/order/v1/getTradeBook"
ORDER_BOOK_PATH = "/rest/secure/angelbroking/order/v1/getOrderBook"
POSITION_PATH = "/rest/secure/angelbroking/order/v1/getPosition"
HOLDING_PATH = "/rest/secure/angelbroking/portfolio/v1/getHolding"

DEFAULT_TOKEN_TTL_MS = 3600000
COMPLETED_ORDER_STATUSES = {"complete", "filled", "executed"}


# ============================================================
# ANGEL ONE ADAPTER
# ============================================================

class AngelOneAdapter(PlatformAdapter):
    """
    Angel One SmartAPI adapter.

    Implements the PlatformAdapter interface for password + TOTP login.
    """

    platform = Platform.ANGEL_ONE
    credential_type = AngelOneCredentials

    # --------------------------------------------------------
    # HTTP
    # --------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00:00:00:00:00:00",
            "X-PrivateKey": self._credentials.api_key,
        }
        if self._credentials.access_token:
            headers["Authorization"] = f"Bearer {self._credentials.access_token}"
        return headers

    def _raise_for_response(self, status: int, payload: Any) -> None:
        message = self._error_message(payload)
        rejected = "request rejected" in message.lower()
        failed = isinstance(payload, dict) and payload.get("status") in (False, "false")

        if status >= 400 or failed or rejected:
            error_code = payload.get("errorcode") if isinstance(payload, dict) else None
            raise map_angel_one_error(error_code or None, message, status)

    def _is_success_payload(self, payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("status") is True

    # --------------------------------------------------------
    # AUTHENTICATION
    # --------------------------------------------------------

    async def _authenticate(self) -> None:
        if self._credentials.has_valid_session() and not self._force_refresh:
            logger.debug("Angel One: reusing unexpired access token")
            return

        if self._credentials.refresh_token and await self.refresh_token():
            return

        if not self._credentials.totp:
            raise TotpInvalidError("TOTP required for Angel One login", platform=self.provider_name)

        body = {
            "clientcode": self._credentials.client_code,
            "password": self._credentials.pin,
            "state": self._credentials.state,
            "totp": self._credentials.totp,
        }
        response = await self._request("POST", LOGIN_PATH, json_body=body, cacheable=False)
        self._store_session(response.get("data") or {})

    async def _refresh(self) -> bool:
        if not self._credentials.refresh_token:
            return False

        response = await self._request(
            "POST",
            REFRESH_PATH,
            json_body={"refreshToken": self._credentials.refresh_token},
            cacheable=False,
        )
        data = response.get("data") or {}
        if not data.get("jwtToken"):
            return False
        self._store_session(data)
        return True

    def _store_session(self, data: Dict[str, Any]) -> None:
        token = data.get("jwtToken")
        if not token:
            raise map_angel_one_error(None, "Login response carried no token", 200)

        ttl_ms = data.get("tokenExpiryTime") or DEFAULT_TOKEN_TTL_MS
        expiry = datetime.now(timezone.utc) + timedelta(milliseconds=int(ttl_ms))
        self._record_tokens(
            access_token=token,
            refresh_token=data.get("refreshToken"),
            token_expiry=expiry,
        )

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    def fetch_strategies(self) -> List[FetchStrategy]:
        return [
            FetchStrategy("trade_book_dmy", lambda s, e: self._trade_book(s, e, "%d-%m-%Y")),
            FetchStrategy("trade_book_iso", lambda s, e: self._trade_book(s, e, "%Y-%m-%d")),
            FetchStrategy("trade_book_all", lambda s, e: self._trade_book(s, e, None)),
            FetchStrategy("trade_book_nse", lambda s, e: self._trade_book(s, e, "%Y-%m-%d", exchange="NSE")),
            FetchStrategy("trade_book_bse", lambda s, e: self._trade_book(s, e, "%Y-%m-%d", exchange="BSE")),
            FetchStrategy("trade_book_year", lambda s, e: self._trade_book(e - timedelta(days=365), e, "%Y-%m-%d")),
            FetchStrategy("order_book", self._order_book),
            FetchStrategy("positions", self._positions),
            FetchStrategy("holdings", self._holdings),
        ]

    async def _trade_book(
        self,
        start: datetime,
        end: datetime,
        date_format: Optional[str],
        exchange: Optional[str] = None,
    ) -> List[RawFill]:
        params: Dict[str, Any] = {}
        if date_format:
            params["fromDate"] = start.astimezone(IST).strftime(date_format)
            params["toDate"] = end.astimezone(IST).strftime(date_format)
        if exchange:
            params["exchange"] = exchange
            params["productType"] = "DELIVERY"

        response = await self._request("GET", TRADE_BOOK_PATH, params=params or None)
        rows = response.get("data") or []
        fills = []
        for row in rows:
            fill = self._fill_from_trade(row, end)
            if fill is not None:
                fills.append(fill)
        return fills

    def _fill_from_trade(self, row: Dict[str, Any], reference: datetime) -> Optional[RawFill]:
        side = parse_side(row.get("transactiontype"))
        if side is None:
            logger.warning(f"Angel One: skipping trade {row.get('orderid')} with side {row.get('transactiontype')!r}")
            return None
        return RawFill(
            symbol=row.get("tradingsymbol", ""),
            side=side,
            price=to_decimal(row.get("fillprice"), Decimal("0")),
            quantity=to_decimal(row.get("fillsize"), Decimal("0")),
            filled_at=parse_timestamp(row.get("filltime"), reference),
            order_id=str(row.get("orderid", "")),
            fill_id=str(row.get("fillid", "")),
            exchange=row.get("exchange"),
            product_type=row.get("producttype"),
            reported_pnl=to_decimal(row.get("realizedpnl")),
            raw=row,
        )

    async def _order_book(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", ORDER_BOOK_PATH)
        fills = []
        for row in response.get("data") or []:
            if str(row.get("status", "")).lower() not in COMPLETED_ORDER_STATUSES:
                continue
            side = parse_side(row.get("transactiontype"))
            if side is None:
                logger.warning(f"Angel One: skipping order {row.get('orderid')} with side {row.get('transactiontype')!r}")
                continue
            fills.append(RawFill(
                symbol=row.get("tradingsymbol", ""),
                side=side,
                price=to_decimal(row.get("averageprice"), Decimal("0")),
                quantity=to_decimal(row.get("filledshares") or row.get("quantity"), Decimal("0")),
                filled_at=parse_timestamp(row.get("exchtime") or row.get("updatetime"), end),
                order_id=str(row.get("orderid", "")),
                exchange=row.get("exchange"),
                product_type=row.get("producttype"),
                raw=row,
            ))
        return fills

    async def _positions(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", POSITION_PATH)
        fills = []
        for row in response.get("data") or []:
            symbol = row.get("tradingsymbol", "")
            legs = (
                (FillSide.BUY, row.get("buyqty"), row.get("buyavgprice")),
                (FillSide.SELL, row.get("sellqty"), row.get("sellavgprice")),
            )
            for side, qty, price in legs:
                quantity = to_decimal(qty, Decimal("0"))
                if quantity <= 0:
                    continue
                fills.append(RawFill(
                    symbol=symbol,
                    side=side,
                    price=to_decimal(price, Decimal("0")),
                    quantity=quantity,
                    filled_at=end,
                    order_id=f"position_{symbol}_{side.value.lower()}",
                    exchange=row.get("exchange"),
                    product_type=row.get("producttype"),
                    raw=row,
                ))
        return fills

    async def _holdings(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", HOLDING_PATH)
        fills = []
        for row in response.get("data") or []:
            symbol = row.get("tradingsymbol", "")
            fills.append(RawFill(
                symbol=symbol,
                side=FillSide.BUY,
                price=to_decimal(row.get("averageprice"), Decimal("0")),
                quantity=to_decimal(row.get("quantity"), Decimal("0")),
                filled_at=start,
                order_id=f"holding_{symbol}",
                fill_id=f"holding_{symbol}_{row.get('isin', '')}",
                exchange=row.get("exchange"),
                product_type=row.get("product"),
                reported_pnl=to_decimal(row.get("profitandloss")),
                raw=row,
            ))
        if fills:
            logger.info(f"Angel One: derived {len(fills)} synthetic fills from holdings")
        return fills

    # --------------------------------------------------------
    # DIAGNOSTICS
    # --------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        if not await self.authenticate():
            return await super().test_connection()

        details: Dict[str, Any] = {"authenticated": True}
        try:
            profile = await self._request("GET", PROFILE_PATH)
            data = profile.get("data") or {}
            details["client_code"] = data.get("clientcode")
            details["exchanges"] = data.get("exchanges")
        except BrokerError as e:
            details["profile_error"] = str(e)
            return ConnectionTestResult(success=False, message=f"Profile check failed: {e}", details=details)

        return ConnectionTestResult(success=True, message="Angel One connection successful", details=details)
