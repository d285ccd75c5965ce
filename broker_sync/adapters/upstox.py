"""
Platform Adapter - Upstox (API v2).

============================================================
PURPOSE
============================================================
Adapter for the Upstox v2 REST API.

AUTH FLOW:
- A stored access token is checked against the profile endpoint
- An authorization code is exchanged for tokens (OAuth)
- 401 responses trigger one refresh + retry
- 404 on the profile means the account needs reactivation

TRADE HISTORY STRATEGIES (in order):
1. Historical trades (charges API, paged, date window)
2. Trades for the current day
3. Order book, completed orders

============================================================
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..credentials import UpstoxCredentials
from ..errors import (
    BrokerError,
    ReactivationRequiredError,
    SyncErrorCode,
    TokenExpiredError,
    TradebookUnavailableError,
    map_http_status,
)
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


TOKEN_PATH = "/v2/login/authorization/token"
PROFILE_PATH = "/v2/user/profile"
LEGACY_PROFILE_PATH = "/index/user/profile"
HISTORICAL_TRADES_PATH = "/v2/charges/historical-trades"
TRADES_FOR_DAY_PATH = "/v2/order/trades/get-trades-for-day"
ORDERS_PATH = "/v2/order/retrieve-all"

PAGE_SIZE = 100
MAX_HISTORY_PAGES = 50
COMPLETED_ORDER_STATUSES = {"complete", "filled"}

REACTIVATION_MESSAGE = "Upstox account may need reactivation"

# Upstox error codes with a fixed meaning
UPSTOX_ERROR_CODES: Dict[str, type] = {
    "UDAPI100058": ReactivationRequiredError,
    "UDAPI100050": TokenExpiredError,
    "UDAPI100016": TokenExpiredError,
}


def next_token_expiry(now: datetime) -> datetime:
    """Upstox access tokens lapse at 03:30 IST."""
    local = now.astimezone(IST)
    expiry = local.replace(hour=3, minute=30, second=0, microsecond=0)
    if expiry <= local:
        expiry += timedelta(days=1)
    return expiry


# ============================================================
# UPSTOX ADAPTER
# ============================================================

class UpstoxAdapter(PlatformAdapter):
    """
    Upstox adapter.

    Application credentials (client id / secret / redirect URI) come
    from ProviderConfig when the account does not carry them.
    """

    platform = Platform.UPSTOX
    credential_type = UpstoxCredentials
    refresh_on_expired = True

    # --------------------------------------------------------
    # HTTP
    # --------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Api-Version": "2.0"}
        if self._credentials.access_token:
            headers["Authorization"] = f"Bearer {self._credentials.access_token}"
        return headers

    def _raise_for_response(self, status: int, payload: Any) -> None:
        if status < 400 and not (isinstance(payload, dict) and payload.get("status") == "error"):
            return

        error_code, message = _first_error(payload)
        message = message or self._error_message(payload)
        if error_code in UPSTOX_ERROR_CODES:
            raise UPSTOX_ERROR_CODES[error_code](
                message or f"Upstox error {error_code}",
                provider_code=error_code,
                http_status=status,
                platform=self.provider_name,
            )

        error = map_http_status(status if status >= 400 else 500, message, platform=self.provider_name)
        error.provider_code = error_code
        raise error

    def _is_success_payload(self, payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("status") == "success"

    def _client_id(self) -> Optional[str]:
        return self._credentials.api_key or self._config.client_id

    def _client_secret(self) -> Optional[str]:
        return self._credentials.api_secret or self._config.client_secret

    # --------------------------------------------------------
    # AUTHENTICATION
    # --------------------------------------------------------

    async def _authenticate(self) -> None:
        if not self._credentials.access_token:
            await self._exchange_code()

        for path in (PROFILE_PATH, LEGACY_PROFILE_PATH):
            try:
                await self._request("GET", path, cacheable=False)
                return
            except TradebookUnavailableError:
                logger.info(f"Upstox: profile endpoint {path} returned 404")
                continue

        raise ReactivationRequiredError(REACTIVATION_MESSAGE, http_status=404, platform=self.provider_name)

    async def _exchange_code(self) -> None:
        credentials = self._credentials
        response = await self._request(
            "POST",
            TOKEN_PATH,
            data={
                "code": credentials.authorization_code,
                "client_id": self._client_id(),
                "client_secret": self._client_secret(),
                "redirect_uri": credentials.redirect_uri or self._config.redirect_uri or "",
                "grant_type": "authorization_code",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            cacheable=False,
        )
        self._store_tokens(response)
        logger.info("Upstox: authorization code exchanged for access token")

    async def _refresh(self) -> bool:
        if not self._credentials.refresh_token:
            return False
        if not (self._client_id() and self._client_secret()):
            logger.warning("Upstox: application credentials not configured, cannot refresh")
            return False

        response = await self._request(
            "POST",
            TOKEN_PATH,
            data={
                "client_id": self._client_id(),
                "client_secret": self._client_secret(),
                "grant_type": "refresh_token",
                "refresh_token": self._credentials.refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            cacheable=False,
        )
        self._store_tokens(response)
        return True

    def _store_tokens(self, response: Dict[str, Any]) -> None:
        data = response.get("data") if isinstance(response.get("data"), dict) else response
        token = data.get("access_token")
        if not token:
            raise TokenExpiredError("Upstox token endpoint returned no access token", platform=self.provider_name)
        self._record_tokens(
            access_token=token,
            refresh_token=data.get("refresh_token") or self._credentials.refresh_token,
            token_expiry=next_token_expiry(datetime.now(IST)),
        )

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    def fetch_strategies(self) -> List[FetchStrategy]:
        return [
            FetchStrategy("historical_trades", self._historical_trades),
            FetchStrategy("trades_for_day", self._trades_for_day),
            FetchStrategy("completed_orders", self._completed_orders),
        ]

    async def _historical_trades(self, start: datetime, end: datetime) -> List[RawFill]:
        fills: List[RawFill] = []
        page = 1
        while page <= MAX_HISTORY_PAGES:
            params = {
                "start_date": start.astimezone(IST).strftime("%Y-%m-%d"),
                "end_date": end.astimezone(IST).strftime("%Y-%m-%d"),
                "page_number": str(page),
                "page_size": str(PAGE_SIZE),
            }
            response = await self._request("GET", HISTORICAL_TRADES_PATH, params=params)
            rows = response.get("data") or []
            fills.extend(self._fills_from_rows(rows))

            total_pages = ((response.get("meta_data") or {}).get("page") or {}).get("total_pages")
            if not rows or len(rows) < PAGE_SIZE or (total_pages and page >= int(total_pages)):
                break
            page += 1
        return fills

    async def _trades_for_day(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", TRADES_FOR_DAY_PATH)
        fills = self._fills_from_rows(response.get("data") or [])
        return [fill for fill in fills if in_window(fill.filled_at, start, end)]

    async def _completed_orders(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", ORDERS_PATH)
        completed = [
            row for row in response.get("data") or []
            if str(row.get("status", "")).lower() in COMPLETED_ORDER_STATUSES
        ]
        return [fill for fill in self._fills_from_rows(completed) if in_window(fill.filled_at, start, end)]

    def _fills_from_rows(self, rows: List[Dict[str, Any]]) -> List[RawFill]:
        fills = []
        for row in rows:
            fill = self._fill_from_row(row)
            if fill is not None:
                fills.append(fill)
        return fills

    def _fill_from_row(self, row: Dict[str, Any]) -> Optional[RawFill]:
        side = parse_side(row.get("transaction_type"))
        if side is None:
            logger.warning(f"Upstox: skipping row {row.get('order_id')} with side {row.get('transaction_type')!r}")
            return None
        symbol = (
            row.get("symbol")
            or row.get("trading_symbol")
            or row.get("tradingsymbol")
            or row.get("scrip_name")
            or ""
        )
        return RawFill(
            symbol=symbol,
            side=side,
            price=to_decimal(row.get("price") or row.get("average_price"), Decimal("0")),
            quantity=to_decimal(row.get("filled_quantity") or row.get("quantity"), Decimal("0")),
            filled_at=parse_timestamp(
                row.get("exchange_timestamp") or row.get("order_timestamp") or row.get("trade_date")
            ),
            order_id=str(row.get("order_id") or ""),
            fill_id=str(row.get("trade_id") or ""),
            exchange=row.get("exchange"),
            product_type=row.get("segment") or row.get("product"),
            raw=row,
        )

    # --------------------------------------------------------
    # DIAGNOSTICS
    # --------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        if not await self.authenticate():
            result = await super().test_connection()
            if self.failure_reason == SyncErrorCode.REACTIVATION_REQUIRED:
                result.message = f"{REACTIVATION_MESSAGE}. Please reactivate your Upstox account."
            return result

        today = datetime.now(IST).strftime("%Y-%m-%d")
        details: Dict[str, Any] = {"authenticated": True}
        checks = (
            ("historical_trades", HISTORICAL_TRADES_PATH, {
                "start_date": today, "end_date": today, "page_number": "1", "page_size": "1",
            }),
            ("trades_for_day", TRADES_FOR_DAY_PATH, None),
            ("orders", ORDERS_PATH, None),
        )

        for name, path, params in checks:
            try:
                response = await self._request("GET", path, params=params, cacheable=False)
            except BrokerError as e:
                details[name] = {"ok": False, "error": e.message, "code": e.code.value}
                continue
            details[name] = {"ok": True, "count": len(response.get("data") or [])}

        ok = any(isinstance(v, dict) and v.get("ok") for v in details.values())
        return ConnectionTestResult(
            success=ok,
            message="Upstox connection successful" if ok else "Upstox trade endpoints unavailable",
            details=details,
        )


def _first_error(payload: Any) -> tuple:
    """(errorCode, message) of the first entry in an Upstox error body."""
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return first.get("errorCode") or first.get("error_code"), first.get("message")
    return None, None
