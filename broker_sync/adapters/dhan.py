"""
Platform Adapter - Dhan.

============================================================
PURPOSE
============================================================
Adapter for the Dhan REST API.

The access token is issued outside this system (Dhan web console
or OAuth consent). Authentication only validates it against the
profile endpoint. 401 responses trigger one refresh + retry when
application credentials are configured (DHAN_CLIENT_ID / SECRET).

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from ..credentials import DhanCredentials
from ..errors import TokenExpiredError
from ..types import Platform, RawFill
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


PROFILE_PATH = "/user/profile"
ORDERS_PATH = "/orders"
TOKEN_PATH = "/oauth/token"

# Orders in these states never produced a fill
UNFILLED_STATUSES = {"REJECTED", "CANCELLED", "EXPIRED", "PENDING", "TRANSIT"}


class DhanAdapter(PlatformAdapter):
    """Dhan adapter."""

    platform = Platform.DHAN
    credential_type = DhanCredentials
    refresh_on_expired = True

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._credentials.access_token}",
            "access-token": self._credentials.access_token,
        }
        if self._credentials.client_id:
            headers["client-id"] = self._credentials.client_id
        return headers

    # --------------------------------------------------------
    # AUTHENTICATION
    # --------------------------------------------------------

    async def _authenticate(self) -> None:
        await self._request("GET", PROFILE_PATH, cacheable=False)

    async def _refresh(self) -> bool:
        if not self._credentials.refresh_token:
            return False
        if not (self._config.client_id and self._config.client_secret):
            logger.warning("Dhan: application credentials not configured, cannot refresh")
            return False

        response = await self._request(
            "POST",
            TOKEN_PATH,
            json_body={
                "grant_type": "refresh_token",
                "refresh_token": self._credentials.refresh_token,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
            },
            cacheable=False,
        )
        token = response.get("access_token")
        if not token:
            raise TokenExpiredError("Dhan token endpoint returned no access token", platform=self.provider_name)
        self._record_tokens(
            access_token=token,
            refresh_token=response.get("refresh_token") or self._credentials.refresh_token,
        )
        return True

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    def fetch_strategies(self) -> List[FetchStrategy]:
        return [FetchStrategy("orders", self._orders)]

    async def _orders(self, start: datetime, end: datetime) -> List[RawFill]:
        params = {
            "fromDate": start.astimezone(IST).strftime("%Y-%m-%d"),
            "toDate": end.astimezone(IST).strftime("%Y-%m-%d"),
        }
        response = await self._request("GET", ORDERS_PATH, params=params)
        rows = response.get("data") if isinstance(response, dict) else response

        fills = []
        for row in rows or []:
            status = str(row.get("status") or row.get("orderStatus") or "COMPLETE").upper()
            if status in UNFILLED_STATUSES:
                continue
            side = parse_side(row.get("side") or row.get("transactionType"))
            if side is None:
                logger.warning(f"Dhan: skipping order {row.get('orderId')} with side {row.get('transactionType')!r}")
                continue
            fill = RawFill(
                symbol=row.get("symbol") or row.get("tradingSymbol") or "",
                side=side,
                price=to_decimal(row.get("tradedPrice") or row.get("price"), Decimal("0")),
                quantity=to_decimal(row.get("filledQty") or row.get("quantity"), Decimal("0")),
                filled_at=parse_timestamp(row.get("tradeTime") or row.get("orderTime") or row.get("createTime")),
                order_id=str(row.get("orderId") or ""),
                fill_id=str(row.get("tradeId") or ""),
                exchange=row.get("exchangeSegment") or row.get("exchange"),
                product_type=row.get("productType"),
                raw=row,
            )
            if in_window(fill.filled_at, start, end):
                fills.append(fill)
        return fills
