"""
Broker Sync - Type Definitions.

============================================================
PURPOSE
============================================================
Shared enums and data structures for broker synchronization.

COVERS:
- Platform and account status identifiers
- Raw provider fills and paired trade candidates
- Canonical journal trades
- Per-account and per-batch sync results

============================================================
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Union


# ============================================================
# ENUMS
# ============================================================

class Platform(Enum):
    """Supported brokerage platforms."""

    ANGEL_ONE = "ANGEL_ONE"
    ZERODHA = "ZERODHA"
    UPSTOX = "UPSTOX"
    DHAN = "DHAN"
    GROWW = "GROWW"
    FYERS = "FYERS"
    SAS_ONLINE = "SAS_ONLINE"
    FIVE_PAISA = "5PAISA"
    ICICI_DIRECT = "ICICI_DIRECT"
    MOCK = "MOCK"

    @classmethod
    def parse(cls, value: Union[str, "Platform"]) -> "Platform":
        """Resolve a platform from its value or member name."""
        if isinstance(value, Platform):
            return value
        text = str(value).strip().upper()
        for member in cls:
            if member.value == text or member.name == text:
                return member
        raise ValueError(f"Unknown platform: {value}")


class FillSide(Enum):
    """Side of a raw execution."""

    BUY = "BUY"
    SELL = "SELL"


class TradeDirection(Enum):
    """Direction of a journal trade."""

    LONG = "LONG"
    SHORT = "SHORT"


class InstrumentType(Enum):
    """Instrument class of a journal trade."""

    STOCK = "STOCK"
    FUTURES = "FUTURES"
    OPTIONS = "OPTIONS"


class TradeStatus(Enum):
    """Lifecycle status of a journal trade."""

    OPEN = "OPEN"
    COMPLETE = "COMPLETE"


class SyncStatus(Enum):
    """Sync status recorded on a broker account."""

    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    TOTP_REQUIRED = "TOTP_REQUIRED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


_OPTION_SYMBOL = re.compile(r"\d(CE|PE)$")


def infer_instrument_type(symbol: str, product_type: Optional[str] = None) -> InstrumentType:
    """
    Infer instrument type from product type and symbol.

    Product types carrying OPT or FUT win. Otherwise derivative symbols
    are recognised by their strike suffix (NIFTY24JUN22000CE) or FUT suffix.
    """
    product = (product_type or "").upper()
    if "OPT" in product:
        return InstrumentType.OPTIONS
    if "FUT" in product:
        return InstrumentType.FUTURES

    upper = (symbol or "").upper()
    if _OPTION_SYMBOL.search(upper):
        return InstrumentType.OPTIONS
    if upper.endswith("FUT"):
        return InstrumentType.FUTURES
    return InstrumentType.STOCK


# ============================================================
# RAW FILLS
# ============================================================

@dataclass
class RawFill:
    """Single execution record as reported by a provider."""

    symbol: str
    side: FillSide
    price: Decimal
    quantity: Decimal
    filled_at: Optional[datetime] = None
    order_id: str = ""
    fill_id: str = ""
    exchange: Optional[str] = None
    product_type: Optional[str] = None

    reported_pnl: Optional[Decimal] = None
    """Realized P&L reported by the provider, if any."""

    raw: Dict[str, Any] = field(default_factory=dict, repr=False)
    """Original provider payload."""

    @property
    def fill_key(self) -> str:
        """Identifier used to build platform trade ids."""
        return self.order_id or self.fill_id


# ============================================================
# TRADES
# ============================================================

@dataclass
class TradeCandidate:
    """Trade produced by pairing, before persistence."""

    symbol: str
    direction: TradeDirection
    instrument_type: InstrumentType
    entry_price: Decimal
    quantity: Decimal
    entry_at: Optional[datetime]
    platform: Platform
    platform_trade_id: str
    status: TradeStatus
    exit_price: Optional[Decimal] = None
    exit_at: Optional[datetime] = None
    profit_loss: Optional[Decimal] = None
    exchange: Optional[str] = None
    product_type: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class CanonicalTrade:
    """Persisted journal trade."""

    id: str
    user_id: str
    symbol: str
    direction: TradeDirection
    instrument_type: InstrumentType
    entry_price: Decimal
    quantity: Decimal
    entry_at: datetime
    platform: Platform
    platform_trade_id: str
    status: TradeStatus
    exit_price: Optional[Decimal] = None
    exit_at: Optional[datetime] = None
    profit_loss: Optional[Decimal] = None
    exchange: Optional[str] = None
    product_type: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


# ============================================================
# ACCOUNTS
# ============================================================

@dataclass
class BrokerAccount:
    """A user's connection to one brokerage platform."""

    id: str
    user_id: str
    platform: Platform

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None

    extras: Dict[str, str] = field(default_factory=dict)
    """Platform-specific named credentials (client code, TOTP, request token)."""

    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TokenUpdate:
    """Rotated tokens produced by a successful authentication."""

    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None


# ============================================================
# RESULTS
# ============================================================

@dataclass
class ConnectionTestResult:
    """Outcome of a connectivity check."""

    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class AccountSyncResult:
    """Outcome of syncing a single account."""

    platform: Platform
    account_id: str
    success: bool = False
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error_code: Optional[str] = None
    message: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "account_id": self.account_id,
            "success": self.success,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "error_code": self.error_code,
            "message": self.message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class BatchSyncResult:
    """Outcome of one sync invocation across a user's accounts."""

    success: bool
    results: List[AccountSyncResult] = field(default_factory=list)
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error_code: Optional[str] = None
    message: str = ""
    test_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "totals": {
                "fetched": self.fetched,
                "created": self.created,
                "updated": self.updated,
                "skipped": self.skipped,
            },
            "error_code": self.error_code,
            "message": self.message,
            "test_only": self.test_only,
        }


@dataclass
class SyncRequest:
    """Inbound sync trigger parameters."""

    user_id: str
    platform: Optional[Platform] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    one_time_code: Optional[str] = None
    """Fresh TOTP overriding any stored one."""

    force_refresh: bool = False
    """Bypass the request cache."""

    test_only: bool = False
    """Check connectivity without writing trades."""
