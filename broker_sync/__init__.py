"""
Broker Sync Package.

============================================================
PURPOSE
============================================================
Pulls executed trades from Indian retail brokerages, pairs raw
fills into round-trip trades, and reconciles them into a trade
journal without duplicates.

CRITICAL PRINCIPLES:
    Partial failure never aborts a batch.
    Re-running a sync never duplicates a trade.
    Every sync attempt records status and time on the account.

============================================================
MODULES
============================================================
- types: Platforms, fills, trades, accounts, results
- config: Configuration (dataclasses + environment)
- errors: Error taxonomy, typed exceptions, provider mapping
- credentials: Per-provider credential bundles
- governor: Pacing, response cache, bounded retry
- adapters: Platform adapters and registry
- pairing: Raw fills -> trade candidates
- resolver: Dedup/upsert of candidates
- store: Trade store contract + in-memory store
- models / repository: SQLAlchemy persistence
- notifier: Dashboard events and aggregate cache invalidation
- orchestrator: Sync across a user's accounts
- background: Periodic sync
- api: aiohttp HTTP trigger

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    Platform,
    FillSide,
    TradeDirection,
    InstrumentType,
    TradeStatus,
    SyncStatus,
    RawFill,
    TradeCandidate,
    CanonicalTrade,
    BrokerAccount,
    TokenUpdate,
    ConnectionTestResult,
    AccountSyncResult,
    BatchSyncResult,
    SyncRequest,
    infer_instrument_type,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    RateLimitConfig,
    CacheConfig,
    RetryConfig,
    TimeoutConfig,
    ProviderConfig,
    SyncConfig,
    BrokerSyncConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    SyncErrorCode,
    RetryEligibility,
    BrokerError,
    AuthenticationError,
    TotpInvalidError,
    TokenExpiredError,
    ReactivationRequiredError,
    TradebookUnavailableError,
    RateLimitError,
    FetchError,
    NetworkError,
    RequestRejectedError,
    InvalidCredentialsError,
    UnsupportedPlatformError,
    NoConnectedAccountsError,
    classify_exception,
    dominant_error_code,
)

# ============================================================
# CREDENTIALS
# ============================================================
from .credentials import (
    AngelOneCredentials,
    ZerodhaCredentials,
    UpstoxCredentials,
    DhanCredentials,
    MockCredentials,
    Credentials,
    credentials_from_account,
)

# ============================================================
# CORE SERVICES
# ============================================================
from .governor import RequestGovernor
from .pairing import pair_fills
from .resolver import TradeResolver, ResolveCounts
from .store import DuplicateTradeError, TradeStore, InMemoryTradeStore
from .notifier import EventNotifier, SyncEvent, AggregateViewCache
from .orchestrator import SyncOrchestrator
from .background import BackgroundSyncService

# ============================================================
# ADAPTERS
# ============================================================
from .adapters import (
    AdapterRegistry,
    AdapterState,
    PlatformAdapter,
    FetchStrategy,
    MockPlatformAdapter,
    MockConfig,
)


__all__ = [
    # Types
    "Platform",
    "FillSide",
    "TradeDirection",
    "InstrumentType",
    "TradeStatus",
    "SyncStatus",
    "RawFill",
    "TradeCandidate",
    "CanonicalTrade",
    "BrokerAccount",
    "TokenUpdate",
    "ConnectionTestResult",
    "AccountSyncResult",
    "BatchSyncResult",
    "SyncRequest",
    "infer_instrument_type",
    # Config
    "RateLimitConfig",
    "CacheConfig",
    "RetryConfig",
    "TimeoutConfig",
    "ProviderConfig",
    "SyncConfig",
    "BrokerSyncConfig",
    # Errors
    "SyncErrorCode",
    "RetryEligibility",
    "BrokerError",
    "AuthenticationError",
    "TotpInvalidError",
    "TokenExpiredError",
    "ReactivationRequiredError",
    "TradebookUnavailableError",
    "RateLimitError",
    "FetchError",
    "NetworkError",
    "RequestRejectedError",
    "InvalidCredentialsError",
    "UnsupportedPlatformError",
    "NoConnectedAccountsError",
    "classify_exception",
    "dominant_error_code",
    # Credentials
    "AngelOneCredentials",
    "ZerodhaCredentials",
    "UpstoxCredentials",
    "DhanCredentials",
    "MockCredentials",
    "Credentials",
    "credentials_from_account",
    # Services
    "RequestGovernor",
    "pair_fills",
    "TradeResolver",
    "ResolveCounts",
    "TradeStore",
    "InMemoryTradeStore",
    "DuplicateTradeError",
    "EventNotifier",
    "SyncEvent",
    "AggregateViewCache",
    "SyncOrchestrator",
    "BackgroundSyncService",
    # Adapters
    "AdapterRegistry",
    "AdapterState",
    "PlatformAdapter",
    "FetchStrategy",
    "MockPlatformAdapter",
    "MockConfig",
]
