"""
Broker Sync - Configuration.

============================================================
PURPOSE
============================================================
All configuration for broker synchronization.

CRITICAL CONSTRAINTS:
- Bounded retries with exponential backoff
- Per-provider pacing limits
- Deterministic defaults

Values may be overridden from the environment (a .env file is
loaded through python-dotenv).

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from .types import Platform


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

@dataclass
class RateLimitConfig:
    """
    Pacing limits for one provider.

    SAFETY: Calls beyond these limits are delayed, never dropped.
    """

    requests_per_minute: int = 60
    """Maximum calls in any rolling 60 second window."""

    requests_per_hour: int = 3000
    """Maximum calls in any rolling hour."""

    min_interval_seconds: float = 0.25
    """Minimum gap between consecutive calls."""


# ============================================================
# CACHE CONFIGURATION
# ============================================================

@dataclass
class CacheConfig:
    """Response cache for idempotent provider calls."""

    enabled: bool = True
    """Whether successful reads are cached."""

    ttl_seconds: float = 300.0
    """Time-to-live of a cached response."""

    max_entries: int = 1024
    """Entries kept before the oldest are evicted."""


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for provider calls.

    SAFETY: Limited attempts. Hard rejects are never retried.
    """

    max_attempts: int = 3
    """Total attempts including the first call."""

    backoff_base_seconds: float = 2.0
    """Delay before retry n is base ** n seconds."""

    max_delay_seconds: float = 30.0
    """Maximum delay between attempts."""


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """HTTP timeouts for provider calls."""

    connection_timeout_seconds: float = 10.0
    """Timeout for establishing connection."""

    read_timeout_seconds: float = 30.0
    """Total timeout for a single request."""


# ============================================================
# PROVIDER CONFIGURATION
# ============================================================

@dataclass
class ProviderConfig:
    """Per-provider endpoints and application credentials."""

    base_url: str
    """REST base URL."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    client_id: Optional[str] = None
    """OAuth application id (Upstox, Dhan)."""

    client_secret: Optional[str] = None
    """OAuth application secret (Upstox, Dhan)."""

    redirect_uri: Optional[str] = None
    """OAuth redirect URI used at code exchange."""


def default_providers() -> Dict[Platform, ProviderConfig]:
    """Built-in provider settings."""
    return {
        Platform.ANGEL_ONE: ProviderConfig(
            base_url="https://apiconnect.angelbroking.com",
            rate_limit=RateLimitConfig(
                requests_per_minute=30,
                requests_per_hour=1000,
                min_interval_seconds=1.0,
            ),
        ),
        Platform.ZERODHA: ProviderConfig(base_url="https://api.kite.trade"),
        Platform.UPSTOX: ProviderConfig(base_url="https://api.upstox.com"),
        Platform.DHAN: ProviderConfig(base_url="https://api.dhan.co"),
        Platform.MOCK: ProviderConfig(base_url="mock://"),
    }


# ============================================================
# SYNC CONFIGURATION
# ============================================================

@dataclass
class SyncConfig:
    """Orchestrator settings."""

    default_window_days: int = 90
    """Fetch window when the request gives no start date."""

    price_precision: int = 2
    """Decimal places kept on persisted prices."""

    background_interval_minutes: float = 30.0
    """Interval of the background sync loop."""

    per_account_lock: bool = False
    """Serialize concurrent syncs of the same account within this process."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class BrokerSyncConfig:
    """Complete broker sync configuration."""

    providers: Dict[Platform, ProviderConfig] = field(default_factory=default_providers)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    database_url: Optional[str] = None
    """SQLAlchemy async URL of the trade store."""

    def provider(self, platform: Platform) -> ProviderConfig:
        """Get provider config, falling back to generic defaults."""
        if platform not in self.providers:
            self.providers[platform] = ProviderConfig(base_url="")
        return self.providers[platform]

    def rate_limit_for(self, provider: str) -> RateLimitConfig:
        """Pacing limits keyed by provider name."""
        try:
            return self.provider(Platform.parse(provider)).rate_limit
        except ValueError:
            return RateLimitConfig()

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "BrokerSyncConfig":
        """
        Build configuration from environment variables.

        Args:
            dotenv_path: Optional .env file; defaults to discovery

        Returns:
            BrokerSyncConfig
        """
        load_dotenv(dotenv_path)
        config = cls()

        config.database_url = os.getenv("DATABASE_URL")

        cache_ttl = os.getenv("BROKER_SYNC_CACHE_TTL_SECONDS")
        if cache_ttl:
            config.cache.ttl_seconds = float(cache_ttl)

        max_attempts = os.getenv("BROKER_SYNC_MAX_ATTEMPTS")
        if max_attempts:
            config.retry.max_attempts = int(max_attempts)

        window = os.getenv("BROKER_SYNC_WINDOW_DAYS")
        if window:
            config.sync.default_window_days = int(window)

        interval = os.getenv("BROKER_SYNC_INTERVAL_MINUTES")
        if interval:
            config.sync.background_interval_minutes = float(interval)

        config.sync.per_account_lock = os.getenv("BROKER_SYNC_ACCOUNT_LOCK", "false").lower() == "true"

        upstox = config.provider(Platform.UPSTOX)
        upstox.client_id = os.getenv("UPSTOX_CLIENT_ID")
        upstox.client_secret = os.getenv("UPSTOX_CLIENT_SECRET")
        upstox.redirect_uri = os.getenv("UPSTOX_REDIRECT_URI")

        dhan = config.provider(Platform.DHAN)
        dhan.client_id = os.getenv("DHAN_CLIENT_ID")
        dhan.client_secret = os.getenv("DHAN_CLIENT_SECRET")

        return config
