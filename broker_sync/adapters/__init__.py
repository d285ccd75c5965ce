"""
Broker Sync - Adapters Package.

============================================================
PURPOSE
============================================================
Brokerage platform adapter implementations.

AVAILABLE ADAPTERS:
- AngelOneAdapter: Angel One SmartAPI
- ZerodhaAdapter: Zerodha Kite Connect
- UpstoxAdapter: Upstox API v2
- DhanAdapter: Dhan API
- MockPlatformAdapter: For testing

UTILITIES:
- AdapterRegistry: Platform -> adapter resolution and catalog
- FetchStrategy / run_strategies: Ordered trade-history fetch strategies

============================================================
"""

# Base types
from .base import (
    IST,
    AdapterState,
    AdapterStateError,
    FetchStrategy,
    PlatformAdapter,
    StateTransitionEvent,
    VALID_TRANSITIONS,
    parse_side,
    parse_timestamp,
    run_strategies,
)

# Adapters
from .angel_one import AngelOneAdapter
from .zerodha import ZerodhaAdapter
from .upstox import UpstoxAdapter
from .dhan import DhanAdapter
from .mock import MockConfig, MockPlatformAdapter

# Registry
from .registry import (
    AdapterRegistry,
    PlatformInfo,
    PLATFORM_CATALOG,
)


__all__ = [
    # Base
    "IST",
    "AdapterState",
    "AdapterStateError",
    "FetchStrategy",
    "PlatformAdapter",
    "StateTransitionEvent",
    "VALID_TRANSITIONS",
    "parse_side",
    "parse_timestamp",
    "run_strategies",
    # Adapters
    "AngelOneAdapter",
    "ZerodhaAdapter",
    "UpstoxAdapter",
    "DhanAdapter",
    "MockConfig",
    "MockPlatformAdapter",
    # Registry
    "AdapterRegistry",
    "PlatformInfo",
    "PLATFORM_CATALOG",
]
