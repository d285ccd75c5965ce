"""
Platform Adapter Registry.

============================================================
PURPOSE
============================================================
Maps a platform identifier to the adapter that serves it.

FEATURES:
- Built-in adapters imported lazily
- Registration of custom adapter classes or creators
- Platform catalog (labels, credential requirements)
- Unsupported platforms fail with a typed error

============================================================
USAGE
============================================================
```python
registry = AdapterRegistry(config)
adapter = registry.create(Platform.ZERODHA, credentials, governor)

# Replace the mock with a scripted instance
registry.register(Platform.MOCK, creator=lambda creds, gov, **kw: MockPlatformAdapter(creds, gov, ...))
```

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

import aiohttp

from ..config import BrokerSyncConfig
from ..errors import UnsupportedPlatformError
from ..governor import RequestGovernor
from ..types import Platform
from .base import PlatformAdapter


logger = logging.getLogger(__name__)


AdapterCreator = Callable[..., PlatformAdapter]


# ============================================================
# PLATFORM CATALOG
# ============================================================

@dataclass
class PlatformInfo:
    """Catalog entry describing a platform and what it needs to connect."""

    platform: Platform
    label: str
    description: str
    requires_api_key: bool = False
    requires_api_secret: bool = False
    requires_access_token: bool = False
    requires_refresh_token: bool = False
    requires_request_token: bool = False
    requires_totp: bool = False
    fields: List[str] = field(default_factory=list)
    """Account fields collected from the user."""

    oauth: bool = False
    """Connected through an OAuth consent flow."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.platform.value,
            "label": self.label,
            "description": self.description,
            "requires_api_key": self.requires_api_key,
            "requires_api_secret": self.requires_api_secret,
            "requires_access_token": self.requires_access_token,
            "requires_refresh_token": self.requires_refresh_token,
            "requires_request_token": self.requires_request_token,
            "requires_totp": self.requires_totp,
            "fields": list(self.fields),
            "oauth": self.oauth,
        }


PLATFORM_CATALOG: Dict[Platform, PlatformInfo] = {
    Platform.ANGEL_ONE: PlatformInfo(
        Platform.ANGEL_ONE, "Angel One", "Angel Broking SmartAPI",
        requires_api_key=True, requires_api_secret=True, requires_totp=True,
        fields=["api_key", "client_code", "pin", "totp", "state"],
    ),
    Platform.ZERODHA: PlatformInfo(
        Platform.ZERODHA, "Zerodha", "Zerodha Kite Connect",
        requires_api_key=True, requires_api_secret=True, requires_request_token=True,
        fields=["api_key", "api_secret", "request_token"],
    ),
    Platform.UPSTOX: PlatformInfo(
        Platform.UPSTOX, "Upstox", "Upstox API v2",
        requires_access_token=True, requires_refresh_token=True, oauth=True,
    ),
    Platform.DHAN: PlatformInfo(
        Platform.DHAN, "Dhan", "Dhan trading API",
        requires_access_token=True, requires_refresh_token=True, oauth=True,
    ),
    Platform.GROWW: PlatformInfo(
        Platform.GROWW, "Groww", "Groww trading platform",
        requires_api_key=True, requires_api_secret=True, fields=["api_key", "api_secret"],
    ),
    Platform.FYERS: PlatformInfo(
        Platform.FYERS, "Fyers", "Fyers trading platform",
        requires_api_key=True, requires_api_secret=True, requires_access_token=True,
        fields=["api_key", "api_secret", "access_token"],
    ),
    Platform.SAS_ONLINE: PlatformInfo(Platform.SAS_ONLINE, "SAS Online", "SAS Online trading platform"),
    Platform.FIVE_PAISA: PlatformInfo(Platform.FIVE_PAISA, "5paisa", "5paisa trading platform"),
    Platform.ICICI_DIRECT: PlatformInfo(Platform.ICICI_DIRECT, "ICICI Direct", "ICICI Direct trading platform"),
}


# ============================================================
# ADAPTER REGISTRY
# ============================================================

class AdapterRegistry:
    """
    Registry of platform adapters.

    Provides centralized adapter creation with configuration
    injection and extension support.
    """

    def __init__(self, config: Optional[BrokerSyncConfig] = None):
        """
        Initialize registry.

        Args:
            config: Provider endpoints and timeouts
        """
        self._config = config or BrokerSyncConfig()
        self._classes: Dict[Platform, Type[PlatformAdapter]] = {}
        self._creators: Dict[Platform, AdapterCreator] = {}

    @property
    def config(self) -> BrokerSyncConfig:
        return self._config

    def register(
        self,
        platform: Union[str, Platform],
        adapter_class: Optional[Type[PlatformAdapter]] = None,
        creator: Optional[AdapterCreator] = None,
    ) -> None:
        """
        Register an adapter class or creator.

        Args:
            platform: Platform identifier
            adapter_class: Adapter class to register
            creator: Custom creator, called like an adapter constructor
        """
        platform = Platform.parse(platform)
        if adapter_class:
            self._classes[platform] = adapter_class
        if creator:
            self._creators[platform] = creator
        logger.debug(f"Registered adapter for {platform.value}")

    def unregister(self, platform: Union[str, Platform]) -> None:
        """Unregister an adapter."""
        platform = Platform.parse(platform)
        self._classes.pop(platform, None)
        self._creators.pop(platform, None)

    def create(
        self,
        platform: Union[str, Platform],
        credentials: Any,
        governor: RequestGovernor,
        session: Optional[aiohttp.ClientSession] = None,
        force_refresh: bool = False,
    ) -> PlatformAdapter:
        """
        Create a platform adapter.

        Args:
            platform: Platform identifier
            credentials: Provider credential bundle
            governor: Shared request governor
            session: Optional shared aiohttp session
            force_refresh: Bypass the response cache

        Returns:
            PlatformAdapter instance

        Raises:
            UnsupportedPlatformError: If no adapter serves the platform
        """
        try:
            platform = Platform.parse(platform)
        except ValueError:
            raise UnsupportedPlatformError(f"Unsupported platform: {platform}", platform=str(platform))

        kwargs = {
            "provider_config": self._config.provider(platform),
            "timeout_config": self._config.timeout,
            "session": session,
            "force_refresh": force_refresh,
        }

        if platform in self._creators:
            return self._creators[platform](credentials, governor, **kwargs)

        adapter_class = self._classes.get(platform) or self._builtin_class(platform)
        return adapter_class(credentials, governor, **kwargs)

    def _builtin_class(self, platform: Platform) -> Type[PlatformAdapter]:
        """Resolve built-in adapters using deferred imports."""
        if platform == Platform.ANGEL_ONE:
            from .angel_one import AngelOneAdapter
            return AngelOneAdapter

        elif platform == Platform.ZERODHA:
            from .zerodha import ZerodhaAdapter
            return ZerodhaAdapter

        elif platform == Platform.UPSTOX:
            from .upstox import UpstoxAdapter
            return UpstoxAdapter

        elif platform == Platform.DHAN:
            from .dhan import DhanAdapter
            return DhanAdapter

        elif platform == Platform.MOCK:
            from .mock import MockPlatformAdapter
            return MockPlatformAdapter

        raise UnsupportedPlatformError(f"Platform {platform.value} not implemented yet", platform=platform.value)

    def is_supported(self, platform: Union[str, Platform]) -> bool:
        """Whether an adapter exists for the platform."""
        try:
            platform = Platform.parse(platform)
        except ValueError:
            return False
        return platform in BUILTIN_PLATFORMS or platform in self._classes or platform in self._creators

    def list_supported(self) -> List[Platform]:
        """List platforms with an adapter, built-in + registered."""
        registered = set(self._classes) | set(self._creators)
        return sorted(set(BUILTIN_PLATFORMS) | registered, key=lambda p: p.value)

    @staticmethod
    def catalog() -> List[PlatformInfo]:
        """Every known platform, including ones without an adapter yet."""
        return list(PLATFORM_CATALOG.values())

    @staticmethod
    def platform_requirements(platform: Union[str, Platform]) -> PlatformInfo:
        """Catalog entry for a platform."""
        platform = Platform.parse(platform)
        if platform not in PLATFORM_CATALOG:
            raise UnsupportedPlatformError(f"Unsupported platform: {platform.value}", platform=platform.value)
        return PLATFORM_CATALOG[platform]


BUILTIN_PLATFORMS = (
    Platform.ANGEL_ONE,
    Platform.ZERODHA,
    Platform.UPSTOX,
    Platform.DHAN,
    Platform.MOCK,
)
