"""
Platform Adapter - Mock.

============================================================
PURPOSE
============================================================
Scripted adapter for tests and local development.

FEATURES:
- Scripted fills
- Scripted authentication and fetch errors
- Optional one-time code check
- Token rotation on login
- Calls still pass through the RequestGovernor

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..credentials import MockCredentials
from ..errors import BrokerError, TotpInvalidError
from ..types import Platform, RawFill, TokenUpdate
from .base import FetchStrategy, PlatformAdapter, in_window


logger = logging.getLogger(__name__)


FILLS_PATH = "/fills"
LOGIN_PATH = "/login"


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    fills: List[RawFill] = field(default_factory=list)
    """Fills returned by the trade history strategy."""

    auth_error: Optional[BrokerError] = None
    """Raised on login when set."""

    fetch_errors: List[Exception] = field(default_factory=list)
    """Raised by successive fetch calls, in order, before fills are served."""

    expected_totp: Optional[str] = None
    """Login requires this one-time code when set."""

    issued_token: Optional[TokenUpdate] = None
    """Tokens handed out on login."""

    filter_by_window: bool = False
    """Drop scripted fills outside the requested window."""


# ============================================================
# MOCK ADAPTER
# ============================================================

class MockPlatformAdapter(PlatformAdapter):
    """
    Mock platform adapter for testing.

    Simulates a provider session including:
    - Login with optional one-time code
    - Trade history with error injection
    - Token rotation
    """

    platform = Platform.MOCK
    credential_type = MockCredentials

    def __init__(
        self,
        credentials: MockCredentials,
        governor,
        provider_config,
        mock_config: Optional[MockConfig] = None,
        **kwargs,
    ):
        super().__init__(credentials, governor, provider_config, **kwargs)
        self._mock = mock_config or MockConfig()
        self._pending_errors = list(self._mock.fetch_errors)
        self.calls: List[str] = []

    @property
    def mock_config(self) -> MockConfig:
        return self._mock

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        self.calls.append(f"{method} {path}")

        if path == LOGIN_PATH:
            if self._mock.auth_error is not None:
                raise self._mock.auth_error
            if self._mock.expected_totp and self._credentials.totp != self._mock.expected_totp:
                raise TotpInvalidError("Invalid totp", platform=self.provider_name)
            return {"status": "success"}

        if self._pending_errors:
            raise self._pending_errors.pop(0)
        return {"status": "success", "data": list(self._mock.fills)}

    async def _authenticate(self) -> None:
        await self._request("POST", LOGIN_PATH, cacheable=False)
        issued = self._mock.issued_token
        if issued is not None:
            self._record_tokens(issued.access_token, issued.refresh_token, issued.token_expiry)
        logger.debug("Mock: login accepted")

    def fetch_strategies(self) -> List[FetchStrategy]:
        return [FetchStrategy("scripted_fills", self._fills)]

    async def _fills(self, start: datetime, end: datetime) -> List[RawFill]:
        response = await self._request("GET", FILLS_PATH, cacheable=False)
        fills = response["data"]
        if self._mock.filter_by_window:
            fills = [fill for fill in fills if in_window(fill.filled_at, start, end)]
        return fills
