"""
Platform Adapter - Abstract Base.

============================================================
PURPOSE
============================================================
Common contract and plumbing for all brokerage adapters.

CAPABILITIES:
- authenticate()            -> bool, failure reason recorded
- fetch_trades(start, end)  -> ordered RawFill list
- refresh_token()           -> bool
- test_connection()         -> ConnectionTestResult

STATE MACHINE (per adapter instance):

    UNAUTHENTICATED ──► AUTHENTICATING ──► AUTHENTICATED ◄──► FETCHING
                              │
                              ▼
                       FAILED(reason)   terminal until supply_credentials()

TRANSPORT:
Every call goes through _request(), which hands a zero-argument
coroutine to the injected RequestGovernor. _send() performs the
actual aiohttp request and maps HTTP failures to typed errors.

FALLBACKS:
Adapters describe their trade-history fetch strategies as an ordered list of
FetchStrategy objects. The first strategy returning fills wins.

============================================================
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Set

import aiohttp

from ..config import ProviderConfig, TimeoutConfig
from ..errors import (
    AUTH_CODES,
    AuthenticationError,
    BrokerError,
    InvalidCredentialsError,
    NetworkError,
    ReactivationRequiredError,
    SyncErrorCode,
    TokenExpiredError,
    TotpInvalidError,
    map_http_status,
)
from ..governor import RequestGovernor
from ..logging_utils import ProviderLogger
from ..types import ConnectionTestResult, FillSide, Platform, RawFill, TokenUpdate


logger = logging.getLogger(__name__)


# Indian exchanges report wall-clock times in IST
IST = timezone(timedelta(hours=5, minutes=30), name="IST")


# ============================================================
# ADAPTER STATE
# ============================================================

class AdapterState(Enum):
    """Authentication lifecycle of an adapter instance."""

    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    FETCHING = "FETCHING"
    FAILED = "FAILED"


VALID_TRANSITIONS: Dict[AdapterState, Set[AdapterState]] = {
    AdapterState.UNAUTHENTICATED: {AdapterState.AUTHENTICATING},
    AdapterState.AUTHENTICATING: {AdapterState.AUTHENTICATED, AdapterState.FAILED},
    AdapterState.AUTHENTICATED: {AdapterState.FETCHING, AdapterState.AUTHENTICATING},
    AdapterState.FETCHING: {AdapterState.AUTHENTICATED},
    # Terminal until fresh credentials are supplied
    AdapterState.FAILED: set(),
}


class AdapterStateError(RuntimeError):
    """Invalid adapter state transition."""


@dataclass
class StateTransitionEvent:
    """Recorded adapter state change."""

    from_state: AdapterState
    to_state: AdapterState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""


# ============================================================
# FETCH STRATEGIES
# ============================================================

@dataclass
class FetchStrategy:
    """One trade-history fetch strategy."""

    name: str
    fetch: Callable[[datetime, datetime], Awaitable[List[RawFill]]]


async def run_strategies(
    strategies: List[FetchStrategy],
    start: datetime,
    end: datetime,
    provider: str = "",
) -> List[RawFill]:
    """
    Run fetch strategies in order until one returns fills.

    Session-level errors (auth, expired token, reactivation) stop the
    chain immediately. Other errors move on to the next strategy.

    Returns:
        Fills of the first non-empty strategy, or [] when every
        strategy that completed returned nothing

    Raises:
        BrokerError: Session-level error, or the last error when no
            strategy completed at all
    """
    last_error: Optional[BrokerError] = None
    completed = False

    for strategy in strategies:
        try:
            fills = await strategy.fetch(start, end)
        except BrokerError as e:
            if e.code in AUTH_CODES:
                raise
            logger.info(f"{provider} strategy '{strategy.name}' failed: {e.code.value}: {e.message}")
            last_error = e
            continue

        completed = True
        if fills:
            logger.info(f"{provider} strategy '{strategy.name}' returned {len(fills)} fills")
            return fills
        logger.debug(f"{provider} strategy '{strategy.name}' returned no fills")

    if not completed and last_error is not None:
        raise last_error
    return []


# ============================================================
# PARSING HELPERS
# ============================================================

def parse_side(value: Any) -> Optional[FillSide]:
    """Parse a provider transaction type. Returns None for anything but BUY/SELL."""
    text = str(value or "").strip().upper()
    try:
        return FillSide(text)
    except ValueError:
        return None


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse a provider number into Decimal."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


_TIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%d-%b-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d",
    "%d-%m-%Y",
)


def parse_timestamp(value: Any, reference_date: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware datetime.

    Naive values are taken as IST. A bare "HH:MM:SS" is combined with
    reference_date (the provider reports time of day only).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=IST)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=IST)

    try:
        clock = datetime.strptime(text, "%H:%M:%S").time()
    except ValueError:
        logger.warning(f"Unparseable timestamp: {value}")
        return None

    base = (reference_date or datetime.now(IST)).astimezone(IST)
    return datetime.combine(base.date(), clock, tzinfo=IST)


def in_window(filled_at: Optional[datetime], start: datetime, end: datetime) -> bool:
    """Whether a fill time falls inside [start, end]. Unknown times are kept."""
    if filled_at is None:
        return True
    return start <= filled_at <= end


# ============================================================
# PLATFORM ADAPTER
# ============================================================

class PlatformAdapter(ABC):
    """
    Abstract base class for brokerage adapters.

    Subclasses implement _authenticate() and fetch_strategies();
    the base class owns the state machine, transport and
    fallback execution.
    """

    platform: ClassVar[Platform]
    credential_type: ClassVar[type]

    # Retry a request once after a successful refresh when the token expired
    refresh_on_expired: ClassVar[bool] = False

    def __init__(
        self,
        credentials: Any,
        governor: RequestGovernor,
        provider_config: ProviderConfig,
        timeout_config: Optional[TimeoutConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        force_refresh: bool = False,
    ):
        """
        Initialize adapter.

        Args:
            credentials: Provider-specific credential bundle
            governor: Shared request governor
            provider_config: Endpoints and application credentials
            timeout_config: HTTP timeouts
            session: Optional shared aiohttp session
            force_refresh: Bypass the response cache
        """
        self._check_credentials(credentials)
        self._credentials = credentials
        self._governor = governor
        self._config = provider_config
        self._timeout_config = timeout_config or TimeoutConfig()
        self._session = session
        self._owns_session = session is None
        self._force_refresh = force_refresh

        self._state = AdapterState.UNAUTHENTICATED
        self._failure_reason: Optional[SyncErrorCode] = None
        self._last_error: Optional[str] = None
        self._token_update: Optional[TokenUpdate] = None
        self._transitions: List[StateTransitionEvent] = []
        self._refreshing = False

        self._log = ProviderLogger(self.platform.value)

    def _check_credentials(self, credentials: Any) -> None:
        if not isinstance(credentials, self.credential_type):
            raise InvalidCredentialsError(
                f"{self.platform.value} adapter requires {self.credential_type.__name__}, "
                f"got {type(credentials).__name__}",
                platform=self.platform.value,
            )

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def provider_name(self) -> str:
        return self.platform.value

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def failure_reason(self) -> Optional[SyncErrorCode]:
        """Classified reason of the last authentication failure."""
        return self._failure_reason

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def credentials(self) -> Any:
        return self._credentials

    @property
    def token_update(self) -> Optional[TokenUpdate]:
        """Tokens rotated during this instance's lifetime, if any."""
        return self._token_update

    @property
    def transitions(self) -> List[StateTransitionEvent]:
        return list(self._transitions)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._timeout_config.connection_timeout_seconds,
                total=self._timeout_config.read_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "PlatformAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # STATE MACHINE
    # --------------------------------------------------------

    def _transition(self, to_state: AdapterState, reason: str = "") -> None:
        if to_state not in VALID_TRANSITIONS[self._state]:
            raise AdapterStateError(
                f"{self.provider_name}: invalid transition {self._state.value} -> {to_state.value}"
            )
        self._transitions.append(StateTransitionEvent(self._state, to_state, reason=reason))
        logger.debug(f"{self.provider_name}: {self._state.value} -> {to_state.value} {reason}".rstrip())
        self._state = to_state

    def _record_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
    ) -> None:
        """Remember rotated tokens and carry them into the credential bundle."""
        self._token_update = TokenUpdate(
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
        )
        changes: Dict[str, Any] = {"access_token": access_token}
        if refresh_token and hasattr(self._credentials, "refresh_token"):
            changes["refresh_token"] = refresh_token
        if hasattr(self._credentials, "token_expiry"):
            changes["token_expiry"] = token_expiry
        self._credentials = replace(self._credentials, **changes)

    def supply_credentials(self, credentials: Any) -> None:
        """
        Provide fresh credentials (e.g. a new one-time code).

        Resets a FAILED adapter to UNAUTHENTICATED.
        """
        self._check_credentials(credentials)
        self._credentials = credentials
        if self._state == AdapterState.FAILED:
            self._transitions.append(
                StateTransitionEvent(self._state, AdapterState.UNAUTHENTICATED, reason="fresh credentials")
            )
            self._state = AdapterState.UNAUTHENTICATED
        self._failure_reason = None
        self._last_error = None

    # --------------------------------------------------------
    # CAPABILITIES
    # --------------------------------------------------------

    async def authenticate(self) -> bool:
        """
        Establish an authenticated session.

        Returns:
            True on success. On failure the classified reason is
            available as failure_reason and the adapter is FAILED.
        """
        if self._state == AdapterState.FAILED:
            return False
        if self._state in (AdapterState.AUTHENTICATED, AdapterState.FETCHING):
            return True

        self._transition(AdapterState.AUTHENTICATING)
        try:
            await self._authenticate()
        except BrokerError as e:
            code = e.code if e.code in AUTH_CODES else SyncErrorCode.UNKNOWN
            self._failure_reason = code
            self._last_error = e.message
            self._transition(AdapterState.FAILED, reason=code.value)
            logger.warning(f"{self.provider_name} authentication failed: {code.value}: {e.message}")
            return False

        self._transition(AdapterState.AUTHENTICATED)
        logger.info(f"{self.provider_name} authenticated")
        return True

    async def fetch_trades(self, start: datetime, end: datetime) -> List[RawFill]:
        """
        Fetch raw fills between start and end.

        Returns:
            Fills ordered as reported; [] when there are none

        Raises:
            AuthenticationError: Session could not be established
            BrokerError: Classified fetch failure
        """
        if self._state != AdapterState.AUTHENTICATED:
            if not await self.authenticate():
                raise _auth_error_for(self._failure_reason, self._last_error, self.provider_name)

        self._transition(AdapterState.FETCHING)
        try:
            return await run_strategies(
                self.fetch_strategies(),
                start,
                end,
                provider=self.provider_name,
            )
        finally:
            self._transition(AdapterState.AUTHENTICATED)

    async def refresh_token(self) -> bool:
        """
        Renew the session with a refresh token.

        Returns:
            True if new tokens were obtained
        """
        self._refreshing = True
        try:
            refreshed = await self._refresh()
        except BrokerError as e:
            logger.warning(f"{self.provider_name} token refresh failed: {e.message}")
            self._last_error = e.message
            return False
        finally:
            self._refreshing = False
        if refreshed:
            logger.info(f"{self.provider_name} token refreshed")
        return refreshed

    async def test_connection(self) -> ConnectionTestResult:
        """Check connectivity. Subclasses add endpoint-level details."""
        authenticated = await self.authenticate()
        if not authenticated:
            return ConnectionTestResult(
                success=False,
                message=f"Authentication failed: {self._last_error}",
                details={"authenticated": False, "reason": self._failure_reason.value if self._failure_reason else None},
            )
        return ConnectionTestResult(
            success=True,
            message="Authentication successful",
            details={"authenticated": True},
        )

    # --------------------------------------------------------
    # SUBCLASS HOOKS
    # --------------------------------------------------------

    @abstractmethod
    async def _authenticate(self) -> None:
        """Authenticate or raise a typed BrokerError."""
        pass

    @abstractmethod
    def fetch_strategies(self) -> List[FetchStrategy]:
        """Ordered trade-history fetch strategies."""
        pass

    async def _refresh(self) -> bool:
        """Refresh tokens. Providers without refresh support return False."""
        logger.info(f"{self.provider_name} does not support token refresh")
        return False

    def _headers(self) -> Dict[str, str]:
        """Headers sent with every request."""
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _error_message(self, payload: Any) -> str:
        if isinstance(payload, dict):
            for key in ("message", "errorMessage", "error_description", "error"):
                value = payload.get(key)
                if value:
                    return str(value)
        return ""

    def _raise_for_response(self, status: int, payload: Any) -> None:
        """Map a non-success response to a typed error."""
        if status >= 400:
            raise map_http_status(status, self._error_message(payload), platform=self.provider_name)

    def _is_success_payload(self, payload: Any) -> bool:
        """Whether a response may be cached."""
        return True

    # --------------------------------------------------------
    # TRANSPORT
    # --------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Perform one HTTP request and return the decoded payload."""
        url = path if path.startswith("http") else f"{self._config.base_url}{path}"
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)

        request_id = self._log.log_request(method, path, request_headers, params or json_body or data)
        started = time.monotonic()

        try:
            async with self._get_session().request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=request_headers,
            ) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {"message": await response.text()}
                status = response.status

        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}", platform=self.provider_name)
        except asyncio.TimeoutError:
            raise NetworkError("Request timeout", platform=self.provider_name)

        latency_ms = (time.monotonic() - started) * 1000
        try:
            self._raise_for_response(status, payload)
        except BrokerError as e:
            self._log.log_response(request_id, status, latency_ms, False, e.message)
            raise

        self._log.log_response(request_id, status, latency_ms, True)
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        cacheable: Optional[bool] = None,
    ) -> Any:
        """Send a request through the governor (pacing, cache, retry)."""
        if cacheable is None:
            cacheable = method == "GET"

        async def call() -> Any:
            return await self._send(method, path, params=params, json_body=json_body, data=data, headers=headers)

        key_params = {"params": params, "body": json_body, "token": self._cache_scope()}

        try:
            return await self._governor.execute(
                self.provider_name,
                f"{method} {path}",
                call,
                params=key_params,
                cacheable=cacheable,
                bypass_cache=self._force_refresh,
                cache_if=self._is_success_payload,
            )
        except TokenExpiredError:
            if not self.refresh_on_expired or self._refreshing or not await self.refresh_token():
                raise

        logger.info(f"{self.provider_name} retrying {method} {path} with refreshed token")
        return await self._governor.execute(
            self.provider_name,
            f"{method} {path}",
            call,
            params={"params": params, "body": json_body, "token": self._cache_scope()},
            cacheable=cacheable,
            bypass_cache=True,
            cache_if=self._is_success_payload,
        )

    def _cache_scope(self) -> str:
        """Cache partition so accounts never see each other's responses."""
        token = getattr(self._credentials, "access_token", None) or ""
        return hashlib.sha256(token.encode()).hexdigest()[:16]


def _auth_error_for(
    reason: Optional[SyncErrorCode],
    message: Optional[str],
    platform: str,
) -> AuthenticationError:
    text = message or "Authentication failed"
    if reason == SyncErrorCode.TOTP_INVALID:
        return TotpInvalidError(text, platform=platform)
    if reason == SyncErrorCode.TOKEN_EXPIRED:
        return TokenExpiredError(text, platform=platform)
    if reason == SyncErrorCode.REACTIVATION_REQUIRED:
        return ReactivationRequiredError(text, platform=platform)
    return AuthenticationError(text, platform=platform)
