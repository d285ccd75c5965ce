"""
Broker Sync - Credential Bundles.

============================================================
PURPOSE
============================================================
One credential type per provider, validated at construction.

Each adapter receives exactly the bundle it understands, so a
missing client code or token fails before any network call.

============================================================
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import ClassVar, Optional, Union

from .errors import InvalidCredentialsError, UnsupportedPlatformError
from .types import BrokerAccount, Platform


def _token_valid(token: Optional[str], expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if not token:
        return False
    if expiry is None:
        return True
    now = now or datetime.now(timezone.utc)
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry > now


# ============================================================
# PROVIDER CREDENTIALS
# ============================================================

@dataclass(frozen=True)
class AngelOneCredentials:
    """Password + TOTP login (SmartAPI)."""

    platform: ClassVar[Platform] = Platform.ANGEL_ONE

    api_key: str
    client_code: str
    pin: str
    totp: Optional[str] = None
    state: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None

    def __post_init__(self):
        missing = [
            name for name in ("api_key", "client_code", "pin")
            if not getattr(self, name)
        ]
        if missing:
            raise InvalidCredentialsError(
                f"Angel One credentials missing: {', '.join(missing)}",
                platform=self.platform.value,
            )

    def has_valid_session(self, now: Optional[datetime] = None) -> bool:
        return _token_valid(self.access_token, self.token_expiry, now)


@dataclass(frozen=True)
class ZerodhaCredentials:
    """Kite Connect request-token exchange or stored access token."""

    platform: ClassVar[Platform] = Platform.ZERODHA

    api_key: str
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    request_token: Optional[str] = None

    def __post_init__(self):
        if not self.api_key:
            raise InvalidCredentialsError("Zerodha credentials missing: api_key", platform=self.platform.value)
        if not self.access_token and not (self.request_token and self.api_secret):
            raise InvalidCredentialsError(
                "Zerodha requires an access token or a request token with api secret",
                platform=self.platform.value,
            )


@dataclass(frozen=True)
class UpstoxCredentials:
    """OAuth authorization-code credentials."""

    platform: ClassVar[Platform] = Platform.UPSTOX

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    authorization_code: Optional[str] = None
    redirect_uri: Optional[str] = None

    def __post_init__(self):
        if not self.access_token and not self.authorization_code:
            raise InvalidCredentialsError(
                "Upstox requires an access token or an authorization code",
                platform=self.platform.value,
            )
        if self.authorization_code and not (self.api_key and self.api_secret):
            raise InvalidCredentialsError(
                "Upstox code exchange requires api key and api secret",
                platform=self.platform.value,
            )


@dataclass(frozen=True)
class DhanCredentials:
    """Externally issued session token."""

    platform: ClassVar[Platform] = Platform.DHAN

    access_token: str
    client_id: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None

    def __post_init__(self):
        if not self.access_token:
            raise InvalidCredentialsError("Dhan credentials missing: access_token", platform=self.platform.value)


@dataclass(frozen=True)
class MockCredentials:
    """Credentials for the in-process mock adapter."""

    platform: ClassVar[Platform] = Platform.MOCK

    access_token: Optional[str] = None
    totp: Optional[str] = None


Credentials = Union[
    AngelOneCredentials,
    ZerodhaCredentials,
    UpstoxCredentials,
    DhanCredentials,
    MockCredentials,
]


# ============================================================
# ACCOUNT -> CREDENTIALS
# ============================================================

def _extra(account: BrokerAccount, *names: str) -> Optional[str]:
    for name in names:
        value = account.extras.get(name)
        if value:
            return value
    return None


def credentials_from_account(
    account: BrokerAccount,
    one_time_code: Optional[str] = None,
) -> Credentials:
    """
    Build the provider credential bundle for an account.

    Args:
        account: Stored broker account
        one_time_code: Fresh TOTP overriding the stored one

    Returns:
        Provider-specific credentials

    Raises:
        InvalidCredentialsError: If required fields are missing
        UnsupportedPlatformError: If the platform has no credential type
    """
    platform = account.platform

    if platform == Platform.ANGEL_ONE:
        return AngelOneCredentials(
            api_key=account.api_key or "",
            client_code=_extra(account, "client_code", "clientcode") or "",
            pin=account.api_secret or _extra(account, "pin") or "",
            totp=one_time_code or _extra(account, "totp"),
            state=_extra(account, "state") or "",
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            token_expiry=account.token_expiry,
        )

    if platform == Platform.ZERODHA:
        return ZerodhaCredentials(
            api_key=account.api_key or "",
            api_secret=account.api_secret,
            access_token=account.access_token,
            request_token=_extra(account, "request_token"),
        )

    if platform == Platform.UPSTOX:
        return UpstoxCredentials(
            api_key=account.api_key,
            api_secret=account.api_secret,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            token_expiry=account.token_expiry,
            authorization_code=_extra(account, "authorization_code", "code"),
            redirect_uri=_extra(account, "redirect_uri"),
        )

    if platform == Platform.DHAN:
        return DhanCredentials(
            access_token=account.access_token or "",
            client_id=_extra(account, "client_id", "dhan_client_id") or account.api_key,
            refresh_token=account.refresh_token,
            token_expiry=account.token_expiry,
        )

    if platform == Platform.MOCK:
        return MockCredentials(
            access_token=account.access_token,
            totp=one_time_code or _extra(account, "totp"),
        )

    raise UnsupportedPlatformError(f"Platform {platform.value} not implemented yet", platform=platform.value)


def with_one_time_code(credentials: Credentials, code: str) -> Credentials:
    """Return a copy carrying a fresh one-time code."""
    if isinstance(credentials, (AngelOneCredentials, MockCredentials)):
        return replace(credentials, totp=code)
    return credentials
