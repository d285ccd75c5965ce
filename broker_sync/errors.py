"""
Broker Sync - Error Handling and Classification.

============================================================
PURPOSE
============================================================
Standardized error handling for broker synchronization with:
- A stable, machine-readable error taxonomy
- Typed exceptions carrying code and retry eligibility
- Provider-specific error code mapping
- Classification of arbitrary failures into the taxonomy

============================================================
ERROR CODES
============================================================
1. auth_failed            - Credentials rejected
2. totp_invalid           - One-time code wrong or expired
3. token_expired          - Session token no longer valid
4. reactivation_required  - Account must be reactivated at the broker
5. tradebook_unavailable  - Trade history not accessible
6. rate_limited           - Provider throttling
7. validation_skip        - Trade skipped by validation
8. fetch_failed           - Any other fetch failure
9. unknown                - Unclassified

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Iterable, Tuple


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class SyncErrorCode(Enum):
    """Stable error codes reported to callers."""

    AUTH_FAILED = "auth_failed"
    TOTP_INVALID = "totp_invalid"
    TOKEN_EXPIRED = "token_expired"
    REACTIVATION_REQUIRED = "reactivation_required"
    TRADEBOOK_UNAVAILABLE = "tradebook_unavailable"
    RATE_LIMITED = "rate_limited"
    VALIDATION_SKIP = "validation_skip"
    FETCH_FAILED = "fetch_failed"
    UNKNOWN = "unknown"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# Codes that mean the session itself is unusable. Fallback probing stops on these.
AUTH_CODES = frozenset({
    SyncErrorCode.AUTH_FAILED,
    SyncErrorCode.TOTP_INVALID,
    SyncErrorCode.TOKEN_EXPIRED,
    SyncErrorCode.REACTIVATION_REQUIRED,
})

# Priority used when every account of a batch failed.
DOMINANT_PRIORITY = (
    SyncErrorCode.TOTP_INVALID,
    SyncErrorCode.TOKEN_EXPIRED,
    SyncErrorCode.AUTH_FAILED,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class BrokerError(Exception):
    """
    Base exception for broker synchronization failures.

    Carries a taxonomy code and retry eligibility so callers can
    decide on retries and reporting without string matching.
    """

    code: SyncErrorCode = SyncErrorCode.UNKNOWN
    retry: RetryEligibility = RetryEligibility.NO_RETRY

    def __init__(
        self,
        message: str,
        code: Optional[SyncErrorCode] = None,
        retry: Optional[RetryEligibility] = None,
        http_status: Optional[int] = None,
        provider_code: Optional[str] = None,
        platform: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retry is not None:
            self.retry = retry
        self.http_status = http_status
        self.provider_code = provider_code
        self.platform = platform
        self.details = details or {}

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retry": self.retry.value,
            "http_status": self.http_status,
            "provider_code": self.provider_code,
            "platform": self.platform,
        }


class AuthenticationError(BrokerError):
    code = SyncErrorCode.AUTH_FAILED


class TotpInvalidError(AuthenticationError):
    code = SyncErrorCode.TOTP_INVALID


class TokenExpiredError(AuthenticationError):
    code = SyncErrorCode.TOKEN_EXPIRED


class ReactivationRequiredError(AuthenticationError):
    code = SyncErrorCode.REACTIVATION_REQUIRED


class TradebookUnavailableError(BrokerError):
    code = SyncErrorCode.TRADEBOOK_UNAVAILABLE


class RateLimitError(BrokerError):
    code = SyncErrorCode.RATE_LIMITED
    retry = RetryEligibility.BACKOFF


class FetchError(BrokerError):
    code = SyncErrorCode.FETCH_FAILED


class NetworkError(FetchError):
    """Connection failure or timeout."""

    retry = RetryEligibility.RETRY


class RequestRejectedError(FetchError):
    """Hard reject from the provider. Never retried."""

    retry = RetryEligibility.NO_RETRY


class InvalidCredentialsError(AuthenticationError, ValueError):
    """Credential bundle is missing required fields."""


class UnsupportedPlatformError(BrokerError, ValueError):
    code = SyncErrorCode.UNKNOWN


class NoConnectedAccountsError(BrokerError):
    """User has no active accounts matching the request."""


# ============================================================
# PROVIDER ERROR MAPPING
# ============================================================

# Angel One error codes -> (exception class, retry eligibility)
ANGEL_ONE_ERROR_MAP: Dict[str, Tuple[type, RetryEligibility]] = {
    "AB1050": (TotpInvalidError, RetryEligibility.NO_RETRY),     # Invalid TOTP
    "AB1007": (AuthenticationError, RetryEligibility.NO_RETRY),  # Invalid client code / PIN
    "AB1000": (AuthenticationError, RetryEligibility.NO_RETRY),  # Invalid credentials
    "AB1010": (TokenExpiredError, RetryEligibility.NO_RETRY),    # Session expired
    "AB8050": (TokenExpiredError, RetryEligibility.NO_RETRY),    # Invalid refresh token
    "AB8051": (TokenExpiredError, RetryEligibility.NO_RETRY),    # Refresh token expired
    "AG8001": (TokenExpiredError, RetryEligibility.NO_RETRY),    # Invalid token
    "AG8002": (TokenExpiredError, RetryEligibility.NO_RETRY),    # Token expired
    "AB1004": (FetchError, RetryEligibility.RETRY),              # Something went wrong
    "AB2001": (FetchError, RetryEligibility.RETRY),              # Internal error
}


def map_http_status(
    status: int,
    message: str = "",
    platform: Optional[str] = None,
) -> BrokerError:
    """
    Map an HTTP failure to a typed error.

    Args:
        status: HTTP status code
        message: Provider error message
        platform: Platform identifier for context

    Returns:
        BrokerError subclass instance
    """
    lowered = (message or "").lower()
    text = message or f"HTTP {status}"

    if "request rejected" in lowered:
        return RequestRejectedError(text, http_status=status, platform=platform)
    if status == 429 or "exceeding access rate" in lowered or "too many requests" in lowered:
        return RateLimitError(text, http_status=status, platform=platform)
    if status == 401:
        return TokenExpiredError(text, http_status=status, platform=platform)
    if status == 403:
        return AuthenticationError(text, http_status=status, platform=platform)
    if status == 404:
        return TradebookUnavailableError(text, http_status=status, platform=platform)
    if status >= 500:
        return FetchError(text, retry=RetryEligibility.RETRY, http_status=status, platform=platform)
    return FetchError(text, http_status=status, platform=platform)


def map_angel_one_error(
    error_code: Optional[str],
    message: str = "",
    http_status: Optional[int] = None,
) -> BrokerError:
    """
    Map an Angel One error response to a typed error.

    Args:
        error_code: Angel One error code (e.g. AB1050)
        message: Error message
        http_status: HTTP status code

    Returns:
        BrokerError subclass instance
    """
    lowered = (message or "").lower()
    text = message or f"Angel One error {error_code}"

    if "invalid totp" in lowered:
        return TotpInvalidError(text, provider_code=error_code, http_status=http_status, platform="ANGEL_ONE")
    if "request rejected" in lowered:
        return RequestRejectedError(text, provider_code=error_code, http_status=http_status, platform="ANGEL_ONE")
    if "exceeding access rate" in lowered:
        return RateLimitError(text, provider_code=error_code, http_status=http_status, platform="ANGEL_ONE")

    if error_code and error_code in ANGEL_ONE_ERROR_MAP:
        error_class, retry = ANGEL_ONE_ERROR_MAP[error_code]
        return error_class(
            text,
            retry=retry,
            provider_code=error_code,
            http_status=http_status,
            platform="ANGEL_ONE",
        )

    # Fallback on HTTP status
    if http_status and http_status != 200:
        error = map_http_status(http_status, message, platform="ANGEL_ONE")
        error.provider_code = error_code
        return error

    logger.warning(f"Unknown Angel One error code: {error_code} - {message}")
    return FetchError(text, provider_code=error_code, http_status=http_status, platform="ANGEL_ONE")


# Kite Connect exception types -> exception class
ZERODHA_ERROR_MAP: Dict[str, type] = {
    "TokenException": TokenExpiredError,
    "PermissionException": AuthenticationError,
    "UserException": AuthenticationError,
    "TwoFAException": TotpInvalidError,
    "NetworkException": NetworkError,
    "DataException": FetchError,
    "GeneralException": FetchError,
    "InputException": FetchError,
}


def map_zerodha_error(
    error_type: Optional[str],
    message: str = "",
    http_status: Optional[int] = None,
) -> BrokerError:
    """
    Map a Kite Connect error response to a typed error.

    Args:
        error_type: Kite exception type (e.g. TokenException)
        message: Error message
        http_status: HTTP status code

    Returns:
        BrokerError subclass instance
    """
    text = message or f"Zerodha error {error_type}"

    if "incorrect `api_key` or `access_token`" in (message or "").lower():
        return TokenExpiredError(text, provider_code=error_type, http_status=http_status, platform="ZERODHA")

    if error_type in ZERODHA_ERROR_MAP:
        return ZERODHA_ERROR_MAP[error_type](
            text,
            provider_code=error_type,
            http_status=http_status,
            platform="ZERODHA",
        )

    error = map_http_status(http_status or 500, message, platform="ZERODHA")
    error.provider_code = error_type
    return error


# ============================================================
# CLASSIFICATION
# ============================================================

def classify_exception(error: BaseException, platform: Optional[str] = None) -> SyncErrorCode:
    """
    Classify an arbitrary failure into the error taxonomy.

    Typed errors report their own code. Untyped errors are matched
    on well-known provider messages.
    """
    if isinstance(error, BrokerError):
        return error.code

    message = str(error)
    lowered = message.lower()

    if "tokenexception" in lowered or "incorrect `api_key` or `access_token`" in lowered:
        return SyncErrorCode.TOKEN_EXPIRED
    if "reactivation" in lowered:
        return SyncErrorCode.REACTIVATION_REQUIRED
    if "404" in message or "not found" in lowered:
        return SyncErrorCode.TRADEBOOK_UNAVAILABLE
    if "invalid" in lowered and ("api_key" in lowered or "access_token" in lowered):
        return SyncErrorCode.AUTH_FAILED
    if "rate limit" in lowered or "429" in message:
        return SyncErrorCode.RATE_LIMITED
    return SyncErrorCode.FETCH_FAILED


def dominant_error_code(codes: Iterable[Optional[str]]) -> str:
    """
    Pick the single error code reported for a fully failed batch.

    Priority: totp_invalid > token_expired > auth_failed > first other
    code in account order.
    """
    present = [code for code in codes if code]
    for preferred in DOMINANT_PRIORITY:
        if preferred.value in present:
            return preferred.value
    if present:
        return present[0]
    return SyncErrorCode.UNKNOWN.value


# ============================================================
# ERROR RECORD
# ============================================================

@dataclass
class ErrorRecord:
    """Recorded per-account failure, used in logs and results."""

    code: SyncErrorCode
    message: str
    platform: Optional[str] = None
    account_id: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        platform: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> "ErrorRecord":
        return cls(
            code=classify_exception(error, platform),
            message=str(error),
            platform=platform,
            account_id=account_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "platform": self.platform,
            "account_id": self.account_id,
        }
