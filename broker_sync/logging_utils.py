"""
Broker Sync - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Request/response logging for provider calls with:
- Credential masking (API keys, PINs, TOTP codes, tokens)
- Structured JSON log entries
- Request correlation ids

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, PINs, one-time codes or tokens
2. Mask sensitive headers (Authorization, X-PrivateKey, ...)
3. Mask sensitive body fields before logging
4. Truncate response previews

============================================================
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Header names that should be masked
SENSITIVE_HEADERS = {
    "authorization",
    "x-privatekey",
    "x-api-key",
    "api-key",
    "access-token",
    "x-kite-version-token",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "api_key",
    "apikey",
    "api_secret",
    "client_secret",
    "secret",
    "password",
    "pin",
    "totp",
    "checksum",
    "code",
    "request_token",
    "token",
    "jwttoken",
    "access_token",
    "refresh_token",
    "refreshtoken",
}

# Short secrets where any visible prefix gives most of the value away
FULLY_MASKED_PARAMS = {"pin", "totp", "password", "checksum"}

# Long opaque strings (JWTs, keys) inside free text
_OPAQUE_TOKEN = re.compile(r"[A-Za-z0-9_\-\.]{40,}")


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or show_chars <= 0 or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Mask sensitive headers."""
    if not headers:
        return {}

    masked = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            masked[key] = mask_value(str(value))
        else:
            masked[key] = value
    return masked


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask sensitive parameters, recursing into nested dicts."""
    if not params:
        return {}

    masked = {}
    for key, value in params.items():
        lowered = key.lower()
        if lowered in FULLY_MASKED_PARAMS:
            masked[key] = mask_value(str(value), show_chars=0) if value else value
        elif lowered in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked[key] = _OPAQUE_TOKEN.sub("***TOKEN***", value)
        else:
            masked[key] = value
    return masked


# ============================================================
# LOG ENTRY STRUCTURES
# ============================================================

@dataclass
class RequestLogEntry:
    """Structured log entry for requests."""

    timestamp: str
    provider: str
    method: str
    endpoint: str
    request_id: str
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, default=str)


@dataclass
class ResponseLogEntry:
    """Structured log entry for responses."""

    timestamp: str
    provider: str
    request_id: str
    status_code: int
    latency_ms: float
    success: bool
    error_message: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, default=str)


# ============================================================
# PROVIDER LOGGER
# ============================================================

class ProviderLogger:
    """
    Secure logger for provider HTTP calls.

    Provides structured logging with automatic credential masking.
    """

    def __init__(self, provider: str, logger_name: Optional[str] = None):
        self._provider = provider
        self._logger = logging.getLogger(logger_name or f"broker_sync.provider.{provider.lower()}")
        self._request_counter = 0

    def log_request(
        self,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log outgoing request.

        Returns:
            Request ID for correlation
        """
        self._request_counter += 1
        request_id = f"{self._provider}-{self._request_counter}"

        entry = RequestLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            provider=self._provider,
            method=method,
            endpoint=endpoint,
            request_id=request_id,
            headers=mask_headers(headers) or None,
            params=mask_params(params) or None,
        )
        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id

    def log_response(
        self,
        request_id: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Log incoming response."""
        entry = ResponseLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            provider=self._provider,
            request_id=request_id,
            status_code=status_code,
            latency_ms=round(latency_ms, 1),
            success=success,
            error_message=_OPAQUE_TOKEN.sub("***TOKEN***", error_message[:200]) if error_message else None,
        )

        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")
