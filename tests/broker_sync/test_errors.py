"""
Error Handling Tests.

============================================================
PURPOSE
============================================================
Tests for the error taxonomy, provider error mapping and
failure classification.

============================================================
"""

import pytest

from broker_sync.errors import (
    AuthenticationError,
    ErrorRecord,
    FetchError,
    NetworkError,
    RateLimitError,
    ReactivationRequiredError,
    RequestRejectedError,
    RetryEligibility,
    SyncErrorCode,
    TokenExpiredError,
    TotpInvalidError,
    TradebookUnavailableError,
    classify_exception,
    dominant_error_code,
    map_angel_one_error,
    map_http_status,
    map_zerodha_error,
)


# ============================================================
# HTTP STATUS MAPPING
# ============================================================

class TestHttpStatusMapping:
    """Tests for generic HTTP status mapping."""

    @pytest.mark.parametrize("status,expected", [
        (401, TokenExpiredError),
        (403, AuthenticationError),
        (404, TradebookUnavailableError),
        (429, RateLimitError),
        (500, FetchError),
        (400, FetchError),
    ])
    def test_status_mapping(self, status, expected):
        assert type(map_http_status(status)) is expected

    def test_server_errors_retryable(self):
        assert map_http_status(503).is_retryable()
        assert not map_http_status(400).is_retryable()

    def test_request_rejected_is_hard_reject(self):
        error = map_http_status(200, "Request Rejected")

        assert isinstance(error, RequestRejectedError)
        assert error.retry == RetryEligibility.NO_RETRY

    def test_access_rate_message_is_throttling(self):
        error = map_http_status(403, "Access denied because of exceeding access rate")

        assert isinstance(error, RateLimitError)
        assert error.is_retryable()


# ============================================================
# PROVIDER MAPPING
# ============================================================

class TestAngelOneMapping:
    """Tests for Angel One error codes."""

    def test_invalid_totp_code(self):
        error = map_angel_one_error("AB1050", "Invalid totp")

        assert isinstance(error, TotpInvalidError)
        assert error.code == SyncErrorCode.TOTP_INVALID
        assert error.provider_code == "AB1050"

    def test_invalid_totp_message_without_code(self):
        assert isinstance(map_angel_one_error(None, "Invalid TOTP"), TotpInvalidError)

    @pytest.mark.parametrize("code", ["AB1010", "AB8050", "AG8001", "AG8002"])
    def test_session_codes_map_to_token_expired(self, code):
        assert map_angel_one_error(code, "").code == SyncErrorCode.TOKEN_EXPIRED

    def test_credentials_code(self):
        assert map_angel_one_error("AB1007", "Invalid client code").code == SyncErrorCode.AUTH_FAILED

    def test_internal_error_retryable(self):
        assert map_angel_one_error("AB1004", "Something went wrong").is_retryable()

    def test_request_rejected(self):
        assert isinstance(map_angel_one_error(None, "Request Rejected"), RequestRejectedError)

    def test_unknown_code_falls_back_to_status(self):
        assert isinstance(map_angel_one_error("ZZ0000", "boom", http_status=404), TradebookUnavailableError)
        assert isinstance(map_angel_one_error("ZZ0000", "boom"), FetchError)


class TestZerodhaMapping:
    """Tests for Kite Connect exception types."""

    @pytest.mark.parametrize("error_type,code", [
        ("TokenException", SyncErrorCode.TOKEN_EXPIRED),
        ("PermissionException", SyncErrorCode.AUTH_FAILED),
        ("TwoFAException", SyncErrorCode.TOTP_INVALID),
        ("NetworkException", SyncErrorCode.FETCH_FAILED),
        ("InputException", SyncErrorCode.FETCH_FAILED),
    ])
    def test_error_types(self, error_type, code):
        assert map_zerodha_error(error_type, "msg").code == code

    def test_incorrect_token_message(self):
        error = map_zerodha_error("InputException", "Incorrect `api_key` or `access_token`.")

        assert isinstance(error, TokenExpiredError)

    def test_network_exception_retryable(self):
        assert isinstance(map_zerodha_error("NetworkException", "down"), NetworkError)
        assert map_zerodha_error("NetworkException", "down").is_retryable()


# ============================================================
# CLASSIFICATION
# ============================================================

class TestClassification:
    """Tests for classify_exception."""

    def test_typed_errors_report_own_code(self):
        assert classify_exception(ReactivationRequiredError("x")) == SyncErrorCode.REACTIVATION_REQUIRED
        assert classify_exception(RateLimitError("x")) == SyncErrorCode.RATE_LIMITED

    @pytest.mark.parametrize("message,code", [
        ("kiteconnect.exceptions.TokenException: expired", SyncErrorCode.TOKEN_EXPIRED),
        ("Incorrect `api_key` or `access_token`.", SyncErrorCode.TOKEN_EXPIRED),
        ("Account needs reactivation", SyncErrorCode.REACTIVATION_REQUIRED),
        ("HTTP 404 Not Found", SyncErrorCode.TRADEBOOK_UNAVAILABLE),
        ("invalid api_key supplied", SyncErrorCode.AUTH_FAILED),
        ("HTTP 429", SyncErrorCode.RATE_LIMITED),
        ("connection reset", SyncErrorCode.FETCH_FAILED),
    ])
    def test_untyped_messages(self, message, code):
        assert classify_exception(RuntimeError(message)) == code

    def test_error_record(self):
        record = ErrorRecord.from_exception(TotpInvalidError("Invalid totp"), "ANGEL_ONE", "acc-1")

        assert record.to_dict() == {
            "code": "totp_invalid",
            "message": "Invalid totp",
            "platform": "ANGEL_ONE",
            "account_id": "acc-1",
        }


# ============================================================
# DOMINANT CODE
# ============================================================

class TestDominantErrorCode:
    """Tests for the batch-level error code."""

    def test_totp_beats_everything(self):
        assert dominant_error_code(["fetch_failed", "auth_failed", "totp_invalid", "token_expired"]) == "totp_invalid"

    def test_token_expired_beats_auth_failed(self):
        assert dominant_error_code(["auth_failed", "token_expired"]) == "token_expired"

    def test_auth_failed_beats_other(self):
        assert dominant_error_code(["rate_limited", "auth_failed"]) == "auth_failed"

    def test_first_other_code(self):
        assert dominant_error_code(["tradebook_unavailable", "rate_limited"]) == "tradebook_unavailable"

    def test_no_codes(self):
        assert dominant_error_code([None, None]) == "unknown"
