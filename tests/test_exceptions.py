"""Tests for error classification."""

import httpx
import pytest

from ai_gateway.billing import QuotaCheck, QuotaReason
from ai_gateway.core import (
    AllProvidersFailedError,
    APIKeyError,
    ErrorCategory,
    InputTooLargeError,
    ModelNotFoundError,
    ProviderTimeoutError,
    ProviderTransientError,
    QuotaExceededError,
    RateLimitError,
    classify_provider_error,
)


class _HTTPError(Exception):
    def __init__(self, message, status_code, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = httpx.Response(status_code, headers=headers or {})


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (httpx.ConnectTimeout("connect timed out"), ProviderTimeoutError),
        (TimeoutError(), ProviderTimeoutError),
        (_HTTPError("server overloaded", 503), ProviderTransientError),
        (_HTTPError("slow down", 429), RateLimitError),
        (_HTTPError("forbidden", 403), APIKeyError),
        (_HTTPError("payload", 413), InputTooLargeError),
        (_HTTPError("model gpt-9 does not exist", 404), ModelNotFoundError),
        (RuntimeError("context_length_exceeded"), InputTooLargeError),
        (RuntimeError("socket closed"), ProviderTransientError),
    ],
)
def test_classify_provider_error(error, expected):
    """Test SDK and transport errors map onto the taxonomy."""
    classified = classify_provider_error(error, "openai")

    assert type(classified) is expected
    assert classified.provider == "openai"


def test_classification_keeps_gateway_errors():
    """Test already-classified errors pass through unchanged."""
    error = APIKeyError("bad key", provider="claude")

    assert classify_provider_error(error, "openai") is error


def test_rate_limit_reads_retry_after():
    """Test Retry-After is carried on the error."""
    error = classify_provider_error(_HTTPError("slow down", 429, {"retry-after": "7"}), "gemini")

    assert isinstance(error, RateLimitError)
    assert error.retry_after == 7


def test_retryability():
    """Test transient errors allow fallback and hard errors do not."""
    assert ProviderTimeoutError("x").retryable
    assert RateLimitError("x").retryable
    assert not APIKeyError("x").retryable
    assert not InputTooLargeError("x").retryable
    assert APIKeyError("x").trips_breaker
    assert not InputTooLargeError("x").trips_breaker
    assert APIKeyError("x").category == ErrorCategory.PROVIDER_HARD


def test_quota_exceeded_error_message():
    """Test quota errors expose reason and a user-facing message."""
    check = QuotaCheck(ok=False, reason=QuotaReason.OVER_LIMIT, remaining=100, limit=50_000, would_exceed_by=400)

    error = QuotaExceededError(check, user_id="user-1")

    assert error.code == "OVER_LIMIT"
    assert error.category == ErrorCategory.QUOTA_EXCEEDED
    assert "would exceed by 400" in str(error)
    assert "monthly token limit" in error.user_message


def test_all_providers_failed_without_attempts():
    """Test exhaustion with no candidate still has a message."""
    error = AllProvidersFailedError()

    assert "no provider available" in str(error)
    assert error.attempts == []
