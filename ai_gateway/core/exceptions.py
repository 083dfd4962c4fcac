"""Exception taxonomy for the AI request gateway."""

from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from ai_gateway.billing.models import QuotaCheck


class ErrorCategory(str, Enum):
    """Coarse error class used for propagation decisions."""

    VALIDATION = "VALIDATION"
    PROVIDER_TRANSIENT = "PROVIDER_TRANSIENT"
    PROVIDER_HARD = "PROVIDER_HARD"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    INTERNAL = "INTERNAL"


class GatewayError(Exception):
    """Base exception for gateway errors."""

    category = ErrorCategory.INTERNAL
    code = "GATEWAY_ERROR"
    retryable = False

    def __init__(self, message: str, provider: str = "gateway") -> None:
        """Initialize error.

        Args:
            message: Error message
            provider: Provider name (or the gateway component raising it)
        """
        self.provider = provider
        self.detail = message
        super().__init__(f"[{provider}] {message}")


class InvalidRequestError(GatewayError):
    """Raised when the gateway receives malformed input."""

    category = ErrorCategory.VALIDATION
    code = "INVALID_REQUEST"


class ProviderError(GatewayError):
    """Base class for failures reported by an upstream provider."""

    category = ErrorCategory.PROVIDER_TRANSIENT
    code = "PROVIDER_ERROR"
    retryable = True
    trips_breaker = True


class ProviderTransientError(ProviderError):
    """Timeouts, rate limits and 5xx responses; the next candidate may succeed."""


class RateLimitError(ProviderTransientError):
    """Raised when rate limit is exceeded."""

    code = "RATE_LIMIT"

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        retry_after: int | None = None,
    ) -> None:
        """Initialize error.

        Args:
            message: Error message
            provider: Provider name
            retry_after: Seconds to wait before retrying
        """
        self.retry_after = retry_after
        super().__init__(message, provider=provider)


class ProviderTimeoutError(ProviderTransientError):
    """Raised when request times out."""

    code = "TIMEOUT"


class ProviderHardError(ProviderError):
    """Failures another provider is unlikely to fix; aborts the fallback chain."""

    category = ErrorCategory.PROVIDER_HARD
    retryable = False


class APIKeyError(ProviderHardError):
    """Raised when API key is invalid or missing."""

    code = "INVALID_API_KEY"


class InputTooLargeError(ProviderHardError):
    """Raised when the prompt exceeds the model's context window."""

    code = "INPUT_TOO_LARGE"
    # The request is at fault, not the provider
    trips_breaker = False


class ModelNotFoundError(ProviderHardError):
    """Raised when requested model is not available."""

    code = "MODEL_NOT_FOUND"

    def __init__(self, model: str, provider: str = "unknown") -> None:
        """Initialize error.

        Args:
            model: Model name
            provider: Provider name
        """
        self.model = model
        super().__init__(f"Model '{model}' not found", provider=provider)


class CircuitOpenError(GatewayError):
    """Raised when a provider's circuit breaker rejects a call."""

    category = ErrorCategory.CIRCUIT_OPEN
    code = "CIRCUIT_OPEN"
    retryable = True

    def __init__(self, provider: str, retry_in: float | None = None) -> None:
        self.retry_in = retry_in
        super().__init__("Circuit breaker is OPEN", provider=provider)


class QuotaExceededError(GatewayError):
    """Raised when a user cannot afford the estimated tokens of a request."""

    category = ErrorCategory.QUOTA_EXCEEDED

    def __init__(self, check: "QuotaCheck", user_id: str | None = None) -> None:
        """Initialize error.

        Args:
            check: Failed quota check carrying reason, remaining and limit
            user_id: User the check was made for
        """
        self.check = check
        self.user_id = user_id
        self.reason = check.reason.value if check.reason else "QUOTA_EXCEEDED"
        self.code = self.reason
        message = (
            f"Quota exceeded ({self.reason}): {check.remaining} tokens remaining "
            f"of {check.limit}"
        )
        if check.would_exceed_by:
            message += f", request would exceed by {check.would_exceed_by}"
        super().__init__(message, provider="quota")

    @property
    def user_message(self) -> str:
        if self.reason == "PER_REQUEST_TOO_LARGE":
            return "This message is too long for your plan. Please shorten your input."
        if self.reason == "NO_USER":
            return "No account found for this request."
        return "You have reached your monthly token limit. Upgrade your plan to continue."


class AllProvidersFailedError(GatewayError):
    """Raised when every candidate in the fallback chain failed."""

    category = ErrorCategory.ALL_PROVIDERS_FAILED
    code = "ALL_PROVIDERS_FAILED"
    user_message = "The model is currently unavailable. Please try again shortly."

    def __init__(
        self,
        last_error: BaseException | None = None,
        attempts: list[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize error.

        Args:
            last_error: Error raised by the last candidate tried
            attempts: (provider, error code) for each candidate tried or skipped
        """
        self.last_error = last_error
        self.attempts = attempts or []
        if isinstance(last_error, GatewayError):
            detail = last_error.detail
        elif last_error is not None:
            detail = str(last_error)
        else:
            detail = "no provider available"
        super().__init__(f"All providers failed: {detail}", provider="gateway")


class CacheError(GatewayError):
    """Raised when cache operation fails."""

    code = "CACHE_ERROR"


_TOO_LARGE_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "input is too long",
    "content too long",
    "too large",
    "request_too_large",
)
_AUTH_MARKERS = (
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "api key not valid",
    "authentication_error",
    "permission_denied",
)
_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "resource_exhausted", "too many requests")


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _retry_after_of(exc: BaseException) -> int | None:
    response: Any = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        value = headers.get("retry-after")
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_provider_error(exc: BaseException, provider: str) -> ProviderError:
    """Translate an SDK or transport exception into the gateway taxonomy.

    Args:
        exc: Exception raised by a provider SDK or the HTTP transport
        provider: Provider name

    Returns:
        A ProviderError subclass describing the failure
    """
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    status = _status_of(exc)

    if (
        isinstance(exc, (httpx.TimeoutException, TimeoutError))
        or "timeout" in type(exc).__name__.lower()
        or "timed out" in lowered
    ):
        return ProviderTimeoutError(message, provider=provider)
    if status == 413 or any(marker in lowered for marker in _TOO_LARGE_MARKERS):
        return InputTooLargeError(message, provider=provider)
    if status in (401, 403) or any(marker in lowered for marker in _AUTH_MARKERS):
        return APIKeyError(message, provider=provider)
    if status == 404 and "model" in lowered:
        model = getattr(exc, "model", None) or message
        return ModelNotFoundError(model, provider=provider)
    if status == 429 or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RateLimitError(message, provider=provider, retry_after=_retry_after_of(exc))
    return ProviderTransientError(message, provider=provider)
