"""Core abstractions and models."""

from ai_gateway.core.cache import CacheBackend, MemoryCacheBackend
from ai_gateway.core.client import CancellationToken, ProviderAdapter
from ai_gateway.core.exceptions import (
    AllProvidersFailedError,
    APIKeyError,
    CacheError,
    CircuitOpenError,
    ErrorCategory,
    GatewayError,
    InputTooLargeError,
    InvalidRequestError,
    ModelNotFoundError,
    ProviderError,
    ProviderHardError,
    ProviderTimeoutError,
    ProviderTransientError,
    QuotaExceededError,
    RateLimitError,
    classify_provider_error,
)
from ai_gateway.core.models import (
    DEFAULT_PRICING,
    CacheEntry,
    CacheStats,
    ChatMessage,
    GenerateOptions,
    GenerationResult,
    MessageRole,
    ModelId,
    ModelPricing,
    ModelTier,
    PricingTable,
    ProviderId,
    Query,
    TokenUsage,
)

__all__ = [
    # Client
    "ProviderAdapter",
    "CancellationToken",
    # Cache
    "CacheBackend",
    "MemoryCacheBackend",
    # Exceptions
    "ErrorCategory",
    "GatewayError",
    "InvalidRequestError",
    "ProviderError",
    "ProviderTransientError",
    "ProviderHardError",
    "RateLimitError",
    "ProviderTimeoutError",
    "APIKeyError",
    "InputTooLargeError",
    "ModelNotFoundError",
    "CircuitOpenError",
    "QuotaExceededError",
    "AllProvidersFailedError",
    "CacheError",
    "classify_provider_error",
    # Models
    "ProviderId",
    "ModelId",
    "ModelTier",
    "ModelPricing",
    "PricingTable",
    "DEFAULT_PRICING",
    "MessageRole",
    "ChatMessage",
    "Query",
    "GenerateOptions",
    "TokenUsage",
    "GenerationResult",
    "CacheEntry",
    "CacheStats",
]
