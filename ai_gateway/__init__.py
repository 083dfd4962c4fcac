"""AI Gateway - multi-provider request routing with caching, quotas and health tracking."""

from ai_gateway.billing import PlanTier, QuotaCheck, QuotaReason, QuotaService
from ai_gateway.cache import SemanticCache
from ai_gateway.chat import ChatService, SendMessageResult
from ai_gateway.config import GatewayConfig, build_providers
from ai_gateway.core import (
    AllProvidersFailedError,
    APIKeyError,
    CacheError,
    CancellationToken,
    ChatMessage,
    CircuitOpenError,
    GatewayError,
    GenerationResult,
    InputTooLargeError,
    InvalidRequestError,
    ModelNotFoundError,
    PricingTable,
    ProviderAdapter,
    ProviderError,
    ProviderHardError,
    ProviderId,
    ProviderTimeoutError,
    ProviderTransientError,
    Query,
    QuotaExceededError,
    RateLimitError,
)
from ai_gateway.embeddings import EmbeddingService, OpenAIEmbeddingService
from ai_gateway.gateway import Gateway, GatewayOptions, GatewayStream, ProviderRegistry
from ai_gateway.monitoring import AlertThresholds, MetricsService
from ai_gateway.providers import ClaudeProvider, GeminiProvider, OpenAIProvider
from ai_gateway.routing import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    FallbackPolicy,
    QueryComplexityAnalyzer,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Gateway
    "Gateway",
    "GatewayOptions",
    "GatewayStream",
    "ProviderRegistry",
    "GatewayConfig",
    "build_providers",
    "ChatService",
    "SendMessageResult",
    # Core
    "ProviderAdapter",
    "CancellationToken",
    "ChatMessage",
    "GenerationResult",
    "PricingTable",
    "ProviderId",
    "Query",
    # Exceptions
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
    # Providers
    "OpenAIProvider",
    "ClaudeProvider",
    "GeminiProvider",
    # Routing
    "QueryComplexityAnalyzer",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "FallbackPolicy",
    # Services
    "SemanticCache",
    "QuotaService",
    "QuotaCheck",
    "QuotaReason",
    "PlanTier",
    "MetricsService",
    "AlertThresholds",
    # Embeddings
    "EmbeddingService",
    "OpenAIEmbeddingService",
]
