"""Gateway configuration."""

import logging
import os
from typing import Optional

from pydantic import BaseModel

from ai_gateway.core.client import ProviderAdapter
from ai_gateway.core.models import PricingTable
from ai_gateway.monitoring.models import AlertThresholds
from ai_gateway.providers import ClaudeProvider, GeminiProvider, OpenAIProvider
from ai_gateway.routing.selector import FallbackPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "AI_GATEWAY_"


class GatewayConfig(BaseModel):
    """Configuration for the gateway and the services it wires."""

    # Provider credentials; a provider without a key is not configured
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    google_api_key: str | None = None
    request_timeout: float = 60.0

    # Circuit breaker
    breaker_failure_threshold: int = 3
    breaker_recovery_timeout: float = 30.0

    # Semantic cache
    cache_ttl: int = 3600
    cache_max_entries: int = 10_000
    cache_similarity_threshold: float = 0.92
    semantic_matching: bool = False
    embedding_model: str = "text-embedding-3-small"
    cache_streamed_responses: bool = True

    # Routing and quota
    fallback_policy: FallbackPolicy = FallbackPolicy.FULL
    output_token_reserve: int = 500
    stream_buffer_size: int = 64

    # Monitoring
    health_lookback_minutes: int = 15
    alerts_enabled: bool = True
    alert_error_rate_percent: float = 10.0
    alert_latency_ms: float = 10_000.0

    @property
    def alert_thresholds(self) -> AlertThresholds:
        return AlertThresholds(
            error_rate_percent=self.alert_error_rate_percent,
            latency_ms=self.alert_latency_ms,
            enabled=self.alerts_enabled,
        )

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "GatewayConfig":
        """Build configuration from environment variables.

        Provider keys come from OPENAI_API_KEY, ANTHROPIC_API_KEY and
        GOOGLE_API_KEY; every other field from ``AI_GATEWAY_<FIELD>``
        (for example ``AI_GATEWAY_CACHE_TTL=600``).

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Validated configuration
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}

        for field, var in (
            ("openai_api_key", "OPENAI_API_KEY"),
            ("anthropic_api_key", "ANTHROPIC_API_KEY"),
            ("google_api_key", "GOOGLE_API_KEY"),
        ):
            if env.get(var):
                values[field] = env[var]

        for field in cls.model_fields:
            var = f"{ENV_PREFIX}{field.upper()}"
            if env.get(var):
                values[field] = env[var]

        return cls.model_validate(values)


def build_providers(
    config: GatewayConfig, pricing: Optional[PricingTable] = None
) -> dict[str, ProviderAdapter]:
    """Construct an adapter for every provider with an API key.

    Args:
        config: Gateway configuration
        pricing: Pricing table shared by the adapters

    Returns:
        Adapters keyed by provider name, in preference-neutral order
    """
    providers: dict[str, ProviderAdapter] = {}
    candidates = (
        (OpenAIProvider, config.openai_api_key),
        (ClaudeProvider, config.anthropic_api_key),
        (GeminiProvider, config.google_api_key),
    )
    for provider_cls, api_key in candidates:
        if not api_key:
            continue
        adapter = provider_cls(api_key, pricing=pricing, timeout=config.request_timeout)
        providers[adapter.name] = adapter

    if not providers:
        logger.warning("No provider API keys configured; every request will fail")
    else:
        logger.info(f"Configured providers: {', '.join(providers)}")
    return providers
