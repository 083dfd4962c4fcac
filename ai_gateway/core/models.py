"""Core data models for the AI request gateway."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProviderId(str, Enum):
    """Upstream model providers known to the gateway."""

    OPENAI = "openai"
    ANTHROPIC = "claude"
    GOOGLE = "gemini"


class ModelId(str, Enum):
    """Concrete models, each owned by exactly one provider."""

    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4O = "gpt-4o"
    GPT_4_TURBO = "gpt-4-turbo"
    GPT_3_5_TURBO = "gpt-3.5-turbo"
    CLAUDE_3_5_HAIKU = "claude-3-5-haiku-20241022"
    CLAUDE_3_5_SONNET = "claude-3-5-sonnet-20241022"
    CLAUDE_3_OPUS = "claude-3-opus-20240229"
    GEMINI_1_5_FLASH = "gemini-1.5-flash"
    GEMINI_1_5_PRO = "gemini-1.5-pro"
    GEMINI_2_0_FLASH = "gemini-2.0-flash"


class ModelTier(str, Enum):
    """Capability tier a provider maps a complexity score onto."""

    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"


class MessageRole(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single message of conversation history."""

    model_config = ConfigDict(use_enum_values=True, frozen=True)

    role: MessageRole
    content: str


class ModelPricing(BaseModel):
    """Price of a model in USD per million tokens."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderId
    input: float
    output: float


# Sample pricing (per 1M tokens). Deployments override this with their own table.
DEFAULT_PRICING: dict[str, ModelPricing] = {
    ModelId.GPT_4O_MINI.value: ModelPricing(provider=ProviderId.OPENAI, input=0.15, output=0.6),
    ModelId.GPT_4O.value: ModelPricing(provider=ProviderId.OPENAI, input=2.5, output=10.0),
    ModelId.GPT_4_TURBO.value: ModelPricing(provider=ProviderId.OPENAI, input=10.0, output=30.0),
    ModelId.GPT_3_5_TURBO.value: ModelPricing(provider=ProviderId.OPENAI, input=0.5, output=1.5),
    ModelId.CLAUDE_3_5_HAIKU.value: ModelPricing(provider=ProviderId.ANTHROPIC, input=0.8, output=4.0),
    ModelId.CLAUDE_3_5_SONNET.value: ModelPricing(provider=ProviderId.ANTHROPIC, input=3.0, output=15.0),
    ModelId.CLAUDE_3_OPUS.value: ModelPricing(provider=ProviderId.ANTHROPIC, input=15.0, output=75.0),
    ModelId.GEMINI_1_5_FLASH.value: ModelPricing(provider=ProviderId.GOOGLE, input=0.075, output=0.3),
    ModelId.GEMINI_1_5_PRO.value: ModelPricing(provider=ProviderId.GOOGLE, input=1.25, output=5.0),
    ModelId.GEMINI_2_0_FLASH.value: ModelPricing(provider=ProviderId.GOOGLE, input=0.1, output=0.4),
}

# Conservative default for models missing from the table
FALLBACK_PRICING = {"input": 1.0, "output": 5.0}


class PricingTable:
    """Pluggable per-model pricing lookup."""

    def __init__(self, prices: dict[str, ModelPricing] | None = None) -> None:
        self._prices = dict(DEFAULT_PRICING if prices is None else prices)

    def get(self, model: str) -> ModelPricing | None:
        return self._prices.get(str(model))

    def provider_for(self, model: str) -> ProviderId | None:
        pricing = self.get(model)
        return pricing.provider if pricing else None

    def models_for(self, provider: ProviderId | str) -> list[str]:
        provider = ProviderId(provider)
        return [name for name, pricing in self._prices.items() if pricing.provider == provider]

    def cost(self, model: str, tokens_in: int, tokens_out: int) -> float:
        """Calculate the USD cost of a call.

        Args:
            model: Model name
            tokens_in: Prompt tokens
            tokens_out: Completion tokens

        Returns:
            Cost in USD
        """
        pricing = self.get(model)
        input_price = pricing.input if pricing else FALLBACK_PRICING["input"]
        output_price = pricing.output if pricing else FALLBACK_PRICING["output"]
        return (tokens_in * input_price + tokens_out * output_price) / 1_000_000


class Query(BaseModel):
    """Immutable request input."""

    model_config = ConfigDict(frozen=True)

    text: str
    model: str | None = None
    force_provider: str | None = None
    user_id: str | None = None
    request_id: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)


class GenerateOptions(BaseModel):
    """Per-call options handed to a provider adapter."""

    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Token usage and cost of one generation."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class GenerationResult(BaseModel):
    """Response of one successful generation (or cache hit)."""

    model_config = ConfigDict(frozen=True)

    content: str
    usage: TokenUsage
    provider: str
    model: str
    latency_ms: int
    cached: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    """Cached response for a normalized query and model."""

    query: str
    response: str
    model: str
    provider: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CacheStats(BaseModel):
    """Aggregate view of the semantic cache."""

    total_entries: int = 0
    models: dict[str, int] = Field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    saved_cost_usd: float = 0.0
    saved_tokens: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
