"""Abstract provider adapter interface."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Optional

from ai_gateway.core.exceptions import APIKeyError
from ai_gateway.core.models import (
    ChatMessage,
    GenerateOptions,
    GenerationResult,
    ModelTier,
    PricingTable,
)


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ProviderAdapter(ABC):
    """Abstract base class for upstream model providers.

    Subclasses declare ``name`` and a ``MODELS`` table mapping each
    :class:`ModelTier` to a concrete model name. Adapters never retry;
    failures surface as :class:`~ai_gateway.core.exceptions.ProviderError`.
    """

    name: str = "unknown"
    MODELS: dict[ModelTier, str] = {}
    # (weak below, medium below); anything else is strong
    COMPLEXITY_THRESHOLDS: tuple[float, float] = (0.3, 0.7)

    def __init__(
        self,
        api_key: str,
        pricing: Optional[PricingTable] = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize adapter.

        Args:
            api_key: Provider API key
            pricing: Pricing table used for cost calculation
            timeout: Request timeout in seconds

        Raises:
            APIKeyError: If API key is missing
        """
        if not api_key:
            raise APIKeyError(f"{self.name} API key is required", provider=self.name)

        self.api_key = api_key
        self.pricing = pricing or PricingTable()
        self.timeout = timeout
        self._total_cost_usd: float = 0.0
        self._request_count: int = 0

    @abstractmethod
    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResult:
        """Generate a complete response.

        Args:
            prompt: User prompt
            options: Model, sampling and context options

        Returns:
            Generation result with content, usage and latency

        Raises:
            ProviderError: If the upstream call fails
        """
        pass

    @abstractmethod
    def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerateOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Stream a response as text deltas.

        The iterator is tied to one upstream connection: it is finite, cannot
        be restarted, and stops early once ``cancel_token`` is cancelled.

        Args:
            prompt: User prompt
            options: Model, sampling and context options
            cancel_token: Caller-owned cancellation signal

        Yields:
            Response chunks as they arrive

        Raises:
            ProviderError: If the upstream call fails
        """
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap health probe.

        Returns:
            True if the provider answers, False otherwise (never raises)
        """
        pass

    @property
    def default_model(self) -> str:
        return self.MODELS[ModelTier.MEDIUM]

    def get_model_for_complexity(self, score: float) -> str:
        """Pick the model tier matching a complexity score.

        Args:
            score: Complexity in [0, 1]

        Returns:
            Model name
        """
        weak_below, medium_below = self.COMPLEXITY_THRESHOLDS
        if score < weak_below:
            return self.MODELS[ModelTier.WEAK]
        if score < medium_below:
            return self.MODELS[ModelTier.MEDIUM]
        return self.MODELS[ModelTier.STRONG]

    def calculate_cost(self, model: str, tokens_in: int, tokens_out: int) -> float:
        return self.pricing.cost(model, tokens_in, tokens_out)

    def estimate_cost(self, tokens: int) -> float:
        """Estimate input cost of a prompt on the medium model.

        Args:
            tokens: Estimated prompt tokens

        Returns:
            Estimated cost in USD
        """
        return self.pricing.cost(self.default_model, tokens, 0)

    def build_messages(self, prompt: str, options: GenerateOptions) -> list[dict[str, Any]]:
        """Build an OpenAI-style message list (system, history, prompt)."""
        messages: list[dict[str, Any]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.extend(_as_dict(message) for message in options.history)
        messages.append({"role": "user", "content": prompt})
        return messages

    def get_total_cost(self) -> float:
        """Get total cost of all requests.

        Returns:
            Total cost in USD
        """
        return self._total_cost_usd

    def get_request_count(self) -> int:
        """Get total number of requests made.

        Returns:
            Request count
        """
        return self._request_count

    def reset_metrics(self) -> None:
        """Reset cost and request metrics."""
        self._total_cost_usd = 0.0
        self._request_count = 0

    def _track_request(self, cost: float) -> None:
        self._total_cost_usd += cost
        self._request_count += 1


def _as_dict(message: ChatMessage) -> dict[str, Any]:
    return {"role": str(message.role), "content": message.content}
