"""OpenAI provider adapter."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Optional

from openai import AsyncOpenAI

from ai_gateway.core import (
    CancellationToken,
    GenerateOptions,
    GenerationResult,
    ModelId,
    ModelTier,
    PricingTable,
    ProviderAdapter,
    ProviderId,
    TokenUsage,
    classify_provider_error,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(ProviderAdapter):
    """OpenAI chat completions adapter."""

    name = ProviderId.OPENAI.value

    MODELS = {
        ModelTier.WEAK: ModelId.GPT_4O_MINI.value,
        ModelTier.MEDIUM: ModelId.GPT_4O_MINI.value,
        ModelTier.STRONG: ModelId.GPT_4O.value,
    }

    def __init__(
        self,
        api_key: str,
        pricing: Optional[PricingTable] = None,
        timeout: float = 60.0,
        base_url: str | None = None,
    ) -> None:
        """Initialize OpenAI adapter.

        Args:
            api_key: OpenAI API key
            pricing: Pricing table used for cost calculation
            timeout: Request timeout in seconds
            base_url: Optional override for API base URL

        Raises:
            APIKeyError: If API key is missing
        """
        super().__init__(api_key, pricing=pricing, timeout=timeout)

        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            # Fallback across providers replaces SDK-level retries
            max_retries=0,
        )

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResult:
        options = options or GenerateOptions()
        model = options.model or self.default_model

        start_time = time.time()

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=self.build_messages(prompt, options),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        latency_ms = int((time.time() - start_time) * 1000)

        prompt_tokens = response.usage.prompt_tokens if response.usage else 0
        completion_tokens = response.usage.completion_tokens if response.usage else 0
        cost = self.calculate_cost(model, prompt_tokens, completion_tokens)
        self._track_request(cost)

        return GenerationResult(
            content=response.choices[0].message.content or "",
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost_usd=cost,
            ),
            provider=self.name,
            model=model,
            latency_ms=latency_ms,
            metadata={"id": response.id, "finish_reason": response.choices[0].finish_reason},
        )

    async def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerateOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        options = options or GenerateOptions()
        model = options.model or self.default_model

        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=self.build_messages(prompt, options),
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                stream=True,
            )
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug(f"{self.name} stream cancelled by caller")
                    break
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as e:
            raise classify_provider_error(e, self.name) from e
        finally:
            await stream.close()

    async def is_available(self) -> bool:
        """Probe the API by listing models.

        Returns:
            True if the API key is accepted, False otherwise
        """
        try:
            await self.client.models.list()
            return True
        except Exception as e:
            logger.debug(f"{self.name} availability probe failed: {e}")
            return False
