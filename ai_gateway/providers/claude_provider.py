"""Anthropic Claude provider adapter."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Optional

import anthropic

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


class ClaudeProvider(ProviderAdapter):
    """Anthropic messages API adapter."""

    name = ProviderId.ANTHROPIC.value

    MODELS = {
        ModelTier.WEAK: ModelId.CLAUDE_3_5_HAIKU.value,
        ModelTier.MEDIUM: ModelId.CLAUDE_3_5_SONNET.value,
        ModelTier.STRONG: ModelId.CLAUDE_3_5_SONNET.value,
    }

    def __init__(
        self,
        api_key: str,
        pricing: Optional[PricingTable] = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(api_key, pricing=pricing, timeout=timeout)

        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def _request_kwargs(self, prompt: str, options: GenerateOptions) -> dict[str, Any]:
        # Anthropic takes the system prompt as a separate parameter
        system_parts = [options.system_prompt] if options.system_prompt else []
        messages = []
        for message in self.build_messages(prompt, GenerateOptions(history=options.history)):
            if message["role"] == "system":
                system_parts.append(message["content"])
            else:
                messages.append(message)

        kwargs: dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if system_parts:
            kwargs["system"] = "\n".join(system_parts)
        return kwargs

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResult:
        options = options or GenerateOptions()
        kwargs = self._request_kwargs(prompt, options)
        model = kwargs["model"]

        start_time = time.time()

        try:
            message = await self.client.messages.create(**kwargs)
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        latency_ms = int((time.time() - start_time) * 1000)

        content = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        input_tokens = getattr(message.usage, "input_tokens", 0) or 0
        output_tokens = getattr(message.usage, "output_tokens", 0) or 0
        cost = self.calculate_cost(model, input_tokens, output_tokens)
        self._track_request(cost)

        return GenerationResult(
            content=content,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                cost_usd=cost,
            ),
            provider=self.name,
            model=model,
            latency_ms=latency_ms,
            metadata={"id": message.id, "stop_reason": message.stop_reason},
        )

    async def generate_stream(
        self,
        prompt: str,
        options: Optional[GenerateOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        options = options or GenerateOptions()
        kwargs = self._request_kwargs(prompt, options)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.debug(f"{self.name} stream cancelled by caller")
                        break
                    if text:
                        yield text
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

    async def is_available(self) -> bool:
        try:
            await self.client.models.list(limit=1)
            return True
        except Exception as e:
            logger.debug(f"{self.name} availability probe failed: {e}")
            return False
