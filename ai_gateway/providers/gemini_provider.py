"""Google Gemini provider adapter."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Optional

from google import genai
from google.genai import types

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


class GeminiProvider(ProviderAdapter):
    """Google GenAI adapter."""

    name = ProviderId.GOOGLE.value

    MODELS = {
        ModelTier.WEAK: ModelId.GEMINI_2_0_FLASH.value,
        ModelTier.MEDIUM: ModelId.GEMINI_2_0_FLASH.value,
        ModelTier.STRONG: ModelId.GEMINI_1_5_PRO.value,
    }
    # Flash handles most of the range well
    COMPLEXITY_THRESHOLDS = (0.3, 0.8)

    def __init__(
        self,
        api_key: str,
        pricing: Optional[PricingTable] = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(api_key, pricing=pricing, timeout=timeout)

        self.client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )

    def _contents(self, prompt: str, options: GenerateOptions) -> list[dict[str, Any]]:
        contents = []
        for message in options.history:
            if message.role == "system":
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return contents

    def _config(self, options: GenerateOptions) -> types.GenerateContentConfig:
        system_parts = [options.system_prompt] if options.system_prompt else []
        system_parts.extend(m.content for m in options.history if m.role == "system")
        return types.GenerateContentConfig(
            system_instruction="\n".join(system_parts) or None,
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
        )

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResult:
        options = options or GenerateOptions()
        model = options.model or self.default_model

        start_time = time.time()

        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=self._contents(prompt, options),
                config=self._config(options),
            )
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        latency_ms = int((time.time() - start_time) * 1000)

        usage = response.usage_metadata
        prompt_tokens = (usage.prompt_token_count or 0) if usage else 0
        completion_tokens = (usage.candidates_token_count or 0) if usage else 0
        cost = self.calculate_cost(model, prompt_tokens, completion_tokens)
        self._track_request(cost)

        return GenerationResult(
            content=response.text or "",
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost_usd=cost,
            ),
            provider=self.name,
            model=model,
            latency_ms=latency_ms,
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
            stream = await self.client.aio.models.generate_content_stream(
                model=model,
                contents=self._contents(prompt, options),
                config=self._config(options),
            )
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug(f"{self.name} stream cancelled by caller")
                    break
                if chunk.text:
                    yield chunk.text
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

    async def is_available(self) -> bool:
        try:
            await self.client.aio.models.get(model=self.MODELS[ModelTier.WEAK])
            return True
        except Exception as e:
            logger.debug(f"{self.name} availability probe failed: {e}")
            return False
