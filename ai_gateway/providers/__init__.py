"""Provider adapter implementations."""

from ai_gateway.providers.claude_provider import ClaudeProvider
from ai_gateway.providers.gemini_provider import GeminiProvider
from ai_gateway.providers.openai_provider import OpenAIProvider

__all__ = [
    "OpenAIProvider",
    "ClaudeProvider",
    "GeminiProvider",
]
