"""OpenAI implementation of EmbeddingService."""

import os

from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from ai_gateway.embeddings.base import EmbeddingService


class OpenAIEmbeddingService(EmbeddingService):
    """OpenAI embeddings for semantic cache matching.

    Authentication is handled via explicit api_key or OPENAI_API_KEY env var.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimensions: int | None = 1536,
        timeout: float = 10.0,
    ):
        """Initialize the OpenAI embedding service.

        Args:
            api_key: OpenAI API key. If None, checks OPENAI_API_KEY env var.
            model: Embedding model to use. Default: text-embedding-3-small.
            dimensions: Optional vector dimensions (supported by v3 models).
            timeout: Request timeout in seconds.
        """
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key must be provided or set in OPENAI_API_KEY environment variable."
            )

        self.client = AsyncOpenAI(api_key=self.api_key, timeout=timeout)
        self.model = model
        self.dimensions = dimensions

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=4), reraise=True)
    async def embed_query(self, text: str) -> list[float]:
        """Embed a normalized cache query.

        Newlines are flattened so that formatting differences do not move
        otherwise identical queries apart.
        """
        kwargs = {"model": self.model, "input": text.replace("\n", " ")}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions

        response = await self.client.embeddings.create(**kwargs)
        return response.data[0].embedding
