"""Embedding services module."""

from ai_gateway.embeddings.base import EmbeddingService, cosine_similarity
from ai_gateway.embeddings.openai import OpenAIEmbeddingService

__all__ = ["EmbeddingService", "OpenAIEmbeddingService", "cosine_similarity"]
