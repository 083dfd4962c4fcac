"""Embedding service interface used for similarity cache lookups."""

import math
from abc import ABC, abstractmethod


class EmbeddingService(ABC):
    """Abstract base class for text embedding services."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single query string.

        Args:
            text: The text to embed.

        Returns:
            A list of floats representing the embedding vector.
        """
        pass


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude.

    Raises:
        ValueError: If the vectors differ in dimension
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors must have the same dimensions ({len(a)} != {len(b)})")

    dot = sum(x * y for x, y in zip(a, b))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if magnitude == 0:
        return 0.0
    return dot / magnitude
