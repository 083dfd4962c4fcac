"""Response caching."""

from ai_gateway.cache.semantic_cache import SemanticCache

__all__ = ["SemanticCache"]
