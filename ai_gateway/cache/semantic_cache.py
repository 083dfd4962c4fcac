"""Semantic response cache.

Responses are keyed by the normalized query (lowercased, trimmed) and the
target model. Exact matches are the baseline; when an embedding service is
configured, an exact miss falls back to cosine similarity over the cached
entries of the same model. Lookups and stores never raise: a broken cache
must not break the request path.
"""

import hashlib
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Optional, Sequence

from ai_gateway.core.cache import CacheBackend, MemoryCacheBackend
from ai_gateway.core.exceptions import CacheError
from ai_gateway.core.models import CacheEntry, CacheStats
from ai_gateway.embeddings.base import EmbeddingService, cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class _ModelCounters:
    hits: int = 0
    misses: int = 0
    saved_cost_usd: float = 0.0
    saved_tokens: int = 0


class SemanticCache:
    """Maps (normalized query, model) to a previously computed response."""

    KEY_PREFIX = "semantic_cache"

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl: int = 3600,
        embedding_service: Optional[EmbeddingService] = None,
        similarity_threshold: float = 0.92,
        max_candidates: int = 50,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the cache.

        Args:
            backend: Key-value store (in-process by default)
            ttl: Entry time to live in seconds (default 1 hour)
            embedding_service: Enables similarity matching when set
            similarity_threshold: Minimum cosine similarity for a match
            max_candidates: Entries compared per similarity lookup
            now: Wall clock used for TTL checks (injectable for tests)
        """
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl = ttl
        self.embedding_service = embedding_service
        self.similarity_threshold = similarity_threshold
        self.max_candidates = max_candidates
        self._now = now
        self._counters: dict[str, _ModelCounters] = defaultdict(_ModelCounters)

    @staticmethod
    def normalize(query: str) -> str:
        return query.lower().strip()

    def make_key(self, query: str, model: str) -> str:
        """Generate cache key from query and model.

        Args:
            query: Raw query text
            model: Target model

        Returns:
            Cache key ending in a SHA256 hash
        """
        cache_str = json.dumps({"query": self.normalize(query), "model": model}, sort_keys=True)
        digest = hashlib.sha256(cache_str.encode()).hexdigest()
        return f"{self._model_prefix(model)}{digest}"

    def _model_prefix(self, model: str) -> str:
        return f"{self.KEY_PREFIX}:{model}:"

    async def find_similar(self, query: str, model: str) -> Optional[CacheEntry]:
        """Look up a cached response.

        Args:
            query: Raw query text
            model: Target model

        Returns:
            The cached entry, or None on a miss, an expired entry, or a
            backend failure
        """
        return await self.find_first(query, [model])

    async def find_first(self, query: str, models: Sequence[str]) -> Optional[CacheEntry]:
        """Look up a cached response for the first model in ``models`` that has one.

        A lookup that finds nothing counts as one miss against the first model.

        Args:
            query: Raw query text
            models: Candidate models in preference order

        Returns:
            The first cached entry found, or None
        """
        start_time = time.perf_counter()

        for model in models:
            try:
                entry, similarity = await self._lookup(query, model)
            except Exception as e:
                logger.error(f"Semantic cache lookup failed for model {model}: {e}")
                return None
            if entry is None:
                continue

            counters = self._counters[model]
            counters.hits += 1
            counters.saved_cost_usd += entry.cost_usd
            counters.saved_tokens += entry.tokens_in + entry.tokens_out
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"Semantic cache HIT model={model} similarity={similarity:.4f} "
                f"duration={duration_ms:.1f}ms query={entry.query[:50]!r}"
            )
            return entry

        if models:
            self._counters[models[0]].misses += 1
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(f"Semantic cache MISS models={list(models)} duration={duration_ms:.1f}ms")
        return None

    async def _lookup(self, query: str, model: str) -> tuple[Optional[CacheEntry], float]:
        entry = self._load(await self.backend.get(self.make_key(query, model)))
        if entry is None and self.embedding_service is not None:
            return await self._find_by_embedding(self.normalize(query), model)
        return entry, 1.0

    async def set(self, entry: CacheEntry) -> None:
        """Store a response. Failures are logged, never raised.

        Args:
            entry: Response to cache; its query is normalized before storing
        """
        try:
            normalized = self.normalize(entry.query)
            update: dict[str, Any] = {"query": normalized}
            if self.embedding_service is not None and entry.embedding is None:
                update["embedding"] = await self._embed(normalized)
            stored = entry.model_copy(update=update)

            key = self.make_key(normalized, entry.model)
            await self.backend.set(key, stored.model_dump(mode="json"), self.ttl)
            logger.debug(
                f"Stored in semantic cache key={key} ttl={self.ttl} "
                f"response_length={len(entry.response)}"
            )
        except Exception as e:
            logger.error(f"Failed to store in semantic cache for model {entry.model}: {e}")

    async def clear_model(self, model: str) -> int:
        """Remove every cached entry for a model.

        Args:
            model: Model whose entries are dropped

        Returns:
            Number of entries removed

        Raises:
            CacheError: If the backend fails
        """
        try:
            keys = await self.backend.keys(self._model_prefix(model))
            for key in keys:
                await self.backend.delete(key)
        except Exception as e:
            raise CacheError(f"Failed to clear cache for model {model}: {e}", provider="cache") from e

        logger.info(f"Cleared semantic cache for model {model} ({len(keys)} entries)")
        return len(keys)

    async def stats(self, model: Optional[str] = None) -> CacheStats:
        """Aggregate entry counts, hit rate and savings.

        Args:
            model: Restrict to one model; None covers all models

        Returns:
            Cache statistics

        Raises:
            CacheError: If the backend fails
        """
        prefix = self._model_prefix(model) if model else f"{self.KEY_PREFIX}:"
        try:
            entries = [self._load(await self.backend.get(key)) for key in await self.backend.keys(prefix)]
        except Exception as e:
            raise CacheError(f"Failed to read cache stats: {e}", provider="cache") from e

        live = [entry for entry in entries if entry is not None]
        per_model: dict[str, int] = defaultdict(int)
        for entry in live:
            per_model[entry.model] += 1

        counters = [self._counters[model]] if model else list(self._counters.values())
        hits = sum(c.hits for c in counters)
        misses = sum(c.misses for c in counters)
        lookups = hits + misses
        created = [entry.created_at for entry in live]

        return CacheStats(
            total_entries=len(live),
            models=dict(per_model),
            hits=hits,
            misses=misses,
            hit_rate=hits / lookups if lookups else 0.0,
            saved_cost_usd=sum(c.saved_cost_usd for c in counters),
            saved_tokens=sum(c.saved_tokens for c in counters),
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def _load(self, data: Optional[dict[str, Any]]) -> Optional[CacheEntry]:
        if not data:
            return None
        entry = CacheEntry.model_validate(data)
        # Backends without native expiry still honour the TTL
        if (self._now() - entry.created_at).total_seconds() >= self.ttl:
            return None
        return entry

    async def _embed(self, text: str) -> list[float]:
        assert self.embedding_service is not None
        return await self.embedding_service.embed_query(text)

    async def _find_by_embedding(
        self, normalized: str, model: str
    ) -> tuple[Optional[CacheEntry], float]:
        query_embedding = await self._embed(normalized)
        keys = await self.backend.keys(self._model_prefix(model))

        best_match: Optional[CacheEntry] = None
        best_similarity = 0.0
        for key in keys[: self.max_candidates]:
            candidate = self._load(await self.backend.get(key))
            if candidate is None or not candidate.embedding:
                continue
            similarity = cosine_similarity(query_embedding, candidate.embedding)
            if similarity >= self.similarity_threshold and similarity > best_similarity:
                best_match, best_similarity = candidate, similarity

        return best_match, best_similarity
