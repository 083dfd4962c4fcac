"""Tests for the semantic cache and its in-memory backend."""

import pytest

from ai_gateway.cache import SemanticCache
from ai_gateway.core import CacheEntry, CacheError, MemoryCacheBackend
from ai_gateway.embeddings import EmbeddingService, cosine_similarity


def _entry(query="What is Python?", response="A language.", model="gpt-4o-mini", **kwargs):
    return CacheEntry(
        query=query,
        response=response,
        model=model,
        provider="openai",
        tokens_in=10,
        tokens_out=20,
        cost_usd=0.002,
        **kwargs,
    )


class StaticEmbeddings(EmbeddingService):
    """Embeds known texts to fixed vectors."""

    def __init__(self, vectors):
        self.vectors = vectors
        self.calls = []

    async def embed_query(self, text):
        self.calls.append(text)
        return self.vectors.get(text, [0.0, 0.0, 1.0])


def test_make_key_normalizes_query():
    """Test key derivation ignores case and surrounding whitespace."""
    cache = SemanticCache()

    key = cache.make_key("What is Python?", "gpt-4o-mini")

    assert key.startswith("semantic_cache:gpt-4o-mini:")
    assert key == cache.make_key("  what is python?  ", "gpt-4o-mini")
    assert key != cache.make_key("What is Python?", "gpt-4o")


@pytest.mark.asyncio
async def test_round_trip(cache):
    """Test set followed by find_similar returns the stored response."""
    await cache.set(_entry())

    entry = await cache.find_similar("WHAT IS PYTHON?", "gpt-4o-mini")

    assert entry is not None
    assert entry.response == "A language."
    assert entry.query == "what is python?"


@pytest.mark.asyncio
async def test_miss_for_other_model(cache):
    """Test entries are scoped to their model."""
    await cache.set(_entry())

    assert await cache.find_similar("What is Python?", "gpt-4o") is None


@pytest.mark.asyncio
async def test_expired_entry_is_miss(wall_clock):
    """Test entries older than the TTL are misses."""
    cache = SemanticCache(ttl=60, now=wall_clock)
    await cache.set(_entry(created_at=wall_clock()))

    wall_clock.advance(seconds=59)
    assert await cache.find_similar("What is Python?", "gpt-4o-mini") is not None

    wall_clock.advance(seconds=1)
    assert await cache.find_similar("What is Python?", "gpt-4o-mini") is None


@pytest.mark.asyncio
async def test_backend_expiry(clock):
    """Test the memory backend drops entries after their TTL."""
    backend = MemoryCacheBackend(timer=clock)
    await backend.set("k", {"v": 1}, ttl=10)

    assert await backend.get("k") == {"v": 1}
    clock.advance(10)
    assert await backend.get("k") is None
    assert await backend.keys("") == []


@pytest.mark.asyncio
async def test_backend_returns_copies():
    """Test stored values cannot be mutated through returned references."""
    backend = MemoryCacheBackend()
    value = {"items": [1]}
    await backend.set("k", value, ttl=10)
    value["items"].append(2)

    stored = await backend.get("k")
    stored["items"].append(3)

    assert await backend.get("k") == {"items": [1]}


@pytest.mark.asyncio
async def test_stats_and_clear_model(cache):
    """Test stats aggregate hits, misses and savings; clear drops one model."""
    await cache.set(_entry())
    await cache.set(_entry(query="Other question", model="gpt-4o"))

    await cache.find_similar("What is Python?", "gpt-4o-mini")
    await cache.find_similar("Unknown", "gpt-4o-mini")

    stats = await cache.stats()
    assert stats.total_entries == 2
    assert stats.models == {"gpt-4o-mini": 1, "gpt-4o": 1}
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == 0.5
    assert stats.saved_cost_usd == pytest.approx(0.002)
    assert stats.saved_tokens == 30

    assert await cache.clear_model("gpt-4o-mini") == 1
    assert await cache.find_similar("What is Python?", "gpt-4o-mini") is None
    remaining = await cache.stats("gpt-4o")
    assert remaining.total_entries == 1


def test_empty_backend_is_kept():
    """Test an injected backend is used even while it holds no entries."""
    backend = MemoryCacheBackend(maxsize=7)

    cache = SemanticCache(backend=backend)

    assert len(backend) == 0
    assert cache.backend is backend


@pytest.mark.asyncio
async def test_backend_failures_are_swallowed(mocker):
    """Test lookup and store failures never raise."""
    backend = MemoryCacheBackend()
    mocker.patch.object(backend, "get", new_callable=mocker.AsyncMock, side_effect=ConnectionError("down"))
    mocker.patch.object(backend, "set", new_callable=mocker.AsyncMock, side_effect=ConnectionError("down"))
    cache = SemanticCache(backend=backend)

    await cache.set(_entry())
    assert await cache.find_similar("What is Python?", "gpt-4o-mini") is None


@pytest.mark.asyncio
async def test_clear_model_raises_cache_error(mocker):
    """Test invalidation failures surface as CacheError."""
    backend = MemoryCacheBackend()
    mocker.patch.object(backend, "keys", new_callable=mocker.AsyncMock, side_effect=ConnectionError("down"))
    cache = SemanticCache(backend=backend)

    with pytest.raises(CacheError):
        await cache.clear_model("gpt-4o-mini")


@pytest.mark.asyncio
async def test_similarity_fallback():
    """Test an exact miss matches a close embedding of the same model."""
    embeddings = StaticEmbeddings(
        {
            "what is python?": [1.0, 0.0, 0.0],
            "what's python?": [0.99, 0.05, 0.0],
            "how do planes fly?": [0.0, 1.0, 0.0],
        }
    )
    cache = SemanticCache(embedding_service=embeddings, similarity_threshold=0.92)
    await cache.set(_entry())

    similar = await cache.find_similar("What's Python?", "gpt-4o-mini")
    unrelated = await cache.find_similar("How do planes fly?", "gpt-4o-mini")
    other_model = await cache.find_similar("What's Python?", "gpt-4o")

    assert similar is not None
    assert similar.response == "A language."
    assert unrelated is None
    assert other_model is None


def test_cosine_similarity():
    """Test cosine similarity edge cases."""
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


@pytest.mark.asyncio
async def test_find_first_checks_models_in_order(cache):
    """Test the first model with an entry wins and a full miss counts once."""
    await cache.set(_entry(model="claude-3-5-sonnet-20241022", response="From claude."))

    entry = await cache.find_first("What is Python?", ["gpt-4o-mini", "claude-3-5-sonnet-20241022"])
    missing = await cache.find_first("Unknown", ["gpt-4o-mini", "claude-3-5-sonnet-20241022"])

    assert entry.response == "From claude."
    assert missing is None
    stats = await cache.stats()
    assert (stats.hits, stats.misses) == (1, 1)
    assert (await cache.stats("gpt-4o-mini")).misses == 1
