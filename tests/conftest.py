"""Pytest configuration and fixtures."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Optional

import pytest

from ai_gateway.billing import PlanTier, QuotaService
from ai_gateway.cache import SemanticCache
from ai_gateway.core import (
    CancellationToken,
    GenerateOptions,
    GenerationResult,
    MemoryCacheBackend,
    ModelTier,
    ProviderAdapter,
    TokenUsage,
)
from ai_gateway.gateway import Gateway
from ai_gateway.monitoring import MetricsService
from ai_gateway.routing import CircuitBreakerRegistry
from ai_gateway.storage import (
    InMemoryMessageStore,
    InMemoryMetricsRepository,
    InMemoryUsageRepository,
    InMemoryUserRepository,
)


class FakeProvider(ProviderAdapter):
    """Scriptable provider adapter.

    ``error`` is raised by every call; with ``stream_error_after`` set, the
    stream yields that many chunks first.
    """

    def __init__(
        self,
        name: str,
        content: str = "ok",
        error: Optional[Exception] = None,
        chunks: Optional[list[str]] = None,
        stream_error_after: Optional[int] = None,
        available: bool = True,
        chunk_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.MODELS = {
            ModelTier.WEAK: f"{name}-weak",
            ModelTier.MEDIUM: f"{name}-medium",
            ModelTier.STRONG: f"{name}-strong",
        }
        super().__init__("test-key")
        self.content = content
        self.error = error
        self.chunks = chunks if chunks is not None else [content]
        self.stream_error_after = stream_error_after
        self.available = available
        self.chunk_delay = chunk_delay
        self.calls: list[GenerateOptions] = []
        self.streams_opened = 0
        self.streams_closed = 0

    async def generate(self, prompt, options=None):
        options = options or GenerateOptions()
        self.calls.append(options)
        if self.error is not None:
            raise self.error
        model = options.model or self.default_model
        cost = self.calculate_cost(model, 10, 20)
        self._track_request(cost)
        return GenerationResult(
            content=self.content,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=20, cost_usd=cost),
            provider=self.name,
            model=model,
            latency_ms=5,
        )

    async def generate_stream(self, prompt, options=None, cancel_token=None):
        options = options or GenerateOptions()
        self.calls.append(options)
        self.streams_opened += 1
        try:
            if self.error is not None and self.stream_error_after is None:
                raise self.error
            for index, chunk in enumerate(self.chunks):
                if self.stream_error_after is not None and index == self.stream_error_after:
                    raise self.error
                if cancel_token is not None and cancel_token.cancelled:
                    break
                await asyncio.sleep(self.chunk_delay)
                yield chunk
        finally:
            self.streams_closed += 1

    async def is_available(self):
        return self.available


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualWallClock:
    """Datetime clock advanced by hand."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def wall_clock():
    return ManualWallClock()


@pytest.fixture
def providers():
    return {
        "openai": FakeProvider("openai", content="openai answer"),
        "claude": FakeProvider("claude", content="claude answer"),
        "gemini": FakeProvider("gemini", content="gemini answer"),
    }


@pytest.fixture
def user_repo():
    repo = InMemoryUserRepository()
    repo.add_user("user-1", PlanTier.FREE)
    return repo


@pytest.fixture
def usage_repo():
    return InMemoryUsageRepository()


@pytest.fixture
def metrics_repo():
    return InMemoryMetricsRepository()


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def quota(user_repo, usage_repo):
    return QuotaService(user_repo, usage_repo)


@pytest.fixture
def metrics(metrics_repo):
    return MetricsService(metrics_repo)


@pytest.fixture
def cache():
    return SemanticCache(backend=MemoryCacheBackend())


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(failure_threshold=3, recovery_timeout=30.0, clock=clock)


@pytest.fixture
def gateway(providers, cache, breakers, quota, metrics):
    return Gateway(
        providers=providers,
        cache=cache,
        breakers=breakers,
        quota=quota,
        metrics=metrics,
        stream_buffer_size=2,
    )


@pytest.fixture
def cancel_token():
    return CancellationToken()
