"""Request gateway: routes queries across providers with caching, quotas and fallback."""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, NoReturn, Optional, Union

from pydantic import BaseModel, Field

from ai_gateway.billing.quota import QuotaService
from ai_gateway.cache.semantic_cache import SemanticCache
from ai_gateway.config import GatewayConfig, build_providers
from ai_gateway.core.cache import CacheBackend, MemoryCacheBackend
from ai_gateway.core.client import CancellationToken, ProviderAdapter
from ai_gateway.core.exceptions import (
    AllProvidersFailedError,
    CircuitOpenError,
    InvalidRequestError,
    ProviderError,
    QuotaExceededError,
    classify_provider_error,
)
from ai_gateway.core.models import (
    CacheEntry,
    CacheStats,
    ChatMessage,
    GenerateOptions,
    GenerationResult,
    ModelTier,
    PricingTable,
    Query,
    TokenUsage,
)
from ai_gateway.embeddings.openai import OpenAIEmbeddingService
from ai_gateway.monitoring.metrics import MetricsService
from ai_gateway.monitoring.models import (
    Alert,
    AlertThresholds,
    ProviderHealthStatus,
    ProviderMetric,
)
from ai_gateway.routing.circuit_breaker import CircuitBreakerRegistry, CircuitStats
from ai_gateway.routing.complexity import (
    QueryComplexityAnalyzer,
    estimate_messages_tokens,
    estimate_tokens,
)
from ai_gateway.routing.selector import FallbackPolicy, preferred_order
from ai_gateway.storage.base import MetricsRepository, UsageRepository, UserRepository
from ai_gateway.storage.memory import (
    InMemoryMetricsRepository,
    InMemoryUsageRepository,
    InMemoryUserRepository,
)

logger = logging.getLogger(__name__)

_END = object()


class GatewayOptions(BaseModel):
    """Options accepted by both routing entry points."""

    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str | None = None
    force_provider: str | None = None
    force_model: str | None = None
    user_id: str | None = None
    request_id: str | None = None
    skip_cache: bool = False
    history: list[ChatMessage] = Field(default_factory=list)
    # None follows the gateway's FallbackPolicy
    allow_fallback: bool | None = None


class ProviderRegistry:
    """Configured provider adapters keyed by provider name."""

    def __init__(
        self,
        providers: Union[Mapping[str, ProviderAdapter], Iterable[ProviderAdapter]] = (),
    ) -> None:
        if isinstance(providers, Mapping):
            self._providers = dict(providers)
        else:
            self._providers = {adapter.name: adapter for adapter in providers}

    def get(self, name: str) -> Optional[ProviderAdapter]:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return list(self._providers)

    def items(self) -> list[tuple[str, ProviderAdapter]]:
        return list(self._providers.items())

    def __getitem__(self, name: str) -> ProviderAdapter:
        return self._providers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


@dataclass(frozen=True)
class _Candidate:
    provider: str
    adapter: ProviderAdapter
    model: str


class GatewayStream:
    """Text deltas of one routed streaming request.

    A producer task fills a bounded queue that ``async for`` drains.
    Cancelling (``cancel()``, the caller's token, or ``aclose()``) stops the
    producer and closes the upstream connection; partial output is neither
    cached nor retried on another provider. ``result`` is set once the
    stream completed without cancellation.
    """

    def __init__(
        self, cancel_token: Optional[CancellationToken] = None, buffer_size: int = 64
    ) -> None:
        self.cancel_token = cancel_token or CancellationToken()
        self.provider: str | None = None
        self.model: str | None = None
        self.cached = False
        self.result: GenerationResult | None = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, buffer_size))
        self._producer: asyncio.Task | None = None
        self._done = False
        self._error: BaseException | None = None
        self._exhausted = False

    def __aiter__(self) -> "GatewayStream":
        return self

    async def __anext__(self) -> str:
        if self._exhausted:
            raise StopAsyncIteration
        if self.cancel_token.cancelled:
            await self.aclose()
            raise StopAsyncIteration
        if self._done and self._queue.empty():
            self._terminate()

        item = await self._queue.get()
        if item is _END:
            self._terminate()
        return item

    async def __aenter__(self) -> "GatewayStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def aclose(self) -> None:
        """Cancel the stream and wait for the producer to release its connection."""
        self.cancel_token.cancel()
        self._exhausted = True
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def collect(self) -> str:
        """Drain the stream and return the concatenated text."""
        return "".join([chunk async for chunk in self])

    def _terminate(self) -> NoReturn:
        self._exhausted = True
        error, self._error = self._error, None
        if error is not None:
            raise error
        raise StopAsyncIteration

    async def _emit(self, chunk: str) -> bool:
        """Queue a chunk, waiting for buffer space unless cancelled first."""
        if not self._queue.full():
            self._queue.put_nowait(chunk)
            return True

        put = asyncio.ensure_future(self._queue.put(chunk))
        cancelled = asyncio.ensure_future(self.cancel_token.wait())
        try:
            await asyncio.wait({put, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not put.done():
                put.cancel()
        return put.done() and not put.cancelled()

    def _finish(self, error: Optional[BaseException] = None) -> None:
        if self._done:
            return
        self._error = error
        self._done = True
        # A full queue is drained first; the consumer then sees _done
        if not self._queue.full():
            self._queue.put_nowait(_END)

    def _replay(self, result: GenerationResult) -> None:
        self.cached = result.cached
        self.provider = result.provider
        self.model = result.model
        self.result = result
        if result.content:
            self._queue.put_nowait(result.content)
        self._finish()


class Gateway:
    """Routes chat queries to the best available provider.

    Each request is scored for complexity, served from the semantic cache
    when possible, checked against the user's quota, and then tried on the
    configured providers in preference order behind per-provider circuit
    breakers. A success is cached before it is returned; metric and usage
    writes run as tracked background tasks that ``drain()`` waits for.

    Example:
        ```python
        gateway = Gateway.from_config(GatewayConfig.from_env())
        result = await gateway.route_request("Explain quantum computing")
        print(result.provider, result.model, result.content)
        await gateway.aclose()
        ```
    """

    def __init__(
        self,
        providers: Union[ProviderRegistry, Mapping[str, ProviderAdapter], Iterable[ProviderAdapter]],
        cache: Optional[SemanticCache] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        quota: Optional[QuotaService] = None,
        metrics: Optional[MetricsService] = None,
        analyzer: Optional[QueryComplexityAnalyzer] = None,
        pricing: Optional[PricingTable] = None,
        fallback_policy: FallbackPolicy = FallbackPolicy.FULL,
        output_token_reserve: int = 500,
        stream_buffer_size: int = 64,
        cache_streamed_responses: bool = True,
        health_lookback_minutes: int = 15,
        alert_thresholds: Optional[AlertThresholds] = None,
    ) -> None:
        """Initialize gateway.

        Args:
            providers: Configured provider adapters
            cache: Semantic cache (in-memory by default)
            breakers: Circuit breakers (defaults: 3 failures, 30 s recovery)
            quota: Quota service; None disables quota checks and usage records
            metrics: Metrics service; None disables provider metrics
            analyzer: Complexity analyzer
            pricing: Pricing table used for cost estimates
            fallback_policy: How far a failed request may fall back
            output_token_reserve: Tokens added to quota estimates for the answer
            stream_buffer_size: Chunks buffered between producer and consumer
            cache_streamed_responses: Cache fully drained streams
            health_lookback_minutes: Window used by provider health and alerts
            alert_thresholds: Limits checked by ``check_alerts``
        """
        self.providers = providers if isinstance(providers, ProviderRegistry) else ProviderRegistry(providers)
        self.cache = cache if cache is not None else SemanticCache()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.quota = quota
        self.metrics = metrics
        self.analyzer = analyzer or QueryComplexityAnalyzer()
        self.pricing = pricing or PricingTable()
        self.fallback_policy = fallback_policy
        self.output_token_reserve = output_token_reserve
        self.stream_buffer_size = stream_buffer_size
        self.cache_streamed_responses = cache_streamed_responses
        self.health_lookback_minutes = health_lookback_minutes
        self.alert_thresholds = alert_thresholds or AlertThresholds()

        self.bookkeeping_failures: Counter[str] = Counter()
        self._pending: set[asyncio.Task] = set()
        self._streams: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        user_repo: Optional[UserRepository] = None,
        usage_repo: Optional[UsageRepository] = None,
        metrics_repo: Optional[MetricsRepository] = None,
        cache_backend: Optional[CacheBackend] = None,
        pricing: Optional[PricingTable] = None,
    ) -> "Gateway":
        """Wire a gateway from configuration.

        Repositories and the cache backend default to in-memory stores.

        Args:
            config: Gateway configuration (read from the environment when None)
            user_repo: Users and monthly counters
            usage_repo: Usage records
            metrics_repo: Provider metrics
            cache_backend: Key-value store behind the semantic cache
            pricing: Pricing table

        Returns:
            Configured gateway
        """
        config = config or GatewayConfig.from_env()
        pricing = pricing or PricingTable()

        embedding_service = None
        if config.semantic_matching and config.openai_api_key:
            embedding_service = OpenAIEmbeddingService(
                api_key=config.openai_api_key, model=config.embedding_model
            )

        if cache_backend is None:
            cache_backend = MemoryCacheBackend(maxsize=config.cache_max_entries)

        cache = SemanticCache(
            backend=cache_backend,
            ttl=config.cache_ttl,
            embedding_service=embedding_service,
            similarity_threshold=config.cache_similarity_threshold,
        )
        providers = build_providers(config, pricing)

        return cls(
            providers=providers,
            cache=cache,
            breakers=CircuitBreakerRegistry(
                failure_threshold=config.breaker_failure_threshold,
                recovery_timeout=config.breaker_recovery_timeout,
            ),
            quota=QuotaService(
                user_repo or InMemoryUserRepository(),
                usage_repo or InMemoryUsageRepository(),
                pricing=pricing,
            ),
            metrics=MetricsService(metrics_repo or InMemoryMetricsRepository(), providers=list(providers) or None),
            pricing=pricing,
            fallback_policy=config.fallback_policy,
            output_token_reserve=config.output_token_reserve,
            stream_buffer_size=config.stream_buffer_size,
            cache_streamed_responses=config.cache_streamed_responses,
            health_lookback_minutes=config.health_lookback_minutes,
            alert_thresholds=config.alert_thresholds,
        )

    async def route_request(
        self, query: Union[str, Query], options: Optional[GatewayOptions] = None
    ) -> GenerationResult:
        """Answer a query with the best available provider.

        Args:
            query: User query text, or a Query whose fields override ``options``
            options: Routing, sampling and accounting options

        Returns:
            Generation result (``cached=True`` and zero cost on a cache hit)

        Raises:
            InvalidRequestError: If the query is empty
            QuotaExceededError: If the user cannot afford the request
            ProviderHardError: If a provider failed in a way fallback cannot fix
            AllProvidersFailedError: If every candidate failed or was skipped
        """
        query, options = self._unpack(query, options)
        self._validate(query)
        started = time.perf_counter()

        complexity = self.analyzer.score(query)
        candidates = self._plan(complexity, options)
        logger.info(
            f"Routing query complexity={complexity:.2f} "
            f"candidates={[c.provider for c in candidates]}"
        )

        if not options.skip_cache:
            cached = await self._cache_lookup(query, candidates, options, complexity, started)
            if cached is not None:
                return cached

        await self._check_quota(options, self._estimate_prompt_tokens(query, options))

        policy = self._policy_for(options)
        attempts: list[tuple[str, str]] = []
        last_error: BaseException | None = None
        attempted = 0

        for candidate in candidates:
            breaker = self.breakers.get(candidate.provider)
            if breaker.is_open():
                logger.info(f"Skipping {candidate.provider}: circuit open")
                attempts.append((candidate.provider, CircuitOpenError.code))
                continue
            if attempted and policy == FallbackPolicy.DISABLED:
                logger.info("Fallback disabled, not trying further providers")
                break

            model = self._model_for_attempt(candidate, attempted, policy)
            attempt_started = time.perf_counter()
            try:
                result = await breaker.call(
                    candidate.adapter.generate, query, self._generate_options(options, model)
                )
            except CircuitOpenError as e:
                # Another request holds the half-open probe
                attempts.append((candidate.provider, e.code))
                last_error = e
                continue
            except Exception as e:
                attempted += 1
                error = classify_provider_error(e, candidate.provider)
                attempts.append((candidate.provider, error.code))
                last_error = error
                self._record_failure(candidate.provider, model, error, attempt_started, options)
                if not error.retryable:
                    logger.error(f"Non-retryable failure from {candidate.provider}, aborting fallback: {error}")
                    if error is e:
                        raise
                    raise error from e
                logger.warning(f"Provider {candidate.provider} failed, trying fallback: {error}")
                continue

            result = result.model_copy(
                update={"metadata": {**result.metadata, "complexity": complexity, "attempts": attempts}}
            )
            logger.info(
                f"Request served by {result.provider}/{result.model} "
                f"in {result.latency_ms}ms cost=${result.usage.cost_usd:.6f}"
            )
            await self._record_success(query, options, result, store_in_cache=not options.skip_cache)
            return result

        logger.error(f"All providers failed: {attempts}")
        raise AllProvidersFailedError(last_error, attempts)

    async def route_stream_request(
        self,
        query: Union[str, Query],
        options: Optional[GatewayOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GatewayStream:
        """Start a streamed answer.

        Scoring, the cache probe and the quota check happen before this
        returns; provider selection and fallback happen in the producer
        task. Fallback is only possible before the first chunk arrives.

        Args:
            query: User query text, or a Query whose fields override ``options``
            options: Routing, sampling and accounting options
            cancel_token: Caller-owned cancellation signal

        Returns:
            Stream of text deltas; provider failures surface while iterating

        Raises:
            InvalidRequestError: If the query is empty
            QuotaExceededError: If the user cannot afford the request
        """
        query, options = self._unpack(query, options)
        self._validate(query)
        started = time.perf_counter()
        stream = GatewayStream(cancel_token, self.stream_buffer_size)

        complexity = self.analyzer.score(query)
        candidates = self._plan(complexity, options)

        if not options.skip_cache:
            cached = await self._cache_lookup(query, candidates, options, complexity, started)
            if cached is not None:
                stream._replay(cached)
                return stream

        prompt_tokens = self._estimate_prompt_tokens(query, options)
        await self._check_quota(options, prompt_tokens)

        producer = asyncio.create_task(
            self._produce(stream, query, options, candidates, complexity, prompt_tokens)
        )
        stream._producer = producer
        self._streams.add(producer)
        producer.add_done_callback(self._streams.discard)
        return stream

    async def check_providers_health(self) -> dict[str, bool]:
        """Probe every configured provider concurrently."""
        names = self.providers.names()
        results = await asyncio.gather(
            *(self.providers[name].is_available() for name in names), return_exceptions=True
        )
        return {name: result is True for name, result in zip(names, results)}

    async def get_cache_stats(self, model: Optional[str] = None) -> CacheStats:
        return await self.cache.stats(model)

    async def clear_cache(self, model: str) -> int:
        return await self.cache.clear_model(model)

    def get_circuit_stats(self) -> dict[str, CircuitStats]:
        return self.breakers.snapshot()

    async def get_provider_health(self) -> list[ProviderHealthStatus]:
        """Provider health over the configured lookback window."""
        if self.metrics is None:
            return []
        return await self.metrics.get_provider_health(self.health_lookback_minutes)

    async def check_alerts(self) -> list[Alert]:
        """Alerts for providers breaching the configured thresholds.

        Returns:
            Alerts to raise; empty without a metrics service
        """
        if self.metrics is None:
            return []
        return await self.metrics.check_alerts(self.alert_thresholds, self.health_lookback_minutes)

    def estimate_cost(self, query: str, options: Optional[GatewayOptions] = None) -> dict[str, float]:
        """Estimated prompt cost of a query on each configured provider.

        Args:
            query: User query
            options: Options whose history and system prompt count as input

        Returns:
            USD estimate per provider name
        """
        tokens = self._estimate_prompt_tokens(query, options or GatewayOptions())
        return {name: adapter.estimate_cost(tokens) for name, adapter in self.providers.items()}

    async def drain(self) -> None:
        """Wait until every background metric and usage write finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel live streams, then drain background writes."""
        streams = list(self._streams)
        for producer in streams:
            producer.cancel()
        if streams:
            await asyncio.gather(*streams, return_exceptions=True)
        await self.drain()

    @staticmethod
    def _unpack(
        query: Union[str, Query], options: Optional[GatewayOptions]
    ) -> tuple[str, GatewayOptions]:
        options = options or GatewayOptions()
        if isinstance(query, str):
            return query, options

        update: dict[str, Any] = {
            field: value
            for field, value in (
                ("force_model", query.model),
                ("force_provider", query.force_provider),
                ("user_id", query.user_id),
                ("request_id", query.request_id),
            )
            if value is not None
        }
        if query.history:
            update["history"] = list(query.history)
        return query.text, options.model_copy(update=update)

    def _validate(self, query: str) -> None:
        if not query or not query.strip():
            raise InvalidRequestError("Query must not be empty")

    def _plan(self, complexity: float, options: GatewayOptions) -> list[_Candidate]:
        force_provider = options.force_provider
        model_owner = self._force_model_owner(options)
        if model_owner and not force_provider:
            force_provider = model_owner

        order = preferred_order(complexity, force_provider, self.providers.names())
        candidates = []
        for name in order:
            adapter = self.providers[name]
            model = adapter.get_model_for_complexity(complexity)
            # A forced model only ever goes to the provider that serves it
            if name == model_owner:
                model = options.force_model
            candidates.append(_Candidate(name, adapter, model))
        return candidates

    def _force_model_owner(self, options: GatewayOptions) -> Optional[str]:
        """Provider that serves ``options.force_model``.

        Models missing from the pricing table belong to the forced provider.

        Raises:
            InvalidRequestError: If no configured provider can serve the model
        """
        if not options.force_model:
            return None
        owner = self.pricing.provider_for(options.force_model)
        name = owner.value if owner else options.force_provider
        if name is None:
            raise InvalidRequestError(
                f"Unknown model {options.force_model}; set force_provider to route it"
            )
        if name not in self.providers:
            raise InvalidRequestError(
                f"Model {options.force_model} requires provider {name}, which is not configured"
            )
        return name

    def _policy_for(self, options: GatewayOptions) -> FallbackPolicy:
        if options.allow_fallback is None:
            return self.fallback_policy
        if not options.allow_fallback:
            return FallbackPolicy.DISABLED
        if self.fallback_policy == FallbackPolicy.DISABLED:
            return FallbackPolicy.FULL
        return self.fallback_policy

    def _model_for_attempt(self, candidate: _Candidate, attempted: int, policy: FallbackPolicy) -> str:
        if attempted and policy == FallbackPolicy.CHEAPEST_MODEL:
            return candidate.adapter.MODELS[ModelTier.WEAK]
        return candidate.model

    def _generate_options(self, options: GatewayOptions, model: str) -> GenerateOptions:
        return GenerateOptions(
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            system_prompt=options.system_prompt,
            history=options.history,
        )

    def _estimate_prompt_tokens(self, query: str, options: GatewayOptions) -> int:
        tokens = estimate_messages_tokens(options.history) + estimate_tokens(query)
        if options.system_prompt:
            tokens += estimate_tokens(options.system_prompt)
        return tokens

    async def _check_quota(self, options: GatewayOptions, prompt_tokens: int) -> None:
        if self.quota is None or not options.user_id:
            return
        check = await self.quota.can_spend(options.user_id, prompt_tokens + self.output_token_reserve)
        if not check.ok:
            logger.warning(f"Quota check failed for user {options.user_id}: {check.reason}")
            raise QuotaExceededError(check, user_id=options.user_id)

    async def _cache_lookup(
        self,
        query: str,
        candidates: list[_Candidate],
        options: GatewayOptions,
        complexity: float,
        started: float,
    ) -> Optional[GenerationResult]:
        if not candidates:
            return None
        entry = await self.cache.find_first(query, self._cache_models(candidates, options))
        if entry is None:
            return None

        provider = entry.provider or self.pricing.provider_for(entry.model) or candidates[0].provider
        return GenerationResult(
            content=entry.response,
            usage=TokenUsage(
                prompt_tokens=entry.tokens_in,
                completion_tokens=entry.tokens_out,
                cost_usd=0.0,
            ),
            provider=str(getattr(provider, "value", provider)),
            model=entry.model,
            latency_ms=int((time.perf_counter() - started) * 1000),
            cached=True,
            metadata={"complexity": complexity, "saved_cost_usd": entry.cost_usd},
        )

    def _cache_models(self, candidates: list[_Candidate], options: GatewayOptions) -> list[str]:
        """Models that could serve the request, in the order they would be tried.

        An answer cached after a fallback is reused once the preferred
        provider recovers.
        """
        policy = self._policy_for(options)
        reachable = [c for c in candidates if not self.breakers.get(c.provider).is_open()]
        if not reachable or policy == FallbackPolicy.DISABLED:
            reachable = reachable[:1] or candidates[:1]

        models: list[str] = []
        for attempted, candidate in enumerate(reachable):
            model = self._model_for_attempt(candidate, attempted, policy)
            if model not in models:
                models.append(model)
        return models

    async def _produce(
        self,
        stream: GatewayStream,
        query: str,
        options: GatewayOptions,
        candidates: list[_Candidate],
        complexity: float,
        prompt_tokens: int,
    ) -> None:
        try:
            await self._run_stream(stream, query, options, candidates, complexity, prompt_tokens)
        except asyncio.CancelledError:
            stream._finish()
            raise
        except Exception as e:
            logger.exception(f"Stream producer failed: {e}")
            stream._finish(e)
        finally:
            stream._finish()

    async def _run_stream(
        self,
        stream: GatewayStream,
        query: str,
        options: GatewayOptions,
        candidates: list[_Candidate],
        complexity: float,
        prompt_tokens: int,
    ) -> None:
        policy = self._policy_for(options)
        token = stream.cancel_token
        attempts: list[tuple[str, str]] = []
        last_error: BaseException | None = None
        attempted = 0

        for candidate in candidates:
            breaker = self.breakers.get(candidate.provider)
            if breaker.is_open():
                attempts.append((candidate.provider, CircuitOpenError.code))
                continue
            if attempted and policy == FallbackPolicy.DISABLED:
                break
            if not breaker.allow_request():
                attempts.append((candidate.provider, CircuitOpenError.code))
                continue

            model = self._model_for_attempt(candidate, attempted, policy)
            attempted += 1
            attempt_started = time.perf_counter()
            parts: list[str] = []

            try:
                chunks = candidate.adapter.generate_stream(
                    query, self._generate_options(options, model), token
                )
                async with aclosing(chunks):
                    async for chunk in chunks:
                        if token.cancelled:
                            break
                        if not parts:
                            stream.provider, stream.model = candidate.provider, model
                        parts.append(chunk)
                        if not await stream._emit(chunk):
                            break
            except asyncio.CancelledError:
                breaker.release_probe()
                self._record_cancelled_stream(options, candidate, model, prompt_tokens, parts)
                raise
            except Exception as e:
                error = classify_provider_error(e, candidate.provider)
                if token.cancelled:
                    breaker.release_probe()
                    self._record_cancelled_stream(options, candidate, model, prompt_tokens, parts)
                    return
                if error.trips_breaker:
                    breaker.record_failure(error)
                else:
                    breaker.release_probe()
                attempts.append((candidate.provider, error.code))
                last_error = error
                self._record_failure(candidate.provider, model, error, attempt_started, options)
                # Deltas already reached the caller; another provider cannot continue them
                if parts or not error.retryable:
                    stream._finish(error)
                    return
                logger.warning(f"Stream from {candidate.provider} failed before first chunk, trying fallback: {error}")
                continue

            if token.cancelled:
                breaker.release_probe()
                self._record_cancelled_stream(options, candidate, model, prompt_tokens, parts)
                return

            breaker.record_success()
            stream.provider, stream.model = candidate.provider, model
            content = "".join(parts)
            tokens_out = estimate_tokens(content)
            result = GenerationResult(
                content=content,
                usage=TokenUsage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=tokens_out,
                    cost_usd=candidate.adapter.calculate_cost(model, prompt_tokens, tokens_out),
                ),
                provider=candidate.provider,
                model=model,
                latency_ms=int((time.perf_counter() - attempt_started) * 1000),
                metadata={"complexity": complexity, "attempts": attempts, "streamed": True},
            )
            stream.result = result
            logger.info(f"Stream served by {candidate.provider}/{model} ({len(content)} chars)")
            await self._record_success(
                query,
                options,
                result,
                store_in_cache=self.cache_streamed_responses and not options.skip_cache,
            )
            stream._finish()
            return

        logger.error(f"All providers failed for stream: {attempts}")
        stream._finish(AllProvidersFailedError(last_error, attempts))

    async def _record_success(
        self, query: str, options: GatewayOptions, result: GenerationResult, store_in_cache: bool
    ) -> None:
        if self.metrics is not None:
            self._spawn(
                self.metrics.record_metric(
                    ProviderMetric(
                        provider=result.provider,
                        model=result.model,
                        latency_ms=result.latency_ms,
                        cost_usd=result.usage.cost_usd,
                        success=True,
                        user_id=options.user_id,
                        request_id=options.request_id,
                        tokens_in=result.usage.prompt_tokens,
                        tokens_out=result.usage.completion_tokens,
                    )
                )
            )
        self._spawn(
            self._record_usage(
                options,
                result.model,
                result.usage.prompt_tokens,
                result.usage.completion_tokens,
                result.usage.cost_usd,
                {"provider": result.provider, "latency_ms": result.latency_ms},
            )
        )
        # Stored before returning so an identical follow-up request hits the cache
        if store_in_cache:
            await self.cache.set(
                CacheEntry(
                    query=query,
                    response=result.content,
                    model=result.model,
                    provider=result.provider,
                    tokens_in=result.usage.prompt_tokens,
                    tokens_out=result.usage.completion_tokens,
                    cost_usd=result.usage.cost_usd,
                )
            )

    def _record_failure(
        self,
        provider: str,
        model: str,
        error: ProviderError,
        attempt_started: float,
        options: GatewayOptions,
    ) -> None:
        if self.metrics is None:
            return
        # No request_id: it is reserved for the request's single success metric
        self._spawn(
            self.metrics.record_metric(
                ProviderMetric(
                    provider=provider,
                    model=model,
                    latency_ms=int((time.perf_counter() - attempt_started) * 1000),
                    success=False,
                    error_code=error.code,
                    error_message=error.detail[:500],
                    user_id=options.user_id,
                )
            )
        )

    def _record_cancelled_stream(
        self,
        options: GatewayOptions,
        candidate: _Candidate,
        model: str,
        prompt_tokens: int,
        parts: list[str],
    ) -> None:
        logger.info(f"Stream from {candidate.provider} cancelled after {len(parts)} chunks")
        if not parts:
            return
        tokens_out = estimate_tokens("".join(parts))
        self._spawn(
            self._record_usage(
                options,
                model,
                prompt_tokens,
                tokens_out,
                candidate.adapter.calculate_cost(model, prompt_tokens, tokens_out),
                {"provider": candidate.provider, "cancelled": True},
            )
        )

    async def _record_usage(
        self,
        options: GatewayOptions,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
        meta: dict[str, Any],
    ) -> None:
        if self.quota is None or not options.user_id:
            return
        try:
            await self.quota.record_usage(
                options.user_id,
                model,
                tokens_in,
                tokens_out,
                cost_usd=cost_usd,
                request_id=options.request_id,
                meta=meta,
            )
        except Exception as e:
            self.bookkeeping_failures["usage"] += 1
            logger.warning(
                f"Failed to record usage for user {options.user_id} "
                f"request {options.request_id}: {e}"
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._bookkeeping_done)

    def _bookkeeping_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background bookkeeping failed: {task.exception()}")
