"""Provider metrics, health and alerting."""

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from ai_gateway.core.models import ProviderId
from ai_gateway.monitoring.models import (
    Alert,
    AlertSeverity,
    AlertThresholds,
    CostBreakdownItem,
    DashboardMetrics,
    HealthStatus,
    HourlyErrorRate,
    LatencyPercentiles,
    ModelStats,
    OverallStats,
    ProviderHealthStatus,
    ProviderMetric,
    ProviderStats,
)

if TYPE_CHECKING:
    from ai_gateway.storage.base import MetricsRepository

logger = logging.getLogger(__name__)

DOWN_ERROR_RATE = 50.0
DEGRADED_ERROR_RATE = 10.0
TOP_MODELS_LIMIT = 5


def _provider_stats(provider: str, metrics: list[ProviderMetric]) -> ProviderStats:
    total = len(metrics)
    failed = sum(1 for m in metrics if not m.success)
    return ProviderStats(
        provider=provider,
        total_requests=total,
        successful_requests=total - failed,
        failed_requests=failed,
        error_rate=failed / total * 100 if total else 0.0,
        avg_latency_ms=sum(m.latency_ms for m in metrics) / total if total else 0.0,
        total_cost_usd=sum(m.cost_usd for m in metrics),
        total_tokens_in=sum(m.tokens_in or 0 for m in metrics),
        total_tokens_out=sum(m.tokens_out or 0 for m in metrics),
    )


def _model_stats(provider: str, model: str, metrics: list[ProviderMetric]) -> ModelStats:
    stats = _provider_stats(provider, metrics)
    return ModelStats(
        provider=provider,
        model=model,
        total_requests=stats.total_requests,
        successful_requests=stats.successful_requests,
        failed_requests=stats.failed_requests,
        error_rate=stats.error_rate,
        avg_latency_ms=stats.avg_latency_ms,
        total_cost_usd=stats.total_cost_usd,
    )


def health_for_error_rate(error_rate: float) -> HealthStatus:
    """Map an error rate in percent onto a health status."""
    if error_rate > DOWN_ERROR_RATE:
        return HealthStatus.DOWN
    if error_rate > DEGRADED_ERROR_RATE:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class MetricsService:
    """Aggregates provider metrics into health, dashboards and alerts."""

    def __init__(
        self,
        repository: "MetricsRepository",
        providers: Optional[list[str]] = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize metrics service.

        Args:
            repository: Append-only metric store
            providers: Providers always reported, even without traffic
            now: Wall clock (injectable for tests)
        """
        self.repository = repository
        self.providers = providers or [p.value for p in ProviderId]
        self._now = now

    async def record_metric(self, metric: ProviderMetric) -> None:
        """Store a metric. Never raises; duplicates by request_id are skipped."""
        try:
            if metric.request_id and await self.repository.find_by_request_id(metric.request_id):
                logger.debug(f"Duplicate metric for request {metric.request_id} skipped")
                return
            if not await self.repository.create(metric):
                logger.debug(f"Duplicate metric for request {metric.request_id} skipped")
                return
            logger.debug(
                f"Metric recorded provider={metric.provider} model={metric.model} "
                f"success={metric.success} latency={metric.latency_ms}ms"
            )
        except Exception as e:
            logger.error(f"Failed to record metric for {metric.provider}: {e}")

    async def get_provider_health(self, lookback_minutes: int = 15) -> list[ProviderHealthStatus]:
        """Health of each known provider over a recent window.

        Args:
            lookback_minutes: Window size

        Returns:
            One status per provider; providers without traffic are HEALTHY
        """
        end = self._now()
        start = end - timedelta(minutes=lookback_minutes)
        by_provider = await self._group_by_provider(start, end)

        statuses = []
        for provider in self._known_providers(by_provider):
            stats = _provider_stats(provider, by_provider.get(provider, []))
            if stats.total_requests == 0:
                statuses.append(
                    ProviderHealthStatus(provider=provider, status=HealthStatus.HEALTHY, last_checked=end)
                )
                continue
            statuses.append(
                ProviderHealthStatus(
                    provider=provider,
                    status=health_for_error_rate(stats.error_rate),
                    error_rate=stats.error_rate,
                    avg_latency_ms=stats.avg_latency_ms,
                    recent_error_count=stats.failed_requests,
                    last_checked=end,
                )
            )
        return statuses

    async def get_dashboard_metrics(self, hours_back: int = 24) -> DashboardMetrics:
        """Per-provider stats, top models and overall totals.

        Args:
            hours_back: Window size in hours

        Returns:
            Dashboard metrics; average latency is weighted by request count
        """
        end = self._now()
        start = end - timedelta(hours=hours_back)
        by_provider = await self._group_by_provider(start, end)

        providers = [
            _provider_stats(provider, by_provider.get(provider, []))
            for provider in self._known_providers(by_provider)
        ]
        total_requests = sum(s.total_requests for s in providers)
        overall = OverallStats(
            total_requests=total_requests,
            total_cost_usd=sum(s.total_cost_usd for s in providers),
            avg_latency_ms=sum(s.avg_latency_ms * s.total_requests for s in providers)
            / max(1, total_requests),
            error_rate=sum(s.failed_requests for s in providers) / max(1, total_requests) * 100,
        )

        models = self._model_stats(by_provider)
        models.sort(key=lambda m: m.total_requests, reverse=True)

        return DashboardMetrics(
            start=start,
            end=end,
            providers=providers,
            top_models=models[:TOP_MODELS_LIMIT],
            overall=overall,
        )

    async def check_alerts(
        self, thresholds: AlertThresholds, lookback_minutes: int = 15
    ) -> list[Alert]:
        """Compare current provider health against thresholds.

        Args:
            thresholds: Error-rate and latency limits
            lookback_minutes: Health window

        Returns:
            Alerts to raise; empty when alerting is disabled or on failure
        """
        if not thresholds.enabled:
            return []

        try:
            statuses = await self.get_provider_health(lookback_minutes)
        except Exception as e:
            logger.error(f"Failed to check alerts: {e}")
            return []

        alerts = []
        for health in statuses:
            if health.error_rate > thresholds.error_rate_percent:
                alerts.append(
                    Alert(
                        provider=health.provider,
                        reason=(
                            f"Error rate {health.error_rate:.1f}% exceeds threshold "
                            f"{thresholds.error_rate_percent}%"
                        ),
                        severity=(
                            AlertSeverity.CRITICAL
                            if health.status == HealthStatus.DOWN
                            else AlertSeverity.WARNING
                        ),
                    )
                )
            if health.avg_latency_ms > thresholds.latency_ms:
                alerts.append(
                    Alert(
                        provider=health.provider,
                        reason=(
                            f"Average latency {health.avg_latency_ms:.0f}ms exceeds threshold "
                            f"{thresholds.latency_ms:.0f}ms"
                        ),
                        severity=AlertSeverity.WARNING,
                    )
                )

        if alerts:
            logger.warning(f"Alerts triggered: {[a.reason for a in alerts]}")
        return alerts

    async def get_cost_breakdown(self, start: datetime, end: datetime) -> list[CostBreakdownItem]:
        """Cost per (provider, model), most expensive first."""
        by_provider = await self._group_by_provider(start, end)
        breakdown = [
            CostBreakdownItem(
                provider=m.provider,
                model=m.model,
                cost_usd=m.total_cost_usd,
                requests=m.total_requests,
            )
            for m in self._model_stats(by_provider)
        ]
        return sorted(breakdown, key=lambda item: item.cost_usd, reverse=True)

    async def get_latency_percentiles(
        self,
        provider: str,
        model: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Optional[LatencyPercentiles]:
        """Latency percentiles over successful requests only.

        Returns:
            p50/p95/p99 in milliseconds, or None without data
        """
        metrics = await self.repository.list_metrics(provider=provider, start=start, end=end)
        latencies = sorted(
            m.latency_ms for m in metrics if m.success and (model is None or m.model == model)
        )
        if not latencies:
            return None

        def at(fraction: float) -> int:
            return latencies[min(len(latencies) - 1, int(len(latencies) * fraction))]

        return LatencyPercentiles(p50=at(0.5), p95=at(0.95), p99=at(0.99))

    async def get_hourly_error_rate(
        self, provider: str, hours_back: int = 24
    ) -> list[HourlyErrorRate]:
        """Error rate per hour bucket, newest first."""
        start = self._now() - timedelta(hours=hours_back)
        metrics = await self.repository.list_metrics(provider=provider, start=start)

        buckets: dict[datetime, list[ProviderMetric]] = defaultdict(list)
        for metric in metrics:
            buckets[metric.created_at.replace(minute=0, second=0, microsecond=0)].append(metric)

        return [
            HourlyErrorRate(
                hour=hour,
                total_requests=len(bucket),
                error_rate=sum(1 for m in bucket if not m.success) / len(bucket) * 100,
            )
            for hour, bucket in sorted(buckets.items(), reverse=True)
        ]

    async def get_recent_errors(
        self, provider: Optional[str] = None, limit: int = 50
    ) -> list[ProviderMetric]:
        """Most recent failed calls, newest first."""
        metrics = await self.repository.list_metrics(provider=provider)
        errors = [m for m in metrics if not m.success]
        errors.sort(key=lambda m: m.created_at, reverse=True)
        return errors[:limit]

    async def _group_by_provider(
        self, start: datetime, end: datetime
    ) -> dict[str, list[ProviderMetric]]:
        grouped: dict[str, list[ProviderMetric]] = defaultdict(list)
        for metric in await self.repository.list_metrics(start=start, end=end):
            grouped[metric.provider].append(metric)
        return grouped

    def _known_providers(self, by_provider: dict[str, list[ProviderMetric]]) -> list[str]:
        extra = sorted(p for p in by_provider if p not in self.providers)
        return list(self.providers) + extra

    def _model_stats(self, by_provider: dict[str, list[ProviderMetric]]) -> list[ModelStats]:
        stats = []
        for provider, metrics in by_provider.items():
            by_model: dict[str, list[ProviderMetric]] = defaultdict(list)
            for metric in metrics:
                by_model[metric.model].append(metric)
            stats.extend(_model_stats(provider, model, items) for model, items in by_model.items())
        return stats
