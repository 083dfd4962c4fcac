"""Provider metrics, health status and alerting."""

from ai_gateway.monitoring.metrics import MetricsService, health_for_error_rate
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

__all__ = [
    "MetricsService",
    "health_for_error_rate",
    "Alert",
    "AlertSeverity",
    "AlertThresholds",
    "CostBreakdownItem",
    "DashboardMetrics",
    "HealthStatus",
    "HourlyErrorRate",
    "LatencyPercentiles",
    "ModelStats",
    "OverallStats",
    "ProviderHealthStatus",
    "ProviderMetric",
    "ProviderStats",
]
