"""Provider metric and health models."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProviderMetric(BaseModel):
    """Outcome of one provider call. Append-only."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    latency_ms: int
    cost_usd: float = 0.0
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    user_id: str | None = None
    request_id: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class HealthStatus(str, Enum):
    """Provider health derived from its recent error rate."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class ProviderHealthStatus(BaseModel):
    """Health of one provider over a lookback window."""

    provider: str
    status: HealthStatus
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    recent_error_count: int = 0
    last_checked: datetime


class ProviderStats(BaseModel):
    """Aggregated metrics of one provider (error rate in percent)."""

    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    total_cost_usd: float = 0.0
    total_tokens_in: int = 0
    total_tokens_out: int = 0


class ModelStats(BaseModel):
    """Aggregated metrics of one model."""

    provider: str
    model: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    total_cost_usd: float = 0.0


class OverallStats(BaseModel):
    total_requests: int = 0
    total_cost_usd: float = 0.0
    avg_latency_ms: float = 0.0
    error_rate: float = 0.0


class DashboardMetrics(BaseModel):
    """Everything a monitoring dashboard shows for a time range."""

    start: datetime
    end: datetime
    providers: list[ProviderStats] = Field(default_factory=list)
    top_models: list[ModelStats] = Field(default_factory=list)
    overall: OverallStats = Field(default_factory=OverallStats)


class AlertThresholds(BaseModel):
    """When to raise alerts."""

    error_rate_percent: float = 10.0
    latency_ms: float = 10_000.0
    enabled: bool = True


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class Alert(BaseModel):
    provider: str
    reason: str
    severity: AlertSeverity


class CostBreakdownItem(BaseModel):
    provider: str
    model: str
    cost_usd: float
    requests: int


class LatencyPercentiles(BaseModel):
    p50: int
    p95: int
    p99: int


class HourlyErrorRate(BaseModel):
    hour: datetime
    error_rate: float
    total_requests: int
