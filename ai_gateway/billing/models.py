"""Plan, quota and usage models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PlanTier(str, Enum):
    """Subscription plan of a user."""

    FREE = "FREE"
    PLUS = "PLUS"
    PRO = "PRO"


class PlanLimits(BaseModel):
    """Token ceilings of a plan."""

    model_config = ConfigDict(frozen=True)

    monthly_token_limit: int
    per_request_max_tokens: int


# Higher tiers have strictly larger limits on both axes
PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(monthly_token_limit=50_000, per_request_max_tokens=4_000),
    PlanTier.PLUS: PlanLimits(monthly_token_limit=1_000_000, per_request_max_tokens=16_000),
    PlanTier.PRO: PlanLimits(monthly_token_limit=5_000_000, per_request_max_tokens=64_000),
}


class QuotaReason(str, Enum):
    """Why a quota check failed."""

    NO_USER = "NO_USER"
    PER_REQUEST_TOO_LARGE = "PER_REQUEST_TOO_LARGE"
    OVER_LIMIT = "OVER_LIMIT"


class QuotaCheck(BaseModel):
    """Outcome of ``QuotaService.can_spend``."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    reason: QuotaReason | None = None
    remaining: int
    limit: int
    would_exceed_by: int | None = None


class UserAccount(BaseModel):
    """Quota state of one user."""

    user_id: str
    plan_tier: PlanTier = PlanTier.FREE
    monthly_token_used: int = 0


class UsageRecord(BaseModel):
    """One billed generation. Append-only."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    model: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    request_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class UsageRecordResult(BaseModel):
    """Outcome of ``QuotaService.record_usage``."""

    saved: bool
    new_monthly_used: int
    plan: PlanTier
    cost_usd: float


class UsageSummary(BaseModel):
    """Monthly usage of a user against their plan."""

    used: int
    limit: int
    remaining: int
    percent: int
    plan: PlanTier


class ModelUsage(BaseModel):
    """Usage totals for one model."""

    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    requests: int = 0


class UsageStats(BaseModel):
    """Usage totals of a user over a date range."""

    total: ModelUsage
    by_model: list[ModelUsage] = Field(default_factory=list)
