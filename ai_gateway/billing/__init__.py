"""Plans, quotas and usage accounting."""

from ai_gateway.billing.models import (
    PLAN_LIMITS,
    ModelUsage,
    PlanLimits,
    PlanTier,
    QuotaCheck,
    QuotaReason,
    UsageRecord,
    UsageRecordResult,
    UsageStats,
    UsageSummary,
    UserAccount,
)
from ai_gateway.billing.quota import QuotaService

__all__ = [
    "PLAN_LIMITS",
    "ModelUsage",
    "PlanLimits",
    "PlanTier",
    "QuotaCheck",
    "QuotaReason",
    "QuotaService",
    "UsageRecord",
    "UsageRecordResult",
    "UsageStats",
    "UsageSummary",
    "UserAccount",
]
