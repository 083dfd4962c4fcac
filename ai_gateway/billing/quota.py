"""Per-user token quotas and usage recording."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from ai_gateway.billing.models import (
    PLAN_LIMITS,
    ModelUsage,
    PlanLimits,
    QuotaCheck,
    QuotaReason,
    UsageRecord,
    UsageRecordResult,
    UsageStats,
    UsageSummary,
)
from ai_gateway.core.models import PricingTable

if TYPE_CHECKING:
    from ai_gateway.storage.base import UsageRepository, UserRepository

logger = logging.getLogger(__name__)


class QuotaService:
    """Decides whether a user may spend tokens and records what they spent."""

    def __init__(
        self,
        user_repo: "UserRepository",
        usage_repo: "UsageRepository",
        pricing: Optional[PricingTable] = None,
        plan_limits: Optional[dict[Any, PlanLimits]] = None,
    ) -> None:
        """Initialize quota service.

        Args:
            user_repo: Users and their monthly counters
            usage_repo: Append-only usage records
            pricing: Pricing table used when a caller omits the cost
            plan_limits: Limits per plan tier (defaults to PLAN_LIMITS)
        """
        self.user_repo = user_repo
        self.usage_repo = usage_repo
        self.pricing = pricing or PricingTable()
        self.plan_limits = plan_limits or PLAN_LIMITS

    async def can_spend(self, user_id: str, estimated_tokens: int) -> QuotaCheck:
        """Check whether a user can afford an estimated request.

        The per-request ceiling is checked before the monthly balance.

        Args:
            user_id: User to check
            estimated_tokens: Estimated prompt plus output tokens

        Returns:
            Quota check; ``ok`` is False with a reason when denied
        """
        user = await self.user_repo.find_user(user_id)
        if user is None:
            return QuotaCheck(ok=False, reason=QuotaReason.NO_USER, remaining=0, limit=0)

        limits = self.plan_limits[user.plan_tier]
        monthly_limit = limits.monthly_token_limit
        remaining = max(0, monthly_limit - user.monthly_token_used)

        if estimated_tokens > limits.per_request_max_tokens:
            logger.warning(
                f"Request for user {user_id} exceeds per-request limit: "
                f"{estimated_tokens} > {limits.per_request_max_tokens}"
            )
            return QuotaCheck(
                ok=False,
                reason=QuotaReason.PER_REQUEST_TOO_LARGE,
                remaining=remaining,
                limit=monthly_limit,
                would_exceed_by=estimated_tokens - limits.per_request_max_tokens,
            )

        projected = user.monthly_token_used + estimated_tokens
        if projected > monthly_limit:
            logger.warning(
                f"User {user_id} would exceed monthly quota: "
                f"used={user.monthly_token_used} projected={projected} limit={monthly_limit}"
            )
            return QuotaCheck(
                ok=False,
                reason=QuotaReason.OVER_LIMIT,
                remaining=remaining,
                limit=monthly_limit,
                would_exceed_by=projected - monthly_limit,
            )

        return QuotaCheck(ok=True, remaining=monthly_limit - projected, limit=monthly_limit)

    async def record_usage(
        self,
        user_id: str,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: Optional[float] = None,
        request_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> UsageRecordResult:
        """Persist a usage record and bump the user's monthly counter.

        A second call with the same (user_id, request_id) is a no-op.

        Args:
            user_id: User to charge
            model: Model that served the request
            tokens_in: Prompt tokens
            tokens_out: Completion tokens
            cost_usd: Cost in USD; computed from the pricing table when None
            request_id: Idempotency key
            meta: Free-form context stored with the record

        Returns:
            Whether a record was saved and the user's monthly usage

        Raises:
            KeyError: If the user does not exist
            Exception: Whatever the counter update raised; the record is
                removed first so a retry can save it
        """
        if cost_usd is None:
            cost_usd = self.pricing.cost(model, tokens_in, tokens_out)

        record = UsageRecord(
            user_id=user_id,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost_usd,
            request_id=request_id,
            meta=meta or {},
        )
        if not await self.usage_repo.create(record):
            logger.debug(f"Duplicate request {request_id} for user {user_id}, usage not recorded")
            user = await self.user_repo.find_user(user_id)
            if user is None:
                raise KeyError(f"Unknown user {user_id}")
            return UsageRecordResult(
                saved=False,
                new_monthly_used=user.monthly_token_used,
                plan=user.plan_tier,
                cost_usd=0.0,
            )

        try:
            updated = await self.user_repo.increment_token_usage(user_id, record.total_tokens)
        except Exception as e:
            # The record and the counter change together or not at all
            logger.error(f"Usage increment failed for user {user_id}, rolling back record {request_id}: {e}")
            await self.usage_repo.delete(record)
            raise
        logger.info(
            f"Usage recorded for user {user_id}: model={model} tokens_in={tokens_in} "
            f"tokens_out={tokens_out} cost=${cost_usd:.6f} monthly_used={updated.monthly_token_used}"
        )
        return UsageRecordResult(
            saved=True,
            new_monthly_used=updated.monthly_token_used,
            plan=updated.plan_tier,
            cost_usd=cost_usd,
        )

    async def get_usage_summary(self, user_id: str) -> Optional[UsageSummary]:
        user = await self.user_repo.find_user(user_id)
        if user is None:
            return None

        limit = self.plan_limits[user.plan_tier].monthly_token_limit
        used = user.monthly_token_used
        percent = min(100, round(used / limit * 100)) if limit > 0 else 0
        return UsageSummary(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percent=percent,
            plan=user.plan_tier,
        )

    async def get_usage_stats(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        """Aggregate a user's usage records, overall and per model.

        Args:
            user_id: User to report on
            start: Inclusive lower bound on record creation time
            end: Inclusive upper bound on record creation time

        Returns:
            Totals plus per-model usage, most requested model first
        """
        records = await self.usage_repo.list_records(user_id, start, end)

        total = ModelUsage(model="all")
        by_model: dict[str, ModelUsage] = {}
        for record in records:
            for usage in (total, by_model.setdefault(record.model, ModelUsage(model=record.model))):
                usage.tokens_in += record.tokens_in
                usage.tokens_out += record.tokens_out
                usage.cost_usd += record.cost_usd
                usage.requests += 1

        return UsageStats(
            total=total,
            by_model=sorted(by_model.values(), key=lambda u: u.requests, reverse=True),
        )

    async def reset_monthly_quotas(self) -> int:
        """Zero every user's monthly counter (run at the billing boundary).

        Returns:
            Number of users reset
        """
        count = await self.user_repo.reset_monthly_token_usage()
        logger.info(f"Monthly quotas reset for {count} users")
        return count

    async def get_user_limits(self, user_id: str) -> Optional[PlanLimits]:
        user = await self.user_repo.find_user(user_id)
        if user is None:
            return None
        return self.plan_limits[user.plan_tier]
