"""In-process repository implementations."""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Optional

from ai_gateway.billing.models import PlanTier, UsageRecord, UserAccount
from ai_gateway.core.models import MessageRole
from ai_gateway.monitoring.models import ProviderMetric
from ai_gateway.storage.base import (
    MessageStore,
    MetricsRepository,
    StoredMessage,
    UsageRepository,
    UserRepository,
)


def _in_range(created_at: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and created_at < start:
        return False
    if end is not None and created_at > end:
        return False
    return True


class InMemoryUserRepository(UserRepository):
    def __init__(self, users: Optional[list[UserAccount]] = None) -> None:
        self._users: dict[str, UserAccount] = {u.user_id: u for u in users or []}
        self._lock = asyncio.Lock()

    def add_user(
        self, user_id: str, plan_tier: PlanTier = PlanTier.FREE, monthly_token_used: int = 0
    ) -> UserAccount:
        user = UserAccount(user_id=user_id, plan_tier=plan_tier, monthly_token_used=monthly_token_used)
        self._users[user_id] = user
        return user

    async def find_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def increment_token_usage(self, user_id: str, delta: int) -> UserAccount:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise KeyError(f"Unknown user {user_id}")
            updated = user.model_copy(update={"monthly_token_used": user.monthly_token_used + delta})
            self._users[user_id] = updated
            return updated.model_copy()

    async def reset_monthly_token_usage(self) -> int:
        async with self._lock:
            for user_id, user in self._users.items():
                self._users[user_id] = user.model_copy(update={"monthly_token_used": 0})
            return len(self._users)


class InMemoryUsageRepository(UsageRepository):
    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._by_request: dict[tuple[str, str], UsageRecord] = {}
        self._lock = asyncio.Lock()

    async def find_by_request_id(self, user_id: str, request_id: str) -> Optional[UsageRecord]:
        return self._by_request.get((user_id, request_id))

    async def create(self, record: UsageRecord) -> bool:
        async with self._lock:
            if record.request_id is not None:
                key = (record.user_id, record.request_id)
                if key in self._by_request:
                    return False
                self._by_request[key] = record
            self._records.append(record)
            return True

    async def delete(self, record: UsageRecord) -> None:
        async with self._lock:
            self._records = [r for r in self._records if r is not record]
            key = (record.user_id, record.request_id)
            if record.request_id is not None and self._by_request.get(key) is record:
                del self._by_request[key]

    async def list_records(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        return [
            r for r in self._records if r.user_id == user_id and _in_range(r.created_at, start, end)
        ]


class InMemoryMetricsRepository(MetricsRepository):
    def __init__(self) -> None:
        self._metrics: list[ProviderMetric] = []
        self._by_request: dict[str, ProviderMetric] = {}
        self._lock = asyncio.Lock()

    async def find_by_request_id(self, request_id: str) -> Optional[ProviderMetric]:
        return self._by_request.get(request_id)

    async def create(self, metric: ProviderMetric) -> bool:
        async with self._lock:
            if metric.request_id is not None:
                if metric.request_id in self._by_request:
                    return False
                self._by_request[metric.request_id] = metric
            self._metrics.append(metric)
            return True

    async def list_metrics(
        self,
        provider: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ProviderMetric]:
        return [
            m
            for m in self._metrics
            if (provider is None or m.provider == provider) and _in_range(m.created_at, start, end)
        ]


class InMemoryMessageStore(MessageStore):
    def __init__(self) -> None:
        self._messages: dict[str, list[StoredMessage]] = defaultdict(list)
        self.updated_at: dict[str, datetime] = {}

    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[StoredMessage]:
        if limit <= 0:
            return []
        return list(self._messages[conversation_id][-limit:])

    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        model: Optional[str] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        latency_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> StoredMessage:
        message = StoredMessage(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            role=role,
            content=content,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            request_id=request_id,
        )
        self._messages[conversation_id].append(message)
        return message

    async def find_by_request_id(
        self, conversation_id: str, request_id: str
    ) -> Optional[StoredMessage]:
        for message in self._messages.get(conversation_id, []):
            if message.request_id == request_id and message.role == MessageRole.ASSISTANT:
                return message
        return None

    async def touch(self, conversation_id: str) -> None:
        self.updated_at[conversation_id] = datetime.now(UTC)
