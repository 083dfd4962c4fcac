"""Persistence interfaces consumed by the gateway services.

The gateway never owns a database. Deployments implement these against
their own stores; ``ai_gateway.storage.memory`` ships in-process versions.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Optional

from pydantic import BaseModel, Field

from ai_gateway.billing.models import UsageRecord, UserAccount
from ai_gateway.core.models import ChatMessage, MessageRole
from ai_gateway.monitoring.models import ProviderMetric


class StoredMessage(BaseModel):
    """Message persisted in a conversation."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    latency_ms: int | None = None
    request_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def as_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class UserRepository(ABC):
    """Users and their monthly token counters."""

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    async def increment_token_usage(self, user_id: str, delta: int) -> UserAccount:
        """Atomically add ``delta`` to the user's monthly counter.

        Raises:
            KeyError: If the user does not exist
        """
        pass

    @abstractmethod
    async def reset_monthly_token_usage(self) -> int:
        """Zero every user's monthly counter.

        Returns:
            Number of users reset
        """
        pass


class UsageRepository(ABC):
    """Append-only store of usage records."""

    @abstractmethod
    async def find_by_request_id(self, user_id: str, request_id: str) -> Optional[UsageRecord]:
        pass

    @abstractmethod
    async def create(self, record: UsageRecord) -> bool:
        """Insert a record unless one exists for its (user_id, request_id).

        Returns:
            True if inserted, False if it was a duplicate
        """
        pass

    @abstractmethod
    async def delete(self, record: UsageRecord) -> None:
        """Remove a record previously inserted by ``create``.

        Frees its (user_id, request_id) so the request can be recorded again.
        """
        pass

    @abstractmethod
    async def list_records(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        pass


class MetricsRepository(ABC):
    """Append-only store of provider metrics."""

    @abstractmethod
    async def find_by_request_id(self, request_id: str) -> Optional[ProviderMetric]:
        pass

    @abstractmethod
    async def create(self, metric: ProviderMetric) -> bool:
        """Insert a metric unless one exists for its request_id.

        Returns:
            True if inserted, False if it was a duplicate
        """
        pass

    @abstractmethod
    async def list_metrics(
        self,
        provider: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ProviderMetric]:
        """Metrics in chronological order, optionally filtered."""
        pass


class MessageStore(ABC):
    """Conversation history."""

    @abstractmethod
    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[StoredMessage]:
        """Most recent ``limit`` messages in chronological order."""
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    async def find_by_request_id(
        self, conversation_id: str, request_id: str
    ) -> Optional[StoredMessage]:
        """Assistant message previously stored for ``request_id``."""
        pass

    @abstractmethod
    async def touch(self, conversation_id: str) -> None:
        """Mark the conversation as updated now."""
        pass
