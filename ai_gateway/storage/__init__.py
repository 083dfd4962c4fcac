"""Repository interfaces and in-memory implementations."""

from ai_gateway.storage.base import (
    MessageStore,
    MetricsRepository,
    StoredMessage,
    UsageRepository,
    UserRepository,
)
from ai_gateway.storage.memory import (
    InMemoryMessageStore,
    InMemoryMetricsRepository,
    InMemoryUsageRepository,
    InMemoryUserRepository,
)

__all__ = [
    "MessageStore",
    "MetricsRepository",
    "StoredMessage",
    "UsageRepository",
    "UserRepository",
    "InMemoryMessageStore",
    "InMemoryMetricsRepository",
    "InMemoryUsageRepository",
    "InMemoryUserRepository",
]
