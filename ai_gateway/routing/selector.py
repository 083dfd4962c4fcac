"""Provider preference ordering."""

from collections.abc import Iterable
from enum import Enum

from ai_gateway.core.models import ProviderId

COMPLEXITY_SPLIT = 0.5

# Cheaper provider first for simple queries, stronger reasoning first otherwise
LOW_COMPLEXITY_ORDER = (ProviderId.OPENAI.value, ProviderId.ANTHROPIC.value, ProviderId.GOOGLE.value)
HIGH_COMPLEXITY_ORDER = (ProviderId.ANTHROPIC.value, ProviderId.OPENAI.value, ProviderId.GOOGLE.value)


class FallbackPolicy(str, Enum):
    """How far a request may fall back after its first attempt fails."""

    FULL = "full"
    # Fallback attempts use each provider's weakest model
    CHEAPEST_MODEL = "cheapest_model"
    DISABLED = "disabled"


def preferred_order(
    complexity: float,
    force_provider: str | None = None,
    available: Iterable[str] | None = None,
) -> list[str]:
    """Build the fallback chain for a request.

    Args:
        complexity: Query complexity in [0, 1]
        force_provider: Provider to try first when it is available
        available: Providers that may be tried; None means all known ones

    Returns:
        Provider names in the order they should be attempted
    """
    base = LOW_COMPLEXITY_ORDER if complexity < COMPLEXITY_SPLIT else HIGH_COMPLEXITY_ORDER
    allowed = set(available) if available is not None else None

    order = [name for name in base if allowed is None or name in allowed]
    # Configured providers outside the known preference list go last
    if allowed is not None:
        order.extend(sorted(name for name in allowed if name not in base))

    if force_provider and force_provider in order:
        order.remove(force_provider)
        order.insert(0, force_provider)
    return order
