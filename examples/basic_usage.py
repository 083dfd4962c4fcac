"""Basic usage examples for ai-gateway."""

import asyncio
import logging

from ai_gateway import (
    ChatService,
    Gateway,
    GatewayConfig,
    GatewayOptions,
    PlanTier,
    QuotaExceededError,
)
from ai_gateway.storage import (
    InMemoryMessageStore,
    InMemoryMetricsRepository,
    InMemoryUsageRepository,
    InMemoryUserRepository,
)


async def example_routing(gateway: Gateway) -> None:
    """Example: Complexity-based routing and caching."""
    print("\n=== Routing Example ===\n")

    for query in ["What is the capital of California?", "Explain quantum computing in one sentence."]:
        result = await gateway.route_request(query, GatewayOptions(user_id="demo-user"))
        print(f"Query: {query}")
        print(f"Provider: {result.provider} Model: {result.model}")
        print(f"Response: {result.content[:100]}...")
        print(f"Cost: ${result.usage.cost_usd:.6f} Latency: {result.latency_ms}ms")

    await gateway.drain()

    # Same question again is answered from the semantic cache
    result = await gateway.route_request("what is the capital of california?")
    print(f"\nCached: {result.cached} Cost: ${result.usage.cost_usd:.6f}")


async def example_streaming(gateway: Gateway) -> None:
    """Example: Streaming responses."""
    print("\n=== Streaming Example ===\n")

    stream = await gateway.route_stream_request(
        "Write a haiku about artificial intelligence.", GatewayOptions(user_id="demo-user")
    )

    print("Streaming response: ", end="", flush=True)
    async with stream:
        async for chunk in stream:
            print(chunk, end="", flush=True)
    print(f"\n(served by {stream.provider}/{stream.model})\n")


async def example_chat(gateway: Gateway, messages: InMemoryMessageStore) -> None:
    """Example: Conversation with history and idempotent retries."""
    print("\n=== Chat Example ===\n")

    chat = ChatService(gateway, messages)

    first = await chat.send_message("demo-user", "conv-1", "Name three prime numbers.", request_id="msg-1")
    print(f"Assistant: {first.response}")

    follow_up = await chat.send_message("demo-user", "conv-1", "Now add them up.", request_id="msg-2")
    print(f"Assistant: {follow_up.response}")

    # A client retry with the same request id is not answered or billed twice
    retry = await chat.send_message("demo-user", "conv-1", "Now add them up.", request_id="msg-2")
    print(f"Replayed: {retry.replayed}")


async def example_quota_and_health(gateway: Gateway, users: InMemoryUserRepository) -> None:
    """Example: Quota enforcement and provider health."""
    print("\n=== Quota and Health Example ===\n")

    users.add_user("heavy-user", PlanTier.FREE, monthly_token_used=49_990)
    try:
        await gateway.route_request("Summarize the history of Rome.", GatewayOptions(user_id="heavy-user"))
    except QuotaExceededError as e:
        print(f"Rejected: {e.user_message}")

    summary = await gateway.quota.get_usage_summary("demo-user")
    print(f"demo-user used {summary.used}/{summary.limit} tokens ({summary.percent}%)")

    await gateway.drain()
    for status in await gateway.get_provider_health():
        print(f"{status.provider}: {status.status.value} ({status.error_rate:.1f}% errors)")
    for alert in await gateway.check_alerts():
        print(f"ALERT [{alert.severity.value}] {alert.provider}: {alert.reason}")

    print(f"Reachable: {await gateway.check_providers_health()}")


async def main() -> None:
    """Run all examples."""
    logging.basicConfig(level=logging.INFO)

    users = InMemoryUserRepository()
    users.add_user("demo-user", PlanTier.PLUS)
    messages = InMemoryMessageStore()

    gateway = Gateway.from_config(
        GatewayConfig.from_env(),
        user_repo=users,
        usage_repo=InMemoryUsageRepository(),
        metrics_repo=InMemoryMetricsRepository(),
    )

    try:
        await example_routing(gateway)
        await example_streaming(gateway)
        await example_chat(gateway, messages)
        await example_quota_and_health(gateway, users)
    finally:
        await gateway.aclose()


if __name__ == "__main__":
    asyncio.run(main())
