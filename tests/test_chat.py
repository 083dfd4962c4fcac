"""Tests for the chat service."""

import pytest

from ai_gateway.chat import DEFAULT_SYSTEM_PROMPT, ChatService
from ai_gateway.core import MessageRole, ProviderTimeoutError
from ai_gateway.core.exceptions import AllProvidersFailedError, QuotaExceededError


@pytest.fixture
def chat(gateway, message_store):
    return ChatService(gateway, message_store)


@pytest.mark.asyncio
async def test_send_message_stores_exchange(chat, message_store, providers):
    """Test a message is answered and both sides are persisted."""
    result = await chat.send_message("user-1", "conv-1", "Explain quantum computing")

    assert result.response == "openai answer"
    assert result.provider == "openai"
    assert result.tokens_in == 10
    assert result.tokens_out == 20
    assert not result.cached

    stored = await message_store.get_recent_messages("conv-1", 10)
    assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert stored[1].id == result.message_id
    assert stored[1].model == result.model
    assert "conv-1" in message_store.updated_at

    options = providers["openai"].calls[0]
    assert options.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert options.history == []


@pytest.mark.asyncio
async def test_history_is_sent_to_provider(chat, providers):
    """Test previous turns are passed as context."""
    await chat.send_message("user-1", "conv-1", "What is a qubit?")
    await chat.send_message("user-1", "conv-1", "And superposition?", system_prompt="Answer like a pirate.")

    options = providers["openai"].calls[-1]
    assert [m.content for m in options.history] == ["What is a qubit?", "openai answer"]
    assert options.system_prompt == "Answer like a pirate."


@pytest.mark.asyncio
async def test_history_limit(gateway, message_store, providers):
    """Test only the most recent messages are sent."""
    chat = ChatService(gateway, message_store, history_limit=2)
    for i in range(3):
        await chat.send_message("user-1", "conv-1", f"Question number {i}")

    options = providers["openai"].calls[-1]
    assert [m.content for m in options.history] == ["Question number 1", "openai answer"]


@pytest.mark.asyncio
async def test_request_id_replays_stored_answer(chat, message_store, providers, usage_repo):
    """Test resending a request id does not call a provider or bill again."""
    first = await chat.send_message("user-1", "conv-1", "Explain quantum computing", request_id="req-9")
    replay = await chat.send_message("user-1", "conv-1", "Explain quantum computing", request_id="req-9")
    await chat.gateway.drain()

    assert replay.replayed
    assert replay.cached
    assert replay.cost_usd == 0
    assert replay.message_id == first.message_id
    assert replay.response == first.response
    assert len(providers["openai"].calls) == 1
    assert len(await message_store.get_recent_messages("conv-1", 10)) == 2
    assert len(await usage_repo.list_records("user-1")) == 1


@pytest.mark.asyncio
async def test_forced_model(chat, providers):
    """Test the requested model is used."""
    result = await chat.send_message("user-1", "conv-1", "Hello there", model="claude-3-opus-20240229")

    assert result.provider == "claude"
    assert result.model == "claude-3-opus-20240229"


@pytest.mark.asyncio
async def test_quota_failure_stores_nothing(chat, message_store, user_repo):
    """Test a rejected message leaves the conversation unchanged."""
    user_repo.add_user("broke", monthly_token_used=50_000)

    with pytest.raises(QuotaExceededError):
        await chat.send_message("broke", "conv-2", "Explain quantum computing")

    assert await message_store.get_recent_messages("conv-2", 10) == []


@pytest.mark.asyncio
async def test_provider_failure_stores_nothing(chat, message_store, providers):
    """Test failed exchanges are not persisted."""
    for name, adapter in providers.items():
        adapter.error = ProviderTimeoutError("timed out", provider=name)

    with pytest.raises(AllProvidersFailedError):
        await chat.send_message("user-1", "conv-3", "Explain quantum computing")

    assert await message_store.get_recent_messages("conv-3", 10) == []
