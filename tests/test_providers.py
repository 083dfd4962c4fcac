"""Tests for provider adapters."""

import httpx
import pytest

from ai_gateway.core import (
    APIKeyError,
    CancellationToken,
    ChatMessage,
    GenerateOptions,
    InputTooLargeError,
    MessageRole,
    ModelId,
    ProviderTimeoutError,
    RateLimitError,
)
from ai_gateway.providers import ClaudeProvider, GeminiProvider, OpenAIProvider


class _StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class _FakeOpenAIStream:
    def __init__(self, chunks, mocker):
        self._chunks = [
            mocker.MagicMock(choices=[mocker.MagicMock(delta=mocker.MagicMock(content=text))])
            for text in chunks
        ]
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk

    async def close(self):
        self.closed = True


class _FakeClaudeStream:
    def __init__(self, texts):
        self._texts = texts
        self.exited = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.exited = True

    @property
    def text_stream(self):
        return self._iterate()

    async def _iterate(self):
        for text in self._texts:
            yield text


async def _agen(items):
    for item in items:
        yield item


@pytest.mark.parametrize("provider_cls", [OpenAIProvider, ClaudeProvider, GeminiProvider])
def test_provider_requires_api_key(provider_cls):
    """Test adapters refuse to start without credentials."""
    with pytest.raises(APIKeyError):
        provider_cls("")


def test_model_tiers_follow_complexity():
    """Test tier selection at the band edges."""
    provider = OpenAIProvider("test-key")

    assert provider.get_model_for_complexity(0.1) == ModelId.GPT_4O_MINI.value
    assert provider.get_model_for_complexity(0.5) == ModelId.GPT_4O_MINI.value
    assert provider.get_model_for_complexity(0.7) == ModelId.GPT_4O.value

    gemini = GeminiProvider("test-key")
    assert gemini.get_model_for_complexity(0.75) == ModelId.GEMINI_2_0_FLASH.value
    assert gemini.get_model_for_complexity(0.9) == ModelId.GEMINI_1_5_PRO.value


def test_build_messages_includes_history():
    """Test system prompt, history and prompt ordering."""
    provider = OpenAIProvider("test-key")
    options = GenerateOptions(
        system_prompt="Be brief.",
        history=[
            ChatMessage(role=MessageRole.USER, content="Hi"),
            ChatMessage(role=MessageRole.ASSISTANT, content="Hello!"),
        ],
    )

    messages = provider.build_messages("How are you?", options)

    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "How are you?"},
    ]


def test_cost_tracking():
    """Test cost tracking functionality."""
    provider = ClaudeProvider("test-key")

    provider._track_request(0.01)
    provider._track_request(0.02)

    assert provider.get_total_cost() == pytest.approx(0.03)
    assert provider.get_request_count() == 2

    provider.reset_metrics()
    assert provider.get_total_cost() == 0.0
    assert provider.get_request_count() == 0


@pytest.mark.asyncio
async def test_openai_generate_mock(mocker):
    """Test OpenAI generation with mocked API."""
    provider = OpenAIProvider("test-key")

    mock_response = mocker.MagicMock()
    mock_response.id = "chatcmpl-123"
    mock_response.choices = [
        mocker.MagicMock(message=mocker.MagicMock(content="Test response"), finish_reason="stop")
    ]
    mock_response.usage = mocker.MagicMock(prompt_tokens=1000, completion_tokens=500)

    create = mocker.patch.object(
        provider.client.chat.completions,
        "create",
        return_value=mock_response,
        new_callable=mocker.AsyncMock,
    )

    result = await provider.generate("Hello", GenerateOptions(model="gpt-4o", temperature=0.2))

    assert result.content == "Test response"
    assert result.provider == "openai"
    assert result.model == "gpt-4o"
    assert result.usage.total_tokens == 1500
    # 1000 * 2.5 / 1M + 500 * 10 / 1M
    assert result.usage.cost_usd == pytest.approx(0.0075)
    assert result.metadata["finish_reason"] == "stop"
    assert create.call_args.kwargs["temperature"] == 0.2
    assert provider.get_request_count() == 1


@pytest.mark.asyncio
async def test_openai_errors_are_classified(mocker):
    """Test SDK exceptions are translated into gateway errors."""
    provider = OpenAIProvider("test-key")
    create = mocker.patch.object(provider.client.chat.completions, "create", new_callable=mocker.AsyncMock)

    create.side_effect = httpx.ReadTimeout("read timed out")
    with pytest.raises(ProviderTimeoutError):
        await provider.generate("Hello")

    create.side_effect = _StatusError("Too many requests", status_code=429)
    with pytest.raises(RateLimitError):
        await provider.generate("Hello")

    create.side_effect = _StatusError("Incorrect API key provided", status_code=401)
    with pytest.raises(APIKeyError):
        await provider.generate("Hello")

    create.side_effect = _StatusError("This model's maximum context length is 128000 tokens", status_code=400)
    with pytest.raises(InputTooLargeError):
        await provider.generate("Hello")


@pytest.mark.asyncio
async def test_openai_stream_mock(mocker):
    """Test OpenAI streaming yields deltas and closes the response."""
    provider = OpenAIProvider("test-key")
    fake_stream = _FakeOpenAIStream(["Hel", None, "lo"], mocker)
    mocker.patch.object(
        provider.client.chat.completions,
        "create",
        return_value=fake_stream,
        new_callable=mocker.AsyncMock,
    )

    chunks = [chunk async for chunk in provider.generate_stream("Hello")]

    assert chunks == ["Hel", "lo"]
    assert fake_stream.closed


@pytest.mark.asyncio
async def test_openai_stream_stops_when_cancelled(mocker):
    """Test a cancelled token ends the stream early."""
    provider = OpenAIProvider("test-key")
    fake_stream = _FakeOpenAIStream(["a", "b", "c"], mocker)
    mocker.patch.object(
        provider.client.chat.completions,
        "create",
        return_value=fake_stream,
        new_callable=mocker.AsyncMock,
    )
    token = CancellationToken()

    chunks = []
    async for chunk in provider.generate_stream("Hello", cancel_token=token):
        chunks.append(chunk)
        token.cancel()

    assert chunks == ["a"]
    assert fake_stream.closed


@pytest.mark.asyncio
async def test_openai_is_available(mocker):
    """Test availability probe outcome."""
    provider = OpenAIProvider("test-key")
    models_list = mocker.patch.object(provider.client.models, "list", new_callable=mocker.AsyncMock)

    assert await provider.is_available() is True

    models_list.side_effect = RuntimeError("unreachable")
    assert await provider.is_available() is False


@pytest.mark.asyncio
async def test_claude_generate_mock(mocker):
    """Test Claude generation with mocked API."""
    provider = ClaudeProvider("test-key")

    mock_message = mocker.MagicMock()
    mock_message.id = "msg_123"
    mock_message.stop_reason = "end_turn"
    mock_message.content = [mocker.MagicMock(type="text", text="Claude says hi")]
    mock_message.usage = mocker.MagicMock(input_tokens=100, output_tokens=50)

    create = mocker.patch.object(
        provider.client.messages,
        "create",
        return_value=mock_message,
        new_callable=mocker.AsyncMock,
    )

    options = GenerateOptions(
        system_prompt="Be brief.",
        history=[ChatMessage(role=MessageRole.USER, content="Earlier question")],
    )
    result = await provider.generate("Hello", options)

    assert result.content == "Claude says hi"
    assert result.provider == "claude"
    assert result.model == ModelId.CLAUDE_3_5_SONNET.value
    assert result.usage.prompt_tokens == 100
    assert result.usage.completion_tokens == 50

    kwargs = create.call_args.kwargs
    assert kwargs["system"] == "Be brief."
    assert kwargs["messages"] == [
        {"role": "user", "content": "Earlier question"},
        {"role": "user", "content": "Hello"},
    ]


@pytest.mark.asyncio
async def test_claude_stream_mock(mocker):
    """Test Claude streaming through the SDK's stream manager."""
    provider = ClaudeProvider("test-key")
    fake_stream = _FakeClaudeStream(["Once ", "", "upon"])
    mocker.patch.object(provider.client.messages, "stream", return_value=fake_stream)

    chunks = [chunk async for chunk in provider.generate_stream("Tell a story")]

    assert chunks == ["Once ", "upon"]
    assert fake_stream.exited


@pytest.mark.asyncio
async def test_claude_errors_are_classified(mocker):
    """Test prompt-size failures become InputTooLargeError."""
    provider = ClaudeProvider("test-key")
    mocker.patch.object(
        provider.client.messages,
        "create",
        side_effect=_StatusError("prompt is too long: 250000 tokens", status_code=400),
        new_callable=mocker.AsyncMock,
    )

    with pytest.raises(InputTooLargeError) as exc_info:
        await provider.generate("Hello")

    assert exc_info.value.provider == "claude"
    assert not exc_info.value.trips_breaker


@pytest.mark.asyncio
async def test_gemini_generate_mock(mocker):
    """Test Gemini generation with mocked API."""
    provider = GeminiProvider("test-key")

    mock_response = mocker.MagicMock()
    mock_response.text = "Gemini answer"
    mock_response.usage_metadata = mocker.MagicMock(prompt_token_count=40, candidates_token_count=60)

    generate_content = mocker.patch.object(
        provider.client.aio.models,
        "generate_content",
        return_value=mock_response,
        new_callable=mocker.AsyncMock,
    )

    options = GenerateOptions(
        system_prompt="Be brief.",
        history=[
            ChatMessage(role=MessageRole.USER, content="Hi"),
            ChatMessage(role=MessageRole.ASSISTANT, content="Hello!"),
        ],
    )
    result = await provider.generate("Continue", options)

    assert result.content == "Gemini answer"
    assert result.provider == "gemini"
    assert result.usage.total_tokens == 100

    kwargs = generate_content.call_args.kwargs
    assert [content["role"] for content in kwargs["contents"]] == ["user", "model", "user"]
    assert "Be brief." in str(kwargs["config"].system_instruction)


@pytest.mark.asyncio
async def test_gemini_stream_mock(mocker):
    """Test Gemini streaming skips empty chunks."""
    provider = GeminiProvider("test-key")
    chunks = [mocker.MagicMock(text="Gem"), mocker.MagicMock(text=None), mocker.MagicMock(text="ini")]
    mocker.patch.object(
        provider.client.aio.models,
        "generate_content_stream",
        return_value=_agen(chunks),
        new_callable=mocker.AsyncMock,
    )

    assert [chunk async for chunk in provider.generate_stream("Hello")] == ["Gem", "ini"]


@pytest.mark.asyncio
async def test_gemini_rate_limit(mocker):
    """Test resource exhaustion is reported as a rate limit."""
    provider = GeminiProvider("test-key")
    mocker.patch.object(
        provider.client.aio.models,
        "generate_content",
        side_effect=RuntimeError("429 RESOURCE_EXHAUSTED"),
        new_callable=mocker.AsyncMock,
    )

    with pytest.raises(RateLimitError):
        await provider.generate("Hello")
