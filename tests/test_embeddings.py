"""Tests for the OpenAI embedding service."""

import pytest

from ai_gateway.embeddings import OpenAIEmbeddingService


def test_requires_api_key(monkeypatch):
    """Test a missing key is reported at construction."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        OpenAIEmbeddingService()


def test_reads_key_from_environment(monkeypatch):
    """Test the environment variable is used as fallback."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    assert OpenAIEmbeddingService().api_key == "sk-env"


@pytest.mark.asyncio
async def test_embed_query_mock(mocker):
    """Test embedding with mocked API."""
    service = OpenAIEmbeddingService(api_key="test-key", dimensions=3)

    mock_response = mocker.MagicMock()
    mock_response.data = [mocker.MagicMock(embedding=[0.1, 0.2, 0.3])]
    create = mocker.patch.object(
        service.client.embeddings,
        "create",
        return_value=mock_response,
        new_callable=mocker.AsyncMock,
    )

    vector = await service.embed_query("what is\na qubit")

    assert vector == [0.1, 0.2, 0.3]
    create.assert_awaited_once_with(model="text-embedding-3-small", input="what is a qubit", dimensions=3)
