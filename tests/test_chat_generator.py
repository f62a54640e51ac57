"""Tests for src.chat.generator with a mocked OpenAI client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.chat.generator import OpenAIChatGenerator, build_messages
from src.chat.models import GenerationRequest, HistoryTurn, MessageRole
from src.common.errors import ProviderError


def _request(context: str = "[1]\nChlorophyll absorbs light.") -> GenerationRequest:
    return GenerationRequest(
        user_text="What absorbs light?",
        context=context,
        history=[
            HistoryTurn(role=MessageRole.USER, content="Hi"),
            HistoryTurn(role=MessageRole.ASSISTANT, content="Hello!"),
        ],
        system_prompt="You are a biology tutor.",
    )


def _response(content: str | None, total_tokens: int = 55) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.usage.total_tokens = total_tokens
    return response


def _generator(**kwargs) -> OpenAIChatGenerator:
    options = {"model": "gpt-4o-mini", "base_url": "http://localhost:1234/v1", "api_key": "sk-test"}
    options.update(kwargs)
    return OpenAIChatGenerator(**options)


class TestBuildMessages:
    def test_layout(self):
        messages = build_messages(_request())
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[0]["content"] == (
            "You are a biology tutor.\n\nRelevant document context:\n"
            "[1]\nChlorophyll absorbs light."
        )
        assert messages[-1]["content"] == "What absorbs light?"

    def test_no_context_keeps_plain_system_prompt(self):
        messages = build_messages(_request(context=""))
        assert messages[0]["content"] == "You are a biology tutor."


class TestOpenAIChatGenerator:
    @pytest.mark.asyncio
    async def test_generate(self):
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_response("  Chlorophyll.  "))

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            result = await _generator(max_output_tokens=300, temperature=0.2).generate(
                _request()
            )

        assert result.answer == "Chlorophyll."
        assert result.tokens_used == 55
        assert result.model == "gpt-4o-mini"
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["max_tokens"] == 300
        assert kwargs["temperature"] == 0.2
        assert len(kwargs["messages"]) == 4

    @pytest.mark.asyncio
    async def test_empty_content_falls_back(self):
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_response(None))

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            result = await _generator().generate(_request())

        assert result.answer == "I apologize, but I could not generate a response."

    @pytest.mark.asyncio
    async def test_no_choices_is_provider_error(self):
        response = _response("x")
        response.choices = []
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=response)

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            with pytest.raises(ProviderError, match="no choices"):
                await _generator().generate(_request())

    @pytest.mark.asyncio
    async def test_client_error_is_provider_error(self):
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            with pytest.raises(ProviderError, match="503"):
                await _generator().generate(_request())

    @pytest.mark.asyncio
    async def test_timeout_is_provider_error(self):
        async def _slow(**kwargs):
            await asyncio.sleep(1)

        mock_client = AsyncMock()
        mock_client.chat.completions.create = _slow

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            with pytest.raises(ProviderError, match="timed out"):
                await _generator(timeout=0.01).generate(_request())

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_response("ok"))

        with patch("src.chat.generator.AsyncOpenAI", return_value=mock_client):
            generator = _generator()
            await generator.generate(_request())
            await generator.close()

        mock_client.close.assert_awaited_once()
