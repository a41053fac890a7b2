"""Tests for the LLM text generator adapter, with fake provider clients."""
from types import SimpleNamespace

import pytest

from config.settings import LLMConfig
from core.engine import LLMTextGenerator
from models.errors import GenerationFailed


class _FakeCreate:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


def _anthropic_client(text):
    return SimpleNamespace(messages=_FakeCreate(
        SimpleNamespace(content=[SimpleNamespace(text=text)])))


def _openai_client(text):
    message = SimpleNamespace(message=SimpleNamespace(content=text))
    return SimpleNamespace(chat=SimpleNamespace(completions=_FakeCreate(
        SimpleNamespace(choices=[message]))))


class TestLLMTextGenerator:
    @pytest.mark.asyncio
    async def test_anthropic_call(self):
        generator = LLMTextGenerator(LLMConfig(provider="anthropic", model="m-1", max_tokens=50))
        generator._client = _anthropic_client('{"type":"SPEAK","text":"Your pincode?"}')

        assert await generator("Speak this") == '{"type":"SPEAK","text":"Your pincode?"}'
        call = generator._client.messages.calls[0]
        assert call["model"] == "m-1"
        assert call["max_tokens"] == 50
        assert call["messages"] == [{"role": "user", "content": "Speak this"}]

    @pytest.mark.asyncio
    async def test_openai_call(self):
        generator = LLMTextGenerator(LLMConfig(provider="openai", model="gpt-test"))
        generator._client = _openai_client("plain text")
        assert generator.is_openai
        assert await generator("Speak this") == "plain text"

    @pytest.mark.asyncio
    async def test_empty_anthropic_content(self):
        generator = LLMTextGenerator()
        generator._client = SimpleNamespace(messages=_FakeCreate(SimpleNamespace(content=[])))
        assert await generator("Speak this") == ""

    @pytest.mark.asyncio
    async def test_unavailable_client_fails_generation(self, monkeypatch):
        generator = LLMTextGenerator()

        async def no_client():
            return None

        monkeypatch.setattr(generator, "_get_client", no_client)
        with pytest.raises(GenerationFailed, match="client unavailable"):
            await generator("Speak this")
