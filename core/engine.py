"""
Text generation backend — rephrases canonical step text with an LLM.

The generator is only ever handed a prompt built by PromptBuilder and must
answer with the response contract's JSON. It knows nothing about flows or
state; the ContractNegotiator decides how often it is called and what to
do with its output. Supports both Anthropic and OpenAI providers, loaded
lazily so the engine runs without either installed when generation is off.
"""
from __future__ import annotations

import structlog
from typing import Optional, Protocol

from config.settings import LLMConfig
from models.errors import GenerationFailed

logger = structlog.get_logger()


class TextGenerator(Protocol):
    """Anything that turns one instruction string into raw model output."""

    async def __call__(self, instruction: str) -> str:
        ...


class LLMTextGenerator:
    """Async callable: prompt in, raw model output out."""

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig()
        self._client = None
        self._provider = self.config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, prompt: str) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            raise GenerationFailed(f"{self._provider} client unavailable")

        if self.is_openai:
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text if response.content else ""

    async def __call__(self, prompt: str) -> str:
        text = await self._call_llm(prompt)
        logger.debug("llm_generated", provider=self._provider, chars=len(text))
        return text
