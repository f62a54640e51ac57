"""Answer generation through an OpenAI-compatible chat completions endpoint.

Message layout sent to the model:

1. system - the conversation's system prompt, followed by the assembled
   document context when there is any.
2. history - previous turns, oldest first, as user/assistant messages.
3. user - the new user text.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from openai import AsyncOpenAI

from config import settings
from src.chat.models import GenerationRequest, GenerationResult
from src.common.errors import ProviderError

logger = logging.getLogger(__name__)

_EMPTY_ANSWER = "I apologize, but I could not generate a response."


class ChatGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationResult: ...

    async def close(self) -> None: ...


def build_messages(request: GenerationRequest) -> list[dict[str, str]]:
    system = request.system_prompt
    if request.context:
        system = f"{system}\n\nRelevant document context:\n{request.context}"
    messages = [{"role": "system", "content": system}]
    for turn in request.history:
        messages.append({"role": turn.role.value, "content": turn.content})
    messages.append({"role": "user", "content": request.user_text})
    return messages


class OpenAIChatGenerator:
    def __init__(
        self,
        *,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self.model = model or settings.chat_llm_model
        self.max_output_tokens = max_output_tokens or settings.chat_max_output_tokens
        self.temperature = settings.chat_temperature if temperature is None else temperature
        self.timeout = timeout if timeout is not None else settings.chat_timeout_seconds
        self._base_url = base_url or settings.chat_llm_base_url
        self._api_key = api_key if api_key is not None else settings.chat_llm_api_key
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            client_kwargs: dict[str, Any] = {"base_url": self._base_url}
            client_kwargs["api_key"] = self._api_key or "not-needed"
            self._client = AsyncOpenAI(**client_kwargs)
        return self._client

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=build_messages(request),
                    max_tokens=self.max_output_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"Generation timed out after {self.timeout:.0f}s."
            ) from exc
        except Exception as exc:
            raise ProviderError(f"Generation failed: {exc}") from exc

        if not response.choices:
            raise ProviderError("Generation response contained no choices.")
        answer = (response.choices[0].message.content or "").strip() or _EMPTY_ANSWER
        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0
        return GenerationResult(answer=answer, tokens_used=tokens_used, model=self.model)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
