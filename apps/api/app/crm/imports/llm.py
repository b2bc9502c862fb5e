from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from anthropic import AsyncAnthropic

from app.core.config import get_settings


@dataclass(frozen=True)
class Generation:
    text: str
    stop_reason: str | None = None


class TextGenerator(Protocol):
    async def generate(self, *, system: str, user: str, max_tokens: int) -> Generation: ...


class AnthropicTextGenerator:
    """Text generation over the Anthropic Messages API.

    Responses are consumed as a stream so long generations keep the upstream connection busy,
    but callers only ever see the final text and its stop reason.
    """

    def __init__(self, client: AsyncAnthropic, model: str) -> None:
        self._client = client
        self._model = model

    async def generate(self, *, system: str, user: str, max_tokens: int) -> Generation:
        async with self._client.messages.stream(
            model=self._model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        ) as stream:
            message = await stream.get_final_message()

        text = "".join(block.text for block in message.content if block.type == "text")
        return Generation(text=text, stop_reason=message.stop_reason)


@lru_cache
def get_text_generator() -> TextGenerator:
    settings = get_settings()
    client = AsyncAnthropic(api_key=settings.anthropic_api_key)
    return AnthropicTextGenerator(client, settings.import_model)
