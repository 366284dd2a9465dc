"""Text generation over OpenAI-compatible chat completions.

OVH AI Endpoints serves Llama behind the same API shape as OpenAI, so one
provider class covers both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from taleforge.services.provider_errors import AIProviderType

from .base import HTTPProvider, Provider, ProviderRequestError

logger = logging.getLogger(__name__)


@dataclass
class TextResult:
    """Generated text and the model that wrote it."""

    content: str
    model: str


class TextGenerationProvider(Provider, Protocol):
    """Completes a prompt."""

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 800,
        temperature: float = 0.7,
    ) -> TextResult: ...


class ChatCompletionProvider(HTTPProvider):
    """Single-message chat completion call."""

    def __init__(self, provider_type: AIProviderType, *args, **kwargs):
        self.provider_type = provider_type
        super().__init__(*args, **kwargs)

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 800,
        temperature: float = 0.7,
    ) -> TextResult:
        """Send ``prompt`` as a user message and return the first choice."""
        logger.debug("Calling %s (%s), prompt length %d", self.provider_type.value, self.model, len(prompt))
        response = await self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        data = response.json()
        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise ProviderRequestError(self.provider_type, f"No content generated by {self.model}")

        return TextResult(content=content, model=self.model)
