"""Text-to-speech providers (OpenAI TTS, ElevenLabs)."""

from __future__ import annotations

import logging
import re
from typing import Protocol

from taleforge.services.provider_errors import AIProviderType

from .base import HTTPProvider, Provider, ProviderRequestError

logger = logging.getLogger(__name__)

# OpenAI TTS rejects longer inputs
OPENAI_TTS_MAX_CHARS = 4096

SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def split_for_speech(text: str, limit: int = OPENAI_TTS_MAX_CHARS) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` characters.

    Breaks fall between paragraphs where possible, then between sentences.
    A single sentence longer than ``limit`` is cut at the limit.
    """
    # (piece, separator placed before it when joined to the previous piece)
    pieces: list[tuple[str, str]] = []
    for paragraph in text.split("\n\n"):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        separator = "\n\n"
        if len(paragraph) <= limit:
            pieces.append((paragraph, separator))
            continue
        for sentence in SENTENCE_BREAK.split(paragraph):
            while len(sentence) > limit:
                pieces.append((sentence[:limit], separator))
                sentence = sentence[limit:]
                separator = ""
            if sentence:
                pieces.append((sentence, separator))
            separator = " "

    chunks: list[str] = []
    for piece, separator in pieces:
        if chunks and len(chunks[-1]) + len(separator) + len(piece) <= limit:
            chunks[-1] += separator + piece
        else:
            chunks.append(piece)
    return chunks


class SpeechProvider(Provider, Protocol):
    """Turns text into MP3 bytes."""

    async def synthesize(self, text: str, voice: str | None = None) -> bytes: ...


class OpenAISpeechProvider(HTTPProvider):
    """OpenAI ``audio/speech``.

    Scripts over the input limit are sent in several requests; the MP3
    frames of each response are concatenated in order.
    """

    provider_type = AIProviderType.OPENAI_TTS
    content_type = "audio/mpeg"

    def __init__(self, *args, default_voice: str = "fable", **kwargs):
        super().__init__(*args, **kwargs)
        self.default_voice = default_voice

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        chunks = split_for_speech(text) if len(text) > OPENAI_TTS_MAX_CHARS else [text]
        if len(chunks) > 1:
            logger.info("Narration of %d characters split into %d requests", len(text), len(chunks))

        audio = b""
        for chunk in chunks:
            audio += await self._synthesize_chunk(chunk, voice)
        return audio

    async def _synthesize_chunk(self, text: str, voice: str | None) -> bytes:
        response = await self._post(
            f"{self.base_url}/audio/speech",
            {
                "model": self.model,
                "input": text,
                "voice": voice or self.default_voice,
                "response_format": "mp3",
            },
        )
        if not response.content:
            raise ProviderRequestError(self.provider_type, "Empty audio returned")
        return response.content


class ElevenLabsSpeechProvider(HTTPProvider):
    """ElevenLabs ``text-to-speech/{voice_id}``."""

    provider_type = AIProviderType.ELEVENLABS
    content_type = "audio/mpeg"

    def __init__(
        self,
        *args,
        default_voice: str = "21m00Tcm4TlvDq8ikWAM",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.default_voice = default_voice
        self.stability = stability
        self.similarity_boost = similarity_boost

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.api_key,
        }

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        voice_id = voice or self.default_voice
        response = await self._post(
            f"{self.base_url}/text-to-speech/{voice_id}",
            {
                "text": text,
                "model_id": self.model,
                "voice_settings": {
                    "stability": self.stability,
                    "similarity_boost": self.similarity_boost,
                    "style": 0.0,
                    "use_speaker_boost": True,
                },
            },
        )
        if not response.content:
            raise ProviderRequestError(self.provider_type, "Empty audio returned")
        return response.content
