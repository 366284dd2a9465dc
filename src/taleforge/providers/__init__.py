"""AI providers called over HTTP.

- text: OVH AI Endpoints (Llama) with OpenAI chat completions as fallback
- image: OVH Stable Diffusion XL with OpenAI DALL-E as fallback
- speech: OpenAI TTS or ElevenLabs, each the other's fallback

Usage:
    from taleforge.providers import get_provider_registry, generate_with_fallback

    registry = get_provider_registry()
    result, provider = await generate_with_fallback(
        registry.text_primary,
        registry.text_fallback,
        "text-generation",
        lambda p: p.generate(prompt),
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from taleforge.core.config import Settings, get_settings
from taleforge.services.provider_errors import AIProviderType

from .base import HTTPProvider, ProviderRequestError, generate_with_fallback
from .image import ImageGenerationProvider, OpenAIImageProvider, StableDiffusionXLProvider
from .speech import ElevenLabsSpeechProvider, OpenAISpeechProvider, SpeechProvider
from .text import ChatCompletionProvider, TextGenerationProvider, TextResult


@dataclass
class ProviderRegistry:
    """Configured providers, primary and fallback per modality."""

    text_primary: TextGenerationProvider | None = None
    text_fallback: TextGenerationProvider | None = None
    image_primary: ImageGenerationProvider | None = None
    image_fallback: ImageGenerationProvider | None = None
    speech_primary: SpeechProvider | None = None
    speech_fallback: SpeechProvider | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        timeout = settings.provider_timeout_seconds

        ovh_text = openai_text = None
        if settings.has_ovh_token():
            ovh_text = ChatCompletionProvider(
                AIProviderType.OVH_AI_ENDPOINTS,
                settings.ovh_ai_endpoints_access_token,
                settings.ovh_text_endpoint,
                settings.ovh_text_model,
                timeout=timeout,
            )
        if settings.has_openai_key():
            openai_text = ChatCompletionProvider(
                AIProviderType.OPENAI_GPT,
                settings.openai_api_key,
                settings.openai_api_base,
                settings.openai_text_model,
                timeout=timeout,
            )

        sdxl = dalle = None
        if settings.has_ovh_token():
            sdxl = StableDiffusionXLProvider(
                settings.ovh_ai_endpoints_access_token,
                settings.ovh_sdxl_endpoint,
                timeout=timeout,
            )
        if settings.has_openai_key():
            dalle = OpenAIImageProvider(
                settings.openai_api_key,
                settings.openai_api_base,
                settings.openai_image_model,
                timeout=timeout,
            )

        openai_tts = elevenlabs = None
        if settings.has_openai_key():
            openai_tts = OpenAISpeechProvider(
                settings.openai_api_key,
                settings.openai_api_base,
                settings.openai_tts_model,
                timeout=timeout,
                default_voice=settings.openai_tts_voice,
            )
        if settings.has_elevenlabs_key():
            elevenlabs = ElevenLabsSpeechProvider(
                settings.elevenlabs_api_key,
                settings.elevenlabs_api_base,
                settings.elevenlabs_model,
                timeout=timeout,
                default_voice=settings.elevenlabs_default_voice,
            )
        speech = [openai_tts, elevenlabs]
        if settings.tts_provider == "elevenlabs":
            speech.reverse()

        return cls(
            text_primary=ovh_text or openai_text,
            text_fallback=openai_text if ovh_text else None,
            image_primary=sdxl or dalle,
            image_fallback=dalle if sdxl else None,
            speech_primary=speech[0] or speech[1],
            speech_fallback=speech[1] if speech[0] else None,
        )

    def speech_for(self, voice_id: str | None):
        """Speech providers ordered for a requested voice.

        ElevenLabs voice ids are long opaque strings while OpenAI voices are
        short names, so a long id prefers ElevenLabs when it is configured.
        """
        providers = [p for p in (self.speech_primary, self.speech_fallback) if p is not None]
        if voice_id and len(voice_id) > 12:
            providers.sort(key=lambda p: p.provider_type != AIProviderType.ELEVENLABS)
        primary = providers[0] if providers else None
        fallback = providers[1] if len(providers) > 1 else None
        return primary, fallback


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    """Get the provider registry built from settings (FastAPI dependency)."""
    return ProviderRegistry.from_settings(get_settings())


__all__ = [
    "ProviderRegistry",
    "get_provider_registry",
    "generate_with_fallback",
    "HTTPProvider",
    "ProviderRequestError",
    "TextGenerationProvider",
    "ImageGenerationProvider",
    "SpeechProvider",
    "ChatCompletionProvider",
    "TextResult",
    "StableDiffusionXLProvider",
    "OpenAIImageProvider",
    "OpenAISpeechProvider",
    "ElevenLabsSpeechProvider",
]
