"""Tests for the HTTP AI providers and the fallback runner."""

import base64
import json

import httpx
import pytest

from taleforge.api.exceptions import ProviderUnavailableError
from taleforge.core.config import Settings
from taleforge.providers import (
    ChatCompletionProvider,
    ElevenLabsSpeechProvider,
    OpenAIImageProvider,
    OpenAISpeechProvider,
    ProviderRegistry,
    ProviderRequestError,
    StableDiffusionXLProvider,
    generate_with_fallback,
)
from taleforge.providers.speech import OPENAI_TTS_MAX_CHARS, split_for_speech
from taleforge.services.provider_errors import AIProviderType

from conftest import FakeSpeechProvider, FakeTextProvider


def transport_for(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


class TestChatCompletionProvider:
    """Test the OpenAI-compatible chat call."""

    async def test_sends_single_user_message(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "Hello"}}]})

        provider = ChatCompletionProvider(
            AIProviderType.OVH_AI_ENDPOINTS,
            "token",
            "https://llm.example.com/v1/",
            "llama",
            transport=transport_for(handler),
        )
        result = await provider.generate("Tell a story", max_tokens=100, temperature=0.5)

        assert result.content == "Hello"
        assert result.model == "llama"
        assert seen["url"] == "https://llm.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer token"
        assert seen["body"]["messages"] == [{"role": "user", "content": "Tell a story"}]
        assert seen["body"]["max_tokens"] == 100
        assert seen["body"]["temperature"] == 0.5

    async def test_empty_content_raises(self) -> None:
        provider = ChatCompletionProvider(
            AIProviderType.OPENAI_GPT,
            "key",
            "https://api.example.com/v1",
            "gpt",
            transport=transport_for(lambda r: httpx.Response(200, json={"choices": []})),
        )
        with pytest.raises(ProviderRequestError, match="No content generated"):
            await provider.generate("prompt")

    async def test_status_code_in_message(self) -> None:
        provider = ChatCompletionProvider(
            AIProviderType.OPENAI_GPT,
            "key",
            "https://api.example.com/v1",
            "gpt",
            transport=transport_for(lambda r: httpx.Response(429, text="slow down")),
        )
        with pytest.raises(ProviderRequestError) as excinfo:
            await provider.generate("prompt")
        assert excinfo.value.status_code == 429
        assert "status 429" in str(excinfo.value)

    async def test_connection_error_is_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = ChatCompletionProvider(
            AIProviderType.OPENAI_GPT,
            "key",
            "https://api.example.com/v1",
            "gpt",
            transport=transport_for(handler),
        )
        with pytest.raises(ProviderRequestError, match="connection error"):
            await provider.generate("prompt")


class TestImageProviders:
    """Test SDXL and DALL-E response handling."""

    async def test_sdxl_returns_raw_bytes(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"\x89PNG data")

        provider = StableDiffusionXLProvider(
            "token", "https://sdxl.example.com/api/text2image", transport=transport_for(handler)
        )
        image = await provider.generate("a fox")

        assert image == b"\x89PNG data"
        assert seen["body"]["prompt"] == "a fox"
        assert seen["body"]["width"] == 1024
        assert "watermark" in seen["body"]["negative_prompt"]
        assert provider.model == "stable-diffusion-xl"

    async def test_dalle_decodes_base64(self) -> None:
        encoded = base64.b64encode(b"image-bytes").decode()
        provider = OpenAIImageProvider(
            "key",
            "https://api.example.com/v1",
            "dall-e-3",
            transport=transport_for(lambda r: httpx.Response(200, json={"data": [{"b64_json": encoded}]})),
        )
        assert await provider.generate("a fox") == b"image-bytes"

    async def test_dalle_missing_data_raises(self) -> None:
        provider = OpenAIImageProvider(
            "key",
            "https://api.example.com/v1",
            "dall-e-3",
            transport=transport_for(lambda r: httpx.Response(200, json={"data": []})),
        )
        with pytest.raises(ProviderRequestError, match="No image data"):
            await provider.generate("a fox")


class TestSpeechProviders:
    """Test TTS request shapes."""

    async def test_openai_splits_long_script(self) -> None:
        inputs = []

        def handler(request: httpx.Request) -> httpx.Response:
            inputs.append(json.loads(request.content)["input"])
            return httpx.Response(200, content=f"<{len(inputs)}>".encode())

        paragraph = " ".join(["Luna the fox crept past the sleeping owls."] * 20)
        script = "\n\n".join([paragraph] * 6)
        provider = OpenAISpeechProvider(
            "key", "https://api.example.com/v1", "tts-1", transport=transport_for(handler)
        )
        audio = await provider.synthesize(script)

        assert len(script) > OPENAI_TTS_MAX_CHARS
        assert len(inputs) == 2
        assert all(len(text) <= OPENAI_TTS_MAX_CHARS for text in inputs)
        assert "\n\n".join(inputs) == script
        assert audio == b"<1><2>"

    async def test_openai_short_script_single_request(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=b"ID3")

        provider = OpenAISpeechProvider(
            "key", "https://api.example.com/v1", "tts-1", transport=transport_for(handler)
        )
        assert await provider.synthesize("Once upon a time.") == b"ID3"
        assert len(seen) == 1
        assert seen[0]["voice"] == "fable"

    async def test_elevenlabs_uses_voice_in_path(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers["xi-api-key"]
            return httpx.Response(200, content=b"ID3")

        provider = ElevenLabsSpeechProvider(
            "el-key",
            "https://el.example.com/v1",
            "eleven_multilingual_v2",
            transport=transport_for(handler),
        )
        await provider.synthesize("Once upon a time", voice="voice-123")

        assert seen["path"] == "/v1/text-to-speech/voice-123"
        assert seen["key"] == "el-key"

    async def test_empty_audio_raises(self) -> None:
        provider = OpenAISpeechProvider(
            "key",
            "https://api.example.com/v1",
            "tts-1",
            transport=transport_for(lambda r: httpx.Response(200, content=b"")),
        )
        with pytest.raises(ProviderRequestError, match="Empty audio"):
            await provider.synthesize("hello")


class TestGenerateWithFallback:
    """Test the primary-to-fallback switch."""

    async def test_primary_success(self) -> None:
        primary = FakeTextProvider(content="primary")
        fallback = FakeTextProvider(content="fallback", provider_type=AIProviderType.OPENAI_GPT)

        result, used = await generate_with_fallback(
            primary, fallback, "text-generation", lambda p: p.generate("x")
        )
        assert result.content == "primary"
        assert used is primary
        assert fallback.prompts == []

    async def test_falls_back_on_failure(self) -> None:
        primary = FakeTextProvider(error=ProviderRequestError(AIProviderType.OVH_AI_ENDPOINTS, "boom", 503))
        fallback = FakeTextProvider(content="fallback", provider_type=AIProviderType.OPENAI_GPT)

        result, used = await generate_with_fallback(
            primary, fallback, "text-generation", lambda p: p.generate("x")
        )
        assert result.content == "fallback"
        assert used is fallback

    async def test_all_failed_raises_last_error(self) -> None:
        primary = FakeTextProvider(error=ProviderRequestError(AIProviderType.OVH_AI_ENDPOINTS, "boom", 503))
        fallback = FakeTextProvider(
            provider_type=AIProviderType.OPENAI_GPT,
            error=ProviderRequestError(AIProviderType.OPENAI_GPT, "bad key", 401),
        )

        with pytest.raises(ProviderUnavailableError) as excinfo:
            await generate_with_fallback(primary, fallback, "text-generation", lambda p: p.generate("x"))

        assert excinfo.value.status_code == 503
        assert excinfo.value.provider_error.provider is AIProviderType.OPENAI_GPT
        assert excinfo.value.provider_error.retryable is False

    async def test_nothing_configured(self) -> None:
        with pytest.raises(ProviderUnavailableError) as excinfo:
            await generate_with_fallback(None, None, "audio-generation", lambda p: p.synthesize("x"))
        assert excinfo.value.provider_error.provider is AIProviderType.OPENAI_TTS


class TestProviderRegistry:
    """Test building providers from settings."""

    def test_ovh_primary_openai_fallback(self) -> None:
        registry = ProviderRegistry.from_settings(
            Settings(_env_file=None, ovh_ai_endpoints_access_token="ovh", openai_api_key="sk")
        )
        assert registry.text_primary.provider_type is AIProviderType.OVH_AI_ENDPOINTS
        assert registry.text_fallback.provider_type is AIProviderType.OPENAI_GPT
        assert isinstance(registry.image_primary, StableDiffusionXLProvider)
        assert isinstance(registry.image_fallback, OpenAIImageProvider)
        assert isinstance(registry.speech_primary, OpenAISpeechProvider)
        assert registry.speech_fallback is None

    def test_openai_only(self) -> None:
        registry = ProviderRegistry.from_settings(Settings(_env_file=None, openai_api_key="sk"))
        assert registry.text_primary.provider_type is AIProviderType.OPENAI_GPT
        assert registry.text_fallback is None
        assert isinstance(registry.image_primary, OpenAIImageProvider)
        assert registry.image_fallback is None

    def test_nothing_configured(self) -> None:
        registry = ProviderRegistry.from_settings(Settings(_env_file=None))
        assert registry.text_primary is None
        assert registry.image_primary is None
        assert registry.speech_primary is None

    def test_elevenlabs_preferred(self) -> None:
        registry = ProviderRegistry.from_settings(
            Settings(_env_file=None, openai_api_key="sk", elevenlabs_api_key="el", tts_provider="elevenlabs")
        )
        assert isinstance(registry.speech_primary, ElevenLabsSpeechProvider)
        assert isinstance(registry.speech_fallback, OpenAISpeechProvider)

    def test_speech_for_long_voice_id_prefers_elevenlabs(self) -> None:
        openai = FakeSpeechProvider()
        eleven = FakeSpeechProvider(provider_type=AIProviderType.ELEVENLABS)
        registry = ProviderRegistry(speech_primary=openai, speech_fallback=eleven)

        assert registry.speech_for("21m00Tcm4TlvDq8ikWAM") == (eleven, openai)
        assert registry.speech_for("nova") == (openai, eleven)
        assert registry.speech_for(None) == (openai, eleven)


class TestSplitForSpeech:
    """Test chunking of long narration scripts."""

    def test_short_text_is_one_chunk(self) -> None:
        assert split_for_speech("One.\n\nTwo.", limit=100) == ["One.\n\nTwo."]

    def test_breaks_between_sentences(self) -> None:
        chunks = split_for_speech("First one. Second one. Third one.", limit=22)
        assert chunks == ["First one. Second one.", "Third one."]

    def test_cuts_overlong_sentence(self) -> None:
        chunks = split_for_speech("a" * 25, limit=10)
        assert chunks == ["a" * 10, "a" * 10, "a" * 5]
