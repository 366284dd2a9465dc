"""Shared fixtures: in-memory database, fake providers and an API client."""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy.pool import StaticPool

from taleforge.api.main import create_app
from taleforge.api.middleware import get_rate_limiter
from taleforge.core.config import Settings, get_settings
from taleforge.core.supabase import get_current_user, get_current_user_optional
from taleforge.models.database import close_db, create_all, get_session_factory, init_db
from taleforge.providers import ProviderRegistry, TextResult, get_provider_registry
from taleforge.services.provider_errors import AIProviderType
from taleforge.services.realtime import StoryEventBus, get_event_bus

SEGMENT_JSON = """{
  "story_text": "Once upon a time, Luna the fox lived in the forest. The river was magic.",
  "choices": ["Follow the glow", "Open the door", "Climb the hill"],
  "image_prompt": "A fox in a glowing forest, digital art",
  "is_end": false
}"""


class FakeTextProvider:
    """Chat provider returning canned content."""

    def __init__(
        self,
        content: str = SEGMENT_JSON,
        provider_type: AIProviderType = AIProviderType.OVH_AI_ENDPOINTS,
        model: str = "Meta-Llama-3_3-70B-Instruct",
        error: Exception | None = None,
    ):
        self.content = content
        self.provider_type = provider_type
        self.model = model
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str, max_tokens: int = 800, temperature: float = 0.7) -> TextResult:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return TextResult(content=self.content, model=self.model)


class FakeImageProvider:
    def __init__(
        self,
        provider_type: AIProviderType = AIProviderType.OVH_AI_ENDPOINTS,
        error: Exception | None = None,
    ):
        self.provider_type = provider_type
        self.model = "stable-diffusion-xl"
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return b"\x89PNG fake"


class FakeSpeechProvider:
    content_type = "audio/mpeg"

    def __init__(
        self,
        provider_type: AIProviderType = AIProviderType.OPENAI_TTS,
        error: Exception | None = None,
    ):
        self.provider_type = provider_type
        self.model = "tts-1"
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        self.calls.append((text, voice))
        if self.error is not None:
            raise self.error
        return b"ID3 fake"


def sign(payload: bytes, secret: str = "whsec_test") -> str:
    """Stripe-Signature header for a webhook payload."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@dataclass
class AuthState:
    """Who the API client is signed in as (None = anonymous)."""

    user: dict[str, Any] | None = None

    def login(self, user_id: str = "user-1", email: str = "reader@example.com", admin: bool = False) -> dict:
        self.user = {
            "id": user_id,
            "email": email,
            "role": "authenticated",
            "app_metadata": {"role": "admin"} if admin else {},
            "user_metadata": {},
        }
        return self.user


@dataclass
class Uploads:
    """Records storage uploads instead of sending them to Supabase."""

    calls: list[tuple[str, str, bytes, str]] = field(default_factory=list)

    async def __call__(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        self.calls.append((bucket, path, data, content_type))
        return f"https://storage.example.com/{bucket}/{path}"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        supabase_jwt_secret="test-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        stripe_price_core="price_core",
        stripe_price_pro="price_pro",
        stripe_price_family="price_family",
        sse_keepalive_seconds=0.05,
        fallback_polling_interval=0.01,
    )


@pytest.fixture
async def db():
    """Fresh in-memory database per test."""
    init_db(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all()
    yield
    await close_db()


@pytest.fixture
def session_factory(db):
    return get_session_factory()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def text_provider() -> FakeTextProvider:
    return FakeTextProvider()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def speech_provider() -> FakeSpeechProvider:
    return FakeSpeechProvider()


@pytest.fixture
def registry(text_provider, image_provider, speech_provider) -> ProviderRegistry:
    return ProviderRegistry(
        text_primary=text_provider,
        image_primary=image_provider,
        speech_primary=speech_provider,
    )


@pytest.fixture
def bus() -> StoryEventBus:
    return StoryEventBus()


@pytest.fixture
def uploads() -> Uploads:
    return Uploads()


@pytest.fixture
def auth() -> AuthState:
    return AuthState()


@pytest.fixture
def app(db, registry, bus, settings, auth, uploads, monkeypatch):
    app = create_app()

    async def current_user() -> dict:
        if auth.user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return auth.user

    async def optional_user() -> dict | None:
        return auth.user

    app.dependency_overrides[get_current_user] = current_user
    app.dependency_overrides[get_current_user_optional] = optional_user
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_settings] = lambda: settings

    monkeypatch.setattr("taleforge.services.images.upload_public_file", uploads)
    monkeypatch.setattr("taleforge.services.narration.upload_public_file", uploads)
    get_rate_limiter().reset()
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
