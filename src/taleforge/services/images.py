"""Segment illustration.

Runs after the segment response has gone out, so it opens its own database
sessions. Stable Diffusion XL is tried first with DALL-E as fallback; the
image is stored in the ``story-images`` bucket and the segment row and any
SSE subscribers are updated.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taleforge.api.exceptions import APIError, ForbiddenError, GenerationError, NotFoundError
from taleforge.core.config import Settings, get_settings
from taleforge.core.supabase import upload_public_file
from taleforge.providers import ProviderRegistry, generate_with_fallback

from ..models.story import GenerationStatus, Story, StorySegment
from .provider_errors import GenerationPhase, log_story_generation_error
from .realtime import StoryEventBus
from .segments import user_owns_story
from .tiers import UsageService

logger = logging.getLogger(__name__)

Uploader = Callable[[str, str, bytes, str], Awaitable[str]]

_QUALITY_MODIFIERS = re.compile(
    r"\b(highly detailed|high quality|professional|digital art|illustration)\b",
    re.IGNORECASE,
)

STYLE_MODIFIERS = [
    "children's book illustration style",
    "friendly and colorful",
    "warm lighting",
]
QUALITY_ENHANCERS = [
    "highly detailed",
    "professional illustration",
    "vibrant colors",
    "sharp focus",
    "digital art",
    "masterpiece",
    "best quality",
    "8k resolution",
]


def enhance_prompt_for_sdxl(prompt: str) -> str:
    """Strip quality words the model added and append our own style set."""
    clean = _QUALITY_MODIFIERS.sub("", prompt)
    clean = re.sub(r"\s*,[\s,]*", ", ", clean)
    clean = re.sub(r"\s+", " ", clean).strip(" ,")
    return ", ".join([clean, *STYLE_MODIFIERS, *QUALITY_ENHANCERS])


def image_object_path(segment_id: str | None) -> str:
    """Storage path for a new image, unique per call."""
    return f"story-images/{segment_id or 'test'}-{int(time.time() * 1000)}.png"


@dataclass
class ImageResult:
    image_url: str
    optimized_prompt: str
    provider: str


class ImageGenerationService:
    """Generate, store and attach segment images."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        bus: StoryEventBus,
        settings: Settings | None = None,
        uploader: Uploader | None = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.bus = bus
        self.settings = settings or get_settings()
        self.uploader = uploader or upload_public_file

    async def _render(self, prompt: str, segment_id: str | None) -> ImageResult:
        optimized = enhance_prompt_for_sdxl(prompt)
        logger.debug("Enhanced image prompt: %s", optimized[:150])

        image, provider = await generate_with_fallback(
            self.registry.image_primary,
            self.registry.image_fallback,
            "image-generation",
            lambda p: p.generate(optimized),
        )

        path = image_object_path(segment_id)
        try:
            url = await self.uploader(self.settings.story_images_bucket, path, image, "image/png")
        except Exception as e:
            raise GenerationError("image", "Failed to upload image", {"path": path, "error": str(e)}) from e

        logger.info("Image stored at %s via %s", path, provider.provider_type.value)
        return ImageResult(image_url=url, optimized_prompt=optimized, provider=provider.provider_type.value)

    async def generate_test_image(self, prompt: str) -> ImageResult:
        """Render a raw prompt without touching any segment."""
        if not prompt or not prompt.strip():
            raise GenerationError("image", "No image prompt provided")
        return await self._render(prompt, None)

    async def authorize(self, segment_id: str, user: dict | None) -> None:
        """Raise unless ``user`` may regenerate this segment's image."""
        async with self.session_factory() as session:
            segment = await session.get(StorySegment, segment_id)
            if segment is None:
                raise NotFoundError("Segment", segment_id)
            story = await session.get(Story, segment.story_id)
            if story is not None and not user_owns_story(story, user):
                raise ForbiddenError("Not authorized to change this story")

    async def _set_status(self, session: AsyncSession, segment: StorySegment, status: GenerationStatus) -> None:
        segment.image_generation_status = status
        await session.commit()
        await self.bus.publish_segment_updated(segment.story_id, segment)

    async def generate_segment_image(self, segment_id: str, prompt: str | None = None) -> ImageResult:
        """Generate the image for one segment.

        ``prompt`` overrides (and replaces) the stored image prompt.
        """
        async with self.session_factory() as session:
            segment = await session.get(StorySegment, segment_id)
            if segment is None:
                raise NotFoundError("Segment", segment_id)

            image_prompt = prompt or segment.image_prompt
            if not image_prompt:
                raise GenerationError("image", "No image prompt provided", {"segment_id": segment_id})
            if prompt:
                segment.image_prompt = prompt

            await self._set_status(session, segment, GenerationStatus.IN_PROGRESS)

            try:
                result = await self._render(image_prompt, segment_id)
            except APIError as e:
                log_story_generation_error(GenerationPhase.IMAGE, e, {"segment_id": segment_id})
                await self._set_status(session, segment, GenerationStatus.FAILED)
                raise

            segment.image_url = result.image_url
            segment.image_generation_status = GenerationStatus.COMPLETED

            story = await session.get(Story, segment.story_id)
            if story is not None:
                if not story.thumbnail_url:
                    story.thumbnail_url = result.image_url
                if story.user_id:
                    await UsageService(session).increment_usage(story.user_id, images=1)

            await session.commit()
            await self.bus.publish_segment_updated(segment.story_id, segment)
            return result

    async def run_segment_image_job(self, segment_id: str, prompt: str | None = None) -> None:
        """Background-task entry point; failures are logged, never raised."""
        try:
            await self.generate_segment_image(segment_id, prompt)
        except APIError as e:
            logger.error("Image generation for segment %s failed: %s", segment_id, e.message)
        except Exception:
            logger.exception("Unexpected image generation failure for segment %s", segment_id)
