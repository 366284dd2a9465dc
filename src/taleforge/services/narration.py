"""Full-story narration.

Joins every segment into one script, synthesizes it with the configured
speech provider (OpenAI TTS by default, ElevenLabs as the alternative, each
the other's fallback), stores the audio in the ``story-audio`` bucket and
records narrated minutes against the owner's monthly allowance.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taleforge.api.exceptions import (
    APIError,
    ConflictError,
    ForbiddenError,
    GenerationError,
    NotFoundError,
    UsageLimitError,
)
from taleforge.core.config import Settings, get_settings
from taleforge.core.supabase import upload_public_file
from taleforge.providers import ProviderRegistry, generate_with_fallback

from ..models.story import GenerationStatus, Story
from .provider_errors import GenerationPhase, log_story_generation_error
from .realtime import StoryEventBus
from .segments import user_owns_story
from .tiers import UsageService, estimate_narration_minutes

logger = logging.getLogger(__name__)

Uploader = Callable[[str, str, bytes, str], Awaitable[str]]

ACTIVE_AUDIO_STATUSES = (GenerationStatus.PENDING, GenerationStatus.IN_PROGRESS)


@dataclass
class NarrationJob:
    """A validated narration request waiting to run."""

    story_id: str
    user_id: str
    text: str
    minutes: int
    voice_id: str | None = None


@dataclass
class NarrationResult:
    story_id: str
    audio_url: str
    minutes: int
    provider: str


def narration_script(segment_texts: list[str]) -> str:
    """Segments joined with blank lines."""
    return "\n\n".join(text.strip() for text in segment_texts if text and text.strip())


class NarrationService:
    """Narrate whole stories."""

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

    async def prepare(self, story_id: str, user: dict | None, voice_id: str | None = None) -> NarrationJob:
        """Validate a narration request and mark the story ``pending``."""
        if not self.settings.enable_narration:
            raise APIError("Narration is disabled", status_code=503)

        async with self.session_factory() as session:
            story = await session.get(Story, story_id)
            if story is None:
                raise NotFoundError("Story", story_id)
            if user is None:
                raise APIError("Authentication required", status_code=401)
            if not user_owns_story(story, user):
                raise ForbiddenError("Not authorized to narrate this story")
            if story.audio_generation_status in ACTIVE_AUDIO_STATUSES:
                raise ConflictError("Narration is already in progress for this story")

            text = narration_script([s.segment_text for s in story.segments])
            if not text:
                raise APIError("Story has no text to narrate", status_code=400)

            minutes = estimate_narration_minutes(text)
            check = await UsageService(session).check_voice_limit(user["id"], minutes)
            if not check.can_proceed:
                raise UsageLimitError(
                    check.reason or "Voice limit reached",
                    current_usage=check.current_usage,
                    limit=check.limit,
                    upgrade_required=check.upgrade_required,
                )

            story.audio_generation_status = GenerationStatus.PENDING
            await session.commit()

        await self.bus.publish_story_updated(story_id, {"audio_generation_status": "pending"})
        return NarrationJob(
            story_id=story_id,
            user_id=user["id"],
            text=text,
            minutes=minutes,
            voice_id=voice_id,
        )

    async def run(self, job: NarrationJob) -> NarrationResult:
        """Synthesize, store and record one prepared job."""
        async with self.session_factory() as session:
            story = await session.get(Story, job.story_id)
            if story is None:
                raise NotFoundError("Story", job.story_id)

            story.audio_generation_status = GenerationStatus.IN_PROGRESS
            await session.commit()
            await self.bus.publish_story_updated(job.story_id, {"audio_generation_status": "in_progress"})

            primary, fallback = self.registry.speech_for(job.voice_id)
            try:
                audio, provider = await generate_with_fallback(
                    primary,
                    fallback,
                    "audio-generation",
                    lambda p: p.synthesize(job.text, job.voice_id if p is primary else None),
                )
                path = f"story-audio/{job.story_id}-{int(time.time() * 1000)}.mp3"
                try:
                    url = await self.uploader(
                        self.settings.story_audio_bucket,
                        path,
                        audio,
                        provider.content_type,
                    )
                except Exception as e:
                    raise GenerationError("audio", "Failed to upload narration", {"error": str(e)}) from e
            except APIError as e:
                log_story_generation_error(GenerationPhase.AUDIO, e, {"story_id": job.story_id})
                story.audio_generation_status = GenerationStatus.FAILED
                await session.commit()
                await self.bus.publish_story_updated(job.story_id, {"audio_generation_status": "failed"})
                raise

            story.full_story_audio_url = url
            story.audio_generation_status = GenerationStatus.COMPLETED
            await UsageService(session).increment_usage(
                job.user_id,
                voice=1,
                narrated_minutes=job.minutes,
            )
            await session.commit()

        logger.info("Story %s narrated (%d min) via %s", job.story_id, job.minutes, provider.provider_type.value)
        await self.bus.publish_story_updated(
            job.story_id,
            {"audio_generation_status": "completed", "full_story_audio_url": url},
        )
        return NarrationResult(
            story_id=job.story_id,
            audio_url=url,
            minutes=job.minutes,
            provider=provider.provider_type.value,
        )

    async def generate_story_audio(
        self,
        story_id: str,
        user: dict | None,
        voice_id: str | None = None,
    ) -> NarrationResult:
        """Validate and narrate in one call."""
        job = await self.prepare(story_id, user, voice_id)
        return await self.run(job)

    async def run_narration_job(self, job: NarrationJob) -> None:
        """Background-task entry point; failures are logged, never raised."""
        try:
            await self.run(job)
        except APIError as e:
            logger.error("Narration for story %s failed: %s", job.story_id, e.message)
        except Exception:
            logger.exception("Unexpected narration failure for story %s", job.story_id)

    async def reset_stuck_audio_generation(self, older_than_minutes: int = 30) -> list[str]:
        """Mark narrations stuck in pending/in-progress as failed; returns story ids."""
        cutoff = datetime.now(UTC) - timedelta(minutes=older_than_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Story).where(
                    Story.audio_generation_status.in_(ACTIVE_AUDIO_STATUSES),
                    Story.updated_at < cutoff,
                )
            )
            stories = list(result.scalars())
            for story in stories:
                story.audio_generation_status = GenerationStatus.FAILED
            await session.commit()

        story_ids = [story.id for story in stories]
        if story_ids:
            logger.warning("Reset %d stuck narrations older than %d min", len(story_ids), older_than_minutes)
        for story_id in story_ids:
            await self.bus.publish_story_updated(story_id, {"audio_generation_status": "failed"})
        return story_ids
