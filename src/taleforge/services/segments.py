"""Segment generation - the heart of story creation.

    POST /api/stories/segments
           ↓
    SegmentGenerationService.generate_segment()
           ↓
    ┌──────────────────────────────────────┐
    │  1. Usage check (new stories only)   │
    │  2. Story bible of prior segments    │
    │  3. Prompt + consistency block       │
    │  4. Text provider (with fallback)    │
    │  5. Parse JSON, fall back to raw     │
    │  6. Persist story / segment / bible  │
    │  7. Mark image pending, publish      │
    └──────────────────────────────────────┘
           ↓
    Router schedules image generation as a background task
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession

from taleforge.api.exceptions import (
    APIError,
    ForbiddenError,
    NotFoundError,
    ProviderUnavailableError,
    UsageLimitError,
)
from taleforge.core.config import Settings, get_settings
from taleforge.providers import ProviderRegistry, generate_with_fallback

from ..models.story import GenerationStatus, Story, StorySegment
from .provider_errors import GenerationPhase, log_story_generation_error
from .realtime import StoryEventBus
from .story_context import (
    StoryBible,
    build_consistency_prompt,
    build_story_bible,
    extract_story_elements,
    generate_context_summary,
    load_story_bible,
    save_story_bible,
)
from .tiers import UsageService

logger = logging.getLogger(__name__)

AGE_BUCKETS = {"4-6": 5, "7-9": 8, "10-12": 11}
DEFAULT_AGE_BUCKET = "7-9"

DEFAULT_CHOICES = [
    "Continue the adventure",
    "Explore something new",
    "Make a different choice",
]
STORY_CONTEXT_SEGMENTS = 3
TITLE_LENGTH = 50

OPENING_GUIDANCE = (
    'OPENING: Begin like a true story opening (e.g., "Once upon a time", or a classic '
    "establishing line). Establish setting, character, and tone. No questions in the "
    "narration. End with a natural narrative beat (not a question). 120–180 words."
)
CONTINUATION_GUIDANCE = (
    "CONTINUATION: Continue smoothly from the story so far. 120–160 words. Do not recap "
    "more than 1 short sentence. No questions in the narration. End with a natural "
    "narrative beat (not a question)."
)

FINALE_TEXT = (
    "With a sense of accomplishment and joy, our hero's journey comes to a satisfying "
    "close. The adventure has been filled with wonder, discovery, and growth. As the story "
    "draws to an end, there's a warm feeling of completion - knowing that this magical tale "
    "will be remembered and cherished. The end."
)
FINALE_IMAGE_PROMPT = (
    "A beautiful conclusion scene showing the end of a magical adventure, warm golden "
    "light, peaceful and satisfying ending, digital art, highly detailed, vibrant colors"
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class AgeBand(NamedTuple):
    """Age bucket plus a numeric age for prompting."""

    bucket: str
    numeric: int


@dataclass
class ParsedSegment:
    """Model output after parsing and cleanup."""

    story_text: str
    choices: list[str]
    image_prompt: str
    is_end: bool = False
    parsed_json: bool = True


@dataclass
class SegmentRequest:
    """Input for one generation call."""

    prompt: str
    genre: str = "fantasy-magic"
    age: str | int | None = None
    story_id: str | None = None
    parent_segment_id: str | None = None
    choice_text: str | None = None
    skip_image: bool = False
    characters: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SegmentResult:
    """A stored segment plus what the caller needs to schedule."""

    story: Story
    segment: StorySegment
    model_used: str
    schedule_image: bool

    def to_dict(self) -> dict[str, Any]:
        segment = self.segment
        return {
            "id": segment.id,
            "story_id": self.story.id,
            "segment_number": segment.segment_number,
            "segment_text": segment.segment_text,
            "choices": list(segment.choices or []),
            "image_prompt": segment.image_prompt,
            "is_end": segment.is_end,
            "image_url": segment.image_url,
            "image_generation_status": segment.image_generation_status.value,
            "model_used": self.model_used,
        }


def resolve_age(value: Any) -> AgeBand:
    """Normalize an age or age bucket.

    Exact buckets map to their midpoints; plain numbers pick the bucket
    they fall into; anything else is 7-9.
    """
    text = str(value).strip() if value is not None else ""
    if text in AGE_BUCKETS:
        return AgeBand(text, AGE_BUCKETS[text])

    try:
        number = value if isinstance(value, int) and not isinstance(value, bool) else int(text)
    except ValueError:
        return AgeBand(DEFAULT_AGE_BUCKET, AGE_BUCKETS[DEFAULT_AGE_BUCKET])

    if number <= 6:
        return AgeBand("4-6", number)
    if number <= 9:
        return AgeBand("7-9", number)
    return AgeBand("10-12", number)


def build_segment_prompt(
    prompt: str,
    age: AgeBand,
    genre: str,
    characters: list[dict[str, Any]] | None = None,
    story_so_far: str = "",
    choice_text: str | None = None,
    is_first_segment: bool = True,
) -> str:
    """Prompt asking the model for one segment as JSON."""
    character_context = ""
    if characters:
        listed = ", ".join(f"{c.get('name', '')}: {c.get('description') or ''}" for c in characters)
        character_context = f"\n\nCharacters: {listed}"

    guidance = OPENING_GUIDANCE if is_first_segment else CONTINUATION_GUIDANCE
    so_far = f"Story so far: {story_so_far}\n\n" if story_so_far else ""
    continue_from = f'Continue from: "{choice_text}"\n\n' if choice_text else ""

    return f"""Create an interactive children's story segment.

Age: {age.numeric} years old (bucket: {age.bucket})
Genre: {genre}
{character_context}

{so_far}
{continue_from}

User request: {prompt}

STYLE RULES:
- Narration must NOT contain direct questions (avoid lines like "What do you do?" or any sentence ending with '?').
- No second-person questions; no addressing the reader.
- Show, don't tell. Vivid but concise; child-friendly vocabulary for the age bucket.
- {guidance}

CHOICES:
- Return exactly 3 short options that describe possible next actions.
- Imperative tone (e.g., "Follow the glow", "Open the door").
- Max 6 words each, no question marks.

Respond with JSON only:
{{
  "story_text": "polished story text with no questions",
  "choices": ["imperative option 1", "imperative option 2", "imperative option 3"],
  "image_prompt": "detailed visual description for SDXL image generation",
  "is_end": false
}}

IMPORTANT for image_prompt (Stable Diffusion XL):
- Include visual specifics (lighting, colors, composition)
- Mention art style (e.g., "digital art", "illustration", "fantasy art")
- Quality enhancers ("highly detailed", "vibrant colors", "professional illustration")
- Keep it child-friendly and match the story's tone
- Example: "A magical forest clearing with golden sunlight filtering through emerald leaves, a young adventurer in colorful clothes standing before an ancient oak tree with glowing runes, fantasy illustration, highly detailed, vibrant colors, digital art\""""


def parse_segment_response(content: str, genre: str, age: Any) -> ParsedSegment:
    """Parse model output, falling back to the raw text when it is not JSON."""
    default_image_prompt = f"A {genre} story scene for children aged {age}"

    data: dict[str, Any] | None = None
    match = _JSON_OBJECT.search(content)
    if match:
        try:
            loaded = json.loads(match.group(0))
            data = loaded if isinstance(loaded, dict) else None
        except json.JSONDecodeError:
            data = None

    if data is None:
        logger.warning("JSON parsing failed for segment response, using raw text")
        return ParsedSegment(
            story_text=content.strip(),
            choices=list(DEFAULT_CHOICES),
            image_prompt=default_image_prompt,
            is_end=False,
            parsed_json=False,
        )

    choices = data.get("choices")
    if not (
        isinstance(choices, list)
        and len(choices) == 3
        and all(isinstance(c, str) and c.strip() for c in choices)
    ):
        choices = list(DEFAULT_CHOICES)

    return ParsedSegment(
        story_text=str(data.get("story_text") or content).strip(),
        choices=[c.strip() for c in choices],
        image_prompt=str(data.get("image_prompt") or default_image_prompt),
        is_end=bool(data.get("is_end", False)),
    )


def user_owns_story(story: Story, user: dict | None) -> bool:
    """Anonymous stories are open to anyone; owned stories to their owner."""
    if story.user_id is None:
        return True
    return user is not None and user.get("id") == story.user_id


class SegmentGenerationService:
    """Generate and persist story segments."""

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        bus: StoryEventBus,
        settings: Settings | None = None,
    ):
        self.session = session
        self.registry = registry
        self.bus = bus
        self.settings = settings or get_settings()
        self.usage = UsageService(session)

    def _images_enabled(self, skip_image: bool) -> bool:
        return (
            not skip_image
            and self.settings.enable_image_generation
            and (self.registry.image_primary is not None or self.registry.image_fallback is not None)
        )

    async def _load_story(self, story_id: str, user: dict | None) -> Story:
        story = await self.session.get(Story, story_id)
        if story is None:
            raise NotFoundError("Story", story_id)
        if not user_owns_story(story, user):
            raise ForbiddenError("Not authorized to continue this story")
        return story

    async def _generate_text(self, prompt: str) -> tuple[str, str]:
        try:
            result, provider = await generate_with_fallback(
                self.registry.text_primary,
                self.registry.text_fallback,
                "text-generation",
                lambda p: p.generate(
                    prompt,
                    max_tokens=self.settings.generation_max_tokens,
                    temperature=self.settings.generation_temperature,
                ),
            )
        except ProviderUnavailableError as e:
            log_story_generation_error(GenerationPhase.TEXT, e, {"prompt_length": len(prompt)})
            raise
        return result.content, result.model

    async def generate_segment(self, request: SegmentRequest, user: dict | None) -> SegmentResult:
        """Generate the first or next segment of a story."""
        age = resolve_age(request.age)
        user_id = user.get("id") if user else None
        logger.info(
            "Generating segment: story=%s genre=%s age=%s (%s)",
            request.story_id,
            request.genre,
            age.bucket,
            age.numeric,
        )

        story: Story | None = None
        if request.story_id:
            story = await self._load_story(request.story_id, user)
            if story.is_completed:
                raise APIError("Story is already completed", status_code=409)
        elif user_id:
            check = await self.usage.check_story_limit(user_id)
            if not check.can_proceed:
                raise UsageLimitError(
                    check.reason or "Story limit reached",
                    current_usage=check.current_usage,
                    limit=check.limit,
                    upgrade_required=check.upgrade_required,
                )

        prior = list(story.segments) if story is not None else []
        if request.parent_segment_id and request.parent_segment_id not in {s.id for s in prior}:
            raise NotFoundError("Segment", request.parent_segment_id)
        prior_texts = [s.segment_text for s in prior]
        is_first = not prior

        base_prompt = build_segment_prompt(
            request.prompt,
            age,
            request.genre,
            characters=request.characters,
            story_so_far="\n\n".join(prior_texts[-STORY_CONTEXT_SEGMENTS:]) if not is_first else "",
            choice_text=request.choice_text,
            is_first_segment=is_first,
        )

        bible: StoryBible | None = None
        prompt = base_prompt
        if story is not None and prior:
            bible = await load_story_bible(self.session, story.id)
            if bible is None:
                bible = build_story_bible(story, prior_texts)
            summary = generate_context_summary(bible, prior_texts)
            prompt = build_consistency_prompt(base_prompt, summary, request.choice_text)

        content, model_used = await self._generate_text(prompt)
        parsed = parse_segment_response(content, request.genre, age.bucket)

        if story is None:
            story = Story(
                user_id=user_id,
                title=request.prompt[:TITLE_LENGTH] + "...",
                story_mode=request.genre,
                target_age=age.bucket,
                is_public=False,
                segment_count=0,
                segments=[],
            )
            self.session.add(story)
            await self.session.flush()
            logger.info("New story created: %s", story.id)

        schedule_image = self._images_enabled(request.skip_image)
        segment = StorySegment(
            story_id=story.id,
            parent_segment_id=request.parent_segment_id,
            segment_number=(story.segment_count or 0) + 1,
            triggering_choice_text=request.choice_text,
            segment_text=parsed.story_text,
            word_count=len(parsed.story_text.split()),
            choices=[] if parsed.is_end else parsed.choices,
            image_prompt=parsed.image_prompt,
            is_end=parsed.is_end,
            image_generation_status=(
                GenerationStatus.PENDING if schedule_image else GenerationStatus.SKIPPED
            ),
            audio_generation_status=GenerationStatus.NOT_STARTED,
        )
        story.segments.append(segment)
        story.segment_count = segment.segment_number
        if parsed.is_end:
            story.is_completed = True
        await self.session.flush()

        if bible is None:
            bible = build_story_bible(story, prior_texts)
        bible.story_id = story.id
        bible.absorb(extract_story_elements(segment.segment_text, segment.segment_number))
        await save_story_bible(self.session, bible)

        if user_id and not prior:
            await self.usage.increment_usage(user_id, stories=1)

        # Background work reads these rows from its own session
        await self.session.commit()
        logger.info("Segment %s saved (story %s, model %s)", segment.id, story.id, model_used)

        await self.bus.publish_segment_created(story.id, segment)
        if story.is_completed:
            await self.bus.publish_story_completed(story.id, {"segment_id": segment.id})

        return SegmentResult(
            story=story,
            segment=segment,
            model_used=model_used,
            schedule_image=schedule_image,
        )

    async def finish_story(self, story_id: str, user: dict | None) -> SegmentResult:
        """Close a story with the fixed finale segment."""
        story = await self._load_story(story_id, user)
        if not story.segments:
            raise APIError("Cannot finish a story without segments", status_code=400)
        if story.is_completed and story.segments[-1].is_end:
            raise APIError("Story is already completed", status_code=409)

        last = story.segments[-1]
        schedule_image = self._images_enabled(skip_image=False)
        finale = StorySegment(
            story_id=story.id,
            parent_segment_id=last.id,
            segment_number=(story.segment_count or len(story.segments)) + 1,
            segment_text=FINALE_TEXT,
            word_count=len(FINALE_TEXT.split()),
            choices=[],
            image_prompt=FINALE_IMAGE_PROMPT,
            is_end=True,
            image_generation_status=(
                GenerationStatus.PENDING if schedule_image else GenerationStatus.SKIPPED
            ),
            audio_generation_status=GenerationStatus.NOT_STARTED,
        )
        story.segments.append(finale)
        story.segment_count = finale.segment_number
        story.is_completed = True
        await self.session.flush()
        await self.session.commit()
        logger.info("Story %s finished with finale segment %s", story.id, finale.id)

        await self.bus.publish_segment_created(story.id, finale)
        await self.bus.publish_story_completed(story.id, {"segment_id": finale.id})

        return SegmentResult(
            story=story,
            segment=finale,
            model_used="finale",
            schedule_image=schedule_image,
        )
