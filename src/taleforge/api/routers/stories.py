"""Stories router for segment generation and story management.

Segment generation answers as soon as the text is stored; images and
narration run as BackgroundTasks and report progress over SSE.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel, Field

from taleforge.api.deps import (
    AppSettings,
    CurrentUser,
    DBSession,
    EventBus,
    OptionalUser,
    Registry,
    SessionFactory,
)
from taleforge.models.story import GenerationStatus
from taleforge.services.images import ImageGenerationService
from taleforge.services.narration import NarrationService
from taleforge.services.segments import SegmentGenerationService, SegmentRequest, SegmentResult
from taleforge.services.stories import StoryPage, StoryService

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================


class CharacterContext(BaseModel):
    """A user character woven into the prompt."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)


class SegmentCreateRequest(BaseModel):
    """Request to generate the first or next segment of a story."""

    prompt: str = Field(..., min_length=1, max_length=2000)
    genre: str = Field(default="fantasy-magic", max_length=100)
    age: str | int | None = Field(default=None, description="Age bucket (4-6, 7-9, 10-12) or age in years")
    story_id: str | None = None
    parent_segment_id: str | None = None
    choice_text: str | None = Field(default=None, max_length=500)
    skip_image: bool = False
    characters: list[CharacterContext] = Field(default_factory=list, max_length=10)


class SegmentResponse(BaseModel):
    """Segment information response."""

    id: str
    story_id: str
    parent_segment_id: str | None
    segment_number: int
    triggering_choice_text: str | None
    segment_text: str
    word_count: int
    choices: list[str]
    is_end: bool
    image_prompt: str | None
    image_url: str | None
    image_generation_status: GenerationStatus
    audio_url: str | None
    audio_generation_status: GenerationStatus
    created_at: datetime

    class Config:
        from_attributes = True


class GeneratedSegmentResponse(BaseModel):
    """A freshly generated segment."""

    id: str
    story_id: str
    segment_number: int
    segment_text: str
    choices: list[str]
    image_prompt: str | None
    is_end: bool
    image_url: str | None
    image_generation_status: GenerationStatus
    model_used: str


class StoryResponse(BaseModel):
    """Story information response."""

    id: str
    user_id: str | None
    title: str
    description: str | None
    story_mode: str
    target_age: str
    is_completed: bool
    is_public: bool
    published_at: datetime | None
    segment_count: int
    thumbnail_url: str | None
    audio_generation_status: GenerationStatus
    full_story_audio_url: str | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StoryDetailResponse(StoryResponse):
    """Story with all of its segments."""

    segments: list[SegmentResponse]


class StoryListResponse(BaseModel):
    """Paginated list of stories."""

    items: list[StoryResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class StoryUpdateRequest(BaseModel):
    """Editable story fields."""

    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    is_public: bool | None = None


class StoryStatusResponse(BaseModel):
    """Generation progress snapshot."""

    id: str
    is_completed: bool
    segment_count: int
    audio_generation_status: str
    full_story_audio_url: str | None
    is_generating: bool
    segments: list[dict]


class ImageRequest(BaseModel):
    """Optional replacement prompt for an image."""

    prompt: str | None = Field(default=None, max_length=2000)


class TestImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)


class ImageResponse(BaseModel):
    """Generated image."""

    segment_id: str | None
    image_url: str
    optimized_prompt: str
    provider: str


class NarrationRequest(BaseModel):
    voice_id: str | None = Field(default=None, max_length=100)


class NarrationResponse(BaseModel):
    """Accepted narration job."""

    story_id: str
    audio_generation_status: str
    estimated_minutes: int


# =============================================================================
# Helpers
# =============================================================================


def _to_list_response(page: StoryPage) -> StoryListResponse:
    return StoryListResponse(
        items=[StoryResponse.model_validate(story) for story in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more,
    )


def _schedule_image(
    background_tasks: BackgroundTasks,
    result: SegmentResult,
    session_factory,
    registry,
    bus,
    settings,
) -> None:
    if result.schedule_image:
        service = ImageGenerationService(session_factory, registry, bus, settings)
        background_tasks.add_task(service.run_segment_image_job, result.segment.id)


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/segments", response_model=GeneratedSegmentResponse, status_code=status.HTTP_201_CREATED)
async def generate_segment(
    request: SegmentCreateRequest,
    background_tasks: BackgroundTasks,
    user: OptionalUser,
    db: DBSession,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
) -> GeneratedSegmentResponse:
    """Generate a story segment.

    Without ``story_id`` a new story is created (anonymous when no user is
    signed in). With ``story_id`` the story continues from the chosen
    branch. The segment image is generated in the background.

    Raises:
        UsageLimitError: Monthly story limit reached (402)
        ProviderUnavailableError: Every text provider failed (503)
    """
    service = SegmentGenerationService(db, registry, bus, settings)
    result = await service.generate_segment(
        SegmentRequest(
            prompt=request.prompt,
            genre=request.genre,
            age=request.age,
            story_id=request.story_id,
            parent_segment_id=request.parent_segment_id,
            choice_text=request.choice_text,
            skip_image=request.skip_image,
            characters=[c.model_dump() for c in request.characters],
        ),
        user,
    )
    _schedule_image(background_tasks, result, session_factory, registry, bus, settings)
    return GeneratedSegmentResponse(**result.to_dict())


@router.post("/segments/{segment_id}/image", response_model=ImageResponse)
async def regenerate_segment_image(
    segment_id: str,
    user: OptionalUser,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
    request: ImageRequest | None = None,
) -> ImageResponse:
    """Regenerate a segment image, optionally with a new prompt."""
    service = ImageGenerationService(session_factory, registry, bus, settings)
    await service.authorize(segment_id, user)
    result = await service.generate_segment_image(segment_id, request.prompt if request else None)
    return ImageResponse(
        segment_id=segment_id,
        image_url=result.image_url,
        optimized_prompt=result.optimized_prompt,
        provider=result.provider,
    )


@router.post("/images/test", response_model=ImageResponse)
async def generate_test_image(
    request: TestImageRequest,
    user: CurrentUser,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
) -> ImageResponse:
    """Render a raw prompt without attaching it to a segment."""
    service = ImageGenerationService(session_factory, registry, bus, settings)
    result = await service.generate_test_image(request.prompt)
    return ImageResponse(
        segment_id=None,
        image_url=result.image_url,
        optimized_prompt=result.optimized_prompt,
        provider=result.provider,
    )


@router.get("", response_model=StoryListResponse)
async def list_stories(
    user: CurrentUser,
    db: DBSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    is_completed: bool | None = None,
    genre: str | None = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
) -> StoryListResponse:
    """List stories for the current user.

    Args:
        user: Authenticated user
        db: Database session
        page: Page number (1-indexed)
        page_size: Items per page
        is_completed: Only finished or unfinished stories
        genre: Only stories of this genre
        search: Case-insensitive title search

    Returns:
        Paginated list of stories
    """
    result = await StoryService(db).list_user_stories(
        user["id"],
        page=page,
        page_size=page_size,
        is_completed=is_completed,
        genre=genre,
        search=search,
    )
    return _to_list_response(result)


@router.get("/public", response_model=StoryListResponse)
async def list_public_stories(
    db: DBSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    genre: str | None = None,
) -> StoryListResponse:
    """Published stories for the discover page."""
    result = await StoryService(db).list_public_stories(page=page, page_size=page_size, genre=genre)
    return _to_list_response(result)


@router.get("/{story_id}", response_model=StoryDetailResponse)
async def get_story(
    story_id: str,
    user: OptionalUser,
    db: DBSession,
) -> StoryDetailResponse:
    """Get a story with its segments.

    Raises:
        NotFoundError: If the story doesn't exist or is private to someone else
    """
    story = await StoryService(db).get_story(story_id, user)
    return StoryDetailResponse.model_validate(story)


@router.patch("/{story_id}", response_model=StoryResponse)
async def update_story(
    story_id: str,
    request: StoryUpdateRequest,
    user: CurrentUser,
    db: DBSession,
) -> StoryResponse:
    """Rename, describe or publish a story."""
    story = await StoryService(db).update_story(
        story_id,
        user,
        title=request.title,
        description=request.description,
        is_public=request.is_public,
    )
    return StoryResponse.model_validate(story)


@router.post("/{story_id}/finish", response_model=GeneratedSegmentResponse)
async def finish_story(
    story_id: str,
    background_tasks: BackgroundTasks,
    user: OptionalUser,
    db: DBSession,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
) -> GeneratedSegmentResponse:
    """End a story with the closing segment."""
    service = SegmentGenerationService(db, registry, bus, settings)
    result = await service.finish_story(story_id, user)
    _schedule_image(background_tasks, result, session_factory, registry, bus, settings)
    return GeneratedSegmentResponse(**result.to_dict())


@router.get("/{story_id}/status", response_model=StoryStatusResponse)
async def get_story_status(
    story_id: str,
    user: OptionalUser,
    db: DBSession,
) -> StoryStatusResponse:
    """Get generation status.

    Lighter endpoint for polling status without full story text.
    For real-time updates, use the SSE endpoint.
    """
    snapshot = await StoryService(db).get_status(story_id, user)
    return StoryStatusResponse(**snapshot)


@router.post("/{story_id}/audio", response_model=NarrationResponse, status_code=status.HTTP_202_ACCEPTED)
async def narrate_story(
    story_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
    request: NarrationRequest | None = None,
) -> NarrationResponse:
    """Start full-story narration.

    Limits are checked before the job is accepted; progress arrives as
    ``story_updated`` events.

    Raises:
        UsageLimitError: Monthly voice minutes would be exceeded (402)
        ConflictError: Narration already running (409)
    """
    service = NarrationService(session_factory, registry, bus, settings)
    job = await service.prepare(story_id, user, request.voice_id if request else None)
    background_tasks.add_task(service.run_narration_job, job)
    return NarrationResponse(
        story_id=story_id,
        audio_generation_status="pending",
        estimated_minutes=job.minutes,
    )


@router.delete("/{story_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_story(
    story_id: str,
    user: CurrentUser,
    db: DBSession,
) -> None:
    """Delete a story with its segments and story bible.

    Images and audio in storage are left in place.
    """
    await StoryService(db).delete_story(story_id, user)
