"""Admin endpoints.

Provides the data behind the admin console:
- Overview counts
- Feedback triage
- Waitlist export
- Resetting narrations stuck in progress

Admins are users with the admin role in their Supabase app metadata or an
email listed in ``ADMIN_EMAILS``.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select

from taleforge.api.deps import AdminUser, AppSettings, DBSession, EventBus, Registry, SessionFactory
from taleforge.api.exceptions import NotFoundError
from taleforge.models.database import utcnow
from taleforge.models.feedback import (
    FeedbackPriority,
    FeedbackStatus,
    FeedbackType,
    UserFeedback,
    WaitlistEntry,
)
from taleforge.models.story import Story, StorySegment
from taleforge.models.user import Subscriber, UserFounder
from taleforge.services.narration import NarrationService

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================


class OverviewResponse(BaseModel):
    """Headline counts for the admin dashboard."""

    total_stories: int
    completed_stories: int
    public_stories: int
    total_segments: int
    active_subscribers: int
    founders: int
    waitlist: int
    open_feedback: int


class AdminFeedbackItem(BaseModel):
    """Feedback as the admin console shows it."""

    id: str
    user_id: str | None
    email: str | None
    feedback_type: FeedbackType
    subject: str | None
    message: str
    page_url: str | None
    user_agent: str | None
    priority: FeedbackPriority
    status: FeedbackStatus
    admin_notes: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class AdminFeedbackList(BaseModel):
    """Paginated feedback list."""

    items: list[AdminFeedbackItem]
    total: int
    page: int
    page_size: int
    has_more: bool


class FeedbackUpdateRequest(BaseModel):
    status: FeedbackStatus | None = None
    priority: FeedbackPriority | None = None
    admin_notes: str | None = Field(default=None, max_length=5000)


class WaitlistItem(BaseModel):
    id: str
    email: str
    name: str
    marketing_consent: bool
    created_at: datetime

    class Config:
        from_attributes = True


class WaitlistList(BaseModel):
    items: list[WaitlistItem]
    total: int
    page: int
    page_size: int
    has_more: bool


class ResetStuckResponse(BaseModel):
    reset_count: int
    story_ids: list[str]


# =============================================================================
# Endpoints
# =============================================================================


async def _count(db, query) -> int:
    return (await db.execute(query)).scalar() or 0


@router.get("/overview", response_model=OverviewResponse)
async def get_overview(admin: AdminUser, db: DBSession) -> OverviewResponse:
    story_count = select(func.count()).select_from(Story)
    return OverviewResponse(
        total_stories=await _count(db, story_count),
        completed_stories=await _count(db, story_count.where(Story.is_completed.is_(True))),
        public_stories=await _count(db, story_count.where(Story.is_public.is_(True))),
        total_segments=await _count(db, select(func.count()).select_from(StorySegment)),
        active_subscribers=await _count(
            db,
            select(func.count())
            .select_from(Subscriber)
            .where(Subscriber.subscribed.is_(True), Subscriber.is_active.is_(True)),
        ),
        founders=await _count(db, select(func.count()).select_from(UserFounder)),
        waitlist=await _count(db, select(func.count()).select_from(WaitlistEntry)),
        open_feedback=await _count(
            db,
            select(func.count())
            .select_from(UserFeedback)
            .where(UserFeedback.status.in_((FeedbackStatus.NEW, FeedbackStatus.IN_PROGRESS))),
        ),
    )


@router.get("/feedback", response_model=AdminFeedbackList)
async def list_feedback(
    admin: AdminUser,
    db: DBSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: FeedbackStatus | None = None,
    feedback_type: FeedbackType | None = None,
) -> AdminFeedbackList:
    """List feedback, newest first."""
    query = select(UserFeedback)
    if status_filter:
        query = query.where(UserFeedback.status == status_filter)
    if feedback_type:
        query = query.where(UserFeedback.feedback_type == feedback_type)

    total = await _count(db, select(func.count()).select_from(query.subquery()))
    offset = (page - 1) * page_size
    result = await db.execute(
        query.order_by(UserFeedback.created_at.desc()).offset(offset).limit(page_size)
    )
    items = list(result.scalars())

    return AdminFeedbackList(
        items=[AdminFeedbackItem.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        has_more=(offset + len(items)) < total,
    )


@router.patch("/feedback/{feedback_id}", response_model=AdminFeedbackItem)
async def update_feedback(
    feedback_id: str,
    request: FeedbackUpdateRequest,
    admin: AdminUser,
    db: DBSession,
) -> UserFeedback:
    """Triage feedback; resolving stamps who resolved it and when."""
    feedback = await db.get(UserFeedback, feedback_id)
    if feedback is None:
        raise NotFoundError("Feedback", feedback_id)

    if request.priority is not None:
        feedback.priority = request.priority
    if request.admin_notes is not None:
        feedback.admin_notes = request.admin_notes
    if request.status is not None:
        feedback.status = request.status
        if request.status in (FeedbackStatus.RESOLVED, FeedbackStatus.CLOSED):
            feedback.resolved_at = feedback.resolved_at or utcnow()
            feedback.resolved_by = feedback.resolved_by or admin["id"]
        else:
            feedback.resolved_at = None
            feedback.resolved_by = None

    await db.commit()
    return feedback


@router.get("/waitlist", response_model=WaitlistList)
async def list_waitlist(
    admin: AdminUser,
    db: DBSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=500)] = 100,
) -> WaitlistList:
    query = select(WaitlistEntry)
    total = await _count(db, select(func.count()).select_from(WaitlistEntry))
    offset = (page - 1) * page_size
    result = await db.execute(
        query.order_by(WaitlistEntry.created_at.desc()).offset(offset).limit(page_size)
    )
    items = list(result.scalars())
    return WaitlistList(
        items=[WaitlistItem.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        has_more=(offset + len(items)) < total,
    )


@router.post("/audio/reset-stuck", response_model=ResetStuckResponse)
async def reset_stuck_audio(
    admin: AdminUser,
    session_factory: SessionFactory,
    registry: Registry,
    bus: EventBus,
    settings: AppSettings,
    older_than_minutes: Annotated[int, Query(ge=1, le=1440)] = 30,
) -> ResetStuckResponse:
    """Fail narrations that have been pending or in progress too long."""
    service = NarrationService(session_factory, registry, bus, settings)
    story_ids = await service.reset_stuck_audio_generation(older_than_minutes)
    return ResetStuckResponse(reset_count=len(story_ids), story_ids=story_ids)
