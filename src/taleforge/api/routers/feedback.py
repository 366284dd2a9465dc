"""Feedback router.

Anyone can send feedback; signed-in users have it linked to their account.
"""

from datetime import datetime

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, EmailStr, Field

from taleforge.api.deps import DBSession, OptionalUser
from taleforge.models.feedback import FeedbackPriority, FeedbackStatus, FeedbackType, UserFeedback

router = APIRouter()


class FeedbackCreateRequest(BaseModel):
    """Feedback form submission."""

    feedback_type: FeedbackType = FeedbackType.GENERAL
    subject: str | None = Field(default=None, max_length=255)
    message: str = Field(..., min_length=1, max_length=5000)
    email: EmailStr | None = None
    page_url: str | None = Field(default=None, max_length=1000)
    priority: FeedbackPriority = FeedbackPriority.MEDIUM


class FeedbackResponse(BaseModel):
    """Stored feedback."""

    id: str
    feedback_type: FeedbackType
    subject: str | None
    message: str
    priority: FeedbackPriority
    status: FeedbackStatus
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def submit_feedback(
    body: FeedbackCreateRequest,
    request: Request,
    user: OptionalUser,
    db: DBSession,
) -> UserFeedback:
    """Store a feedback message for the admin console."""
    feedback = UserFeedback(
        user_id=user["id"] if user else None,
        email=body.email or (user.get("email") if user else None),
        feedback_type=body.feedback_type,
        subject=body.subject,
        message=body.message.strip(),
        page_url=body.page_url,
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        priority=body.priority,
        status=FeedbackStatus.NEW,
    )
    db.add(feedback)
    await db.commit()
    return feedback
