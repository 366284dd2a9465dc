"""Feedback and waitlist models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .database import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class FeedbackType(str, Enum):
    """Kinds of feedback users can send."""

    BUG = "bug"
    FEATURE = "feature"
    GENERAL = "general"
    PRAISE = "praise"


class FeedbackStatus(str, Enum):
    """Admin triage status of a feedback entry."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class FeedbackPriority(str, Enum):
    """Triage priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UserFeedback(Base):
    """Feedback submitted from the widget, anonymous or signed in."""

    __tablename__ = "user_feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feedback_type: Mapped[FeedbackType] = mapped_column(
        SQLEnum(FeedbackType, name="feedback_type", values_callable=lambda e: [m.value for m in e]),
        default=FeedbackType.GENERAL,
    )
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message: Mapped[str] = mapped_column(Text)
    page_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    priority: Mapped[FeedbackPriority] = mapped_column(
        SQLEnum(
            FeedbackPriority,
            name="feedback_priority",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=FeedbackPriority.MEDIUM,
    )
    status: Mapped[FeedbackStatus] = mapped_column(
        SQLEnum(
            FeedbackStatus,
            name="feedback_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=FeedbackStatus.NEW,
        index=True,
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<UserFeedback(id={self.id}, type={self.feedback_type})>"


class WaitlistEntry(Base):
    """Pre-launch waitlist signup."""

    __tablename__ = "waitlist"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), default="")
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<WaitlistEntry(email='{self.email}')>"
