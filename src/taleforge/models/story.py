"""Story, segment and story-bible models.

SQLAlchemy models for branching stories and their generated segments.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .database import Base, JSONType, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class GenerationStatus(str, Enum):
    """Status of an asynchronous image or audio generation."""

    NOT_STARTED = "not_started"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


GenerationStatusType = SQLEnum(
    GenerationStatus,
    name="generation_status",
    values_callable=lambda e: [m.value for m in e],
)


class Story(Base):
    """Story model - the root of a branching narrative.

    Created with its first segment. Anonymous stories have no user_id.
    """

    __tablename__ = "stories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    story_mode: Mapped[str] = mapped_column(String(100), default="fantasy-magic")
    target_age: Mapped[str] = mapped_column(String(10), default="7-9")

    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    segment_count: Mapped[int] = mapped_column(Integer, default=0)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Full-story narration
    audio_generation_status: Mapped[GenerationStatus] = mapped_column(
        GenerationStatusType,
        default=GenerationStatus.NOT_STARTED,
    )
    full_story_audio_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Video rendering (external renderer, status only)
    shotstack_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    shotstack_video_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

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

    # Relationships
    segments: Mapped[list[StorySegment]] = relationship(
        "StorySegment",
        back_populates="story",
        order_by="StorySegment.segment_number",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    visual_state: Mapped[StoryVisualState | None] = relationship(
        "StoryVisualState",
        back_populates="story",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Story(id={self.id}, title='{self.title}')>"


class StorySegment(Base):
    """One generated page of a story with its branching choices."""

    __tablename__ = "story_segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    story_id: Mapped[str] = mapped_column(
        ForeignKey("stories.id", ondelete="CASCADE"),
        index=True,
    )
    parent_segment_id: Mapped[str | None] = mapped_column(
        ForeignKey("story_segments.id", ondelete="SET NULL"),
        nullable=True,
    )
    segment_number: Mapped[int] = mapped_column(Integer, default=1)
    triggering_choice_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    segment_text: Mapped[str] = mapped_column(Text)
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    choices: Mapped[list[str]] = mapped_column(JSONType, default=list)
    is_end: Mapped[bool] = mapped_column(Boolean, default=False)

    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    image_generation_status: Mapped[GenerationStatus] = mapped_column(
        GenerationStatusType,
        default=GenerationStatus.NOT_STARTED,
    )

    audio_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    audio_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    audio_generation_status: Mapped[GenerationStatus] = mapped_column(
        GenerationStatusType,
        default=GenerationStatus.NOT_STARTED,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )

    # Relationships
    story: Mapped[Story] = relationship("Story", back_populates="segments")

    def __repr__(self) -> str:
        return f"<StorySegment(id={self.id}, story_id={self.story_id}, number={self.segment_number})>"


class StoryVisualState(Base):
    """Persisted story bible (characters, world, facts) for one story."""

    __tablename__ = "story_visual_state"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    story_id: Mapped[str] = mapped_column(
        ForeignKey("stories.id", ondelete="CASCADE"),
        unique=True,
        index=True,
    )
    character_descriptions: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    style_hint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    story: Mapped[Story] = relationship("Story", back_populates="visual_state")

    def __repr__(self) -> str:
        return f"<StoryVisualState(story_id={self.story_id})>"
