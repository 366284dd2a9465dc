"""Per-user account models.

Characters, subscription state, founder status and monthly usage. Users
themselves live in Supabase Auth; ``user_id`` columns hold their UUIDs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .database import Base, JSONType, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class FounderTier(str, Enum):
    """Founder program tiers, by signup order."""

    GENESIS = "genesis"
    PIONEER = "pioneer"
    EARLY_ADOPTER = "early_adopter"


class UserCharacter(Base):
    """A reusable character a user can cast into new stories."""

    __tablename__ = "user_characters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    traits: Mapped[list[str]] = mapped_column(JSONType, default=list)
    avatar_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
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
        return f"<UserCharacter(id={self.id}, name='{self.name}')>"


class Subscriber(Base):
    """Stripe subscription state mirrored from webhooks.

    ``subscription_tier`` holds the database tier name (``Premium`` is shown
    to users as ``Core``).
    """

    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), default="")
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    subscribed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_tier: Mapped[str] = mapped_column(String(50), default="Free")
    subscription_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    subscription_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
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
        return f"<Subscriber(user_id={self.user_id}, tier='{self.subscription_tier}')>"


class UserFounder(Base):
    """Founder program membership."""

    __tablename__ = "user_founders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    founder_number: Mapped[int] = mapped_column(Integer, unique=True)
    founder_tier: Mapped[FounderTier] = mapped_column(
        SQLEnum(
            FounderTier,
            name="founder_tier",
            values_callable=lambda e: [m.value for m in e],
        ),
    )
    lifetime_discount: Mapped[int] = mapped_column(Integer, default=0)
    benefits: Mapped[list[str]] = mapped_column(JSONType, default=list)
    signed_up_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<UserFounder(number={self.founder_number}, tier={self.founder_tier})>"


class UserUsage(Base):
    """Monthly usage counters for tier enforcement."""

    __tablename__ = "user_usage"
    __table_args__ = (UniqueConstraint("user_id", "month_year", name="uq_user_usage_month"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    month_year: Mapped[str] = mapped_column(String(7))  # YYYY-MM
    stories_created: Mapped[int] = mapped_column(Integer, default=0)
    images_generated: Mapped[int] = mapped_column(Integer, default=0)
    voice_generations: Mapped[int] = mapped_column(Integer, default=0)
    narrated_minutes_used: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    def to_dict(self) -> dict[str, Any]:
        """Usage counters as a plain dict."""
        return {
            "stories_created": self.stories_created,
            "images_generated": self.images_generated,
            "voice_generations": self.voice_generations,
            "narrated_minutes_used": self.narrated_minutes_used,
            "month_year": self.month_year,
        }

    def __repr__(self) -> str:
        return f"<UserUsage(user_id={self.user_id}, month='{self.month_year}')>"
