"""Database models for TaleForge.

SQLAlchemy models for:
- Stories, segments and persisted story bibles
- User characters, subscriptions, founders and usage
- Feedback and waitlist entries

All models use async SQLAlchemy with asyncpg for PostgreSQL.
"""

from .database import (
    Base,
    close_db,
    create_all,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from .feedback import (
    FeedbackPriority,
    FeedbackStatus,
    FeedbackType,
    UserFeedback,
    WaitlistEntry,
)
from .story import GenerationStatus, Story, StorySegment, StoryVisualState
from .user import FounderTier, Subscriber, UserCharacter, UserFounder, UserUsage

__all__ = [
    # Database
    "Base",
    "init_db",
    "create_all",
    "get_session",
    "get_session_factory",
    "get_engine",
    "close_db",
    # Story models
    "Story",
    "StorySegment",
    "StoryVisualState",
    "GenerationStatus",
    # Account models
    "UserCharacter",
    "Subscriber",
    "UserFounder",
    "UserUsage",
    "FounderTier",
    # Feedback
    "UserFeedback",
    "WaitlistEntry",
    "FeedbackType",
    "FeedbackStatus",
    "FeedbackPriority",
]
