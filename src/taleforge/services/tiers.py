"""Subscription tiers, monthly usage and the founder program.

The database stores ``Premium`` for the tier the pricing page calls
``Core``; everything user-facing works with display names and maps back
with :func:`map_display_to_tier` when writing rows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taleforge.api.exceptions import ConflictError

from ..models.user import FounderTier, Subscriber, UserFounder, UserUsage

logger = logging.getLogger(__name__)

UNLIMITED = -1

_DISPLAY_NAMES = {"Premium": "Core"}
_DATABASE_NAMES = {"Core": "Premium"}

TIER_HIERARCHY: dict[str, int] = {
    "Free": 0,
    "Core": 1,
    "Premium": 1,
    "Pro": 2,
    "Family": 2,
    "Enterprise": 3,
}

# Keyed by display tier
TIER_LIMITS: dict[str, dict[str, Any]] = {
    "Free": {
        "stories_per_month": 20,
        "images_per_month": 20,
        "voice_minutes_per_month": 10,
        "max_characters": 3,
        "features": ["basic_stories", "ai_images", "tts_narration"],
    },
    "Core": {
        "stories_per_month": 100,
        "images_per_month": 100,
        "voice_minutes_per_month": 60,
        "max_characters": UNLIMITED,
        "features": ["basic_stories", "ai_images", "tts_narration", "longer_stories"],
    },
    "Pro": {
        "stories_per_month": UNLIMITED,
        "images_per_month": 300,
        "voice_minutes_per_month": 140,
        "max_characters": UNLIMITED,
        "features": [
            "basic_stories",
            "ai_images",
            "tts_narration",
            "longer_stories",
            "early_access",
            "priority_support",
        ],
    },
    "Family": {
        "stories_per_month": UNLIMITED,
        "images_per_month": 300,
        "voice_minutes_per_month": 140,
        "max_characters": UNLIMITED,
        "features": ["basic_stories", "ai_images", "tts_narration", "longer_stories", "family_sharing"],
    },
    "Enterprise": {
        "stories_per_month": UNLIMITED,
        "images_per_month": UNLIMITED,
        "voice_minutes_per_month": UNLIMITED,
        "max_characters": UNLIMITED,
        "features": ["everything"],
    },
}

WORDS_PER_MINUTE = 150

# (last founder number in tier, tier, lifetime discount %, benefits)
FOUNDER_TIERS: list[tuple[int, FounderTier, int, list[str]]] = [
    (
        100,
        FounderTier.GENESIS,
        100,
        [
            "Lifetime Pro Access (100% off)",
            "Genesis Badge",
            "Early Access to new features",
            "Direct Feedback Channel",
        ],
    ),
    (
        500,
        FounderTier.PIONEER,
        60,
        [
            "60% Lifetime Discount",
            "Pioneer Badge",
            "Early Access to new features",
            "Community Priority",
        ],
    ),
    (
        1000,
        FounderTier.EARLY_ADOPTER,
        50,
        [
            "50% Lifetime Discount",
            "Early Adopter Badge",
            "Early Access to new features",
        ],
    ),
]


def map_tier_to_display(tier: str) -> str:
    """Database tier name -> display name (``Premium`` -> ``Core``)."""
    return _DISPLAY_NAMES.get(tier, tier)


def map_display_to_tier(tier: str) -> str:
    """Display tier name -> database name (``Core`` -> ``Premium``)."""
    return _DATABASE_NAMES.get(tier, tier)


def _tier_level(tier: str) -> int:
    return (
        TIER_HIERARCHY.get(tier)
        or TIER_HIERARCHY.get(map_tier_to_display(tier))
        or TIER_HIERARCHY.get(map_display_to_tier(tier))
        or 0
    )


def has_access_to_tier(user_tier: str, required_tier: str) -> bool:
    """Whether ``user_tier`` is at least ``required_tier``; accepts either naming."""
    return _tier_level(user_tier) >= _tier_level(required_tier)


def has_premium_access(user_tier: str) -> bool:
    return has_access_to_tier(user_tier, "Core")


def has_pro_access(user_tier: str) -> bool:
    return has_access_to_tier(user_tier, "Pro")


def get_tier_limits(tier: str) -> dict[str, Any]:
    """Limits for a tier in either naming; unknown tiers get Free limits."""
    return TIER_LIMITS.get(map_tier_to_display(tier), TIER_LIMITS["Free"])


def is_within_limit(used: float, limit: float) -> bool:
    return limit == UNLIMITED or used < limit


def estimate_narration_minutes(text: str) -> int:
    """Narration length at 150 words per minute, rounded up."""
    words = len(text.split())
    return math.ceil(words / WORDS_PER_MINUTE) if words else 0


def current_month() -> str:
    return datetime.now(UTC).strftime("%Y-%m")


def founder_tier_for_number(founder_number: int) -> tuple[FounderTier, int, list[str]] | None:
    """Tier, discount and benefits for a founder number, or None past the last tier."""
    for last_number, tier, discount, benefits in FOUNDER_TIERS:
        if founder_number <= last_number:
            return tier, discount, list(benefits)
    return None


def effective_tier(subscriber: Subscriber | None, founder: UserFounder | None) -> str:
    """Display tier a user actually gets.

    Genesis founders get Pro for life; otherwise an active subscription
    counts; everyone else is Free.
    """
    if founder is not None and founder.founder_tier == FounderTier.GENESIS:
        return "Pro"
    if subscriber is not None and subscriber.subscribed and subscriber.is_active:
        return map_tier_to_display(subscriber.subscription_tier or "Free")
    return "Free"


@dataclass
class TierEnforcementResult:
    """Outcome of a usage-limit check."""

    can_proceed: bool
    reason: str | None = None
    upgrade_required: bool = False
    current_usage: float | None = None
    limit: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TierStatus:
    """A user's subscription, founder status and effective tier."""

    base_tier: str
    effective_tier: str
    subscribed: bool
    is_active: bool
    is_founder: bool
    founder_tier: str | None = None
    founder_number: int | None = None
    lifetime_discount: int = 0
    benefits: list[str] = field(default_factory=list)
    subscription_end: datetime | None = None

    @property
    def limits(self) -> dict[str, Any]:
        return get_tier_limits(self.effective_tier)


class UsageService:
    """Monthly usage counters and limit checks for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _usage_row(self, user_id: str, month: str) -> UserUsage | None:
        result = await self.session.execute(
            select(UserUsage).where(
                UserUsage.user_id == user_id,
                UserUsage.month_year == month,
            )
        )
        return result.scalar_one_or_none()

    async def get_current_usage(self, user_id: str) -> dict[str, Any]:
        """This month's counters; zeros when nothing was recorded yet."""
        month = current_month()
        usage = await self._usage_row(user_id, month)
        if usage is None:
            return {
                "stories_created": 0,
                "images_generated": 0,
                "voice_generations": 0,
                "narrated_minutes_used": 0.0,
                "month_year": month,
            }
        return usage.to_dict()

    async def increment_usage(
        self,
        user_id: str,
        stories: int = 0,
        images: int = 0,
        voice: int = 0,
        narrated_minutes: float = 0,
    ) -> dict[str, Any]:
        month = current_month()
        usage = await self._usage_row(user_id, month)
        if usage is None:
            usage = UserUsage(
                user_id=user_id,
                month_year=month,
                stories_created=0,
                images_generated=0,
                voice_generations=0,
                narrated_minutes_used=0.0,
            )
            self.session.add(usage)

        usage.stories_created += stories
        usage.images_generated += images
        usage.voice_generations += voice
        usage.narrated_minutes_used += narrated_minutes
        await self.session.flush()

        logger.debug(
            "Usage for %s in %s: +%d stories +%d images +%d voice +%s minutes",
            user_id,
            month,
            stories,
            images,
            voice,
            narrated_minutes,
        )
        return usage.to_dict()

    async def get_tier_status(self, user_id: str) -> TierStatus:
        subscriber = (
            await self.session.execute(select(Subscriber).where(Subscriber.user_id == user_id))
        ).scalar_one_or_none()
        founder = (
            await self.session.execute(select(UserFounder).where(UserFounder.user_id == user_id))
        ).scalar_one_or_none()

        return TierStatus(
            base_tier=subscriber.subscription_tier if subscriber else "Free",
            effective_tier=effective_tier(subscriber, founder),
            subscribed=bool(subscriber and subscriber.subscribed),
            is_active=bool(subscriber and subscriber.is_active),
            is_founder=founder is not None,
            founder_tier=founder.founder_tier.value if founder else None,
            founder_number=founder.founder_number if founder else None,
            lifetime_discount=founder.lifetime_discount if founder else 0,
            benefits=list(founder.benefits or []) if founder else [],
            subscription_end=subscriber.subscription_end if subscriber else None,
        )

    async def check_story_limit(self, user_id: str) -> TierEnforcementResult:
        status = await self.get_tier_status(user_id)
        usage = await self.get_current_usage(user_id)
        used = usage["stories_created"]
        limit = status.limits["stories_per_month"]

        if not is_within_limit(used, limit):
            return TierEnforcementResult(
                can_proceed=False,
                reason=f"Monthly story limit reached ({used}/{limit} stories)",
                upgrade_required=True,
                current_usage=used,
                limit=limit,
            )
        return TierEnforcementResult(can_proceed=True, current_usage=used, limit=limit)

    async def check_voice_limit(self, user_id: str | None, minutes: float = 0) -> TierEnforcementResult:
        """Check narration minutes; ``minutes`` is the size of the pending request."""
        if not user_id:
            return TierEnforcementResult(
                can_proceed=False,
                reason="Authentication required",
                upgrade_required=False,
            )

        status = await self.get_tier_status(user_id)
        usage = await self.get_current_usage(user_id)
        used = usage["narrated_minutes_used"]
        limit = status.limits["voice_minutes_per_month"]

        if limit != UNLIMITED and (used >= limit or used + minutes > limit):
            return TierEnforcementResult(
                can_proceed=False,
                reason=f"Monthly voice limit reached ({used:g}/{limit} minutes)",
                upgrade_required=True,
                current_usage=used,
                limit=limit,
            )
        return TierEnforcementResult(can_proceed=True, current_usage=used, limit=limit)

    async def assign_founder_status(self, user_id: str) -> UserFounder | None:
        """Give a user the next founder number.

        Idempotent: a user who already has founder status keeps it. Returns
        None once every founder spot is taken.
        """
        existing = (
            await self.session.execute(select(UserFounder).where(UserFounder.user_id == user_id))
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        highest = (await self.session.execute(select(func.max(UserFounder.founder_number)))).scalar()
        founder_number = (highest or 0) + 1
        tier_info = founder_tier_for_number(founder_number)
        if tier_info is None:
            logger.info("Founder program full, no status for %s", user_id)
            return None

        tier, discount, benefits = tier_info
        founder = UserFounder(
            user_id=user_id,
            founder_number=founder_number,
            founder_tier=tier,
            lifetime_discount=discount,
            benefits=benefits,
        )
        self.session.add(founder)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Another request took this number first
            raise ConflictError("Founder spot already taken, please retry") from e

        logger.info("Assigned founder #%d (%s) to %s", founder_number, tier.value, user_id)
        return founder
