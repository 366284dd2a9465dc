"""Account router: usage, subscription tier and founder status."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from taleforge.api.deps import CurrentUser, DBSession
from taleforge.services.tiers import UsageService

router = APIRouter()


class UsageResponse(BaseModel):
    """This month's usage against the effective tier's limits."""

    tier: str
    month_year: str
    stories_created: int
    images_generated: int
    voice_generations: int
    narrated_minutes_used: float
    limits: dict[str, Any]


class SubscriptionResponse(BaseModel):
    """Subscription, founder status and the resulting tier."""

    base_tier: str
    effective_tier: str
    subscribed: bool
    is_active: bool
    subscription_end: datetime | None
    is_founder: bool
    founder_tier: str | None
    founder_number: int | None
    lifetime_discount: int
    benefits: list[str]
    limits: dict[str, Any]


class FounderResponse(BaseModel):
    is_founder: bool
    founder_number: int | None = None
    founder_tier: str | None = None
    lifetime_discount: int = 0
    benefits: list[str] = []


@router.get("/usage", response_model=UsageResponse)
async def get_usage(user: CurrentUser, db: DBSession) -> UsageResponse:
    service = UsageService(db)
    tier_status = await service.get_tier_status(user["id"])
    usage = await service.get_current_usage(user["id"])
    return UsageResponse(
        tier=tier_status.effective_tier,
        month_year=usage["month_year"],
        stories_created=usage["stories_created"],
        images_generated=usage["images_generated"],
        voice_generations=usage["voice_generations"],
        narrated_minutes_used=usage["narrated_minutes_used"],
        limits=tier_status.limits,
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(user: CurrentUser, db: DBSession) -> SubscriptionResponse:
    tier_status = await UsageService(db).get_tier_status(user["id"])
    return SubscriptionResponse(
        base_tier=tier_status.base_tier,
        effective_tier=tier_status.effective_tier,
        subscribed=tier_status.subscribed,
        is_active=tier_status.is_active,
        subscription_end=tier_status.subscription_end,
        is_founder=tier_status.is_founder,
        founder_tier=tier_status.founder_tier,
        founder_number=tier_status.founder_number,
        lifetime_discount=tier_status.lifetime_discount,
        benefits=tier_status.benefits,
        limits=tier_status.limits,
    )


@router.post("/founder", response_model=FounderResponse)
async def claim_founder_status(user: CurrentUser, db: DBSession) -> FounderResponse:
    """Assign the next founder number; repeat calls return the same one.

    Once every founder spot is taken, ``is_founder`` is false.
    """
    founder = await UsageService(db).assign_founder_status(user["id"])
    await db.commit()
    if founder is None:
        return FounderResponse(is_founder=False)
    return FounderResponse(
        is_founder=True,
        founder_number=founder.founder_number,
        founder_tier=founder.founder_tier.value,
        lifetime_discount=founder.lifetime_discount,
        benefits=list(founder.benefits or []),
    )
