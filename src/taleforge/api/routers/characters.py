"""User characters router.

Characters are reusable across stories. Deleting one only deactivates
it; the free tier may keep three active characters at a time.
"""

from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select

from taleforge.api.deps import CurrentUser, DBSession
from taleforge.api.exceptions import ForbiddenError, NotFoundError, UsageLimitError
from taleforge.models.user import UserCharacter
from taleforge.services.tiers import UNLIMITED, UsageService

router = APIRouter()


class CharacterCreateRequest(BaseModel):
    """Request to create a character."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    role: str | None = Field(default=None, max_length=50)
    traits: list[str] = Field(default_factory=list, max_length=10)
    avatar_url: str | None = Field(default=None, max_length=1000)


class CharacterUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    role: str | None = Field(default=None, max_length=50)
    traits: list[str] | None = Field(default=None, max_length=10)
    avatar_url: str | None = Field(default=None, max_length=1000)


class CharacterResponse(BaseModel):
    """Character information response."""

    id: str
    name: str
    description: str | None
    role: str | None
    traits: list[str]
    avatar_url: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


async def _get_own_character(db, character_id: str, user_id: str) -> UserCharacter:
    character = await db.get(UserCharacter, character_id)
    if character is None or not character.is_active:
        raise NotFoundError("Character", character_id)
    if character.user_id != user_id:
        raise ForbiddenError("Not authorized to modify this character")
    return character


@router.get("", response_model=list[CharacterResponse])
async def list_characters(user: CurrentUser, db: DBSession) -> list[UserCharacter]:
    """Active characters of the current user, newest first."""
    result = await db.execute(
        select(UserCharacter)
        .where(UserCharacter.user_id == user["id"], UserCharacter.is_active.is_(True))
        .order_by(UserCharacter.created_at.desc())
    )
    return list(result.scalars())


@router.post("", response_model=CharacterResponse, status_code=status.HTTP_201_CREATED)
async def create_character(
    request: CharacterCreateRequest,
    user: CurrentUser,
    db: DBSession,
) -> UserCharacter:
    """Create a character.

    Raises:
        UsageLimitError: The tier's active character limit is reached (402)
    """
    tier_status = await UsageService(db).get_tier_status(user["id"])
    limit = tier_status.limits["max_characters"]
    if limit != UNLIMITED:
        active = (
            await db.execute(
                select(func.count())
                .select_from(UserCharacter)
                .where(UserCharacter.user_id == user["id"], UserCharacter.is_active.is_(True))
            )
        ).scalar() or 0
        if active >= limit:
            raise UsageLimitError(
                f"Character limit reached ({active}/{limit}). Upgrade to create more characters.",
                current_usage=active,
                limit=limit,
            )

    character = UserCharacter(
        user_id=user["id"],
        name=request.name.strip(),
        description=request.description,
        role=request.role,
        traits=request.traits,
        avatar_url=request.avatar_url,
        is_active=True,
    )
    db.add(character)
    await db.commit()
    return character


@router.patch("/{character_id}", response_model=CharacterResponse)
async def update_character(
    character_id: str,
    request: CharacterUpdateRequest,
    user: CurrentUser,
    db: DBSession,
) -> UserCharacter:
    """Update the fields that were sent."""
    character = await _get_own_character(db, character_id, user["id"])
    for field, value in request.model_dump(exclude_unset=True).items():
        setattr(character, field, value.strip() if field == "name" else value)
    await db.commit()
    return character


@router.delete("/{character_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_character(
    character_id: str,
    user: CurrentUser,
    db: DBSession,
) -> None:
    """Deactivate a character; stories that used it are unaffected."""
    character = await _get_own_character(db, character_id, user["id"])
    character.is_active = False
    await db.commit()
