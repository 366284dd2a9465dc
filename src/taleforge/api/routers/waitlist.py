"""Waitlist signup router."""

from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from taleforge.api.deps import DBSession
from taleforge.api.exceptions import ConflictError
from taleforge.models.feedback import WaitlistEntry

router = APIRouter()


class WaitlistRequest(BaseModel):
    """Waitlist signup form."""

    email: EmailStr
    name: str = Field(default="", max_length=100)
    marketing_consent: bool = False


class WaitlistResponse(BaseModel):
    id: str
    email: str
    name: str
    marketing_consent: bool
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("", response_model=WaitlistResponse, status_code=status.HTTP_201_CREATED)
async def join_waitlist(request: WaitlistRequest, db: DBSession) -> WaitlistEntry:
    """Add an email to the waitlist.

    Raises:
        ConflictError: If the email is already on the list
    """
    email = request.email.lower()
    existing = await db.execute(select(WaitlistEntry.id).where(func.lower(WaitlistEntry.email) == email))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError("This email is already on the waitlist")

    entry = WaitlistEntry(
        email=email,
        name=request.name.strip(),
        marketing_consent=request.marketing_consent,
    )
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError("This email is already on the waitlist") from e
    return entry
