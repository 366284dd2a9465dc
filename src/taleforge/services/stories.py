"""Story library: listing, discovery, publishing and deletion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taleforge.api.exceptions import APIError, ForbiddenError, NotFoundError

from ..models.database import utcnow
from ..models.story import Story
from .realtime import has_generating_segments, segment_payload

logger = logging.getLogger(__name__)


@dataclass
class StoryPage:
    """One page of stories plus the total match count."""

    items: list[Story]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.page_size + len(self.items) < self.total


def can_view_story(story: Story, user: dict | None) -> bool:
    """Public and anonymous stories are readable by anyone."""
    if story.is_public or story.user_id is None:
        return True
    return user is not None and user.get("id") == story.user_id


class StoryService:
    """Queries and edits on stories for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _paginate(self, query, page: int, page_size: int) -> StoryPage:
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar() or 0

        offset = (page - 1) * page_size
        result = await self.session.execute(
            query.order_by(Story.created_at.desc()).offset(offset).limit(page_size)
        )
        return StoryPage(items=list(result.scalars()), total=total, page=page, page_size=page_size)

    async def list_user_stories(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        is_completed: bool | None = None,
        genre: str | None = None,
        search: str | None = None,
    ) -> StoryPage:
        query = select(Story).where(Story.user_id == user_id)
        if is_completed is not None:
            query = query.where(Story.is_completed == is_completed)
        if genre:
            query = query.where(Story.story_mode == genre)
        if search:
            query = query.where(Story.title.ilike(f"%{search}%"))
        return await self._paginate(query, page, page_size)

    async def list_public_stories(
        self,
        page: int = 1,
        page_size: int = 20,
        genre: str | None = None,
    ) -> StoryPage:
        query = select(Story).where(Story.is_public.is_(True))
        if genre:
            query = query.where(Story.story_mode == genre)
        return await self._paginate(query, page, page_size)

    async def get_story(self, story_id: str, user: dict | None) -> Story:
        """A story the user may read.

        Private stories of other users are reported as missing.
        """
        story = await self.session.get(Story, story_id)
        if story is None or not can_view_story(story, user):
            raise NotFoundError("Story", story_id)
        return story

    async def get_owned_story(self, story_id: str, user: dict) -> Story:
        story = await self.session.get(Story, story_id)
        if story is None:
            raise NotFoundError("Story", story_id)
        if story.user_id != user["id"]:
            raise ForbiddenError("Not authorized to modify this story")
        return story

    async def update_story(
        self,
        story_id: str,
        user: dict,
        title: str | None = None,
        description: str | None = None,
        is_public: bool | None = None,
    ) -> Story:
        """Rename or publish a story; publishing stamps ``published_at`` once."""
        story = await self.get_owned_story(story_id, user)

        if title is not None:
            if not title.strip():
                raise APIError("Title cannot be empty", status_code=400)
            story.title = title.strip()
        if description is not None:
            story.description = description
        if is_public is not None:
            story.is_public = is_public
            if is_public and story.published_at is None:
                story.published_at = utcnow()
            elif not is_public:
                story.published_at = None

        await self.session.commit()
        logger.info("Story %s updated by %s", story_id, user["id"])
        return story

    async def delete_story(self, story_id: str, user: dict) -> None:
        story = await self.get_owned_story(story_id, user)
        await self.session.delete(story)
        await self.session.commit()
        logger.info("Story %s deleted by %s", story_id, user["id"])

    async def get_status(self, story_id: str, user: dict | None) -> dict[str, Any]:
        """Generation progress of a story and its segments."""
        story = await self.get_story(story_id, user)
        segments = list(story.segments)
        return {
            "id": story.id,
            "is_completed": story.is_completed,
            "segment_count": story.segment_count,
            "audio_generation_status": story.audio_generation_status.value,
            "full_story_audio_url": story.full_story_audio_url,
            "is_generating": has_generating_segments(segments),
            "segments": [segment_payload(segment) for segment in segments],
        }
