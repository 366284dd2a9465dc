"""Server-Sent Events (SSE) endpoints for live story updates.

Events published on the story event bus are forwarded as they happen.
When the bus stays quiet for a keepalive window while images are still
generating, the stream switches to fallback polling: segment rows are
re-read every few seconds and changes are emitted as ``segment_updated``.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taleforge.api.deps import AppSettings, EventBus, OptionalUser, SessionFactory
from taleforge.core.config import Settings
from taleforge.models.story import StorySegment
from taleforge.services.realtime import (
    SEGMENT_CREATED,
    SEGMENT_UPDATED,
    TERMINAL_EVENTS,
    PollingManager,
    SegmentSnapshot,
    StoryEventBus,
    diff_segments,
    has_generating_segments,
    segment_payload,
    snapshot_segments,
)
from taleforge.services.stories import StoryService

logger = logging.getLogger(__name__)

router = APIRouter()


def format_event(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def load_segments(
    session_factory: async_sessionmaker[AsyncSession],
    story_id: str,
) -> list[StorySegment]:
    async with session_factory() as session:
        result = await session.execute(
            select(StorySegment)
            .where(StorySegment.story_id == story_id)
            .order_by(StorySegment.segment_number)
        )
        return list(result.scalars())


async def story_event_stream(
    story_id: str,
    request: Request,
    bus: StoryEventBus,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    segments: list[Any],
) -> AsyncGenerator[str, None]:
    """Generate SSE events for a story.

    Args:
        story_id: Story to subscribe to
        request: FastAPI request for disconnect detection
        bus: Event bus to subscribe to
        session_factory: Sessions for fallback polling
        settings: Polling intervals and keepalive window
        segments: Segments as they were when the client connected

    Yields:
        SSE formatted event strings
    """
    queue = bus.subscribe(story_id)
    known: dict[str, SegmentSnapshot] = snapshot_segments(segments)

    async def refresh() -> None:
        current = await load_segments(session_factory, story_id)
        for event in diff_segments(known, current):
            event["story_id"] = story_id
            event["timestamp"] = datetime.now(UTC).isoformat()
            await queue.put(event)
        known.clear()
        known.update(snapshot_segments(current))
        manager.set_active_generation(has_generating_segments(current))

    manager = PollingManager(
        story_id,
        refresh,
        interval=settings.polling_interval,
        fallback_interval=settings.fallback_polling_interval,
        recent_update_window=settings.recent_update_window,
    )
    manager.set_active_generation(has_generating_segments(segments))
    manager.start_polling()

    try:
        yield format_event(
            {
                "type": "connected",
                "story_id": story_id,
                "segments": [segment_payload(s) for s in segments],
            }
        )

        while True:
            if await request.is_disconnected():
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=settings.sse_keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                if manager.is_active_generation:
                    manager.start_fallback_polling()
                continue

            # Events found by polling don't prove realtime delivery works
            if event.get("source") != "poll":
                manager.update_last_update_time()

            if event.get("type") in (SEGMENT_CREATED, SEGMENT_UPDATED) and event.get("segment"):
                known.update(snapshot_segments([event["segment"]]))
                manager.set_active_generation(has_generating_segments(known.values()))
                manager.start_polling()

            yield format_event(event)

            if event.get("type") in TERMINAL_EVENTS:
                break

    finally:
        manager.stop_polling()
        bus.unsubscribe(story_id, queue)
        logger.debug("SSE stream for story %s closed", story_id)


@router.get("/stories/{story_id}")
async def story_updates_stream(
    story_id: str,
    request: Request,
    user: OptionalUser,
    bus: EventBus,
    session_factory: SessionFactory,
    settings: AppSettings,
) -> StreamingResponse:
    """Stream segment and story updates via SSE.

    Raises:
        NotFoundError: If the story doesn't exist or is private to someone else
    """
    async with session_factory() as session:
        story = await StoryService(session).get_story(story_id, user)
        segments = list(story.segments)

    return StreamingResponse(
        story_event_stream(story_id, request, bus, session_factory, settings, segments),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
