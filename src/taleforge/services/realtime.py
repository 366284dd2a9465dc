"""Realtime story updates with a polling fallback.

Generation work publishes events on a per-story bus; SSE streams subscribe
to it. Because events can be missed (a background task on another worker,
a dropped connection), each stream also runs a :class:`PollingManager`
that re-reads segment rows on fixed timers:

- conservative polling every 15 seconds, skipped when an update arrived in
  the last 10 seconds;
- aggressive fallback polling every 3 seconds once the event feed has gone
  quiet while segments are still generating, stopped again as soon as a
  real event arrives.

Both stop when generation is no longer active.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..models.story import GenerationStatus

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[None]]

# Event types
SEGMENT_CREATED = "segment_created"
SEGMENT_UPDATED = "segment_updated"
STORY_UPDATED = "story_updated"
STORY_COMPLETED = "story_completed"
FAILED = "failed"

TERMINAL_EVENTS = frozenset({STORY_COMPLETED, FAILED})


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, GenerationStatus) else str(status)


def _field(segment: Any, name: str) -> Any:
    if isinstance(segment, dict):
        return segment.get(name)
    return getattr(segment, name, None)


def segment_payload(segment: Any) -> dict[str, Any]:
    """Fields of a segment that realtime subscribers care about."""
    return {
        "id": _field(segment, "id"),
        "story_id": _field(segment, "story_id"),
        "segment_number": _field(segment, "segment_number"),
        "is_end": bool(_field(segment, "is_end")),
        "image_url": _field(segment, "image_url"),
        "image_generation_status": _status_value(_field(segment, "image_generation_status")),
        "audio_url": _field(segment, "audio_url"),
        "audio_generation_status": _status_value(_field(segment, "audio_generation_status")),
    }


def has_generating_segments(segments: Iterable[Any]) -> bool:
    """Whether any segment still has image work outstanding.

    Pending or in-progress images count; so does a missing image URL unless
    the image failed, was skipped or was never requested.
    """
    for segment in segments:
        status = _status_value(_field(segment, "image_generation_status"))
        if status in (GenerationStatus.PENDING.value, GenerationStatus.IN_PROGRESS.value):
            return True
        if not _field(segment, "image_url") and status not in (
            GenerationStatus.FAILED.value,
            GenerationStatus.SKIPPED.value,
            GenerationStatus.NOT_STARTED.value,
            None,
        ):
            return True
    return False


class StoryEventBus:
    """Per-story fan-out of events to subscriber queues.

    In-memory, so it only reaches streams served by the same process; the
    polling fallback covers the rest.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, story_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(story_id, set()).add(queue)
        return queue

    def unsubscribe(self, story_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(story_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[story_id]

    def subscriber_count(self, story_id: str) -> int:
        return len(self._subscribers.get(story_id, ()))

    async def publish(self, story_id: str, event: dict[str, Any]) -> int:
        """Deliver an event to every subscriber of a story; returns how many."""
        event.setdefault("timestamp", datetime.now(UTC).isoformat())
        event.setdefault("story_id", story_id)
        queues = list(self._subscribers.get(story_id, ()))
        for queue in queues:
            queue.put_nowait(event)
        logger.debug("Published %s for story %s to %d subscribers", event.get("type"), story_id, len(queues))
        return len(queues)

    async def publish_segment_created(self, story_id: str, segment: Any) -> int:
        return await self.publish(story_id, {"type": SEGMENT_CREATED, "segment": segment_payload(segment)})

    async def publish_segment_updated(self, story_id: str, segment: Any) -> int:
        return await self.publish(story_id, {"type": SEGMENT_UPDATED, "segment": segment_payload(segment)})

    async def publish_story_updated(self, story_id: str, changes: dict[str, Any]) -> int:
        return await self.publish(story_id, {"type": STORY_UPDATED, "changes": changes})

    async def publish_story_completed(self, story_id: str, data: dict[str, Any] | None = None) -> int:
        return await self.publish(story_id, {"type": STORY_COMPLETED, **(data or {})})

    async def publish_error(self, story_id: str, error: str, details: dict | None = None) -> int:
        event: dict[str, Any] = {"type": FAILED, "error": error}
        if details:
            event["details"] = details
        return await self.publish(story_id, event)


# Process-wide bus
event_bus = StoryEventBus()


def get_event_bus() -> StoryEventBus:
    """Get the process-wide event bus (FastAPI dependency)."""
    return event_bus


class PollingManager:
    """Timer-driven refresh of one story while generation is active."""

    def __init__(
        self,
        story_id: str,
        refresh: RefreshCallback,
        *,
        interval: float = 15.0,
        fallback_interval: float = 3.0,
        recent_update_window: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.story_id = story_id
        self._refresh = refresh
        self.interval = interval
        self.fallback_interval = fallback_interval
        self.recent_update_window = recent_update_window
        self._clock = clock

        self._poll_task: asyncio.Task | None = None
        self._fallback_task: asyncio.Task | None = None
        self._last_update = clock()
        self._active_generation = False
        self._fallback_mode = False

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None

    @property
    def is_fallback_polling(self) -> bool:
        return self._fallback_task is not None

    @property
    def is_active_generation(self) -> bool:
        return self._active_generation

    @property
    def is_fallback_mode(self) -> bool:
        return self._fallback_mode

    def should_poll(self) -> bool:
        """Whether a conservative tick should refresh right now."""
        if not self._active_generation:
            return False
        return self._clock() - self._last_update >= self.recent_update_window

    async def poll_once(self) -> bool:
        """Run one conservative tick; returns True when it refreshed."""
        if not self.should_poll():
            logger.debug("Skipping poll for %s - recent update or no active generation", self.story_id)
            return False
        logger.debug("Polling for story %s updates", self.story_id)
        await self._safe_refresh()
        return True

    def start_polling(self, interval: float | None = None) -> None:
        if self._poll_task is not None or not self._active_generation:
            logger.debug("Skipping polling start for %s - already polling or no active generation", self.story_id)
            return
        if interval is not None:
            self.interval = interval
        logger.info("Starting conservative polling for %s every %ss", self.story_id, self.interval)
        self._poll_task = asyncio.create_task(self._poll_loop())

    def start_fallback_polling(self, interval: float | None = None) -> None:
        if self._fallback_task is not None:
            return
        if interval is not None:
            self.fallback_interval = interval
        logger.warning("Starting fallback polling for %s every %ss", self.story_id, self.fallback_interval)
        self._fallback_mode = True
        self._fallback_task = asyncio.create_task(self._fallback_loop())

    def stop_fallback_polling(self) -> None:
        if self._fallback_task is not None:
            logger.info("Stopping fallback polling for %s", self.story_id)
            self._cancel(self._fallback_task)
            self._fallback_task = None
            self._fallback_mode = False

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            logger.info("Stopping polling for %s", self.story_id)
            self._cancel(self._poll_task)
            self._poll_task = None
        self.stop_fallback_polling()
        self._active_generation = False

    def update_last_update_time(self) -> None:
        """Record a realtime update; realtime works again so fallback stops."""
        self._last_update = self._clock()
        if self._fallback_mode:
            logger.info("Realtime working for %s - stopping fallback polling", self.story_id)
            self.stop_fallback_polling()

    def set_active_generation(self, active: bool) -> None:
        if active != self._active_generation:
            logger.debug("Generation for %s is now %s", self.story_id, "active" if active else "inactive")
        self._active_generation = active
        if not active:
            self.stop_polling()

    async def force_refresh(self) -> None:
        self._last_update = self._clock()
        await self._safe_refresh()

    @staticmethod
    def _cancel(task: asyncio.Task) -> None:
        # A loop that stops itself just exits on its next iteration check
        if task is not asyncio.current_task():
            task.cancel()

    async def _safe_refresh(self) -> None:
        try:
            await self._refresh()
        except Exception:
            logger.exception("Refresh failed for story %s", self.story_id)

    async def _poll_loop(self) -> None:
        task = asyncio.current_task()
        while self._poll_task is task:
            await asyncio.sleep(self.interval)
            if self._poll_task is not task:
                break
            await self.poll_once()

    async def _fallback_loop(self) -> None:
        task = asyncio.current_task()
        await self._safe_refresh()
        while self._fallback_task is task:
            await asyncio.sleep(self.fallback_interval)
            if self._fallback_task is not task:
                break
            await self._safe_refresh()


@dataclass(frozen=True)
class SegmentSnapshot:
    """Status fields of one segment at one point in time."""

    image_generation_status: str | None
    image_url: str | None
    audio_generation_status: str | None
    audio_url: str | None


def snapshot_segments(segments: Iterable[Any]) -> dict[str, SegmentSnapshot]:
    return {
        _field(segment, "id"): SegmentSnapshot(
            image_generation_status=_status_value(_field(segment, "image_generation_status")),
            image_url=_field(segment, "image_url"),
            audio_generation_status=_status_value(_field(segment, "audio_generation_status")),
            audio_url=_field(segment, "audio_url"),
        )
        for segment in segments
    }


def diff_segments(
    previous: dict[str, SegmentSnapshot],
    segments: Iterable[Any],
) -> list[dict[str, Any]]:
    """Events for segments that appeared or changed since ``previous``."""
    segments = list(segments)
    events = []
    current = snapshot_segments(segments)
    for segment in segments:
        segment_id = _field(segment, "id")
        before = previous.get(segment_id)
        if before is None:
            events.append({"type": SEGMENT_CREATED, "segment": segment_payload(segment), "source": "poll"})
        elif before != current[segment_id]:
            events.append({"type": SEGMENT_UPDATED, "segment": segment_payload(segment), "source": "poll"})
    return events
