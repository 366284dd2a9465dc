"""Story context tracking - the "story bible".

Keeps generated segments consistent by pulling character names, settings
and established facts out of earlier segment text with a handful of
regular expressions, folding them into a running bible, and appending a
consistency block to the next generation prompt.

This is a heuristic, not a parser. Extraction is best-effort: a segment
that matches nothing simply contributes nothing, and persistence failures
are logged and ignored so generation never blocks on the bible.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.story import Story, StoryVisualState

logger = logging.getLogger(__name__)

CHARACTER_PATTERN = re.compile(r"[A-Z][a-z]+ (the [a-z]+|[A-Z][a-z]+)")
SETTING_PATTERN = re.compile(r"\b(at the|in the|near the) ([a-z ]+)", re.IGNORECASE)
SETTING_PREFIX = re.compile(r"(at the|in the|near the)", re.IGNORECASE)
FACT_PATTERNS = [
    re.compile(r"\bcan [a-z ]+", re.IGNORECASE),
    re.compile(r"\bcannot [a-z ]+", re.IGNORECASE),
    re.compile(r"\balways [a-z ]+", re.IGNORECASE),
    re.compile(r"\bnever [a-z ]+", re.IGNORECASE),
    re.compile(r"\bis [a-z ]+ (magical|special|powerful)", re.IGNORECASE),
]

MAX_CHARACTERS_PER_SEGMENT = 3
MAX_FACTS_PER_PATTERN = 2
MAX_WORLD_RULES = 5
MAX_SUMMARY_RULES = 3
RECENT_EVENT_COUNT = 3
PLOT_THREAD_LENGTH = 100
KEY_EVENT_LENGTH = 150

UNKNOWN_LOCATION = "unknown location"
DEFAULT_VISUAL_STYLE = "consistent character design"

# Capitalized words that start sentences far more often than they name anyone
NAME_STOPWORDS = frozenset(
    {
        "A",
        "After",
        "All",
        "An",
        "And",
        "As",
        "At",
        "But",
        "Each",
        "Every",
        "Finally",
        "For",
        "From",
        "He",
        "Her",
        "His",
        "In",
        "It",
        "Just",
        "Meanwhile",
        "Near",
        "Now",
        "Once",
        "One",
        "She",
        "Suddenly",
        "That",
        "The",
        "Then",
        "There",
        "They",
        "This",
        "Together",
        "Under",
        "When",
        "With",
        "You",
    }
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Character:
    """A character guess tracked across segments."""

    id: str
    name: str
    species: str = "human"
    role: str = "companion"
    first_appeared: int = 1
    last_appeared: int = 1
    mentions: int = 1
    description: str | None = None
    traits: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return normalize_name(self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "species": self.species,
            "role": self.role,
            "first_appeared": self.first_appeared,
            "last_appeared": self.last_appeared,
            "mentions": self.mentions,
            "description": self.description,
            "traits": list(self.traits),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Character:
        first = int(data.get("first_appeared", data.get("firstAppeared", 1)) or 1)
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            species=data.get("species") or "human",
            role=data.get("role") or "companion",
            first_appeared=first,
            last_appeared=int(data.get("last_appeared", first) or first),
            mentions=int(data.get("mentions", 1) or 1),
            description=data.get("description"),
            traits=list(data.get("traits") or []),
        )


def normalize_name(name: str) -> str:
    """Registry key for a character name."""
    return name.strip().lower()


class CharacterRegistry:
    """Characters keyed by normalized name, in first-seen order."""

    def __init__(self, characters: Iterable[Character] = ()) -> None:
        self._characters: dict[str, Character] = {}
        for character in characters:
            self.add(character)

    def add(self, character: Character) -> Character:
        """Register a sighting, merging with an existing entry of the same name."""
        existing = self._characters.get(character.key)
        if existing is None:
            self._characters[character.key] = character
            return character

        existing.mentions += character.mentions
        existing.first_appeared = min(existing.first_appeared, character.first_appeared)
        existing.last_appeared = max(existing.last_appeared, character.last_appeared)
        for trait in character.traits:
            if trait not in existing.traits:
                existing.traits.append(trait)
        if not existing.description and character.description:
            existing.description = character.description
        return existing

    def get(self, name: str) -> Character | None:
        return self._characters.get(normalize_name(name))

    def names(self) -> list[str]:
        return [c.name for c in self._characters.values()]

    def to_list(self) -> list[Character]:
        return list(self._characters.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_name(name) in self._characters

    def __iter__(self) -> Iterator[Character]:
        return iter(self._characters.values())

    def __len__(self) -> int:
        return len(self._characters)


@dataclass
class SegmentContext:
    """What the heuristics pulled out of one segment."""

    segment_number: int
    text: str
    extracted_characters: list[Character] = field(default_factory=list)
    extracted_settings: list[str] = field(default_factory=list)
    extracted_facts: list[str] = field(default_factory=list)


@dataclass
class StoryWorld:
    """World state derived from the bible."""

    setting: str
    location: str
    rules: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"setting": self.setting, "location": self.location, "rules": list(self.rules)}


@dataclass
class StoryBible:
    """Running record of characters, settings and facts for one story.

    Updated incrementally with :meth:`absorb`. The world setting is the most
    frequently mentioned setting; ties go to the one whose first mention
    came latest.
    """

    story_id: str
    title: str = "Untitled Story"
    genre: str = "fantasy"
    target_age: str = "7-9"
    characters: CharacterRegistry = field(default_factory=CharacterRegistry)
    setting_counts: Counter[str] = field(default_factory=Counter)
    facts: dict[str, None] = field(default_factory=dict)
    plot_threads: list[str] = field(default_factory=list)
    visual_style: str | None = None
    segment_count: int = 0
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def absorb(self, context: SegmentContext) -> None:
        """Fold one segment's extraction into the bible."""
        for character in context.extracted_characters:
            self.characters.add(character)

        for setting in context.extracted_settings:
            normalized = setting.strip().lower()
            if normalized:
                self.setting_counts[normalized] += 1

        for fact in context.extracted_facts:
            self.facts.setdefault(fact, None)

        self.plot_threads.append(context.text[:PLOT_THREAD_LENGTH] + "...")
        self.segment_count = max(self.segment_count, context.segment_number)
        self.updated_at = _now_iso()

    @property
    def primary_setting(self) -> str:
        if not self.setting_counts:
            return UNKNOWN_LOCATION
        top = max(self.setting_counts.values())
        return [setting for setting, count in self.setting_counts.items() if count == top][-1]

    @property
    def established_facts(self) -> list[str]:
        return list(self.facts)

    @property
    def world(self) -> StoryWorld:
        setting = self.primary_setting
        return StoryWorld(
            setting=setting,
            location=setting,
            rules=self.established_facts[:MAX_WORLD_RULES],
        )

    def to_storage(self) -> dict[str, Any]:
        """JSON payload stored in ``story_visual_state.character_descriptions``."""
        return {
            "characters": [c.to_dict() for c in self.characters],
            "world": self.world.to_dict(),
            "established_facts": self.established_facts,
            # Pairs, not an object: JSONB does not keep key order
            "setting_counts": [[setting, count] for setting, count in self.setting_counts.items()],
            "plot_threads": list(self.plot_threads),
            "segment_count": self.segment_count,
        }

    @classmethod
    def from_storage(
        cls,
        story_id: str,
        data: dict[str, Any],
        *,
        title: str | None = None,
        genre: str | None = None,
        target_age: str | None = None,
        visual_style: str | None = None,
    ) -> StoryBible:
        bible = cls(
            story_id=story_id,
            title=title or "Untitled Story",
            genre=genre or "fantasy",
            target_age=target_age or "7-9",
            visual_style=visual_style,
        )
        for raw in data.get("characters") or []:
            bible.characters.add(Character.from_dict(raw))

        counts = data.get("setting_counts")
        if counts:
            pairs = counts.items() if isinstance(counts, dict) else counts
            for setting, count in pairs:
                bible.setting_counts[setting] = int(count)
        else:
            setting = (data.get("world") or {}).get("setting")
            if setting and setting != UNKNOWN_LOCATION:
                bible.setting_counts[setting] += 1

        facts = data.get("established_facts", data.get("establishedFacts")) or []
        for fact in facts:
            bible.facts.setdefault(fact, None)

        bible.plot_threads = list(data.get("plot_threads") or [])
        bible.segment_count = int(data.get("segment_count") or len(bible.plot_threads))
        return bible


@dataclass
class StoryContextSummary:
    """Condensed bible handed to the prompt builder."""

    character_registry: list[Character]
    world_state: StoryWorld
    key_events: list[str]
    established_rules: list[str]
    narrative_style: str
    total_segments: int


def _character_candidates(text: str) -> list[tuple[str, str]]:
    candidates = []
    position = 0
    while True:
        match = CHARACTER_PATTERN.search(text, position)
        if match is None:
            return candidates
        phrase = match.group(0)
        name = phrase.split(" ")[0]
        if name in NAME_STOPWORDS:
            # "Then Tom the bear": retry from the word after the stopword
            position = match.start() + len(name)
            continue
        species = phrase.split(" the ", 1)[1] if " the " in phrase else "human"
        candidates.append((name, species))
        position = match.end()


def extract_story_elements(text: str, segment_number: int) -> SegmentContext:
    """Pull character guesses, settings and facts out of one segment."""
    characters = [
        Character(
            id=f"char_{segment_number}_{index}",
            name=name,
            species=species,
            role="protagonist" if index == 0 else "companion",
            first_appeared=segment_number,
            last_appeared=segment_number,
        )
        for index, (name, species) in enumerate(
            _character_candidates(text)[:MAX_CHARACTERS_PER_SEGMENT]
        )
    ]

    settings = []
    for match in SETTING_PATTERN.finditer(text):
        setting = SETTING_PREFIX.sub("", match.group(0), count=1).strip()
        if setting:
            settings.append(setting)

    facts: list[str] = []
    for pattern in FACT_PATTERNS:
        matches = [m.group(0) for m in pattern.finditer(text)]
        facts.extend(matches[:MAX_FACTS_PER_PATTERN])

    return SegmentContext(
        segment_number=segment_number,
        text=text,
        extracted_characters=characters,
        extracted_settings=settings,
        extracted_facts=facts,
    )


def build_story_bible(story: Story | None, segment_texts: Sequence[str]) -> StoryBible:
    """Build a bible from every segment of a story, numbered from 1."""
    bible = StoryBible(
        story_id=story.id if story is not None else "",
        title=(story.title if story is not None else None) or "Untitled Story",
        genre=(story.story_mode if story is not None else None) or "fantasy",
        target_age=(story.target_age if story is not None else None) or "7-9",
    )
    for number, text in enumerate(segment_texts, start=1):
        bible.absorb(extract_story_elements(text, number))

    logger.debug(
        "Story bible built for %s: %d characters, setting=%s, %d facts",
        bible.story_id,
        len(bible.characters),
        bible.primary_setting,
        len(bible.facts),
    )
    return bible


def generate_context_summary(
    bible: StoryBible,
    recent_segment_texts: Sequence[str],
) -> StoryContextSummary:
    """Summarize a bible plus the latest segments for prompting."""
    return StoryContextSummary(
        character_registry=bible.characters.to_list(),
        world_state=bible.world,
        key_events=[text[:KEY_EVENT_LENGTH] for text in recent_segment_texts[-RECENT_EVENT_COUNT:]],
        established_rules=bible.established_facts[:MAX_SUMMARY_RULES],
        narrative_style=f"{bible.genre} story for age {bible.target_age}",
        total_segments=len(recent_segment_texts),
    )


def build_consistency_prompt(
    base_prompt: str,
    summary: StoryContextSummary,
    choice_text: str | None = None,
) -> str:
    """Append consistency instructions to a generation prompt."""
    parts = [base_prompt]

    if summary.character_registry:
        parts.append("\n\n=== CHARACTER REGISTRY (MAINTAIN CONSISTENCY) ===")
        for character in summary.character_registry:
            line = f"\n• {character.name}"
            if character.species and character.species != "human":
                line += f" ({character.species})"
            if character.role:
                line += f" - {character.role}"
            if character.description:
                line += f" - {character.description}"
            parts.append(line)
        parts.append(
            "\n\nCRITICAL: These characters MUST remain consistent throughout the story. "
            "Never change their species, core traits, or names."
        )

    world = summary.world_state
    if world.setting:
        parts.append("\n\n=== WORLD CONSISTENCY ===")
        parts.append(f"\nSetting: {world.setting}")
        parts.append(f"\nLocation: {world.location}")
        if world.rules:
            parts.append("\nEstablished Rules:")
            parts.extend(f"\n• {rule}" for rule in world.rules)
        parts.append(
            "\n\nCRITICAL: Maintain the established setting and world rules. "
            "Do not suddenly change locations without narrative justification."
        )

    if summary.key_events:
        parts.append("\n\n=== RECENT STORY CONTEXT ===")
        offset = summary.total_segments - len(summary.key_events)
        for index, event in enumerate(summary.key_events):
            parts.append(f"\nSegment {offset + index + 1}: {event}")

    if choice_text:
        parts.append("\n\n=== STORY CONTINUATION ===")
        parts.append(f'\nContinue from the previous segment based on this choice: "{choice_text}"')
        parts.append("\nMaintain narrative flow and character consistency.")

    parts.append("\n\n=== CONSISTENCY RULES (MANDATORY) ===")
    parts.append("\n1. NEVER change established character names, species, or core traits")
    parts.append("\n2. NEVER randomly change the story setting or location")
    parts.append("\n3. ALWAYS maintain established world rules and logic")
    parts.append("\n4. IF unsure about a detail, maintain consistency with previous descriptions")
    parts.append("\n5. Characters who are animals must REMAIN animals, humans must REMAIN humans")
    parts.append(
        "\n6. The setting established in earlier segments must continue "
        "unless plot demands a justified change"
    )

    return "".join(parts)


async def save_story_bible(session: AsyncSession, bible: StoryBible) -> None:
    """Upsert the bible into ``story_visual_state``; failures are logged only.

    Runs in a savepoint so a failed write leaves the caller's transaction
    usable.
    """
    try:
        async with session.begin_nested():
            result = await session.execute(
                select(StoryVisualState).where(StoryVisualState.story_id == bible.story_id)
            )
            state = result.scalar_one_or_none()
            if state is None:
                state = StoryVisualState(story_id=bible.story_id)
                session.add(state)

            state.character_descriptions = bible.to_storage()
            state.style_hint = bible.visual_style or DEFAULT_VISUAL_STYLE
            await session.flush()
        logger.debug("Story bible saved for %s", bible.story_id)
    except SQLAlchemyError as e:
        logger.error("Failed to save story bible for %s: %s", bible.story_id, e)


async def load_story_bible(session: AsyncSession, story_id: str) -> StoryBible | None:
    """Restore a persisted bible, or None when there is none."""
    try:
        result = await session.execute(
            select(StoryVisualState).where(StoryVisualState.story_id == story_id)
        )
        state = result.scalar_one_or_none()
        if state is None or not state.character_descriptions:
            return None

        story = await session.get(Story, story_id)
    except SQLAlchemyError as e:
        logger.error("Failed to load story bible for %s: %s", story_id, e)
        return None

    return StoryBible.from_storage(
        story_id,
        state.character_descriptions,
        title=story.title if story else None,
        genre=story.story_mode if story else None,
        target_age=story.target_age if story else None,
        visual_style=state.style_hint,
    )
