"""Tests for story bible extraction and the consistency prompt."""

from taleforge.models.story import Story
from taleforge.services.story_context import (
    UNKNOWN_LOCATION,
    Character,
    CharacterRegistry,
    StoryBible,
    build_consistency_prompt,
    build_story_bible,
    extract_story_elements,
    generate_context_summary,
    load_story_bible,
    save_story_bible,
)


class TestExtractStoryElements:
    """Test the regex heuristics on single segments."""

    def test_character_with_species(self) -> None:
        context = extract_story_elements("Luna the fox ran home.", 2)
        assert len(context.extracted_characters) == 1
        luna = context.extracted_characters[0]
        assert luna.name == "Luna"
        assert luna.species == "fox"
        assert luna.role == "protagonist"
        assert luna.id == "char_2_0"
        assert luna.first_appeared == 2

    def test_two_word_name_is_human(self) -> None:
        context = extract_story_elements("Max Power opened the gate.", 1)
        assert context.extracted_characters[0].name == "Max"
        assert context.extracted_characters[0].species == "human"

    def test_at_most_three_characters_first_is_protagonist(self) -> None:
        text = "Anna the cat met Ben the dog, Cleo the owl and Dora the mouse."
        characters = extract_story_elements(text, 1).extracted_characters
        assert [c.name for c in characters] == ["Anna", "Ben", "Cleo"]
        assert [c.role for c in characters] == ["protagonist", "companion", "companion"]

    def test_sentence_starters_are_not_names(self) -> None:
        context = extract_story_elements("Then Tom the bear waved. The End", 1)
        assert [c.name for c in context.extracted_characters] == ["Tom"]

    def test_settings_strip_prefix(self) -> None:
        context = extract_story_elements("They rested in the old forest. Later, near the river", 1)
        assert context.extracted_settings == ["old forest", "river"]

    def test_setting_prefix_needs_word_boundary(self) -> None:
        context = extract_story_elements("A cabin the size of a barn", 1)
        assert context.extracted_settings == []

    def test_facts_at_most_two_per_pattern(self) -> None:
        text = "Birds can fly. Fish can swim. Cats can climb. Owls never sleep"
        facts = extract_story_elements(text, 1).extracted_facts
        assert facts == ["can fly", "can swim", "never sleep"]

    def test_magical_fact(self) -> None:
        facts = extract_story_elements("the stone is very magical", 1).extracted_facts
        assert "is very magical" in facts

    def test_no_matches(self) -> None:
        context = extract_story_elements("quiet.", 4)
        assert context.extracted_characters == []
        assert context.extracted_settings == []
        assert context.extracted_facts == []


class TestCharacterRegistry:
    """Test character merging across segments."""

    def test_merges_same_name(self) -> None:
        registry = CharacterRegistry()
        registry.add(Character(id="a", name="Luna", species="fox", first_appeared=1, last_appeared=1))
        merged = registry.add(Character(id="b", name="luna", first_appeared=3, last_appeared=3, traits=["brave"]))
        assert len(registry) == 1
        assert merged.id == "a"
        assert merged.species == "fox"
        assert merged.mentions == 2
        assert merged.last_appeared == 3
        assert merged.traits == ["brave"]
        assert "LUNA" in registry


class TestStoryBible:
    """Test bible aggregation."""

    def test_most_frequent_setting_wins(self) -> None:
        bible = build_story_bible(
            None,
            [
                "They slept in the cave.",
                "Morning came in the forest.",
                "Back in the forest.",
            ],
        )
        assert bible.primary_setting == "forest"
        assert bible.world.location == "forest"

    def test_setting_tie_goes_to_last_seen(self) -> None:
        bible = build_story_bible(None, ["We went to sleep in the cave, then woke near the lake"])
        assert bible.primary_setting == "lake"
        bible = build_story_bible(None, ["They walked in the forest", "They slept in the cave"])
        assert bible.primary_setting == "cave"

    def test_later_setting_must_overtake_to_win(self) -> None:
        bible = build_story_bible(None, ["In the forest.", "In the cave.", "Back in the forest."])
        assert bible.primary_setting == "forest"

    def test_unknown_location_when_no_setting(self) -> None:
        bible = build_story_bible(None, ["Nothing happened."])
        assert bible.primary_setting == UNKNOWN_LOCATION

    def test_facts_deduplicated_in_order(self) -> None:
        bible = build_story_bible(None, ["Dragons can fly.", "Dragons can fly. Elves never lie"])
        assert bible.established_facts == ["can fly", "never lie"]

    def test_storage_round_trip_keeps_counts(self) -> None:
        bible = build_story_bible(None, ["Luna the fox hid in the forest.", "Luna the fox can dig"])
        bible.story_id = "story-1"
        restored = StoryBible.from_storage("story-1", bible.to_storage(), genre="animals")
        assert restored.characters.get("Luna").mentions == 2
        assert restored.primary_setting == "forest"
        assert restored.established_facts == ["can dig"]
        assert restored.segment_count == 2
        assert restored.genre == "animals"

    def test_storage_keeps_setting_order_for_ties(self) -> None:
        bible = build_story_bible(None, ["They walked in the forest", "They slept in the cave"])
        stored = bible.to_storage()
        assert stored["setting_counts"] == [["forest", 1], ["cave", 1]]
        assert StoryBible.from_storage("s", stored).primary_setting == "cave"

    def test_from_storage_accepts_camel_case_facts(self) -> None:
        data = {"characters": [], "world": {"setting": "castle"}, "establishedFacts": ["can sing"]}
        bible = StoryBible.from_storage("s", data)
        assert bible.primary_setting == "castle"
        assert bible.established_facts == ["can sing"]


class TestConsistencyPrompt:
    """Test the block appended to continuation prompts."""

    def test_sections_present(self) -> None:
        texts = ["Luna the fox lived in the forest. Foxes can talk."]
        bible = build_story_bible(None, texts)
        summary = generate_context_summary(bible, texts)
        prompt = build_consistency_prompt("BASE", summary, choice_text="Follow the glow")

        assert prompt.startswith("BASE")
        assert "=== CHARACTER REGISTRY (MAINTAIN CONSISTENCY) ===" in prompt
        assert "\n• Luna (fox) - protagonist" in prompt
        assert "Setting: forest" in prompt
        assert "Established Rules:" in prompt
        assert "\n• can talk" in prompt
        assert "Segment 1: Luna the fox" in prompt
        assert 'based on this choice: "Follow the glow"' in prompt
        assert prompt.rstrip().endswith("unless plot demands a justified change")

    def test_recent_context_numbers_last_three(self) -> None:
        texts = [f"Segment text {i}." for i in range(1, 6)]
        summary = generate_context_summary(build_story_bible(None, texts), texts)
        prompt = build_consistency_prompt("BASE", summary)
        assert "Segment 3: Segment text 3." in prompt
        assert "Segment 5: Segment text 5." in prompt
        assert "Segment 2:" not in prompt
        assert "=== STORY CONTINUATION ===" not in prompt

    def test_no_registry_without_characters(self) -> None:
        texts = ["quiet morning."]
        summary = generate_context_summary(build_story_bible(None, texts), texts)
        prompt = build_consistency_prompt("BASE", summary)
        assert "CHARACTER REGISTRY" not in prompt
        assert f"Setting: {UNKNOWN_LOCATION}" in prompt


class TestPersistence:
    """Test saving and loading bibles."""

    async def test_save_then_load(self, session) -> None:
        story = Story(title="Fox tale", story_mode="animals", target_age="4-6", segments=[])
        session.add(story)
        await session.flush()

        bible = build_story_bible(story, ["Luna the fox slept in the den."])
        await save_story_bible(session, bible)
        await session.commit()

        loaded = await load_story_bible(session, story.id)
        assert loaded is not None
        assert loaded.title == "Fox tale"
        assert loaded.target_age == "4-6"
        assert "Luna" in loaded.characters
        assert loaded.primary_setting == "den"

    async def test_save_updates_existing_row(self, session) -> None:
        story = Story(title="T", segments=[])
        session.add(story)
        await session.flush()

        await save_story_bible(session, build_story_bible(story, ["in the cave"]))
        await save_story_bible(session, build_story_bible(story, ["in the cave", "at the castle", "at the castle"]))
        await session.commit()

        loaded = await load_story_bible(session, story.id)
        assert loaded.primary_setting == "castle"

    async def test_load_missing_returns_none(self, session) -> None:
        assert await load_story_bible(session, "missing") is None
