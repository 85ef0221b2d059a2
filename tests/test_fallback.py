"""Tests for storyloom.fallback: template content used without a model."""

import pytest

from storyloom import fallback
from storyloom.models import AdvancedStoryConfig, Character, CharacterDetail, Choice, StoryConfig


@pytest.mark.parametrize("alias,genre", [
    ("Science Fiction", "sci-fi"),
    ("scifi", "sci-fi"),
    ("crime", "mystery"),
    ("thriller", "horror"),
    ("western", "adventure"),
    (None, "adventure"),
])
def test_normalize_genre(alias, genre):
    assert fallback.normalize_genre(alias) == genre


class TestInitialStory:
    def test_fantasy_template(self) -> None:
        content = fallback.initial_story(StoryConfig(genre="fantasy", story_idea="a lost crown"))
        assert "a lost crown" in content.scene
        assert content.characters[0].name == "Aren Vale"
        assert content.mood == "epic"
        assert content.achievements == ["The Journey Begins"]

    def test_characters_are_copies(self) -> None:
        a = fallback.initial_story(StoryConfig(genre="fantasy"))
        a.characters[0].name = "Changed"
        b = fallback.initial_story(StoryConfig(genre="fantasy"))
        assert b.characters[0].name == "Aren Vale"

    def test_advanced_uses_character_details_and_tone(self) -> None:
        config = AdvancedStoryConfig(
            genre="fantasy",
            story_idea="a storm",
            tone="dark",
            story_length="short",
            character_details=[
                CharacterDetail(name="Iris", role="thief"),
                CharacterDetail(name="", role="guard"),
            ],
        )
        content = fallback.initial_story(config, advanced=True)
        assert [c.name for c in content.characters][0] == "Iris"
        assert not any(c.name == "" for c in content.characters)
        assert content.mood == "dark"
        assert content.tension_level == 8
        assert content.story_length_target == "short"

    def test_advanced_without_details_names_protagonist(self) -> None:
        config = AdvancedStoryConfig(protagonist="protagonist")
        content = fallback.initial_story(config, advanced=True)
        assert content.characters[0].name == fallback.NAME_POOL[0]


def test_ensure_character_names_skips_taken_names():
    chars = [Character(name="Aren Vale"), Character(name="Unknown"), Character(name="Ilsa")]
    names = [c.name for c in fallback.ensure_character_names(chars)]
    assert names == ["Aren Vale", "Mira Quell", "Ilsa"]


class TestNextChapter:
    def test_bold_choice_raises_tension_and_unlocks_achievement(self, state) -> None:
        choice = Choice(id=1, text="Charge", difficulty=5)
        content = fallback.next_chapter(state, choice)
        assert content.tension_level == 8
        assert content.mood == "tense"
        assert content.achievements == ["Bold Move - chose a difficulty 5 action"]
        assert '"Charge"' in content.scene

    def test_careful_choice_lowers_tension(self, state_factory) -> None:
        state = state_factory(tension_level=4, mood="curious")
        content = fallback.next_chapter(state, Choice(id=1, text="Wait", difficulty=1))
        assert content.tension_level == 3
        assert content.mood == "calm"
        assert content.achievements == []

    def test_tension_stays_in_range(self, state_factory) -> None:
        state = state_factory(tension_level=10)
        content = fallback.next_chapter(state, Choice(id=1, text="Leap", difficulty=5))
        assert content.tension_level == 10


@pytest.mark.parametrize("completion_type", ["success", "failure", "neutral", "cliffhanger"])
def test_ending_for_every_type(state, completion_type):
    content = fallback.ending(state, completion_type)
    assert "Aren Vale" in content.scene
    assert len(content.achievements) == 2


def test_summary(state):
    text = fallback.summary(state)
    assert text.startswith("Aren Vale's story ran for 3 chapters")
    assert '"Light a torch"' in text
