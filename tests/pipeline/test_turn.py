"""Tests for run_turn and the state bookkeeping around it."""

import json
import random

import pytest

from storyloom.models import ENDING_CHOICE_ID, Character, Choice, ModelConfig, StoryContent
from storyloom.pipeline import (
    Pacing,
    SessionContext,
    StoryCompletedError,
    analyze_scene,
    calculate_progress,
    merge_chapter,
    run_turn,
    update_goal_status,
)

CHOICE = Choice(id=1, text="Open the gate", difficulty=2)
END = Choice(id=ENDING_CHOICE_ID, text="Head toward the ending")


# ---------------------------------------------------------------------------
# Bookkeeping helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("chapter,achievements,expected", [
    (0, 0, 0),
    (6, 0, 35),
    (12, 8, 100),
    (30, 30, 100),
])
def test_calculate_progress(chapter, achievements, expected):
    assert calculate_progress(chapter, achievements) == pytest.approx(expected)


@pytest.mark.parametrize("previous,choice,expected", [
    ([], "Look around", "pending"),
    (["Search the cellar"], "Look around", "in_progress"),
    (["Search the cellar"], "Achieve the ritual", "completed"),
    (["Achieve the ritual"], "Flee the city", "failed"),
    ([], "Seek an audience", "in_progress"),
    (["Praise the country"], "Parry the attack", "pending"),
    ([], "Keep the unsaved pages", "pending"),
    (["The guards died"], "Look around", "failed"),
])
def test_update_goal_status(previous, choice, expected):
    assert update_goal_status(previous, choice) == expected


class TestAnalyzeScene:
    def test_every_third_chapter_needs_a_choice(self) -> None:
        assert analyze_scene("Quiet.", 3) == (True, "exploration")

    def test_short_quiet_scene(self) -> None:
        assert analyze_scene("The wind is quiet.", 4) == (False, "exploration")

    def test_climax(self) -> None:
        assert analyze_scene("This is the final battle.", 4) == (True, "climax")

    def test_action(self) -> None:
        assert analyze_scene("You must hurry.", 4) == (True, "action")

    def test_reflection(self) -> None:
        assert analyze_scene("You remember the old song.", 4) == (False, "reflection")

    def test_dialogue(self) -> None:
        assert analyze_scene('"Hello," she says.', 4) == (False, "dialogue")

    def test_words_match_whole_words_only(self) -> None:
        # "react" and "nowhere" must not count as "act" / "now"
        assert analyze_scene("They react from nowhere.", 4) == (False, "exploration")

    def test_long_scene_needs_a_choice(self) -> None:
        needs, _ = analyze_scene("The road winds on. " * 20, 4)
        assert needs


class TestMergeChapter:
    def test_appends_and_advances(self, state) -> None:
        content = StoryContent(
            scene="Beyond the gate.",
            new_characters=[Character(name="Mira Quell"), Character(name="Tobias Reed")],
            achievements=["Gatebreaker"],
            mood="tense",
            tension_level=7,
        )
        merged = merge_chapter(state, CHOICE, content)
        assert merged.chapter == 4
        assert merged.current_scene == "Beyond the gate."
        assert merged.choices_made[-1] == "Open the gate"
        assert [c.name for c in merged.characters] == ["Aren Vale", "Mira Quell", "Tobias Reed"]
        assert merged.achievements == ["The Journey Begins", "Gatebreaker"]
        assert (merged.mood, merged.tension_level) == ("tense", 7)
        assert merged.story_progress == pytest.approx(calculate_progress(4, 2))

    def test_progress_never_decreases(self, state_factory) -> None:
        state = state_factory(story_progress=90)
        merged = merge_chapter(state, CHOICE, StoryContent(scene="x"))
        assert merged.story_progress == 90
        assert merged.mood == state.mood

    def test_input_state_untouched(self, state) -> None:
        before = state.model_copy(deep=True)
        merge_chapter(state, CHOICE, StoryContent(scene="x", achievements=["A"]))
        assert state == before


# ---------------------------------------------------------------------------
# run_turn
# ---------------------------------------------------------------------------

class TestRunTurn:
    async def test_fallback_turn(self, state, session) -> None:
        result = await run_turn(state, CHOICE, session=session)
        assert result.source == "fallback"
        assert result.state.chapter == 4
        assert result.state.choices_made == ["Enter the tower", "Light a torch", "Open the gate"]
        assert not result.state.is_completed
        assert result.ending is not None and not result.ending.should_end
        assert state.chapter == 3

    async def test_model_turn_adds_new_characters(self, state, stub_llm) -> None:
        reply = json.dumps({
            "scene": "A stranger waits beyond the gate.",
            "new_characters": [{"name": "Tobias Reed", "role": "stranger"}],
            "mood": "curious",
        })
        llm = stub_llm({"next_chapter": [reply]})
        session = SessionContext(model_config=ModelConfig(), llm=llm,
                                 rng=random.Random(1), pacing=Pacing.instant())
        result = await run_turn(state, CHOICE, session=session)
        assert result.source == "model"
        assert result.state.characters[-1].name == "Tobias Reed"
        assert result.state.mood == "curious"
        llm.assert_exhausted()

    async def test_chapter_limit_ends_the_story(self, state_factory, session) -> None:
        result = await run_turn(state_factory(chapter=14), CHOICE, session=session)
        assert result.state.chapter == 15
        assert result.state.is_completed
        assert result.state.completion_type == "success"
        assert not result.state.needs_choice
        assert result.ending.should_end

    async def test_ending_choice_goes_straight_to_the_ending(self, state_factory, session) -> None:
        state = state_factory(story_progress=85)
        result = await run_turn(state, END, session=session)
        assert result.state.is_completed
        assert result.state.chapter == state.chapter
        assert result.state.completion_type == "success"
        assert result.state.choices_made[-1] == "Head toward the ending"

    async def test_completed_story_rejected(self, state_factory, session) -> None:
        with pytest.raises(StoryCompletedError):
            await run_turn(state_factory(is_completed=True), CHOICE, session=session)

    async def test_chapter_never_passes_limit_unfinished(self, state_factory, session) -> None:
        state = state_factory(chapter=1)
        for _ in range(30):
            result = await run_turn(state, CHOICE, session=session)
            state = result.state
            if state.is_completed:
                break
        assert state.is_completed
        assert state.chapter <= 15
