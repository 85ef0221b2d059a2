"""One reader turn, end to end.

Turn flow:
  1. Sentinel choice (ENDING_CHOICE_ID): skip straight to the ending.
  2. Generate the next chapter (model, else fallback).
  3. Wait out the minimum display time.
  4. Merge into a new StoryState: chapter + 1, choice recorded, new
     characters and achievements appended, mood/tension taken over,
     progress recomputed (never lowered), main goal status re-derived.
  5. Ask the ending detector; if it says so, generate the ending and mark
     the state completed.
  6. Otherwise analyse the scene for needs_choice / scene_type.

The incoming state is never mutated.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

from storyloom import ending as ending_detector
from storyloom.fallback import ensure_character_names
from storyloom.models import (
    Choice,
    CompletionType,
    EndingDecision,
    GoalStatus,
    SceneType,
    StoryContent,
    StoryState,
)

from .orchestrator import (
    SessionContext,
    StoryCompletedError,
    generate_next_chapter,
    generate_story_ending,
    hold_until,
)

logger = logging.getLogger(__name__)

GOAL_FAILURE_KEYWORDS = ("give up", "flee", "fail", "die", "despair", "surrender")
GOAL_COMPLETION_KEYWORDS = ("complete", "succeed", "victory", "achieve", "resolve", "accomplish")
GOAL_PROGRESS_KEYWORDS = ("begin", "start", "try", "attempt", "advance", "act", "search", "seek")

ACTION_WORDS = ("choose", "decide", "act", "must", "should", "now", "next step")
REFLECTION_WORDS = ("think", "remember", "observe", "feel", "realise", "realize", "discover")
CLIMAX_WORDS = ("danger", "urgent", "critical", "final battle", "last", "life or death")


_ACTION_RE = ending_detector.keyword_re(ACTION_WORDS)
_REFLECTION_RE = ending_detector.keyword_re(REFLECTION_WORDS)
_CLIMAX_RE = ending_detector.keyword_re(CLIMAX_WORDS)
_GOAL_FAILURE_RE = ending_detector.keyword_re(GOAL_FAILURE_KEYWORDS)
_GOAL_COMPLETION_RE = ending_detector.keyword_re(GOAL_COMPLETION_KEYWORDS)
_GOAL_PROGRESS_RE = ending_detector.keyword_re(GOAL_PROGRESS_KEYWORDS)


@dataclass
class TurnResult:
    state: StoryState
    content: StoryContent
    source: str
    ending: EndingDecision | None = None


def calculate_progress(chapter: int, achievement_count: int) -> float:
    """Chapters contribute up to 70 points, achievements up to 30."""
    chapter_part = min(chapter / 12 * 70, 70)
    achievement_part = min(achievement_count / 8 * 30, 30)
    return min(chapter_part + achievement_part, 100)


def update_goal_status(previous_choices: list[str], new_choice: str) -> GoalStatus:
    choices = [*previous_choices, new_choice]

    def any_hit(pattern: re.Pattern[str]) -> bool:
        return any(pattern.search(c) for c in choices)

    if any_hit(_GOAL_FAILURE_RE):
        return "failed"
    if any_hit(_GOAL_COMPLETION_RE):
        return "completed"
    if any_hit(_GOAL_PROGRESS_RE):
        return "in_progress"
    return "pending"


def analyze_scene(scene: str, chapter: int) -> tuple[bool, SceneType]:
    """Whether the scene should offer choices, and what kind of scene it is.

    Every third chapter always offers choices.
    """
    text = scene.lower()
    has_action = bool(_ACTION_RE.search(text))
    has_reflection = bool(_REFLECTION_RE.search(text))
    has_climax = bool(_CLIMAX_RE.search(text))

    needs_choice = chapter % 3 == 0 or has_action or has_climax or len(scene) > 200

    scene_type: SceneType = "exploration"
    if has_climax:
        scene_type = "climax"
    elif has_action:
        scene_type = "action"
    elif has_reflection:
        scene_type = "reflection"
    elif '"' in scene:
        scene_type = "dialogue"
    return needs_choice, scene_type


def _complete(
    state: StoryState, content: StoryContent, completion_type: CompletionType
) -> StoryState:
    return state.model_copy(update={
        "current_scene": content.scene,
        "achievements": state.achievements + content.achievements,
        "mood": content.mood or state.mood,
        "is_completed": True,
        "completion_type": completion_type,
        "needs_choice": False,
        "scene_type": "climax",
    })


def merge_chapter(state: StoryState, choice: Choice, content: StoryContent) -> StoryState:
    known = {c.name.lower() for c in state.characters}
    newcomers = [
        c for c in ensure_character_names(content.new_characters)
        if c.name.lower() not in known
    ]
    achievements = state.achievements + content.achievements
    chapter = state.chapter + 1
    return state.model_copy(update={
        "current_scene": content.scene,
        "chapter": chapter,
        "choices_made": state.choices_made + [choice.text],
        "characters": state.characters + newcomers,
        "achievements": achievements,
        "mood": content.mood or state.mood,
        "tension_level": content.tension_level or state.tension_level,
        "story_progress": max(state.story_progress, calculate_progress(chapter, len(achievements))),
        "main_goal_status": update_goal_status(state.choices_made, choice.text),
    })


async def run_turn(state: StoryState, choice: Choice, *, session: SessionContext) -> TurnResult:
    if state.is_completed:
        raise StoryCompletedError(f"Story {state.story_id} is already completed")
    started = asyncio.get_running_loop().time()

    if choice.is_ending:
        decision = ending_detector.should_story_end(state, session.rng)
        kind = decision.suggested_type if decision.should_end else ending_detector.suggest_type(state)
        logger.info("Story %s: reader chose to end (%s)", state.story_id, kind)
        response = await generate_story_ending(state, kind, session=session)
        await hold_until(started, session.pacing.min_display)
        final = _complete(
            state.model_copy(update={"choices_made": state.choices_made + [choice.text]}),
            response.content, kind,
        )
        return TurnResult(state=final, content=response.content, source=response.source, ending=decision)

    response = await generate_next_chapter(state, choice, session=session)
    await hold_until(started, session.pacing.min_display)
    updated = merge_chapter(state, choice, response.content)

    decision = ending_detector.should_story_end(updated, session.rng)
    if decision.should_end:
        logger.info(
            "Story %s ends at chapter %d (%s): %s",
            updated.story_id, updated.chapter, decision.suggested_type, decision.reason,
        )
        ending = await generate_story_ending(updated, decision.suggested_type, session=session)
        final = _complete(updated, ending.content, decision.suggested_type)
        return TurnResult(state=final, content=ending.content, source=ending.source, ending=decision)

    needs_choice, scene_type = analyze_scene(response.content.scene, updated.chapter)
    final = updated.model_copy(update={"needs_choice": needs_choice, "scene_type": scene_type})
    logger.debug(
        "turn story=%s chapter=%d progress=%.1f source=%s",
        final.story_id, final.chapter, final.story_progress, response.source,
    )
    return TurnResult(state=final, content=response.content, source=response.source, ending=decision)
