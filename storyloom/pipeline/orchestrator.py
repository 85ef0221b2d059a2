"""Generation operations: model first, deterministic fallback second.

Every operation takes the session explicitly (a SessionContext holding the
model config, conversation history, optional LLM override, random source and
pacing), so concurrent sessions never share state.

    generate_initial_story   single-shot; resets history, then seeds it
    generate_next_chapter    multi-turn; reads history, appends on success
    generate_choices         ChoiceEngine layers (see storyloom.choices)
    present_choices          generate_choices + thinking delay, minimum
                             display time and stuck watchdog
    should_story_end         EndingDetector (see storyloom.ending)
    generate_story_ending    single-shot, fallback per completion type
    continue_story           model-only twist for a stalled story
    generate_story_summary   model summary, deterministic when unavailable
    develop_character        model update of one character, else unchanged

Transport failures (LLMError) and template failures (PromptError) are logged
and demoted to the fallback; they never reach the caller, except from
continue_story, which has no fallback.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import ValidationError

from storyloom import choices as choice_engine
from storyloom import ending as ending_detector
from storyloom import fallback, prompts
from storyloom.extractor import FALLBACK_PAYLOAD, extract_object
from storyloom.history import ConversationHistory
from storyloom.llm import LLM, ChatMessage, LLMError, MissingCredentialsError, llm_for
from storyloom.models import (
    Character,
    Choice,
    CompletionType,
    EndingDecision,
    ModelConfig,
    StoryConfig,
    StoryContent,
    StoryGenerationResponse,
    StoryState,
    is_placeholder_name,
)

logger = logging.getLogger(__name__)


class StoryCompletedError(ValueError):
    """Raised when an operation would advance a story that has already ended."""


# ---------------------------------------------------------------------------
# Session context
# ---------------------------------------------------------------------------

@dataclass
class Pacing:
    """Perceived-latency settings, in seconds."""

    thinking_delay: float = 1.5
    min_display: float = 1.8
    watchdog_timeout: float = 30.0

    @classmethod
    def instant(cls) -> Pacing:
        return cls(thinking_delay=0.0, min_display=0.0)

    @classmethod
    def from_config(cls, values: dict[str, Any]) -> Pacing:
        return cls(**{k: float(v) for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class SessionContext:
    model_config: ModelConfig = field(default_factory=ModelConfig)
    history: ConversationHistory = field(default_factory=ConversationHistory)
    llm: LLM | None = None
    rng: random.Random = field(default_factory=random.Random)
    pacing: Pacing = field(default_factory=Pacing)

    def resolve_llm(self) -> LLM | None:
        """The override if set, else an HttpLLM when the config has credentials."""
        if self.llm is not None:
            return self.llm
        return llm_for(self.model_config)


async def hold_until(started: float, min_display: float) -> None:
    """Sleep so that at least min_display seconds pass since `started`."""
    remaining = min_display - (asyncio.get_running_loop().time() - started)
    if remaining > 0:
        await asyncio.sleep(remaining)


# ---------------------------------------------------------------------------
# Payload coercion
# ---------------------------------------------------------------------------

def _characters(items: Any) -> list[Character]:
    result = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            result.append(Character.model_validate({k: v for k, v in item.items() if v is not None}))
        except ValidationError:
            logger.debug("Dropping invalid character %r", item)
    return result


def _tension(value: Any) -> int | None:
    try:
        return max(1, min(10, int(value)))
    except (TypeError, ValueError, OverflowError):
        return None


def _is_placeholder_scene(scene: str) -> bool:
    """The extractor's last-resort payload carries no real story."""
    return scene.strip() == FALLBACK_PAYLOAD["scene"]


def coerce_content(data: dict[str, Any], scene_key: str = "scene") -> StoryContent | None:
    """Build StoryContent from extracted model data; None when the scene is missing."""
    scene = data.get(scene_key)
    if not isinstance(scene, str) or not scene.strip() or _is_placeholder_scene(scene):
        return None
    achievements = data.get("achievements")
    mood = data.get("mood")
    return StoryContent(
        scene=scene.strip(),
        choices=choice_engine.coerce_choices(data.get("choices")) or [],
        characters=fallback.ensure_character_names(_characters(data.get("characters"))),
        new_characters=fallback.ensure_character_names(_characters(data.get("new_characters"))),
        mood=mood if isinstance(mood, str) and mood else None,
        tension_level=_tension(data.get("tension_level")),
        achievements=[str(a) for a in achievements if a] if isinstance(achievements, list) else [],
        setting_details=data.get("setting_details") if isinstance(data.get("setting_details"), str) else None,
        story_length_target=data.get("story_length_target") if isinstance(data.get("story_length_target"), str) else None,
        preferred_ending_type=data.get("preferred_ending_type") if isinstance(data.get("preferred_ending_type"), str) else None,
    )


def _system(template: str, ctx: dict[str, Any], config: ModelConfig) -> ChatMessage:
    text = prompts.render_prompt(template, ctx)
    if config.custom_prompt:
        text += "\n\n" + config.custom_prompt
    return {"role": "system", "content": text}


def _user(template: str, ctx: dict[str, Any]) -> ChatMessage:
    return {"role": "user", "content": prompts.render_prompt(template, ctx)}


def _fallback(content: StoryContent, reason: str) -> StoryGenerationResponse:
    logger.warning("Using fallback content: %s", reason)
    return StoryGenerationResponse(success=True, content=content, source="fallback")


# ---------------------------------------------------------------------------
# Initial story
# ---------------------------------------------------------------------------

async def generate_initial_story(
    config: StoryConfig,
    advanced: bool = False,
    *,
    session: SessionContext,
) -> StoryGenerationResponse:
    session.history.reset()
    llm = session.resolve_llm()
    content: StoryContent | None = None
    system_msg: ChatMessage | None = None
    user_msg: ChatMessage | None = None

    if llm is not None:
        ctx = prompts.initial_context(config)
        try:
            if advanced:
                system_msg = _system(prompts.INITIAL_ADVANCED_SYSTEM, ctx, session.model_config)
                user_msg = _user(prompts.INITIAL_ADVANCED_USER, ctx)
            else:
                system_msg = _system(prompts.INITIAL_SIMPLE_SYSTEM, ctx, session.model_config)
                user_msg = _user(prompts.INITIAL_SIMPLE_USER, ctx)
            raw = await llm("initial_story", [system_msg, user_msg])
            content = coerce_content(extract_object(raw, "scene"))
            if content is not None and not content.characters:
                logger.warning("Initial story from model has no characters")
                content = None
        except (LLMError, prompts.PromptError) as e:
            logger.warning("Initial story generation failed: %s", e)
            content = None

    if content is not None:
        source: Literal["model", "fallback"] = "model"
    else:
        content = fallback.initial_story(config, advanced)
        source = "fallback"
        logger.warning("Initial story generated from %s templates", fallback.normalize_genre(config.genre))

    # Seed the multi-turn history for the chapters that follow.
    if system_msg is None:
        system_msg = {"role": "system", "content": prompts.render_prompt(
            prompts.INITIAL_SIMPLE_SYSTEM, prompts.initial_context(config))}
    session.history.append("system", system_msg["content"])
    if user_msg is not None:
        session.history.append("user", user_msg["content"])
    session.history.append("assistant", content.scene, chapter=1)
    return StoryGenerationResponse(success=True, content=content, source=source)


def initial_state(
    story_id: str, config: StoryConfig, content: StoryContent
) -> StoryState:
    """StoryState for chapter 1 from a generated opening."""
    goals = list(getattr(config, "story_goals", []) or [])
    setting = content.setting_details or getattr(config, "setting", "") or config.genre
    return StoryState(
        story_id=story_id,
        current_scene=content.scene,
        characters=content.characters,
        setting=setting,
        genre=config.genre,
        achievements=list(content.achievements),
        mood=content.mood or "mysterious",
        tension_level=content.tension_level or 5,
        story_goals=goals,
    )


# ---------------------------------------------------------------------------
# Next chapter
# ---------------------------------------------------------------------------

async def generate_next_chapter(
    state: StoryState,
    choice: Choice,
    *,
    session: SessionContext,
) -> StoryGenerationResponse:
    if state.is_completed:
        raise StoryCompletedError(f"Story {state.story_id} is already completed")
    llm = session.resolve_llm()
    if llm is None:
        return _fallback(fallback.next_chapter(state, choice), "no model credentials")

    try:
        ctx = prompts.state_context(state, choice=choice.model_dump())
        system_msg = _system(prompts.NEXT_CHAPTER_SYSTEM, ctx, session.model_config)
        user_msg = _user(prompts.NEXT_CHAPTER_USER, ctx)
        messages = [system_msg, *session.history.to_chat(), user_msg]
        raw = await llm("next_chapter", messages)
    except (LLMError, prompts.PromptError) as e:
        return _fallback(fallback.next_chapter(state, choice), f"model call failed ({e})")

    content = coerce_content(extract_object(raw, "scene"))
    if content is None:
        return _fallback(fallback.next_chapter(state, choice), "model reply has no scene")

    session.history.append("user", user_msg["content"], chapter=state.chapter + 1)
    session.history.append("assistant", content.scene, chapter=state.chapter + 1)
    return StoryGenerationResponse(success=True, content=content, source="model")


# ---------------------------------------------------------------------------
# Choices
# ---------------------------------------------------------------------------

@dataclass
class ChoiceBatch:
    choices: list[Choice]
    source: str
    stuck: bool = False


async def generate_choices(
    scene: str,
    characters: list[Character],
    state: StoryState,
    *,
    session: SessionContext,
) -> list[Choice]:
    result, _ = await choice_engine.generate_choices(
        scene, characters, state, llm=session.resolve_llm(), rng=session.rng,
    )
    return result


def _log_late_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Abandoned choice generation failed: %s", exc)
    else:
        logger.debug("Abandoned choice generation finished late; result ignored")


async def present_choices(
    scene: str,
    characters: list[Character],
    state: StoryState,
    *,
    session: SessionContext,
) -> ChoiceBatch:
    """generate_choices with pacing; marks the batch stuck if the watchdog fires.

    The in-flight generation is not cancelled on timeout; its result is ignored.
    """
    pacing = session.pacing
    started = asyncio.get_running_loop().time()
    await asyncio.sleep(pacing.thinking_delay)
    task = asyncio.ensure_future(choice_engine.generate_choices(
        scene, characters, state, llm=session.resolve_llm(), rng=session.rng,
    ))
    done, _ = await asyncio.wait({task}, timeout=pacing.watchdog_timeout)
    if not done:
        task.add_done_callback(_log_late_result)
        logger.warning("Choice generation exceeded %.0fs; marking stuck", pacing.watchdog_timeout)
        return ChoiceBatch(choices=choice_engine.default_choices(), source="default", stuck=True)

    result, layer = task.result()
    await hold_until(started, pacing.min_display)
    return ChoiceBatch(choices=result, source=layer)


# ---------------------------------------------------------------------------
# Ending
# ---------------------------------------------------------------------------

def should_story_end(state: StoryState, *, session: SessionContext) -> EndingDecision:
    return ending_detector.should_story_end(state, session.rng)


async def generate_story_ending(
    state: StoryState,
    completion_type: CompletionType,
    *,
    session: SessionContext,
) -> StoryGenerationResponse:
    llm = session.resolve_llm()
    if llm is None:
        return _fallback(fallback.ending(state, completion_type), "no model credentials")
    try:
        ctx = prompts.state_context(
            state,
            ending_type=completion_type,
            ending_brief=prompts.ENDING_BRIEFS[completion_type],
        )
        raw = await llm("ending", [
            _system(prompts.ENDING_SYSTEM, ctx, session.model_config),
            _user(prompts.ENDING_USER, ctx),
        ])
    except (LLMError, prompts.PromptError) as e:
        return _fallback(fallback.ending(state, completion_type), f"model call failed ({e})")

    content = coerce_content(extract_object(raw, "scene"))
    if content is None:
        return _fallback(fallback.ending(state, completion_type), "model ending has no scene")
    session.history.append("assistant", content.scene, chapter=state.chapter)
    return StoryGenerationResponse(success=True, content=content, source="model")


# ---------------------------------------------------------------------------
# Supplementary operations
# ---------------------------------------------------------------------------

async def continue_story(state: StoryState, *, session: SessionContext) -> StoryState:
    """Ask the model for a twist that moves a stalled story on by one chapter.

    Raises LLMError (MissingCredentialsError without a key) since there is no
    deterministic twist to fall back to.
    """
    if state.is_completed:
        raise StoryCompletedError(f"Story {state.story_id} is already completed")
    llm = session.resolve_llm()
    if llm is None:
        raise MissingCredentialsError("Continuing a story needs a configured model")

    ctx = prompts.state_context(state)
    raw = await llm("continue", [
        _system(prompts.CONTINUE_SYSTEM, ctx, session.model_config),
        _user(prompts.CONTINUE_USER, ctx),
    ])
    data = extract_object(raw, "current_scene")
    scene = data.get("current_scene") or data.get("scene")
    if not isinstance(scene, str) or not scene.strip() or _is_placeholder_scene(scene):
        raise LLMError("Model did not return a usable continuation")

    update: dict[str, Any] = {
        "current_scene": scene.strip(),
        "chapter": state.chapter + 1,
        "needs_choice": True,
    }
    if isinstance(data.get("mood"), str) and data["mood"]:
        update["mood"] = data["mood"]
    tension = _tension(data.get("tension_level"))
    if tension is not None:
        update["tension_level"] = tension
    if isinstance(data.get("achievements"), list):
        update["achievements"] = state.achievements + [str(a) for a in data["achievements"] if a]
    if data.get("scene_type") in ("action", "dialogue", "exploration", "reflection", "climax"):
        update["scene_type"] = data["scene_type"]
    session.history.append("assistant", scene.strip(), chapter=state.chapter + 1)
    return state.model_copy(update=update)


async def generate_story_summary(state: StoryState, *, session: SessionContext) -> str:
    llm = session.resolve_llm()
    if llm is not None:
        try:
            ctx = prompts.state_context(state)
            text = await llm("summary", [
                _system(prompts.SUMMARY_SYSTEM, ctx, session.model_config),
                _user(prompts.SUMMARY_USER, ctx),
            ])
            if text.strip():
                return text.strip()
            logger.warning("Model returned an empty summary")
        except (LLMError, prompts.PromptError) as e:
            logger.warning("Summary generation failed: %s", e)
    return fallback.summary(state)


async def develop_character(
    character: Character,
    context: str,
    interactions: list[str],
    *,
    session: SessionContext,
) -> Character:
    """Updated character from the model; the original on any failure."""
    llm = session.resolve_llm()
    if llm is None:
        return character
    ctx = {**character.model_dump(), "context": context, "interactions": interactions}
    try:
        raw = await llm("character", [
            _system(prompts.CHARACTER_SYSTEM, ctx, session.model_config),
            _user(prompts.CHARACTER_USER, ctx),
        ])
    except (LLMError, prompts.PromptError) as e:
        logger.warning("Character development failed: %s", e)
        return character

    data = extract_object(raw, "name")
    updates = {
        k: v for k, v in data.items()
        if k in Character.model_fields and isinstance(v, str) and v.strip()
    }
    if "name" in updates and is_placeholder_name(updates["name"]):
        del updates["name"]
    try:
        return Character.model_validate({**character.model_dump(), **updates})
    except ValidationError as e:
        logger.warning("Model character update is invalid: %s", e)
        return character
