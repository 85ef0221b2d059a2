"""Decide whether a story arc should conclude, and with what tone.

Hard triggers are checked first, in order; the first one that fires decides.
Otherwise independent signals add (or subtract) confidence, and an ending is
suggested only when confidence reaches ENDING_CONFIDENCE with at least
MIN_REASONS contributing signals.
"""

from __future__ import annotations

import logging
import random
import re

from storyloom.choices import effective_progress
from storyloom.models import CompletionType, EndingDecision, StoryState

logger = logging.getLogger(__name__)

ENDING_CONFIDENCE = 60
MIN_REASONS = 2
CLIFFHANGER_PROBABILITY = 0.3

RESOLUTION_KEYWORDS = (
    "complete the mission", "return home", "defeat", "save", "rescue", "finish",
    "final battle", "fulfil", "fulfill", "restore", "resolve",
)
FAILURE_KEYWORDS = ("give up", "flee", "die", "surrender", "abandon", "betray")
CLIMAX_KEYWORDS = ("final", "confront", "decisive", "showdown", "last stand", "ultimate", "climax")
GROWTH_KEYWORDS = ("understand", "forgive", "accept", "grow", "learn", "realise", "realize", "change")
THOUGHTFUL_KEYWORDS = ("think", "consider", "observe", "study", "ask", "listen", "reflect")
CALM_MOODS = ("calm", "peaceful", "harmonious", "serene", "content")
DANGER_MOODS = ("danger", "dangerous", "tense", "desperate", "dire")


def keyword_re(words: tuple[str, ...]) -> re.Pattern[str]:
    """Whole words or phrases, allowing plain inflections (dies, saved, acting)."""
    alternatives = "|".join(re.escape(w) for w in words)
    return re.compile(r"\b(?:" + alternatives + r")(?:s|es|d|ed|ing)?\b", re.IGNORECASE)


_RESOLUTION_RE = keyword_re(RESOLUTION_KEYWORDS)
_FAILURE_RE = keyword_re(FAILURE_KEYWORDS)
_CLIMAX_RE = keyword_re(CLIMAX_KEYWORDS)
_GROWTH_RE = keyword_re(GROWTH_KEYWORDS)
_THOUGHTFUL_RE = keyword_re(THOUGHTFUL_KEYWORDS)
_CALM_RE = keyword_re(CALM_MOODS)
_DANGER_RE = keyword_re(DANGER_MOODS)


def _hits(texts: list[str], pattern: re.Pattern[str]) -> int:
    return sum(1 for t in texts if pattern.search(t))


def _is_calm(mood: str) -> bool:
    return bool(_CALM_RE.search(mood))


def _decision(kind: CompletionType, reason: str, confidence: int = 100) -> EndingDecision:
    return EndingDecision(
        should_end=True, reason=reason, suggested_type=kind,
        confidence=confidence, reasons=[reason],
    )


def hard_trigger(state: StoryState, rng: random.Random) -> EndingDecision | None:
    recent = state.choices_made[-5:]
    if state.chapter >= 15:
        return _decision("success", f"Story has reached chapter {state.chapter}")
    if state.story_progress >= 95:
        return _decision("success", "Story progress is complete")
    if len(state.achievements) >= 15 and state.chapter >= 8:
        return _decision("success", "Enough achievements for a satisfying conclusion")
    if state.chapter >= 10 and _hits(recent, _RESOLUTION_RE):
        return _decision("success", "Recent choices resolve the main conflict")
    if state.tension_level >= 8 and _hits(recent, _FAILURE_RE):
        return _decision("failure", "Recent choices point to defeat under high tension")
    if state.tension_level <= 2 and state.chapter >= 8 and _is_calm(state.mood):
        return _decision("neutral", "The story has settled into calm")
    if state.chapter >= 10 and state.tension_level >= 7:
        if rng.random() < CLIFFHANGER_PROBABILITY:
            return _decision("cliffhanger", "Leave the story on a cliffhanger", 70)
    return None


def score(state: StoryState) -> tuple[int, list[str]]:
    """Additive confidence score and the signals that contributed."""
    confidence = 0
    reasons: list[str] = []
    recent = state.choices_made[-5:]

    progress = effective_progress(state)
    if progress >= 80:
        confidence += 25
        reasons.append("story is nearly complete")
    elif progress >= 60:
        confidence += 15
        reasons.append("story is well advanced")

    if state.achievements and len(state.achievements) / state.chapter >= 1:
        confidence += 15
        reasons.append("many achievements unlocked")

    if _hits(recent, _CLIMAX_RE):
        confidence += 20
        reasons.append("recent choices reach a climax")

    if state.story_goals:
        done = sum(1 for g in state.story_goals if g.status == "completed")
        ratio = done / len(state.story_goals)
        if ratio >= 0.75:
            confidence += 25
            reasons.append("most goals completed")
        elif ratio >= 0.5:
            confidence += 10
            reasons.append("half the goals completed")

    if len(recent) >= 3 and _hits(recent, _THOUGHTFUL_RE) >= 2:
        confidence += 10
        reasons.append("the reader has been choosing thoughtfully")

    if _hits(recent + [state.current_scene], _GROWTH_RE):
        confidence += 10
        reasons.append("characters show growth")

    if _is_calm(state.mood):
        confidence += 10
        reasons.append("the mood has settled")

    if state.chapter >= 12:
        confidence += 15
        reasons.append("the story has run long")
    elif state.chapter >= 10:
        confidence += 10
        reasons.append("the story has reached a good length")

    if state.tension_level >= 8 or _DANGER_RE.search(state.mood):
        confidence -= 20

    return confidence, reasons


def suggest_type(state: StoryState) -> CompletionType:
    if state.main_goal_status == "completed" or state.story_progress >= 80:
        return "success"
    if state.main_goal_status == "failed":
        return "failure"
    return "neutral"


def should_story_end(state: StoryState, rng: random.Random | None = None) -> EndingDecision:
    if state.is_completed:
        return EndingDecision(
            should_end=False, reason="Story is already completed",
            suggested_type=state.completion_type or "neutral",
        )
    rng = rng or random.Random()
    decision = hard_trigger(state, rng)
    if decision is not None:
        logger.debug("ending hard trigger: %s", decision.reason)
        return decision

    confidence, reasons = score(state)
    should_end = confidence >= ENDING_CONFIDENCE and len(reasons) >= MIN_REASONS
    logger.debug("ending score=%d reasons=%d end=%s", confidence, len(reasons), should_end)
    return EndingDecision(
        should_end=should_end,
        reason="; ".join(reasons) if should_end else "The story should continue",
        suggested_type=suggest_type(state),
        confidence=max(0, min(100, confidence)),
        reasons=reasons,
    )
