"""Choice generation.

generate_choices() tries four layers in order and the first one that yields
a usable list wins:

  1. model     : ask the LLM for a JSON array of choices
  2. contextual: keyword cues in the scene pick a hand-written template,
                padded/truncated from a shuffled pool of generic extras
  3. genre     : classify the scene into a genre bucket, shuffle, slice
  4. default   : three generic choices; cannot fail

The batch size comes from determine_choice_count(). When the story is close
to its natural end, one extra sentinel choice (id ENDING_CHOICE_ID) is
appended; it is not counted against the batch size.

All randomness comes from the `rng` argument so callers can seed it.
"""

from __future__ import annotations

import logging
import random
from typing import Any

from pydantic import ValidationError

from storyloom import prompts
from storyloom.extractor import extract_list
from storyloom.llm import LLM, LLMError
from storyloom.models import ENDING_CHOICE_ID, Character, Choice, StoryState

logger = logging.getLogger(__name__)

MIN_CHOICES = 2
MAX_CHOICES = 5
REQUIRED_CHOICE_KEYS = ("text", "description", "difficulty")


def _clamp(n: int, low: int = MIN_CHOICES, high: int = MAX_CHOICES) -> int:
    return max(low, min(high, n))


# ── Batch size ───────────────────────────────────────────

def determine_choice_count(state: StoryState, rng: random.Random) -> int:
    if state.chapter <= 2:
        count = rng.randint(2, 3)
    elif state.chapter <= 5:
        count = rng.randint(2, 4)
    else:
        count = rng.randint(2, 5)

    tension = state.tension_level
    if tension >= 8:
        count = min(count + 1, 5)
    elif tension >= 6:
        count = min(count + rng.randint(0, 1), 4)
    elif tension <= 3:
        count = max(count - 1, 2)

    mood = (state.mood or "").lower()
    if any(tag in mood for tag in ("tense", "intense", "suspenseful")):
        count = min(count + 1, 5)
    elif any(tag in mood for tag in ("calm", "harmonious")):
        count = max(count - 1, 2)

    roll = rng.random()
    if roll < 0.15:
        count -= 1
    elif roll < 0.30:
        count += 1
    return _clamp(count)


# ── Ending sentinel ──────────────────────────────────────

def effective_progress(state: StoryState) -> float:
    """Stored progress, or a chapter-derived estimate when that is higher."""
    return max(state.story_progress, min(state.chapter / 18 * 85, 85))


def wants_ending_choice(state: StoryState) -> bool:
    progress = effective_progress(state)
    return 80 <= progress < 95 or 15 <= state.chapter < 20


def ending_choice() -> Choice:
    return Choice(
        id=ENDING_CHOICE_ID,
        text="Head toward the ending",
        description="Bring this chapter of the story to its conclusion",
        difficulty=1,
        consequences="The story moves to its final scene",
    )


def _renumber(choices: list[Choice]) -> list[Choice]:
    return [c.model_copy(update={"id": i}) for i, c in enumerate(choices, start=1)]


# ---------------------------------------------------------------------------
# Layer 1: model
# ---------------------------------------------------------------------------

def parse_model_choices(raw: str) -> list[Choice] | None:
    """Validate a model reply; None when it is not a usable list."""
    return coerce_choices(extract_list(raw))


def coerce_choices(items: Any) -> list[Choice] | None:
    """Validate parsed choice dicts, renumbering ids from 1."""
    if not isinstance(items, list) or len(items) < MIN_CHOICES:
        return None
    choices = []
    for item in items[:MAX_CHOICES]:
        if not isinstance(item, dict) or any(k not in item for k in REQUIRED_CHOICE_KEYS):
            return None
        data = {**item, "id": 0}
        try:
            data["difficulty"] = _clamp(int(data["difficulty"]), 1, 5)
        except (TypeError, ValueError, OverflowError):
            data["difficulty"] = 3
        try:
            choice = Choice.model_validate(data)
        except ValidationError:
            return None
        if not choice.text.strip():
            return None
        choices.append(choice)
    return _renumber(choices)


async def model_choices(
    llm: LLM, scene: str, characters: list[Character], state: StoryState, count: int
) -> list[Choice] | None:
    ctx = prompts.state_context(state, scene=scene, count=count)
    ctx["characters"] = [c.model_dump() for c in characters]
    messages = [
        {"role": "system", "content": prompts.render_prompt(prompts.CHOICES_SYSTEM, ctx)},
        {"role": "user", "content": prompts.render_prompt(prompts.CHOICES_USER, ctx)},
    ]
    raw = await llm("choices", messages)
    return parse_model_choices(raw)


# ---------------------------------------------------------------------------
# Layer 2: contextual keyword templates
# ---------------------------------------------------------------------------

LOCATION_CUES = ("ruins", "temple", "castle", "forest", "cave", "tower", "village", "hall", "door", "gate")
MAGIC_CUES = ("magic", "spell", "rune", "glow", "enchant", "arcane", "crystal", "ritual")
DANGER_CUES = ("danger", "enemy", "attack", "monster", "threat", "blood", "weapon", "trap")
EXPLORATION_CUES = ("path", "explore", "map", "passage", "tunnel", "road", "journey", "unknown")
MYSTERY_CUES = ("mystery", "secret", "clue", "strange", "hidden", "whisper", "riddle", "shadow")


def _has(text: str, cues: tuple[str, ...]) -> bool:
    return any(cue in text for cue in cues)


def scene_cues(scene: str, characters: list[Character]) -> set[str]:
    """Which keyword families appear in the scene."""
    text = scene.lower()
    found = set()
    if _has(text, LOCATION_CUES):
        found.add("location")
    if _has(text, MAGIC_CUES):
        found.add("magic")
    names = tuple(c.name.lower() for c in characters if c.name) + ("together", "said")
    if _has(text, names):
        found.add("characters")
    if _has(text, DANGER_CUES):
        found.add("danger")
    if _has(text, EXPLORATION_CUES):
        found.add("exploration")
    if _has(text, MYSTERY_CUES):
        found.add("mystery")
    return found


def _c(text: str, description: str, difficulty: int, consequences: str | None = None) -> Choice:
    return Choice(id=0, text=text, description=description, difficulty=difficulty, consequences=consequences)


def _contextual_template(scene: str, cues: set[str], characters: list[Character]) -> list[Choice]:
    text = scene.lower()
    companion = characters[1].name if len(characters) > 1 else "your companion"
    if "rune" in text and "glow" in text:
        return [
            _c("Touch the glowing runes", "Reach out and feel the power in the carvings", 4, "The runes may awaken"),
            _c("Study the rune patterns", "Try to read the meaning hidden in the symbols", 2),
            _c("Step away from the light", "Keep a safe distance and watch what happens", 1),
        ]
    if "ruins" in text or ("stone" in text and "door" in text):
        return [
            _c("Push open the stone door", "Put your weight against the ancient door", 3, "Whatever is inside will know you came"),
            _c("Search the ruins for another entrance", "Circle the walls looking for a gap", 2),
            _c("Examine the carvings", "Look for warnings left by those who came before", 2),
        ]
    if "magic" in cues and "characters" in cues:
        return [
            _c(f"Ask {companion} about the magic", "Perhaps they know what this power is", 1),
            _c("Try to channel the power yourself", "Reach for the magic and see if it answers", 4, "Magic rarely comes without a price"),
            _c("Work the spell together", "Combine your strength with your companions", 3),
        ]
    if "danger" in cues:
        return [
            _c("Stand and fight", "Meet the threat head-on", 4, "Victory or serious injury"),
            _c("Find cover and observe", "Learn what you are facing before acting", 2),
            _c("Look for a way around", "Avoid the danger if you can", 3),
        ]
    if "exploration" in cues or "mystery" in cues:
        return [
            _c("Follow the trail deeper", "See where the signs lead", 3),
            _c("Search the area for clues", "Something here is not what it seems", 2),
            _c("Mark the spot and move on", "Come back later with more knowledge", 1),
        ]
    return [
        _c("Press forward", "Keep moving toward your goal", 3),
        _c("Observe your surroundings", "Take stock before deciding", 1),
        _c("Talk to the others", "Hear what everyone thinks", 2),
    ]


_EXTRAS = (
    ("Wait and watch", "Hold back and let events reveal themselves", 1),
    ("Take a risk", "Do something bold and unexpected", 5),
    ("Look for another way", "There may be a path no one has considered", 2),
    ("Fall back and regroup", "Retreat to safety and plan the next move", 2),
    ("Face it directly", "Confront whatever stands in your way", 4),
)


def contextual_choices(
    scene: str, characters: list[Character], count: int, rng: random.Random
) -> list[Choice]:
    cues = scene_cues(scene, characters)
    choices = _contextual_template(scene, cues, characters)
    if len(choices) < count:
        extras = [_c(*row) for row in _EXTRAS]
        rng.shuffle(extras)
        choices.extend(extras[: count - len(choices)])
    elif len(choices) > count:
        rng.shuffle(choices)
        choices = choices[:count]
    return _renumber(choices)


# ---------------------------------------------------------------------------
# Layer 3: genre buckets
# ---------------------------------------------------------------------------

GENRE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "scifi": ("ship", "planet", "robot", "laser", "station", "hologram", "android", "starship"),
    "fantasy": ("magic", "dragon", "sword", "elf", "spell", "wizard", "kingdom", "castle"),
    "romance": ("heart", "love", "kiss", "smile", "blush", "embrace", "date"),
    "thriller": ("chase", "gun", "escape", "hunt", "bomb", "agent", "pursuit"),
    "historical": ("emperor", "empire", "dynasty", "century", "knight", "war", "court"),
    "mystery": ("clue", "detective", "murder", "secret", "suspect", "evidence"),
}

GENRE_CHOICES: dict[str, tuple[tuple[str, str, int], ...]] = {
    "scifi": (
        ("Scan the area", "Run a full sensor sweep", 1),
        ("Hack the system", "Break into the nearest terminal", 4),
        ("Signal the ship", "Call for backup or a pickup", 2),
        ("Reroute the power", "Divert energy where it is needed most", 3),
        ("Go through the airlock", "Step out into the unknown", 5),
    ),
    "mystery": (
        ("Question a witness", "Someone saw more than they admit", 2),
        ("Examine the evidence", "Look again at what you already have", 1),
        ("Follow the suspect", "Stay out of sight and see where they go", 3),
        ("Search the room", "Every drawer, every shadow", 2),
        ("Confront the suspect", "Lay out what you know and watch their face", 4),
    ),
    "fantasy": (
        ("Cast a spell", "Call on what magic you have", 3),
        ("Seek the elder's counsel", "Old wisdom might show the way", 1),
        ("Draw your blade", "Trust steel over sorcery", 4),
        ("Follow the ancient path", "The old road may lead to answers", 2),
        ("Bargain with the creature", "Even monsters have their price", 5),
    ),
    "romance": (
        ("Speak your heart", "Say what you have been holding back", 4),
        ("Take a walk together", "Some things are easier said side by side", 1),
        ("Give them space", "Let them come to you", 2),
        ("Plan a surprise", "Show how much you care", 3),
        ("Ask about their past", "Understand who they were before", 2),
    ),
    "thriller": (
        ("Run for it", "Get out before it is too late", 3),
        ("Set a trap", "Turn the hunter into the hunted", 4),
        ("Hide and wait", "Let them pass you by", 2),
        ("Call for help", "You cannot do this alone", 1),
        ("Go on the offensive", "Strike first and strike hard", 5),
    ),
    "historical": (
        ("Seek an audience", "Petition those in power", 3),
        ("Gather allies", "Build support among the people", 2),
        ("Consult the records", "History may hold the answer", 1),
        ("Take up arms", "Some causes are worth fighting for", 5),
        ("Send a messenger", "Carry word to distant friends", 2),
    ),
}


def classify_genre(scene: str) -> str:
    """Genre bucket with the most keyword hits; ties and no hits go to mystery."""
    text = scene.lower()
    best, best_hits = "mystery", 0
    for genre, words in GENRE_KEYWORDS.items():
        hits = sum(1 for w in words if w in text)
        if hits > best_hits:
            best, best_hits = genre, hits
    return best


def genre_choices(scene: str, count: int, rng: random.Random) -> list[Choice]:
    pool = [_c(*row) for row in GENRE_CHOICES[classify_genre(scene)]]
    rng.shuffle(pool)
    return _renumber(pool[:count])


# ---------------------------------------------------------------------------
# Layer 4: default triple
# ---------------------------------------------------------------------------

def default_choices() -> list[Choice]:
    return _renumber([
        _c("Press on", "Keep going and see what comes next", 3),
        _c("Pause and think", "Take a moment to weigh the situation", 1),
        _c("Consult a companion", "Ask someone you trust for advice", 2),
    ])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def generate_choices(
    scene: str,
    characters: list[Character],
    state: StoryState,
    *,
    llm: LLM | None = None,
    rng: random.Random | None = None,
) -> tuple[list[Choice], str]:
    """Return (choices, layer). Never raises for model or parse failures."""
    rng = rng or random.Random()
    count = determine_choice_count(state, rng)
    choices: list[Choice] | None = None
    layer = "default"

    if llm is not None:
        try:
            choices = await model_choices(llm, scene, characters, state, count)
        except (LLMError, prompts.PromptError) as e:
            logger.warning("Model choice generation failed: %s", e)
        if choices:
            layer = "model"
        else:
            logger.warning("Model choices unusable, using keyword fallback")

    if not choices:
        choices = _safe_layer(contextual_choices, scene, characters, count, rng)
        if choices:
            layer = "contextual"
    if not choices:
        choices = _safe_layer(genre_choices, scene, count, rng)
        if choices:
            layer = "genre"
    if not choices:
        choices = default_choices()
        layer = "default"

    if wants_ending_choice(state):
        choices = choices + [ending_choice()]
    logger.debug("choices layer=%s count=%d target=%d", layer, len(choices), count)
    return choices, layer


def _safe_layer(fn: Any, *args: Any) -> list[Choice] | None:
    try:
        result = fn(*args)
    except (ValueError, ValidationError) as e:
        logger.warning("Choice layer %s failed: %s", fn.__name__, e)
        return None
    return result if len(result) >= MIN_CHOICES else None
