"""Deterministic template-driven content, used whenever the model path is
unavailable (no credentials), fails, or returns content missing required fields.

Nothing in here calls the model, draws random numbers, or raises.
"""

from __future__ import annotations

from storyloom.models import (
    AdvancedStoryConfig,
    Character,
    Choice,
    CompletionType,
    StoryConfig,
    StoryContent,
    StoryState,
    is_placeholder_name,
)

NAME_POOL = [
    "Aren Vale", "Mira Quell", "Tobias Reed", "Selene Hart", "Kael Dorn",
    "Lyra Voss", "Edrin Holt", "Nessa Crane", "Oren Pike", "Ilsa Marr",
]


def ensure_character_names(characters: list[Character]) -> list[Character]:
    """Replace placeholder names with names from NAME_POOL, keeping order."""
    taken = {c.name.strip().lower() for c in characters}
    pool = [n for n in NAME_POOL if n.lower() not in taken]
    result = []
    for i, char in enumerate(characters):
        if is_placeholder_name(char.name):
            name = pool.pop(0) if pool else f"Wanderer {i + 1}"
            char = char.model_copy(update={"name": name})
        result.append(char)
    return result


# ── Genre normalisation ──────────────────────────────────

_GENRE_ALIASES = {
    "sci-fi": "sci-fi", "scifi": "sci-fi", "science fiction": "sci-fi", "science-fiction": "sci-fi",
    "fantasy": "fantasy", "magic": "fantasy",
    "mystery": "mystery", "detective": "mystery", "crime": "mystery",
    "romance": "romance", "romantic": "romance", "love": "romance",
    "horror": "horror", "thriller": "horror",
    "adventure": "adventure",
}


def normalize_genre(genre: str | None) -> str:
    return _GENRE_ALIASES.get((genre or "").strip().lower(), "adventure")


# ── Initial story ────────────────────────────────────────

def _chars(*rows: tuple[str, str, str, str, str]) -> list[Character]:
    return [
        Character(name=n, role=r, traits=t, appearance=a, backstory=b)
        for n, r, t, a, b in rows
    ]


_INITIAL_TEMPLATES: dict[str, dict] = {
    "sci-fi": {
        "scene": (
            "Inspired by your idea \"{idea}\", the story opens in a future humming with machines. "
            "Aren Vale wakes slowly inside a cryo-pod, surrounded by flickering holographic displays "
            "and the low drone of engines. Fragments of memory surface: an experiment, an accident, "
            "then endless dark.\n\n"
            "A countdown blinks on a band around your wrist. The air smells of metal and ozone, alarms "
            "echo down the corridor and red lights pulse along the walls. Through the viewport hangs an "
            "unknown planet, two moons high in a violet sky.\n\n"
            "Where is this place, and how did you get here? Somewhere in the fog of memory a voice is "
            "calling your name."
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "An amnesiac test subject with untapped potential",
             "White lab suit, a strange device on one wrist",
             "Volunteered for a classified experiment; part of the memory was erased"),
            ("ARIA", "AI companion", "Loyal, but hiding secrets",
             "A blue holographic projection", "The lab AI, who knows the truth but is restricted"),
            ("Dr. Silas Crowe", "antagonist", "Mastermind of the experiment, motives unknown",
             "Always half in shadow", "A former partner turned enemy"),
        ),
        "mood": "mysterious",
        "tension_level": 7,
    },
    "fantasy": {
        "scene": (
            "Inspired by your idea \"{idea}\", Aren Vale wakes in an ancient enchanted forest. "
            "Towering trees glow softly, and motes of magic drift through the air like fireflies.\n\n"
            "Beside you lies a finely made sword, its hilt carved with old runes, as if waiting for its "
            "owner to wake. A dragon's roar rolls through the forest. Half-remembered words return: a "
            "prophecy, a calling, a darkness on its way.\n\n"
            "A cloaked figure steps out from between the trees and looks at you with hope and worry."
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "The chosen one, with a dormant gift for magic",
             "Plain clothes, a strange light in the eyes", "Named in the prophecy, only now awakened"),
            ("Elder Merrin", "mentor", "A wise mage and guardian",
             "Silver hair and beard, deep blue eyes", "Has waited years for the protagonist"),
            ("Morvath", "antagonist", "Master of dark magic bent on ruin",
             "Black robes, an aura of menace", "Once a mage of light, now the greatest threat"),
        ),
        "mood": "epic",
        "tension_level": 6,
    },
    "mystery": {
        "scene": (
            "Inspired by your idea \"{idea}\", on a rain-soaked, fog-bound night Aren Vale stands "
            "before an abandoned building. Lightning shows broken windows, and uneasy sounds come from "
            "inside. In your pocket is a note with an address and a time: here, and now.\n\n"
            "Parts of your memory are missing, but instinct says a great secret hides here. The rain "
            "washes at marks on the ground that hint something important happened on this spot.\n\n"
            "A figure crosses one of the windows and is gone. Imagination, or is someone waiting?"
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "Sharp-eyed, but haunted by the past",
             "A trench coat and a focused look", "A detective with a painful memory"),
            ("Emily Ashford", "mysterious woman", "Knows the truth but stays silent",
             "Pale and striking, with sad eyes", "A key figure in the case"),
            ("Professor Hale", "mastermind", "Brilliant but twisted, a careful planner",
             "An elegant gentleman hiding something", "A public figure who is the source of the crime"),
        ),
        "mood": "suspenseful",
        "tension_level": 8,
    },
    "romance": {
        "scene": (
            "Inspired by your idea \"{idea}\", Aren Vale begins a new chapter of life somewhere "
            "beautiful. A spring breeze carries the scent of flowers, and everything seems to be "
            "preparing for a meeting.\n\n"
            "You feel a quiet anticipation without knowing where it comes from. Sunlight falls through "
            "the leaves in dappled patterns, and music drifts from somewhere nearby.\n\n"
            "Just then, someone steps into view."
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "Gentle and kind, longing for true love",
             "Fresh-faced with a warm gaze", "A romantic searching for the one"),
            ("Julian Frost", "love interest", "Charming, with hidden depths",
             "Striking and distinctive", "A mysterious partner with a complicated past"),
            ("Nessa Crane", "best friend", "Loyal and supportive, full of advice",
             "Lively and cheerful", "The protagonist's closest friend"),
        ),
        "mood": "romantic",
        "tension_level": 4,
    },
    "horror": {
        "scene": (
            "Inspired by your idea \"{idea}\", on a dreadful night Aren Vale arrives somewhere that "
            "feels wrong. Heavy clouds smother the moon, and thin light throws strange shadows on the "
            "ground.\n\n"
            "Something ominous hangs in the air. Unexplained sounds come from the distance, and you "
            "feel watched. Every step is a step into danger.\n\n"
            "A cold wind passes, carrying the smell of decay."
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "Brave but easily startled, with a strong will to live",
             "Tense, moving carefully", "An ordinary person pulled into the supernatural"),
            ("The Pale Widow", "antagonist", "Malicious and vengeful",
             "Ghastly, flickering in and out of sight", "A spirit born of a great injustice"),
            ("Old Tamsin", "sage", "Knows much but speaks in riddles",
             "Odd and secretive, with piercing eyes", "One of the few who knows the truth"),
        ),
        "mood": "tense",
        "tension_level": 9,
    },
    "adventure": {
        "scene": (
            "Inspired by your idea \"{idea}\", Aren Vale prepares to set out into a world full of "
            "opportunity. Ahead lies a vast land of unknown challenges and treasure.\n\n"
            "Pack on your back and map in hand, you burn to explore. The horizon seems to call, and "
            "somewhere beyond it wait legendary secrets and untold riches.\n\n"
            "Then you hear hoofbeats: a merchant caravan is coming this way."
        ),
        "characters": _chars(
            ("Aren Vale", "protagonist", "Bold and quick-witted",
             "Well equipped and eager", "An explorer hungry for discovery"),
            ("Brann Oakes", "guide", "Experienced, knows every path",
             "Weathered, with a sharp eye", "A veteran guide of countless dangerous roads"),
            ("Red Vasko", "antagonist", "Cunning, fierce and greedy",
             "Armed to the teeth", "Chief of the bandits who hold the hills"),
        ),
        "mood": "adventurous",
        "tension_level": 6,
    },
}

_TONE_OPENINGS: dict[str, tuple[str, str, int]] = {
    "light": (
        "Sunlight spills across the land and everything feels bright with promise. {name} feels "
        "calm inside, ready for an easy-going journey.",
        "light-hearted", 3,
    ),
    "dark": (
        "Darkness hangs over the place and the shadows seem to hide secrets. {name} feels a sense "
        "of foreboding, yet steps forward anyway.",
        "dark", 8,
    ),
    "romantic": (
        "A soft breeze carries the scent of flowers and everything here feels romantic. A warmth "
        "rises in {name}'s heart, waiting for the meeting to come.",
        "romantic", 4,
    ),
    "humorous": (
        "Everything here looks a little absurd and {name} can't help smiling. This is going to be "
        "an adventure full of laughter.",
        "humorous", 2,
    ),
    "serious": (
        "The air is solemn and mysterious. {name} knows an important choice and a real challenge "
        "are close at hand.",
        "serious", 6,
    ),
}


def initial_story(config: StoryConfig, advanced: bool = False) -> StoryContent:
    """A complete opening scene from the genre (or tone) templates."""
    if advanced and isinstance(config, AdvancedStoryConfig):
        return _advanced_initial_story(config)
    template = _INITIAL_TEMPLATES[normalize_genre(config.genre)]
    idea = config.story_idea or "an untold tale"
    return StoryContent(
        scene=template["scene"].format(idea=idea),
        characters=[c.model_copy() for c in template["characters"]],
        mood=template["mood"],
        tension_level=template["tension_level"],
        achievements=["The Journey Begins"],
    )


def _advanced_initial_story(config: AdvancedStoryConfig) -> StoryContent:
    characters = ensure_character_names([
        Character(
            name=detail.name,
            role=detail.role or "companion",
            traits=detail.personality or "an enigmatic figure",
            appearance="Yet to be described",
            backstory="A past still to be revealed",
        )
        for detail in config.character_details
    ])
    if not characters:
        characters = ensure_character_names([
            Character(name=config.protagonist, role="protagonist", traits="determined"),
        ])
    name = characters[0].name
    environment = config.environment_details or config.setting or "a mysterious world"
    opening, mood, tension = _TONE_OPENINGS.get(config.tone, _TONE_OPENINGS["serious"])
    scene = (
        f"Inspired by your idea \"{config.story_idea or 'an untold tale'}\", in {environment}, "
        f"{name}'s story is about to begin. " + opening.format(name=name)
    )
    return StoryContent(
        scene=scene,
        characters=characters,
        mood=mood,
        tension_level=tension,
        achievements=["The Journey Begins"],
        story_length_target=config.story_length,
        preferred_ending_type=config.preferred_ending,
    )


# ── Next chapter ─────────────────────────────────────────

# difficulty -> (outcome prefix, tension change)
_OUTCOMES: dict[int, tuple[str, int]] = {
    1: ("Your careful choice brings a safe result.", -1),
    2: ("After some effort, things start to go your way.", 0),
    3: ("The decision brings an unexpected turn.", 1),
    4: ("The bold choice brings new challenges, and new opportunities.", 2),
    5: ("The daring move has dramatic consequences.", 3),
}

_GENRE_ELABORATIONS = {
    "sci-fi": "A holographic screen flickers to life, streaming strange data. This could be the key to the mystery.",
    "fantasy": "Motes of magic gather in the air and the echo of an ancient spell answers from afar. Your action has woken a sleeping power.",
    "mystery": "A new clue appears in front of you, one that could change everything you thought you knew about the case.",
    "romance": "A glance lingers a moment longer than it should, and something unspoken passes between you.",
    "horror": "Somewhere behind you, something that was not there before shifts in the dark.",
    "adventure": "The road ahead bends toward places no map has named.",
}

_MOOD_ELABORATIONS = (
    (("mysterious", "suspenseful"),
     "Shadows shift in the corners and unease fills the air. Something seems to be watching your every move."),
    (("tense", "intense"),
     "Your heartbeat pounds in your ears and time slows. Danger is closing in and every decision could mean life or death."),
    (("epic", "adventurous"),
     "The wheels of fate turn again. On the horizon, new challenges and opportunities are waiting."),
)


def _mood_for_tension(tension: int, current: str) -> str:
    if tension >= 8:
        return "tense"
    if tension >= 6:
        return "intense"
    if tension <= 3:
        return "calm"
    return current


def next_chapter(state: StoryState, choice: Choice) -> StoryContent:
    """Continuation from the choice difficulty and the story's genre."""
    prefix, tension_change = _OUTCOMES.get(choice.difficulty, _OUTCOMES[3])
    mood = state.mood or "mysterious"

    parts = [prefix, "", f"You chose \"{choice.text}\", and the world around you shifts."]
    for moods, text in _MOOD_ELABORATIONS:
        if mood in moods:
            parts.append(text)
            break
    else:
        parts.append("New possibilities open up. Your choices are shaping the future of this world.")
    genre = normalize_genre(state.genre or state.setting)
    parts.extend([_GENRE_ELABORATIONS[genre], "", "The road ahead is still unknown, but you have taken an important step."])

    tension = max(1, min(10, state.tension_level + tension_change))
    achievements = []
    if choice.difficulty >= 4:
        achievements.append(f"Bold Move - chose a difficulty {choice.difficulty} action")
    return StoryContent(
        scene="\n".join(parts),
        mood=_mood_for_tension(tension, mood),
        tension_level=tension,
        achievements=achievements,
    )


# ── Ending ───────────────────────────────────────────────

_ENDING_SCENES: dict[str, str] = {
    "success": (
        "After a long journey, every effort has finally paid off. {name} stands before the final "
        "victory and looks back on the road with gratitude. Every hard choice and every brave "
        "decision led to this bright ending.\n\nThe story closes in the light of hope. This is not "
        "an end, but the beginning of a new life."
    ),
    "failure": (
        "The original goal was never reached, yet the journey itself meant a great deal. {name} "
        "learned strength in defeat and found true courage in setbacks.\n\nSome stories are worth "
        "telling not for the victory but for the fight for what is right. An ending like this is "
        "bitter, and still beautiful."
    ),
    "neutral": (
        "Life has no perfect endings, only growth and change. {name} understands that this "
        "adventure is over, but the journey of life goes on.\n\nEvery choice shaped who they are "
        "now, and every experience became something precious. The story ends; life continues."
    ),
    "cliffhanger": (
        "Just as everything seemed settled, a new signal appears in the distance. {name} realises "
        "this was only the beginning of a larger story.\n\nNew mysteries surface and new "
        "challenges wait ahead. This ending is also the next beginning."
    ),
}

_ENDING_ACHIEVEMENTS: dict[str, list[str]] = {
    "success": ["Perfect Ending - achieved every main goal", "Hero's Path - completed an epic adventure"],
    "failure": ["Tragic Hero - unbroken even in defeat", "Sacrifice - fought bravely for what is right"],
    "neutral": ["Wise Choice - learned the art of balance", "Growth - gained something precious on the road"],
    "cliffhanger": ["To Be Continued - the story is not over", "A New Beginning - ready for the next adventure"],
}

_ENDING_MOODS = {"success": "triumphant", "failure": "solemn", "neutral": "calm", "cliffhanger": "suspenseful"}


def ending(state: StoryState, completion_type: CompletionType) -> StoryContent:
    name = state.characters[0].name if state.characters else "the traveller"
    return StoryContent(
        scene=_ENDING_SCENES[completion_type].format(name=name),
        achievements=list(_ENDING_ACHIEVEMENTS[completion_type]),
        mood=_ENDING_MOODS[completion_type],
    )


def summary(state: StoryState) -> str:
    name = state.characters[0].name if state.characters else "The traveller"
    text = f"{name}'s story ran for {state.chapter} chapter{'s' if state.chapter != 1 else ''}"
    if state.choices_made:
        text += f", shaped by {len(state.choices_made)} choices ending with \"{state.choices_made[-1]}\""
    if state.achievements:
        text += f", earning {len(state.achievements)} achievements"
    return text + "."
