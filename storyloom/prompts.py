"""Handlebars prompt rendering for the generation operations.

Each operation has a (system, user) template pair. Free text coming from the
story or the user is inserted with triple-stash ({{{scene}}}) so it is not
HTML-escaped.
"""

from collections.abc import Callable
from typing import Any

import pybars

from storyloom.models import AdvancedStoryConfig, Character, StoryConfig, StoryState

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

INITIAL_SIMPLE_SYSTEM = """\
You are a professional interactive-fiction writer. The user has only a rough \
idea; expand it into a complete and engaging {{{genre}}} story world.

Your tasks:
1. Create 3-5 characters with depth, each with a real proper name
2. Design a fitting background and environment
3. Write a gripping opening scene (500-800 words)
4. Stay true to the conventions of {{{genre}}}
5. End the opening on a point where the reader must choose

Output must be valid JSON:
{
  "scene": "the opening scene with setting, characters, plot and suspense",
  "characters": [
    {"name": "...", "role": "protagonist/ally/villain/mentor", "traits": "...", "appearance": "...", "backstory": "..."}
  ],
  "setting_details": "the background you created",
  "mood": "the atmosphere",
  "tension_level": 1-10,
  "achievements": ["a fitting first achievement"]
}\
"""

INITIAL_SIMPLE_USER = """\
Write the opening of a complete {{{genre}}} interactive story based on this idea:

**Genre**: {{{genre}}}
**Idea**: {{{story_idea}}}
{{#if main_goal}}**Main goal**: {{{main_goal}}}
{{/if}}
Create vivid characters, a fitting world and an opening that pulls the reader in.\
"""

INITIAL_ADVANCED_SYSTEM = """\
You are a professional interactive-fiction writer. Create a {{{genre}}} story \
opening that follows the user's detailed settings exactly:
- Tone: {{{tone}}}
- Length: {{{story_length}}}
- Preferred ending: {{{preferred_ending}}}
- Character count: {{character_count}}
- Environment: {{{environment_details}}}

Requirements:
1. Keep every provided character's name, role and personality unchanged
2. Write a 500-800 word opening scene in the requested tone
3. Reflect the described environment
4. Lay groundwork for {{chapter_span}} chapters

Output must be valid JSON:
{
  "scene": "the opening scene",
  "characters": [the provided characters, with appearance and backstory added],
  "mood": "an atmosphere matching the {{{tone}}} tone",
  "tension_level": 1-10,
  "achievements": ["a fitting first achievement"],
  "story_length_target": "{{{story_length}}}",
  "preferred_ending_type": "{{{preferred_ending}}}"
}\
"""

INITIAL_ADVANCED_USER = """\
Write a precise interactive story opening for these settings:

**Genre**: {{{genre}}}
**Core idea**: {{{story_idea}}}
**Tone**: {{{tone}}}
**Length**: {{{story_length}}}
**Preferred ending**: {{{preferred_ending}}}

**Characters** ({{character_count}}):
{{#each characters}}
- {{{name}}} - {{{role}}} - {{{personality}}}
{{/each}}

**Environment**: {{{environment_details}}}
**Special requirements**: {{{special_requirements}}}\
"""

NEXT_CHAPTER_SYSTEM = """\
You are a professional novelist continuing a story set in {{{setting}}}.

Current state:
- Chapter {{chapter}}
- Mood: {{{mood}}}
- Tension: {{tension_level}}/10
- Choices so far: {{#each choices_made}}{{{this}}}; {{/each}}

Requirements:
1. Continue the story from the user's choice (300-600 words)
2. Keep the story coherent and logical
3. Offer 2-4 new choices
4. You may introduce new characters or develop existing ones
5. Adjust mood and tension as fits the events
6. Unlock an achievement when something special happens

Output must be valid JSON:
{
  "scene": "the new scene",
  "choices": [{"id": 1, "text": "...", "description": "...", "difficulty": 1-5}],
  "mood": "the new mood",
  "tension_level": 1-10,
  "new_characters": [],
  "achievements": []
}\
"""

NEXT_CHAPTER_USER = """\
The reader chose: "{{{choice.text}}}" - {{{choice.description}}}

Current situation:
{{{current_scene}}}

Characters:
{{#each characters}}
{{{name}}} ({{{role}}}): {{{traits}}}
{{/each}}

Continue the story from this choice.\
"""

CHOICES_SYSTEM = """\
You design story branches. Given the current scene and characters, produce \
meaningful choices.

Requirements:
1. Each choice leads somewhere different and has its own difficulty
2. Spread difficulty sensibly across 1-5
3. Take the characters' abilities into account
4. Keep the story tense and interesting

Output must be a valid JSON array:
[
  {"id": 1, "text": "the choice", "description": "details", "consequences": "a hint of what may follow", "difficulty": 1-5}
]\
"""

CHOICES_USER = """\
Current scene: {{{scene}}}

Characters: {{#each characters}}{{{name}}} ({{{role}}}), {{/each}}

Story state: chapter {{chapter}}, mood {{{mood}}}, tension {{tension_level}}/10

Generate exactly {{count}} choices.\
"""

ENDING_SYSTEM = """\
You write story endings. Create a memorable ending for this story.

Requirements:
1. {{{ending_brief}}}
2. Echo the premise and themes of the opening
3. Show how the characters have grown
4. Give the reader emotional closure
5. Stay consistent with the story so far

Output must be valid JSON:
{
  "scene": "the ending scene",
  "completion_summary": "a summary of the story",
  "character_outcomes": "what became of the main characters",
  "achievements": ["final achievements"],
  "mood": "the closing mood"
}\
"""

ENDING_USER = """\
Write the ending for this story:

Chapter: {{chapter}}
Setting: {{{setting}}}
Main characters: {{#each characters}}{{{name}}} ({{{role}}}), {{/each}}
Recent choices: {{#last choices_made 5}}{{{this}}}; {{/last}}
Achievements: {{#each achievements}}{{{this}}}; {{/each}}
Mood: {{{mood}}}
Ending type: {{ending_type}}\
"""

CONTINUE_SYSTEM = """\
You keep stalled stories moving. Create a natural twist that pushes the plot \
forward while staying consistent with what came before.

Output must be valid JSON:
{
  "current_scene": "the new scene, including the twist",
  "mood": "the current mood",
  "tension_level": 1-10,
  "achievements": [],
  "scene_type": "action/dialogue/exploration/reflection/climax"
}\
"""

CONTINUE_USER = """\
Chapter {{chapter}}, setting {{{setting}}}
Characters: {{#each characters}}{{{name}}} ({{{role}}}), {{/each}}
Current scene: {{{current_scene}}}
Mood: {{{mood}}}, tension {{tension_level}}
Recent choices: {{#last choices_made 3}}{{{this}}}; {{/last}}

The story has stalled. Create a twist that moves it forward.\
"""

SUMMARY_SYSTEM = "You analyse stories. Write a short summary and analysis of this story."

SUMMARY_USER = """\
Story: {{story_id}}
Chapters: {{chapter}}
Choices: {{#each choices_made}}{{{this}}}; {{/each}}
Achievements: {{#each achievements}}{{{this}}}; {{/each}}

Write a summary of the story.\
"""

CHARACTER_SYSTEM = """\
You develop characters. Update this character's traits, relationships and arc \
based on how the story has unfolded.

Output must be valid JSON:
{"name": "...", "role": "...", "traits": "...", "appearance": "...", "backstory": "..."}\
"""

CHARACTER_USER = """\
Character: {{{name}}}
Current traits: {{{traits}}}
Story context: {{{context}}}
Interactions: {{#each interactions}}{{{this}}}; {{/each}}\
"""

ENDING_BRIEFS = {
    "success": "Write a satisfying victory that resolves the main conflict",
    "failure": "Write a meaningful tragedy where courage and sacrifice still matter",
    "neutral": "Write an open ending where life goes on but the characters have changed",
    "cliffhanger": "Resolve the current crisis but open a new mystery",
}

_CHAPTER_SPANS = {"short": "5-8", "medium": "8-12", "long": "12-20"}


# ── Context builders ─────────────────────────────────────


def _characters(chars: list[Character]) -> list[dict[str, Any]]:
    return [c.model_dump() for c in chars]


def state_context(state: StoryState, **extra: Any) -> dict[str, Any]:
    """Template variables for every prompt that works on a running story."""
    ctx: dict[str, Any] = {
        "story_id": state.story_id,
        "current_scene": state.current_scene,
        "setting": state.setting or state.genre or "an unknown world",
        "chapter": state.chapter,
        "mood": state.mood,
        "tension_level": state.tension_level,
        "characters": _characters(state.characters),
        "choices_made": list(state.choices_made),
        "achievements": list(state.achievements),
    }
    ctx.update(extra)
    return ctx


def initial_context(config: StoryConfig) -> dict[str, Any]:
    ctx: dict[str, Any] = {
        "genre": config.genre,
        "story_idea": config.story_idea,
        "main_goal": config.main_goal or "",
    }
    if isinstance(config, AdvancedStoryConfig):
        ctx.update({
            "tone": config.tone,
            "story_length": config.story_length,
            "preferred_ending": config.preferred_ending,
            "character_count": config.character_count,
            "characters": [d.model_dump() for d in config.character_details],
            "environment_details": config.environment_details,
            "special_requirements": config.special_requirements or "none",
            "chapter_span": _CHAPTER_SPANS[config.story_length],
        })
    return ctx
