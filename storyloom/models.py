"""Core domain models.

Every engine, the context store and the HTTP layer operate on these types.
Pydantic is used for validation and serialisation at every data boundary;
datetimes serialise to ISO strings and are re-hydrated by model_validate.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
SceneType = Literal["action", "dialogue", "exploration", "reflection", "climax"]
CompletionType = Literal["success", "failure", "neutral", "cliffhanger"]
GoalStatus = Literal["pending", "in_progress", "completed", "failed"]
Provider = Literal[
    "openai", "anthropic", "google", "openrouter",
    "deepseek", "moonshot", "zhipu", "custom",
]

# Reserved choice id meaning "head toward the ending" rather than a branch.
ENDING_CHOICE_ID = -1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Character(BaseModel):
    name: str
    role: str = ""
    traits: str = ""
    appearance: str | None = None
    backstory: str | None = None


class StoryGoal(BaseModel):
    id: str
    description: str
    type: Literal["main", "sub", "personal", "relationship"] = "main"
    priority: Literal["high", "medium", "low"] = "medium"
    status: GoalStatus = "pending"
    completion_chapter: int | None = None


class StoryState(BaseModel):
    """The authoritative narrative snapshot for one session."""

    story_id: str
    current_scene: str
    characters: list[Character] = Field(default_factory=list)
    setting: str = ""
    genre: str | None = None
    chapter: int = Field(default=1, ge=1)
    choices_made: list[str] = Field(default_factory=list)
    achievements: list[str] = Field(default_factory=list)
    mood: str = "mysterious"
    tension_level: int = Field(default=5, ge=1, le=10)
    scene_type: SceneType = "exploration"
    needs_choice: bool = True
    is_completed: bool = False
    completion_type: CompletionType | None = None
    story_progress: float = Field(default=0.0, ge=0, le=100)
    main_goal_status: GoalStatus = "pending"
    story_goals: list[StoryGoal] = Field(default_factory=list)


class Choice(BaseModel):
    id: int
    text: str
    description: str = ""
    difficulty: int = Field(default=3, ge=1, le=5)
    consequences: str | None = None

    @property
    def is_ending(self) -> bool:
        return self.id == ENDING_CHOICE_ID


class ConversationMessage(BaseModel):
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    chapter: int | None = None


class ModelConfig(BaseModel):
    """Which model to call and how. An empty api_key means "no credentials"."""

    provider: Provider = "openai"
    model: str = "gpt-4"
    api_key: str = ""
    base_url: str | None = None
    temperature: float = 0.8
    max_tokens: int = 2000
    custom_prompt: str | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)


# ---------------------------------------------------------------------------
# Story configuration supplied by the caller when a session starts
# ---------------------------------------------------------------------------

class CharacterDetail(BaseModel):
    name: str = ""
    role: str = ""
    personality: str = ""


class StoryConfig(BaseModel):
    genre: str = "adventure"
    story_idea: str = ""
    main_goal: str | None = None


class AdvancedStoryConfig(StoryConfig):
    protagonist: str = ""
    setting: str = ""
    special_requirements: str = ""
    character_count: int = 3
    character_details: list[CharacterDetail] = Field(default_factory=list)
    environment_details: str = ""
    preferred_ending: Literal[
        "open", "success", "failure", "surprise", "romantic", "tragic"
    ] = "open"
    story_length: Literal["short", "medium", "long"] = "medium"
    tone: Literal["light", "serious", "humorous", "dark", "romantic"] = "serious"
    story_goals: list[StoryGoal] = Field(default_factory=list)


class StoryContent(BaseModel):
    """Structured payload produced by a generation call (model or fallback)."""

    scene: str
    choices: list[Choice] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    new_characters: list[Character] = Field(default_factory=list)
    mood: str | None = None
    tension_level: int | None = Field(default=None, ge=1, le=10)
    achievements: list[str] = Field(default_factory=list)
    setting_details: str | None = None
    story_length_target: str | None = None
    preferred_ending_type: str | None = None


class StoryGenerationResponse(BaseModel):
    success: bool
    content: StoryContent | None = None
    error: str | None = None
    source: Literal["model", "fallback"] = "fallback"


class EndingDecision(BaseModel):
    should_end: bool
    reason: str = ""
    suggested_type: CompletionType = "neutral"
    confidence: int = 0
    reasons: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class SummaryState(BaseModel):
    history_summary: str = ""
    summary_trigger_count: int = 0
    last_summary_index: int = 0


class SavedStoryContext(BaseModel):
    """The persisted unit: one story session plus everything needed to resume it."""

    id: str
    title: str
    story_state: StoryState
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    ai_config: ModelConfig = Field(alias="model_config", default_factory=ModelConfig)
    save_time: datetime
    last_play_time: datetime
    version: int
    is_auto_save: bool = False
    play_time: int = 0
    thumbnail: str = ""
    genre: str = ""
    summary_state: SummaryState | None = None

    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Names a model (or a sloppy config) uses when it has not named a character.
_PLACEHOLDER_NAME_RE = re.compile(
    r"^(?:|protagonist|main character|hero|heroine|character\s*\d*|"
    r"unknown|unnamed|npc\s*\d*|name|character name|\?+)$",
    re.IGNORECASE,
)


def is_placeholder_name(name: str) -> bool:
    return bool(_PLACEHOLDER_NAME_RE.match(name.strip()))
