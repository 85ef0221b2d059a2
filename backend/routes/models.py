"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, ConfigDict, Field

from storyloom.models import (
    AdvancedStoryConfig,
    Character,
    Choice,
    CompletionType,
    ConversationMessage,
    ModelConfig,
    StoryState,
    SummaryState,
)


class SessionBody(BaseModel):
    """Fields every story request carries: the session is passed in, not kept."""

    ai_config: ModelConfig | None = Field(default=None, alias="model_config")
    history: list[ConversationMessage] = Field(default_factory=list)
    seed: int | None = None

    model_config = ConfigDict(populate_by_name=True)


class InitialStoryBody(SessionBody):
    config: AdvancedStoryConfig
    advanced: bool = False
    story_id: str | None = None


class NextChapterBody(SessionBody):
    state: StoryState
    choice: Choice


class ChoicesBody(SessionBody):
    state: StoryState
    scene: str | None = None
    characters: list[Character] | None = None


class StateBody(SessionBody):
    state: StoryState


class EndingBody(SessionBody):
    state: StoryState
    completion_type: CompletionType


class CharacterBody(SessionBody):
    character: Character
    context: str = ""
    interactions: list[str] = Field(default_factory=list)


class SaveContextBody(BaseModel):
    state: StoryState
    history: list[ConversationMessage] = Field(default_factory=list)
    ai_config: ModelConfig = Field(default_factory=ModelConfig, alias="model_config")
    title: str | None = None
    is_auto_save: bool = False
    summary_state: SummaryState | None = None

    model_config = ConfigDict(populate_by_name=True)


class RenameContext(BaseModel):
    title: str
