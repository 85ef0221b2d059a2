"""Story generation endpoints.

The server keeps no session: every request carries the story state and the
conversation history, and every response returns the updated history.
"""

import uuid

from fastapi import APIRouter, HTTPException

from backend import stores
from storyloom import pipeline
from storyloom.llm import LLMError, MissingCredentialsError
from storyloom.pipeline import SessionContext, StoryCompletedError

from .models import (
    CharacterBody,
    ChoicesBody,
    EndingBody,
    InitialStoryBody,
    NextChapterBody,
    SessionBody,
    StateBody,
)

router = APIRouter(prefix="/stories")


def _session(body: SessionBody) -> SessionContext:
    return stores.build_session(body.ai_config, body.history, body.seed)


def _history(session: SessionContext) -> list[dict]:
    return [m.model_dump(mode="json") for m in session.history]


@router.post("/initial")
async def initial_story(body: InitialStoryBody):
    """Generate the opening scene and the chapter-1 story state."""
    session = _session(body)
    response = await pipeline.generate_initial_story(body.config, body.advanced, session=session)
    state = pipeline.initial_state(body.story_id or uuid.uuid4().hex, body.config, response.content)
    return {
        **response.model_dump(mode="json"),
        "state": state.model_dump(mode="json"),
        "history": _history(session),
    }


@router.post("/next")
async def next_chapter(body: NextChapterBody):
    """Generate the next chapter for a choice (content only, state unchanged)."""
    session = _session(body)
    try:
        response = await pipeline.generate_next_chapter(body.state, body.choice, session=session)
    except StoryCompletedError as e:
        raise HTTPException(409, str(e))
    return {**response.model_dump(mode="json"), "history": _history(session)}


@router.post("/choices")
async def choices(body: ChoicesBody):
    """Generate the choices for a scene (defaults to the state's current scene)."""
    session = _session(body)
    batch = await pipeline.present_choices(
        body.scene or body.state.current_scene,
        body.characters if body.characters is not None else body.state.characters,
        body.state,
        session=session,
    )
    return {
        "choices": [c.model_dump() for c in batch.choices],
        "source": batch.source,
        "stuck": batch.stuck,
    }


@router.post("/should-end")
async def should_end(body: StateBody):
    """Ask the ending detector whether the story should conclude."""
    return pipeline.should_story_end(body.state, session=_session(body))


@router.post("/ending")
async def ending(body: EndingBody):
    """Generate the closing scene for the given completion type."""
    session = _session(body)
    response = await pipeline.generate_story_ending(body.state, body.completion_type, session=session)
    return {**response.model_dump(mode="json"), "history": _history(session)}


@router.post("/continue")
async def continue_story(body: StateBody):
    """Push a stalled story on with a model-written twist."""
    session = _session(body)
    try:
        state = await pipeline.continue_story(body.state, session=session)
    except StoryCompletedError as e:
        raise HTTPException(409, str(e))
    except MissingCredentialsError as e:
        raise HTTPException(400, str(e))
    except LLMError as e:
        raise HTTPException(502, str(e))
    return {"state": state.model_dump(mode="json"), "history": _history(session)}


@router.post("/summary")
async def summary(body: StateBody):
    """Short summary of the story so far."""
    return {"summary": await pipeline.generate_story_summary(body.state, session=_session(body))}


@router.post("/character")
async def character(body: CharacterBody):
    """Develop one character from the story context."""
    return await pipeline.develop_character(
        body.character, body.context, body.interactions, session=_session(body),
    )


@router.post("/turn")
async def turn(body: NextChapterBody):
    """Apply a reader's choice: next chapter, state update and ending check."""
    session = _session(body)
    try:
        result = await pipeline.run_turn(body.state, body.choice, session=session)
    except StoryCompletedError as e:
        raise HTTPException(409, str(e))
    return {
        "state": result.state.model_dump(mode="json"),
        "content": result.content.model_dump(mode="json"),
        "source": result.source,
        "ending": result.ending.model_dump() if result.ending else None,
        "history": _history(session),
    }
