import os
import random
from pathlib import Path

import pytest

from storyloom.models import Character, ModelConfig, StoryState
from storyloom.pipeline import Pacing, SessionContext
from storyloom.storage import ContextStore, FileBlobStore

TEST_DATA_DIR = Path("data-tests")

# backend.app builds a default app on import; keep it out of ./data
os.environ.setdefault("DATA_DIR", str(TEST_DATA_DIR))
for var in ("STORYLOOM_API_KEY", "STORYLOOM_PROVIDER", "STORYLOOM_MODEL", "STORYLOOM_BASE_URL"):
    os.environ.pop(var, None)


# ---------------------------------------------------------------------------
# StubLLM: dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A queued exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, list[dict]]] = []

    async def __call__(self, stage: str, messages: list[dict]) -> str:
        self.calls.append((stage, messages))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed: catches missing LLM calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_state(**overrides) -> StoryState:
    fields = {
        "story_id": "s1",
        "current_scene": "Mist curls around the old watchtower as night falls.",
        "characters": [
            Character(name="Aren Vale", role="protagonist", traits="curious"),
            Character(name="Mira Quell", role="guide", traits="wary"),
        ],
        "setting": "a border kingdom",
        "genre": "fantasy",
        "chapter": 3,
        "choices_made": ["Enter the tower", "Light a torch"],
        "achievements": ["The Journey Begins"],
        "mood": "mysterious",
        "tension_level": 5,
    }
    fields.update(overrides)
    return StoryState(**fields)


@pytest.fixture
def state() -> StoryState:
    return make_state()


@pytest.fixture
def state_factory():
    """make_state(**overrides) for tests that need several variants."""
    return make_state


@pytest.fixture
def session() -> SessionContext:
    """A session with no credentials: every generation takes the fallback path."""
    return SessionContext(
        model_config=ModelConfig(),
        rng=random.Random(7),
        pacing=Pacing.instant(),
    )


@pytest.fixture
def store(tmp_path: Path) -> ContextStore:
    return ContextStore(FileBlobStore(tmp_path))


@pytest.fixture
def stub_llm():
    """The StubLLM class: stub_llm({"stage": [response, ...]})."""
    return StubLLM
