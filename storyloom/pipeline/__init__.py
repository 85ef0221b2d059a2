"""Story generation pipeline.

orchestrator: the generation operations and the SessionContext they share.
turn        : one reader decision applied end to end.
"""

from .orchestrator import (  # noqa: F401
    ChoiceBatch,
    Pacing,
    SessionContext,
    StoryCompletedError,
    coerce_content,
    continue_story,
    develop_character,
    generate_choices,
    generate_initial_story,
    generate_next_chapter,
    generate_story_ending,
    generate_story_summary,
    initial_state,
    present_choices,
    should_story_end,
)
from .turn import (  # noqa: F401
    TurnResult,
    analyze_scene,
    calculate_progress,
    merge_chapter,
    run_turn,
    update_goal_status,
)
