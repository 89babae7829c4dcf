"""Client-side state engine for interactive video lessons."""

from .config import EngineSettings
from .engine import (
    EngineNotInitializedError,
    MilestoneValidationError,
    PlaybackEngine,
    clear_engine,
    get_engine,
    init_engine,
    set_engine,
)
from .enums import GateState, MilestoneType, QuestionType, SessionStatus
from .types import (
    AnswerVerdict,
    Milestone,
    Question,
    QuestionAttempt,
    SessionState,
    StoreSnapshot,
    Video,
    VideoSession,
    VideoState,
)

__all__ = [
    "AnswerVerdict",
    "EngineNotInitializedError",
    "EngineSettings",
    "GateState",
    "Milestone",
    "MilestoneType",
    "MilestoneValidationError",
    "PlaybackEngine",
    "Question",
    "QuestionAttempt",
    "QuestionType",
    "SessionState",
    "SessionStatus",
    "StoreSnapshot",
    "Video",
    "VideoSession",
    "VideoState",
    "clear_engine",
    "get_engine",
    "init_engine",
    "set_engine",
]
