"""Enumerations shared by the video session engine."""

from enum import Enum


class MilestoneType(str, Enum):
    PAUSE = "PAUSE"
    QUIZ = "QUIZ"
    CHECKPOINT = "CHECKPOINT"


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"
    SHORT_ANSWER = "SHORT_ANSWER"
    FILL_IN_BLANK = "FILL_IN_BLANK"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    # Set server-side only; the engine never detects abandonment itself.
    ABANDONED = "ABANDONED"


class GateState(str, Enum):
    WATCHING = "WATCHING"
    MILESTONE_PENDING = "MILESTONE_PENDING"
    GATED = "GATED"
