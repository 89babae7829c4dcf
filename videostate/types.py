"""
Type definitions for videos, milestones, sessions and the cached aggregates.

Aggregates (VideoState, SessionState) are replaced as a whole by the store
on every change. Treat instances handed to subscribers as read-only.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from .enums import MilestoneType, QuestionType, SessionStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Authored content
# =============================================================================


@dataclass(frozen=True)
class Video:
    """Descriptor for one video. Immutable until refetched."""

    id: str
    title: str
    duration: float | None = None  # seconds, None while unknown
    order: int = 0
    description: str | None = None
    video_url: str | None = None
    video_group_id: str | None = None


@dataclass(frozen=True)
class Milestone:
    """A point in a video's timeline."""

    id: str
    video_id: str
    timestamp: float  # seconds
    title: str
    type: MilestoneType
    order: int = 0
    description: str | None = None


@dataclass(frozen=True)
class Question:
    """A question attached to exactly one milestone."""

    id: str
    milestone_id: str
    type: QuestionType
    text: str
    # Type-specific payload. Answer keys are stripped on the student read path.
    data: Mapping[str, Any] = field(default_factory=dict)
    explanation: str | None = None
    points: int | None = None


@dataclass(frozen=True)
class VideoContent:
    """A video with its milestones and questions as returned by the API."""

    video: Video
    milestones: list[Milestone]
    questions: dict[str, list[Question]]  # milestone_id -> questions


# =============================================================================
# Student sessions
# =============================================================================


@dataclass(frozen=True)
class VideoSession:
    """One student's run through one video."""

    id: str
    video_id: str
    student_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    current_position: float = 0.0
    total_watch_time: float = 0.0
    started_at: datetime | None = None
    last_seen_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class QuestionAttempt:
    """Latest verdict for one question within a session."""

    question_id: str
    is_correct: bool
    score: float
    submitted_at: datetime
    milestone_id: str | None = None
    explanation: str | None = None


@dataclass(frozen=True)
class MilestoneReached:
    """Server acknowledgement that a milestone was reached."""

    session_id: str
    milestone_id: str
    timestamp: float
    reached_at: datetime | None = None


@dataclass(frozen=True)
class SessionRecord:
    """A session as returned by the API, with its nested progress."""

    session: VideoSession
    reached_milestone_ids: list[str] = field(default_factory=list)
    attempts: list[QuestionAttempt] = field(default_factory=list)


@dataclass(frozen=True)
class AnswerVerdict:
    """Authoritative result of an answer submission."""

    is_correct: bool
    score: float
    explanation: str | None = None


# =============================================================================
# Cached aggregates
# =============================================================================


@dataclass(frozen=True)
class VideoMetadata:
    is_loading: bool = False
    error: str | None = None
    questions_per_milestone: Mapping[str, int] = field(default_factory=dict)
    total_milestones: int = 0
    total_questions: int = 0
    last_updated: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class VideoState:
    """Cached aggregate for one video's authored content."""

    video_id: str
    video: Video | None = None  # None until the first successful fetch
    milestones: tuple[Milestone, ...] = ()
    questions: Mapping[str, tuple[Question, ...]] = field(default_factory=dict)
    metadata: VideoMetadata = field(default_factory=VideoMetadata)

    def questions_for(self, milestone_id: str) -> tuple[Question, ...]:
        return self.questions.get(milestone_id, ())

    def find_milestone(self, milestone_id: str) -> Milestone | None:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        return None


@dataclass(frozen=True)
class SessionMetadata:
    completion_percentage: int = 0
    milestones_reached: int = 0
    correct_answers: int = 0
    total_answers: int = 0
    error: str | None = None
    last_updated: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SessionState:
    """Cached aggregate for one student's session."""

    session: VideoSession
    milestone_progress: frozenset[str] = frozenset()
    question_attempts: Mapping[str, QuestionAttempt] = field(default_factory=dict)
    current_milestone: Milestone | None = None
    metadata: SessionMetadata = field(default_factory=SessionMetadata)


@dataclass(frozen=True)
class StoreSnapshot:
    """Read-only view of the whole store handed to store-wide subscribers."""

    videos: Mapping[str, VideoState]
    sessions: Mapping[str, SessionState]

    @classmethod
    def of(cls, videos: dict, sessions: dict) -> "StoreSnapshot":
        return cls(
            videos=MappingProxyType(dict(videos)),
            sessions=MappingProxyType(dict(sessions)),
        )
