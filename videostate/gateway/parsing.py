"""Parse camelCase API payloads into engine dataclasses."""

from datetime import datetime

from ..enums import MilestoneType, QuestionType, SessionStatus
from ..types import (
    AnswerVerdict,
    Milestone,
    MilestoneReached,
    Question,
    QuestionAttempt,
    SessionRecord,
    Video,
    VideoContent,
    VideoSession,
    utc_now,
)

# Keys inside question data that reveal the answer
ANSWER_KEY_FIELDS = frozenset(
    {"correctAnswer", "correctAnswerIndex", "correctAnswers", "caseSensitive"}
)


def _parse_datetime(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    # fromisoformat only accepts a trailing "Z" from Python 3.11 on
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _optional_float(value) -> float | None:
    if value is None:
        return None
    return float(value)


def parse_video(data: dict) -> Video:
    return Video(
        id=str(data["id"]),
        title=data.get("title", ""),
        duration=_optional_float(data.get("duration")),
        order=int(data.get("order") or 0),
        description=data.get("description"),
        video_url=data.get("videoUrl"),
        video_group_id=data.get("videoGroupId"),
    )


def parse_milestone(data: dict, video_id: str | None = None) -> Milestone:
    """Parse a milestone dict. Raises ValueError for unknown milestone types."""
    try:
        milestone_type = MilestoneType(data["type"])
    except ValueError:
        raise ValueError(f"Unknown milestone type: {data['type']}") from None

    return Milestone(
        id=str(data["id"]),
        video_id=str(data.get("videoId") or video_id),
        timestamp=float(data["timestamp"]),
        title=data.get("title", ""),
        type=milestone_type,
        order=int(data.get("order") or 0),
        description=data.get("description"),
    )


def student_safe_question_data(data: dict | None) -> dict:
    """
    Strip answer keys from question data.

    Options survive as labels only; a per-option isCorrect flag is dropped.
    """
    if not data:
        return {}

    safe = {k: v for k, v in data.items() if k not in ANSWER_KEY_FIELDS}
    options = safe.get("options")
    if isinstance(options, list):
        safe["options"] = [
            {k: v for k, v in option.items() if k != "isCorrect"}
            if isinstance(option, dict)
            else option
            for option in options
        ]
    return safe


def parse_question(
    data: dict, milestone_id: str | None = None, include_answer_key: bool = False
) -> Question:
    """Parse a question dict. Raises ValueError for unknown question types."""
    try:
        question_type = QuestionType(data["type"])
    except ValueError:
        raise ValueError(f"Unknown question type: {data['type']}") from None

    # Backend returns 'text'; older payloads used 'question'
    text = data.get("text") or data.get("question") or ""
    raw_data = data.get("questionData") or {}
    if data.get("options") and "options" not in raw_data:
        raw_data = {**raw_data, "options": data["options"]}

    return Question(
        id=str(data["id"]),
        milestone_id=str(data.get("milestoneId") or milestone_id),
        type=question_type,
        text=text,
        data=dict(raw_data) if include_answer_key else student_safe_question_data(raw_data),
        explanation=data.get("explanation"),
        points=data.get("points"),
    )


def parse_video_content(data: dict, include_answer_keys: bool = False) -> VideoContent:
    """Parse a video with nested milestones (and their nested questions)."""
    video = parse_video(data)

    milestones = []
    questions: dict[str, list[Question]] = {}
    for raw in data.get("milestones") or []:
        milestone = parse_milestone(raw, video_id=video.id)
        milestones.append(milestone)
        questions[milestone.id] = [
            parse_question(q, milestone.id, include_answer_keys)
            for q in raw.get("questions") or []
        ]

    milestones.sort(key=lambda m: m.timestamp)
    return VideoContent(video=video, milestones=milestones, questions=questions)


def parse_attempt(data: dict) -> QuestionAttempt:
    return QuestionAttempt(
        question_id=str(data["questionId"]),
        is_correct=bool(data.get("isCorrect")),
        score=float(data.get("score") or 0),
        submitted_at=(
            _parse_datetime(data.get("submittedAt"))
            or _parse_datetime(data.get("createdAt"))
            or utc_now()
        ),
        milestone_id=data.get("milestoneId"),
        explanation=data.get("feedback"),
    )


def parse_session(data: dict) -> VideoSession:
    position = data.get("currentPosition")
    if position is None:
        position = data.get("currentTime", 0)

    return VideoSession(
        id=str(data["id"]),
        video_id=str(data["videoId"]),
        student_id=str(data.get("studentId", "")),
        status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
        current_position=float(position or 0),
        total_watch_time=float(data.get("totalWatchTime") or 0),
        started_at=_parse_datetime(data.get("startedAt")),
        last_seen_at=_parse_datetime(data.get("lastSeenAt")),
        completed_at=_parse_datetime(data.get("completedAt")),
    )


def parse_session_record(data: dict) -> SessionRecord:
    """Parse a session with its nested milestone progress and attempts."""
    reached = []
    for progress in data.get("milestoneProgress") or []:
        milestone_id = str(progress["milestoneId"])
        if milestone_id not in reached:
            reached.append(milestone_id)

    # Latest attempt per question wins
    attempts: dict[str, QuestionAttempt] = {}
    for raw in data.get("questionAttempts") or []:
        attempt = parse_attempt(raw)
        previous = attempts.get(attempt.question_id)
        if previous is None or attempt.submitted_at >= previous.submitted_at:
            attempts[attempt.question_id] = attempt

    return SessionRecord(
        session=parse_session(data),
        reached_milestone_ids=reached,
        attempts=list(attempts.values()),
    )


def parse_milestone_reached(data: dict, session_id: str) -> MilestoneReached:
    return MilestoneReached(
        session_id=str(data.get("sessionId") or session_id),
        milestone_id=str(data["milestoneId"]),
        timestamp=float(data.get("timestamp") or 0),
        reached_at=_parse_datetime(data.get("reachedAt")),
    )


def parse_verdict(data: dict) -> AnswerVerdict:
    return AnswerVerdict(
        is_correct=bool(data["isCorrect"]),
        score=float(data.get("score") or 0),
        explanation=data.get("explanation"),
    )
