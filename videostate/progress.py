"""Derived progress figures for sessions."""

from typing import Collection, Iterable

from .enums import SessionStatus
from .types import QuestionAttempt, Video, VideoSession


def calculate_completion_percentage(
    session: VideoSession | None, video: Video | None
) -> int:
    """
    Percentage of the video covered by the session position.

    Completed sessions always report 100. Without a positive duration
    there is nothing to measure against, so the result is 0.
    """
    if session is None:
        return 0
    if session.status == SessionStatus.COMPLETED:
        return 100

    duration = video.duration if video else None
    if not duration or duration <= 0 or session.current_position <= 0:
        return 0

    percentage = round(session.current_position / duration * 100)
    return min(100, max(0, percentage))


def calculate_answer_stats(attempts: Iterable[QuestionAttempt]) -> tuple[int, int]:
    """Return (correct, total) over the latest attempt per question."""
    correct = 0
    total = 0
    for attempt in attempts:
        total += 1
        if attempt.is_correct:
            correct += 1
    return correct, total


def calculate_milestones_reached(milestone_progress: Collection[str] | None) -> int:
    """Number of distinct milestones the session has reached."""
    return len(milestone_progress) if milestone_progress else 0
