"""Test fixtures shared by every test package: an in-memory gateway and a seeded lesson video."""

import asyncio
from dataclasses import replace

import pytest

from videostate.config import EngineSettings
from videostate.engine import PlaybackEngine
from videostate.enums import MilestoneType, QuestionType, SessionStatus
from videostate.gateway import NotFoundError
from videostate.store import VideoStateStore
from videostate.types import (
    AnswerVerdict,
    Milestone,
    MilestoneReached,
    Question,
    SessionRecord,
    Video,
    VideoContent,
    VideoSession,
)

VIDEO_ID = "video-1"


def lesson_content(video_id: str = VIDEO_ID, duration: float | None = 300.0) -> VideoContent:
    """A 5 minute video with a PAUSE at 30s, a QUIZ at 120s and a CHECKPOINT at 240s."""
    milestones = [
        Milestone(id="m-pause", video_id=video_id, timestamp=30.0, title="Think", type=MilestoneType.PAUSE),
        Milestone(id="m-quiz", video_id=video_id, timestamp=120.0, title="Quiz", type=MilestoneType.QUIZ),
        Milestone(id="m-check", video_id=video_id, timestamp=240.0, title="Done", type=MilestoneType.CHECKPOINT),
    ]
    questions = {
        "m-pause": [],
        "m-quiz": [
            Question(
                id="q-1",
                milestone_id="m-quiz",
                type=QuestionType.MULTIPLE_CHOICE,
                text="Which one?",
                data={"options": ["A", "B", "C"]},
            ),
            Question(
                id="q-2",
                milestone_id="m-quiz",
                type=QuestionType.TRUE_FALSE,
                text="True?",
            ),
        ],
        "m-check": [],
    }
    return VideoContent(
        video=Video(id=video_id, title="Intro lesson", duration=duration),
        milestones=milestones,
        questions=questions,
    )


class FakeGateway:
    """
    In-memory stand-in for VideoGateway.

    Records every call in `calls`. Put an exception in `failures[method]` to
    make that method raise, and set `hold` to an asyncio.Event to keep calls
    in flight until the event is set. With `manual` on, every call waits on
    its own event in `waiting`, so a test can release calls in any order.
    """

    def __init__(self):
        self.videos: dict[str, VideoContent] = {}
        self.sessions: dict[str, SessionRecord] = {}  # video_id -> record
        self.verdicts: dict[str, AnswerVerdict] = {}
        self.failures: dict[str, Exception] = {}
        self.hold: asyncio.Event | None = None
        self.manual = False
        self.waiting: list[asyncio.Event] = []
        self.echo_position: float | None = None
        self.calls: list[tuple] = []
        self.closed = False
        self._next_id = 0

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if self.manual:
            release = asyncio.Event()
            self.waiting.append(release)
            await release.wait()
        if self.hold is not None:
            await self.hold.wait()
        if method in self.failures:
            raise self.failures[method]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-new-{self._next_id}"

    def _record_for_session(self, session_id: str) -> SessionRecord:
        for record in self.sessions.values():
            if record.session.id == session_id:
                return record
        raise NotFoundError(f"Session not found: {session_id}", status_code=404)

    def _save(self, record: SessionRecord) -> SessionRecord:
        self.sessions[record.session.video_id] = record
        return record

    async def get_video(self, video_id):
        await self._enter("get_video", video_id)
        if video_id not in self.videos:
            raise NotFoundError(f"Video not found: {video_id}", status_code=404)
        return self.videos[video_id]

    async def get_session_by_video(self, video_id):
        await self._enter("get_session_by_video", video_id)
        return self.sessions.get(video_id)

    async def start_session(self, video_id):
        await self._enter("start_session", video_id)
        session = VideoSession(id=f"session-{video_id}", video_id=video_id, student_id="student-1")
        return self._save(SessionRecord(session=session))

    async def update_progress(self, session_id, current_time, total_watch_time):
        await self._enter("update_progress", session_id, current_time, total_watch_time)
        record = self._record_for_session(session_id)
        position = current_time if self.echo_position is None else self.echo_position
        session = replace(
            record.session, current_position=position, total_watch_time=total_watch_time
        )
        return self._save(replace(record, session=session))

    async def mark_milestone(self, session_id, milestone_id, timestamp):
        await self._enter("mark_milestone", session_id, milestone_id, timestamp)
        return MilestoneReached(
            session_id=session_id, milestone_id=milestone_id, timestamp=timestamp
        )

    async def submit_answer(self, session_id, question_id, milestone_id, answer):
        await self._enter("submit_answer", session_id, question_id, milestone_id, answer)
        return self.verdicts.get(question_id, AnswerVerdict(is_correct=False, score=0.0))

    async def complete_session(self, session_id, final_time, total_watch_time):
        await self._enter("complete_session", session_id, final_time, total_watch_time)
        record = self._record_for_session(session_id)
        session = replace(
            record.session,
            status=SessionStatus.COMPLETED,
            current_position=final_time,
            total_watch_time=total_watch_time,
        )
        return self._save(replace(record, session=session))

    async def create_milestone(self, video_id, *, timestamp, title, type, description=None):
        await self._enter("create_milestone", video_id, timestamp)
        return Milestone(
            id=self._new_id("m"),
            video_id=video_id,
            timestamp=timestamp,
            title=title,
            type=MilestoneType(type),
            description=description,
        )

    async def update_milestone(self, milestone_id, **changes):
        await self._enter("update_milestone", milestone_id)
        for content in self.videos.values():
            for milestone in content.milestones:
                if milestone.id == milestone_id:
                    return replace(milestone, **changes)
        raise NotFoundError(f"Milestone not found: {milestone_id}", status_code=404)

    async def create_question(
        self, milestone_id, *, type, question, correct_answer, options=None, explanation=None
    ):
        await self._enter("create_question", milestone_id)
        data = {"correctAnswer": correct_answer}
        if options is not None:
            data["options"] = options
        return Question(
            id=self._new_id("q"),
            milestone_id=milestone_id,
            type=QuestionType(type),
            text=question,
            data=data,
            explanation=explanation,
        )

    async def delete_question(self, question_id):
        await self._enter("delete_question", question_id)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def gateway():
    fake = FakeGateway()
    fake.videos[VIDEO_ID] = lesson_content()
    return fake


@pytest.fixture
def make_lesson():
    """Factory for extra seeded videos, e.g. make_lesson("video-2")."""
    return lesson_content


@pytest.fixture
def store(gateway):
    return VideoStateStore(gateway)


@pytest.fixture
def settings():
    return EngineSettings(sync_interval=5.0, position_threshold=1.0, max_sync_age=30.0)


@pytest.fixture
def engine(gateway, settings):
    return PlaybackEngine(gateway, settings=settings)
