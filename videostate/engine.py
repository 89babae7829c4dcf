"""
Playback engine: the surface UI code talks to.

Wraps the entity cache with answer submission, authoring round-trips and
factories for the per-session tracker and gate. One engine is normally
shared by a whole app via init_engine()/get_engine().
"""

import logging
from typing import Callable

from .config import EngineSettings, init_sentry
from .enums import MilestoneType, QuestionType
from .gateway import VideoGateway
from .session import AnswerReconciler, MilestoneGate, Player, ProgressTracker
from .store import VideoStateStore
from .types import AnswerVerdict, Milestone, Question, VideoState

logger = logging.getLogger(__name__)


class MilestoneValidationError(ValueError):
    """Raised when a milestone would fall outside its video."""

    pass


class EngineNotInitializedError(Exception):
    """Raised when get_engine() is called before init_engine()/set_engine()."""

    pass


class PlaybackEngine(VideoStateStore):
    """
    Entity cache plus the session-level operations built on it.

    Args:
        gateway: Remote gateway
        settings: Engine settings (defaults when omitted)
        scheduler: Scheduler for progress trackers; the process-wide one if None
    """

    def __init__(
        self,
        gateway,
        *,
        settings: EngineSettings | None = None,
        scheduler=None,
    ):
        self.settings = settings or EngineSettings()
        super().__init__(gateway, max_cached_videos=self.settings.max_cached_videos)
        self.scheduler = scheduler
        self.reconciler = AnswerReconciler(self)

    async def submit_answer(
        self,
        session_id: str,
        question_id: str,
        raw_answer: str,
        milestone_id: str,
    ) -> AnswerVerdict:
        return await self.reconciler.submit_answer(
            session_id, question_id, raw_answer, milestone_id
        )

    # =========================================================================
    # Authoring
    # =========================================================================

    async def create_milestone(
        self,
        video_id: str,
        *,
        timestamp: float,
        title: str,
        type: MilestoneType,
        description: str | None = None,
    ) -> Milestone:
        """Create a milestone on the server, then add it to the cached video."""
        if timestamp < 0:
            raise MilestoneValidationError(f"Timestamp must be >= 0, got {timestamp}")
        state = await self._require_video_content(video_id)
        duration = state.video.duration
        if duration is not None and timestamp > duration:
            raise MilestoneValidationError(
                f"Timestamp {timestamp} is past the end of video {video_id} ({duration}s)"
            )

        milestone = await self.gateway.create_milestone(
            video_id,
            timestamp=timestamp,
            title=title,
            type=type,
            description=description,
        )
        await self.add_milestone(video_id, milestone)
        return milestone

    async def create_question(
        self,
        video_id: str,
        milestone_id: str,
        *,
        type: QuestionType,
        question: str,
        correct_answer: str,
        options: list[str] | None = None,
        explanation: str | None = None,
    ) -> Question:
        """Create a question on the server, then add it to the cached video."""
        created = await self.gateway.create_question(
            milestone_id,
            type=type,
            question=question,
            correct_answer=correct_answer,
            options=options,
            explanation=explanation,
        )
        await self.add_question(video_id, milestone_id, created)
        return created

    async def edit_milestone(self, video_id: str, milestone_id: str, **changes) -> Milestone:
        """Update a milestone on the server and in the cache."""
        milestone = await self.gateway.update_milestone(milestone_id, **changes)
        self.update_milestone(video_id, milestone)
        return milestone

    async def delete_question(
        self, video_id: str, milestone_id: str, question_id: str
    ) -> VideoState | None:
        await self.gateway.delete_question(question_id)
        return self.remove_question(video_id, milestone_id, question_id)

    # =========================================================================
    # Per-session components
    # =========================================================================

    def track_progress(
        self, session_id: str, position_source: Callable[[], float], **kwargs
    ) -> ProgressTracker:
        kwargs.setdefault("scheduler", self.scheduler)
        return ProgressTracker(
            self, session_id, position_source, settings=self.settings, **kwargs
        )

    def gate(self, session_id: str, player: Player) -> MilestoneGate:
        return MilestoneGate(self, session_id, player, settings=self.settings)

    async def aclose(self) -> None:
        await self.gateway.aclose()


# =============================================================================
# Process-wide engine
# =============================================================================

_engine: PlaybackEngine | None = None


def init_engine(settings: EngineSettings | None = None) -> PlaybackEngine:
    """Build the shared engine from settings (environment when omitted)."""
    global _engine
    settings = settings or EngineSettings.from_env()
    init_sentry(settings)
    _engine = PlaybackEngine(VideoGateway(settings), settings=settings)
    logger.info("Playback engine initialized against %s", settings.api_url)
    return _engine


def get_engine() -> PlaybackEngine:
    if _engine is None:
        raise EngineNotInitializedError("Playback engine has not been initialized")
    return _engine


def set_engine(engine: PlaybackEngine) -> None:
    global _engine
    _engine = engine


def clear_engine() -> None:
    global _engine
    _engine = None
